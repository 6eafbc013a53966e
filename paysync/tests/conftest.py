"""Shared fakes for the billing test-suite."""
from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional, Tuple

import pytest

from paysync.app.billing.client import ProviderAPI
from paysync.app.billing.exceptions import ProviderError


class FakeProviderAPI(ProviderAPI):
    """Provider double answering from canned responses keyed by method and path.

    A response may be a dict, a callable receiving the request params, or an
    exception instance to raise. Unknown paths answer with a 404 error.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.responses: Dict[Tuple[str, str], Any] = {}

    def respond(self, method: str, path: str, response: Any) -> None:
        self.responses[(method, path)] = response

    def _call(self, method: str, path: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append((method, path, copy.deepcopy(dict(params)) if params else None))
        response = self.responses.get((method, path))
        if response is None:
            raise ProviderError(status=404, message=f"No such resource: {path}", type="invalid_request_error")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(params)
        return copy.deepcopy(response)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._call("GET", path, params)

    def post(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._call("POST", path, params)

    def delete(self, path: str) -> Dict[str, Any]:
        return self._call("DELETE", path, None)

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [path for call_method, path, _ in self.calls if method is None or call_method == method]

    def params_for(self, method: str, path: str) -> Optional[Dict[str, Any]]:
        for call_method, call_path, params in self.calls:
            if call_method == method and call_path == path:
                return params
        raise AssertionError(f"{method} {path} was not called")


@pytest.fixture
def provider() -> FakeProviderAPI:
    return FakeProviderAPI()
