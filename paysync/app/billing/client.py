"""Thin HTTP client for the payment provider's REST API."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol
from urllib import error as urllib_error, request as urllib_request

from ...config import ProviderConfig
from .exceptions import ProviderError, TransportError
from .params import Params, encode_params

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "POST": "application/x-www-form-urlencoded",
    "GET": "application/json; charset=utf-8",
    "DELETE": "application/json; charset=utf-8",
}


class ProviderAPI(Protocol):
    """Remote operations the billing components need from the provider."""

    def get(self, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        ...

    def post(self, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        ...

    def delete(self, path: str) -> Dict[str, Any]:
        ...


def _decode_error(status: int, body: bytes, reason: str = "") -> ProviderError:
    message = reason or f"HTTP {status}"
    error_type: Optional[str] = None
    try:
        payload = json.loads(body.decode("utf-8")) if body else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        error_type = error.get("type")
    return ProviderError(status=status, message=message, type=error_type)


class ProviderClient:
    """Sends authenticated requests to the provider and decodes JSON replies.

    Every request carries the secret key as a bearer token and pins the API
    version. Non-2xx responses raise :class:`ProviderError`; network failures
    raise :class:`TransportError`. Nothing is retried.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        urlopen: Callable[..., Any] = urllib_request.urlopen,
    ) -> None:
        self._secret = config.secret_key
        self._endpoint = config.api_base.rstrip("/")
        self._version = config.api_version
        self._timeout = config.timeout_seconds or None
        self._urlopen = urlopen

    def _build_request(self, method: str, path: str, body: Optional[bytes]) -> urllib_request.Request:
        url = f"{self._endpoint}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._secret}",
            "Content-Type": _CONTENT_TYPES[method],
            "Stripe-Version": self._version,
        }
        return urllib_request.Request(url, data=body, headers=headers, method=method)

    def request(self, method: str, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        body: Optional[bytes] = None
        if params:
            encoded = encode_params(params)
            if method == "POST":
                body = encoded.encode("utf-8")
            else:
                path = f"{path}{'&' if '?' in path else '?'}{encoded}"

        req = self._build_request(method, path, body)
        try:
            with self._urlopen(req, timeout=self._timeout) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            try:
                error_body = exc.read() or b""
            except OSError:
                error_body = b""
            error = _decode_error(exc.code, error_body, str(exc.reason or ""))
            logger.debug("Provider rejected %s %s: %s", method, path, error.message)
            raise error from None
        except (urllib_error.URLError, OSError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            decoded = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError(f"{method} {path} returned an unreadable body") from exc
        if not isinstance(decoded, dict):
            raise TransportError(f"{method} {path} returned {type(decoded).__name__}, expected an object")
        return decoded

    def get(self, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        return self.request("GET", path, params)

    def post(self, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        return self.request("POST", path, params)

    def delete(self, path: str) -> Dict[str, Any]:
        return self.request("DELETE", path)


__all__ = ["ProviderAPI", "ProviderClient"]
