"""Canonical form encoding of nested request parameters.

Nested mappings are flattened into bracketed keys and sequences into indexed
keys, so ``{"invoice_settings": {"default_payment_method": "pm_1"}}`` becomes
``invoice_settings[default_payment_method]=pm_1``. The resulting pairs are
sorted, which makes the encoding independent of mapping order and usable as a
request body or signature input.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterator, Mapping, Sequence, Tuple
from urllib.parse import quote_plus

from .exceptions import ParamsTypeError

Params = Mapping[str, Any]

_SCALAR_TYPES = (str, int, float, Decimal)


def _format_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _flatten(key: str, value: Any) -> Iterator[Tuple[str, str]]:
    if isinstance(value, Mapping):
        for child_key, child_value in value.items():
            yield from _flatten(f"{key}[{child_key}]" if key else str(child_key), child_value)
    elif _is_sequence(value):
        for index, item in enumerate(value):
            yield from _flatten(f"{key}[{index}]", item)
    elif value is None or isinstance(value, (bool,) + _SCALAR_TYPES):
        yield key, _format_scalar(value)
    else:
        raise ParamsTypeError(f"cannot encode {type(value).__name__} value for {key!r}")


def encode_params(params: Params) -> str:
    """Encode ``params`` as a deterministic ``application/x-www-form-urlencoded`` string."""

    if not isinstance(params, Mapping):
        raise ParamsTypeError(f"params must be a mapping, got {type(params).__name__}")
    encoded = [f"{key}={quote_plus(value)}" for key, value in _flatten("", params)]
    encoded.sort()
    return "&".join(encoded)


__all__ = ["Params", "encode_params"]
