from __future__ import annotations

from typing import Any, TypeVar

import msgspec

T = TypeVar("T")

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()


def json_encode(value: Any) -> bytes:
    """Serialize ``value`` to JSON bytes using msgspec."""

    return _encoder.encode(value)


def json_decode(data: bytes | str) -> Any:
    """Deserialize JSON ``data`` into native Python values."""

    return _decoder.decode(data)


def json_decode_as(data: bytes | str, type_: type[T]) -> T:
    """Deserialize JSON ``data`` and validate it against ``type_``."""

    return msgspec.json.decode(data, type=type_)


def to_builtins(value: Any) -> Any:
    """Convert msgspec structs into JSON-ready builtins."""

    return msgspec.to_builtins(value)


__all__ = ["json_decode", "json_decode_as", "json_encode", "to_builtins"]
