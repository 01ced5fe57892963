"""Random challenges, user handles and the base64url wire format."""

from __future__ import annotations

import base64
import binascii
import secrets
import string

from .exceptions import EncodingError

CHALLENGE_SIZE = 32
USER_HANDLE_SIZE = 16

_ALPHABET = frozenset(string.ascii_letters + string.digits + "-_")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str, *, length: int | None = None) -> bytes:
    """Decode canonical unpadded base64url ``value``.

    Raises :class:`EncodingError` for anything that would not round-trip
    through :func:`b64url_encode`, or when ``length`` is given and the
    decoded size differs.
    """

    if not isinstance(value, str):
        raise EncodingError("base64url value must be a string")
    if any(char not in _ALPHABET for char in value):
        raise EncodingError("invalid base64url alphabet")
    if len(value) % 4 == 1:
        raise EncodingError("invalid base64url length")
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        decoded = base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError) as exc:
        raise EncodingError("invalid base64url value") from exc
    # Non-zero trailing bits decode fine but do not re-encode to the same text.
    if b64url_encode(decoded) != value:
        raise EncodingError("non-canonical base64url value")
    if length is not None and len(decoded) != length:
        raise EncodingError(f"expected {length} bytes, got {len(decoded)}")
    return decoded


class ChallengeGenerator:
    """Produce ceremony challenges and registration user handles."""

    def __init__(self, *, challenge_size: int = CHALLENGE_SIZE, user_handle_size: int = USER_HANDLE_SIZE) -> None:
        if challenge_size < 16:
            raise ValueError("challenge_size must be at least 16 bytes")
        self.challenge_size = challenge_size
        self.user_handle_size = user_handle_size

    def generate_challenge(self) -> bytes:
        return secrets.token_bytes(self.challenge_size)

    def generate_user_handle(self) -> bytes:
        raw = bytearray(secrets.token_bytes(self.user_handle_size))
        if self.user_handle_size == USER_HANDLE_SIZE:
            # UUIDv4 version and RFC 4122 variant bits.
            raw[6] = (raw[6] & 0x0F) | 0x40
            raw[8] = (raw[8] & 0x3F) | 0x80
        return bytes(raw)

    @staticmethod
    def encode(data: bytes) -> str:
        return b64url_encode(data)

    @staticmethod
    def decode(value: str, *, length: int | None = None) -> bytes:
        return b64url_decode(value, length=length)


__all__ = [
    "CHALLENGE_SIZE",
    "USER_HANDLE_SIZE",
    "ChallengeGenerator",
    "b64url_decode",
    "b64url_encode",
]
