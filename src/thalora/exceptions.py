"""Error taxonomy for the passkey authentication core."""

from __future__ import annotations

from typing import Any, ClassVar

from .http import Status, ensure_status, reason_phrase
from .serialization import json_encode


class ThaloraError(Exception):
    """Base error type."""


class HTTPError(ThaloraError):
    """Structured HTTP error that is msgspec serializable."""

    def __init__(self, status: int | Status, detail: Any) -> None:
        status_code = ensure_status(status)
        super().__init__(status_code, detail)
        self.status = status_code
        self.detail = detail
        self.reason = reason_phrase(status_code)

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "reason": self.reason, "detail": self.detail}})


class AuthError(ThaloraError):
    """Base class for failures raised by the authentication core.

    ``code`` identifies the failure for logs and tests. ``detail`` is what a
    client may see; subclasses that must not act as an oracle override it
    with a generic value.
    """

    status: ClassVar[Status] = Status.BAD_REQUEST
    code: ClassVar[str] = "auth_error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)

    @property
    def detail(self) -> str:
        return self.message

    def to_http_error(self) -> HTTPError:
        return HTTPError(self.status, {"detail": self.detail})


class InvalidInput(AuthError):
    status = Status.BAD_REQUEST
    code = "invalid_input"


class EncodingError(InvalidInput):
    """Raised when a base64url value cannot be decoded canonically."""

    code = "invalid_encoding"


class Conflict(AuthError):
    status = Status.CONFLICT
    code = "conflict"


class NotFound(AuthError):
    status = Status.NOT_FOUND
    code = "not_found"


class NoCeremonyInProgress(AuthError):
    status = Status.BAD_REQUEST
    code = "no_ceremony_in_progress"


class StorageError(AuthError):
    """Raised when the storage collaborator fails."""

    status = Status.INTERNAL_SERVER_ERROR
    code = "storage_error"

    @property
    def detail(self) -> str:
        return "internal_error"


class AuthenticationFailure(AuthError):
    """A ceremony response was rejected.

    The specific reason is only logged; clients always see
    ``authentication_failed``.
    """

    status = Status.UNAUTHORIZED
    code = "authentication_failed"

    @property
    def detail(self) -> str:
        return "authentication_failed"


class DecodingError(AuthenticationFailure):
    status = Status.BAD_REQUEST
    code = "decoding_error"


class ChallengeMismatch(AuthenticationFailure):
    code = "challenge_mismatch"


class OriginMismatch(AuthenticationFailure):
    code = "origin_mismatch"


class RelyingPartyMismatch(AuthenticationFailure):
    code = "rp_id_mismatch"


class HandleMismatch(AuthenticationFailure):
    code = "user_handle_mismatch"


class UsernameMismatch(AuthenticationFailure):
    code = "username_mismatch"


class CredentialMismatch(AuthenticationFailure):
    code = "credential_mismatch"


class WrongResponseType(AuthenticationFailure):
    code = "wrong_response_type"


class UserPresenceRequired(AuthenticationFailure):
    code = "user_presence_required"


class UnsupportedAlgorithm(AuthenticationFailure):
    code = "unsupported_algorithm"


class SignatureInvalid(AuthenticationFailure):
    code = "signature_invalid"


class CounterReplay(AuthenticationFailure):
    code = "counter_replay"


class CeremonyExpired(AuthenticationFailure):
    code = "ceremony_expired"


class Unauthenticated(AuthenticationFailure):
    code = "unauthenticated"

    @property
    def detail(self) -> str:
        return "not_authenticated"


__all__ = [
    "AuthError",
    "AuthenticationFailure",
    "CeremonyExpired",
    "ChallengeMismatch",
    "Conflict",
    "CounterReplay",
    "CredentialMismatch",
    "DecodingError",
    "EncodingError",
    "HTTPError",
    "HandleMismatch",
    "InvalidInput",
    "NoCeremonyInProgress",
    "NotFound",
    "OriginMismatch",
    "RelyingPartyMismatch",
    "SignatureInvalid",
    "StorageError",
    "ThaloraError",
    "Unauthenticated",
    "UnsupportedAlgorithm",
    "UserPresenceRequired",
    "UsernameMismatch",
    "WrongResponseType",
]
