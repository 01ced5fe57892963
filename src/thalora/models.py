"""Records exchanged by the authentication core, its store and its clients."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Mapping

import msgspec

from .challenges import b64url_encode
from .exceptions import InvalidInput

MAX_COUNTER = 2**32 - 1


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"


class PendingCeremony(msgspec.Struct, frozen=True):
    """Server-side state for a ceremony awaiting the client's response.

    ``created_at`` is a monotonic clock reading, only comparable with other
    readings of the same clock.
    """

    kind: CeremonyKind
    challenge: bytes
    username: str
    created_at: float
    user_handle: bytes | None = None
    email: str | None = None
    user_id: int | None = None

    @property
    def encoded_challenge(self) -> str:
        return b64url_encode(self.challenge)

    @property
    def encoded_user_handle(self) -> str | None:
        if self.user_handle is None:
            return None
        return b64url_encode(self.user_handle)


class Credential(msgspec.Struct, frozen=True):
    credential_id: bytes
    public_key: bytes
    counter: int = 0


class PublicUser(msgspec.Struct, frozen=True):
    """Fields of a user that may be returned to clients."""

    user_id: int
    username: str
    email: str
    created_at: dt.datetime | None = None


class User(msgspec.Struct, frozen=True):
    id: int
    username: str
    email: str
    credential: Credential
    created_at: dt.datetime
    updated_at: dt.datetime

    def public(self) -> PublicUser:
        return PublicUser(user_id=self.id, username=self.username, email=self.email, created_at=self.created_at)


class RegisteredCredential(msgspec.Struct, frozen=True):
    """Credential material extracted from a validated attestation."""

    credential_id: bytes
    public_key: bytes
    counter: int
    algorithm: int


class RelyingParty(msgspec.Struct, frozen=True):
    id: str
    name: str


class UserEntity(msgspec.Struct, frozen=True):
    id: str
    name: str
    display_name: str


class PublicKeyCredentialParameters(msgspec.Struct, frozen=True):
    alg: int
    type: str = "public-key"


class AuthenticatorSelection(msgspec.Struct, frozen=True):
    authenticator_attachment: str | None = None
    require_resident_key: bool = False
    resident_key: str = "preferred"
    user_verification: str = "preferred"


class RegistrationOptions(msgspec.Struct, frozen=True):
    """Descriptor handed to the client to create a passkey."""

    challenge: str
    user_id: str
    timeout: int
    rp: RelyingParty
    user: UserEntity
    pub_key_cred_params: tuple[PublicKeyCredentialParameters, ...]
    authenticator_selection: AuthenticatorSelection
    attestation: str = "none"


class AllowedCredential(msgspec.Struct, frozen=True):
    id: str
    type: str = "public-key"
    transports: tuple[str, ...] | None = None


class LoginOptions(msgspec.Struct, frozen=True):
    """Descriptor handed to the client to request an assertion."""

    challenge: str
    timeout: int
    rp_id: str
    allow_credentials: tuple[AllowedCredential, ...]
    user_verification: str = "preferred"


class AttestationResponse(msgspec.Struct, frozen=True, tag_field="kind", tag="attestation"):
    client_data_json: str
    attestation_object: str
    transports: tuple[str, ...] = ()


class AssertionResponse(msgspec.Struct, frozen=True, tag_field="kind", tag="assertion"):
    client_data_json: str
    authenticator_data: str
    signature: str
    user_handle: str | None = None


AuthenticatorResponse = AttestationResponse | AssertionResponse


class PublicKeyCredential(msgspec.Struct, frozen=True):
    id: str
    raw_id: str
    response: AuthenticatorResponse
    type: str = "public-key"


class RegisterBeginRequest(msgspec.Struct, frozen=True):
    username: str
    email: str


class RegisterCompleteRequest(msgspec.Struct, frozen=True):
    user_id: str
    credential: PublicKeyCredential


class LoginBeginRequest(msgspec.Struct, frozen=True):
    username: str


class LoginCompleteRequest(msgspec.Struct, frozen=True):
    username: str
    credential: PublicKeyCredential


def parse_request(payload: bytes | str | Mapping[str, Any], type_: type[msgspec.Struct]) -> Any:
    """Decode a request body (raw JSON or already-parsed mapping) into ``type_``."""

    try:
        if isinstance(payload, (bytes, str)):
            return msgspec.json.decode(payload, type=type_)
        return msgspec.convert(payload, type=type_)
    except (msgspec.ValidationError, msgspec.DecodeError) as exc:
        raise InvalidInput(str(exc)) from exc


__all__ = [
    "MAX_COUNTER",
    "AllowedCredential",
    "AssertionResponse",
    "AttestationResponse",
    "AuthenticatorResponse",
    "AuthenticatorSelection",
    "CeremonyKind",
    "Credential",
    "LoginBeginRequest",
    "LoginCompleteRequest",
    "LoginOptions",
    "PendingCeremony",
    "PublicKeyCredential",
    "PublicKeyCredentialParameters",
    "PublicUser",
    "RegisterBeginRequest",
    "RegisterCompleteRequest",
    "RegisteredCredential",
    "RegistrationOptions",
    "RelyingParty",
    "User",
    "UserEntity",
    "parse_request",
]
