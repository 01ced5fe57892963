"""Validation of WebAuthn attestation and assertion responses.

:class:`WebAuthnValidator` checks the collected client data against the
server-side ceremony, parses the CBOR attestation object and COSE key with
:mod:`fido2`, and verifies assertion signatures with the stored key.
Attestation statements are not chained to a trust anchor; registrations
request ``attestation="none"`` and only the credential key is kept.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Protocol, Sequence

import msgspec
from cryptography.exceptions import InvalidSignature
from fido2 import cbor
from fido2.cose import CoseKey
from fido2.webauthn import AttestationObject, AuthenticatorData

from .challenges import b64url_decode
from .config import ES256, RS256
from .exceptions import (
    ChallengeMismatch,
    CounterReplay,
    CredentialMismatch,
    DecodingError,
    EncodingError,
    OriginMismatch,
    RelyingPartyMismatch,
    SignatureInvalid,
    StorageError,
    UnsupportedAlgorithm,
    UserPresenceRequired,
    WrongResponseType,
)
from .models import AssertionResponse, AttestationResponse, PublicKeyCredential, RegisteredCredential

logger = logging.getLogger(__name__)

CREATE_TYPE = "webauthn.create"
GET_TYPE = "webauthn.get"

# rpIdHash (32) + flags (1) + signCount (4)
AUTH_DATA_MIN_LENGTH = 37
# ... + aaguid (16) + credentialIdLength (2)
ATTESTED_AUTH_DATA_MIN_LENGTH = AUTH_DATA_MIN_LENGTH + 18


class _ClientChallenge(msgspec.Struct, frozen=True):
    challenge: str


class CollectedClientData(msgspec.Struct, frozen=True):
    type: str
    challenge: str
    origin: str
    cross_origin: bool = msgspec.field(default=False, name="crossOrigin")


class CredentialValidator(Protocol):
    """Checks ceremony responses; implementations may swap in other verifiers."""

    def validate_registration(
        self,
        credential: PublicKeyCredential,
        expected_challenge: str,
        expected_origin: str,
    ) -> RegisteredCredential: ...

    def validate_login(
        self,
        credential: PublicKeyCredential,
        expected_challenge: str,
        expected_origin: str,
        stored_public_key: bytes,
        stored_counter: int,
        stored_credential_id: bytes | None = None,
    ) -> int: ...


class WebAuthnValidator:
    """Verify attestation and assertion responses for a single relying party."""

    def __init__(self, rp_id: str, *, algorithms: Sequence[int] = (ES256, RS256)) -> None:
        self.rp_id = rp_id
        self.rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()
        self.algorithms = frozenset(algorithms)

    def validate_registration(
        self,
        credential: PublicKeyCredential,
        expected_challenge: str,
        expected_origin: str,
    ) -> RegisteredCredential:
        response = credential.response
        if not isinstance(response, AttestationResponse):
            raise WrongResponseType("registration requires an attestation response")
        client_data_raw = _decode_field(response.client_data_json, "client_data_json")
        client_data = self._check_client_data(client_data_raw, expected_challenge, expected_origin, CREATE_TYPE)
        credential_id = _decode_field(credential.raw_id, "raw_id")

        attestation_raw = _decode_field(response.attestation_object, "attestation_object")
        if len(attestation_raw) < ATTESTED_AUTH_DATA_MIN_LENGTH:
            raise DecodingError("attestation object too short to hold a credential key")
        try:
            attestation = AttestationObject(attestation_raw)
        except Exception as exc:  # fido2 surfaces CBOR and struct errors with mixed types
            raise DecodingError(f"malformed attestation object: {exc}") from exc
        auth_data = attestation.auth_data
        self._check_auth_data(auth_data)
        attested = auth_data.credential_data
        if attested is None:
            raise DecodingError("attestation carries no credential data")
        if not hmac.compare_digest(bytes(attested.credential_id), credential_id):
            raise DecodingError("raw_id does not match the attested credential id")
        public_key = attested.public_key
        algorithm = public_key.get(3)
        if algorithm not in self.algorithms:
            raise UnsupportedAlgorithm(f"algorithm {algorithm!r} is not accepted")
        logger.debug(
            "Attestation accepted (fmt=%s, alg=%s, origin=%s, cross_origin=%s)",
            attestation.fmt,
            algorithm,
            client_data.origin,
            client_data.cross_origin,
        )
        return RegisteredCredential(
            credential_id=credential_id,
            public_key=cbor.encode(dict(public_key)),
            counter=auth_data.counter,
            algorithm=algorithm,
        )

    def validate_login(
        self,
        credential: PublicKeyCredential,
        expected_challenge: str,
        expected_origin: str,
        stored_public_key: bytes,
        stored_counter: int,
        stored_credential_id: bytes | None = None,
    ) -> int:
        response = credential.response
        if not isinstance(response, AssertionResponse):
            raise WrongResponseType("login requires an assertion response")
        client_data_raw = _decode_field(response.client_data_json, "client_data_json")
        self._check_client_data(client_data_raw, expected_challenge, expected_origin, GET_TYPE)
        if stored_credential_id is not None:
            credential_id = _decode_field(credential.raw_id, "raw_id")
            if not hmac.compare_digest(credential_id, stored_credential_id):
                raise CredentialMismatch("assertion was made with an unknown credential")

        auth_data_raw = _decode_field(response.authenticator_data, "authenticator_data")
        if len(auth_data_raw) < AUTH_DATA_MIN_LENGTH:
            raise DecodingError("authenticator data too short")
        try:
            auth_data = AuthenticatorData(auth_data_raw)
        except Exception as exc:  # fido2 surfaces CBOR and struct errors with mixed types
            raise DecodingError(f"malformed authenticator data: {exc}") from exc
        self._check_auth_data(auth_data)
        signature = _decode_field(response.signature, "signature")

        public_key = _load_public_key(stored_public_key)
        message = auth_data_raw + hashlib.sha256(client_data_raw).digest()
        try:
            public_key.verify(message, signature)
        except InvalidSignature as exc:
            raise SignatureInvalid("assertion signature does not verify") from exc
        except ValueError as exc:
            raise SignatureInvalid(f"unusable assertion signature: {exc}") from exc

        new_counter = auth_data.counter
        if new_counter <= stored_counter:
            raise CounterReplay(f"counter {new_counter} is not greater than stored {stored_counter}")
        return new_counter

    def _check_client_data(
        self,
        raw: bytes,
        expected_challenge: str,
        expected_origin: str,
        expected_type: str,
    ) -> CollectedClientData:
        # The challenge is checked before any other field is validated.
        try:
            challenge = msgspec.json.decode(raw, type=_ClientChallenge).challenge
        except (msgspec.ValidationError, msgspec.DecodeError) as exc:
            raise DecodingError(f"malformed client data: {exc}") from exc
        if not hmac.compare_digest(challenge.encode("utf-8"), expected_challenge.encode("utf-8")):
            raise ChallengeMismatch("client data challenge does not match the ceremony")
        try:
            client_data = msgspec.json.decode(raw, type=CollectedClientData)
        except (msgspec.ValidationError, msgspec.DecodeError) as exc:
            raise DecodingError(f"malformed client data: {exc}") from exc
        if client_data.type != expected_type:
            raise WrongResponseType(f"client data type {client_data.type!r} where {expected_type!r} was expected")
        if client_data.origin != expected_origin:
            raise OriginMismatch(f"unexpected origin {client_data.origin!r}")
        if client_data.cross_origin:
            raise OriginMismatch("cross-origin ceremonies are not accepted")
        return client_data

    def _check_auth_data(self, auth_data: AuthenticatorData) -> None:
        if not hmac.compare_digest(bytes(auth_data.rp_id_hash), self.rp_id_hash):
            raise RelyingPartyMismatch("authenticator data is bound to another relying party")
        if not auth_data.is_user_present():
            raise UserPresenceRequired("user presence flag not set")


def _decode_field(value: str, field: str) -> bytes:
    try:
        return b64url_decode(value)
    except EncodingError as exc:
        raise DecodingError(f"{field} is not valid base64url") from exc


def _load_public_key(stored: bytes) -> CoseKey:
    try:
        return CoseKey.parse(cbor.decode(stored))
    except Exception as exc:  # fido2 surfaces CBOR and struct errors with mixed types
        raise StorageError("stored public key is not a COSE key") from exc


__all__ = [
    "ATTESTED_AUTH_DATA_MIN_LENGTH",
    "AUTH_DATA_MIN_LENGTH",
    "CollectedClientData",
    "CredentialValidator",
    "WebAuthnValidator",
]
