"""Test support utilities: psqlpy fakes, a software authenticator and test doubles."""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from fido2 import cose
from fido2.webauthn import AttestationObject, AttestedCredentialData, AuthenticatorData

from thalora.challenges import b64url_encode
from thalora.config import EDDSA, ES256, RS256
from thalora.models import AssertionResponse, AttestationResponse, PublicKeyCredential, User
from thalora.repository import InMemoryUserRepository

RP_ID = "localhost"
ORIGIN = "http://localhost:3000"

FLAGS_UP = AuthenticatorData.FLAG.UP
FLAGS_AT = AuthenticatorData.FLAG.AT


@dataclass
class FakeResult:
    rows: List[dict[str, Any]]

    def result(self) -> List[dict[str, Any]]:
        return self.rows


class FakeConnection:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[Any], bool]] = []
        self._queued: list[list[dict[str, Any]]] = []

    def queue_result(self, rows: Iterable[dict[str, Any]]) -> None:
        self._queued.append([dict(row) for row in rows])

    async def execute(
        self,
        query: str,
        parameters: Sequence[Any] | None = None,
        *,
        prepared: bool = False,
    ) -> FakeResult:
        params = list(parameters or [])
        self.calls.append(("execute", query, params, prepared))
        if query.lstrip().upper().startswith("SET "):
            return FakeResult([])
        rows = self._queued.pop(0) if self._queued else []
        return FakeResult(rows)

    async def execute_batch(self, query: str) -> None:
        self.calls.append(("execute_batch", query, [], False))

    def queries(self) -> list[str]:
        return [query for _, query, _, _ in self.calls if not query.lstrip().upper().startswith("SET ")]


class _Acquire:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection

    async def __aenter__(self) -> FakeConnection:
        return self._connection

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakePool:
    def __init__(self, connection: FakeConnection | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.closed = False

    def acquire(self) -> _Acquire:
        return _Acquire(self.connection)

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SoftwareAuthenticator:
    """Single-credential authenticator producing real signed WebAuthn responses."""

    def __init__(
        self,
        *,
        rp_id: str = RP_ID,
        origin: str = ORIGIN,
        algorithm: int = ES256,
        counter: int = 0,
    ) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.algorithm = algorithm
        self.counter = counter
        self.credential_id = os.urandom(32)
        if algorithm == ES256:
            self._private_key: Any = ec.generate_private_key(ec.SECP256R1())
            self.cose_key = cose.ES256.from_cryptography_key(self._private_key.public_key())
        elif algorithm == RS256:
            self._private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            self.cose_key = cose.RS256.from_cryptography_key(self._private_key.public_key())
        elif algorithm == EDDSA:
            self._private_key = ed25519.Ed25519PrivateKey.generate()
            self.cose_key = cose.EdDSA.from_cryptography_key(self._private_key.public_key())
        else:
            raise ValueError(f"unsupported algorithm {algorithm}")

    @property
    def encoded_credential_id(self) -> str:
        return b64url_encode(self.credential_id)

    def sign(self, message: bytes) -> bytes:
        if self.algorithm == ES256:
            return self._private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        if self.algorithm == RS256:
            return self._private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
        return self._private_key.sign(message)

    def client_data(
        self,
        type_: str,
        challenge: str,
        *,
        origin: str | None = None,
        cross_origin: bool = False,
    ) -> bytes:
        payload = {
            "type": type_,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": cross_origin,
        }
        return json.dumps(payload).encode("utf-8")

    def create(
        self,
        challenge: str,
        *,
        origin: str | None = None,
        rp_id: str | None = None,
        flags: int = FLAGS_UP | FLAGS_AT,
        client_type: str = "webauthn.create",
        cross_origin: bool = False,
        raw_id: bytes | None = None,
    ) -> PublicKeyCredential:
        client_data = self.client_data(client_type, challenge, origin=origin, cross_origin=cross_origin)
        attested = AttestedCredentialData.create(bytes(16), self.credential_id, self.cose_key)
        auth_data = AuthenticatorData.create(
            hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest(),
            flags,
            counter=self.counter,
            credential_data=attested,
        )
        attestation = AttestationObject.create("none", auth_data, {})
        credential_id = self.credential_id if raw_id is None else raw_id
        return PublicKeyCredential(
            id=b64url_encode(credential_id),
            raw_id=b64url_encode(credential_id),
            response=AttestationResponse(
                client_data_json=b64url_encode(client_data),
                attestation_object=b64url_encode(bytes(attestation)),
            ),
        )

    def get(
        self,
        challenge: str,
        *,
        origin: str | None = None,
        rp_id: str | None = None,
        flags: int = FLAGS_UP,
        counter: int | None = None,
        client_type: str = "webauthn.get",
        raw_id: bytes | None = None,
        corrupt_signature: bool = False,
    ) -> PublicKeyCredential:
        self.counter = self.counter + 1 if counter is None else counter
        client_data = self.client_data(client_type, challenge, origin=origin)
        auth_data = bytes(
            AuthenticatorData.create(
                hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest(),
                flags,
                counter=self.counter,
            )
        )
        signature = self.sign(auth_data + hashlib.sha256(client_data).digest())
        if corrupt_signature:
            signature = signature[:-1] + bytes([signature[-1] ^ 0x01])
        credential_id = self.credential_id if raw_id is None else raw_id
        return PublicKeyCredential(
            id=b64url_encode(credential_id),
            raw_id=b64url_encode(credential_id),
            response=AssertionResponse(
                client_data_json=b64url_encode(client_data),
                authenticator_data=b64url_encode(auth_data),
                signature=b64url_encode(signature),
            ),
        )


class FailingUserRepository(InMemoryUserRepository):
    """In-memory repository whose selected operations raise ``error``."""

    def __init__(self, *, failing: Iterable[str] = (), error: BaseException | None = None) -> None:
        super().__init__()
        self.failing = set(failing)
        self.error = error or RuntimeError("connection reset")

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise self.error

    async def find_user_by_username(self, username: str) -> User | None:
        self._maybe_fail("find_user_by_username")
        return await super().find_user_by_username(username)

    async def find_user_by_id(self, user_id: int) -> User | None:
        self._maybe_fail("find_user_by_id")
        return await super().find_user_by_id(user_id)

    async def create_user(self, *args: Any, **kwargs: Any) -> int:
        self._maybe_fail("create_user")
        return await super().create_user(*args, **kwargs)

    async def update_credential_counter(self, user_id: int, new_counter: int) -> bool:
        self._maybe_fail("update_credential_counter")
        return await super().update_credential_counter(user_id, new_counter)
