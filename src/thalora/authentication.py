"""Registration and login ceremonies for passkey authentication."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from .ceremonies import CeremonyStore
from .challenges import ChallengeGenerator, b64url_encode
from .config import AuthConfig
from .exceptions import (
    AuthenticationFailure,
    AuthError,
    CeremonyExpired,
    Conflict,
    HandleMismatch,
    InvalidInput,
    NoCeremonyInProgress,
    NotFound,
    StorageError,
    Unauthenticated,
    UsernameMismatch,
)
from .models import (
    AllowedCredential,
    AuthenticatorSelection,
    CeremonyKind,
    LoginOptions,
    PendingCeremony,
    PublicKeyCredential,
    PublicKeyCredentialParameters,
    PublicUser,
    RegistrationOptions,
    RelyingParty,
    UserEntity,
)
from .observability import Observability
from .repository import UserRepository
from .sessions import USER_ID_KEY, Session
from .validation import CredentialValidator, WebAuthnValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["AuthenticationCore", "normalize_email", "normalize_username"]


def normalize_username(value: Any, *, max_length: int = 255) -> str:
    if not isinstance(value, str):
        raise InvalidInput("Username must be a string")
    username = value.strip()
    if not username or len(username) > max_length:
        raise InvalidInput(f"Username must be between 1 and {max_length} characters")
    return username


def normalize_email(value: Any, *, max_length: int = 320) -> str:
    if not isinstance(value, str):
        raise InvalidInput("Email must be a string")
    email = value.strip().lower()
    if not email or len(email) > max_length or "@" not in email:
        raise InvalidInput("Invalid email address")
    return email


class AuthenticationCore:
    """Drive WebAuthn registration and login for sessions.

    Every ceremony follows ``Idle -> PendingChallenge -> Idle`` per session
    and kind. A completion either commits fully (user stored or counter
    advanced, session authenticated, ceremony consumed) or leaves the
    pending ceremony in place for a retry, except for terminal failures
    such as a lost uniqueness race or a user deleted mid-login.
    """

    def __init__(
        self,
        config: AuthConfig,
        repository: UserRepository,
        *,
        validator: CredentialValidator | None = None,
        ceremonies: CeremonyStore | None = None,
        generator: ChallengeGenerator | None = None,
        observability: Observability | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.generator = generator or ChallengeGenerator()
        self.ceremonies = ceremonies or CeremonyStore(
            ttl_seconds=config.ceremony_timeout_seconds,
            generator=self.generator,
            clock=clock,
        )
        self.validator: CredentialValidator = validator or WebAuthnValidator(
            config.relying_party.id, algorithms=config.algorithms
        )
        self.observability = observability or Observability()

    async def begin_registration(self, session: Session, username: str, email: str) -> RegistrationOptions:
        """Start a registration ceremony for a new ``username``/``email`` pair."""

        with self._observe(CeremonyKind.REGISTRATION, "begin"):
            username = normalize_username(username, max_length=self.config.username_max_length)
            email = normalize_email(email, max_length=self.config.email_max_length)
            logger.info("Beginning registration for user: %s", username)
            if await self._storage(self.repository.find_user_by_username(username)) is not None:
                raise Conflict("Username already exists")
            if await self._storage(self.repository.find_user_by_email(email)) is not None:
                raise Conflict("Email already exists")
            ceremony = await self.ceremonies.begin_registration(session.id, username, email)
            return self._registration_options(ceremony)

    async def complete_registration(
        self,
        session: Session,
        claimed_user_handle: str,
        credential: PublicKeyCredential,
    ) -> PublicUser:
        """Validate the attestation for the session's registration and create the user."""

        with self._observe(CeremonyKind.REGISTRATION, "complete"):
            ceremony = await self._take(session, CeremonyKind.REGISTRATION)
            try:
                expected_handle = ceremony.encoded_user_handle or ""
                if not isinstance(claimed_user_handle, str) or not hmac.compare_digest(
                    claimed_user_handle.encode("utf-8"), expected_handle.encode("utf-8")
                ):
                    raise HandleMismatch("user handle does not match the pending registration")
                registered = self.validator.validate_registration(
                    credential,
                    ceremony.encoded_challenge,
                    self.config.relying_party.origin,
                )
                user_id = await self._storage(
                    self.repository.create_user(
                        ceremony.username,
                        ceremony.email or "",
                        registered.public_key,
                        registered.credential_id,
                        0,
                    )
                )
            except Conflict:
                logger.warning("Registration for %s lost a uniqueness race", ceremony.username)
                raise
            except (AuthenticationFailure, StorageError):
                await self.ceremonies.restore(session.id, ceremony)
                raise
            session.set(USER_ID_KEY, user_id)
            logger.info("User registered successfully: %s (ID: %s)", ceremony.username, user_id)
            return PublicUser(user_id=user_id, username=ceremony.username, email=ceremony.email or "")

    async def begin_login(self, session: Session, username: str) -> LoginOptions:
        """Start a login ceremony for an existing ``username``."""

        with self._observe(CeremonyKind.LOGIN, "begin"):
            username = normalize_username(username, max_length=self.config.username_max_length)
            logger.info("Beginning login for user: %s", username)
            user = await self._storage(self.repository.find_user_by_username(username))
            if user is None:
                raise NotFound("User not found")
            ceremony = await self.ceremonies.begin_login(session.id, username, user_id=user.id)
            allowed = AllowedCredential(
                id=b64url_encode(user.credential.credential_id),
                transports=tuple(self.config.transports) or None,
            )
            return LoginOptions(
                challenge=ceremony.encoded_challenge,
                timeout=self.config.timeout_ms,
                rp_id=self.config.relying_party.id,
                allow_credentials=(allowed,),
                user_verification=self.config.user_verification,
            )

    async def complete_login(
        self,
        session: Session,
        claimed_username: str,
        credential: PublicKeyCredential,
    ) -> PublicUser:
        """Verify the assertion for the session's login and authenticate the session."""

        with self._observe(CeremonyKind.LOGIN, "complete"):
            ceremony = await self._take(session, CeremonyKind.LOGIN)
            try:
                if not isinstance(claimed_username, str) or claimed_username.strip() != ceremony.username:
                    raise UsernameMismatch("username does not match the pending login")
                user = await self._storage(self.repository.find_user_by_username(ceremony.username))
            except (AuthenticationFailure, StorageError):
                await self.ceremonies.restore(session.id, ceremony)
                raise
            if user is None or (ceremony.user_id is not None and user.id != ceremony.user_id):
                session.clear()
                raise NotFound("User not found")
            try:
                new_counter = self.validator.validate_login(
                    credential,
                    ceremony.encoded_challenge,
                    self.config.relying_party.origin,
                    user.credential.public_key,
                    user.credential.counter,
                    user.credential.credential_id,
                )
            except (AuthenticationFailure, StorageError):
                await self.ceremonies.restore(session.id, ceremony)
                raise
            await self._persist_counter(user.id, new_counter)
            session.set(USER_ID_KEY, user.id)
            logger.info("User logged in successfully: %s (ID: %s)", user.username, user.id)
            return user.public()

    async def cancel_registration(self, session: Session) -> bool:
        return await self.ceremonies.cancel(session.id, CeremonyKind.REGISTRATION)

    async def cancel_login(self, session: Session) -> bool:
        return await self.ceremonies.cancel(session.id, CeremonyKind.LOGIN)

    async def logout(self, session: Session) -> None:
        """Forget everything the session holds; safe to call repeatedly."""

        session.clear()
        await self.ceremonies.discard_session(session.id)

    async def current_user(self, session: Session) -> PublicUser:
        """Return the live user behind ``session`` or raise :class:`Unauthenticated`."""

        user_id = session.get(USER_ID_KEY)
        if user_id is None:
            raise Unauthenticated("no authenticated user in session")
        user = await self._storage(self.repository.find_user_by_id(user_id))
        if user is None:
            logger.warning("Session references missing user %s; clearing it", user_id)
            session.clear()
            raise Unauthenticated("user no longer exists")
        return user.public()

    def require_user(self, session: Session) -> int:
        """Return the authenticated user id without touching storage."""

        user_id = session.get(USER_ID_KEY)
        if user_id is None:
            raise Unauthenticated("authentication required")
        return user_id

    def _registration_options(self, ceremony: PendingCeremony) -> RegistrationOptions:
        relying_party = self.config.relying_party
        user_handle = ceremony.encoded_user_handle or ""
        return RegistrationOptions(
            challenge=ceremony.encoded_challenge,
            user_id=user_handle,
            timeout=self.config.timeout_ms,
            rp=RelyingParty(id=relying_party.id, name=relying_party.name),
            user=UserEntity(id=user_handle, name=ceremony.username, display_name=ceremony.username),
            pub_key_cred_params=tuple(PublicKeyCredentialParameters(alg=alg) for alg in self.config.algorithms),
            authenticator_selection=AuthenticatorSelection(
                authenticator_attachment=self.config.authenticator_attachment,
                require_resident_key=self.config.resident_key == "required",
                resident_key=self.config.resident_key,
                user_verification=self.config.user_verification,
            ),
            attestation=self.config.attestation,
        )

    async def _take(self, session: Session, kind: CeremonyKind) -> PendingCeremony:
        try:
            return await self.ceremonies.take(session.id, kind)
        except NotFound as exc:
            raise NoCeremonyInProgress(f"No {kind.value} in progress") from exc
        except CeremonyExpired:
            logger.info("Expired %s ceremony submitted for session", kind.value)
            raise

    async def _persist_counter(self, user_id: int, new_counter: int) -> None:
        try:
            updated = await self.repository.update_credential_counter(user_id, new_counter)
        except Exception:
            logger.warning("Failed to update credential counter for user %s", user_id, exc_info=True)
            return
        if not updated:
            logger.warning("Credential counter for user %s was not advanced to %s", user_id, new_counter)

    async def _storage(self, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("Storage operation failed")
            raise StorageError("storage operation failed") from exc

    @contextmanager
    def _observe(self, kind: CeremonyKind, step: str) -> Iterator[None]:
        context = self.observability.on_ceremony_start(kind.value, step)
        try:
            yield
        except Exception as error:
            self.observability.on_ceremony_error(context, error)
            raise
        self.observability.on_ceremony_success(context)
