"""Thalora passkey authentication core."""

from .authentication import AuthenticationCore, normalize_email, normalize_username
from .ceremonies import CeremonyStore
from .challenges import ChallengeGenerator, b64url_decode, b64url_encode
from .config import AppConfig, AuthConfig, RelyingPartyConfig, load_config
from .database import Database, DatabaseConfig, PoolConfig
from .exceptions import (
    AuthenticationFailure,
    AuthError,
    Conflict,
    HTTPError,
    InvalidInput,
    NoCeremonyInProgress,
    NotFound,
    StorageError,
    ThaloraError,
    Unauthenticated,
)
from .models import (
    AssertionResponse,
    AttestationResponse,
    CeremonyKind,
    LoginOptions,
    PendingCeremony,
    PublicKeyCredential,
    PublicUser,
    RegistrationOptions,
    User,
)
from .observability import Observability, ObservabilityConfig
from .repository import InMemoryUserRepository, PostgresUserRepository, UserRepository
from .sessions import MemorySession, MemorySessionStore, Session
from .validation import CredentialValidator, WebAuthnValidator

__all__ = [
    "AppConfig",
    "AssertionResponse",
    "AttestationResponse",
    "AuthConfig",
    "AuthError",
    "AuthenticationCore",
    "AuthenticationFailure",
    "CeremonyKind",
    "CeremonyStore",
    "ChallengeGenerator",
    "Conflict",
    "CredentialValidator",
    "Database",
    "DatabaseConfig",
    "HTTPError",
    "InMemoryUserRepository",
    "InvalidInput",
    "LoginOptions",
    "MemorySession",
    "MemorySessionStore",
    "NoCeremonyInProgress",
    "NotFound",
    "Observability",
    "ObservabilityConfig",
    "PendingCeremony",
    "PoolConfig",
    "PostgresUserRepository",
    "PublicKeyCredential",
    "PublicUser",
    "RegistrationOptions",
    "RelyingPartyConfig",
    "Session",
    "StorageError",
    "ThaloraError",
    "Unauthenticated",
    "User",
    "UserRepository",
    "WebAuthnValidator",
    "b64url_decode",
    "b64url_encode",
    "load_config",
    "normalize_email",
    "normalize_username",
]
