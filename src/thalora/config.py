"""Application configuration objects."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import msgspec

from .database import DatabaseConfig, PoolConfig
from .observability import ObservabilityConfig

ES256 = -7
RS256 = -257
EDDSA = -8


class RelyingPartyConfig(msgspec.Struct, frozen=True):
    """Identity of the relying party presented to authenticators."""

    id: str = "localhost"
    name: str = "Thalora URL Shortener"
    origin: str = "http://localhost:3000"


class AuthConfig(msgspec.Struct, frozen=True):
    """Typed configuration for :class:`~thalora.authentication.AuthenticationCore`."""

    relying_party: RelyingPartyConfig = RelyingPartyConfig()
    ceremony_timeout_seconds: int = 60
    algorithms: tuple[int, ...] = (ES256, RS256)
    user_verification: str = "preferred"
    resident_key: str = "preferred"
    authenticator_attachment: str | None = None
    attestation: str = "none"
    transports: tuple[str, ...] = ("internal",)
    username_max_length: int = 255
    email_max_length: int = 320

    def __post_init__(self) -> None:
        if self.ceremony_timeout_seconds <= 0:
            raise ValueError("ceremony_timeout_seconds must be positive")
        if not self.algorithms:
            raise ValueError("at least one public key algorithm is required")

    @property
    def timeout_ms(self) -> int:
        return self.ceremony_timeout_seconds * 1000


class AppConfig(msgspec.Struct, frozen=True):
    """Top-level configuration for a Thalora deployment."""

    auth: AuthConfig = AuthConfig()
    database: DatabaseConfig | None = None
    observability: ObservabilityConfig = ObservabilityConfig()


def _read_env(name: str, env: Mapping[str, str]) -> str | None:
    file_key = f"{name}_FILE"
    path = env.get(file_key)
    if path:
        try:
            return Path(path).read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise RuntimeError(f"Configuration file at '{path}' not found") from exc
    value = env.get(name)
    if value:
        return value.strip()
    return None


def load_config(*, env: Mapping[str, str] | None = None) -> AppConfig:
    """Build :class:`AppConfig` from ``WEBAUTHN_*`` and ``DATABASE_URL`` variables."""

    source = os.environ if env is None else env
    relying_party: dict[str, Any] = {}
    for key, variable in (("id", "WEBAUTHN_RP_ID"), ("name", "WEBAUTHN_RP_NAME"), ("origin", "WEBAUTHN_ORIGIN")):
        value = _read_env(variable, source)
        if value is not None:
            relying_party[key] = value
    auth: dict[str, Any] = {"relying_party": relying_party}
    timeout = _read_env("WEBAUTHN_CEREMONY_TIMEOUT", source)
    if timeout is not None:
        auth["ceremony_timeout_seconds"] = timeout
    try:
        auth_config = msgspec.convert(auth, type=AuthConfig, strict=False)
    except (msgspec.ValidationError, ValueError) as exc:
        raise RuntimeError(f"Invalid authentication configuration: {exc}") from exc
    database = None
    dsn = _read_env("DATABASE_URL", source)
    if dsn is not None:
        database = DatabaseConfig(pool=PoolConfig(dsn=dsn))
    return AppConfig(auth=auth_config, database=database)


__all__ = ["EDDSA", "ES256", "RS256", "AppConfig", "AuthConfig", "RelyingPartyConfig", "load_config"]
