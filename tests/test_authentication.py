from __future__ import annotations

import asyncio
import json
import logging

import pytest
from msgspec import structs

from thalora.authentication import AuthenticationCore, normalize_email, normalize_username
from thalora.config import AuthConfig, RelyingPartyConfig
from thalora.exceptions import (
    ChallengeMismatch,
    CeremonyExpired,
    Conflict,
    CounterReplay,
    HandleMismatch,
    InvalidInput,
    NoCeremonyInProgress,
    NotFound,
    OriginMismatch,
    SignatureInvalid,
    StorageError,
    Unauthenticated,
    UsernameMismatch,
)
from thalora.models import LoginOptions, PublicUser, RegistrationOptions
from thalora.observability import Observability, ObservabilityConfig
from thalora.repository import InMemoryUserRepository
from thalora.sessions import USER_ID_KEY, MemorySession
from tests.support import ORIGIN, RP_ID, FailingUserRepository, FakeClock, SoftwareAuthenticator

pytestmark = pytest.mark.asyncio


def _core(
    repository: InMemoryUserRepository | None = None,
    *,
    clock: FakeClock | None = None,
    observability: Observability | None = None,
) -> AuthenticationCore:
    config = AuthConfig(relying_party=RelyingPartyConfig(id=RP_ID, origin=ORIGIN))
    return AuthenticationCore(
        config,
        repository or InMemoryUserRepository(),
        clock=clock or FakeClock(),
        observability=observability or Observability(ObservabilityConfig(opentelemetry_enabled=False)),
    )


async def _register(
    core: AuthenticationCore,
    session: MemorySession,
    authenticator: SoftwareAuthenticator,
    username: str = "alice",
    email: str = "alice@example.com",
) -> PublicUser:
    options = await core.begin_registration(session, username, email)
    return await core.complete_registration(session, options.user_id, authenticator.create(options.challenge))


async def test_registration_happy_path() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    session = MemorySession()
    authenticator = SoftwareAuthenticator()

    options = await core.begin_registration(session, "  alice ", " Alice@Example.COM ")
    assert isinstance(options, RegistrationOptions)
    assert options.rp.id == RP_ID
    assert options.rp.name == "Thalora URL Shortener"
    assert options.user.name == "alice"
    assert options.user.id == options.user_id
    assert options.timeout == 60_000
    assert [param.alg for param in options.pub_key_cred_params] == [-7, -257]
    assert options.authenticator_selection.resident_key == "preferred"
    assert options.authenticator_selection.require_resident_key is False
    assert options.attestation == "none"

    user = await core.complete_registration(session, options.user_id, authenticator.create(options.challenge))
    assert user.username == "alice"
    assert user.email == "alice@example.com"
    assert session.get(USER_ID_KEY) == user.user_id

    stored = await repository.find_user_by_id(user.user_id)
    assert stored is not None
    assert stored.credential.credential_id == authenticator.credential_id
    assert stored.credential.counter == 0

    with pytest.raises(NoCeremonyInProgress):
        await core.complete_registration(session, options.user_id, authenticator.create(options.challenge))


async def test_registration_rejects_taken_username_and_email() -> None:
    core = _core()
    await _register(core, MemorySession(), SoftwareAuthenticator())
    with pytest.raises(Conflict):
        await core.begin_registration(MemorySession(), "alice", "other@example.com")
    with pytest.raises(Conflict):
        await core.begin_registration(MemorySession(), "bob", "ALICE@example.com")


@pytest.mark.parametrize(
    ("username", "email"),
    [
        ("", "a@example.com"),
        ("   ", "a@example.com"),
        ("x" * 256, "a@example.com"),
        ("alice", "not-an-email"),
        ("alice", ""),
        ("alice", "a@" + "x" * 320),
    ],
)
async def test_registration_input_validation(username: str, email: str) -> None:
    core = _core()
    session = MemorySession()
    with pytest.raises(InvalidInput):
        await core.begin_registration(session, username, email)
    assert len(core.ceremonies) == 0


async def test_registration_handle_mismatch_keeps_ceremony() -> None:
    core = _core()
    session = MemorySession()
    authenticator = SoftwareAuthenticator()
    options = await core.begin_registration(session, "alice", "alice@example.com")
    credential = authenticator.create(options.challenge)

    with pytest.raises(HandleMismatch):
        await core.complete_registration(session, "AAAAAAAAAAAAAAAAAAAAAA", credential)
    assert USER_ID_KEY not in session

    user = await core.complete_registration(session, options.user_id, credential)
    assert session.get(USER_ID_KEY) == user.user_id


async def test_registration_without_begin_fails() -> None:
    core = _core()
    with pytest.raises(NoCeremonyInProgress) as excinfo:
        await core.complete_registration(MemorySession(), "AA", SoftwareAuthenticator().create("AA"))
    assert excinfo.value.status == 400


async def test_registration_challenge_from_other_session_rejected() -> None:
    core = _core()
    first, second = MemorySession(), MemorySession()
    authenticator = SoftwareAuthenticator()
    options_first = await core.begin_registration(first, "alice", "alice@example.com")
    options_second = await core.begin_registration(second, "alice", "alice@example.com")

    with pytest.raises(ChallengeMismatch):
        await core.complete_registration(second, options_second.user_id, authenticator.create(options_first.challenge))


async def test_registration_expired_ceremony() -> None:
    clock = FakeClock()
    core = _core(clock=clock)
    session = MemorySession()
    options = await core.begin_registration(session, "alice", "alice@example.com")
    clock.advance(61)
    with pytest.raises(CeremonyExpired):
        await core.complete_registration(session, options.user_id, SoftwareAuthenticator().create(options.challenge))
    with pytest.raises(NoCeremonyInProgress):
        await core.complete_registration(session, options.user_id, SoftwareAuthenticator().create(options.challenge))


async def test_concurrent_registration_single_winner() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    sessions = [MemorySession(), MemorySession()]
    authenticators = [SoftwareAuthenticator(), SoftwareAuthenticator()]
    options = [await core.begin_registration(session, "alice", "alice@example.com") for session in sessions]

    results = await asyncio.gather(
        *(
            core.complete_registration(session, option.user_id, authenticator.create(option.challenge))
            for session, option, authenticator in zip(sessions, options, authenticators)
        ),
        return_exceptions=True,
    )

    winners = [item for item in results if isinstance(item, PublicUser)]
    losers = [item for item in results if isinstance(item, Conflict)]
    assert len(winners) == 1
    assert len(losers) == 1
    loser_session = sessions[results.index(losers[0])]
    assert USER_ID_KEY not in loser_session
    assert len(core.ceremonies) == 0


async def test_storage_failure_during_registration_is_translated() -> None:
    repository = FailingUserRepository(failing={"create_user"})
    core = _core(repository)
    session = MemorySession()
    options = await core.begin_registration(session, "alice", "alice@example.com")

    with pytest.raises(StorageError) as excinfo:
        await core.complete_registration(session, options.user_id, SoftwareAuthenticator().create(options.challenge))
    assert excinfo.value.detail == "internal_error"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert USER_ID_KEY not in session

    repository.failing.clear()
    user = await core.complete_registration(
        session, options.user_id, SoftwareAuthenticator().create(options.challenge)
    )
    assert user.username == "alice"


async def test_login_happy_path_advances_counter() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator()
    user = await _register(core, MemorySession(), authenticator)

    session = MemorySession()
    options = await core.begin_login(session, " alice ")
    assert isinstance(options, LoginOptions)
    assert options.rp_id == RP_ID
    assert options.timeout == 60_000
    assert [item.id for item in options.allow_credentials] == [authenticator.encoded_credential_id]
    assert options.allow_credentials[0].transports == ("internal",)

    logged_in = await core.complete_login(session, "alice", authenticator.get(options.challenge))
    assert logged_in.user_id == user.user_id
    assert session.get(USER_ID_KEY) == user.user_id
    stored = await repository.find_user_by_id(user.user_id)
    assert stored is not None and stored.credential.counter == 1


async def test_login_unknown_user() -> None:
    core = _core()
    with pytest.raises(NotFound) as excinfo:
        await core.begin_login(MemorySession(), "ghost")
    assert excinfo.value.status == 404


async def test_login_replayed_counter_rejected() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator()
    user = await _register(core, MemorySession(), authenticator)

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    await core.complete_login(session, "alice", authenticator.get(options.challenge, counter=5))

    replay_session = MemorySession()
    options = await core.begin_login(replay_session, "alice")
    with pytest.raises(CounterReplay):
        await core.complete_login(replay_session, "alice", authenticator.get(options.challenge, counter=5))
    assert USER_ID_KEY not in replay_session
    stored = await repository.find_user_by_id(user.user_id)
    assert stored is not None and stored.credential.counter == 5


async def test_login_with_unchanged_counter_rejected() -> None:
    core = _core()
    authenticator = SoftwareAuthenticator()
    await _register(core, MemorySession(), authenticator)

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with pytest.raises(CounterReplay):
        await core.complete_login(session, "alice", authenticator.get(options.challenge, counter=0))
    assert USER_ID_KEY not in session


async def test_login_wrong_origin_keeps_ceremony_for_retry() -> None:
    core = _core()
    authenticator = SoftwareAuthenticator()
    await _register(core, MemorySession(), authenticator)

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with pytest.raises(OriginMismatch):
        await core.complete_login(session, "alice", authenticator.get(options.challenge, origin="https://evil.example"))
    assert USER_ID_KEY not in session

    user = await core.complete_login(session, "alice", authenticator.get(options.challenge))
    assert session.get(USER_ID_KEY) == user.user_id


async def test_registration_stores_zero_counter() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator(counter=7)
    user = await _register(core, MemorySession(), authenticator)

    stored = await repository.find_user_by_id(user.user_id)
    assert stored is not None
    assert stored.credential.counter == 0

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    await core.complete_login(session, "alice", authenticator.get(options.challenge, counter=1))
    stored = await repository.find_user_by_id(user.user_id)
    assert stored is not None
    assert stored.credential.counter == 1


async def test_login_with_corrupt_stored_key_keeps_ceremony() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator()
    user = await _register(core, MemorySession(), authenticator)
    healthy = repository._users[user.user_id]
    repository._users[user.user_id] = structs.replace(
        healthy,
        credential=structs.replace(healthy.credential, public_key=b"\x00garbage"),
    )

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with pytest.raises(StorageError):
        await core.complete_login(session, "alice", authenticator.get(options.challenge))
    assert USER_ID_KEY not in session
    assert len(core.ceremonies) == 1

    repository._users[user.user_id] = healthy
    logged_in = await core.complete_login(session, "alice", authenticator.get(options.challenge))
    assert session.get(USER_ID_KEY) == logged_in.user_id


async def test_login_username_mismatch() -> None:
    core = _core()
    authenticator = SoftwareAuthenticator()
    await _register(core, MemorySession(), authenticator)
    await _register(core, MemorySession(), SoftwareAuthenticator(), "bob", "bob@example.com")

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with pytest.raises(UsernameMismatch):
        await core.complete_login(session, "bob", authenticator.get(options.challenge))
    assert USER_ID_KEY not in session


async def test_login_with_other_users_key_fails() -> None:
    core = _core()
    alice = SoftwareAuthenticator()
    mallory = SoftwareAuthenticator()
    await _register(core, MemorySession(), alice)
    mallory.credential_id = alice.credential_id

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with pytest.raises(SignatureInvalid):
        await core.complete_login(session, "alice", mallory.get(options.challenge))


async def test_login_for_deleted_user_clears_session() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator()
    user = await _register(core, MemorySession(), authenticator)

    session = MemorySession()
    session.set(USER_ID_KEY, user.user_id)
    options = await core.begin_login(session, "alice")
    await repository.delete_user(user.user_id)

    with pytest.raises(NotFound):
        await core.complete_login(session, "alice", authenticator.get(options.challenge))
    assert USER_ID_KEY not in session
    with pytest.raises(NoCeremonyInProgress):
        await core.complete_login(session, "alice", authenticator.get(options.challenge))


async def test_counter_update_failure_is_logged_not_fatal(caplog: pytest.LogCaptureFixture) -> None:
    repository = FailingUserRepository()
    core = _core(repository)
    authenticator = SoftwareAuthenticator()
    await _register(core, MemorySession(), authenticator)
    repository.failing.add("update_credential_counter")

    session = MemorySession()
    options = await core.begin_login(session, "alice")
    with caplog.at_level(logging.WARNING, logger="thalora.authentication"):
        user = await core.complete_login(session, "alice", authenticator.get(options.challenge))

    assert session.get(USER_ID_KEY) == user.user_id
    assert any("credential counter" in record.getMessage() for record in caplog.records)


async def test_logout_is_idempotent_and_drops_ceremonies() -> None:
    core = _core()
    authenticator = SoftwareAuthenticator()
    session = MemorySession()
    await _register(core, session, authenticator)
    await core.begin_login(session, "alice")

    await core.logout(session)
    await core.logout(session)

    assert USER_ID_KEY not in session
    assert len(core.ceremonies) == 0
    with pytest.raises(Unauthenticated):
        await core.current_user(session)


async def test_current_user_and_require_user() -> None:
    core = _core()
    session = MemorySession()
    with pytest.raises(Unauthenticated) as excinfo:
        core.require_user(session)
    assert excinfo.value.detail == "not_authenticated"
    assert excinfo.value.status == 401

    user = await _register(core, session, SoftwareAuthenticator())
    assert core.require_user(session) == user.user_id
    current = await core.current_user(session)
    assert current.username == "alice"
    assert current.created_at is not None


async def test_current_user_clears_stale_session() -> None:
    repository = InMemoryUserRepository()
    core = _core(repository)
    session = MemorySession()
    user = await _register(core, session, SoftwareAuthenticator())
    await repository.delete_user(user.user_id)

    with pytest.raises(Unauthenticated):
        await core.current_user(session)
    assert len(session) == 0


async def test_cancel_helpers() -> None:
    core = _core()
    session = MemorySession()
    await core.begin_registration(session, "alice", "alice@example.com")
    assert await core.cancel_registration(session) is True
    assert await core.cancel_login(session) is False
    assert len(core.ceremonies) == 0


async def test_ceremony_events_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    core = _core()
    session = MemorySession()
    with caplog.at_level(logging.INFO, logger="thalora.observability"):
        await core.begin_registration(session, "alice", "alice@example.com")
        with pytest.raises(NoCeremonyInProgress):
            await core.complete_login(session, "alice", SoftwareAuthenticator().get("AA"))

    events = [
        json.loads(record.message) for record in caplog.records if record.name == "thalora.observability"
    ]
    assert [event["event"] for event in events] == [
        "ceremony.start",
        "ceremony.success",
        "ceremony.start",
        "ceremony.error",
    ]
    assert events[1]["ceremony"] == "registration"
    assert events[3]["error"] == "no_ceremony_in_progress"


async def test_normalizers() -> None:
    assert normalize_username("  bob ") == "bob"
    assert normalize_email(" Bob@Example.org ") == "bob@example.org"
    with pytest.raises(InvalidInput):
        normalize_username(42)
    with pytest.raises(InvalidInput):
        normalize_email(None)
