"""User storage behind the narrow interface used by the authentication core."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable
from typing import Any, Mapping, Protocol

from .database import Database
from .exceptions import Conflict
from .models import MAX_COUNTER, Credential, User

logger = logging.getLogger(__name__)


class UserRepository(Protocol):
    """Asynchronous user store.

    ``create_user`` is the authority on uniqueness: implementations raise
    :class:`Conflict` when the username, email or credential id is taken,
    including when a concurrent caller won the race after an application
    level pre-check.
    """

    async def find_user_by_username(self, username: str) -> User | None: ...

    async def find_user_by_email(self, email: str) -> User | None: ...

    async def find_user_by_id(self, user_id: int) -> User | None: ...

    async def create_user(
        self,
        username: str,
        email: str,
        public_key: bytes,
        credential_id: bytes,
        initial_counter: int = 0,
    ) -> int: ...

    async def update_credential_counter(self, user_id: int, new_counter: int) -> bool: ...


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class InMemoryUserRepository:
    """Process-local :class:`UserRepository` with unique indexes under a lock."""

    def __init__(self, *, clock: Callable[[], dt.datetime] | None = None) -> None:
        self._users: dict[int, User] = {}
        self._by_username: dict[str, int] = {}
        self._by_email: dict[str, int] = {}
        self._by_credential: dict[bytes, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        self._clock = clock or _utcnow

    async def find_user_by_username(self, username: str) -> User | None:
        user_id = self._by_username.get(username)
        return None if user_id is None else self._users.get(user_id)

    async def find_user_by_email(self, email: str) -> User | None:
        user_id = self._by_email.get(email)
        return None if user_id is None else self._users.get(user_id)

    async def find_user_by_id(self, user_id: int) -> User | None:
        return self._users.get(user_id)

    async def create_user(
        self,
        username: str,
        email: str,
        public_key: bytes,
        credential_id: bytes,
        initial_counter: int = 0,
    ) -> int:
        _check_counter(initial_counter)
        async with self._lock:
            if username in self._by_username:
                raise Conflict("username already exists")
            if email in self._by_email:
                raise Conflict("email already exists")
            if credential_id in self._by_credential:
                raise Conflict("credential already registered")
            user_id = self._next_id
            self._next_id += 1
            now = self._clock()
            self._users[user_id] = User(
                id=user_id,
                username=username,
                email=email,
                credential=Credential(credential_id=credential_id, public_key=public_key, counter=initial_counter),
                created_at=now,
                updated_at=now,
            )
            self._by_username[username] = user_id
            self._by_email[email] = user_id
            self._by_credential[credential_id] = user_id
            return user_id

    async def update_credential_counter(self, user_id: int, new_counter: int) -> bool:
        _check_counter(new_counter)
        async with self._lock:
            user = self._users.get(user_id)
            if user is None or new_counter <= user.credential.counter:
                return False
            credential = Credential(
                credential_id=user.credential.credential_id,
                public_key=user.credential.public_key,
                counter=new_counter,
            )
            self._users[user_id] = User(
                id=user.id,
                username=user.username,
                email=user.email,
                credential=credential,
                created_at=user.created_at,
                updated_at=self._clock(),
            )
            return True

    async def delete_user(self, user_id: int) -> bool:
        async with self._lock:
            user = self._users.pop(user_id, None)
            if user is None:
                return False
            self._by_username.pop(user.username, None)
            self._by_email.pop(user.email, None)
            self._by_credential.pop(user.credential.credential_id, None)
            return True


USERS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id BIGSERIAL PRIMARY KEY,
    username VARCHAR(255) NOT NULL UNIQUE,
    email VARCHAR(320) NOT NULL UNIQUE,
    passkey_public_key BYTEA NOT NULL,
    passkey_credential_id BYTEA NOT NULL UNIQUE,
    passkey_counter BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ix_users_username ON users (username);
CREATE INDEX IF NOT EXISTS ix_users_email ON users (email);
CREATE INDEX IF NOT EXISTS ix_users_credential_id ON users (passkey_credential_id);
CREATE INDEX IF NOT EXISTS ix_users_created_at ON users (created_at);
"""

_USER_COLUMNS = (
    "id, username, email, passkey_public_key, passkey_credential_id, passkey_counter, created_at, updated_at"
)


class PostgresUserRepository:
    """:class:`UserRepository` backed by the ``users`` table.

    Inserts use ``ON CONFLICT DO NOTHING`` so the table's unique constraints
    decide races; an insert that returns no row is reported as
    :class:`Conflict`.
    """

    def __init__(self, database: Database, *, table: str = "users") -> None:
        self.database = database
        self.table = table

    async def ensure_schema(self) -> None:
        async with self._connection() as connection:
            await connection.execute_batch(USERS_TABLE_DDL.replace("users", self.table))

    async def find_user_by_username(self, username: str) -> User | None:
        return await self._find_one("username", username)

    async def find_user_by_email(self, email: str) -> User | None:
        return await self._find_one("email", email)

    async def find_user_by_id(self, user_id: int) -> User | None:
        return await self._find_one("id", user_id)

    async def create_user(
        self,
        username: str,
        email: str,
        public_key: bytes,
        credential_id: bytes,
        initial_counter: int = 0,
    ) -> int:
        _check_counter(initial_counter)
        query = (
            f"INSERT INTO {self.table} "
            "(username, email, passkey_public_key, passkey_credential_id, passkey_counter) "
            "VALUES ($1, $2, $3, $4, $5) ON CONFLICT DO NOTHING RETURNING id"
        )
        async with self._connection() as connection:
            user_id = await connection.fetch_value(query, [username, email, public_key, credential_id, initial_counter])
        if user_id is None:
            raise Conflict("username, email or credential already exists")
        logger.info("Created user %s (id=%s)", username, user_id)
        return int(user_id)

    async def update_credential_counter(self, user_id: int, new_counter: int) -> bool:
        _check_counter(new_counter)
        query = (
            f"UPDATE {self.table} SET passkey_counter = $1, updated_at = now() "
            "WHERE id = $2 AND passkey_counter < $1 RETURNING id"
        )
        async with self._connection() as connection:
            updated = await connection.fetch_value(query, [new_counter, user_id])
        return updated is not None

    async def _find_one(self, column: str, value: Any) -> User | None:
        query = f"SELECT {_USER_COLUMNS} FROM {self.table} WHERE {column} = $1"
        async with self._connection() as connection:
            row = await connection.fetch_one(query, [value])
        return None if row is None else _user_from_row(row)

    def _connection(self):
        return self.database.connection()


def _user_from_row(row: Mapping[str, Any]) -> User:
    return User(
        id=int(row["id"]),
        username=row["username"],
        email=row["email"],
        credential=Credential(
            credential_id=bytes(row["passkey_credential_id"]),
            public_key=bytes(row["passkey_public_key"]),
            counter=int(row["passkey_counter"]),
        ),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _check_counter(value: int) -> None:
    if value < 0 or value > MAX_COUNTER:
        raise ValueError(f"counter {value} outside 0..{MAX_COUNTER}")


__all__ = [
    "USERS_TABLE_DDL",
    "InMemoryUserRepository",
    "PostgresUserRepository",
    "UserRepository",
]
