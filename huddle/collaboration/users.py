"""User accounts for team membership.

This module provides the identity side of the team graph:
- UserAccount records with their team pointers
- IdentityStore for durable lookup and update of accounts
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import aiosqlite
import structlog

from huddle.persistence.database import storage_error

if TYPE_CHECKING:
    from huddle.persistence.database import Database

log = structlog.get_logger()


def generate_user_id() -> str:
    """Generate a unique user ID."""
    return secrets.token_hex(16)


@dataclass
class UserAccount:
    """A user account as seen by the team engine.

    Attributes:
        id: Unique user identifier
        username: Unique display handle
        owned_team_id: Team this user created, if any
        active_team_id: Team this user currently represents, if any
        avatar_hash: Content hash of the user's own avatar
        created_at: Account creation time
    """

    id: str
    username: str
    owned_team_id: Optional[str] = None
    active_team_id: Optional[str] = None
    avatar_hash: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def clear_team(self, team_id: str) -> bool:
        """Drop any pointer at a team.

        Returns:
            True if a pointer was cleared
        """
        changed = False
        if self.owned_team_id == team_id:
            self.owned_team_id = None
            changed = True
        if self.active_team_id == team_id:
            self.active_team_id = None
            changed = True
        return changed

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "username": self.username,
            "owned_team_id": self.owned_team_id,
            "active_team_id": self.active_team_id,
            "avatar_hash": self.avatar_hash,
            "created_at": self.created_at.isoformat(),
        }


_COLUMNS = "id, username, owned_team_id, active_team_id, avatar_hash, created_at"


class IdentityStore:
    """Persistent storage for user accounts.

    Every read returns a fresh ``UserAccount``; callers mutate their copy and
    hand it back through ``save``. Methods take an optional open connection
    so several stores can share one engine transaction.
    """

    def __init__(self, database: Optional["Database"] = None):
        """Initialize the identity store.

        Args:
            database: Database instance (creates default if not provided)
        """
        from huddle.persistence.database import Database

        self.db = database or Database()

    async def create_user(self, username: str, avatar_hash: Optional[str] = None) -> UserAccount:
        """Provision a new account with no team pointers.

        Args:
            username: Unique display handle
            avatar_hash: Optional personal avatar hash

        Returns:
            Created UserAccount

        Raises:
            ValueError: If username is empty or already taken
            StorageError: If the database write fails
        """
        username = username.strip()
        if not username:
            raise ValueError("Username cannot be empty")

        user = UserAccount(id=generate_user_id(), username=username, avatar_hash=avatar_hash)

        async with self.db.transaction() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        user.id,
                        user.username,
                        None,
                        None,
                        user.avatar_hash,
                        user.created_at.isoformat(),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise ValueError(f"Username '{username}' already exists") from e

        log.info("user_created", user_id=user.id, username=username)
        return user

    async def find(
        self, user_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[UserAccount]:
        """Get a user by ID.

        Args:
            user_id: User ID
            conn: Open connection to read through (optional)

        Returns:
            UserAccount if found, None otherwise
        """
        row = await self._fetch_one(
            f"SELECT {_COLUMNS} FROM users WHERE id = ?", (user_id,), conn
        )
        return self._row_to_user(row) if row else None

    async def find_by_username(self, username: str) -> Optional[UserAccount]:
        """Get a user by username."""
        row = await self._fetch_one(
            f"SELECT {_COLUMNS} FROM users WHERE username = ?", (username,), None
        )
        return self._row_to_user(row) if row else None

    async def find_many(
        self, user_ids: list[str], conn: Optional[aiosqlite.Connection] = None
    ) -> dict[str, UserAccount]:
        """Get several users keyed by ID; missing IDs are simply absent."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        rows = await self._fetch_all(
            f"SELECT {_COLUMNS} FROM users WHERE id IN ({placeholders})",
            list(user_ids),
            conn,
        )
        return {row[0]: self._row_to_user(row) for row in rows}

    async def find_referencing_team(
        self, team_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> list[UserAccount]:
        """Get every user whose owned or active pointer names a team."""
        rows = await self._fetch_all(
            f"""
            SELECT {_COLUMNS} FROM users
            WHERE owned_team_id = ? OR active_team_id = ?
            ORDER BY id
            """,
            (team_id, team_id),
            conn,
        )
        return [self._row_to_user(row) for row in rows]

    async def list_users(self, limit: int = 500, offset: int = 0) -> list[UserAccount]:
        """List users ordered by ID with pagination."""
        rows = await self._fetch_all(
            f"SELECT {_COLUMNS} FROM users ORDER BY id LIMIT ? OFFSET ?",
            (limit, offset),
            None,
        )
        return [self._row_to_user(row) for row in rows]

    async def save(self, user: UserAccount, conn: Optional[aiosqlite.Connection] = None) -> bool:
        """Persist a user's mutable fields.

        Args:
            user: Account to write back
            conn: Open transaction to write through (optional)

        Returns:
            True if the account existed and was updated

        Raises:
            StorageError: If the database write fails
        """
        sql = """
            UPDATE users
            SET username = ?, owned_team_id = ?, active_team_id = ?, avatar_hash = ?
            WHERE id = ?
        """
        params = (
            user.username,
            user.owned_team_id,
            user.active_team_id,
            user.avatar_hash,
            user.id,
        )

        try:
            if conn is not None:
                cursor = await conn.execute(sql, params)
            else:
                async with self.db.transaction() as own:
                    cursor = await own.execute(sql, params)
        except aiosqlite.Error as e:
            raise storage_error(e, "save_user") from e

        updated = cursor.rowcount > 0
        if updated:
            log.debug("user_saved", user_id=user.id)
        return updated

    # ========== Helper Methods ==========

    async def _fetch_one(self, sql: str, params, conn: Optional[aiosqlite.Connection]):
        try:
            if conn is not None:
                cursor = await conn.execute(sql, params)
                return await cursor.fetchone()
            async with self.db.snapshot() as own:
                cursor = await own.execute(sql, params)
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise storage_error(e, "read_user") from e

    async def _fetch_all(self, sql: str, params, conn: Optional[aiosqlite.Connection]):
        try:
            if conn is not None:
                cursor = await conn.execute(sql, params)
                return await cursor.fetchall()
            async with self.db.snapshot() as own:
                cursor = await own.execute(sql, params)
                return await cursor.fetchall()
        except aiosqlite.Error as e:
            raise storage_error(e, "read_users") from e

    def _row_to_user(self, row) -> UserAccount:
        """Convert a database row to a UserAccount object."""
        return UserAccount(
            id=row[0],
            username=row[1],
            owned_team_id=row[2],
            active_team_id=row[3],
            avatar_hash=row[4],
            created_at=datetime.fromisoformat(row[5]) if row[5] else datetime.now(),
        )
