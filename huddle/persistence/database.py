"""SQLite database setup for Huddle."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite
import structlog

from huddle.core.errors import StorageError

log = structlog.get_logger()

# Current schema version for migration tracking
# Version 1: users, teams, team_members, assets
SCHEMA_VERSION = 1


def storage_error(e: aiosqlite.Error, operation: str) -> StorageError:
    """Translate a driver error into a StorageError.

    SQLite reports lock contention as ``database is locked``; that case is
    flagged busy so callers can surface it as retryable.
    """
    message = str(e)
    busy = isinstance(e, aiosqlite.OperationalError) and "locked" in message.lower()
    log.warning("storage_error", operation=operation, error=message, busy=busy)
    return StorageError(f"{operation} failed: {message}", busy=busy)


class Database:
    """Manages SQLite database connections, schema and transactions."""

    def __init__(self, db_path: Optional[Path] = None, busy_timeout: float = 5.0):
        """Initialize database manager.

        Args:
            db_path: Path to the database file. Defaults to ~/.huddle/huddle.db
            busy_timeout: Seconds SQLite waits on a locked database
        """
        if db_path is None:
            db_path = Path.home() / ".huddle" / "huddle.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._initialized = False

    async def _get_schema_version(self, db: aiosqlite.Connection) -> int:
        """Get current schema version from database."""
        async with db.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def initialize(self):
        """Create database schema if it doesn't exist."""
        if self._initialized:
            return

        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                current_version = await self._get_schema_version(db)

                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        username TEXT UNIQUE NOT NULL,
                        owned_team_id TEXT,
                        active_team_id TEXT,
                        avatar_hash TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """
                )

                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS teams (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        bio TEXT DEFAULT '',
                        owner_id TEXT NOT NULL,
                        invite_token TEXT NOT NULL,
                        avatar_hash TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """
                )

                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS team_members (
                        team_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (team_id, user_id),
                        FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
                    )
                """
                )

                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS assets (
                        hash TEXT PRIMARY KEY,
                        category TEXT NOT NULL,
                        size INTEGER NOT NULL,
                        ref_count INTEGER NOT NULL DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """
                )

                # One owner per team, one owned team per user
                await db.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_teams_owner
                    ON teams(owner_id)
                """
                )

                await db.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_members_user
                    ON team_members(user_id)
                """
                )

                await db.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_users_active_team
                    ON users(active_team_id)
                """
                )

                await db.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_users_owned_team
                    ON users(owned_team_id)
                """
                )

                if current_version < SCHEMA_VERSION:
                    await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

                await db.commit()
        except aiosqlite.Error as e:
            raise storage_error(e, "initialize") from e

        self._initialized = True
        log.info("database_initialized", path=str(self.db_path))

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.initialize()
        async with aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        ) as conn:
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block as one write transaction.

        The transaction takes SQLite's write lock up front. Any exception,
        cancellation included, rolls everything back. The commit is shielded:
        once it starts it completes even if the caller is cancelled, and the
        CancelledError is re-raised only after it has landed.

        Raises:
            StorageError: If the database cannot begin or commit
        """
        try:
            async with self._connect() as conn:
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise
                commit = asyncio.ensure_future(conn.execute("COMMIT"))
                try:
                    await asyncio.shield(commit)
                except asyncio.CancelledError:
                    # Let the commit land before the connection closes
                    await commit
                    raise
        except aiosqlite.Error as e:
            raise storage_error(e, "transaction") from e

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of reads against one consistent snapshot.

        Raises:
            StorageError: If the database cannot be read
        """
        try:
            async with self._connect() as conn:
                await conn.execute("BEGIN")
                try:
                    yield conn
                finally:
                    await conn.execute("ROLLBACK")
        except aiosqlite.Error as e:
            raise storage_error(e, "snapshot") from e
