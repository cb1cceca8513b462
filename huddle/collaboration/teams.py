"""Teams for competitive participation.

This module provides the team side of the membership graph:
- Team records with owner, member set and invite token
- Invite token and team ID generation
- TeamStore for durable storage of teams and their member sets
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


def generate_team_id() -> str:
    """Generate a unique team ID."""
    return secrets.token_hex(12)


def generate_invite_token() -> str:
    """Generate an unguessable invite token.

    16 bytes from the OS CSPRNG, hex encoded for transport.
    """
    return secrets.token_hex(16)


@dataclass
class Team:
    """A team of users.

    Attributes:
        id: Unique team identifier
        name: Display name
        bio: Short description
        owner_id: User ID of the creator, immutable
        member_ids: IDs of every member, owner included
        invite_token: Secret required to join
        avatar_hash: Content hash of the team avatar
        created_at: Creation timestamp
    """

    id: str
    name: str
    owner_id: str
    bio: str = ""
    member_ids: set[str] = field(default_factory=set)
    invite_token: str = field(default_factory=generate_invite_token)
    avatar_hash: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.member_ids = set(self.member_ids)

    def has_member(self, user_id: str) -> bool:
        return user_id in self.member_ids

    def token_matches(self, presented: str) -> bool:
        """Compare a presented invite token in constant time."""
        if not presented:
            return False
        return secrets.compare_digest(presented.encode(), self.invite_token.encode())

    def to_dict(self, include_invite_token: bool = False) -> dict:
        """Convert to dictionary for serialization.

        Args:
            include_invite_token: Include invite token (default False for security)

        Returns:
            Dictionary representation
        """
        result = {
            "id": self.id,
            "name": self.name,
            "bio": self.bio,
            "owner_id": self.owner_id,
            "member_ids": sorted(self.member_ids),
            "avatar_hash": self.avatar_hash,
            "created_at": self.created_at.isoformat(),
        }
        if include_invite_token:
            result["invite_token"] = self.invite_token
        return result


class TeamStore:
    """Persistent storage for teams and their member sets.

    Reads return fresh ``Team`` objects. ``save`` writes the team row and
    makes the stored member set equal to ``team.member_ids``. Methods take
    an optional open connection so the engine can group writes to several
    records into one transaction.
    """

    def __init__(self, database: Optional["Database"] = None):
        """Initialize the team store.

        Args:
            database: Database instance (creates default if not provided)
        """
        from huddle.persistence.database import Database

        self.db = database or Database()

    async def find(
        self, team_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[Team]:
        """Get a team by ID, members included.

        Args:
            team_id: Team ID
            conn: Open connection to read through (optional)

        Returns:
            Team if found, None otherwise
        """
        try:
            if conn is not None:
                return await self._load(conn, team_id)
            async with self.db.snapshot() as own:
                return await self._load(own, team_id)
        except aiosqlite.Error as e:
            raise storage_error(e, "find_team") from e

    async def save(self, team: Team, conn: Optional[aiosqlite.Connection] = None) -> bool:
        """Insert or update a team and its member set.

        Args:
            team: Team to persist
            conn: Open transaction to write through (optional)

        Returns:
            True once written

        Raises:
            StorageError: If the database write fails
        """
        try:
            if conn is not None:
                await self._write(conn, team)
            else:
                async with self.db.transaction() as own:
                    await self._write(own, team)
        except aiosqlite.Error as e:
            raise storage_error(e, "save_team") from e

        log.debug("team_saved", team_id=team.id, members=len(team.member_ids))
        return True

    async def delete(self, team: Team, conn: Optional[aiosqlite.Connection] = None) -> bool:
        """Delete a team; its member rows go with it.

        Args:
            team: Team to delete
            conn: Open transaction to write through (optional)

        Returns:
            True if the team existed

        Raises:
            StorageError: If the database write fails
        """
        sql = "DELETE FROM teams WHERE id = ?"
        try:
            if conn is not None:
                cursor = await conn.execute(sql, (team.id,))
            else:
                async with self.db.transaction() as own:
                    cursor = await own.execute(sql, (team.id,))
        except aiosqlite.Error as e:
            raise storage_error(e, "delete_team") from e

        deleted = cursor.rowcount > 0
        if deleted:
            log.debug("team_record_deleted", team_id=team.id)
        return deleted

    async def teams_for_user(
        self, user_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> list[str]:
        """Get the IDs of every team a user belongs to, oldest membership first."""
        sql = "SELECT team_id FROM team_members WHERE user_id = ? ORDER BY joined_at, team_id"
        try:
            if conn is not None:
                cursor = await conn.execute(sql, (user_id,))
                rows = await cursor.fetchall()
            else:
                async with self.db.snapshot() as own:
                    cursor = await own.execute(sql, (user_id,))
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise storage_error(e, "teams_for_user") from e

        return [row[0] for row in rows]

    async def list_teams(self, limit: int = 50, offset: int = 0) -> list[Team]:
        """List teams, newest first, with pagination."""
        try:
            async with self.db.snapshot() as conn:
                cursor = await conn.execute(
                    "SELECT id FROM teams ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                    (limit, offset),
                )
                ids = [row[0] for row in await cursor.fetchall()]
                teams = [await self._load(conn, team_id) for team_id in ids]
        except aiosqlite.Error as e:
            raise storage_error(e, "list_teams") from e

        return [team for team in teams if team is not None]

    # ========== Helper Methods ==========

    async def _load(self, conn: aiosqlite.Connection, team_id: str) -> Optional[Team]:
        cursor = await conn.execute(
            """
            SELECT id, name, bio, owner_id, invite_token, avatar_hash, created_at
            FROM teams WHERE id = ?
            """,
            (team_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None

        cursor = await conn.execute(
            "SELECT user_id FROM team_members WHERE team_id = ?",
            (team_id,),
        )
        member_rows = await cursor.fetchall()
        return self._row_to_team(row, {m[0] for m in member_rows})

    async def _write(self, conn: aiosqlite.Connection, team: Team) -> None:
        # owner_id is immutable once inserted
        await conn.execute(
            """
            INSERT INTO teams (
                id, name, bio, owner_id, invite_token, avatar_hash, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                bio = excluded.bio,
                invite_token = excluded.invite_token,
                avatar_hash = excluded.avatar_hash
            """,
            (
                team.id,
                team.name,
                team.bio,
                team.owner_id,
                team.invite_token,
                team.avatar_hash,
                team.created_at.isoformat(),
            ),
        )

        cursor = await conn.execute(
            "SELECT user_id FROM team_members WHERE team_id = ?",
            (team.id,),
        )
        stored = {row[0] for row in await cursor.fetchall()}

        for user_id in sorted(stored - team.member_ids):
            await conn.execute(
                "DELETE FROM team_members WHERE team_id = ? AND user_id = ?",
                (team.id, user_id),
            )

        now = datetime.now().isoformat()
        for user_id in sorted(team.member_ids - stored):
            await conn.execute(
                "INSERT INTO team_members (team_id, user_id, joined_at) VALUES (?, ?, ?)",
                (team.id, user_id, now),
            )

    def _row_to_team(self, row, member_ids: set[str]) -> Team:
        """Convert a database row to a Team object."""
        return Team(
            id=row[0],
            name=row[1],
            bio=row[2] or "",
            owner_id=row[3],
            invite_token=row[4],
            avatar_hash=row[5],
            created_at=datetime.fromisoformat(row[6]) if row[6] else datetime.now(),
            member_ids=member_ids,
        )
