"""Team membership engine.

The engine is the only component that mutates the Team / UserAccount
relationship graph. Each operation:
- takes the per-entity locks it needs (teams before users)
- loads the records it touches inside one database transaction
- checks every precondition before changing anything
- writes all changed records and commits, or rolls back entirely

Operations return a ``Result``; precondition, lock and storage failures are
reported there instead of raised. Asyncio cancellation before commit rolls
the transaction back; once the commit has started it completes.
"""

from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Optional

import aiosqlite
import structlog

from huddle.collaboration.assets import AssetRegistry
from huddle.collaboration.authorization import AuthorizationGuard
from huddle.collaboration.teams import (
    Team,
    TeamStore,
    generate_invite_token,
    generate_team_id,
)
from huddle.collaboration.users import IdentityStore, UserAccount
from huddle.config import DEFAULT_MAX_AVATAR_BYTES, HuddleConfig
from huddle.core.errors import (
    ErrorKind,
    LockTimeout,
    MembershipError,
    Result,
    StorageError,
)
from huddle.core.locks import LockManager, team_key, user_key
from huddle.persistence.database import Database

log = structlog.get_logger()

AVATAR_CATEGORY = "avatar"


@dataclass
class TeamInfo:
    """Public view of a team.

    Attributes:
        id: Team ID
        name: Display name
        bio: Short description
        owner_id: User ID of the owner
        avatar_url: URL of the team avatar, if set
        members: One entry per member with id, username and avatar_url
    """

    id: str
    name: str
    bio: str
    owner_id: str
    avatar_url: Optional[str] = None
    members: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "bio": self.bio,
            "owner_id": self.owner_id,
            "avatar_url": self.avatar_url,
            "members": self.members,
        }


def operation(name: str):
    """Turn an engine coroutine into one that returns a Result.

    Args:
        name: Operation name used in log events
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args, **kwargs) -> Result:
            try:
                value = await func(self, *args, **kwargs)
            except MembershipError as e:
                log.info(
                    "operation_rejected",
                    operation=name,
                    error=e.kind.value,
                    reason=e.message,
                )
                return Result.failure(e.kind, e.message)
            except LockTimeout as e:
                log.warning("operation_busy", operation=name, error=str(e))
                return Result.failure(ErrorKind.BUSY, str(e))
            except StorageError as e:
                kind = ErrorKind.BUSY if e.busy else ErrorKind.STORAGE_FAILURE
                log.error("operation_failed", operation=name, error=str(e), busy=e.busy)
                return Result.failure(kind, str(e))
            return Result.success(value)

        return wrapper

    return decorator


class TeamMembershipEngine:
    """Invariant-preserving mutations over teams and their members."""

    def __init__(
        self,
        database: Optional[Database] = None,
        identities: Optional[IdentityStore] = None,
        teams: Optional[TeamStore] = None,
        assets: Optional[AssetRegistry] = None,
        guard: Optional[AuthorizationGuard] = None,
        locks: Optional[LockManager] = None,
        token_generator: Callable[[], str] = generate_invite_token,
        max_avatar_bytes: int = DEFAULT_MAX_AVATAR_BYTES,
    ):
        """Initialize the engine.

        Args:
            database: Database shared by all stores (creates default if not provided)
            identities: User account store
            teams: Team store
            assets: Blob store for avatars
            guard: Ownership and membership predicates
            locks: Per-entity lock manager
            token_generator: Source of invite tokens
            max_avatar_bytes: Largest accepted avatar upload
        """
        self.db = database or Database()
        self.identities = identities or IdentityStore(self.db)
        self.teams = teams or TeamStore(self.db)
        self.assets = assets or AssetRegistry(self.db)
        self.guard = guard or AuthorizationGuard()
        self.locks = locks or LockManager(timeout=self.db.busy_timeout)
        self.token_generator = token_generator
        self.max_avatar_bytes = max_avatar_bytes

    @classmethod
    def from_config(cls, config: HuddleConfig) -> "TeamMembershipEngine":
        """Build an engine and its stores from configuration."""
        database = Database(config.db_path, busy_timeout=config.lock_timeout_seconds)
        assets = AssetRegistry(
            database,
            root=config.asset_dir,
            url_prefix=config.asset_url_prefix,
            lock_timeout=config.lock_timeout_seconds,
        )
        return cls(
            database=database,
            assets=assets,
            locks=LockManager(timeout=config.lock_timeout_seconds),
            max_avatar_bytes=config.max_avatar_bytes,
        )

    async def initialize(self) -> None:
        """Create the schema if needed."""
        await self.db.initialize()

    # ========== Team lifecycle ==========

    @operation("create_team")
    async def create_team(self, actor_id: str, name: str, bio: str = "") -> Team:
        """Create a team owned by the actor.

        The actor becomes owner and sole member, and the new team becomes
        the actor's active team.

        Fails with ALREADY_OWNS_TEAM if the actor already owns a team and
        INVALID_INPUT if the name is blank.
        """
        async with self.locks.hold(user_key(actor_id)):
            async with self.db.transaction() as conn:
                actor = await self._load_actor(conn, actor_id)

                if actor.owned_team_id is not None:
                    raise MembershipError(
                        ErrorKind.ALREADY_OWNS_TEAM, "Only one team may be created per user"
                    )

                name = (name or "").strip()
                if not name:
                    raise MembershipError(ErrorKind.INVALID_INPUT, "Team name cannot be empty")

                team = Team(
                    id=generate_team_id(),
                    name=name,
                    bio=(bio or "").strip(),
                    owner_id=actor.id,
                    member_ids={actor.id},
                    invite_token=self.token_generator(),
                )
                await self.teams.save(team, conn)

                actor.owned_team_id = team.id
                actor.active_team_id = team.id
                await self._save_user(conn, actor)

        log.info("team_created", team_id=team.id, name=team.name, owner_id=actor.id)
        return team

    @operation("update_team_info")
    async def update_team_info(
        self,
        actor_id: str,
        team_id: str,
        name: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> Team:
        """Change a team's name and/or bio. Omitted fields are kept."""
        async with self.locks.hold(team_key(team_id), user_key(actor_id)):
            async with self.db.transaction() as conn:
                _, team = await self._require_owner(conn, actor_id, team_id)

                if name is not None:
                    name = name.strip()
                    if not name:
                        raise MembershipError(
                            ErrorKind.INVALID_INPUT, "Team name cannot be empty"
                        )
                    team.name = name

                if bio is not None:
                    team.bio = bio.strip()

                await self.teams.save(team, conn)

        log.info("team_updated", team_id=team_id, actor_id=actor_id)
        return team

    @operation("delete_team")
    async def delete_team(self, actor_id: str, team_id: str) -> None:
        """Delete a team and clear every pointer at it.

        Members' and the owner's active pointers and the owner's owned
        pointer are cleared in the same transaction that removes the team.
        """
        # Reject non-owners before locking every member
        async with self.db.snapshot() as conn:
            await self._require_owner(conn, actor_id, team_id)

        async with self.locks.hold(team_key(team_id)):
            async with self.db.snapshot() as conn:
                team = await self._load_team(conn, team_id)
                referencing = await self.identities.find_referencing_team(team_id, conn)

            affected_ids = set(team.member_ids) | {u.id for u in referencing} | {actor_id}

            staged = False
            try:
                async with self.locks.hold(*(user_key(uid) for uid in affected_ids)):
                    async with self.db.transaction() as conn:
                        actor, team = await self._require_owner(conn, actor_id, team_id)

                        affected = await self.identities.find_many(
                            sorted(team.member_ids), conn
                        )
                        for user in await self.identities.find_referencing_team(team_id, conn):
                            affected.setdefault(user.id, user)
                        affected[actor.id] = actor

                        cleared = []
                        for user in affected.values():
                            if user.clear_team(team_id):
                                await self._save_user(conn, user)
                                cleared.append(user.id)

                        await self.teams.delete(team, conn)
                        staged = True
            except BaseException:
                # A cancellation during COMMIT still deletes the team and its avatar reference
                if staged and team.avatar_hash and await self._team_deleted(team_id):
                    await self._release_asset(team.avatar_hash, team_id=team_id)
                raise

        log.info(
            "team_deleted",
            team_id=team_id,
            name=team.name,
            actor_id=actor_id,
            pointers_cleared=len(cleared),
        )

        if team.avatar_hash:
            await self._release_asset(team.avatar_hash, team_id=team_id)

    # ========== Active team ==========

    @operation("set_active_team")
    async def set_active_team(self, actor_id: str, team_id: str) -> UserAccount:
        """Make a team the actor's active team, replacing any previous one."""
        async with self.locks.hold(team_key(team_id), user_key(actor_id)):
            async with self.db.transaction() as conn:
                team = await self._load_team(conn, team_id)
                actor = await self._load_actor(conn, actor_id)

                if not self.guard.is_member(actor, team):
                    raise MembershipError(ErrorKind.NOT_MEMBER, "Not a member of this team")

                actor.active_team_id = team.id
                await self._save_user(conn, actor)

        log.info("active_team_set", team_id=team_id, actor_id=actor_id)
        return actor

    # ========== Invitations ==========

    @operation("get_invite_token")
    async def get_invite_token(self, actor_id: str, team_id: str) -> str:
        """Return the team's current invite token. Owner only."""
        async with self.db.snapshot() as conn:
            _, team = await self._require_owner(conn, actor_id, team_id)
        return team.invite_token

    @operation("rotate_invite_token")
    async def rotate_invite_token(self, actor_id: str, team_id: str) -> str:
        """Replace the invite token; the previous one stops working at once."""
        async with self.locks.hold(team_key(team_id), user_key(actor_id)):
            async with self.db.transaction() as conn:
                _, team = await self._require_owner(conn, actor_id, team_id)

                old_token = team.invite_token
                team.invite_token = self.token_generator()
                while team.invite_token == old_token:
                    team.invite_token = self.token_generator()

                await self.teams.save(team, conn)

        log.info("invite_token_rotated", team_id=team_id, actor_id=actor_id)
        return team.invite_token

    @operation("accept_invite")
    async def accept_invite(self, actor_id: str, team_id: str, presented_token: str) -> Team:
        """Join a team with its invite token.

        The actor's active and owned pointers are left alone.
        """
        async with self.locks.hold(team_key(team_id), user_key(actor_id)):
            async with self.db.transaction() as conn:
                team = await self._load_team(conn, team_id)

                if not team.token_matches(presented_token):
                    raise MembershipError(ErrorKind.INVALID_TOKEN, "Invalid invite token")

                actor = await self._load_actor(conn, actor_id)

                if self.guard.is_member(actor, team):
                    raise MembershipError(
                        ErrorKind.ALREADY_MEMBER, "Already a member of this team"
                    )

                team.member_ids.add(actor.id)
                await self.teams.save(team, conn)

        log.info("member_joined", team_id=team_id, name=team.name, actor_id=actor_id)
        return team

    # ========== Membership ==========

    @operation("kick_member")
    async def kick_member(self, actor_id: str, team_id: str, target_user_id: str) -> Team:
        """Remove a member from a team. Owner only; the owner cannot be kicked."""
        async with self.locks.hold(
            team_key(team_id), user_key(actor_id), user_key(target_user_id)
        ):
            async with self.db.transaction() as conn:
                _, team = await self._require_owner(conn, actor_id, team_id)

                if target_user_id == team.owner_id:
                    raise MembershipError(
                        ErrorKind.FORBIDDEN, "The team owner cannot be kicked"
                    )

                if not team.has_member(target_user_id):
                    raise MembershipError(ErrorKind.NOT_MEMBER, "User is not in this team")

                team.member_ids.discard(target_user_id)

                target = await self.identities.find(target_user_id, conn)
                if target is not None and target.active_team_id == team.id:
                    target.active_team_id = None
                    await self._save_user(conn, target)

                await self.teams.save(team, conn)

        log.info(
            "member_kicked",
            team_id=team_id,
            name=team.name,
            actor_id=actor_id,
            target_id=target_user_id,
        )
        return team

    @operation("leave_team")
    async def leave_team(self, actor_id: str, team_id: str) -> None:
        """Leave a team the actor belongs to.

        The owner cannot leave; deleting the team is the only way out.
        """
        async with self.locks.hold(team_key(team_id), user_key(actor_id)):
            async with self.db.transaction() as conn:
                team = await self._load_team(conn, team_id)
                actor = await self._load_actor(conn, actor_id)

                if team.owner_id == actor.id:
                    raise MembershipError(
                        ErrorKind.FORBIDDEN,
                        "The team owner cannot leave; delete the team instead",
                    )

                if not self.guard.is_member(actor, team):
                    raise MembershipError(ErrorKind.NOT_MEMBER, "Not a member of this team")

                team.member_ids.discard(actor.id)
                await self.teams.save(team, conn)

                if actor.active_team_id == team.id:
                    actor.active_team_id = None
                    await self._save_user(conn, actor)

        log.info("member_left", team_id=team_id, name=team.name, actor_id=actor_id)

    # ========== Avatar ==========

    @operation("set_team_avatar")
    async def set_team_avatar(self, actor_id: str, team_id: str, data: bytes) -> str:
        """Replace the team avatar and return its URL.

        The blob is stored before any lock is taken and the team record is
        committed afterwards. The previous blob is released last; failing to
        release it leaves an orphan that is logged, not an error.
        """
        async with self.db.snapshot() as conn:
            team = await self._load_team(conn, team_id)
            actor = await self._load_actor(conn, actor_id)
            if not self.guard.is_member(actor, team):
                raise MembershipError(ErrorKind.NOT_MEMBER, "Not a member of this team")

        if not data:
            raise MembershipError(ErrorKind.INVALID_ASSET, "Avatar file is empty")

        if len(data) > self.max_avatar_bytes:
            raise MembershipError(
                ErrorKind.INVALID_ASSET,
                f"Avatar is larger than {self.max_avatar_bytes} bytes",
            )

        asset = await self.assets.put(data, AVATAR_CATEGORY)

        staged = False
        old_hash = None
        try:
            async with self.locks.hold(team_key(team_id), user_key(actor_id)):
                async with self.db.transaction() as conn:
                    team = await self._load_team(conn, team_id)
                    actor = await self._load_actor(conn, actor_id)
                    if not self.guard.is_member(actor, team):
                        raise MembershipError(
                            ErrorKind.NOT_MEMBER, "Not a member of this team"
                        )

                    old_hash = team.avatar_hash
                    team.avatar_hash = asset.hash
                    await self.teams.save(team, conn)
                    staged = True
        except BaseException:
            # A cancellation during COMMIT still commits; keep whatever the record names
            if staged and await self._avatar_committed(team_id, asset.hash):
                if old_hash:
                    await self._release_asset(old_hash, team_id=team_id)
            else:
                await self._release_asset(asset.hash, team_id=team_id)
            raise

        log.info(
            "team_avatar_updated",
            team_id=team_id,
            name=team.name,
            actor_id=actor_id,
            hash=asset.hash[:8],
        )

        if old_hash:
            await self._release_asset(old_hash, team_id=team_id)

        return asset.url

    # ========== Reads ==========

    @operation("get_basic_info")
    async def get_basic_info(self, team_id: str) -> TeamInfo:
        """Return a team's public profile and member list."""
        async with self.db.snapshot() as conn:
            team = await self._load_team(conn, team_id)
            members = await self.identities.find_many(sorted(team.member_ids), conn)

        return TeamInfo(
            id=team.id,
            name=team.name,
            bio=team.bio,
            owner_id=team.owner_id,
            avatar_url=self._avatar_url(team.avatar_hash),
            members=[
                {
                    "id": user.id,
                    "username": user.username,
                    "avatar_url": self._avatar_url(user.avatar_hash),
                }
                for user in sorted(members.values(), key=lambda u: u.username)
            ],
        )

    @operation("list_user_teams")
    async def list_user_teams(self, user_id: str) -> list[Team]:
        """Return every team a user belongs to."""
        async with self.db.snapshot() as conn:
            await self._load_actor(conn, user_id)
            team_ids = await self.teams.teams_for_user(user_id, conn)
            teams = [await self.teams.find(team_id, conn) for team_id in team_ids]
        return [team for team in teams if team is not None]

    # ========== Helper Methods ==========

    async def _load_actor(self, conn: aiosqlite.Connection, user_id: str) -> UserAccount:
        user = await self.identities.find(user_id, conn)
        if user is None:
            raise MembershipError(ErrorKind.NOT_FOUND, "User not found")
        return user

    async def _load_team(self, conn: aiosqlite.Connection, team_id: str) -> Team:
        team = await self.teams.find(team_id, conn)
        if team is None:
            raise MembershipError(ErrorKind.NOT_FOUND, "Team not found")
        return team

    async def _require_owner(
        self, conn: aiosqlite.Connection, actor_id: str, team_id: str
    ) -> tuple[UserAccount, Team]:
        """Load actor and team, failing unless the actor owns the team.

        Ownership is checked on the actor's pointer before the team is
        looked up, so a non-owner learns nothing about whether it exists.
        """
        actor = await self._load_actor(conn, actor_id)
        if not self.guard.owns_team_id(actor, team_id):
            raise MembershipError(ErrorKind.NOT_OWNER, "Only the team owner may do this")

        team = await self._load_team(conn, team_id)
        if not self.guard.is_owner(actor, team):
            raise MembershipError(ErrorKind.NOT_OWNER, "Only the team owner may do this")

        return actor, team

    async def _save_user(self, conn: aiosqlite.Connection, user: UserAccount) -> None:
        if not await self.identities.save(user, conn):
            raise MembershipError(ErrorKind.NOT_FOUND, "User not found")

    async def _release_asset(self, hash: str, **context) -> None:
        """Release a blob reference; failures leave an orphan and are logged."""
        try:
            await self.assets.delete_by_hash(hash)
        except (StorageError, LockTimeout) as e:
            log.warning("orphaned_avatar", hash=hash[:8], error=str(e), **context)

    async def _avatar_committed(self, team_id: str, hash: str) -> bool:
        """Check whether the stored team record already names a blob.

        An unreadable store counts as committed so the blob is kept.
        """
        try:
            team = await self.teams.find(team_id)
        except StorageError as e:
            log.warning("avatar_state_unknown", team_id=team_id, hash=hash[:8], error=str(e))
            return True
        return team is not None and team.avatar_hash == hash

    async def _team_deleted(self, team_id: str) -> bool:
        try:
            return await self.teams.find(team_id) is None
        except StorageError as e:
            log.warning("team_state_unknown", team_id=team_id, error=str(e))
            return False

    def _avatar_url(self, hash: Optional[str]) -> Optional[str]:
        return self.assets.url_for(hash, AVATAR_CATEGORY) if hash else None
