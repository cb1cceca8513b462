"""Repair of dangling team pointers.

The engine never leaves a dangling ``owned_team_id`` or ``active_team_id``
behind, but records written by older code or edited by hand can. The
reconciler walks every account and clears pointers that no longer hold:
- owned team missing, or owned by somebody else
- active team missing, or the user is not in its member set
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from huddle.core.locks import team_key, user_key

if TYPE_CHECKING:
    from huddle.collaboration.engine import TeamMembershipEngine
    from huddle.collaboration.users import UserAccount

log = structlog.get_logger()


@dataclass
class ReconcileReport:
    """Summary of a reconciliation pass."""

    users_scanned: int = 0
    owned_cleared: int = 0
    active_cleared: int = 0
    dry_run: bool = False
    repaired_user_ids: list[str] = field(default_factory=list)

    @property
    def total_cleared(self) -> int:
        return self.owned_cleared + self.active_cleared

    def to_dict(self) -> dict:
        return {
            "users_scanned": self.users_scanned,
            "owned_cleared": self.owned_cleared,
            "active_cleared": self.active_cleared,
            "dry_run": self.dry_run,
            "repaired_user_ids": self.repaired_user_ids,
        }


class PointerReconciler:
    """Clears team pointers that violate the ownership or membership invariants."""

    def __init__(self, engine: "TeamMembershipEngine", batch_size: int = 200):
        self.engine = engine
        self.batch_size = batch_size

    async def reconcile(self, dry_run: bool = False) -> ReconcileReport:
        """Scan every account and repair its pointers.

        Args:
            dry_run: Count problems without writing

        Returns:
            ReconcileReport with counts of what was (or would be) cleared
        """
        report = ReconcileReport(dry_run=dry_run)
        offset = 0

        while True:
            batch = await self.engine.identities.list_users(limit=self.batch_size, offset=offset)
            if not batch:
                break
            offset += len(batch)

            for snapshot in batch:
                report.users_scanned += 1
                await self._repair_user(snapshot.id, snapshot, report)

        log.info("reconcile_completed", **report.to_dict())
        return report

    async def _repair_user(
        self, user_id: str, snapshot: "UserAccount", report: ReconcileReport
    ) -> None:
        team_ids = {t for t in (snapshot.owned_team_id, snapshot.active_team_id) if t}
        if not team_ids:
            return

        engine = self.engine
        keys = [team_key(t) for t in team_ids] + [user_key(user_id)]

        async with engine.locks.hold(*keys):
            async with engine.db.transaction() as conn:
                user = await engine.identities.find(user_id, conn)
                if user is None:
                    return

                # Pointers moved since the scan; only the locked teams are safe to check
                if (user.owned_team_id, user.active_team_id) != (
                    snapshot.owned_team_id,
                    snapshot.active_team_id,
                ):
                    return

                owned_bad = False
                if user.owned_team_id:
                    team = await engine.teams.find(user.owned_team_id, conn)
                    owned_bad = team is None or team.owner_id != user.id

                active_bad = False
                if user.active_team_id:
                    team = await engine.teams.find(user.active_team_id, conn)
                    active_bad = team is None or not team.has_member(user.id)

                if not (owned_bad or active_bad):
                    return

                report.repaired_user_ids.append(user.id)
                if owned_bad:
                    report.owned_cleared += 1
                    log.warning("dangling_owned_team", user_id=user.id, team_id=user.owned_team_id)
                    user.owned_team_id = None
                if active_bad:
                    report.active_cleared += 1
                    log.warning("dangling_active_team", user_id=user.id, team_id=user.active_team_id)
                    user.active_team_id = None

                if not report.dry_run:
                    await engine.identities.save(user, conn)
