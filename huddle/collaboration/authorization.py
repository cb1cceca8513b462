"""Ownership and membership predicates.

Every engine operation asks the same guard, always with records loaded
inside that operation; cached or client-supplied answers are never used.
"""

from huddle.collaboration.teams import Team
from huddle.collaboration.users import UserAccount


class AuthorizationGuard:
    """Answers who may do what to a team."""

    def is_owner(self, actor: UserAccount, team: Team) -> bool:
        """Check that the actor created the team.

        Both sides of the ownership link must agree; a half-written link
        grants nothing.
        """
        return actor.owned_team_id == team.id and team.owner_id == actor.id

    def owns_team_id(self, actor: UserAccount, team_id: str) -> bool:
        """Check the actor's side of the ownership link before the team is loaded."""
        return actor.owned_team_id is not None and actor.owned_team_id == team_id

    def is_member(self, actor: UserAccount, team: Team) -> bool:
        return team.has_member(actor.id)
