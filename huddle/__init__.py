"""Huddle - team formation for competitive event platforms.

Users form teams, invite each other with rotating tokens, pick the team
they play for, and share a team avatar. All changes to that graph go
through the TeamMembershipEngine.
"""

__version__ = "1.0.0"

from huddle.collaboration.engine import TeamInfo, TeamMembershipEngine
from huddle.config import HuddleConfig
from huddle.core.errors import ErrorKind, Result

__all__ = [
    "__version__",
    "ErrorKind",
    "HuddleConfig",
    "Result",
    "TeamInfo",
    "TeamMembershipEngine",
]
