"""Team collaboration module for Huddle.

This module provides:
- User accounts and their team pointers
- Teams with owner, members and invite tokens
- Content-addressed avatar storage
- The membership engine that keeps all of the above consistent
- A reconciler for pointers written outside the engine
"""

from huddle.collaboration.users import (
    UserAccount,
    IdentityStore,
)
from huddle.collaboration.teams import (
    Team,
    TeamStore,
    generate_invite_token,
)
from huddle.collaboration.assets import (
    AssetRegistry,
    StoredAsset,
)
from huddle.collaboration.authorization import AuthorizationGuard
from huddle.collaboration.engine import (
    TeamInfo,
    TeamMembershipEngine,
)
from huddle.collaboration.reconcile import (
    PointerReconciler,
    ReconcileReport,
)

__all__ = [
    # Users
    "UserAccount",
    "IdentityStore",
    # Teams
    "Team",
    "TeamStore",
    "generate_invite_token",
    # Assets
    "AssetRegistry",
    "StoredAsset",
    # Engine
    "AuthorizationGuard",
    "TeamInfo",
    "TeamMembershipEngine",
    # Maintenance
    "PointerReconciler",
    "ReconcileReport",
]
