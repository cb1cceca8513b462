"""Core error taxonomy and locking for Huddle."""

from huddle.core.errors import (
    ErrorKind,
    LockTimeout,
    MembershipError,
    Result,
    StorageError,
)
from huddle.core.locks import LockManager, team_key, user_key

__all__ = [
    "ErrorKind",
    "LockTimeout",
    "MembershipError",
    "Result",
    "StorageError",
    "LockManager",
    "team_key",
    "user_key",
]
