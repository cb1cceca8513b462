"""Error taxonomy and operation results for Huddle.

Every engine operation reports its outcome as a ``Result``. Internally the
engine raises ``MembershipError`` for precondition failures, while the
stores raise ``StorageError`` and the lock manager raises ``LockTimeout``;
the engine boundary converts all three into a failed ``Result``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Categories of operation failure."""

    NOT_FOUND = "not_found"  # Team or UserAccount absent
    NOT_OWNER = "not_owner"
    NOT_MEMBER = "not_member"
    ALREADY_MEMBER = "already_member"
    ALREADY_OWNS_TEAM = "already_owns_team"
    INVALID_TOKEN = "invalid_token"
    INVALID_INPUT = "invalid_input"
    INVALID_ASSET = "invalid_asset"
    FORBIDDEN = "forbidden"  # Owner kicked or leaving their own team
    BUSY = "busy"  # Lock wait exceeded, retry later
    STORAGE_FAILURE = "storage_failure"

    @property
    def retryable(self) -> bool:
        """Busy and storage failures may succeed on a later attempt."""
        return self in (ErrorKind.BUSY, ErrorKind.STORAGE_FAILURE)


class MembershipError(Exception):
    """A precondition of a membership operation does not hold."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


class StorageError(Exception):
    """The underlying store could not complete a read or write.

    Attributes:
        busy: True when the store reported lock contention
    """

    def __init__(self, message: str, busy: bool = False):
        super().__init__(message)
        self.busy = busy


class LockTimeout(Exception):
    """A per-entity lock was not acquired within the configured wait."""

    def __init__(self, key: tuple[str, str], timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for {key[0]} {key[1]}")
        self.key = key
        self.timeout = timeout


@dataclass
class Result(Generic[T]):
    """Outcome of an engine operation.

    Attributes:
        value: Operation value on success
        error: Failure category, None on success
        message: Human-readable failure description
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: str = "") -> "Result[T]":
        return cls(error=error, message=message or error.value)

    def unwrap(self) -> T:
        """Return the value, raising MembershipError if the operation failed."""
        if self.error is not None:
            raise MembershipError(self.error, self.message)
        return self.value

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "ok": self.ok,
            "error": self.error.value if self.error else None,
            "message": self.message,
        }
