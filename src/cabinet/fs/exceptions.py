"""Custom exception hierarchy for the cabinet storage layer."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import CounterDrift


class CabinetError(Exception):
    """Base exception for all cabinet errors."""


class NotFoundError(CabinetError):
    """Raised when a folder, file, grant or version does not exist."""


class PermissionDeniedError(CabinetError):
    """Raised when the caller lacks the required permission level."""


class NameConflictError(CabinetError):
    """Raised when a live sibling of the same type already has the name."""


class CircularReferenceError(CabinetError):
    """Raised when a move or copy would place a folder under itself."""


class ValidationError(CabinetError):
    """Raised on malformed input (names, colors, permission levels)."""


class InvalidStateTransitionError(CabinetError):
    """Raised when a file status change is not allowed from its current status."""


class ConcurrentModificationError(CabinetError):
    """Raised when a compare-and-set write loses a race with another operation."""


class QuotaExceededError(CabinetError):
    """Raised when an upload would exceed the owner's storage quota."""

    def __init__(self, quota_bytes: int, used_bytes: int, required_bytes: int) -> None:
        self.quota_bytes = quota_bytes
        self.used_bytes = used_bytes
        self.required_bytes = required_bytes
        available = max(quota_bytes - used_bytes, 0)
        super().__init__(
            f"Storage quota exceeded: {required_bytes} bytes required, "
            f"{available} bytes available ({used_bytes}/{quota_bytes} used)"
        )


class InconsistentStateError(CabinetError):
    """Raised when incremental counters disagree with a recomputation from source."""

    def __init__(self, message: str, drifts: list[CounterDrift] | None = None) -> None:
        super().__init__(message)
        self.drifts = drifts or []


class StorageBackendError(CabinetError):
    """Raised when the object storage collaborator fails or times out."""


class RiskAssessmentUnavailable(CabinetError):  # noqa: N818
    """Raised when the risk assessment collaborator fails or times out."""


class CascadeError(CabinetError):
    """Raised when a cascading delete stops partway.

    Carries the id of the entity whose step failed and the id of the
    cascade root so the operation can be re-driven.
    """

    def __init__(self, message: str, *, resource_id: str, root_id: str) -> None:
        super().__init__(message)
        self.resource_id = resource_id
        self.root_id = root_id
