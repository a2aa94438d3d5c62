"""Storage layer — folder tree, sharing, file lifecycle, aggregation."""

from cabinet.fs.exceptions import (
    CabinetError,
    CascadeError,
    CircularReferenceError,
    ConcurrentModificationError,
    InconsistentStateError,
    InvalidStateTransitionError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    RiskAssessmentUnavailable,
    StorageBackendError,
    ValidationError,
)
from cabinet.fs.gateways import risk_level_for_score
from cabinet.fs.local_storage import LocalObjectStorage
from cabinet.fs.permissions import Permission, Principal, check
from cabinet.fs.protocol import ObjectStorage, RiskAssessor
from cabinet.fs.types import (
    Breadcrumb,
    CounterDrift,
    DeleteResult,
    DownloadTicket,
    FileInfo,
    FolderInfo,
    FolderStats,
    FolderTreeNode,
    GrantInfo,
    ListResult,
    OrphanReport,
    RiskVerdict,
    SearchHit,
    SearchResult,
    StorageLocator,
    TrashListing,
    UsageInfo,
    VersionInfo,
)
from cabinet.fs.utils import normalize_parent_id, validate_name

__all__ = [
    "Breadcrumb",
    "CabinetError",
    "CascadeError",
    "CircularReferenceError",
    "ConcurrentModificationError",
    "CounterDrift",
    "DeleteResult",
    "DownloadTicket",
    "FileInfo",
    "FolderInfo",
    "FolderStats",
    "FolderTreeNode",
    "GrantInfo",
    "InconsistentStateError",
    "InvalidStateTransitionError",
    "ListResult",
    "LocalObjectStorage",
    "NameConflictError",
    "NotFoundError",
    "ObjectStorage",
    "OrphanReport",
    "Permission",
    "PermissionDeniedError",
    "Principal",
    "QuotaExceededError",
    "RiskAssessmentUnavailable",
    "RiskAssessor",
    "RiskVerdict",
    "SearchHit",
    "SearchResult",
    "StorageBackendError",
    "StorageLocator",
    "TrashListing",
    "UsageInfo",
    "ValidationError",
    "VersionInfo",
    "check",
    "normalize_parent_id",
    "risk_level_for_score",
    "validate_name",
]
