"""Cabinet: hierarchical folder and file storage.

Folder trees with materialized paths, per-resource sharing, and a file
lifecycle with risk assessment, quarantine and version history.
"""

__version__ = "0.1.0"

from cabinet._cabinet import Cabinet
from cabinet.config import CabinetConfig
from cabinet.events import CabinetEvent, EventBus, EventType
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
from cabinet.fs.local_storage import LocalObjectStorage
from cabinet.fs.permissions import Permission, Principal
from cabinet.fs.protocol import ObjectStorage, RiskAssessor
from cabinet.fs.types import (
    Breadcrumb,
    DeleteResult,
    DownloadTicket,
    FileInfo,
    FolderInfo,
    FolderStats,
    FolderTreeNode,
    GrantInfo,
    ListResult,
    RiskVerdict,
    SearchHit,
    SearchResult,
    TrashListing,
    UsageInfo,
    VersionInfo,
)
from cabinet.models.files import FileStatus

__all__ = [
    "Breadcrumb",
    "Cabinet",
    "CabinetConfig",
    "CabinetError",
    "CabinetEvent",
    "CascadeError",
    "CircularReferenceError",
    "ConcurrentModificationError",
    "DeleteResult",
    "DownloadTicket",
    "EventBus",
    "EventType",
    "FileInfo",
    "FileStatus",
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
    "TrashListing",
    "UsageInfo",
    "ValidationError",
    "VersionInfo",
    "__version__",
]
