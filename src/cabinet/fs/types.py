"""Result types returned by the facade: FolderInfo, FileInfo, SearchResult, etc."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime


@dataclass
class GrantInfo:
    """A sharing grant on a folder or file."""

    resource_type: str
    resource_id: str
    grantee_id: str
    permission: str
    granted_by: str
    granted_at: datetime | None = None
    message: str | None = None


@dataclass
class FolderInfo:
    """Folder metadata."""

    id: str
    name: str
    owner_id: str
    parent_id: str | None
    path: str
    description: str = ""
    file_count: int = 0
    folder_count: int = 0
    total_size: int = 0
    is_trash: bool = False
    is_archive: bool = False
    is_default: bool = False
    color: str | None = None
    icon: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def full_path(self) -> str:
        return f"{self.path}{self.name}/"


@dataclass
class FileInfo:
    """File metadata. The storage locator is not exposed."""

    id: str
    name: str
    owner_id: str
    folder_id: str | None
    size: int
    mime_type: str
    status: str
    current_version: int = 1
    original_name: str = ""
    description: str = ""
    extension: str = ""
    uploaded_by: str = ""
    uploaded_at: datetime | None = None
    risk_score: int | None = None
    risk_level: str | None = None
    is_malicious: bool | None = None
    quarantined_at: datetime | None = None
    quarantine_reason: str | None = None
    restored_at: datetime | None = None
    restore_reason: str | None = None
    download_count: int = 0
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class VersionInfo:
    """Version history entry."""

    version: int
    size: int
    mime_type: str
    uploaded_at: datetime
    uploaded_by: str
    comment: str | None = None


@dataclass
class Breadcrumb:
    """One element of a root-first ancestor chain. The root crumb has ``id=None``."""

    id: str | None
    name: str
    path: str


ROOT_CRUMB_NAME = "Root"


@dataclass
class FolderTreeNode:
    """A folder with its nested live children."""

    id: str
    name: str
    path: str
    owner_id: str
    file_count: int = 0
    folder_count: int = 0
    total_size: int = 0
    color: str | None = None
    icon: str | None = None
    children: list[FolderTreeNode] = field(default_factory=list)


@dataclass
class SearchHit:
    """A folder or file matched by search or listed in a folder."""

    kind: str  # "folder" or "file"
    id: str
    name: str
    owner_id: str
    parent_id: str | None
    size: int = 0
    description: str = ""
    mime_type: str | None = None
    status: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SearchResult:
    """One page of a merged folder+file result set."""

    items: list[SearchHit] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0
    has_more: bool = False


@dataclass
class ListResult(SearchResult):
    """One page of a folder listing."""

    folder_id: str | None = None


@dataclass
class DeleteResult:
    """Outcome of a trash or permanent delete."""

    root_id: str
    permanent: bool
    folders: int = 0
    files: int = 0
    bytes_released: int = 0


@dataclass
class DownloadTicket:
    """A temporary read locator for a file."""

    url: str
    expires_in: int
    file: FileInfo


@dataclass
class UsageInfo:
    """Storage usage and quota for one owner."""

    user_id: str
    storage_used: int
    storage_quota: int

    @property
    def available_bytes(self) -> int:
        return max(self.storage_quota - self.storage_used, 0)


@dataclass
class FolderStats:
    """Direct counts, recursive size and storage split by mime type."""

    folder_id: str
    file_count: int
    folder_count: int
    direct_size: int
    recursive_size: int
    storage_by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class CounterDrift:
    """Difference between a stored counter and its recomputed value."""

    entity_id: str
    counter: str
    stored: int
    actual: int


@dataclass
class OrphanReport:
    """Entities whose parent reference no longer resolves."""

    folder_ids: list[str] = field(default_factory=list)
    file_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.folder_ids) + len(self.file_ids)


@dataclass
class StorageLocator:
    """Opaque location of a stored object, as returned by object storage."""

    provider: str
    key: str
    bucket: str | None = None
    url: str | None = None
    etag: str | None = None


@dataclass
class RiskVerdict:
    """Verdict returned by a risk assessor."""

    score: int
    level: str
    is_malicious: bool
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def flagged(self) -> bool:
        """True when the content must go straight to quarantine."""
        return self.is_malicious or self.level in ("high", "critical")


@dataclass
class TrashListing:
    """Tops of the caller's trash: trashed folders and deleted files not inside one."""

    folders: list[FolderInfo] = field(default_factory=list)
    files: list[FileInfo] = field(default_factory=list)
