"""File models — file records, append-only version history, download log."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import BigInteger, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class FileStatus(str, Enum):
    """Lifecycle status of a file record."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    ACTIVE = "active"
    QUARANTINED = "quarantined"
    DELETED = "deleted"


LIVE_FILE_STATUSES = (FileStatus.ACTIVE.value, FileStatus.QUARANTINED.value)
PROVISIONAL_FILE_STATUSES = (FileStatus.UPLOADING.value, FileStatus.PROCESSING.value)


class File(SQLModel, table=True):
    """File table — ``cabinet_files``.

    The ``storage_*`` columns form the opaque locator handed back by the
    object storage collaborator. ``risk_*`` columns hold the verdict of
    the risk assessment collaborator as received.
    """

    __tablename__ = "cabinet_files"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field(max_length=255)
    original_name: str = Field(default="")
    description: str = Field(default="")
    owner_id: str = Field(index=True)
    folder_id: str | None = Field(default=None, index=True)
    size: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    mime_type: str = Field(default="application/octet-stream")
    extension: str = Field(default="")
    status: str = Field(default=FileStatus.UPLOADING.value, index=True)

    # Storage locator
    storage_provider: str = Field(default="")
    storage_key: str = Field(default="")
    storage_bucket: str | None = Field(default=None)
    storage_url: str | None = Field(default=None)
    storage_etag: str | None = Field(default=None)

    current_version: int = Field(default=1)
    uploaded_by: str = Field(default="")
    uploaded_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    # Risk verdict
    risk_score: int | None = Field(default=None)
    risk_level: str | None = Field(default=None)
    risk_is_malicious: bool | None = Field(default=None)
    risk_details_json: str = Field(default="{}")

    # Quarantine / restore
    quarantined_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    quarantined_by: str | None = Field(default=None)
    quarantine_reason: str | None = Field(default=None)
    original_storage_key: str | None = Field(default=None)
    restored_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    restored_by: str | None = Field(default=None)
    restore_reason: str | None = Field(default=None)

    download_count: int = Field(default=0)
    last_downloaded_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    last_downloaded_by: str | None = Field(default=None)

    tags_json: str = Field(default="[]")
    row_version: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    deleted_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def tags(self) -> list[str]:
        return json.loads(self.tags_json or "[]")

    @property
    def risk_details(self) -> dict:
        return json.loads(self.risk_details_json or "{}")


class FileVersion(SQLModel, table=True):
    """Append-only snapshot of a file's previous content — ``cabinet_file_versions``."""

    __tablename__ = "cabinet_file_versions"
    __table_args__ = (UniqueConstraint("file_id", "version"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    file_id: str = Field(index=True)
    version: int
    storage_key: str
    storage_etag: str | None = Field(default=None)
    size: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    mime_type: str = Field(default="application/octet-stream")
    uploaded_at: datetime = Field(
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    uploaded_by: str = Field(default="")
    comment: str | None = Field(default=None)


class FileDownload(SQLModel, table=True):
    """One download of a file — ``cabinet_file_downloads``."""

    __tablename__ = "cabinet_file_downloads"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    file_id: str = Field(index=True)
    user_id: str
    downloaded_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
