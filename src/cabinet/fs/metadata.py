"""MetadataService — record lookup, compare-and-set writes, counters, info conversion."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, or_, update
from sqlmodel import select

from cabinet.models.files import LIVE_FILE_STATUSES, FileStatus

from .exceptions import ConcurrentModificationError, NotFoundError
from .types import FileInfo, FolderInfo, GrantInfo, SearchHit, VersionInfo
from .utils import LEGACY_ROOT_TOKENS, as_utc, normalize_parent_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.files import File, FileVersion
    from cabinet.models.folders import Folder
    from cabinet.models.grants import Grant

logger = logging.getLogger(__name__)


def parent_clause(column: Any, parent_id: str | None) -> Any:
    """WHERE clause selecting rows under *parent_id*.

    Top-level rows written by older code may carry ``""`` or ``"root"``
    instead of NULL; they are matched here so that reads normalize them.
    """
    parent_id = normalize_parent_id(parent_id)
    if parent_id is None:
        return or_(column.is_(None), column.in_(LEGACY_ROOT_TOKENS))
    return column == parent_id


def clamped(column: Any, delta: int) -> Any:
    """SQL expression ``column + delta`` floored at zero."""
    return case((column + delta < 0, 0), else_=column + delta)


class MetadataService:
    """Stateless helpers shared by every other service.

    Receives the concrete folder and file models at construction.
    """

    def __init__(self, folder_model: type[Folder], file_model: type[File]) -> None:
        self._folder_model = folder_model
        self._file_model = file_model

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_folder(
        self,
        session: AsyncSession,
        folder_id: str | None,
        *,
        include_trashed: bool = False,
    ) -> Folder | None:
        folder_id = normalize_parent_id(folder_id)
        if folder_id is None:
            return None
        model = self._folder_model
        result = await session.execute(
            select(model)
            .where(model.id == folder_id)
            .execution_options(populate_existing=True)
        )
        folder = result.scalar_one_or_none()
        if folder is None or (folder.is_trash and not include_trashed):
            return None
        return folder

    async def require_folder(
        self,
        session: AsyncSession,
        folder_id: str | None,
        *,
        include_trashed: bool = False,
    ) -> Folder:
        """Return the folder or raise ``NotFoundError``."""
        folder = await self.get_folder(session, folder_id, include_trashed=include_trashed)
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def get_file(
        self,
        session: AsyncSession,
        file_id: str,
        *,
        include_deleted: bool = False,
        include_provisional: bool = False,
    ) -> File | None:
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(model.id == file_id)
            .execution_options(populate_existing=True)
        )
        file = result.scalar_one_or_none()
        if file is None:
            return None
        if file.status == FileStatus.DELETED and not include_deleted:
            return None
        if file.status not in LIVE_FILE_STATUSES and file.status != FileStatus.DELETED:
            if not include_provisional:
                return None
        return file

    async def require_file(
        self,
        session: AsyncSession,
        file_id: str,
        *,
        include_deleted: bool = False,
        include_provisional: bool = False,
    ) -> File:
        """Return the file or raise ``NotFoundError``."""
        file = await self.get_file(
            session,
            file_id,
            include_deleted=include_deleted,
            include_provisional=include_provisional,
        )
        if file is None:
            raise NotFoundError(f"File not found: {file_id}")
        return file

    async def child_folders(
        self,
        session: AsyncSession,
        parent_id: str | None,
        *,
        owner_id: str | None = None,
        include_trashed: bool = False,
    ) -> list[Folder]:
        model = self._folder_model
        query = select(model).where(parent_clause(model.parent_id, parent_id))
        if owner_id is not None:
            query = query.where(model.owner_id == owner_id)
        if not include_trashed:
            query = query.where(model.is_trash == False)  # noqa: E712
        result = await session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def child_files(
        self,
        session: AsyncSession,
        folder_id: str | None,
        *,
        owner_id: str | None = None,
        statuses: tuple[str, ...] = LIVE_FILE_STATUSES,
    ) -> list[File]:
        model = self._file_model
        query = select(model).where(
            parent_clause(model.folder_id, folder_id),
            model.status.in_(statuses),  # type: ignore[union-attr]
        )
        if owner_id is not None:
            query = query.where(model.owner_id == owner_id)
        result = await session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Name uniqueness
    # ------------------------------------------------------------------

    async def folder_name_taken(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        name: str,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        """True if a live sibling folder of the same owner already uses *name*."""
        model = self._folder_model
        query = select(model.id).where(
            model.owner_id == owner_id,
            parent_clause(model.parent_id, parent_id),
            model.name == name,
            model.is_trash == False,  # noqa: E712
        )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        result = await session.execute(query.limit(1))
        return result.first() is not None

    async def file_name_taken(
        self,
        session: AsyncSession,
        owner_id: str,
        folder_id: str | None,
        name: str,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        """True if a non-deleted sibling file of the same owner already uses *name*.

        Provisional uploads reserve their name.
        """
        model = self._file_model
        query = select(model.id).where(
            model.owner_id == owner_id,
            parent_clause(model.folder_id, folder_id),
            model.name == name,
            model.status != FileStatus.DELETED.value,
        )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        result = await session.execute(query.limit(1))
        return result.first() is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def compare_and_set(
        self,
        session: AsyncSession,
        row: Folder | File,
        **values: Any,
    ) -> None:
        """Write *values* to *row* only if nobody changed it since it was read.

        The row's ``row_version`` is the snapshot; a successful write
        bumps it. The in-session object is refreshed afterwards.
        """
        model = type(row)
        values.setdefault("updated_at", datetime.now(UTC))
        result = await session.execute(
            update(model)
            .where(
                model.id == row.id,  # type: ignore[arg-type]
                model.row_version == row.row_version,  # type: ignore[arg-type]
            )
            .values(row_version=model.row_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[union-attr]
            raise ConcurrentModificationError(
                f"{model.__name__} {row.id} was modified concurrently; reload and retry"
            )
        await session.refresh(row)

    async def touch(self, session: AsyncSession, row: Folder | File) -> None:
        """Bump ``row_version`` against the snapshot without changing data."""
        await self.compare_and_set(session, row, updated_at=row.updated_at)

    async def adjust_folder_counters(
        self,
        session: AsyncSession,
        folder_id: str | None,
        *,
        files: int = 0,
        folders: int = 0,
        size: int = 0,
    ) -> None:
        """Atomically add deltas to a folder's counters. No-op for the root."""
        folder_id = normalize_parent_id(folder_id)
        if folder_id is None or not (files or folders or size):
            return
        model = self._folder_model
        values: dict[str, Any] = {}
        if files:
            values["file_count"] = clamped(model.file_count, files)
        if folders:
            values["folder_count"] = clamped(model.folder_count, folders)
        if size:
            values["total_size"] = clamped(model.total_size, size)
        await session.execute(
            update(model)
            .where(model.id == folder_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def folder_to_info(f: Folder) -> FolderInfo:
        """Convert a folder record to FolderInfo."""
        return FolderInfo(
            id=f.id,
            name=f.name,
            owner_id=f.owner_id,
            parent_id=normalize_parent_id(f.parent_id),
            path=f.path,
            description=f.description,
            file_count=f.file_count,
            folder_count=f.folder_count,
            total_size=f.total_size,
            is_trash=f.is_trash,
            is_archive=f.is_archive,
            is_default=f.is_default,
            color=f.color,
            icon=f.icon,
            tags=f.tags,
            created_at=as_utc(f.created_at),
            updated_at=as_utc(f.updated_at),
            deleted_at=as_utc(f.deleted_at),
        )

    @staticmethod
    def file_to_info(f: File) -> FileInfo:
        """Convert a file record to FileInfo."""
        return FileInfo(
            id=f.id,
            name=f.name,
            owner_id=f.owner_id,
            folder_id=normalize_parent_id(f.folder_id),
            size=f.size,
            mime_type=f.mime_type,
            status=f.status,
            current_version=f.current_version,
            original_name=f.original_name,
            description=f.description,
            extension=f.extension,
            uploaded_by=f.uploaded_by,
            uploaded_at=as_utc(f.uploaded_at),
            risk_score=f.risk_score,
            risk_level=f.risk_level,
            is_malicious=f.risk_is_malicious,
            quarantined_at=as_utc(f.quarantined_at),
            quarantine_reason=f.quarantine_reason,
            restored_at=as_utc(f.restored_at),
            restore_reason=f.restore_reason,
            download_count=f.download_count,
            tags=f.tags,
            created_at=as_utc(f.created_at),
            updated_at=as_utc(f.updated_at),
            deleted_at=as_utc(f.deleted_at),
        )

    @staticmethod
    def grant_to_info(g: Grant) -> GrantInfo:
        return GrantInfo(
            resource_type=g.resource_type,
            resource_id=g.resource_id,
            grantee_id=g.grantee_id,
            permission=g.permission,
            granted_by=g.granted_by,
            granted_at=as_utc(g.granted_at),
            message=g.message,
        )

    @staticmethod
    def version_to_info(v: FileVersion) -> VersionInfo:
        return VersionInfo(
            version=v.version,
            size=v.size,
            mime_type=v.mime_type,
            uploaded_at=as_utc(v.uploaded_at),  # type: ignore[arg-type]
            uploaded_by=v.uploaded_by,
            comment=v.comment,
        )

    @staticmethod
    def folder_to_hit(f: Folder) -> SearchHit:
        return SearchHit(
            kind="folder",
            id=f.id,
            name=f.name,
            owner_id=f.owner_id,
            parent_id=normalize_parent_id(f.parent_id),
            size=f.total_size,
            description=f.description,
            tags=f.tags,
            created_at=as_utc(f.created_at),
            updated_at=as_utc(f.updated_at),
        )

    @staticmethod
    def file_to_hit(f: File) -> SearchHit:
        return SearchHit(
            kind="file",
            id=f.id,
            name=f.name,
            owner_id=f.owner_id,
            parent_id=normalize_parent_id(f.folder_id),
            size=f.size,
            description=f.description,
            mime_type=f.mime_type,
            status=f.status,
            tags=f.tags,
            created_at=as_utc(f.created_at),
            updated_at=as_utc(f.updated_at),
        )
