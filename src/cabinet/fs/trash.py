"""TrashService — soft-delete cascade, permanent purge, orphan cleanup.

Soft delete is applied one folder level at a time (``trash_level``); the
cascade is a queue of such levels. A trashed folder that still has live
children is therefore a detectable, resumable state, and ``repair``
re-drives it.

Permanent deletion collects the subtree iteratively, removes files
first, then folders bottom-up, then the root. Purging an id that no
longer exists is a no-op. Stored objects are handed back to the caller
for deletion after commit.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, update
from sqlalchemy import delete as sa_delete
from sqlalchemy.orm import aliased
from sqlmodel import select

from cabinet.models.files import LIVE_FILE_STATUSES, PROVISIONAL_FILE_STATUSES, FileStatus

from .exceptions import CabinetError, CascadeError
from .lifecycle import history_locator, locator_of
from .types import DeleteResult, OrphanReport
from .utils import LEGACY_ROOT_TOKENS, normalize_parent_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.files import File, FileDownload
    from cabinet.models.folders import Folder

    from .metadata import MetadataService
    from .quota import QuotaService
    from .sharing import SharingService
    from .tree import TreeService
    from .types import StorageLocator
    from .versioning import VersioningService

logger = logging.getLogger(__name__)


class TrashService:
    """Trash and purge operations over folders and files. Flushes but does not commit."""

    def __init__(
        self,
        folder_model: type[Folder],
        file_model: type[File],
        download_model: type[FileDownload],
        *,
        metadata: MetadataService,
        tree: TreeService,
        sharing: SharingService,
        versioning: VersioningService,
        quota: QuotaService,
    ) -> None:
        self._folder_model = folder_model
        self._file_model = file_model
        self._download_model = download_model
        self._metadata = metadata
        self._tree = tree
        self._sharing = sharing
        self._versioning = versioning
        self._quota = quota

    # ------------------------------------------------------------------
    # Soft delete
    # ------------------------------------------------------------------

    async def trash_level(
        self,
        session: AsyncSession,
        folder_id: str,
        deleted_at: datetime,
    ) -> tuple[list[str], int]:
        """Trash the direct children of one folder and zero its counters.

        Returns (ids of child folders just trashed, number of files trashed).
        """
        folders = self._folder_model
        files = self._file_model

        child_files = await self._metadata.child_files(session, folder_id)
        if child_files:
            await session.execute(
                update(files)
                .where(files.id.in_([f.id for f in child_files]))  # type: ignore[union-attr]
                .values(
                    status=FileStatus.DELETED.value,
                    deleted_at=deleted_at,
                    updated_at=deleted_at,
                    row_version=files.row_version + 1,
                )
                .execution_options(synchronize_session=False)
            )

        child_folders = await self._metadata.child_folders(session, folder_id)
        child_ids = [f.id for f in child_folders]
        if child_ids:
            await session.execute(
                update(folders)
                .where(folders.id.in_(child_ids))  # type: ignore[union-attr]
                .values(
                    is_trash=True,
                    deleted_at=deleted_at,
                    updated_at=deleted_at,
                    row_version=folders.row_version + 1,
                )
                .execution_options(synchronize_session=False)
            )

        await session.execute(
            update(folders)
            .where(folders.id == folder_id)  # type: ignore[arg-type]
            .values(file_count=0, folder_count=0, total_size=0)
            .execution_options(synchronize_session=False)
        )
        return child_ids, len(child_files)

    async def cascade(
        self,
        session: AsyncSession,
        root_id: str,
        deleted_at: datetime,
    ) -> DeleteResult:
        """Apply ``trash_level`` to *root_id* and then to every folder it trashes."""
        result = DeleteResult(root_id=root_id, permanent=False)
        visited = {root_id}
        queue: deque[str] = deque([root_id])
        while queue:
            current = queue.popleft()
            try:
                child_ids, file_count = await self.trash_level(session, current, deleted_at)
            except CabinetError:
                raise
            except Exception as exc:
                raise CascadeError(
                    f"Trash cascade stopped at folder {current}: {exc}",
                    resource_id=current,
                    root_id=root_id,
                ) from exc
            result.files += file_count
            for child_id in child_ids:
                if child_id in visited:
                    continue
                visited.add(child_id)
                result.folders += 1
                queue.append(child_id)
        return result

    async def trash_folder(self, session: AsyncSession, folder: Folder) -> DeleteResult:
        """Move a live folder and everything below it to the trash."""
        now = datetime.now(UTC)
        await self._metadata.compare_and_set(session, folder, is_trash=True, deleted_at=now)
        await self._metadata.adjust_folder_counters(session, folder.parent_id, folders=-1)
        result = await self.cascade(session, folder.id, now)
        result.folders += 1
        logger.info(
            "Trashed folder %s with %d subfolders and %d files",
            folder.id,
            result.folders - 1,
            result.files,
        )
        return result

    async def half_trashed(self, session: AsyncSession) -> list[Folder]:
        """Trashed folders that still have live children."""
        folders = self._folder_model
        files = self._file_model
        child = aliased(folders)
        live_child_folder = (
            select(child.id)
            .where(child.parent_id == folders.id, child.is_trash == False)  # noqa: E712
            .exists()
        )
        live_child_file = (
            select(files.id)
            .where(
                files.folder_id == folders.id,
                files.status.in_(LIVE_FILE_STATUSES),  # type: ignore[union-attr]
            )
            .exists()
        )
        result = await session.execute(
            select(folders).where(
                folders.is_trash == True,  # noqa: E712
                or_(live_child_folder, live_child_file),
            )
        )
        return list(result.scalars().all())

    async def repair(self, session: AsyncSession) -> list[str]:
        """Re-drive every half-applied trash cascade. Safe to re-run."""
        repaired: list[str] = []
        for folder in await self.half_trashed(session):
            deleted_at = folder.deleted_at or datetime.now(UTC)
            await self.cascade(session, folder.id, deleted_at)
            repaired.append(folder.id)
        if repaired:
            logger.warning("Re-drove %d half-applied trash cascades", len(repaired))
        return repaired

    async def list_trash(self, session: AsyncSession, owner_id: str) -> tuple[list[Folder], list[File]]:
        """Trashed folders and deleted files whose container is not itself trashed."""
        folders = self._folder_model
        files = self._file_model
        parent = aliased(folders)

        folder_result = await session.execute(
            select(folders)
            .outerjoin(parent, parent.id == folders.parent_id)
            .where(
                folders.owner_id == owner_id,
                folders.is_trash == True,  # noqa: E712
                or_(parent.id.is_(None), parent.is_trash == False),  # noqa: E712
            )
        )
        file_result = await session.execute(
            select(files)
            .outerjoin(parent, parent.id == files.folder_id)
            .where(
                files.owner_id == owner_id,
                files.status == FileStatus.DELETED.value,
                or_(parent.id.is_(None), parent.is_trash == False),  # noqa: E712
            )
        )
        return list(folder_result.scalars().all()), list(file_result.scalars().all())

    # ------------------------------------------------------------------
    # Permanent deletion
    # ------------------------------------------------------------------

    async def purge_files(
        self,
        session: AsyncSession,
        file_rows: list[File],
        *,
        root_id: str,
        discard: list[StorageLocator],
        release_counters: bool = True,
    ) -> tuple[int, int]:
        """Delete file records, their history, downloads and grants.

        Stored objects are not touched here. Their locators are appended to
        ``discard`` and must only be deleted once the transaction has
        committed, otherwise a rollback would leave live records pointing at
        missing objects.

        Returns (files removed, bytes released from quota).
        """
        if not file_rows:
            return 0, 0

        released: dict[str, int] = defaultdict(int)
        removed = 0
        total_bytes = 0
        for file in file_rows:
            file_id, owner_id, folder_id = file.id, file.owner_id, file.folder_id
            status, size = file.status, file.size
            try:
                history = await self._versioning.list_versions(session, file.id)
                locators: dict[str, StorageLocator] = {}
                if file.storage_key:
                    locators[file.storage_key] = locator_of(file)
                for entry in history:
                    locators.setdefault(entry.storage_key, history_locator(file, entry))

                await self._versioning.delete_versions(session, [file.id])
                await session.execute(
                    sa_delete(self._download_model).where(
                        self._download_model.file_id == file.id  # type: ignore[arg-type]
                    )
                )
                await self._sharing.delete_grants_for(session, "file", [file.id])
                await session.delete(file)
                await session.flush()
            except Exception as exc:
                raise CascadeError(
                    f"Permanent delete stopped at file {file_id}: {exc}",
                    resource_id=file_id,
                    root_id=root_id,
                ) from exc

            discard.extend(locators.values())
            removed += 1
            if status in PROVISIONAL_FILE_STATUSES:
                continue
            released[owner_id] += size
            total_bytes += size
            if release_counters and status in LIVE_FILE_STATUSES:
                await self._metadata.adjust_folder_counters(
                    session, folder_id, files=-1, size=-size
                )

        for owner_id, size in released.items():
            await self._quota.adjust(session, owner_id, -size)
        return removed, total_bytes

    async def purge_file(
        self, session: AsyncSession, file_id: str, *, discard: list[StorageLocator]
    ) -> DeleteResult:
        """Permanently delete one file in any status. No-op if it is gone."""
        result = DeleteResult(root_id=file_id, permanent=True)
        file = await self._metadata.get_file(
            session, file_id, include_deleted=True, include_provisional=True
        )
        if file is None:
            return result
        result.files, result.bytes_released = await self.purge_files(
            session, [file], root_id=file_id, discard=discard
        )
        logger.info("Permanently deleted file %s", file_id)
        return result

    async def purge_folder(
        self, session: AsyncSession, folder_id: str, *, discard: list[StorageLocator]
    ) -> DeleteResult:
        """Permanently delete a folder, its subtree and every file in it. No-op if gone."""
        result = DeleteResult(root_id=folder_id, permanent=True)
        root = await self._metadata.get_folder(session, folder_id, include_trashed=True)
        if root is None:
            return result

        subtree = [root, *await self._tree.descendants_of(session, root.id, include_trashed=True)]
        subtree_ids = [f.id for f in subtree]

        files = self._file_model
        file_result = await session.execute(
            select(files).where(files.folder_id.in_(subtree_ids))  # type: ignore[union-attr]
        )
        result.files, result.bytes_released = await self.purge_files(
            session,
            list(file_result.scalars().all()),
            root_id=root.id,
            discard=discard,
            release_counters=False,
        )

        was_live = not root.is_trash
        parent_id = normalize_parent_id(root.parent_id)
        for folder in reversed(subtree):
            try:
                await self._sharing.delete_grants_for(session, "folder", [folder.id])
                await session.delete(folder)
                await session.flush()
            except Exception as exc:
                raise CascadeError(
                    f"Permanent delete stopped at folder {folder.id}: {exc}",
                    resource_id=folder.id,
                    root_id=root.id,
                ) from exc
            result.folders += 1

        if was_live:
            await self._metadata.adjust_folder_counters(session, parent_id, folders=-1)
        logger.info(
            "Permanently deleted folder %s (%d folders, %d files)",
            root.id,
            result.folders,
            result.files,
        )
        return result

    async def empty_trash(
        self, session: AsyncSession, owner_id: str, *, discard: list[StorageLocator]
    ) -> DeleteResult:
        """Permanently delete everything in the owner's trash."""
        total = DeleteResult(root_id=owner_id, permanent=True)
        trashed_folders, deleted_files = await self.list_trash(session, owner_id)
        for folder in trashed_folders:
            part = await self.purge_folder(session, folder.id, discard=discard)
            total.folders += part.folders
            total.files += part.files
            total.bytes_released += part.bytes_released
        for file in deleted_files:
            part = await self.purge_file(session, file.id, discard=discard)
            total.files += part.files
            total.bytes_released += part.bytes_released
        return total

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def find_orphans(self, session: AsyncSession) -> OrphanReport:
        """Folders and files whose parent reference no longer resolves."""
        folders = self._folder_model
        files = self._file_model
        parent = aliased(folders)

        has_parent_ref = and_(
            folders.parent_id.is_not(None),  # type: ignore[union-attr]
            folders.parent_id.not_in(LEGACY_ROOT_TOKENS),  # type: ignore[union-attr]
        )
        folder_result = await session.execute(
            select(folders.id)
            .outerjoin(parent, parent.id == folders.parent_id)
            .where(has_parent_ref, parent.id.is_(None))
        )
        has_folder_ref = and_(
            files.folder_id.is_not(None),  # type: ignore[union-attr]
            files.folder_id.not_in(LEGACY_ROOT_TOKENS),  # type: ignore[union-attr]
        )
        file_result = await session.execute(
            select(files.id)
            .outerjoin(parent, parent.id == files.folder_id)
            .where(has_folder_ref, parent.id.is_(None))
        )
        return OrphanReport(
            folder_ids=sorted(folder_result.scalars().all()),
            file_ids=sorted(file_result.scalars().all()),
        )

    async def cleanup_orphans(
        self, session: AsyncSession, *, discard: list[StorageLocator]
    ) -> OrphanReport:
        """Permanently delete every orphan found by ``find_orphans``. Idempotent."""
        report = await self.find_orphans(session)
        for folder_id in report.folder_ids:
            await self.purge_folder(session, folder_id, discard=discard)
        for file_id in report.file_ids:
            await self.purge_file(session, file_id, discard=discard)
        if report.total:
            logger.warning(
                "Removed %d orphaned folders and %d orphaned files",
                len(report.folder_ids),
                len(report.file_ids),
            )
        return report

