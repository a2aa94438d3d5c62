"""FileLifecycleService — status machine, quarantine, content replacement, downloads.

Status transitions::

    uploading -> processing -> active <-> quarantined
                           \\-> quarantined
    active | quarantined -> deleted

Quarantine and restore are two-phase: the stored object is relocated
first, then the status is flipped with a compare-and-set write. If the
flip fails the object is relocated back before the error propagates,
and the returned ``TwoPhaseOutcome.undo`` lets the caller do the same
if the surrounding transaction later fails to commit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import update

from cabinet.models.files import FileStatus

from .exceptions import InvalidStateTransitionError, PermissionDeniedError, StorageBackendError
from .types import StorageLocator
from .utils import normalize_parent_id, split_extension

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.config import CabinetConfig
    from cabinet.models.files import File, FileDownload, FileVersion

    from .gateways import StorageGateway
    from .metadata import MetadataService
    from .permissions import Principal
    from .quota import QuotaService
    from .types import RiskVerdict
    from .versioning import VersioningService

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

ALLOWED_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.UPLOADING: frozenset({FileStatus.PROCESSING}),
    FileStatus.PROCESSING: frozenset({FileStatus.ACTIVE, FileStatus.QUARANTINED}),
    FileStatus.ACTIVE: frozenset({FileStatus.QUARANTINED, FileStatus.DELETED}),
    FileStatus.QUARANTINED: frozenset({FileStatus.ACTIVE, FileStatus.DELETED}),
    FileStatus.DELETED: frozenset(),
}


def require_transition(current: str, target: FileStatus) -> None:
    """Raise ``InvalidStateTransitionError`` unless *current* may move to *target*."""
    if target not in ALLOWED_TRANSITIONS[FileStatus(current)]:
        raise InvalidStateTransitionError(f"Cannot change file status from {current} to {target.value}")


def locator_of(file: File) -> StorageLocator:
    return StorageLocator(
        provider=file.storage_provider,
        key=file.storage_key,
        bucket=file.storage_bucket,
        url=file.storage_url,
        etag=file.storage_etag,
    )


def history_locator(file: File, entry: FileVersion) -> StorageLocator:
    """Locator of a history entry's content, in the file's storage provider."""
    return StorageLocator(
        provider=file.storage_provider,
        key=entry.storage_key,
        bucket=file.storage_bucket,
        etag=entry.storage_etag,
    )


def _locator_values(locator: StorageLocator) -> dict[str, Any]:
    return {
        "storage_provider": locator.provider,
        "storage_key": locator.key,
        "storage_bucket": locator.bucket,
        "storage_url": locator.url,
        "storage_etag": locator.etag,
    }


def _risk_values(verdict: RiskVerdict | None) -> dict[str, Any]:
    if verdict is None:
        return {}
    return {
        "risk_score": verdict.score,
        "risk_level": verdict.level,
        "risk_is_malicious": verdict.is_malicious,
        "risk_details_json": json.dumps(verdict.details, default=str),
    }


@dataclass
class TwoPhaseOutcome:
    """Result of a relocate-then-flip action.

    ``undo`` reverses the storage phase; it is ``None`` when nothing moved.
    """

    file: File
    undo: Callable[[], Awaitable[None]] | None = None
    changed: bool = True


class FileLifecycleService:
    """Drives a file record through its statuses. Flushes but does not commit."""

    def __init__(
        self,
        file_model: type[File],
        download_model: type[FileDownload],
        *,
        metadata: MetadataService,
        versioning: VersioningService,
        quota: QuotaService,
        storage: StorageGateway,
        config: CabinetConfig,
    ) -> None:
        self._file_model = file_model
        self._download_model = download_model
        self._metadata = metadata
        self._versioning = versioning
        self._quota = quota
        self._storage = storage
        self._config = config

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def create_provisional(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        folder_id: str | None,
        name: str,
        size: int,
        mime_type: str,
        description: str = "",
        tags_json: str = "[]",
    ) -> File:
        """Create the ``uploading`` record that reserves the name while bytes are stored."""
        file = self._file_model(
            name=name,
            original_name=name,
            description=description,
            owner_id=owner_id,
            folder_id=folder_id,
            size=size,
            mime_type=mime_type,
            extension=split_extension(name),
            status=FileStatus.UPLOADING.value,
            uploaded_by=owner_id,
            tags_json=tags_json,
        )
        session.add(file)
        await session.flush()
        return file

    async def discard_provisional(self, session: AsyncSession, file_id: str) -> bool:
        """Delete a record still in ``uploading``/``processing``. Returns True if removed."""
        file = await self._metadata.get_file(session, file_id, include_provisional=True)
        if file is None or file.status not in (
            FileStatus.UPLOADING.value,
            FileStatus.PROCESSING.value,
        ):
            return False
        await session.delete(file)
        await session.flush()
        logger.info("Discarded provisional upload %s (%s)", file.id, file.name)
        return True

    async def activate(
        self,
        session: AsyncSession,
        file_id: str,
        locator: StorageLocator,
        verdict: RiskVerdict | None,
    ) -> File:
        """Attach the stored object and admit the file into its still-live folder.

        A flagged verdict sends the file straight to ``quarantined``; it
        is never ``active`` in between.
        """
        file = await self._metadata.require_file(session, file_id, include_provisional=True)
        if normalize_parent_id(file.folder_id) is not None:
            # The destination may have been trashed while the content was stored.
            await self._metadata.require_folder(session, file.folder_id)
        require_transition(file.status, FileStatus.PROCESSING)
        await self._metadata.compare_and_set(
            session,
            file,
            status=FileStatus.PROCESSING.value,
            **_locator_values(locator),
            **_risk_values(verdict),
        )

        flagged = verdict is not None and verdict.flagged
        target = FileStatus.QUARANTINED if flagged else FileStatus.ACTIVE
        require_transition(file.status, target)
        values: dict[str, Any] = {"status": target.value}
        if flagged and verdict is not None:
            values.update(
                quarantined_at=datetime.now(UTC),
                quarantined_by=SYSTEM_ACTOR,
                quarantine_reason=f"Risk assessment: {verdict.level} (score {verdict.score})",
                original_storage_key=locator.key,
            )
        await self._metadata.compare_and_set(session, file, **values)

        await self._metadata.adjust_folder_counters(
            session, file.folder_id, files=1, size=file.size
        )
        await self._quota.adjust(session, file.owner_id, file.size)
        logger.info("File %s (%s) uploaded as %s", file.id, file.name, target.value)
        return file

    # ------------------------------------------------------------------
    # Quarantine / restore
    # ------------------------------------------------------------------

    async def _relocate_back(self, locator: StorageLocator, area: str) -> None:
        try:
            await self._storage.relocate(locator, area)
        except StorageBackendError:
            logger.warning(
                "Could not move %s back to %s after a failed status change",
                locator.key,
                area,
                exc_info=True,
            )

    async def _relocate_then_flip(
        self,
        session: AsyncSession,
        file: File,
        *,
        target_area: str,
        return_area: str,
        values: dict[str, Any],
    ) -> TwoPhaseOutcome:
        previous = locator_of(file)
        moved = await self._storage.relocate(previous, target_area)
        try:
            await self._metadata.compare_and_set(
                session,
                file,
                storage_key=moved.key,
                storage_url=moved.url,
                storage_etag=moved.etag,
                **values,
            )
        except Exception:
            await self._relocate_back(moved, return_area)
            raise

        async def undo() -> None:
            await self._relocate_back(moved, return_area)

        return TwoPhaseOutcome(file=file, undo=undo)

    async def quarantine(
        self,
        session: AsyncSession,
        file: File,
        actor_id: str,
        reason: str | None = None,
    ) -> TwoPhaseOutcome:
        """Move an active file into quarantine. No-op if it is already there."""
        if file.status == FileStatus.QUARANTINED:
            return TwoPhaseOutcome(file=file, changed=False)
        require_transition(file.status, FileStatus.QUARANTINED)
        outcome = await self._relocate_then_flip(
            session,
            file,
            target_area=self._config.quarantine_area,
            return_area=self._config.upload_area,
            values={
                "status": FileStatus.QUARANTINED.value,
                "quarantined_at": datetime.now(UTC),
                "quarantined_by": actor_id,
                "quarantine_reason": reason or self._config.default_quarantine_reason,
                "original_storage_key": file.storage_key,
            },
        )
        logger.info("File %s quarantined by %s", file.id, actor_id)
        return outcome

    async def restore(
        self,
        session: AsyncSession,
        file: File,
        actor_id: str,
        reason: str | None = None,
    ) -> TwoPhaseOutcome:
        """Release a quarantined file back to ``active``."""
        if file.status != FileStatus.QUARANTINED:
            raise InvalidStateTransitionError(
                f"Only quarantined files can be restored; file {file.id} is {file.status}"
            )
        outcome = await self._relocate_then_flip(
            session,
            file,
            target_area=self._config.upload_area,
            return_area=self._config.quarantine_area,
            values={
                "status": FileStatus.ACTIVE.value,
                "restored_at": datetime.now(UTC),
                "restored_by": actor_id,
                "restore_reason": reason or self._config.default_restore_reason,
                "quarantined_at": None,
                "quarantined_by": None,
                "quarantine_reason": None,
                "original_storage_key": None,
            },
        )
        logger.info("File %s restored from quarantine by %s", file.id, actor_id)
        return outcome

    # ------------------------------------------------------------------
    # Content versions
    # ------------------------------------------------------------------

    async def replace_content(
        self,
        session: AsyncSession,
        file: File,
        locator: StorageLocator,
        *,
        size: int,
        mime_type: str,
        actor_id: str,
        verdict: RiskVerdict | None = None,
        comment: str | None = None,
    ) -> File:
        """Record the current content in history, then apply the new locator."""
        if file.status != FileStatus.ACTIVE:
            raise InvalidStateTransitionError(
                f"Content can only be replaced on active files; file {file.id} is {file.status}"
            )
        previous_size = file.size
        await self._versioning.push_current(session, file, comment=comment)

        values: dict[str, Any] = {
            "current_version": file.current_version + 1,
            "size": size,
            "mime_type": mime_type,
            "uploaded_by": actor_id,
            "uploaded_at": datetime.now(UTC),
            **_locator_values(locator),
            **_risk_values(verdict),
        }
        if verdict is not None and verdict.flagged:
            values.update(
                status=FileStatus.QUARANTINED.value,
                quarantined_at=datetime.now(UTC),
                quarantined_by=SYSTEM_ACTOR,
                quarantine_reason=f"Risk assessment: {verdict.level} (score {verdict.score})",
                original_storage_key=locator.key,
            )
        await self._metadata.compare_and_set(session, file, **values)
        await self._apply_size_delta(session, file, size - previous_size)
        logger.info("File %s replaced with version %d", file.id, file.current_version)
        return file

    async def restore_version(
        self,
        session: AsyncSession,
        file: File,
        entry: FileVersion,
        locator: StorageLocator,
        *,
        actor_id: str,
    ) -> File:
        """Make *entry*'s content current again as a new version.

        *locator* is a fresh copy of the entry's stored object so that
        history entries never share an object with the live content.
        """
        if file.status != FileStatus.ACTIVE:
            raise InvalidStateTransitionError(
                f"Versions can only be restored on active files; file {file.id} is {file.status}"
            )
        previous_size = file.size
        await self._versioning.push_current(
            session, file, comment=f"Before restoring version {entry.version}"
        )
        await self._metadata.compare_and_set(
            session,
            file,
            current_version=file.current_version + 1,
            size=entry.size,
            mime_type=entry.mime_type,
            uploaded_by=actor_id,
            uploaded_at=datetime.now(UTC),
            **_locator_values(locator),
        )
        await self._apply_size_delta(session, file, entry.size - previous_size)
        logger.info(
            "File %s restored version %d as version %d",
            file.id,
            entry.version,
            file.current_version,
        )
        return file

    async def _apply_size_delta(self, session: AsyncSession, file: File, delta: int) -> None:
        await self._metadata.adjust_folder_counters(session, file.folder_id, size=delta)
        await self._quota.adjust(session, file.owner_id, delta)

    # ------------------------------------------------------------------
    # Download / trash
    # ------------------------------------------------------------------

    async def record_download(
        self,
        session: AsyncSession,
        file: File,
        principal: Principal,
        *,
        ttl: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Issue a temporary read URL and log the download."""
        if file.status == FileStatus.QUARANTINED:
            raise PermissionDeniedError(f"File {file.id} is quarantined and cannot be downloaded")
        if file.status != FileStatus.ACTIVE:
            raise InvalidStateTransitionError(f"File {file.id} is {file.status}")

        url = await self._storage.get_read_locator(locator_of(file), ttl)
        now = datetime.now(UTC)
        session.add(
            self._download_model(
                file_id=file.id,
                user_id=principal.user_id,
                downloaded_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        model = self._file_model
        await session.execute(
            update(model)
            .where(model.id == file.id)  # type: ignore[arg-type]
            .values(
                download_count=model.download_count + 1,
                last_downloaded_at=now,
                last_downloaded_by=principal.user_id,
            )
            .execution_options(synchronize_session=False)
        )
        await session.flush()
        await session.refresh(file)
        return url

    async def trash(self, session: AsyncSession, file: File) -> None:
        """Soft-delete: ``deleted`` status, folder counters released, quota kept."""
        require_transition(file.status, FileStatus.DELETED)
        await self._metadata.compare_and_set(
            session,
            file,
            status=FileStatus.DELETED.value,
            deleted_at=datetime.now(UTC),
        )
        await self._metadata.adjust_folder_counters(
            session, file.folder_id, files=-1, size=-file.size
        )
        logger.info("File %s moved to trash", file.id)
