"""VersioningService — append-only version history for file content."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete as sa_delete
from sqlmodel import select

from .utils import as_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.files import File, FileVersion

logger = logging.getLogger(__name__)


class VersioningService:
    """Records a file's previous content before it is replaced.

    Entries are only ever inserted; the one exception is permanent
    deletion of the file they belong to.
    """

    def __init__(self, version_model: type[FileVersion]) -> None:
        self._version_model = version_model

    async def push_current(
        self,
        session: AsyncSession,
        file: File,
        *,
        comment: str | None = None,
    ) -> FileVersion:
        """Append the file's current content as history entry ``file.current_version``.

        Flushes but does not commit.
        """
        entry = self._version_model(
            file_id=file.id,
            version=file.current_version,
            storage_key=file.storage_key,
            storage_etag=file.storage_etag,
            size=file.size,
            mime_type=file.mime_type,
            uploaded_at=as_utc(file.uploaded_at),
            uploaded_by=file.uploaded_by,
            comment=comment,
        )
        session.add(entry)
        await session.flush()
        logger.debug("Recorded version %d of file %s", entry.version, file.id)
        return entry

    async def list_versions(self, session: AsyncSession, file_id: str) -> list[FileVersion]:
        """Return history entries oldest first."""
        model = self._version_model
        result = await session.execute(
            select(model)
            .where(model.file_id == file_id)
            .order_by(model.version)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def get_version(
        self,
        session: AsyncSession,
        file_id: str,
        version: int,
    ) -> FileVersion | None:
        model = self._version_model
        result = await session.execute(
            select(model).where(
                model.file_id == file_id,
                model.version == version,
            )
        )
        return result.scalar_one_or_none()

    async def delete_versions(self, session: AsyncSession, file_ids: list[str]) -> int:
        """Delete all history of the given files. Only used by permanent deletion."""
        if not file_ids:
            return 0
        model = self._version_model
        result = await session.execute(
            sa_delete(model).where(model.file_id.in_(file_ids))  # type: ignore[union-attr]
        )
        return result.rowcount  # type: ignore[return-value]
