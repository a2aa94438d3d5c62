"""Cabinet — async facade over the folder tree, sharing and file lifecycle."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cabinet.config import CabinetConfig
from cabinet.events import EventBus
from cabinet.fs import operations
from cabinet.fs.aggregation import AggregationService
from cabinet.fs.dialect import get_dialect
from cabinet.fs.gateways import RiskGateway, StorageGateway
from cabinet.fs.lifecycle import FileLifecycleService
from cabinet.fs.metadata import MetadataService
from cabinet.fs.operations import Effects, Services
from cabinet.fs.quota import QuotaService
from cabinet.fs.sharing import SharingService
from cabinet.fs.trash import TrashService
from cabinet.fs.tree import TreeService
from cabinet.fs.types import TrashListing, UsageInfo
from cabinet.fs.utils import guess_mime_type
from cabinet.fs.versioning import VersioningService
from cabinet.models.accounts import StorageAccount
from cabinet.models.files import File, FileDownload, FileVersion
from cabinet.models.folders import Folder
from cabinet.models.grants import Grant

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine

    from cabinet.events import CabinetEvent
    from cabinet.fs.permissions import Permission, Principal
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
        SearchResult,
        VersionInfo,
    )

logger = logging.getLogger(__name__)

_TABLES = (Folder, File, FileVersion, FileDownload, Grant, StorageAccount)


def _usage(account: StorageAccount) -> UsageInfo:
    return UsageInfo(
        user_id=account.user_id,
        storage_used=account.storage_used,
        storage_quota=account.storage_quota,
    )


class Cabinet:
    """Async facade wiring the tree, sharing, lifecycle and aggregation services.

    Every public method takes the calling ``Principal`` first, runs in
    its own transaction and returns plain result dataclasses::

        engine = create_async_engine("sqlite+aiosqlite:///cabinet.db")
        async with Cabinet(engine, storage=LocalObjectStorage("/srv/objects")) as cab:
            await cab.create_tables()
            alice = Principal("alice")
            docs = await cab.create_folder(alice, "Documents")
            await cab.upload_file(alice, docs.id, "notes.txt", b"hello")

    Events are emitted on the ``EventBus`` only after the transaction
    that produced them has committed.
    """

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        session_factory: Callable[..., AsyncSession] | None = None,
        dialect: str = "sqlite",
        storage: ObjectStorage,
        risk_assessor: RiskAssessor | None = None,
        event_bus: EventBus | None = None,
        config: CabinetConfig | None = None,
    ) -> None:
        if engine is None and session_factory is None:
            raise ValueError("Cabinet needs an engine or a session_factory")
        self._engine = engine
        if session_factory is None:
            session_factory = async_sessionmaker(
                engine, class_=AsyncSession, expire_on_commit=False
            )
        self._session_factory = session_factory
        self._dialect = get_dialect(engine) if engine is not None else dialect
        self._config = config or CabinetConfig()
        self._event_bus = event_bus or EventBus()
        self._closed = False

        cfg = self._config
        metadata = MetadataService(Folder, File)
        tree = TreeService(Folder, metadata)
        sharing = SharingService(Grant)
        versioning = VersioningService(FileVersion)
        quota = QuotaService(
            StorageAccount, File, dialect=self._dialect, default_quota=cfg.default_quota
        )
        storage_gateway = StorageGateway(storage, timeout=cfg.storage_timeout)
        self._services = Services(
            metadata=metadata,
            tree=tree,
            sharing=sharing,
            trash=TrashService(
                Folder,
                File,
                FileDownload,
                metadata=metadata,
                tree=tree,
                sharing=sharing,
                versioning=versioning,
                quota=quota,
            ),
            versioning=versioning,
            quota=quota,
            lifecycle=FileLifecycleService(
                File,
                FileDownload,
                metadata=metadata,
                versioning=versioning,
                quota=quota,
                storage=storage_gateway,
                config=cfg,
            ),
            aggregation=AggregationService(
                Folder, File, metadata=metadata, tree=tree, sharing=sharing, config=cfg
            ),
            storage=storage_gateway,
            risk=RiskGateway(risk_assessor, timeout=cfg.risk_timeout),
            config=cfg,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_tables(self) -> None:
        """Create every table this package uses, skipping existing ones."""
        if self._engine is None:
            raise RuntimeError("create_tables() needs the Cabinet to be built with an engine")
        async with self._engine.begin() as conn:
            for model in _TABLES:
                await conn.run_sync(
                    lambda c, m=model: m.__table__.create(c, checkfirst=True)  # type: ignore[attr-defined]
                )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._engine is not None:
            await self._engine.dispose()

    async def __aenter__(self) -> Cabinet:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def config(self) -> CabinetConfig:
        return self._config

    @property
    def services(self) -> Services:
        return self._services

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session that commits on success and rolls back on any error."""
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def _compensate(self, effects: Effects) -> None:
        for undo in reversed(effects.undo):
            await undo()
        for locator in effects.discard_on_failure:
            await self._services.storage.discard(locator)

    async def _emit(self, events: list[CabinetEvent]) -> None:
        for event in events:
            await self._event_bus.emit(event)

    async def _run(self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run one operation in its own transaction, then emit or compensate."""
        effects = Effects()
        try:
            async with self.transaction() as session:
                result = await operation(session, self._services, effects, *args, **kwargs)
        except Exception:
            await self._compensate(effects)
            raise
        for locator in effects.discard_after_commit:
            await self._services.storage.discard(locator)
        await self._emit(effects.events)
        return result

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def create_folder(
        self,
        principal: Principal,
        name: str,
        parent_id: str | None = None,
        *,
        description: str = "",
    ) -> FolderInfo:
        folder = await self._run(
            operations.create_folder, principal, name, parent_id, description=description
        )
        return MetadataService.folder_to_info(folder)

    async def get_folder(self, principal: Principal, folder_id: str) -> FolderInfo:
        folder = await self._run(operations.get_folder, principal, folder_id)
        return MetadataService.folder_to_info(folder)

    async def rename_folder(self, principal: Principal, folder_id: str, new_name: str) -> FolderInfo:
        folder = await self._run(operations.rename_folder, principal, folder_id, new_name)
        return MetadataService.folder_to_info(folder)

    async def update_folder(
        self,
        principal: Principal,
        folder_id: str,
        *,
        description: str | None = None,
        color: str | None = None,
        icon: str | None = None,
    ) -> FolderInfo:
        folder = await self._run(
            operations.update_folder,
            principal,
            folder_id,
            description=description,
            color=color,
            icon=icon,
        )
        return MetadataService.folder_to_info(folder)

    async def add_folder_tags(
        self, principal: Principal, folder_id: str, tags: Sequence[str]
    ) -> FolderInfo:
        folder = await self._run(operations.add_folder_tags, principal, folder_id, tags)
        return MetadataService.folder_to_info(folder)

    async def remove_folder_tags(
        self, principal: Principal, folder_id: str, tags: Sequence[str]
    ) -> FolderInfo:
        folder = await self._run(operations.remove_folder_tags, principal, folder_id, tags)
        return MetadataService.folder_to_info(folder)

    async def move_folder(
        self, principal: Principal, folder_id: str, new_parent_id: str | None
    ) -> FolderInfo:
        folder = await self._run(operations.move_folder, principal, folder_id, new_parent_id)
        return MetadataService.folder_to_info(folder)

    async def copy_folder(
        self,
        principal: Principal,
        folder_id: str,
        parent_id: str | None,
        name: str | None = None,
    ) -> FolderInfo:
        folder = await self._run(operations.copy_folder, principal, folder_id, parent_id, name)
        return MetadataService.folder_to_info(folder)

    async def delete_folder(
        self,
        principal: Principal,
        folder_id: str,
        *,
        permanent: bool = False,
        reason: str | None = None,
    ) -> DeleteResult:
        return await self._run(
            operations.delete_folder, principal, folder_id, permanent=permanent, reason=reason
        )

    async def list_folder(
        self,
        principal: Principal,
        folder_id: str | None = None,
        *,
        kind: str = "all",
        sort_by: str = "name",
        descending: bool = False,
        page: int = 1,
        limit: int | None = None,
    ) -> ListResult:
        return await self._run(
            operations.list_folder,
            principal,
            folder_id,
            kind=kind,
            sort_by=sort_by,
            descending=descending,
            page=page,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def get_file(self, principal: Principal, file_id: str) -> FileInfo:
        file = await self._run(operations.get_file, principal, file_id)
        return MetadataService.file_to_info(file)

    async def rename_file(self, principal: Principal, file_id: str, new_name: str) -> FileInfo:
        file = await self._run(operations.rename_file, principal, file_id, new_name)
        return MetadataService.file_to_info(file)

    async def move_file(self, principal: Principal, file_id: str, folder_id: str | None) -> FileInfo:
        file = await self._run(operations.move_file, principal, file_id, folder_id)
        return MetadataService.file_to_info(file)

    async def copy_file(
        self,
        principal: Principal,
        file_id: str,
        folder_id: str | None,
        name: str | None = None,
    ) -> FileInfo:
        file = await self._run(operations.copy_file, principal, file_id, folder_id, name)
        return MetadataService.file_to_info(file)

    async def delete_file(
        self, principal: Principal, file_id: str, *, permanent: bool = False
    ) -> DeleteResult:
        return await self._run(operations.delete_file, principal, file_id, permanent=permanent)

    async def upload_file(
        self,
        principal: Principal,
        folder_id: str | None,
        name: str,
        data: bytes,
        mime_type: str | None = None,
        *,
        description: str = "",
    ) -> FileInfo:
        """Store new content and admit it as a file.

        The record is created as ``uploading`` (reserving the name) before
        the bytes are stored, and is removed again if storing or
        activation fails.
        """
        mime_type = mime_type or guess_mime_type(name)
        size = len(data)
        provisional = await self._run(
            operations.begin_upload,
            principal,
            folder_id,
            name,
            size=size,
            mime_type=mime_type,
            description=description,
        )
        file_id = provisional.id
        try:
            verdict = await self._services.risk.assess(
                data,
                {
                    "file_id": file_id,
                    "name": name,
                    "mime_type": mime_type,
                    "size": size,
                    "owner_id": principal.user_id,
                },
            )
            area = self._config.upload_area
            if verdict is not None and verdict.flagged:
                area = self._config.quarantine_area
            locator = await self._services.storage.put(data, mime_type, area=area)
            file = await self._run(
                operations.finish_upload, principal, file_id, locator, verdict
            )
        except Exception:
            await self._run(operations.abort_upload, principal, file_id)
            raise
        return MetadataService.file_to_info(file)

    async def replace_file_content(
        self,
        principal: Principal,
        file_id: str,
        data: bytes,
        mime_type: str | None = None,
        *,
        comment: str | None = None,
    ) -> FileInfo:
        """Store new content for an active file, keeping the previous one as history."""
        size = len(data)
        current = await self._run(operations.check_replace, principal, file_id, size=size)
        mime_type = mime_type or current.mime_type
        verdict = await self._services.risk.assess(
            data,
            {
                "file_id": file_id,
                "name": current.name,
                "mime_type": mime_type,
                "size": size,
                "owner_id": current.owner_id,
            },
        )
        area = self._config.upload_area
        if verdict is not None and verdict.flagged:
            area = self._config.quarantine_area
        locator = await self._services.storage.put(data, mime_type, area=area)
        file = await self._run(
            operations.replace_content,
            principal,
            file_id,
            locator,
            size=size,
            mime_type=mime_type,
            verdict=verdict,
            comment=comment,
        )
        return MetadataService.file_to_info(file)

    async def restore_file_version(
        self, principal: Principal, file_id: str, version: int
    ) -> FileInfo:
        file = await self._run(operations.restore_file_version, principal, file_id, version)
        return MetadataService.file_to_info(file)

    async def list_versions(self, principal: Principal, file_id: str) -> list[VersionInfo]:
        entries = await self._run(operations.list_versions, principal, file_id)
        return [MetadataService.version_to_info(v) for v in entries]

    async def download_file(
        self,
        principal: Principal,
        file_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        ttl: int | None = None,
    ) -> DownloadTicket:
        return await self._run(
            operations.download_file,
            principal,
            file_id,
            ip_address=ip_address,
            user_agent=user_agent,
            ttl=ttl,
        )

    async def quarantine_file(
        self, principal: Principal, file_id: str, reason: str | None = None
    ) -> FileInfo:
        file = await self._run(operations.quarantine_file, principal, file_id, reason)
        return MetadataService.file_to_info(file)

    async def restore_file(
        self, principal: Principal, file_id: str, reason: str | None = None
    ) -> FileInfo:
        file = await self._run(operations.restore_file, principal, file_id, reason)
        return MetadataService.file_to_info(file)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def share_folder(
        self,
        principal: Principal,
        folder_id: str,
        grantee_id: str,
        permission: str | Permission = "view",
        *,
        message: str | None = None,
    ) -> GrantInfo:
        grant = await self._run(
            operations.share_resource,
            principal,
            "folder",
            folder_id,
            grantee_id,
            permission,
            message=message,
        )
        return MetadataService.grant_to_info(grant)

    async def share_file(
        self,
        principal: Principal,
        file_id: str,
        grantee_id: str,
        permission: str | Permission = "view",
        *,
        message: str | None = None,
    ) -> GrantInfo:
        grant = await self._run(
            operations.share_resource,
            principal,
            "file",
            file_id,
            grantee_id,
            permission,
            message=message,
        )
        return MetadataService.grant_to_info(grant)

    async def unshare_folder(self, principal: Principal, folder_id: str, grantee_id: str) -> None:
        await self._run(operations.unshare_resource, principal, "folder", folder_id, grantee_id)

    async def unshare_file(self, principal: Principal, file_id: str, grantee_id: str) -> None:
        await self._run(operations.unshare_resource, principal, "file", file_id, grantee_id)

    async def list_grants(
        self, principal: Principal, resource_type: str, resource_id: str
    ) -> list[GrantInfo]:
        grants = await self._run(operations.list_grants, principal, resource_type, resource_id)
        return [MetadataService.grant_to_info(g) for g in grants]

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def list_trash(self, principal: Principal) -> TrashListing:
        folders, files = await self._run(operations.list_trash, principal)
        return TrashListing(
            folders=[MetadataService.folder_to_info(f) for f in folders],
            files=[MetadataService.file_to_info(f) for f in files],
        )

    async def empty_trash(self, principal: Principal) -> DeleteResult:
        return await self._run(operations.empty_trash, principal)

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    async def get_storage_usage(
        self, principal: Principal, user_id: str | None = None
    ) -> UsageInfo:
        account = await self._run(operations.get_storage_usage, principal, user_id)
        return _usage(account)

    async def set_storage_quota(
        self, principal: Principal, user_id: str, quota_bytes: int
    ) -> UsageInfo:
        account = await self._run(operations.set_storage_quota, principal, user_id, quota_bytes)
        return _usage(account)

    async def reconcile_storage_usage(
        self, principal: Principal, user_id: str | None = None
    ) -> list[CounterDrift]:
        return await self._run(operations.reconcile_storage_usage, principal, user_id)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def folder_size(self, principal: Principal, folder_id: str | None = None) -> int:
        return await self._run(operations.folder_size, principal, folder_id)

    async def breadcrumbs(self, principal: Principal, folder_id: str) -> list[Breadcrumb]:
        return await self._run(operations.breadcrumbs, principal, folder_id)

    async def search_within(
        self,
        principal: Principal,
        folder_id: str | None,
        query: str,
        *,
        kind: str = "all",
        sort_by: str = "name",
        descending: bool = False,
        page: int = 1,
        limit: int | None = None,
    ) -> SearchResult:
        return await self._run(
            operations.search_within,
            principal,
            folder_id,
            query,
            kind=kind,
            sort_by=sort_by,
            descending=descending,
            page=page,
            limit=limit,
        )

    async def folder_tree(self, principal: Principal) -> list[FolderTreeNode]:
        return await self._run(operations.folder_tree, principal)

    async def folder_stats(self, principal: Principal, folder_id: str) -> FolderStats:
        return await self._run(operations.folder_stats, principal, folder_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def verify_counters(self, principal: Principal, folder_id: str | None = None) -> None:
        await self._run(operations.verify_counters, principal, folder_id)

    async def repair_counters(
        self, principal: Principal, folder_id: str | None = None
    ) -> list[CounterDrift]:
        return await self._run(operations.repair_counters, principal, folder_id)

    async def find_orphans(self, principal: Principal) -> OrphanReport:
        return await self._run(operations.find_orphans, principal)

    async def cleanup_orphans(self, principal: Principal) -> OrphanReport:
        return await self._run(operations.cleanup_orphans, principal)

    async def repair_trash(self, principal: Principal) -> list[str]:
        return await self._run(operations.repair_trash, principal)
