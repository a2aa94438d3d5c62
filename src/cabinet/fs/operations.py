"""Standalone orchestration functions for folder and file mutations.

Each function takes the session, the ``Services`` bundle and an
``Effects`` collector, then the caller's ``Principal``. Permission
checks and validation come first; nothing is written until they pass.
The functions flush but never commit: the facade owns the transaction,
emits the collected events after commit and runs the collected
compensations if the commit does not happen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cabinet.events import CabinetEvent, EventType
from cabinet.models.files import FileStatus

from .exceptions import (
    InvalidStateTransitionError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .lifecycle import history_locator, locator_of
from .metadata import MetadataService
from .permissions import Permission
from .sharing import RESOURCE_TYPES
from .types import DeleteResult, DownloadTicket, ListResult
from .utils import (
    drop_tags,
    dump_tags,
    merge_tags,
    normalize_parent_id,
    require_valid_color,
    require_valid_name,
    split_extension,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.config import CabinetConfig
    from cabinet.models.accounts import StorageAccount
    from cabinet.models.files import File, FileVersion
    from cabinet.models.folders import Folder
    from cabinet.models.grants import Grant

    from .aggregation import AggregationService
    from .gateways import RiskGateway, StorageGateway
    from .lifecycle import FileLifecycleService
    from .permissions import Principal
    from .quota import QuotaService
    from .sharing import SharingService
    from .trash import TrashService
    from .tree import TreeService
    from .types import (
        Breadcrumb,
        CounterDrift,
        FolderStats,
        FolderTreeNode,
        OrphanReport,
        RiskVerdict,
        SearchResult,
        StorageLocator,
    )
    from .versioning import VersioningService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The services one ``Cabinet`` wires together, passed to every operation."""

    metadata: MetadataService
    tree: TreeService
    sharing: SharingService
    trash: TrashService
    versioning: VersioningService
    quota: QuotaService
    lifecycle: FileLifecycleService
    aggregation: AggregationService
    storage: StorageGateway
    risk: RiskGateway
    config: CabinetConfig


@dataclass
class Effects:
    """Work that must happen outside the transaction an operation runs in.

    ``events`` are emitted and ``discard_after_commit`` objects deleted once
    the transaction commits. ``undo`` callbacks and
    ``discard_on_failure`` objects are the compensations run when the
    transaction rolls back instead.
    """

    events: list[CabinetEvent] = field(default_factory=list)
    undo: list[Callable[[], Awaitable[None]]] = field(default_factory=list)
    discard_on_failure: list[StorageLocator] = field(default_factory=list)
    discard_after_commit: list[StorageLocator] = field(default_factory=list)


def _require_admin(principal: Principal, action: str) -> None:
    if not principal.is_admin:
        raise PermissionDeniedError(f"Only administrators can {action}")


async def _require_resource(
    session: AsyncSession,
    svc: Services,
    resource_type: str,
    resource_id: str,
) -> Folder | File:
    if resource_type not in RESOURCE_TYPES:
        raise ValidationError(f"Invalid resource type: {resource_type!r}")
    if resource_type == "folder":
        return await svc.metadata.require_folder(session, resource_id)
    return await svc.metadata.require_file(session, resource_id)


async def _require_destination(
    session: AsyncSession,
    svc: Services,
    principal: Principal,
    folder_id: str | None,
) -> Folder | None:
    """Resolve a destination folder and check the caller may add to it."""
    destination = await svc.tree.require_parent(session, folder_id)
    if destination is not None:
        await svc.sharing.require(session, destination, principal, Permission.EDIT)
    return destination


# ------------------------------------------------------------------
# Folders
# ------------------------------------------------------------------


async def create_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    name: str,
    parent_id: str | None = None,
    *,
    description: str = "",
) -> Folder:
    await _require_destination(session, svc, principal, parent_id)
    return await svc.tree.create(
        session, parent_id, name, principal.user_id, description=description
    )


async def rename_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    new_name: str,
) -> Folder:
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.EDIT)
    return await svc.tree.rename(session, folder.id, new_name)


async def update_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    *,
    description: str | None = None,
    color: str | None = None,
    icon: str | None = None,
) -> Folder:
    """Change display metadata. Fields left as ``None`` are not touched."""
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.EDIT)
    values: dict[str, str] = {}
    if description is not None:
        values["description"] = description
    if color is not None:
        values["color"] = require_valid_color(color)  # type: ignore[assignment]
    if icon is not None:
        values["icon"] = icon
    if values:
        await svc.metadata.compare_and_set(session, folder, **values)
    return folder


async def add_folder_tags(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    tags: Sequence[str],
) -> Folder:
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.EDIT)
    merged = merge_tags(folder.tags, tags)
    if merged != folder.tags:
        await svc.metadata.compare_and_set(session, folder, tags_json=dump_tags(merged))
    return folder


async def remove_folder_tags(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    tags: Sequence[str],
) -> Folder:
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.EDIT)
    kept = drop_tags(folder.tags, tags)
    if kept != folder.tags:
        await svc.metadata.compare_and_set(session, folder, tags_json=dump_tags(kept))
    return folder


async def move_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    new_parent_id: str | None,
) -> Folder:
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.EDIT)
    await _require_destination(session, svc, principal, new_parent_id)
    return await svc.tree.move(session, folder.id, new_parent_id)


async def delete_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    *,
    permanent: bool = False,
    reason: str | None = None,
) -> DeleteResult:
    """Trash a folder, or purge it with ``permanent=True``.

    Purging an id that no longer exists is a no-op.
    """
    if permanent:
        folder = await svc.metadata.get_folder(session, folder_id, include_trashed=True)
        if folder is None:
            return DeleteResult(root_id=folder_id, permanent=True)
    else:
        folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.MANAGE)

    owner_id, name = folder.owner_id, folder.name
    if permanent:
        result = await svc.trash.purge_folder(
            session, folder.id, discard=effects.discard_after_commit
        )
    else:
        result = await svc.trash.trash_folder(session, folder)

    if principal.is_admin and owner_id != principal.user_id:
        effects.events.append(
            CabinetEvent(
                event_type=EventType.FOLDER_DELETED_BY_ADMIN,
                resource_type="folder",
                resource_id=folder_id,
                actor_id=principal.user_id,
                recipient_id=owner_id,
                reason=reason,
                payload={"name": name, "permanent": permanent},
            )
        )
    return result


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------


async def rename_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    new_name: str,
) -> File:
    require_valid_name(new_name)
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.EDIT)
    if file.name == new_name:
        return file
    if await svc.metadata.file_name_taken(
        session, file.owner_id, file.folder_id, new_name, exclude_id=file.id
    ):
        raise NameConflictError(f"A file named {new_name!r} already exists here")
    await svc.metadata.compare_and_set(
        session, file, name=new_name, extension=split_extension(new_name)
    )
    return file


async def move_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    folder_id: str | None,
) -> File:
    """Move a file into *folder_id*. The current folder needs no permission."""
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.EDIT)
    destination = await _require_destination(session, svc, principal, folder_id)
    folder_id = normalize_parent_id(folder_id)
    old_folder_id = normalize_parent_id(file.folder_id)
    if old_folder_id == folder_id:
        return file
    if await svc.metadata.file_name_taken(
        session, file.owner_id, folder_id, file.name, exclude_id=file.id
    ):
        raise NameConflictError(f"A file named {file.name!r} already exists in the destination")

    if destination is not None:
        await svc.metadata.touch(session, destination)
    await svc.metadata.compare_and_set(session, file, folder_id=folder_id)
    await svc.metadata.adjust_folder_counters(
        session, old_folder_id, files=-1, size=-file.size
    )
    await svc.metadata.adjust_folder_counters(session, folder_id, files=1, size=file.size)
    logger.info("Moved file %s from %s to %s", file.id, old_folder_id, folder_id)
    return file


async def delete_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    *,
    permanent: bool = False,
) -> DeleteResult:
    if not permanent:
        file = await svc.metadata.require_file(session, file_id)
        await svc.sharing.require(session, file, principal, Permission.MANAGE)
        await svc.lifecycle.trash(session, file)
        return DeleteResult(root_id=file.id, permanent=False, files=1)

    existing = await svc.metadata.get_file(
        session, file_id, include_deleted=True, include_provisional=True
    )
    if existing is None:
        return DeleteResult(root_id=file_id, permanent=True)
    await svc.sharing.require(session, existing, principal, Permission.MANAGE)
    return await svc.trash.purge_file(
        session, existing.id, discard=effects.discard_after_commit
    )


# ------------------------------------------------------------------
# Sharing
# ------------------------------------------------------------------


async def share_resource(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    resource_type: str,
    resource_id: str,
    grantee_id: str,
    permission: str | Permission,
    *,
    message: str | None = None,
) -> Grant:
    resource = await _require_resource(session, svc, resource_type, resource_id)
    await svc.sharing.require(session, resource, principal, Permission.MANAGE)
    if grantee_id == principal.user_id:
        raise ValidationError("Cannot share a resource with yourself")
    level = Permission.parse(permission)
    grant = await svc.sharing.grant(
        session,
        resource_type,
        resource.id,
        grantee_id,
        level,
        principal.user_id,
        message=message,
    )
    effects.events.append(
        CabinetEvent(
            event_type=EventType.SHARE_GRANTED,
            resource_type=resource_type,
            resource_id=resource.id,
            actor_id=principal.user_id,
            recipient_id=grantee_id,
            payload={"name": resource.name, "permission": level.value, "message": message},
        )
    )
    return grant


async def unshare_resource(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    resource_type: str,
    resource_id: str,
    grantee_id: str,
) -> None:
    resource = await _require_resource(session, svc, resource_type, resource_id)
    await svc.sharing.require(session, resource, principal, Permission.MANAGE)
    await svc.sharing.revoke(session, resource_type, resource.id, grantee_id)
    effects.events.append(
        CabinetEvent(
            event_type=EventType.SHARE_REVOKED,
            resource_type=resource_type,
            resource_id=resource.id,
            actor_id=principal.user_id,
            recipient_id=grantee_id,
            payload={"name": resource.name},
        )
    )


async def list_grants(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    resource_type: str,
    resource_id: str,
) -> list[Grant]:
    resource = await _require_resource(session, svc, resource_type, resource_id)
    await svc.sharing.require(session, resource, principal, Permission.MANAGE)
    return await svc.sharing.list_grants(session, resource_type, resource.id)


# ------------------------------------------------------------------
# Copy
# ------------------------------------------------------------------


async def _copy_one(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    owner_id: str,
    source: File,
    folder_id: str | None,
    name: str,
) -> File:
    require_valid_name(name)
    if await svc.metadata.file_name_taken(session, owner_id, folder_id, name):
        raise NameConflictError(f"A file named {name!r} already exists in the destination")
    locator = await svc.storage.copy(locator_of(source))
    effects.discard_on_failure.append(locator)
    copy = await svc.lifecycle.create_provisional(
        session,
        owner_id=owner_id,
        folder_id=folder_id,
        name=name,
        size=source.size,
        mime_type=source.mime_type,
        description=source.description,
        tags_json=source.tags_json,
    )
    return await svc.lifecycle.activate(session, copy.id, locator, None)


async def copy_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    folder_id: str | None,
    name: str | None = None,
) -> File:
    """Copy an active file into *folder_id*, owned by the caller.

    The copy starts at version 1 with no history and no grants.
    """
    source = await svc.metadata.require_file(
        session, file_id, include_deleted=True, include_provisional=True
    )
    await svc.sharing.require(session, source, principal, Permission.VIEW)
    if source.status != FileStatus.ACTIVE:
        raise InvalidStateTransitionError(
            f"Only active files can be copied; file {source.id} is {source.status}"
        )
    await _require_destination(session, svc, principal, folder_id)
    await svc.quota.check(session, principal.user_id, source.size)
    return await _copy_one(
        session,
        svc,
        effects,
        principal.user_id,
        source,
        normalize_parent_id(folder_id),
        name or source.name,
    )


async def copy_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
    parent_id: str | None,
    name: str | None = None,
) -> Folder:
    """Copy a folder's live subtree under *parent_id*, owned by the caller.

    Folders get fresh counters; only active files are copied.
    """
    source = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, source, principal, Permission.VIEW)
    await _require_destination(session, svc, principal, parent_id)
    await svc.tree.require_not_descendant(session, source.id, parent_id)

    subtree = await svc.tree.descendants_of(session, source.id)
    files_by_folder: dict[str, list[File]] = {}
    for folder in [source, *subtree]:
        files_by_folder[folder.id] = await svc.metadata.child_files(
            session, folder.id, statuses=(FileStatus.ACTIVE.value,)
        )
    total = sum(f.size for files in files_by_folder.values() for f in files)
    await svc.quota.check(session, principal.user_id, total)

    root = await svc.tree.create(
        session,
        parent_id,
        name or source.name,
        principal.user_id,
        description=source.description,
        color=source.color,
        icon=source.icon,
        tags_json=source.tags_json,
    )
    mapping = {source.id: root.id}
    # Breadth-first order puts every parent in the mapping before its children.
    for folder in subtree:
        copy = await svc.tree.create(
            session,
            mapping[folder.parent_id],  # type: ignore[index]
            folder.name,
            principal.user_id,
            description=folder.description,
            color=folder.color,
            icon=folder.icon,
            tags_json=folder.tags_json,
        )
        mapping[folder.id] = copy.id

    copied = 0
    for source_folder_id, files in files_by_folder.items():
        for file in files:
            await _copy_one(
                session, svc, effects, principal.user_id, file, mapping[source_folder_id], file.name
            )
            copied += 1

    await session.refresh(root)
    logger.info(
        "Copied folder %s to %s (%d folders, %d files)",
        source.id,
        root.id,
        len(mapping),
        copied,
    )
    return root


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


async def get_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
) -> Folder:
    folder = await svc.metadata.require_folder(session, folder_id)
    await svc.sharing.require(session, folder, principal, Permission.VIEW)
    return folder


async def get_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
) -> File:
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.VIEW)
    return file


async def list_folder(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str | None = None,
    *,
    kind: str = "all",
    sort_by: str = "name",
    descending: bool = False,
    page: int = 1,
    limit: int | None = None,
) -> ListResult:
    """List the live children of a folder, or the caller's own top level."""
    folder_id = normalize_parent_id(folder_id)
    if folder_id is not None:
        folder = await svc.metadata.require_folder(session, folder_id)
        await svc.sharing.require(session, folder, principal, Permission.VIEW)
    result = await svc.aggregation.list_children(
        session,
        folder_id,
        principal.user_id,
        kind=kind,
        sort_by=sort_by,
        descending=descending,
        page=page,
        limit=limit,
    )
    return ListResult(
        items=result.items,
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
        has_more=result.has_more,
        folder_id=folder_id,
    )


# ------------------------------------------------------------------
# Trash
# ------------------------------------------------------------------


async def list_trash(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> tuple[list[Folder], list[File]]:
    return await svc.trash.list_trash(session, principal.user_id)


async def empty_trash(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> DeleteResult:
    return await svc.trash.empty_trash(
        session, principal.user_id, discard=effects.discard_after_commit
    )


# ------------------------------------------------------------------
# Upload / content
# ------------------------------------------------------------------


def _require_size(svc: Services, size: int) -> None:
    if size < 0:
        raise ValidationError("File size must not be negative")
    if size > svc.config.max_file_size:
        raise ValidationError(
            f"File is {size} bytes; the limit is {svc.config.max_file_size} bytes"
        )


async def begin_upload(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str | None,
    name: str,
    *,
    size: int,
    mime_type: str,
    description: str = "",
) -> File:
    """Validate an upload and reserve its name with an ``uploading`` record."""
    require_valid_name(name)
    _require_size(svc, size)
    await _require_destination(session, svc, principal, folder_id)
    folder_id = normalize_parent_id(folder_id)
    if await svc.metadata.file_name_taken(session, principal.user_id, folder_id, name):
        raise NameConflictError(f"A file named {name!r} already exists here")
    await svc.quota.check(session, principal.user_id, size)
    return await svc.lifecycle.create_provisional(
        session,
        owner_id=principal.user_id,
        folder_id=folder_id,
        name=name,
        size=size,
        mime_type=mime_type,
        description=description,
    )


async def finish_upload(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    locator: StorageLocator,
    verdict: RiskVerdict | None,
) -> File:
    effects.discard_on_failure.append(locator)
    file = await svc.lifecycle.activate(session, file_id, locator, verdict)
    effects.events.append(
        CabinetEvent(
            event_type=EventType.FILE_UPLOADED,
            resource_type="file",
            resource_id=file.id,
            actor_id=principal.user_id,
            recipient_id=file.owner_id,
            payload={"name": file.name, "size": file.size, "status": file.status},
        )
    )
    if file.status == FileStatus.QUARANTINED:
        effects.events.append(_quarantine_event(file, actor_id=file.quarantined_by))
    return file


async def abort_upload(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
) -> bool:
    return await svc.lifecycle.discard_provisional(session, file_id)


async def check_replace(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    *,
    size: int,
) -> File:
    """Validate a content replacement before any bytes are stored."""
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.EDIT)
    if file.status != FileStatus.ACTIVE:
        raise InvalidStateTransitionError(
            f"Content can only be replaced on active files; file {file.id} is {file.status}"
        )
    _require_size(svc, size)
    await svc.quota.check(session, file.owner_id, size - file.size)
    return file


async def replace_content(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    locator: StorageLocator,
    *,
    size: int,
    mime_type: str,
    verdict: RiskVerdict | None = None,
    comment: str | None = None,
) -> File:
    effects.discard_on_failure.append(locator)
    file = await check_replace(session, svc, effects, principal, file_id, size=size)
    await svc.lifecycle.replace_content(
        session,
        file,
        locator,
        size=size,
        mime_type=mime_type,
        actor_id=principal.user_id,
        verdict=verdict,
        comment=comment,
    )
    if file.status == FileStatus.QUARANTINED:
        effects.events.append(_quarantine_event(file, actor_id=file.quarantined_by))
    return file


async def restore_file_version(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    version: int,
) -> File:
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.EDIT)
    if file.status != FileStatus.ACTIVE:
        raise InvalidStateTransitionError(
            f"Versions can only be restored on active files; file {file.id} is {file.status}"
        )
    if version == file.current_version:
        raise ValidationError(f"Version {version} is already the current version")
    entry = await svc.versioning.get_version(session, file.id, version)
    if entry is None:
        raise NotFoundError(f"Version {version} of file {file.id} not found")
    await svc.quota.check(session, file.owner_id, entry.size - file.size)

    locator = await svc.storage.copy(history_locator(file, entry))
    effects.discard_on_failure.append(locator)
    return await svc.lifecycle.restore_version(
        session, file, entry, locator, actor_id=principal.user_id
    )


async def list_versions(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
) -> list[FileVersion]:
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.VIEW)
    return await svc.versioning.list_versions(session, file.id)


async def download_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    ttl: int | None = None,
) -> DownloadTicket:
    file = await svc.metadata.require_file(session, file_id)
    await svc.sharing.require(session, file, principal, Permission.VIEW)
    ttl = ttl or svc.config.read_url_ttl
    url = await svc.lifecycle.record_download(
        session, file, principal, ttl=ttl, ip_address=ip_address, user_agent=user_agent
    )
    return DownloadTicket(url=url, expires_in=ttl, file=MetadataService.file_to_info(file))


# ------------------------------------------------------------------
# Quarantine
# ------------------------------------------------------------------


def _quarantine_event(file: File, *, actor_id: str | None) -> CabinetEvent:
    return CabinetEvent(
        event_type=EventType.FILE_QUARANTINED,
        resource_type="file",
        resource_id=file.id,
        actor_id=actor_id,
        recipient_id=file.owner_id,
        reason=file.quarantine_reason,
        payload={"name": file.name, "risk_level": file.risk_level, "risk_score": file.risk_score},
    )


async def quarantine_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    reason: str | None = None,
) -> File:
    _require_admin(principal, "quarantine files")
    file = await svc.metadata.require_file(session, file_id)
    outcome = await svc.lifecycle.quarantine(session, file, principal.user_id, reason)
    if outcome.undo is not None:
        effects.undo.append(outcome.undo)
    if outcome.changed:
        effects.events.append(_quarantine_event(file, actor_id=principal.user_id))
    return outcome.file


async def restore_file(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    file_id: str,
    reason: str | None = None,
) -> File:
    _require_admin(principal, "restore quarantined files")
    file = await svc.metadata.require_file(session, file_id)
    outcome = await svc.lifecycle.restore(session, file, principal.user_id, reason)
    if outcome.undo is not None:
        effects.undo.append(outcome.undo)
    effects.events.append(
        CabinetEvent(
            event_type=EventType.FILE_RESTORED,
            resource_type="file",
            resource_id=file.id,
            actor_id=principal.user_id,
            recipient_id=file.owner_id,
            reason=file.restore_reason,
            payload={"name": file.name},
        )
    )
    return outcome.file


# ------------------------------------------------------------------
# Quota
# ------------------------------------------------------------------


def _require_self_or_admin(principal: Principal, user_id: str) -> None:
    if user_id != principal.user_id and not principal.is_admin:
        raise PermissionDeniedError("Only administrators can act on another user's storage")


async def get_storage_usage(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    user_id: str | None = None,
) -> StorageAccount:
    user_id = user_id or principal.user_id
    _require_self_or_admin(principal, user_id)
    return await svc.quota.ensure_account(session, user_id)


async def set_storage_quota(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    user_id: str,
    quota_bytes: int,
) -> StorageAccount:
    _require_admin(principal, "change storage quotas")
    return await svc.quota.set_quota(session, user_id, quota_bytes)


async def reconcile_storage_usage(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    user_id: str | None = None,
) -> list[CounterDrift]:
    """Rebuild usage counters from file records; every owner when an admin passes no id."""
    if user_id is None and principal.is_admin:
        user_ids = await svc.quota.owners(session)
    else:
        user_id = user_id or principal.user_id
        _require_self_or_admin(principal, user_id)
        user_ids = [user_id]
    drifts: list[CounterDrift] = []
    for uid in user_ids:
        drift = await svc.quota.recompute(session, uid)
        if drift is not None:
            drifts.append(drift)
    return drifts


# ------------------------------------------------------------------
# Aggregation
# ------------------------------------------------------------------


async def folder_size(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str | None = None,
) -> int:
    folder_id = normalize_parent_id(folder_id)
    if folder_id is None:
        return await svc.aggregation.folder_size(session, None, principal.user_id)
    folder = await get_folder(session, svc, effects, principal, folder_id)
    return await svc.aggregation.folder_size(session, folder.id, folder.owner_id)


async def breadcrumbs(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
) -> list[Breadcrumb]:
    folder = await get_folder(session, svc, effects, principal, folder_id)
    return await svc.aggregation.breadcrumbs(session, folder)


async def search_within(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
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
    folder_id = normalize_parent_id(folder_id)
    scope = None
    if folder_id is not None:
        scope = await get_folder(session, svc, effects, principal, folder_id)
    return await svc.aggregation.search(
        session,
        principal,
        scope,
        query,
        kind=kind,
        sort_by=sort_by,
        descending=descending,
        page=page,
        limit=limit,
    )


async def folder_tree(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> list[FolderTreeNode]:
    return await svc.aggregation.folder_tree(session, principal)


async def folder_stats(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str,
) -> FolderStats:
    folder = await get_folder(session, svc, effects, principal, folder_id)
    return await svc.aggregation.folder_stats(session, folder)


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------


async def verify_counters(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str | None = None,
) -> None:
    _require_admin(principal, "verify counters")
    await svc.aggregation.verify_counters(session, normalize_parent_id(folder_id))


async def repair_counters(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
    folder_id: str | None = None,
) -> list[CounterDrift]:
    _require_admin(principal, "repair counters")
    return await svc.aggregation.repair_counters(session, normalize_parent_id(folder_id))


async def find_orphans(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> OrphanReport:
    _require_admin(principal, "inspect orphaned entries")
    return await svc.trash.find_orphans(session)


async def cleanup_orphans(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> OrphanReport:
    _require_admin(principal, "clean up orphaned entries")
    return await svc.trash.cleanup_orphans(session, discard=effects.discard_after_commit)


async def repair_trash(
    session: AsyncSession,
    svc: Services,
    effects: Effects,
    principal: Principal,
) -> list[str]:
    _require_admin(principal, "repair trash cascades")
    return await svc.trash.repair(session)
