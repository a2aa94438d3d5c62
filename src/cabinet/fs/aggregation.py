"""AggregationService — sizes, breadcrumbs, listings, search, folder tree, drift checks.

Read paths take no locks and tolerate slightly stale intermediate state.
Sizes here are recomputed from file records and are the authority the
incrementally maintained counters are checked against.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, update
from sqlmodel import select

from cabinet.models.files import LIVE_FILE_STATUSES

from .exceptions import InconsistentStateError, ValidationError
from .metadata import MetadataService, parent_clause
from .sharing import SharingService
from .types import Breadcrumb, CounterDrift, FolderStats, FolderTreeNode, SearchHit, SearchResult
from .utils import clamp_page, escape_like, normalize_parent_id, paginate, sort_key_for

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.config import CabinetConfig
    from cabinet.models.files import File
    from cabinet.models.folders import Folder

    from .permissions import Principal
    from .tree import TreeService

logger = logging.getLogger(__name__)

RESULT_KINDS = ("all", "folder", "file")


class AggregationService:
    """Read-side computations over the folder tree and file records."""

    def __init__(
        self,
        folder_model: type[Folder],
        file_model: type[File],
        *,
        metadata: MetadataService,
        tree: TreeService,
        sharing: SharingService,
        config: CabinetConfig,
    ) -> None:
        self._folder_model = folder_model
        self._file_model = file_model
        self._metadata = metadata
        self._tree = tree
        self._sharing = sharing
        self._config = config

    # ------------------------------------------------------------------
    # Sizes
    # ------------------------------------------------------------------

    async def _direct_file_bytes(
        self,
        session: AsyncSession,
        folder_id: str | None,
        owner_id: str | None = None,
    ) -> int:
        files = self._file_model
        query = select(func.coalesce(func.sum(files.size), 0)).where(
            parent_clause(files.folder_id, folder_id),
            files.status.in_(LIVE_FILE_STATUSES),  # type: ignore[union-attr]
        )
        if owner_id is not None:
            query = query.where(files.owner_id == owner_id)
        result = await session.execute(query)
        return int(result.scalar_one())

    async def folder_size(
        self,
        session: AsyncSession,
        folder_id: str | None,
        owner_id: str,
    ) -> int:
        """Sum live file sizes over the live subtree of *folder_id*.

        ``None`` means the owner's whole tree.
        """
        folder_id = normalize_parent_id(folder_id)
        if folder_id is None:
            total = await self._direct_file_bytes(session, None, owner_id)
            tops = await self._metadata.child_folders(session, None, owner_id=owner_id)
            queue: deque[str] = deque(f.id for f in tops)
        else:
            total = 0
            queue = deque([folder_id])

        visited: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            total += await self._direct_file_bytes(session, current)
            for child in await self._metadata.child_folders(session, current):
                queue.append(child.id)
        return total

    async def folder_stats(self, session: AsyncSession, folder: Folder) -> FolderStats:
        files = self._file_model
        result = await session.execute(
            select(files.mime_type, func.coalesce(func.sum(files.size), 0))
            .where(
                files.folder_id == folder.id,
                files.status.in_(LIVE_FILE_STATUSES),  # type: ignore[union-attr]
            )
            .group_by(files.mime_type)
        )
        by_type = {mime: int(total) for mime, total in result.all()}
        return FolderStats(
            folder_id=folder.id,
            file_count=folder.file_count,
            folder_count=folder.folder_count,
            direct_size=sum(by_type.values()),
            recursive_size=await self.folder_size(session, folder.id, folder.owner_id),
            storage_by_type=by_type,
        )

    async def breadcrumbs(self, session: AsyncSession, folder: Folder) -> list[Breadcrumb]:
        """Root-first crumbs ending with *folder* itself."""
        crumbs = await self._tree.ancestors_of(session, folder.id)
        crumbs.append(Breadcrumb(id=folder.id, name=folder.name, path=folder.path))
        return crumbs

    # ------------------------------------------------------------------
    # Listing / search
    # ------------------------------------------------------------------

    def _page(
        self,
        hits: list[SearchHit],
        *,
        sort_by: str,
        descending: bool,
        page: int,
        limit: int | None,
    ) -> SearchResult:
        page, limit = clamp_page(
            page, limit, self._config.default_page_size, self._config.max_page_size
        )
        hits.sort(key=sort_key_for(sort_by), reverse=descending)
        items, total, total_pages, has_more = paginate(hits, page, limit)
        return SearchResult(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_more=has_more,
        )

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in RESULT_KINDS:
            raise ValidationError(f"Invalid kind: {kind!r}. Must be one of {', '.join(RESULT_KINDS)}.")

    async def list_children(
        self,
        session: AsyncSession,
        folder_id: str | None,
        owner_id: str,
        *,
        kind: str = "all",
        sort_by: str = "name",
        descending: bool = False,
        page: int = 1,
        limit: int | None = None,
    ) -> SearchResult:
        """Live folders and files directly inside *folder_id*.

        At the top level only the caller's own items are listed.
        """
        self._check_kind(kind)
        sort_key_for(sort_by)
        folder_id = normalize_parent_id(folder_id)
        scope_owner = owner_id if folder_id is None else None
        hits: list[SearchHit] = []
        if kind in ("all", "folder"):
            for f in await self._metadata.child_folders(session, folder_id, owner_id=scope_owner):
                hits.append(MetadataService.folder_to_hit(f))
        if kind in ("all", "file"):
            for f in await self._metadata.child_files(session, folder_id, owner_id=scope_owner):
                hits.append(MetadataService.file_to_hit(f))
        return self._page(hits, sort_by=sort_by, descending=descending, page=page, limit=limit)

    def _match(self, model: Any, query: str) -> Any:
        # tags_json also matches JSON punctuation; rows are rechecked by _matches.
        pattern = f"%{escape_like(query)}%"
        return or_(
            model.name.ilike(pattern, escape="\\"),
            model.description.ilike(pattern, escape="\\"),
            model.tags_json.ilike(pattern, escape="\\"),
        )

    @staticmethod
    def _matches(row: Folder | File, needle: str) -> bool:
        needle = needle.lower()
        return (
            needle in row.name.lower()
            or needle in (row.description or "").lower()
            or any(needle in tag.lower() for tag in row.tags)
        )

    async def search(
        self,
        session: AsyncSession,
        principal: Principal,
        scope: Folder | None,
        query: str,
        *,
        kind: str = "all",
        sort_by: str = "name",
        descending: bool = False,
        page: int = 1,
        limit: int | None = None,
    ) -> SearchResult:
        """Case-insensitive substring search over names, descriptions and tags.

        With a *scope* folder the whole live subtree below it is searched
        (the caller's view permission on the scope covers it). Without
        one, everything the caller owns or holds a grant on is searched.
        """
        self._check_kind(kind)
        sort_key_for(sort_by)
        query = query.strip()
        folders = self._folder_model
        files = self._file_model

        folder_filters: list[Any] = [folders.is_trash == False]  # noqa: E712
        file_filters: list[Any] = [files.status.in_(LIVE_FILE_STATUSES)]  # type: ignore[union-attr]
        if query:
            folder_filters.append(self._match(folders, query))
            file_filters.append(self._match(files, query))

        if scope is not None:
            subtree = [scope.id] + [
                f.id for f in await self._tree.descendants_of(session, scope.id)
            ]
            folder_filters.append(folders.parent_id.in_(subtree))  # type: ignore[union-attr]
            file_filters.append(files.folder_id.in_(subtree))  # type: ignore[union-attr]
        elif not principal.is_admin:
            shared_folders = await self._sharing.resource_ids_shared_with(
                session, "folder", principal.user_id
            )
            shared_files = await self._sharing.resource_ids_shared_with(
                session, "file", principal.user_id
            )
            folder_filters.append(
                or_(folders.owner_id == principal.user_id, folders.id.in_(shared_folders))  # type: ignore[union-attr]
            )
            file_filters.append(
                or_(files.owner_id == principal.user_id, files.id.in_(shared_files))  # type: ignore[union-attr]
            )

        hits: list[SearchHit] = []
        if kind in ("all", "folder"):
            result = await session.execute(select(folders).where(*folder_filters))
            hits.extend(
                MetadataService.folder_to_hit(f)
                for f in result.scalars().all()
                if not query or self._matches(f, query)
            )
        if kind in ("all", "file"):
            result = await session.execute(select(files).where(*file_filters))
            hits.extend(
                MetadataService.file_to_hit(f)
                for f in result.scalars().all()
                if not query or self._matches(f, query)
            )
        return self._page(hits, sort_by=sort_by, descending=descending, page=page, limit=limit)

    async def folder_tree(self, session: AsyncSession, principal: Principal) -> list[FolderTreeNode]:
        """Nested tree of live folders the caller owns or holds a grant on.

        Built in one pass over a flat list; folders whose parent is not
        visible become top-level nodes.
        """
        folders = self._folder_model
        shared = await self._sharing.resource_ids_shared_with(session, "folder", principal.user_id)
        result = await session.execute(
            select(folders).where(
                folders.is_trash == False,  # noqa: E712
                or_(folders.owner_id == principal.user_id, folders.id.in_(shared)),  # type: ignore[union-attr]
            )
        )
        rows = list(result.scalars().all())
        nodes = {
            f.id: FolderTreeNode(
                id=f.id,
                name=f.name,
                path=f.path,
                owner_id=f.owner_id,
                file_count=f.file_count,
                folder_count=f.folder_count,
                total_size=f.total_size,
                color=f.color,
                icon=f.icon,
            )
            for f in rows
        }
        roots: list[FolderTreeNode] = []
        for f in rows:
            parent_id = normalize_parent_id(f.parent_id)
            if parent_id is not None and parent_id in nodes and parent_id != f.id:
                nodes[parent_id].children.append(nodes[f.id])
            else:
                roots.append(nodes[f.id])

        def by_name(node: FolderTreeNode) -> tuple[str, str]:
            return node.name.lower(), node.id

        roots.sort(key=by_name)
        for node in nodes.values():
            node.children.sort(key=by_name)
        return roots

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    async def counter_drift(self, session: AsyncSession, folder_id: str | None = None) -> list[CounterDrift]:
        """Compare stored folder counters with counts recomputed from source."""
        folders = self._folder_model
        files = self._file_model

        folder_query = select(folders)
        child_query = (
            select(folders.parent_id, func.count())
            .where(folders.is_trash == False)  # noqa: E712
            .group_by(folders.parent_id)
        )
        file_query = (
            select(files.folder_id, func.count(), func.coalesce(func.sum(files.size), 0))
            .where(files.status.in_(LIVE_FILE_STATUSES))  # type: ignore[union-attr]
            .group_by(files.folder_id)
        )
        if folder_id is not None:
            folder_query = folder_query.where(folders.id == folder_id)
            child_query = child_query.where(folders.parent_id == folder_id)
            file_query = file_query.where(files.folder_id == folder_id)

        rows = (await session.execute(folder_query.execution_options(populate_existing=True))).scalars().all()
        child_counts = {pid: int(n) for pid, n in (await session.execute(child_query)).all()}
        file_aggs = {
            fid: (int(n), int(size)) for fid, n, size in (await session.execute(file_query)).all()
        }

        drifts: list[CounterDrift] = []
        for folder in rows:
            actual_folders = child_counts.get(folder.id, 0)
            actual_files, actual_size = file_aggs.get(folder.id, (0, 0))
            for counter, stored, actual in (
                ("folder_count", folder.folder_count, actual_folders),
                ("file_count", folder.file_count, actual_files),
                ("total_size", folder.total_size, actual_size),
            ):
                if stored != actual:
                    drifts.append(CounterDrift(folder.id, counter, stored, actual))
        return drifts

    async def verify_counters(self, session: AsyncSession, folder_id: str | None = None) -> None:
        """Raise ``InconsistentStateError`` if any folder counter has drifted."""
        drifts = await self.counter_drift(session, folder_id)
        if drifts:
            raise InconsistentStateError(
                f"{len(drifts)} folder counters disagree with their source records", drifts
            )

    async def repair_counters(self, session: AsyncSession, folder_id: str | None = None) -> list[CounterDrift]:
        """Rewrite drifted counters from source. Idempotent; returns what was fixed."""
        drifts = await self.counter_drift(session, folder_id)
        by_folder: dict[str, dict[str, int]] = {}
        for drift in drifts:
            by_folder.setdefault(drift.entity_id, {})[drift.counter] = drift.actual
        folders = self._folder_model
        for entity_id, values in by_folder.items():
            await session.execute(
                update(folders)
                .where(folders.id == entity_id)  # type: ignore[arg-type]
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        if drifts:
            logger.warning(
                "Repaired %d drifted counters across %d folders", len(drifts), len(by_folder)
            )
        return drifts
