"""TreeService — folder hierarchy, materialized paths, cycle detection.

Every walk here is iterative over an explicit queue with a visited set,
so folder depth never turns into call-stack depth.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from sqlalchemy import update

from .exceptions import (
    CircularReferenceError,
    InconsistentStateError,
    NameConflictError,
    NotFoundError,
)
from .types import ROOT_CRUMB_NAME, Breadcrumb
from .utils import normalize_parent_id, require_valid_name

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.folders import Folder

    from .metadata import MetadataService

logger = logging.getLogger(__name__)

ROOT_PATH = "/"


class TreeService:
    """Creates, moves and renames folders while keeping paths and counts consistent.

    Structural writes are compare-and-set on ``row_version``; counter
    changes are SQL-side increments. Flushes but does not commit.
    """

    def __init__(self, folder_model: type[Folder], metadata: MetadataService) -> None:
        self._folder_model = folder_model
        self._metadata = metadata

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        session: AsyncSession,
        parent_id: str | None,
        name: str,
        owner_id: str,
        *,
        description: str = "",
        is_default: bool = False,
        color: str | None = None,
        icon: str | None = None,
        tags_json: str = "[]",
    ) -> Folder:
        require_valid_name(name)
        parent_id = normalize_parent_id(parent_id)
        parent = None
        if parent_id is not None:
            parent = await self._metadata.require_folder(session, parent_id)

        if await self._metadata.folder_name_taken(session, owner_id, parent_id, name):
            raise NameConflictError(f"A folder named {name!r} already exists here")

        folder = self._folder_model(
            name=name,
            description=description,
            owner_id=owner_id,
            parent_id=parent_id,
            path=parent.full_path if parent is not None else ROOT_PATH,
            is_default=is_default,
            color=color,
            icon=icon,
            tags_json=tags_json,
        )
        session.add(folder)
        await session.flush()
        await self._metadata.adjust_folder_counters(session, parent_id, folders=1)
        logger.debug("Created folder %s at %s%s", folder.id, folder.path, name)
        return folder

    # ------------------------------------------------------------------
    # Ancestors / descendants
    # ------------------------------------------------------------------

    async def ancestor_chain(self, session: AsyncSession, folder: Folder) -> list[Folder]:
        """Return the ancestors of *folder*, nearest first.

        Stops at the first parent reference that does not resolve. Raises
        ``InconsistentStateError`` if the chain loops.
        """
        chain: list[Folder] = []
        visited = {folder.id}
        parent_id = normalize_parent_id(folder.parent_id)
        while parent_id is not None:
            if parent_id in visited:
                raise InconsistentStateError(f"Folder {folder.id} has a cyclic parent chain")
            visited.add(parent_id)
            parent = await self._metadata.get_folder(session, parent_id, include_trashed=True)
            if parent is None:
                logger.warning("Folder %s has unresolved ancestor %s", folder.id, parent_id)
                break
            chain.append(parent)
            parent_id = normalize_parent_id(parent.parent_id)
        return chain

    async def ancestors_of(self, session: AsyncSession, folder_id: str) -> list[Breadcrumb]:
        """Return the ancestors of a folder root-first, headed by the synthetic root."""
        folder = await self._metadata.require_folder(session, folder_id, include_trashed=True)
        chain = await self.ancestor_chain(session, folder)
        crumbs = [Breadcrumb(id=None, name=ROOT_CRUMB_NAME, path=ROOT_PATH)]
        crumbs.extend(Breadcrumb(id=f.id, name=f.name, path=f.path) for f in reversed(chain))
        return crumbs

    async def descendants_of(
        self,
        session: AsyncSession,
        folder_id: str,
        *,
        include_trashed: bool = False,
    ) -> list[Folder]:
        """Return every folder below *folder_id* in breadth-first order."""
        found: list[Folder] = []
        visited = {folder_id}
        queue: deque[str] = deque([folder_id])
        while queue:
            current = queue.popleft()
            children = await self._metadata.child_folders(
                session, current, include_trashed=include_trashed
            )
            for child in children:
                if child.id in visited:
                    logger.warning("Skipping revisited folder %s under %s", child.id, current)
                    continue
                visited.add(child.id)
                found.append(child)
                queue.append(child.id)
        return found

    async def is_descendant(self, session: AsyncSession, folder_id: str, candidate_id: str) -> bool:
        """True if *candidate_id* is *folder_id* or lies below it."""
        if folder_id == candidate_id:
            return True
        candidate = await self._metadata.get_folder(session, candidate_id, include_trashed=True)
        if candidate is None:
            return False
        chain = await self.ancestor_chain(session, candidate)
        return any(f.id == folder_id for f in chain)

    # ------------------------------------------------------------------
    # Move / rename
    # ------------------------------------------------------------------

    async def move(
        self,
        session: AsyncSession,
        folder_id: str,
        new_parent_id: str | None,
    ) -> Folder:
        """Move a folder under *new_parent_id* (``None`` for the top level).

        All checks run against the state read at the start; nothing is
        written until they pass.
        """
        folder = await self._metadata.require_folder(session, folder_id)
        new_parent_id = normalize_parent_id(new_parent_id)
        if new_parent_id == folder.id:
            raise CircularReferenceError("Cannot move a folder into itself")

        destination = None
        chain: list[Folder] = []
        if new_parent_id is not None:
            destination = await self._metadata.require_folder(session, new_parent_id)
            chain = [destination, *await self.ancestor_chain(session, destination)]
            if any(f.id == folder.id for f in chain):
                raise CircularReferenceError("Cannot move a folder into its own subfolder")

        old_parent_id = normalize_parent_id(folder.parent_id)
        if old_parent_id == new_parent_id:
            return folder

        if await self._metadata.folder_name_taken(
            session, folder.owner_id, new_parent_id, folder.name, exclude_id=folder.id
        ):
            raise NameConflictError(
                f"A folder named {folder.name!r} already exists in the destination"
            )

        # Concurrent structural changes along the destination chain must conflict.
        for ancestor in chain:
            await self._metadata.touch(session, ancestor)

        new_path = destination.full_path if destination is not None else ROOT_PATH
        await self._metadata.compare_and_set(
            session, folder, parent_id=new_parent_id, path=new_path
        )
        await self._metadata.adjust_folder_counters(session, old_parent_id, folders=-1)
        await self._metadata.adjust_folder_counters(session, new_parent_id, folders=1)
        updated = await self.propagate_paths(session, folder)
        logger.info(
            "Moved folder %s from %s to %s (%d descendant paths updated)",
            folder.id,
            old_parent_id,
            new_parent_id,
            updated,
        )
        return folder

    async def rename(self, session: AsyncSession, folder_id: str, new_name: str) -> Folder:
        require_valid_name(new_name)
        folder = await self._metadata.require_folder(session, folder_id)
        if folder.name == new_name:
            return folder
        if await self._metadata.folder_name_taken(
            session, folder.owner_id, folder.parent_id, new_name, exclude_id=folder.id
        ):
            raise NameConflictError(f"A folder named {new_name!r} already exists here")
        await self._metadata.compare_and_set(session, folder, name=new_name)
        await self.propagate_paths(session, folder)
        return folder

    async def propagate_paths(self, session: AsyncSession, root: Folder) -> int:
        """Recompute the path of every folder below *root* from its parent's.

        Breadth-first, so a parent's new path is always known before its
        children are visited. Returns the number of rows rewritten.
        """
        model = self._folder_model
        updated = 0
        visited = {root.id}
        queue: deque[tuple[str, str]] = deque([(root.id, root.full_path)])
        while queue:
            parent_id, parent_path = queue.popleft()
            children = await self._metadata.child_folders(session, parent_id, include_trashed=True)
            for child in children:
                if child.id in visited:
                    logger.warning("Skipping revisited folder %s under %s", child.id, parent_id)
                    continue
                visited.add(child.id)
                if child.path != parent_path:
                    await session.execute(
                        update(model)
                        .where(model.id == child.id)  # type: ignore[arg-type]
                        .values(path=parent_path, row_version=model.row_version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    updated += 1
                queue.append((child.id, f"{parent_path}{child.name}/"))
        return updated

    async def require_not_descendant(
        self,
        session: AsyncSession,
        folder_id: str,
        target_id: str | None,
    ) -> None:
        """Raise ``CircularReferenceError`` if *target_id* is *folder_id* or below it."""
        target_id = normalize_parent_id(target_id)
        if target_id is None:
            return
        if await self.is_descendant(session, folder_id, target_id):
            raise CircularReferenceError("Target lies inside the source folder")

    async def require_parent(self, session: AsyncSession, parent_id: str | None) -> Folder | None:
        """Resolve a destination folder id; ``None`` stays the top level."""
        parent_id = normalize_parent_id(parent_id)
        if parent_id is None:
            return None
        folder = await self._metadata.get_folder(session, parent_id)
        if folder is None:
            raise NotFoundError(f"Folder not found: {parent_id}")
        return folder
