"""SharingService — grant CRUD and permission enforcement.

Stateless service that receives the grant model at construction
and a session at call time, following the MetadataService pattern.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlmodel import select

from .exceptions import NotFoundError, PermissionDeniedError, ValidationError
from .permissions import Permission, Principal, check

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.files import File
    from cabinet.models.folders import Folder
    from cabinet.models.grants import Grant

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("folder", "file")


def resource_type_of(resource: Folder | File) -> str:
    """Folders carry ``parent_id``; files carry ``folder_id``."""
    return "folder" if hasattr(resource, "parent_id") else "file"


class SharingService:
    """Manages grants on folders and files.

    Constructor receives the concrete grant model so callers can use
    custom SQLModel subclasses with different table names.
    """

    def __init__(self, grant_model: type[Grant]) -> None:
        self._grant_model = grant_model

    async def list_grants(
        self,
        session: AsyncSession,
        resource_type: str,
        resource_id: str,
    ) -> list[Grant]:
        """List grants on a resource in the order they were first given."""
        model = self._grant_model
        result = await session.execute(
            select(model)
            .where(
                model.resource_type == resource_type,
                model.resource_id == resource_id,
            )
            .order_by(model.position)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def grant(
        self,
        session: AsyncSession,
        resource_type: str,
        resource_id: str,
        grantee_id: str,
        permission: str | Permission,
        granted_by: str,
        *,
        message: str | None = None,
    ) -> Grant:
        """Upsert the grantee's grant. Flushes but does not commit.

        An existing grant is replaced in place and keeps its position;
        otherwise the grant is appended after the existing ones.
        """
        if resource_type not in RESOURCE_TYPES:
            raise ValidationError(f"Invalid resource type: {resource_type!r}")
        level = Permission.parse(permission)
        model = self._grant_model

        result = await session.execute(
            select(model).where(
                model.resource_type == resource_type,
                model.resource_id == resource_id,
                model.grantee_id == grantee_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            existing.permission = level.value
            existing.granted_by = granted_by
            existing.granted_at = datetime.now(UTC)
            existing.message = message
            session.add(existing)
            await session.flush()
            return existing

        result = await session.execute(
            select(func.max(model.position)).where(
                model.resource_type == resource_type,
                model.resource_id == resource_id,
            )
        )
        last = result.scalar()
        share = model(
            resource_type=resource_type,
            resource_id=resource_id,
            grantee_id=grantee_id,
            permission=level.value,
            granted_by=granted_by,
            message=message,
            position=0 if last is None else last + 1,
        )
        session.add(share)
        await session.flush()
        return share

    async def revoke(
        self,
        session: AsyncSession,
        resource_type: str,
        resource_id: str,
        grantee_id: str,
    ) -> None:
        """Remove the grantee's grant, raising ``NotFoundError`` if there is none."""
        model = self._grant_model
        result = await session.execute(
            select(model).where(
                model.resource_type == resource_type,
                model.resource_id == resource_id,
                model.grantee_id == grantee_id,
            )
        )
        share = result.scalar_one_or_none()
        if share is None:
            raise NotFoundError(f"No grant for {grantee_id} on {resource_type} {resource_id}")
        await session.delete(share)
        await session.flush()

    async def delete_grants_for(
        self,
        session: AsyncSession,
        resource_type: str,
        resource_ids: list[str],
    ) -> int:
        """Remove every grant on the given resources. Returns the number removed."""
        if not resource_ids:
            return 0
        model = self._grant_model
        result = await session.execute(
            sa_delete(model).where(
                model.resource_type == resource_type,  # type: ignore[arg-type]
                model.resource_id.in_(resource_ids),  # type: ignore[union-attr]
            )
        )
        return result.rowcount  # type: ignore[return-value]

    async def resource_ids_shared_with(
        self,
        session: AsyncSession,
        resource_type: str,
        grantee_id: str,
    ) -> list[str]:
        model = self._grant_model
        result = await session.execute(
            select(model.resource_id).where(
                model.resource_type == resource_type,
                model.grantee_id == grantee_id,
            )
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    async def allows(
        self,
        session: AsyncSession,
        resource: Folder | File,
        principal: Principal,
        required: Permission,
    ) -> bool:
        """Load the resource's grants and run the access check."""
        if principal.is_admin or resource.owner_id == principal.user_id:
            return True
        grants = await self.list_grants(session, resource_type_of(resource), resource.id)
        return check(resource, grants, principal, required)

    async def require(
        self,
        session: AsyncSession,
        resource: Folder | File,
        principal: Principal,
        required: Permission,
    ) -> None:
        """Raise ``PermissionDeniedError`` unless *principal* holds *required*."""
        if not await self.allows(session, resource, principal, required):
            kind = resource_type_of(resource)
            logger.debug(
                "Denied %s on %s %s to %s", required.value, kind, resource.id, principal.user_id
            )
            raise PermissionDeniedError(
                f"{required.value} permission required on {kind} {resource.id}"
            )
