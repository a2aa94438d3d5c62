"""Grant model — a sharing grant attached to a folder or file.

A grant has no lifecycle of its own: it is replaced on re-share and
removed together with the resource it is attached to.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class Grant(SQLModel, table=True):
    """Grant table — ``cabinet_grants``."""

    __tablename__ = "cabinet_grants"
    __table_args__ = (UniqueConstraint("resource_type", "resource_id", "grantee_id"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    resource_type: str = Field(index=True)
    resource_id: str = Field(index=True)
    grantee_id: str = Field(index=True)
    permission: str = Field(default="view")
    granted_by: str = Field(default="")
    granted_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    message: str | None = Field(default=None)
    position: int = Field(default=0)
