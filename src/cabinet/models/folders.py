"""Folder model — one node of a user's folder tree.

``path`` is the materialized location of the folder's *container*:
``"/"`` for top-level folders, otherwise ``parent.path + parent.name + "/"``.
The folder's own full location is exposed as :attr:`Folder.full_path`.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlmodel import Field, SQLModel


class Folder(SQLModel, table=True):
    """Folder table — ``cabinet_folders``."""

    __tablename__ = "cabinet_folders"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field(max_length=255)
    description: str = Field(default="")
    owner_id: str = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    path: str = Field(default="/", index=True)
    file_count: int = Field(default=0)
    folder_count: int = Field(default=0)
    total_size: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    is_trash: bool = Field(default=False, index=True)
    is_archive: bool = Field(default=False)
    is_default: bool = Field(default=False)
    color: str | None = Field(default=None)
    icon: str | None = Field(default=None)
    tags_json: str = Field(default="[]")
    row_version: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    deleted_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def full_path(self) -> str:
        """Location of this folder itself, as its children see it."""
        return f"{self.path}{self.name}/"

    @property
    def tags(self) -> list[str]:
        return json.loads(self.tags_json or "[]")
