"""StorageAccount model — per-owner storage usage and quota."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlmodel import Field, SQLModel

DEFAULT_STORAGE_QUOTA = 10 * 1024 * 1024 * 1024  # 10 GiB


class StorageAccount(SQLModel, table=True):
    """Storage account table — ``cabinet_storage_accounts``.

    ``storage_used`` is an incrementally maintained counter; it is only
    ever changed with SQL-side arithmetic and can be recomputed from the
    file records at any time.
    """

    __tablename__ = "cabinet_storage_accounts"

    user_id: str = Field(primary_key=True)
    storage_used: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    storage_quota: int = Field(
        default=DEFAULT_STORAGE_QUOTA,
        sa_type=BigInteger,  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def available_bytes(self) -> int:
        return max(self.storage_quota - self.storage_used, 0)

    def has_space_for(self, size: int) -> bool:
        return self.storage_used + size <= self.storage_quota
