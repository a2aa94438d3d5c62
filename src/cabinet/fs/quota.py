"""QuotaService — per-owner storage accounting.

``storage_used`` is only changed with SQL-side arithmetic so concurrent
uploads and deletes never lose an update. ``recompute`` rebuilds it from
the file records and is the authority when the counter drifts.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, update
from sqlmodel import select

from cabinet.models.accounts import DEFAULT_STORAGE_QUOTA
from cabinet.models.files import PROVISIONAL_FILE_STATUSES

from .dialect import insert_if_absent
from .exceptions import InconsistentStateError, QuotaExceededError, ValidationError
from .metadata import clamped
from .types import CounterDrift

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cabinet.models.accounts import StorageAccount
    from cabinet.models.files import File

logger = logging.getLogger(__name__)


class QuotaService:
    """Reads, enforces and reconciles storage usage. Flushes but does not commit."""

    def __init__(
        self,
        account_model: type[StorageAccount],
        file_model: type[File],
        *,
        dialect: str = "sqlite",
        default_quota: int = DEFAULT_STORAGE_QUOTA,
    ) -> None:
        self._account_model = account_model
        self._file_model = file_model
        self._dialect = dialect
        self._default_quota = default_quota

    async def ensure_account(self, session: AsyncSession, user_id: str) -> StorageAccount:
        """Return the owner's account, creating it with the default quota on first use."""
        model = self._account_model
        await insert_if_absent(
            session,
            self._dialect,
            model,
            {
                "user_id": user_id,
                "storage_used": 0,
                "storage_quota": self._default_quota,
                "updated_at": datetime.now(UTC),
            },
            ["user_id"],
        )
        result = await session.execute(
            select(model)
            .where(model.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def check(
        self,
        session: AsyncSession,
        user_id: str,
        additional_bytes: int,
    ) -> StorageAccount:
        """Raise ``QuotaExceededError`` if *additional_bytes* would not fit."""
        account = await self.ensure_account(session, user_id)
        if additional_bytes > 0 and not account.has_space_for(additional_bytes):
            raise QuotaExceededError(
                account.storage_quota, account.storage_used, additional_bytes
            )
        return account

    async def adjust(self, session: AsyncSession, user_id: str, delta: int) -> None:
        """Atomically add *delta* to the owner's usage, never going below zero."""
        if not delta:
            return
        await self.ensure_account(session, user_id)
        model = self._account_model
        await session.execute(
            update(model)
            .where(model.user_id == user_id)  # type: ignore[arg-type]
            .values(
                storage_used=clamped(model.storage_used, delta),
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

    async def set_quota(self, session: AsyncSession, user_id: str, quota_bytes: int) -> StorageAccount:
        if quota_bytes < 0:
            raise ValidationError("Quota must not be negative")
        await self.ensure_account(session, user_id)
        model = self._account_model
        await session.execute(
            update(model)
            .where(model.user_id == user_id)  # type: ignore[arg-type]
            .values(storage_quota=quota_bytes, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return await self.ensure_account(session, user_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def usage_from_source(self, session: AsyncSession, user_id: str) -> int:
        """Sum the current size of every stored file the owner has.

        Trashed files still occupy storage and are counted; provisional
        uploads are not.
        """
        model = self._file_model
        result = await session.execute(
            select(func.coalesce(func.sum(model.size), 0)).where(
                model.owner_id == user_id,
                model.status.not_in(PROVISIONAL_FILE_STATUSES),  # type: ignore[union-attr]
            )
        )
        return int(result.scalar_one())

    async def owners(self, session: AsyncSession) -> list[str]:
        """Every user with an account or at least one file."""
        accounts = await session.execute(select(self._account_model.user_id))
        files = await session.execute(select(self._file_model.owner_id).distinct())
        return sorted(set(accounts.scalars().all()) | set(files.scalars().all()))

    async def verify(self, session: AsyncSession, user_id: str) -> None:
        """Raise ``InconsistentStateError`` if the stored counter has drifted."""
        account = await self.ensure_account(session, user_id)
        actual = await self.usage_from_source(session, user_id)
        if account.storage_used != actual:
            drift = CounterDrift(user_id, "storage_used", account.storage_used, actual)
            raise InconsistentStateError(
                f"storage_used for {user_id} is {account.storage_used}, expected {actual}",
                [drift],
            )

    async def recompute(self, session: AsyncSession, user_id: str) -> CounterDrift | None:
        """Rewrite the owner's usage from the file records.

        Idempotent. Returns the drift that was corrected, if any.
        """
        account = await self.ensure_account(session, user_id)
        actual = await self.usage_from_source(session, user_id)
        if account.storage_used == actual:
            return None
        drift = CounterDrift(user_id, "storage_used", account.storage_used, actual)
        logger.warning(
            "Storage usage drift for %s: stored=%d actual=%d", user_id, drift.stored, actual
        )
        model = self._account_model
        await session.execute(
            update(model)
            .where(model.user_id == user_id)  # type: ignore[arg-type]
            .values(storage_used=actual, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return drift
