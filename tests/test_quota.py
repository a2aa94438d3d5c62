"""Tests for per-owner storage accounting."""

from __future__ import annotations

import pytest

from cabinet.fs.exceptions import (
    InconsistentStateError,
    PermissionDeniedError,
    QuotaExceededError,
    ValidationError,
)
from cabinet.models import DEFAULT_STORAGE_QUOTA, File, FileStatus

# ---------------------------------------------------------------------------
# QuotaService
# ---------------------------------------------------------------------------


class TestAccount:
    async def test_created_on_first_use(self, svc, async_session):
        account = await svc.quota.ensure_account(async_session, "alice")
        assert account.storage_used == 0
        assert account.storage_quota == DEFAULT_STORAGE_QUOTA

    async def test_ensure_is_idempotent(self, svc, async_session):
        await svc.quota.ensure_account(async_session, "alice")
        await svc.quota.adjust(async_session, "alice", 10)
        account = await svc.quota.ensure_account(async_session, "alice")
        assert account.storage_used == 10

    async def test_set_quota(self, svc, async_session):
        account = await svc.quota.set_quota(async_session, "alice", 1000)
        assert account.storage_quota == 1000

    async def test_negative_quota_rejected(self, svc, async_session):
        with pytest.raises(ValidationError):
            await svc.quota.set_quota(async_session, "alice", -1)


class TestCheckAndAdjust:
    async def test_check_within_quota(self, svc, async_session):
        await svc.quota.set_quota(async_session, "alice", 100)
        await svc.quota.adjust(async_session, "alice", 60)
        await svc.quota.check(async_session, "alice", 40)

    async def test_check_over_quota(self, svc, async_session):
        await svc.quota.set_quota(async_session, "alice", 100)
        await svc.quota.adjust(async_session, "alice", 60)
        with pytest.raises(QuotaExceededError) as exc_info:
            await svc.quota.check(async_session, "alice", 41)
        assert exc_info.value.quota_bytes == 100
        assert exc_info.value.used_bytes == 60
        assert exc_info.value.required_bytes == 41

    async def test_shrinking_always_fits(self, svc, async_session):
        await svc.quota.set_quota(async_session, "alice", 0)
        await svc.quota.adjust(async_session, "alice", 50)
        await svc.quota.check(async_session, "alice", -10)

    async def test_adjust_never_goes_negative(self, svc, async_session):
        await svc.quota.adjust(async_session, "alice", 10)
        await svc.quota.adjust(async_session, "alice", -25)
        account = await svc.quota.ensure_account(async_session, "alice")
        assert account.storage_used == 0


class TestReconcile:
    async def _seed(self, async_session) -> None:
        async_session.add_all(
            [
                File(name="a", owner_id="alice", size=100, status=FileStatus.ACTIVE.value),
                File(name="b", owner_id="alice", size=50, status=FileStatus.DELETED.value),
                File(name="c", owner_id="alice", size=7, status=FileStatus.QUARANTINED.value),
                File(name="d", owner_id="alice", size=999, status=FileStatus.UPLOADING.value),
                File(name="e", owner_id="bob", size=5, status=FileStatus.ACTIVE.value),
            ]
        )
        await async_session.flush()

    async def test_usage_from_source(self, svc, async_session):
        await self._seed(async_session)
        assert await svc.quota.usage_from_source(async_session, "alice") == 157

    async def test_verify_detects_drift(self, svc, async_session):
        await self._seed(async_session)
        with pytest.raises(InconsistentStateError) as exc_info:
            await svc.quota.verify(async_session, "alice")
        drift = exc_info.value.drifts[0]
        assert (drift.stored, drift.actual) == (0, 157)

    async def test_recompute_is_idempotent(self, svc, async_session):
        await self._seed(async_session)
        drift = await svc.quota.recompute(async_session, "alice")
        assert drift is not None
        assert drift.actual == 157
        assert await svc.quota.recompute(async_session, "alice") is None
        await svc.quota.verify(async_session, "alice")

    async def test_owners(self, svc, async_session):
        await self._seed(async_session)
        await svc.quota.ensure_account(async_session, "carol")
        assert await svc.quota.owners(async_session) == ["alice", "bob", "carol"]


# ---------------------------------------------------------------------------
# Through the facade
# ---------------------------------------------------------------------------


class TestUsageLifecycle:
    async def test_upload_trash_purge(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.bin", b"x" * 40)
        assert (await cabinet.get_storage_usage(alice)).storage_used == 40

        await cabinet.delete_file(alice, file.id)
        assert (await cabinet.get_storage_usage(alice)).storage_used == 40

        result = await cabinet.delete_file(alice, file.id, permanent=True)
        assert result.bytes_released == 40
        assert (await cabinet.get_storage_usage(alice)).storage_used == 0

    async def test_upload_over_quota(self, cabinet, alice, admin, storage):
        await cabinet.set_storage_quota(admin, "alice", 10)
        with pytest.raises(QuotaExceededError):
            await cabinet.upload_file(alice, None, "big.bin", b"x" * 11)

        listing = await cabinet.list_folder(alice)
        assert listing.total == 0
        assert storage.objects("uploads") == []

    async def test_replace_charges_the_difference(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"12345")
        await cabinet.replace_file_content(alice, file.id, b"1234567890")
        assert (await cabinet.get_storage_usage(alice)).storage_used == 10

    async def test_uploader_is_charged_in_shared_folder(self, cabinet, alice, bob):
        shared = await cabinet.create_folder(alice, "Shared")
        await cabinet.share_folder(alice, shared.id, "bob", "edit")
        file = await cabinet.upload_file(bob, shared.id, "b.txt", b"abc")

        assert file.owner_id == "bob"
        assert (await cabinet.get_storage_usage(bob)).storage_used == 3
        assert (await cabinet.get_storage_usage(alice)).storage_used == 0


class TestQuotaAccess:
    async def test_other_users_usage_denied(self, cabinet, alice):
        with pytest.raises(PermissionDeniedError):
            await cabinet.get_storage_usage(alice, "bob")

    async def test_admin_reads_any_usage(self, cabinet, alice, admin):
        await cabinet.upload_file(alice, None, "a.txt", b"abc")
        usage = await cabinet.get_storage_usage(admin, "alice")
        assert usage.user_id == "alice"
        assert usage.storage_used == 3

    async def test_set_quota_is_admin_only(self, cabinet, alice):
        with pytest.raises(PermissionDeniedError):
            await cabinet.set_storage_quota(alice, "alice", 10**12)

    async def test_reconcile_repairs_drift(self, cabinet, svc, alice):
        await cabinet.upload_file(alice, None, "a.txt", b"abc")
        async with cabinet.transaction() as session:
            await svc.quota.adjust(session, "alice", 500)

        drifts = await cabinet.reconcile_storage_usage(alice)
        assert [(d.stored, d.actual) for d in drifts] == [(503, 3)]
        assert await cabinet.reconcile_storage_usage(alice) == []

    async def test_admin_reconciles_everyone(self, cabinet, svc, alice, bob, admin):
        await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.upload_file(bob, None, "b.txt", b"abcd")
        async with cabinet.transaction() as session:
            await svc.quota.adjust(session, "alice", 1)
            await svc.quota.adjust(session, "bob", 1)

        drifts = await cabinet.reconcile_storage_usage(admin)
        assert sorted(d.entity_id for d in drifts) == ["alice", "bob"]
