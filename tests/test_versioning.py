"""Tests for content replacement and version history."""

from __future__ import annotations

import pytest

from cabinet import FileStatus
from cabinet.fs.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageBackendError,
    ValidationError,
)
from cabinet.fs.lifecycle import locator_of
from cabinet.fs.types import RiskVerdict
from cabinet.models import File


async def _content(cabinet, storage, file_id) -> bytes:
    async with cabinet.transaction() as session:
        row = await cabinet.services.metadata.require_file(session, file_id)
    return await storage.read(locator_of(row))


# ---------------------------------------------------------------------------
# VersioningService
# ---------------------------------------------------------------------------


class TestVersioningService:
    async def test_push_current_snapshots_the_file(self, svc, async_session):
        file = File(
            name="a.txt",
            owner_id="alice",
            size=3,
            mime_type="text/plain",
            status=FileStatus.ACTIVE.value,
            storage_key="uploads/abc",
            current_version=4,
        )
        async_session.add(file)
        await async_session.flush()

        entry = await svc.versioning.push_current(async_session, file, comment="edit")

        assert entry.version == 4
        assert entry.storage_key == "uploads/abc"
        assert entry.size == 3
        assert entry.comment == "edit"
        assert await svc.versioning.get_version(async_session, file.id, 4) is not None
        assert await svc.versioning.get_version(async_session, file.id, 5) is None

    async def test_list_oldest_first(self, svc, async_session):
        file = File(name="a.txt", owner_id="alice", status=FileStatus.ACTIVE.value)
        async_session.add(file)
        await async_session.flush()
        for version in (2, 1, 3):
            file.current_version = version
            await svc.versioning.push_current(async_session, file)

        entries = await svc.versioning.list_versions(async_session, file.id)
        assert [e.version for e in entries] == [1, 2, 3]

    async def test_delete_versions(self, svc, async_session):
        file = File(name="a.txt", owner_id="alice", status=FileStatus.ACTIVE.value)
        async_session.add(file)
        await async_session.flush()
        await svc.versioning.push_current(async_session, file)
        assert await svc.versioning.delete_versions(async_session, [file.id]) == 1
        assert await svc.versioning.delete_versions(async_session, []) == 0


# ---------------------------------------------------------------------------
# Replace
# ---------------------------------------------------------------------------


class TestReplace:
    async def test_replace_records_history(self, cabinet, alice, storage):
        docs = await cabinet.create_folder(alice, "Docs")
        file = await cabinet.upload_file(alice, docs.id, "a.txt", b"first")

        updated = await cabinet.replace_file_content(
            alice, file.id, b"second!", comment="typo fix"
        )

        assert updated.current_version == 2
        assert updated.size == 7
        assert await _content(cabinet, storage, file.id) == b"second!"
        versions = await cabinet.list_versions(alice, file.id)
        assert [(v.version, v.size, v.comment) for v in versions] == [(1, 5, "typo fix")]
        assert (await cabinet.get_folder(alice, docs.id)).total_size == 7

    async def test_editor_can_replace(self, cabinet, alice, bob):
        file = await cabinet.upload_file(alice, None, "a.txt", b"first")
        await cabinet.share_file(alice, file.id, "bob", "edit")
        updated = await cabinet.replace_file_content(bob, file.id, b"by bob")
        assert updated.uploaded_by == "bob"
        assert updated.owner_id == "alice"

    async def test_viewer_cannot_replace(self, cabinet, alice, bob):
        file = await cabinet.upload_file(alice, None, "a.txt", b"first")
        await cabinet.share_file(alice, file.id, "bob", "view")
        with pytest.raises(PermissionDeniedError):
            await cabinet.replace_file_content(bob, file.id, b"by bob")

    async def test_quarantined_cannot_be_replaced(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"first")
        await cabinet.quarantine_file(admin, file.id)
        with pytest.raises(InvalidStateTransitionError):
            await cabinet.replace_file_content(alice, file.id, b"second")

    async def test_flagged_replacement_is_quarantined(self, cabinet, alice, risk, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"first")
        risk.verdict = RiskVerdict(score=90, level="critical", is_malicious=True)

        updated = await cabinet.replace_file_content(alice, file.id, b"payload")

        assert updated.status == FileStatus.QUARANTINED.value
        assert updated.current_version == 2
        assert len(storage.objects("quarantine")) == 1

    async def test_replacement_over_quota(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"12345")
        await cabinet.set_storage_quota(admin, "alice", 8)
        with pytest.raises(QuotaExceededError):
            await cabinet.replace_file_content(alice, file.id, b"123456789")
        assert (await cabinet.get_file(alice, file.id)).current_version == 1

    async def test_storage_failure_changes_nothing(self, cabinet, alice, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"first")
        storage.fail_on.add("put")
        with pytest.raises(StorageBackendError):
            await cabinet.replace_file_content(alice, file.id, b"second")
        assert (await cabinet.get_file(alice, file.id)).current_version == 1
        assert await cabinet.list_versions(alice, file.id) == []


# ---------------------------------------------------------------------------
# Restore a version
# ---------------------------------------------------------------------------


class TestRestoreVersion:
    async def test_round_trip(self, cabinet, alice, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        await cabinet.replace_file_content(alice, file.id, b"changed")

        restored = await cabinet.restore_file_version(alice, file.id, 1)

        assert restored.current_version == 3
        assert restored.size == len(b"original")
        assert await _content(cabinet, storage, file.id) == b"original"
        versions = await cabinet.list_versions(alice, file.id)
        assert [v.version for v in versions] == [1, 2]
        assert versions[1].comment == "Before restoring version 1"
        assert (await cabinet.get_storage_usage(alice)).storage_used == len(b"original")

    async def test_history_object_is_not_shared(self, cabinet, svc, alice, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        await cabinet.replace_file_content(alice, file.id, b"changed")
        await cabinet.restore_file_version(alice, file.id, 1)

        async with cabinet.transaction() as session:
            row = await svc.metadata.require_file(session, file.id)
            entry = await svc.versioning.get_version(session, file.id, 1)
        assert entry is not None
        assert entry.storage_key != row.storage_key

    async def test_current_version_rejected(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        with pytest.raises(ValidationError):
            await cabinet.restore_file_version(alice, file.id, 1)

    async def test_unknown_version(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        await cabinet.replace_file_content(alice, file.id, b"changed")
        with pytest.raises(NotFoundError):
            await cabinet.restore_file_version(alice, file.id, 7)

    async def test_copy_failure_changes_nothing(self, cabinet, alice, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        await cabinet.replace_file_content(alice, file.id, b"changed")
        storage.fail_on.add("copy")
        with pytest.raises(StorageBackendError):
            await cabinet.restore_file_version(alice, file.id, 1)
        assert (await cabinet.get_file(alice, file.id)).current_version == 2

    async def test_list_versions_needs_view(self, cabinet, alice, bob):
        file = await cabinet.upload_file(alice, None, "a.txt", b"original")
        with pytest.raises(PermissionDeniedError):
            await cabinet.list_versions(bob, file.id)
