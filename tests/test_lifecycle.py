"""Tests for the file lifecycle: upload, risk, quarantine, restore, download."""

from __future__ import annotations

import pytest

from cabinet import Cabinet, CabinetConfig, EventType, FileStatus
from cabinet.fs.exceptions import (
    InvalidStateTransitionError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    StorageBackendError,
    ValidationError,
)
from cabinet.fs.lifecycle import ALLOWED_TRANSITIONS, locator_of, require_transition
from cabinet.fs.types import RiskVerdict

FLAGGED = RiskVerdict(score=85, level="high", is_malicious=True, details={"engine": "stub"})


async def _row(cabinet, file_id):
    async with cabinet.transaction() as session:
        return await cabinet.services.metadata.require_file(
            session, file_id, include_deleted=True, include_provisional=True
        )


def _collect(cabinet, *event_types):
    seen = []

    async def handler(event):
        seen.append(event)

    for event_type in event_types:
        cabinet.event_bus.register(event_type, handler)
    return seen


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------


class TestTransitions:
    def test_deleted_is_terminal(self):
        assert ALLOWED_TRANSITIONS[FileStatus.DELETED] == frozenset()

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("uploading", FileStatus.ACTIVE),
            ("active", FileStatus.PROCESSING),
            ("deleted", FileStatus.ACTIVE),
            ("quarantined", FileStatus.PROCESSING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidStateTransitionError):
            require_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("uploading", FileStatus.PROCESSING),
            ("processing", FileStatus.QUARANTINED),
            ("active", FileStatus.QUARANTINED),
            ("quarantined", FileStatus.ACTIVE),
            ("quarantined", FileStatus.DELETED),
        ],
    )
    def test_allowed(self, current, target):
        require_transition(current, target)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestUpload:
    async def test_clean_upload_is_active(self, cabinet, alice, storage, risk):
        docs = await cabinet.create_folder(alice, "Docs")
        file = await cabinet.upload_file(alice, docs.id, "notes.txt", b"hello", description="n")

        assert file.status == FileStatus.ACTIVE.value
        assert file.size == 5
        assert file.mime_type == "text/plain"
        assert file.extension == "txt"
        assert file.current_version == 1
        assert file.uploaded_by == "alice"
        assert file.risk_score == 5
        assert file.risk_level == "info"
        assert len(storage.objects("uploads")) == 1
        assert risk.calls[0]["name"] == "notes.txt"

        folder = await cabinet.get_folder(alice, docs.id)
        assert folder.file_count == 1
        assert folder.total_size == 5

    async def test_content_is_stored(self, cabinet, alice, storage):
        file = await cabinet.upload_file(alice, None, "a.bin", b"\x00\x01\x02")
        row = await _row(cabinet, file.id)
        assert await storage.read(locator_of(row)) == b"\x00\x01\x02"

    async def test_explicit_mime_type(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "blob", b"{}", "application/json")
        assert file.mime_type == "application/json"

    async def test_without_risk_assessor(self, async_engine, storage, alice):
        cab = Cabinet(async_engine, storage=storage)
        file = await cab.upload_file(alice, None, "a.txt", b"abc")
        assert file.status == FileStatus.ACTIVE.value
        assert file.risk_score is None

    async def test_flagged_upload_goes_straight_to_quarantine(self, cabinet, alice, storage, risk):
        risk.verdict = FLAGGED
        statuses = []

        async def on_uploaded(event):
            statuses.append(event.payload["status"])

        cabinet.event_bus.register(EventType.FILE_UPLOADED, on_uploaded)
        quarantined = _collect(cabinet, EventType.FILE_QUARANTINED)

        file = await cabinet.upload_file(alice, None, "evil.exe", b"MZ...")

        assert file.status == FileStatus.QUARANTINED.value
        assert file.is_malicious is True
        assert file.risk_score == 85
        assert file.quarantine_reason is not None
        assert statuses == ["quarantined"]
        assert len(quarantined) == 1
        assert quarantined[0].actor_id == "system"
        assert storage.objects("uploads") == []
        assert len(storage.objects("quarantine")) == 1

        with pytest.raises(PermissionDeniedError):
            await cabinet.download_file(alice, file.id)

    async def test_assessor_failure_quarantines(self, cabinet, alice, risk):
        risk.error = RuntimeError("scanner offline")
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        assert file.status == FileStatus.QUARANTINED.value
        assert file.risk_score == 100

    async def test_assessor_timeout_quarantines(self, async_engine, storage, risk, alice):
        risk.delay = 0.5
        cab = Cabinet(
            async_engine,
            storage=storage,
            risk_assessor=risk,
            config=CabinetConfig(risk_timeout=0.01),
        )
        file = await cab.upload_file(alice, None, "a.txt", b"abc")
        assert file.status == FileStatus.QUARANTINED.value

    async def test_storage_failure_removes_provisional_record(self, cabinet, alice, storage):
        storage.fail_on.add("put")
        with pytest.raises(StorageBackendError):
            await cabinet.upload_file(alice, None, "a.txt", b"abc")

        assert (await cabinet.list_folder(alice)).total == 0
        assert (await cabinet.get_storage_usage(alice)).storage_used == 0

        storage.fail_on.clear()
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        assert file.status == FileStatus.ACTIVE.value

    async def test_name_conflict(self, cabinet, alice):
        await cabinet.upload_file(alice, None, "a.txt", b"abc")
        with pytest.raises(NameConflictError):
            await cabinet.upload_file(alice, None, "a.txt", b"other")

    async def test_invalid_name(self, cabinet, alice, risk):
        with pytest.raises(ValidationError):
            await cabinet.upload_file(alice, None, "CON.txt", b"abc")
        assert risk.calls == []

    async def test_too_large(self, async_engine, storage, alice):
        cab = Cabinet(async_engine, storage=storage, config=CabinetConfig(max_file_size=4))
        with pytest.raises(ValidationError):
            await cab.upload_file(alice, None, "a.txt", b"12345")

    async def test_destination_needs_edit(self, cabinet, alice, bob):
        docs = await cabinet.create_folder(alice, "Docs")
        await cabinet.share_folder(alice, docs.id, "bob", "view")
        with pytest.raises(PermissionDeniedError):
            await cabinet.upload_file(bob, docs.id, "b.txt", b"abc")

    async def test_missing_destination(self, cabinet, alice):
        with pytest.raises(NotFoundError):
            await cabinet.upload_file(alice, "nope", "a.txt", b"abc")

    async def test_destination_trashed_while_storing(
        self, cabinet, alice, storage, risk, monkeypatch
    ):
        docs = await cabinet.create_folder(alice, "Docs")
        assess = risk.assess
        provisional_ids = []

        async def trash_destination(data, metadata):
            provisional_ids.append(metadata["file_id"])
            await cabinet.delete_folder(alice, docs.id)
            return await assess(data, metadata)

        monkeypatch.setattr(risk, "assess", trash_destination)

        with pytest.raises(NotFoundError):
            await cabinet.upload_file(alice, docs.id, "late.txt", b"abc")

        with pytest.raises(NotFoundError):
            await _row(cabinet, provisional_ids[0])
        assert storage.objects("uploads") == []
        assert (await cabinet.get_storage_usage(alice)).storage_used == 0
        trash = await cabinet.list_trash(alice)
        assert [f.id for f in trash.folders] == [docs.id]
        assert trash.files == []


# ---------------------------------------------------------------------------
# Quarantine / restore
# ---------------------------------------------------------------------------


class TestQuarantine:
    async def test_quarantine_relocates(self, cabinet, alice, admin, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        events = _collect(cabinet, EventType.FILE_QUARANTINED)

        result = await cabinet.quarantine_file(admin, file.id, "reported")

        assert result.status == FileStatus.QUARANTINED.value
        assert result.quarantine_reason == "reported"
        assert result.quarantined_at is not None
        assert storage.objects("uploads") == []
        assert len(storage.objects("quarantine")) == 1
        assert [e.recipient_id for e in events] == ["alice"]

    async def test_default_reason(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        result = await cabinet.quarantine_file(admin, file.id)
        assert result.quarantine_reason == "Suspicious content detected"

    async def test_already_quarantined_is_noop(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.quarantine_file(admin, file.id)
        events = _collect(cabinet, EventType.FILE_QUARANTINED)
        await cabinet.quarantine_file(admin, file.id)
        assert events == []

    async def test_admin_only(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        with pytest.raises(PermissionDeniedError):
            await cabinet.quarantine_file(alice, file.id)

    async def test_storage_failure_leaves_file_active(self, cabinet, alice, admin, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        storage.fail_on.add("relocate")
        with pytest.raises(StorageBackendError):
            await cabinet.quarantine_file(admin, file.id)
        assert (await cabinet.get_file(alice, file.id)).status == FileStatus.ACTIVE.value

    async def test_quarantined_file_keeps_counting(self, cabinet, alice, admin):
        docs = await cabinet.create_folder(alice, "Docs")
        file = await cabinet.upload_file(alice, docs.id, "a.txt", b"abc")
        await cabinet.quarantine_file(admin, file.id)
        folder = await cabinet.get_folder(alice, docs.id)
        assert folder.file_count == 1
        assert (await cabinet.get_storage_usage(alice)).storage_used == 3


class TestRestore:
    async def test_restore_quarantined(self, cabinet, alice, admin, storage, risk):
        risk.verdict = FLAGGED
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        events = _collect(cabinet, EventType.FILE_RESTORED)

        restored = await cabinet.restore_file(admin, file.id)

        assert restored.status == FileStatus.ACTIVE.value
        assert restored.restored_at is not None
        assert restored.restore_reason == "False positive"
        assert restored.quarantine_reason is None
        assert restored.quarantined_at is None
        assert storage.objects("quarantine") == []
        assert len(storage.objects("uploads")) == 1
        assert len(events) == 1

        ticket = await cabinet.download_file(alice, file.id)
        assert ticket.url.startswith("file://")

    async def test_restore_keeps_history(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"v1")
        await cabinet.replace_file_content(alice, file.id, b"v2")
        await cabinet.quarantine_file(admin, file.id)

        await cabinet.restore_file(admin, file.id, "reviewed")

        versions = await cabinet.list_versions(alice, file.id)
        assert [v.version for v in versions] == [1]
        assert (await cabinet.get_file(alice, file.id)).current_version == 2

    async def test_restore_active_rejected(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        with pytest.raises(InvalidStateTransitionError):
            await cabinet.restore_file(admin, file.id)

    async def test_admin_only(self, cabinet, alice, admin):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.quarantine_file(admin, file.id)
        with pytest.raises(PermissionDeniedError):
            await cabinet.restore_file(alice, file.id)

    async def test_storage_failure_keeps_quarantine(self, cabinet, alice, admin, storage):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.quarantine_file(admin, file.id)
        storage.fail_on.add("relocate")
        with pytest.raises(StorageBackendError):
            await cabinet.restore_file(admin, file.id)
        row = await _row(cabinet, file.id)
        assert row.status == FileStatus.QUARANTINED.value
        assert row.storage_key.startswith("quarantine/")


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


class TestDownload:
    async def test_download_logs_and_counts(self, cabinet, alice, bob):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.share_file(alice, file.id, "bob", "view")

        ticket = await cabinet.download_file(bob, file.id, ip_address="10.0.0.1", ttl=60)

        assert ticket.expires_in == 60
        assert ticket.file.download_count == 1
        row = await _row(cabinet, file.id)
        assert row.last_downloaded_by == "bob"

    async def test_default_ttl(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        ticket = await cabinet.download_file(alice, file.id)
        assert ticket.expires_in == 3600

    async def test_stranger_denied(self, cabinet, alice, bob):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        with pytest.raises(PermissionDeniedError):
            await cabinet.download_file(bob, file.id)

    async def test_deleted_file_not_found(self, cabinet, alice):
        file = await cabinet.upload_file(alice, None, "a.txt", b"abc")
        await cabinet.delete_file(alice, file.id)
        with pytest.raises(NotFoundError):
            await cabinet.download_file(alice, file.id)
