"""Tests for EventBus and event types."""

from __future__ import annotations

import dataclasses
import logging

import pytest

from cabinet.events import CabinetEvent, EventBus, EventType

# =========================================================================
# Helpers
# =========================================================================


async def _collecting_handler(events: list[CabinetEvent], event: CabinetEvent) -> None:
    """Append event to a list for assertion."""
    events.append(event)


async def _failing_handler(event: CabinetEvent) -> None:
    """Handler that always raises."""
    raise RuntimeError(f"boom on {event.resource_id}")


def _event(event_type: EventType = EventType.SHARE_GRANTED) -> CabinetEvent:
    return CabinetEvent(
        event_type=event_type,
        resource_type="folder",
        resource_id="f1",
        actor_id="alice",
        recipient_id="bob",
    )


# =========================================================================
# EventType
# =========================================================================


class TestEventType:
    def test_member_count(self) -> None:
        assert len(EventType) == 6

    def test_values(self) -> None:
        assert EventType.SHARE_GRANTED.value == "share_granted"
        assert EventType.SHARE_REVOKED.value == "share_revoked"
        assert EventType.FILE_UPLOADED.value == "file_uploaded"
        assert EventType.FILE_QUARANTINED.value == "file_quarantined"
        assert EventType.FILE_RESTORED.value == "file_restored"
        assert EventType.FOLDER_DELETED_BY_ADMIN.value == "folder_deleted_by_admin"

    def test_unique_values(self) -> None:
        values = [et.value for et in EventType]
        assert len(values) == len(set(values))


# =========================================================================
# CabinetEvent
# =========================================================================


class TestCabinetEvent:
    def test_construction(self) -> None:
        ev = _event()
        assert ev.event_type is EventType.SHARE_GRANTED
        assert ev.reason is None
        assert ev.payload == {}

    def test_frozen(self) -> None:
        ev = _event()
        with pytest.raises(dataclasses.FrozenInstanceError):
            ev.resource_id = "other"  # type: ignore[misc]


# =========================================================================
# EventBus
# =========================================================================


class TestEventBus:
    async def test_emit_reaches_registered_handler(self) -> None:
        bus = EventBus()
        seen: list[CabinetEvent] = []

        async def handler(event: CabinetEvent) -> None:
            await _collecting_handler(seen, event)

        bus.register(EventType.SHARE_GRANTED, handler)
        await bus.emit(_event())
        assert len(seen) == 1

    async def test_other_types_not_dispatched(self) -> None:
        bus = EventBus()
        seen: list[CabinetEvent] = []

        async def handler(event: CabinetEvent) -> None:
            await _collecting_handler(seen, event)

        bus.register(EventType.FILE_UPLOADED, handler)
        await bus.emit(_event(EventType.SHARE_GRANTED))
        assert seen == []

    async def test_registration_order(self) -> None:
        bus = EventBus()
        order: list[str] = []

        async def first(event: CabinetEvent) -> None:
            order.append("first")

        async def second(event: CabinetEvent) -> None:
            order.append("second")

        bus.register(EventType.FILE_RESTORED, first)
        bus.register(EventType.FILE_RESTORED, second)
        await bus.emit(_event(EventType.FILE_RESTORED))
        assert order == ["first", "second"]

    async def test_failing_handler_does_not_stop_others(self, caplog) -> None:
        bus = EventBus()
        seen: list[CabinetEvent] = []

        async def handler(event: CabinetEvent) -> None:
            await _collecting_handler(seen, event)

        bus.register(EventType.SHARE_GRANTED, _failing_handler)
        bus.register(EventType.SHARE_GRANTED, handler)
        with caplog.at_level(logging.WARNING, logger="cabinet.events"):
            await bus.emit(_event())
        assert len(seen) == 1
        assert "share_granted" in caplog.text

    async def test_unregister(self) -> None:
        bus = EventBus()
        seen: list[CabinetEvent] = []

        async def handler(event: CabinetEvent) -> None:
            await _collecting_handler(seen, event)

        bus.register(EventType.SHARE_GRANTED, handler)
        assert bus.unregister(EventType.SHARE_GRANTED, handler) is True
        assert bus.unregister(EventType.SHARE_GRANTED, handler) is False
        await bus.emit(_event())
        assert seen == []
