"""EventBus and event types for outbound notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Events worth telling someone about."""

    SHARE_GRANTED = "share_granted"
    SHARE_REVOKED = "share_revoked"
    FILE_UPLOADED = "file_uploaded"
    FILE_QUARANTINED = "file_quarantined"
    FILE_RESTORED = "file_restored"
    FOLDER_DELETED_BY_ADMIN = "folder_deleted_by_admin"


@dataclass(frozen=True, slots=True)
class CabinetEvent:
    """Immutable record of a committed mutation.

    Attributes:
        event_type: The kind of mutation that occurred.
        resource_type: ``"folder"`` or ``"file"``.
        resource_id: Id of the affected resource.
        actor_id: User who performed the mutation.
        recipient_id: User who should hear about it (grantee, owner).
        reason: Free-text reason where the mutation takes one.
        payload: Extra details (resource name, permission level, ...).
    """

    event_type: EventType
    resource_type: str
    resource_id: str
    actor_id: str | None = None
    recipient_id: str | None = None
    reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Dispatches events to registered handlers.

    Handlers are called sequentially in registration order, after the
    mutation has committed. Exceptions are logged but never propagated,
    so a failing notification never undoes the mutation behind it.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Callable[..., Any]]] = {et: [] for et in EventType}

    def register(self, event_type: EventType, handler: Callable[..., Any]) -> None:
        """Append *handler* to the list for *event_type*."""
        self._handlers[event_type].append(handler)

    def unregister(self, event_type: EventType, handler: Callable[..., Any]) -> bool:
        """Remove first occurrence of *handler*. Return True if found."""
        handlers = self._handlers[event_type]
        try:
            handlers.remove(handler)
            return True
        except ValueError:
            return False

    async def emit(self, event: CabinetEvent) -> None:
        """Dispatch *event* to all registered handlers for its type."""
        for handler in self._handlers[event.event_type]:
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "Handler %r failed for %s on %s %s",
                    handler,
                    event.event_type.value,
                    event.resource_type,
                    event.resource_id,
                    exc_info=True,
                )
