"""Collaborator protocols — runtime-checkable interfaces.

Object storage and risk assessment live outside this package. They are
handed to ``Cabinet`` at construction and reached only through the
gateways in ``gateways.py``, which bound every call with a timeout.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .types import RiskVerdict, StorageLocator


@runtime_checkable
class ObjectStorage(Protocol):
    """Stores raw bytes in named areas (e.g. ``uploads``, ``quarantine``).

    Every method may fail independently of the database; callers pair
    each call with a compensating action.
    """

    async def put(self, data: bytes, content_type: str, *, area: str) -> StorageLocator:
        """Store *data* in *area* and return its locator."""
        ...

    async def relocate(self, locator: StorageLocator, target_area: str) -> StorageLocator:
        """Move the object to *target_area* and return the new locator."""
        ...

    async def delete(self, locator: StorageLocator) -> None:
        """Delete the object. Deleting a missing object is not an error."""
        ...

    async def copy(self, locator: StorageLocator) -> StorageLocator:
        """Duplicate the object within its area and return the copy's locator."""
        ...

    async def get_read_locator(self, locator: StorageLocator, ttl: int) -> str:
        """Return a temporary URL valid for *ttl* seconds."""
        ...


@runtime_checkable
class RiskAssessor(Protocol):
    """Scores content before it is admitted."""

    async def assess(self, data: bytes, metadata: dict[str, Any]) -> RiskVerdict:
        """Return a verdict with a 0..100 score, a level and a malicious flag."""
        ...
