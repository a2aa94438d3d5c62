"""Gateways to the external collaborators.

Every call is bounded by a timeout and every failure is translated into
this package's exceptions, so callers only ever see ``StorageBackendError``
or ``RiskAssessmentUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import RiskAssessmentUnavailable, StorageBackendError
from .types import RiskVerdict

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from .protocol import ObjectStorage, RiskAssessor
    from .types import StorageLocator

logger = logging.getLogger(__name__)


def risk_level_for_score(score: int) -> str:
    """Map a 0..100 score to a level name."""
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    if score >= 20:
        return "low"
    return "info"


def conservative_verdict(reason: str) -> RiskVerdict:
    """Verdict used when no real one can be obtained: treat as malicious."""
    return RiskVerdict(
        score=100,
        level="critical",
        is_malicious=True,
        details={"error": reason, "requires_review": True},
    )


class StorageGateway:
    """Wraps an ``ObjectStorage`` with timeouts and error translation."""

    def __init__(self, storage: ObjectStorage, *, timeout: float = 30.0) -> None:
        self._storage = storage
        self._timeout = timeout

    async def _call(self, action: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as exc:
            raise StorageBackendError(
                f"Object storage {action} timed out after {self._timeout}s"
            ) from exc
        except StorageBackendError:
            raise
        except Exception as exc:
            raise StorageBackendError(f"Object storage {action} failed: {exc}") from exc

    async def put(self, data: bytes, content_type: str, *, area: str) -> StorageLocator:
        return await self._call("put", self._storage.put(data, content_type, area=area))

    async def relocate(self, locator: StorageLocator, target_area: str) -> StorageLocator:
        return await self._call("relocate", self._storage.relocate(locator, target_area))

    async def delete(self, locator: StorageLocator) -> None:
        await self._call("delete", self._storage.delete(locator))

    async def copy(self, locator: StorageLocator) -> StorageLocator:
        return await self._call("copy", self._storage.copy(locator))

    async def get_read_locator(self, locator: StorageLocator, ttl: int) -> str:
        return await self._call("read locator", self._storage.get_read_locator(locator, ttl))

    async def discard(self, locator: StorageLocator) -> None:
        """Best-effort delete used by compensating actions. Logs instead of raising."""
        try:
            await self.delete(locator)
        except StorageBackendError:
            logger.warning("Could not discard stored object %s", locator.key, exc_info=True)


class RiskGateway:
    """Wraps an optional ``RiskAssessor`` with a timeout.

    ``assess`` returns ``None`` when no assessor is configured and the
    conservative verdict when the assessor fails.
    """

    def __init__(self, assessor: RiskAssessor | None, *, timeout: float = 30.0) -> None:
        self._assessor = assessor
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return self._assessor is not None

    async def _assess(
        self, assessor: RiskAssessor, data: bytes, metadata: dict[str, Any]
    ) -> RiskVerdict:
        try:
            verdict = await asyncio.wait_for(
                assessor.assess(data, metadata), timeout=self._timeout
            )
        except TimeoutError as exc:
            raise RiskAssessmentUnavailable(
                f"Risk assessment timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            raise RiskAssessmentUnavailable(f"Risk assessment failed: {exc}") from exc
        if not verdict.level:
            verdict.level = risk_level_for_score(verdict.score)
        return verdict

    async def assess(self, data: bytes, metadata: dict[str, Any]) -> RiskVerdict | None:
        if self._assessor is None:
            return None
        try:
            return await self._assess(self._assessor, data, metadata)
        except RiskAssessmentUnavailable as exc:
            logger.warning(
                "Risk assessment unavailable for %s; quarantining conservatively",
                metadata.get("name"),
                exc_info=True,
            )
            return conservative_verdict(str(exc))
