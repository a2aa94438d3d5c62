"""Shared fixtures for Cabinet tests."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import cabinet.models  # noqa: F401  (registers the tables on SQLModel.metadata)
from cabinet import Cabinet, Principal
from cabinet.fs.local_storage import LocalObjectStorage
from cabinet.fs.types import RiskVerdict

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

    from cabinet.fs.operations import Services
    from cabinet.fs.types import StorageLocator


# =========================================================================
# Collaborator doubles
# =========================================================================


class FlakyStorage(LocalObjectStorage):
    """LocalObjectStorage whose calls can be made to fail on demand.

    Add a method name (``"put"``, ``"relocate"``, ``"copy"``, ``"delete"``)
    to ``fail_on`` to make every call to it raise.
    """

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.fail_on: set[str] = set()
        self.delay = 0.0

    async def _maybe_fail(self, action: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if action in self.fail_on:
            raise OSError(f"{action} failed (injected)")

    async def put(self, data: bytes, content_type: str, *, area: str) -> StorageLocator:
        await self._maybe_fail("put")
        return await super().put(data, content_type, area=area)

    async def relocate(self, locator: StorageLocator, target_area: str) -> StorageLocator:
        await self._maybe_fail("relocate")
        return await super().relocate(locator, target_area)

    async def copy(self, locator: StorageLocator) -> StorageLocator:
        await self._maybe_fail("copy")
        return await super().copy(locator)

    async def delete(self, locator: StorageLocator) -> None:
        await self._maybe_fail("delete")
        await super().delete(locator)

    def objects(self, area: str) -> list[str]:
        """Keys currently stored in *area*."""
        folder = self.root / area
        if not folder.exists():
            return []
        return sorted(f"{area}/{p.name}" for p in folder.iterdir())


class StubRiskAssessor:
    """Returns a fixed verdict, or raises / stalls when told to."""

    def __init__(self) -> None:
        self.verdict = RiskVerdict(score=5, level="info", is_malicious=False)
        self.error: Exception | None = None
        self.delay = 0.0
        self.calls: list[dict[str, Any]] = []

    async def assess(self, data: bytes, metadata: dict[str, Any]) -> RiskVerdict:
        self.calls.append(metadata)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.verdict


# =========================================================================
# Database
# =========================================================================


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Async SQLite engine on a temporary file with all tables created."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cabinet.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session, rolled back after each test."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


# =========================================================================
# Cabinet
# =========================================================================


@pytest.fixture
def storage(tmp_path: Path) -> FlakyStorage:
    return FlakyStorage(tmp_path / "objects")


@pytest.fixture
def risk() -> StubRiskAssessor:
    return StubRiskAssessor()


@pytest.fixture
async def cabinet(
    async_engine: AsyncEngine, storage: FlakyStorage, risk: StubRiskAssessor
) -> AsyncIterator[Cabinet]:
    cab = Cabinet(async_engine, storage=storage, risk_assessor=risk)
    await cab.create_tables()
    yield cab


@pytest.fixture
def svc(cabinet: Cabinet) -> Services:
    """The service bundle of the ``cabinet`` fixture, for service-level tests."""
    return cabinet.services


@pytest.fixture
def alice() -> Principal:
    return Principal("alice")


@pytest.fixture
def bob() -> Principal:
    return Principal("bob")


@pytest.fixture
def carol() -> Principal:
    return Principal("carol")


@pytest.fixture
def admin() -> Principal:
    return Principal("root-admin", is_admin=True)
