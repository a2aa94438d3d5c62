"""LocalObjectStorage — disk-backed ``ObjectStorage`` for tests and single-host use."""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path

from .types import StorageLocator

PROVIDER = "local"


class LocalObjectStorage:
    """Stores each object as a file under ``root/<area>/<uuid>``.

    All disk I/O runs in a worker thread. Object keys are validated so
    they always resolve inside ``root``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise PermissionError(f"Object key resolves outside storage root: {key}") from None
        return candidate

    @staticmethod
    def _area_of(key: str) -> str:
        return key.split("/", 1)[0]

    # ------------------------------------------------------------------
    # ObjectStorage
    # ------------------------------------------------------------------

    async def put(self, data: bytes, content_type: str, *, area: str) -> StorageLocator:
        key = f"{area}/{uuid.uuid4().hex}"
        target = self._resolve(key)

        def _write() -> str:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            return hashlib.md5(data, usedforsecurity=False).hexdigest()

        etag = await asyncio.to_thread(_write)
        return StorageLocator(provider=PROVIDER, key=key, etag=etag)

    async def relocate(self, locator: StorageLocator, target_area: str) -> StorageLocator:
        if self._area_of(locator.key) == target_area:
            return locator
        name = locator.key.rsplit("/", 1)[-1]
        new_key = f"{target_area}/{name}"
        source = self._resolve(locator.key)
        target = self._resolve(new_key)

        def _move() -> None:
            if not source.exists():
                raise FileNotFoundError(f"Stored object not found: {locator.key}")
            target.parent.mkdir(parents=True, exist_ok=True)
            source.replace(target)

        await asyncio.to_thread(_move)
        return StorageLocator(
            provider=locator.provider,
            key=new_key,
            bucket=locator.bucket,
            etag=locator.etag,
        )

    async def delete(self, locator: StorageLocator) -> None:
        path = self._resolve(locator.key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def copy(self, locator: StorageLocator) -> StorageLocator:
        new_key = f"{self._area_of(locator.key)}/{uuid.uuid4().hex}"
        source = self._resolve(locator.key)
        target = self._resolve(new_key)
        await asyncio.to_thread(shutil.copyfile, source, target)
        return StorageLocator(
            provider=locator.provider,
            key=new_key,
            bucket=locator.bucket,
            etag=locator.etag,
        )

    async def get_read_locator(self, locator: StorageLocator, ttl: int) -> str:
        path = self._resolve(locator.key)
        if not await asyncio.to_thread(path.exists):
            raise FileNotFoundError(f"Stored object not found: {locator.key}")
        expires = int(datetime.now(UTC).timestamp()) + ttl
        return f"{path.as_uri()}?expires={expires}"

    # ------------------------------------------------------------------
    # Local helpers
    # ------------------------------------------------------------------

    async def read(self, locator: StorageLocator) -> bytes:
        return await asyncio.to_thread(self._resolve(locator.key).read_bytes)

    async def exists(self, locator: StorageLocator) -> bool:
        return await asyncio.to_thread(self._resolve(locator.key).exists)
