"""Content store - raw document bytes, addressed by storage path."""

import os
from pathlib import Path, PurePosixPath
from typing import Protocol
from uuid import UUID

import aiofiles
import aiofiles.os

from backend.ingest.config import Settings
from backend.ingest.errors import StorageError


def storage_path_for(user_id: UUID, content_hash: str, filename: str) -> str:
    """Build the object path for a document: ``{user_id}/{content_hash}{ext}``."""
    ext = os.path.splitext(filename)[1].lower()
    return f"{user_id}/{content_hash}{ext}"


class ContentStore(Protocol):
    """Object store holding uploaded document bytes."""

    async def put(self, path: str, data: bytes) -> None:
        """Write an object, replacing any existing one.

        Raises:
            StorageError: Write failed
        """
        ...

    async def get(self, path: str) -> bytes:
        """Read an object.

        Raises:
            StorageError: Object missing or read failed
        """
        ...

    async def delete(self, path: str) -> None:
        """Remove an object; missing objects are ignored."""
        ...


class InMemoryContentStore:
    """Dict-backed content store for tests and single-process runs."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}

    async def put(self, path: str, data: bytes) -> None:
        self._objects[path] = bytes(data)

    async def get(self, path: str) -> bytes:
        try:
            return self._objects[path]
        except KeyError as e:
            raise StorageError(f"object not found: {path}") from e

    async def delete(self, path: str) -> None:
        self._objects.pop(path, None)

    def __contains__(self, path: object) -> bool:
        return path in self._objects

    def __len__(self) -> int:
        return len(self._objects)


class FileSystemContentStore:
    """Content store rooted at a local directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"invalid storage path: {path}")

        target = (self._root / relative).resolve()
        if not target.is_relative_to(self._root):
            raise StorageError(f"storage path escapes root: {path}")
        return target

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        tmp_target = target.with_name(target.name + ".tmp")

        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(tmp_target, "wb") as f:
                await f.write(data)
            # Rename so readers never observe a half-written object
            await aiofiles.os.replace(tmp_target, target)
        except OSError as e:
            raise StorageError(f"failed to write {path}: {e}") from e

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)

        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise StorageError(f"object not found: {path}") from e
        except OSError as e:
            raise StorageError(f"failed to read {path}: {e}") from e

    async def delete(self, path: str) -> None:
        target = self._resolve(path)

        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"failed to delete {path}: {e}") from e


def create_content_store(settings: Settings) -> ContentStore:
    """Build the content store selected by ``storage_backend``."""
    if settings.storage_backend == "memory":
        return InMemoryContentStore()
    if settings.storage_backend == "filesystem":
        return FileSystemContentStore(settings.storage_root)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
