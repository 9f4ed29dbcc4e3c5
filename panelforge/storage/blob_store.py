"""
Asynchronous blob store.

Large image payloads live one per file under a directory. All file I/O runs
in worker threads so the event loop never blocks on disk. Access is scoped:

    async with store.open() as tx:
        await tx.put("panel-1", image)
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional, Union

from panelforge.core.exceptions import BlobStoreError
from panelforge.utils.file_utils import atomic_write_text, ensure_directory, filename_to_key, key_to_filename

BLOB_SUFFIX = ".blob"


class BlobTransaction:
    """Handle for blob operations, valid only inside ``BlobStore.open()``."""

    def __init__(self, root: Path):
        self._root = root
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise BlobStoreError("Blob transaction used after close")

    def _path(self, key: str) -> Path:
        return self._root / key_to_filename(key, BLOB_SUFFIX)

    async def put(self, key: str, data: str) -> None:
        self._check_open()
        try:
            await asyncio.to_thread(atomic_write_text, self._path(key), data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob '{key}': {e}", {"key": key})

    async def get(self, key: str) -> Optional[str]:
        self._check_open()
        path = self._path(key)

        def _read() -> Optional[str]:
            if not path.exists():
                return None
            return path.read_text(encoding='utf-8')

        try:
            return await asyncio.to_thread(_read)
        except (OSError, UnicodeDecodeError) as e:
            raise BlobStoreError(f"Failed to read blob '{key}': {e}", {"key": key})

    async def delete(self, key: str) -> None:
        self._check_open()
        try:
            await asyncio.to_thread(self._path(key).unlink, missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob '{key}': {e}", {"key": key})

    async def keys(self) -> List[str]:
        self._check_open()

        def _list() -> List[str]:
            return sorted(filename_to_key(p.name, BLOB_SUFFIX) for p in self._root.glob(f"*{BLOB_SUFFIX}"))

        try:
            return await asyncio.to_thread(_list)
        except OSError as e:
            raise BlobStoreError(f"Failed to list blobs: {e}")

    async def clear(self) -> None:
        for key in await self.keys():
            await self.delete(key)


class BlobStore:
    """Directory-backed object store for image data URLs."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    @asynccontextmanager
    async def open(self) -> AsyncIterator[BlobTransaction]:
        try:
            await asyncio.to_thread(ensure_directory, self.root)
        except OSError as e:
            raise BlobStoreError(f"Failed to open blob store at {self.root}: {e}")

        transaction = BlobTransaction(self.root)
        try:
            yield transaction
        finally:
            transaction.close()
