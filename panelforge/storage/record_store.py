"""
Synchronous record store.

Small structured records (JSON text) in a directory with a fixed byte
budget, the server-side counterpart of a browser's local storage quota.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from panelforge.core.constants import DEFAULT_RECORD_CAPACITY
from panelforge.core.exceptions import PersistenceCapacityError, PersistenceCorruptionError, StorageError
from panelforge.utils.file_utils import atomic_write_text, ensure_directory, key_to_filename

RECORD_SUFFIX = ".json"


class RecordStore:
    """
    Capacity-limited key/value store of text records.

    A write fails with PersistenceCapacityError when the total size of all
    records, including the current value of the key being written, plus the
    new value would exceed the capacity.
    """

    def __init__(self, root: Union[str, Path], capacity_bytes: int = DEFAULT_RECORD_CAPACITY):
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes

    @contextmanager
    def open(self) -> Iterator['RecordStore']:
        """Scoped access; filesystem failures surface as StorageError."""
        try:
            ensure_directory(self.root)
            yield self
        except OSError as e:
            raise StorageError(f"Record store failure in {self.root}: {e}")

    def _path(self, key: str) -> Path:
        return self.root / key_to_filename(key, RECORD_SUFFIX)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding='utf-8')
        except UnicodeDecodeError as e:
            raise PersistenceCorruptionError(f"Record '{key}' is not valid UTF-8: {e}")

    def set(self, key: str, value: str) -> None:
        required = self.used_bytes() + len(value.encode('utf-8'))
        if required > self.capacity_bytes:
            raise PersistenceCapacityError(key, required, self.capacity_bytes)
        atomic_write_text(self._path(key), value)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def used_bytes(self) -> int:
        if not self.root.exists():
            return 0
        return sum(p.stat().st_size for p in self.root.glob(f"*{RECORD_SUFFIX}"))
