"""
Panelforge File Utilities

Common file operations used by the storage layer.
"""

import os
import tempfile
from pathlib import Path
from typing import Union
from urllib.parse import quote, unquote


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(path: Union[str, Path], content: str, encoding: str = 'utf-8') -> None:
    """
    Write text so that readers see either the old file or the new one, never a partial write.

    Args:
        path: Destination file
        content: Text to write
        encoding: File encoding (default: utf-8)
    """
    path = Path(path)
    ensure_directory(path.parent)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding=encoding) as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def key_to_filename(key: str, suffix: str = "") -> str:
    """Encode an arbitrary storage key as a reversible, filesystem-safe name."""
    return quote(key, safe="-_.") + suffix


def filename_to_key(filename: str, suffix: str = "") -> str:
    """Inverse of :func:`key_to_filename`."""
    if suffix and filename.endswith(suffix):
        filename = filename[:-len(suffix)]
    return unquote(filename)
