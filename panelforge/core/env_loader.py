"""
Environment loading for Panelforge.

Provider API keys usually come from a ``.env`` file. It is located by walking
up from the working directory and loaded once per process; variables already
set in the environment win over the file.
"""

import os
from pathlib import Path
from typing import Iterable, Optional

from dotenv import find_dotenv, load_dotenv

_loaded_from: Optional[Path] = None


def ensure_env_loaded(env_file: Optional[Path] = None, override: bool = False) -> Optional[Path]:
    """
    Load ``.env`` into the process environment if that has not happened yet.

    Args:
        env_file: Explicit file to load instead of searching for one
        override: Let file values replace variables that are already set

    Returns:
        The file that is loaded, or None when there is none
    """
    global _loaded_from

    if _loaded_from is not None:
        return _loaded_from

    path = Path(env_file) if env_file else Path(find_dotenv(usecwd=True) or ".env")
    if not path.is_file():
        return None

    load_dotenv(path, override=override)
    _loaded_from = path
    return path


def get_api_key(key_name: str, fallback_keys: Optional[Iterable[str]] = None) -> Optional[str]:
    """First non-blank value among ``key_name`` and then ``fallback_keys``."""
    ensure_env_loaded()
    for name in [key_name, *(fallback_keys or [])]:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None
