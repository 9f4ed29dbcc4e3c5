"""
Panelforge - AI-Powered Story-to-Comic Generation

Turns a short prose story into an illustrated comic: story analysis,
character reference sheets, panel layout planning and panel rendering,
with provider retry/fallback and resumable, persisted generation jobs.

Version: 1.0.0
"""

__version__ = "1.0.0"
__project__ = "Panelforge"

from pathlib import Path

# Provider keys may live in .env
from panelforge.core.env_loader import ensure_env_loaded
ensure_env_loaded()

# Package root directory
PACKAGE_ROOT = Path(__file__).parent

__all__ = [
    "__version__",
    "__project__",
    "PACKAGE_ROOT",
]
