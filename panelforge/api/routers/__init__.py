"""API routers for Panelforge."""

from panelforge.api.routers import generation

__all__ = ["generation"]
