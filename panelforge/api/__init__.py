"""
Panelforge API

FastAPI application exposing per-session comic generation.
"""

from .main import create_app, start_server

__all__ = ['create_app', 'start_server']
