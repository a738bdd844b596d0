"""Compatibility shim exposing the sync FastAPI app."""

from __future__ import annotations

from tvsync.main import app, create_app

__all__ = ["app", "create_app"]
