"""HTTP service exposing narrative engine sessions."""

from .app import SessionManager, create_app

__all__ = ["SessionManager", "create_app"]
