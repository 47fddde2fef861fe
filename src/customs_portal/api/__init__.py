"""HTTP API for the customs portal submission engine."""

from .main import app, create_app

__all__ = ["app", "create_app"]
