"""HTTP API for projects and automation sessions."""

from .app import create_app

__all__ = ["create_app"]
