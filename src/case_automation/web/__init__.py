"""Web interface for the approval workflow."""

from .app import create_app

__all__ = ["create_app"]
