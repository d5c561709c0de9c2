"""Core utilities for configuration, logging, and domain models."""

from .config import AppSettings, ApprovalSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "ApprovalSettings",
    "configure_logging",
    "load_app_settings",
]
