"""Helpers for per-action-type dispatch tables."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from case_automation.core.models import ActionType


def ensure_exhaustive(table: Mapping[ActionType, Any], component: str) -> None:
    """Raise when ``table`` lacks an entry for any :class:`ActionType`."""
    missing = [kind.value for kind in ActionType if kind not in table]
    if missing:
        raise RuntimeError(
            f"{component} has no handler for action type(s): {', '.join(missing)}"
        )


__all__ = ["ensure_exhaustive"]
