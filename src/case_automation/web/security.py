"""Origin allow-listing for the public approval endpoints."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from fastapi import Request
from starlette.responses import Response

from case_automation.core.config import ApprovalSettings

LOGGER = logging.getLogger(__name__)

ALLOWED_METHODS = "POST, OPTIONS"
ALLOWED_HEADERS = "content-type, authorization"


@dataclass(slots=True)
class OriginGuard:
    """Exact-match origin checks for the quick approval links.

    Requests without an ``Origin`` header (plain navigations, server to server
    calls) are accepted; any other origin must equal one of the allowed values.
    """

    allowed_origins: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: ApprovalSettings) -> OriginGuard:
        return cls(frozenset(_expand(settings.app_base_url, settings.allowed_origins)))

    def is_allowed(self, origin: str | None) -> bool:
        if not origin:
            return True
        return origin in self.allowed_origins

    def check(self, request: Request) -> str | None:
        """Return the request origin; raise :class:`ForbiddenOrigin` when refused."""
        origin = request.headers.get("origin")
        if not self.is_allowed(origin):
            LOGGER.info("Forbidden origin: %s", origin)
            raise ForbiddenOrigin(origin or "")
        return origin

    @staticmethod
    def apply_cors(response: Response, origin: str | None) -> Response:
        """Echo an accepted origin back in the CORS headers."""
        if origin:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
            response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
            response.headers["Vary"] = "Origin"
        return response


class ForbiddenOrigin(Exception):
    """Raised when a request comes from an origin outside the allow-list."""

    def __init__(self, origin: str) -> None:
        super().__init__(f"Origin not allowed: {origin}")
        self.origin = origin


def _expand(base_url: str | None, extra: Iterable[str]) -> list[str]:
    origins: list[str] = []
    for value in (base_url, *extra):
        if not value:
            continue
        origins.append(value)
        if value.endswith("/"):
            origins.append(value.rstrip("/"))
    return origins


__all__ = ["ForbiddenOrigin", "OriginGuard"]
