"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class StorageSettings(BaseModel):
    """Settings for the local entity store."""

    db_path: Path = Field(
        default=Path("./case_automation.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class ApprovalSettings(BaseModel):
    """Settings for the approval workflow and quick approval links."""

    hmac_secret: str | None = Field(
        default=None, description="Secret used to sign approval tokens"
    )
    token_ttl_minutes: int = Field(
        default=60, ge=1, description="Lifetime of quick approval links"
    )
    batch_ttl_hours: int = Field(
        default=168, ge=1, description="Hours a pending batch stays approvable"
    )
    app_base_url: str = Field(
        default="http://localhost:8000", description="Public URL of the app"
    )
    allowed_origins: list[str] = Field(
        default_factory=list,
        description="Extra origins allowed to call the public approval endpoints",
    )
    require_approval: bool = Field(
        default=True, description="Stage batches for approval unless overridden"
    )


class BillingSettings(BaseModel):
    """Defaults applied to automated time entries."""

    default_rate: float = Field(default=800.0, gt=0, description="Hourly rate")


class GmailSettings(BaseModel):
    """Gmail API credentials used for sending mail and fetching attachments."""

    access_token: str | None = Field(default=None, description="OAuth access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth client secret")
    sender: str = Field(default="me", description="Gmail user id used for sending")


class CalendarSettings(BaseModel):
    """Google Calendar OAuth settings."""

    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth client secret")
    access_token: str | None = Field(default=None, description="OAuth access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    selected_calendar: str = Field(default="primary", description="Target calendar")
    event_duration_minutes: int = Field(
        default=60, ge=1, description="Fallback event length"
    )


class DropboxSettings(BaseModel):
    """Dropbox API settings for saving attachments."""

    access_token: str | None = Field(default=None, description="Dropbox token")
    root_path: str = Field(default="", description="Prefix applied to upload paths")


class HttpSettings(BaseModel):
    """Shared settings for outbound REST calls."""

    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-request timeout"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    gmail: GmailSettings = Field(default_factory=GmailSettings)
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)
    dropbox: DropboxSettings = Field(default_factory=DropboxSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)


ENV_PREFIX = "CASE_AUTOMATION_"

_LIST_FIELDS = {("approval", "allowed_origins")}


def _key_path(raw_key: str) -> tuple[str, ...]:
    """Map ``CASE_AUTOMATION_APPROVAL__HMAC_SECRET`` to ``("approval", "hmac_secret")``."""
    return tuple(
        segment.lower() for segment in raw_key.removeprefix(ENV_PREFIX).split("__") if segment
    )


def _coerce(path: tuple[str, ...], value: str | None) -> Any:
    """Turn raw env strings into values pydantic can validate."""
    if value is None or value == "":
        return None
    if path in _LIST_FIELDS:
        return [item.strip() for item in value.split(",") if item.strip()]
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return value


def _read_prefixed(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, str | None]:
    """Return prefixed variables; process environment wins over the env file."""
    values: dict[str, str | None] = {}
    if env_file and Path(env_file).is_file():
        values.update(
            (key, value)
            for key, value in dotenv_values(Path(env_file)).items()
            if key.startswith(ENV_PREFIX)
        )
    if include_environment:
        values.update(
            (key, value) for key, value in os.environ.items() if key.startswith(ENV_PREFIX)
        )
    return values


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Build the nested settings tree from env file and environment."""
    tree: dict[str, Any] = {}
    for key, raw in _read_prefixed(env_file, include_environment).items():
        path = _key_path(key)
        if not path:
            continue
        node = tree
        for segment in path[:-1]:
            node = cast(dict[str, Any], node.setdefault(segment, {}))
        node[path[-1]] = _coerce(path, raw)
    return tree


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ApprovalSettings",
    "BillingSettings",
    "CalendarSettings",
    "DropboxSettings",
    "GmailSettings",
    "HttpSettings",
    "LoggingSettings",
    "StorageSettings",
    "load_app_settings",
]
