"""Lazy wiring of the store, REST clients and automation services."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from .config import AppSettings

Factory = Callable[["ServiceContainer"], Any]

STORE = "store"
MAIL = "mail"
CALENDAR = "calendar"
FILES = "files"
ORCHESTRATOR = "orchestrator"
APPROVALS = "approvals"
ADVISOR = "advisor"


class ServiceContainer:
    """Resolve services by key, building each one at most once."""

    def __init__(self, settings: AppSettings) -> None:
        self.settings = settings
        self._factories: dict[str, Factory] = {}
        self._instances: dict[str, Any] = {}

    def register(self, key: str, factory: Factory) -> None:
        self._factories[key] = factory
        self._instances.pop(key, None)

    def provide(self, key: str, instance: Any) -> None:
        """Use an already built instance, e.g. a fake in tests."""
        self._instances[key] = instance

    def resolve(self, key: str) -> Any:
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            raise KeyError(f"Service '{key}' is not registered")
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def close(self) -> None:
        """Close the entity store if it was opened."""
        store = self._instances.get(STORE)
        close = getattr(store, "close", None)
        if callable(close):
            close()
        self._instances.clear()


def build_container(settings: AppSettings) -> ServiceContainer:
    """Register the production implementations for ``settings``.

    Integrations without credentials resolve to ``None``; actions that need
    them then fail with a clear error instead of calling the API unauthenticated.
    """
    # pylint: disable=import-outside-toplevel
    from case_automation.automation import (
        ApprovalService,
        BatchOrchestrator,
        RuleOptimizationAdvisor,
    )
    from case_automation.automation.notifications import ApprovalEmailRenderer
    from case_automation.calendar import GoogleCalendarClient
    from case_automation.storage import SqliteEntityStore
    from case_automation.transport import DropboxClient, GmailClient

    timeout = settings.http.timeout_seconds
    container = ServiceContainer(settings)
    container.register(STORE, lambda c: SqliteEntityStore(settings.storage))
    container.register(
        MAIL,
        lambda c: GmailClient(settings.gmail, timeout=timeout)
        if settings.gmail.access_token or settings.gmail.refresh_token
        else None,
    )
    container.register(
        CALENDAR,
        lambda c: GoogleCalendarClient(settings.calendar, timeout=timeout)
        if settings.calendar.access_token or settings.calendar.refresh_token
        else None,
    )
    container.register(
        FILES,
        lambda c: DropboxClient(settings.dropbox, timeout=timeout)
        if settings.dropbox.access_token
        else None,
    )
    container.register(
        ORCHESTRATOR,
        lambda c: BatchOrchestrator.build(
            c.resolve(STORE),
            mail=c.resolve(MAIL),
            calendar=c.resolve(CALENDAR),
            files=c.resolve(FILES),
            billing=settings.billing,
        ),
    )
    container.register(
        APPROVALS,
        lambda c: ApprovalService(
            c.resolve(STORE),
            c.resolve(ORCHESTRATOR),
            settings.approval,
            mail=c.resolve(MAIL),
            renderer=ApprovalEmailRenderer(
                settings.approval.app_base_url,
                default_rate=settings.billing.default_rate,
            ),
        ),
    )
    container.register(ADVISOR, lambda c: RuleOptimizationAdvisor(c.resolve(STORE)))
    return container


__all__ = [
    "ADVISOR",
    "APPROVALS",
    "CALENDAR",
    "FILES",
    "MAIL",
    "ORCHESTRATOR",
    "STORE",
    "ServiceContainer",
    "build_container",
]
