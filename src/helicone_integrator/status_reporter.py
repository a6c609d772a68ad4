from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
import logging

from helicone_integrator.models import StatusEvent
from helicone_integrator.observability import log_event, log_warning_event
from helicone_integrator.state import StateStore


LOGGER = logging.getLogger("helicone_integrator.status_reporter")


class StatusReporter(ABC):
    @abstractmethod
    def report(self, event: StatusEvent) -> None:
        """Record or forward one status event."""


class StoreStatusReporter(StatusReporter):
    """Appends to the status history and projects phase and URLs onto the instance row."""

    def __init__(self, state: StateStore) -> None:
        self._state = state

    def report(self, event: StatusEvent) -> None:
        self._state.record_status_event(event)


class LoggingStatusReporter(StatusReporter):
    def report(self, event: StatusEvent) -> None:
        log_event(
            LOGGER,
            "status_reported",
            integration_id=event.integration_id,
            status=event.status,
            message=event.message,
            staging_url=event.staging_url,
            pr_url=event.pr_url,
        )


class CompositeStatusReporter(StatusReporter):
    """Fans out to every reporter; a failing reporter is logged and skipped, never raised."""

    def __init__(self, reporters: Sequence[StatusReporter]) -> None:
        self._reporters = tuple(reporters)

    def report(self, event: StatusEvent) -> None:
        for reporter in self._reporters:
            try:
                reporter.report(event)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "status_report_failed",
                    integration_id=event.integration_id,
                    status=event.status,
                    reporter=type(reporter).__name__,
                    error_type=type(exc).__name__,
                )
