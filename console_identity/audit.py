"""Audit notification events.

The core only emits events; persisting them belongs to the recorder.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from console_identity.utils.logger import get_logger

logger = get_logger(__name__)

ACTION_LOGIN = "login"
ACTION_LOGIN_FAILED = "login_failed"
ACTION_PASSWORD_CHANGE = "password_change"
ACTION_PASSWORD_RESET = "password_reset"
ACTION_GROUP_SYNC = "group_sync"
ACTION_IMPORT_IDENTITIES = "import_identities"
ACTION_IMPORT_GROUPS = "import_groups"

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILURE = "failure"


@dataclass(frozen=True)
class AuditEvent:
    actor: str
    action: str
    target: str
    outcome: str = OUTCOME_SUCCESS
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditRecorder(ABC):
    """Receives one event per completed operation."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass


class LoggingAuditRecorder(AuditRecorder):
    """Writes each event as a structured log line."""

    def __init__(self, logger_name: str = "console_identity.audit") -> None:
        self._logger = get_logger(logger_name, component="audit")

    def record(self, event: AuditEvent) -> None:
        self._logger.info(
            f"Audit: {event.action}",
            event=f"audit.{event.action}",
            actor=event.actor,
            target=event.target,
            outcome=event.outcome,
            details=event.details,
            audit_ts=event.timestamp.isoformat(),
        )


class CompositeAuditRecorder(AuditRecorder):
    def __init__(self, recorders: Iterable[AuditRecorder]) -> None:
        self.recorders = list(recorders)

    def record(self, event: AuditEvent) -> None:
        for recorder in self.recorders:
            emit(recorder, event)


def emit(recorder: AuditRecorder | None, event: AuditEvent) -> None:
    """Deliver an event; a failing recorder never breaks the caller."""
    if recorder is None:
        return
    try:
        recorder.record(event)
    except Exception:
        logger.exception(
            "Audit recorder failed",
            event="audit.recorder_failed",
            recorder=type(recorder).__name__,
            action=event.action,
        )
