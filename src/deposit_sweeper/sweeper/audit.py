"""Audit events for deposits and sweeps."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol


class AuditEventType(str, Enum):
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    SWEEP_SUCCEEDED = "sweep_succeeded"
    SWEEP_FAILED = "sweep_failed"
    SPONSOR_BALANCE_LOW = "sponsor_balance_low"


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    chain: str
    deposit_id: uuid.UUID | None
    payload: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        return json.dumps(
            {
                "event": self.event_type.value,
                "chain": self.chain,
                "deposit_id": str(self.deposit_id) if self.deposit_id else None,
                "at": self.at.isoformat(),
                **self.payload,
            },
            default=str,
            sort_keys=True,
        )


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None: ...


_LEVELS = {
    AuditEventType.DEPOSIT_CONFIRMED: logging.INFO,
    AuditEventType.SWEEP_SUCCEEDED: logging.INFO,
    AuditEventType.SWEEP_FAILED: logging.WARNING,
    # Operator alert: sweeps on this chain stall until the sponsor is funded.
    AuditEventType.SPONSOR_BALANCE_LOW: logging.ERROR,
}


class LoggingAuditSink:
    """Writes audit events as JSON lines to a dedicated logger."""

    def __init__(self, logger_name: str = "deposit_sweeper.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def emit(self, event: AuditEvent) -> None:
        self._logger.log(_LEVELS[event.event_type], "%s", event.to_json())


def confirmation_latency_seconds(first_seen_at: datetime, confirmed_at: datetime | None) -> float | None:
    """Seconds between first observation and confirmation.

    SQLite returns naive datetimes; they are treated as UTC.
    """
    if confirmed_at is None:
        return None
    if first_seen_at.tzinfo is None:
        first_seen_at = first_seen_at.replace(tzinfo=UTC)
    if confirmed_at.tzinfo is None:
        confirmed_at = confirmed_at.replace(tzinfo=UTC)
    return max(0.0, (confirmed_at - first_seen_at).total_seconds())
