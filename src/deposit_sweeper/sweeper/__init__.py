"""Sponsored sweep engine - consolidation of confirmed deposits into treasury."""

from deposit_sweeper.sweeper.audit import AuditEvent, AuditEventType, AuditSink, LoggingAuditSink
from deposit_sweeper.sweeper.engine import SweepEngine
from deposit_sweeper.sweeper.models import (
    InsufficientDepositBalanceError,
    InsufficientSponsorBalanceError,
    SweepAdapter,
    SweepConfigurationError,
    SweepError,
    SweepFailedError,
    SweepOutcome,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditSink",
    "InsufficientDepositBalanceError",
    "InsufficientSponsorBalanceError",
    "LoggingAuditSink",
    "SweepAdapter",
    "SweepConfigurationError",
    "SweepEngine",
    "SweepError",
    "SweepFailedError",
    "SweepOutcome",
]
