"""
Domain protocols (interfaces) for dependency inversion.

The engine, auditor and scheduler write structured events through these
contracts instead of importing the storage layer directly.
"""
from typing import Awaitable, Dict, Optional, Protocol, runtime_checkable
from datetime import datetime


@runtime_checkable
class EventRecorder(Protocol):
    """
    Protocol for recording hedge events (entries, rollbacks, audits, ...).

    Implemented by cashcarry.storage.repository.record_event in production.
    Can be replaced with a no-op or in-memory recorder in tests.
    """

    def __call__(
        self,
        event_type: str,
        inst_id: str,
        details: Dict,
        timestamp: Optional[datetime] = None,
    ) -> None: ...


@runtime_checkable
class AlertSender(Protocol):
    """Protocol for operator alerts (see cashcarry.monitoring.alerting.send_alert)."""

    def __call__(self, event_type: str, message: str, urgent: bool = False) -> Awaitable[None]: ...


def _noop_event_recorder(
    event_type: str,
    inst_id: str,
    details: Dict,
    timestamp: Optional[datetime] = None,
) -> None:
    """No-op event recorder for use in tests or when persistence is unavailable."""
    pass


async def _noop_alert(event_type: str, message: str, urgent: bool = False) -> None:
    pass
