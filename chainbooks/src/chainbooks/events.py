"""
Structured progress events for wallet scans.

Scanners and backends report progress through an EventSink callback instead
of printing. Every event is also written to the loguru logger, so a caller
that only wants logs can ignore the sink entirely.

Usage:
    from chainbooks.events import ScanEventLog

    events = ScanEventLog()
    result = await scanner.scan_wallet(zpub, NetworkType.MAINNET, on_event=events)
    for event in events.of_type(ScanEventType.ADDRESS_FAILED):
        print(event.address)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field


class ScanEventType(str, Enum):
    SCAN_STARTED = "scan_started"
    BATCH_COMPLETED = "batch_completed"
    GAP_REACHED = "gap_reached"
    ADDRESS_CAP_REACHED = "address_cap_reached"
    RETRY_ATTEMPTED = "retry_attempted"
    ADDRESS_FAILED = "address_failed"
    SCAN_COMPLETED = "scan_completed"


# Log level per event type
_EVENT_LEVELS: dict[ScanEventType, str] = {
    ScanEventType.SCAN_STARTED: "INFO",
    ScanEventType.BATCH_COMPLETED: "DEBUG",
    ScanEventType.GAP_REACHED: "DEBUG",
    ScanEventType.ADDRESS_CAP_REACHED: "WARNING",
    ScanEventType.RETRY_ATTEMPTED: "WARNING",
    ScanEventType.ADDRESS_FAILED: "WARNING",
    ScanEventType.SCAN_COMPLETED: "INFO",
}


class ScanEvent(BaseModel):
    """A single progress event emitted during a scan."""

    event_type: ScanEventType
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    address: str | None = None
    chain: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


EventSink = Callable[[ScanEvent], None]


def emit(
    sink: EventSink | None,
    event_type: ScanEventType,
    message: str,
    **fields: Any,
) -> ScanEvent:
    """Log an event and hand it to the sink, if any."""
    event = ScanEvent(event_type=event_type, message=message, **fields)
    logger.log(_EVENT_LEVELS[event_type], message)
    if sink is not None:
        sink(event)
    return event


class ScanEventLog:
    """EventSink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[ScanEvent] = []

    def __call__(self, event: ScanEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: ScanEventType) -> list[ScanEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def __len__(self) -> int:
        return len(self.events)
