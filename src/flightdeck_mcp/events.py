"""
Structured audit events.

Components receive an EventSink at construction and report notable
actions (certificate creation, revocation, phase outcomes) through it.
Events are forwarded to the standard logger and kept for the run's
history.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("flightdeck-mcp.events")

SENSITIVE_KEYS = ("password", "secret", "private_key", "token")


@dataclass(frozen=True)
class Event:
    """One audit event."""
    name: str
    level: int
    fields: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "level": logging.getLevelName(self.level),
            "fields": self.fields,
            "timestamp": self.timestamp.isoformat(),
        }


def _redact(fields: dict[str, Any]) -> dict[str, Any]:
    return {
        key: "****" if any(s in key.lower() for s in SENSITIVE_KEYS) else value
        for key, value in fields.items()
    }


@dataclass
class EventSink:
    """Collects events for one run and forwards them to logging."""

    events: list[Event] = field(default_factory=list)
    log: logging.Logger = field(default=logger)

    def emit(self, name: str, level: int = logging.INFO, **fields: Any) -> Event:
        event = Event(
            name=name,
            level=level,
            fields=_redact(fields),
            timestamp=datetime.now(timezone.utc),
        )
        self.events.append(event)
        details = " ".join(f"{k}={v}" for k, v in event.fields.items())
        self.log.log(level, f"{name} {details}".strip())
        return event

    def named(self, name: str) -> list[Event]:
        """All events with this name, in emission order."""
        return [e for e in self.events if e.name == name]
