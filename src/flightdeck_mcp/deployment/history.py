"""
Deployment history.

A DeploymentHistory is an immutable record of one run: its status and
one entry per executed phase. Every transition returns a new instance.
HistoryStore persists each run as a JSON file in the data directory.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..signing.models import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 5000
MAX_ENTRY_MESSAGE = 10000


class DeploymentStatus(Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.COMPLETED, DeploymentStatus.FAILED)


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


@dataclass(frozen=True)
class HistoryEntry:
    """Outcome of one phase.

    Attributes:
        phase: Phase name
        outcome: success, failure, skipped or degraded
        message: Human-readable detail
        timestamp: When the phase finished
        duration: Phase duration in seconds
        details: Structured phase output
    """
    phase: str
    outcome: str
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    duration: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "outcome": self.outcome,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "duration": round(self.duration, 3),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            phase=data["phase"],
            outcome=data["outcome"],
            message=data.get("message", ""),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            duration=float(data.get("duration", 0.0)),
            details=data.get("details", {}) or {},
        )


@dataclass(frozen=True)
class DeploymentHistory:
    """Immutable record of one deployment run."""
    deployment_id: str
    team_id: str
    app_identifier: str
    status: DeploymentStatus = DeploymentStatus.INITIATED
    entries: tuple[HistoryEntry, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    def _ensure_open(self, action: str) -> None:
        if self.status.is_terminal:
            raise ValueError(f"Cannot {action}: deployment {self.deployment_id} is {self.status.value}")

    def start(self, now: Optional[datetime] = None) -> "DeploymentHistory":
        """Mark the run as in progress and start the clock."""
        self._ensure_open("start")
        return replace(
            self,
            status=DeploymentStatus.IN_PROGRESS,
            started_at=self.started_at or now or utcnow(),
        )

    def add_entry(
        self,
        phase: str,
        outcome: str,
        message: str = "",
        duration: float = 0.0,
        details: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "DeploymentHistory":
        """Append the outcome of a phase."""
        self._ensure_open("add entry")
        entry = HistoryEntry(
            phase=phase,
            outcome=outcome,
            message=_truncate(message, MAX_ENTRY_MESSAGE) or "",
            timestamp=now or utcnow(),
            duration=duration,
            details=dict(details or {}),
        )
        return replace(self, entries=self.entries + (entry,))

    def complete(self, now: Optional[datetime] = None, **metadata: Any) -> "DeploymentHistory":
        self._ensure_open("complete")
        return replace(
            self,
            status=DeploymentStatus.COMPLETED,
            finished_at=now or utcnow(),
            metadata={**self.metadata, **metadata},
        )

    def fail(self, error_type: str, message: str, now: Optional[datetime] = None) -> "DeploymentHistory":
        self._ensure_open("fail")
        return replace(
            self,
            status=DeploymentStatus.FAILED,
            finished_at=now or utcnow(),
            error_type=error_type,
            error_message=_truncate(message, MAX_ERROR_MESSAGE),
        )

    def with_metadata(self, **metadata: Any) -> "DeploymentHistory":
        self._ensure_open("update metadata")
        return replace(self, metadata={**self.metadata, **metadata})

    @property
    def duration(self) -> Optional[float]:
        """Seconds from start to finish (or to now while running)."""
        if self.started_at is None:
            return None
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def formatted_duration(self) -> str:
        seconds = self.duration
        if seconds is None:
            return "not started"
        minutes, secs = divmod(int(seconds), 60)
        hours, minutes = divmod(minutes, 60)
        if hours:
            return f"{hours}h {minutes}m {secs}s"
        if minutes:
            return f"{minutes}m {secs}s"
        return f"{secs}s"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "deployment_id": self.deployment_id,
            "team_id": self.team_id,
            "app_identifier": self.app_identifier,
            "status": self.status.value,
            "entries": [e.to_dict() for e in self.entries],
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "formatted_duration": self.formatted_duration,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentHistory":
        return cls(
            deployment_id=data["deployment_id"],
            team_id=data["team_id"],
            app_identifier=data["app_identifier"],
            status=DeploymentStatus(data.get("status", "initiated")),
            entries=tuple(HistoryEntry.from_dict(e) for e in data.get("entries", [])),
            metadata=data.get("metadata", {}) or {},
            started_at=parse_timestamp(data.get("started_at")),
            finished_at=parse_timestamp(data.get("finished_at")),
            error_type=data.get("error_type"),
            error_message=data.get("error_message"),
        )


class HistoryStore:
    """One JSON file per deployment in a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, deployment_id: str) -> Path:
        return self.directory / f"{deployment_id}.json"

    def save(self, history: DeploymentHistory) -> Path:
        """Write a history record with restrictive permissions."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(history.deployment_id)
        with open(path, "w") as f:
            json.dump(history.to_dict(), f, indent=2, default=str)
        if os.name != "nt":
            os.chmod(path, 0o600)
        return path

    def load(self, deployment_id: str) -> Optional[DeploymentHistory]:
        path = self._path(deployment_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return DeploymentHistory.from_dict(json.load(f))

    def list(
        self,
        team_id: Optional[str] = None,
        app_identifier: Optional[str] = None,
        limit: int = 20,
    ) -> list[DeploymentHistory]:
        """Most recent deployments first."""
        if not self.directory.is_dir():
            return []

        histories = []
        for path in self.directory.glob("*.json"):
            try:
                with open(path, "r") as f:
                    history = DeploymentHistory.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable history file {path.name}: {e}")
                continue
            if team_id and history.team_id != team_id:
                continue
            if app_identifier and history.app_identifier != app_identifier:
                continue
            histories.append(history)

        histories.sort(
            key=lambda h: h.started_at.timestamp() if h.started_at else 0.0,
            reverse=True,
        )
        return histories[:limit]
