"""Execution tracker records."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ValidationError


class ExecutionTracker(BaseModel):
    """When a guarded operation last started, per logical key."""

    model_config = {"extra": "ignore"}

    last_executed: datetime

    @classmethod
    def at(cls, timestamp: float) -> ExecutionTracker:
        """Tracker for an epoch-seconds timestamp."""
        return cls(last_executed=datetime.fromtimestamp(timestamp, UTC))

    @property
    def timestamp(self) -> float:
        """``last_executed`` as epoch seconds."""
        return self.last_executed.timestamp()

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes | None) -> ExecutionTracker | None:
        """Decode a stored tracker; None if absent or unreadable."""
        if data is None:
            return None
        try:
            return cls.model_validate_json(data)
        except ValidationError:
            return None
