"""JSONL event log for the two background activities: directory refresh and reconcile ticks.

An event records what ran, against which store key or organization, how it ended and
how many records it touched. Directory contents and credentials never appear in it.
"""

from __future__ import annotations

import json
import sys
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Outcome of one refresh or one tick."""

    timestamp: str
    correlation_id: str
    operation: str
    target: str
    outcome: str
    reason: str | None
    duration_ms: int | None
    count: int | None

    def to_json(self) -> str:
        """Compact JSON with unset optional fields left out."""
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class AuditLogger:
    """Prints events to stderr and, when `sink_path` is set, appends them to a size-capped file.

    Once the file reaches `max_bytes` it becomes `<name>.1`, older backups shift up by one
    and anything past `max_backups` is dropped. Sink I/O errors are swallowed: a full disk
    must not stop the bot.
    """

    def __init__(
        self,
        *,
        sink_path: Path | None,
        max_bytes: int = 5 * 1024 * 1024,
        max_backups: int = 2,
    ) -> None:
        self._sink_path = sink_path
        self._max_bytes = max_bytes
        self._max_backups = max_backups

    def _backup(self, index: int) -> Path:
        assert self._sink_path is not None
        return self._sink_path.with_name(f"{self._sink_path.name}.{index}")

    def _rotate(self, sink: Path) -> None:
        if not sink.exists() or sink.stat().st_size < self._max_bytes:
            return
        if self._max_backups <= 0:
            sink.write_text("", encoding="utf-8")
            return
        self._backup(self._max_backups).unlink(missing_ok=True)
        for index in reversed(range(1, self._max_backups)):
            older = self._backup(index)
            if older.exists():
                older.replace(self._backup(index + 1))
        sink.replace(self._backup(1))

    def _append(self, line: str) -> None:
        sink = self._sink_path
        if sink is None:
            return
        try:
            sink.parent.mkdir(parents=True, exist_ok=True)
            self._rotate(sink)
            with sink.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:  # pragma: no cover
            return

    def write_event(self, event: AuditEvent) -> None:
        line = event.to_json()
        print(line, file=sys.stderr)
        self._append(line)

    def measure_start(self) -> float:
        return time.monotonic()

    def measure_duration_ms(self, start: float) -> int:
        return int((time.monotonic() - start) * 1000)


def build_event(
    *,
    correlation_id: str,
    operation: str,
    target: str,
    outcome: str,
    reason: str | None = None,
    duration_ms: int | None = None,
    count: int | None = None,
) -> AuditEvent:
    """Stamp an event with the current UTC time (RFC 3339, `Z` suffix)."""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return AuditEvent(
        timestamp=timestamp,
        correlation_id=correlation_id,
        operation=operation,
        target=target,
        outcome=outcome,
        reason=reason,
        duration_ms=duration_ms,
        count=count,
    )
