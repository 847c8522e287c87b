"""JSONL audit trail of dispatch and close passes."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

EVENT_TYPES = frozenset(
    {
        "dispatch_start",
        "position_created",
        "position_result",
        "dispatch_end",
        "close_start",
        "close_result",
        "close_end",
        "trade_cancelled",
        "error",
    }
)


class JournalStore:
    """One file per UTC day; writers from worker threads share a lock.

    Every payload written by the orchestrator carries ``trade_id`` so one
    trade's passes can be replayed for audit, including followers that were
    deferred and never changed a ledger row.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._root = journal_dir
        self._root.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        at = datetime.now(timezone.utc)
        entry = json.dumps(
            {"timestamp": at.isoformat(), "event_type": event_type, "payload": payload},
            ensure_ascii=True,
            default=str,
        )
        with self._write_lock, self._day_file(at.date()).open("a", encoding="utf-8") as fh:
            fh.write(entry + "\n")

    def history(self, *, trade_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        """Newest ``limit`` events in write order, optionally for one trade."""
        if limit <= 0:
            return []
        newest_first: list[dict[str, Any]] = []
        for entry in self._entries_newest_first():
            if trade_id is None or entry["payload"].get("trade_id") == trade_id:
                newest_first.append(entry)
                if len(newest_first) >= limit:
                    break
        return newest_first[::-1]

    def _entries_newest_first(self) -> Iterator[dict[str, Any]]:
        # day files sort by name; older days are only opened when still needed
        for day_file in sorted(self._root.glob("*.jsonl"), reverse=True):
            for raw in reversed(day_file.read_text(encoding="utf-8").splitlines()):
                if raw.strip():
                    yield json.loads(raw)

    def _day_file(self, day: date) -> Path:
        return self._root / f"{day.isoformat()}.jsonl"
