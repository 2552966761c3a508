"""CSV log of tag session transitions.

One row per event: connect attempts and their outcome, link loss, ring
commands and RSSI samples, stamped with the tag address and the connection
phase the session was in when the event was recorded. The file is appended
to and flushed on every row so it can be tailed while the driver runs.
"""
from __future__ import annotations

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

FIELDS = ("timestamp", "address", "event", "phase", "value", "detail")


class EventLog:
    """Shared CSV file; sessions write through :meth:`for_tag`."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=FIELDS).writeheader()

    def for_tag(self, address: str) -> "TagEventLog":
        return TagEventLog(self, address)

    def write(
        self,
        address: str,
        event: str,
        phase: str,
        *,
        value: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> None:
        self._append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                "address": address,
                "event": event,
                "phase": phase,
                "value": "" if value is None else value,
                "detail": detail or "",
            }
        )

    def _append(self, row: dict) -> None:
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=FIELDS).writerow(row)


class TagEventLog:
    """Rows for one tag."""

    def __init__(self, log: EventLog, address: str) -> None:
        self._log = log
        self.address = address

    def record(self, event: str, phase: str, *, value: Optional[float] = None, detail: Optional[str] = None) -> None:
        try:
            self._log.write(self.address, event, phase, value=value, detail=detail)
        except OSError as exc:
            logger.warning("Could not record %s for %s: %s", event, self.address, exc)


__all__ = ["EventLog", "FIELDS", "TagEventLog"]
