"""
JSON-lines persistence for telemetry events.

Events are already redacted when they get here. Loading sweeps out events
older than the configured age and rewrites the file without them.
"""
import json
import logging
from pathlib import Path
from typing import List

from .models import TelemetryEvent

logger = logging.getLogger("telemetry.persistence")


class TelemetryStore:
    """Append-only event log on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self, now: float, max_age_seconds: float) -> List[TelemetryEvent]:
        """
        Load events newer than `max_age_seconds`, dropping the rest from disk.

        Unreadable lines are skipped.
        """
        if not self.path.exists():
            return []

        cutoff = now - max_age_seconds
        kept: List[TelemetryEvent] = []
        dropped = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = TelemetryEvent.from_dict(json.loads(line))
                except (ValueError, KeyError, TypeError):
                    dropped += 1
                    continue
                if event.started_at < cutoff:
                    dropped += 1
                    continue
                kept.append(event)

        if dropped:
            logger.info(f"Swept {dropped} expired or unreadable telemetry events")
            self._rewrite(kept)
        return kept

    def _rewrite(self, events: List[TelemetryEvent]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for event in events:
                f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
        tmp_path.replace(self.path)

    def append(self, event: TelemetryEvent) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
