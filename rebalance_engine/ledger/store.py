"""
Ledger persistence.

Writes to:
- {ledger_dir}/events.jsonl (append-only event log, JSON lines)
- {ledger_dir}/state.json (snapshot: accounts, registry, last applied offset)

The event is appended before the snapshot is rewritten. On load, events
newer than the snapshot's offset are re-applied, so a crash between the two
writes loses nothing.
"""

import json
import os
from pathlib import Path
from typing import Any

from rebalance_engine.ledger.models import LedgerEvent
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class LedgerStore:
    """File-backed ledger persistence. A None directory keeps everything in memory."""

    def __init__(self, directory: Path | None) -> None:
        self._dir = directory
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def persistent(self) -> bool:
        return self._dir is not None

    @property
    def events_path(self) -> Path | None:
        return self._dir / "events.jsonl" if self._dir else None

    @property
    def state_path(self) -> Path | None:
        return self._dir / "state.json" if self._dir else None

    def append_event(self, event: LedgerEvent) -> None:
        if self.events_path is None:
            return
        with open(self.events_path, "a") as f:
            f.write(event.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def save_state(self, snapshot: dict[str, Any]) -> None:
        """Atomically replace the state snapshot."""
        if self.state_path is None:
            return
        tmp_path = self.state_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(snapshot, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(self.state_path)

    def load_state(self) -> dict[str, Any] | None:
        if self.state_path is None or not self.state_path.exists():
            return None
        with open(self.state_path) as f:
            return json.load(f)

    def load_events(self) -> list[LedgerEvent]:
        """
        Read the event log.

        A truncated final line (torn write) is dropped from the file with a
        warning so later appends start on a clean line; corruption anywhere
        else raises.
        """
        if self.events_path is None or not self.events_path.exists():
            return []

        with open(self.events_path) as f:
            lines = [line for line in f if line.strip()]

        events: list[LedgerEvent] = []
        for i, line in enumerate(lines):
            try:
                events.append(LedgerEvent.model_validate_json(line))
            except ValueError:
                if i == len(lines) - 1:
                    logger.warning("Dropping torn final line in %s", self.events_path)
                    rewrite_lines(self.events_path, lines[:i])
                    break
                raise
        return events


def rewrite_lines(path: Path, lines: list[str]) -> None:
    """Atomically replace a JSON lines file with the given lines."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as f:
        f.writelines(lines)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)
