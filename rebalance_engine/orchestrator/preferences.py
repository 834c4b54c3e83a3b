"""
Per-account preference book.

Preferences are set by the principal out of band (dashboard) and read by the
orchestrator every cycle. Accounts without an entry use the defaults.
"""

import json
from pathlib import Path

from rebalance_engine.decision import Preferences
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class PreferenceBook:
    def __init__(self, default: Preferences | None = None, path: Path | None = None):
        self._default = default or Preferences()
        self._path = path
        self._entries: dict[str, Preferences] = {}
        if path is not None:
            self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with open(self._path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load preferences from %s: %s; using defaults", self._path, e)
            return
        for account, data in raw.items():
            try:
                self._entries[account] = Preferences.model_validate(data)
            except ValueError as e:
                logger.warning("Invalid preferences for %s ignored: %s", account, e)
        logger.info("Loaded preferences for %d accounts", len(self._entries))

    def get(self, account: str) -> Preferences:
        return self._entries.get(account, self._default)

    def set(self, account: str, preferences: Preferences) -> None:
        self._entries[account] = preferences
        self._save()

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(
                {a: p.model_dump(mode="json") for a, p in sorted(self._entries.items())},
                f,
                indent=2,
            )
        tmp.replace(self._path)
