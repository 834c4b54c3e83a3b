"""
Rebalance record log.

Append-only log of every account outcome, keyed by (account, sequence):
- submitted / confirmed / failed records are written through immediately,
  since recovery after a crash depends on them
- skipped records are audit-only and buffered until flush()

Writes to {orchestrator_dir}/records.jsonl (JSON lines format).
"""

import os
from collections import defaultdict
from pathlib import Path
from typing import Any

from rebalance_engine.ledger.store import rewrite_lines
from rebalance_engine.logging import get_logger
from rebalance_engine.orchestrator.models import RebalanceRecord, RecordOutcome

logger = get_logger(__name__)


class RebalanceRecordLog:
    """Append-only record log with an in-memory index."""

    def __init__(self, path: Path | None = None, flush_every: int = 100):
        """
        Initialize record log.

        Args:
            path: JSONL file (None keeps records in memory only)
            flush_every: Buffered skipped records written once this many accumulate
        """
        self._path = path
        self._flush_every = flush_every
        self._records: list[RebalanceRecord] = []
        self._next_sequence: dict[str, int] = defaultdict(lambda: 1)
        self._buffer: list[RebalanceRecord] = []

        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        with open(self._path) as f:
            lines = [line for line in f if line.strip()]

        # Only a torn final line is dropped; anything else raises
        for i, line in enumerate(lines):
            try:
                record = RebalanceRecord.model_validate_json(line)
            except ValueError:
                if i == len(lines) - 1:
                    logger.warning("Dropping torn final line in %s", self._path)
                    rewrite_lines(self._path, lines[:i])
                    break
                raise
            self._index(record)
        logger.info("Loaded %d rebalance records from %s", len(self._records), self._path)

    def _index(self, record: RebalanceRecord) -> None:
        self._records.append(record)
        self._next_sequence[record.account] = max(
            self._next_sequence[record.account], record.sequence + 1
        )

    def _write(self, records: list[RebalanceRecord]) -> None:
        if self._path is None or not records:
            return
        with open(self._path, "a") as f:
            for record in records:
                f.write(record.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def append(self, account: str, outcome: RecordOutcome, **fields: Any) -> RebalanceRecord:
        """Create, index and persist a record with the account's next sequence."""
        record = RebalanceRecord(
            account=account,
            sequence=self._next_sequence[account],
            outcome=outcome,
            **fields,
        )
        self._index(record)

        if outcome == RecordOutcome.SKIPPED:
            self._buffer.append(record)
            if len(self._buffer) >= self._flush_every:
                self.flush()
        else:
            self.flush()
            self._write([record])
        return record

    def flush(self) -> None:
        """Write buffered records."""
        pending, self._buffer = self._buffer, []
        self._write(pending)

    def records(
        self,
        account: str | None = None,
        outcome: RecordOutcome | None = None,
        limit: int | None = None,
    ) -> list[RebalanceRecord]:
        """Records in append order, optionally filtered; limit keeps the newest."""
        selected = [
            r
            for r in self._records
            if (account is None or r.account == account)
            and (outcome is None or r.outcome == outcome)
        ]
        return selected[-limit:] if limit else selected

    def unresolved_submissions(self) -> list[RebalanceRecord]:
        """Submitted records with no later confirmed/failed record for the same move proof."""
        resolved = {
            r.move_proof for r in self._records if r.outcome.is_terminal and r.move_proof
        }
        return [
            r
            for r in self._records
            if r.outcome == RecordOutcome.SUBMITTED and r.move_proof not in resolved
        ]

    def __len__(self) -> int:
        return len(self._records)
