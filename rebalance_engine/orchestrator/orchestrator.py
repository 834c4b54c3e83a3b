"""
Rebalance Orchestrator.

Scheduled worker driving every delegated account through:
    mirror read -> quotes -> decide -> submit -> confirm / retry / fail

Safety:
- The ledger re-validates every move; the mirror is only a hint
- At most one submission in flight per account
- Permission failures are never retried and trigger a mirror resync
- Transient failures are retried with capped backoff and jitter
- A failure-rate circuit breaker halts all submissions until cleared
"""

import asyncio
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from rebalance_engine.adapters import AdapterRegistry
from rebalance_engine.config import Settings
from rebalance_engine.decision import CostModel, DecisionLimits, decide
from rebalance_engine.domain import RebalanceProposal
from rebalance_engine.ledger import ErrorCode, Ledger, LedgerEvent, LedgerResult
from rebalance_engine.logging import account_context, clear_cycle_id, get_logger, set_cycle_id
from rebalance_engine.mirror import PermissionMirror
from rebalance_engine.orchestrator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from rebalance_engine.orchestrator.locks import AccountLockManager
from rebalance_engine.orchestrator.models import (
    AccountOutcome,
    CycleReport,
    RebalanceRecord,
    RecordOutcome,
)
from rebalance_engine.orchestrator.preferences import PreferenceBook
from rebalance_engine.orchestrator.quotes import QuoteFetcher
from rebalance_engine.orchestrator.records import RebalanceRecordLog
from rebalance_engine.orchestrator.retry import RetryPolicy
from rebalance_engine.runtime.event_bus import Event, EventBus, EventType

logger = get_logger(__name__)


class RebalanceOrchestrator:
    """
    Drives rebalance cycles for every account delegated to this agent.

    Call init() before the first cycle and shutdown() on teardown.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: Ledger,
        mirror: PermissionMirror,
        adapters: AdapterRegistry,
        event_bus: EventBus | None = None,
        preferences: PreferenceBook | None = None,
        persist: bool = True,
    ):
        """
        Initialize orchestrator.

        Args:
            settings: Engine settings
            ledger: Authoritative ledger
            mirror: Permission mirror read at the start of each account's turn
            adapters: Destination adapters used for quotes
            event_bus: Event bus for operator notifications
            preferences: Per-account preferences (defaults for everyone if None)
            persist: Write records and breaker state under the orchestrator dir
        """
        self._settings = settings
        self._ledger = ledger
        self._mirror = mirror
        self._event_bus = event_bus
        self._agent = settings.agent_address
        self._preferences = preferences or PreferenceBook()

        self._limits = DecisionLimits.from_settings(settings)
        self._costs = CostModel.from_settings(settings)
        self._quotes = QuoteFetcher(adapters, settings.quote_timeout_s)
        self._retry = RetryPolicy(
            max_attempts=settings.max_submit_attempts,
            base_delay_s=settings.backoff_base_s,
            max_delay_s=settings.backoff_max_s,
        )
        self._submit_timeout_s = settings.submit_timeout_s
        self._record_timeout_s = settings.record_timeout_s

        state_dir = settings.orchestrator_dir if persist else None
        self._breaker_state_file = state_dir / "circuit_breaker.json" if state_dir else None
        self._breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_rate_threshold=settings.failure_rate_threshold,
                window_s=settings.failure_window_s,
                min_samples=settings.failure_min_samples,
            ),
            state_file=self._breaker_state_file,
        )
        self._records = RebalanceRecordLog(state_dir / "records.jsonl" if state_dir else None)
        self._locks = AccountLockManager(stale_after_s=settings.record_timeout_s)
        self._workers = asyncio.Semaphore(settings.max_workers)

        # Accounts with a submission of unknown fate from a previous run
        self._blocked: dict[str, RebalanceRecord] = {}

        self._initialized = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._cycle_count = 0
        self._last_report: CycleReport | None = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def records(self) -> RebalanceRecordLog:
        return self._records

    @property
    def locks(self) -> AccountLockManager:
        return self._locks

    @property
    def preferences(self) -> PreferenceBook:
        return self._preferences

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        """Restore breaker state and resolve submissions left over from a previous run."""
        if self._initialized:
            return
        self._breaker.restore_state()
        for record in self._records.unresolved_submissions():
            self._blocked[record.account] = record
        if self._blocked:
            logger.warning("Recovering %d unresolved submissions", len(self._blocked))
            await self._resolve_blocked()
        self._initialized = True
        logger.info(
            "Orchestrator initialized (agent: %s, breaker tripped: %s, blocked accounts: %d)",
            self._agent,
            self._breaker.is_tripped,
            len(self._blocked),
        )

    async def shutdown(self) -> None:
        await self.stop()
        self._records.flush()
        if self._breaker_state_file is not None:
            self._breaker.save_state(self._breaker_state_file)
        logger.info("Orchestrator shut down")

    async def start(self) -> None:
        """Start the scheduled cycle loop."""
        if self._running:
            return
        if not self._initialized:
            await self.init()
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Orchestrator started (interval: %ss)", self._settings.cycle_interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Orchestrator stopped")

    def trigger(self) -> None:
        """Ask the scheduled loop to run a cycle now."""
        self._wakeup.set()

    async def _loop(self) -> None:
        while self._running:
            try:
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self._settings.cycle_interval_s
                    )
                except TimeoutError:
                    pass
                self._wakeup.clear()
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Orchestrator loop error: %s", e)

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self, accounts: list[str] | None = None) -> CycleReport:
        """
        Run one cycle over the given accounts (default: all delegated to this agent).
        """
        if not self._initialized:
            await self.init()

        cycle_id = f"cycle-{uuid4().hex[:8]}"
        set_cycle_id(cycle_id)
        self._cycle_count += 1
        report = CycleReport(cycle_id=cycle_id)

        try:
            if self._breaker.is_tripped:
                report.halted = True
                report.halt_reason = self._breaker.trip_reason
                await self._alert_if_needed()
                await self._publish(
                    EventType.CYCLE_SKIPPED,
                    {"reason": "circuit breaker tripped"},
                    cycle_id,
                )
                return report

            targets = accounts if accounts is not None else self._mirror.accounts_delegated_to(self._agent)
            await self._publish(EventType.CYCLE_STARTED, {"accounts": len(targets)}, cycle_id)

            for lease in self._locks.stale_leases():
                logger.error(
                    "Stale submission lease for %s held by %s for %.0fs",
                    lease.account,
                    lease.holder,
                    lease.age_s(),
                )

            await self._resolve_blocked()

            results = await asyncio.gather(
                *(self._process_with_worker(a, cycle_id) for a in targets),
                return_exceptions=True,
            )
            for account, result in zip(targets, results, strict=True):
                if isinstance(result, BaseException):
                    logger.error("Account %s failed with unexpected error: %r", account, result)
                    report.outcomes.append(AccountOutcome(account=account, reason=repr(result)))
                else:
                    report.outcomes.append(result)

            report.halted = self._breaker.is_tripped
            if report.halted:
                report.halt_reason = self._breaker.trip_reason
            return report
        finally:
            report.finished_at = datetime.now(UTC)
            self._last_report = report
            if not report.halted or report.outcomes:
                await self._publish(
                    EventType.CYCLE_COMPLETED,
                    {
                        "confirmed": report.count(RecordOutcome.CONFIRMED),
                        "failed": report.count(RecordOutcome.FAILED),
                        "skipped": report.count(RecordOutcome.SKIPPED),
                        "halted": report.halted,
                    },
                    cycle_id,
                )
            logger.info(
                "Cycle %s finished: %d confirmed, %d failed, %d skipped%s",
                cycle_id,
                report.count(RecordOutcome.CONFIRMED),
                report.count(RecordOutcome.FAILED),
                report.count(RecordOutcome.SKIPPED),
                " (halted)" if report.halted else "",
            )
            clear_cycle_id()

    async def _process_with_worker(self, account: str, cycle_id: str) -> AccountOutcome:
        async with self._workers:
            with account_context(account):
                return await self.process_account(account, cycle_id)

    async def process_account(self, account: str, cycle_id: str | None = None) -> AccountOutcome:
        """Run one account through read -> quotes -> decide -> submit."""
        cycle_id = cycle_id or f"manual-{uuid4().hex[:8]}"

        can_proceed, halt_reason = self._breaker.check()
        if not can_proceed:
            return AccountOutcome(account=account, outcome=RecordOutcome.SKIPPED, reason=halt_reason)

        if account in self._blocked:
            return self._skip(account, cycle_id, "previous submission unresolved")

        if self._locks.is_held(account):
            return self._skip(account, cycle_id, "submission already in flight")

        snapshot = self._mirror.get(account)
        if snapshot is None:
            snapshot = await self._mirror.resync(account, reason="cold read")
        if snapshot.agent != self._agent:
            return self._skip(account, cycle_id, "account not delegated to this agent")

        quotes = await self._quotes.fetch(snapshot.allowlist)
        proposal = decide(
            account=account,
            holdings=snapshot.holdings,
            quotes=quotes,
            allowlist=snapshot.allowlist,
            preferences=self._preferences.get(account),
            limits=self._limits,
            costs=self._costs,
        )
        if proposal is None:
            return self._skip(account, cycle_id, "no net-beneficial move")

        # Re-check after the awaits above: another cycle may have claimed the
        # account or tripped the breaker in the meantime
        can_proceed, halt_reason = self._breaker.check()
        if not can_proceed:
            return self._skip(account, cycle_id, halt_reason or "circuit breaker tripped")
        if not self._locks.try_acquire(account, cycle_id):
            return self._skip(account, cycle_id, "submission already in flight")

        try:
            return await self._submit(account, proposal, cycle_id)
        finally:
            self._locks.release(account, cycle_id)

    def _skip(self, account: str, cycle_id: str, reason: str) -> AccountOutcome:
        record = self._records.append(
            account, RecordOutcome.SKIPPED, reason=reason, cycle_id=cycle_id
        )
        logger.debug("Skipped %s: %s", account, reason)
        return AccountOutcome(
            account=account,
            outcome=RecordOutcome.SKIPPED,
            reason=reason,
            record_id=record.record_id,
        )

    # =========================================================================
    # Submission
    # =========================================================================

    async def _submit(
        self, account: str, proposal: RebalanceProposal, cycle_id: str
    ) -> AccountOutcome:
        # One proof for every attempt of this submission so the ledger can
        # recognise a retry of a move it already applied
        move_proof = f"{proposal.fingerprint}-{uuid4().hex[:12]}"
        self._records.append(
            account,
            RecordOutcome.SUBMITTED,
            proposal=proposal,
            move_proof=move_proof,
            cycle_id=cycle_id,
        )
        await self._publish(
            EventType.REBALANCE_PROPOSED,
            {
                "account": account,
                "from": proposal.from_destination,
                "to": proposal.to_destination,
                "amount": str(proposal.amount),
                "net_delta": str(proposal.net_delta),
                "move_proof": move_proof,
            },
            cycle_id,
        )
        logger.info("Submitting move for %s: %s", account, proposal.justification)

        in_flight: asyncio.Task[LedgerResult[LedgerEvent]] | None = None
        attempt = 0
        while True:
            attempt += 1
            if in_flight is None:
                in_flight = asyncio.create_task(
                    self._ledger.rebalance(
                        account=account,
                        from_destination=proposal.from_destination,
                        to_destination=proposal.to_destination,
                        amount=proposal.amount,
                        move_proof=move_proof,
                        caller=self._agent,
                    )
                )
            try:
                result = await asyncio.wait_for(
                    asyncio.shield(in_flight), timeout=self._submit_timeout_s
                )
                in_flight = None
            except TimeoutError:
                # Still running; the next attempt waits on the same submission
                result = LedgerResult.failure(
                    ErrorCode.SUBMISSION_TIMEOUT,
                    f"No ledger response within {self._submit_timeout_s}s",
                )

            if result.ok or not result.error.is_transient:
                return await self._finalize(account, proposal, move_proof, cycle_id, result, attempt)

            cancel_reason = self._retry_cancel_reason(account)
            if attempt >= self._retry.max_attempts or cancel_reason is not None:
                return await self._give_up(
                    account, proposal, move_proof, cycle_id, result, attempt, in_flight, cancel_reason
                )

            delay = self._retry.delay_for(attempt)
            logger.warning(
                "Transient failure for %s (attempt %d/%d): %s; retrying in %.2fs",
                account,
                attempt,
                self._retry.max_attempts,
                result.error,
                delay,
            )
            await asyncio.sleep(delay)

            # The grant or the breaker may have changed while we slept
            cancel_reason = self._retry_cancel_reason(account)
            if cancel_reason is not None:
                return await self._give_up(
                    account, proposal, move_proof, cycle_id, result, attempt, in_flight, cancel_reason
                )

    async def _give_up(
        self,
        account: str,
        proposal: RebalanceProposal,
        move_proof: str,
        cycle_id: str,
        result: LedgerResult[LedgerEvent],
        attempts: int,
        in_flight: asyncio.Task[LedgerResult[LedgerEvent]] | None,
        cancel_reason: str | None,
    ) -> AccountOutcome:
        if in_flight is not None:
            # A timed-out submission may still land; its result decides the outcome
            result = await in_flight
            if result.ok or not result.error.is_transient:
                return await self._finalize(account, proposal, move_proof, cycle_id, result, attempts)
        return await self._finalize_transient(
            account, proposal, move_proof, cycle_id, result, attempts, cancel_reason
        )

    def _retry_cancel_reason(self, account: str) -> str | None:
        if self._breaker.is_tripped:
            return "retry cancelled: circuit breaker tripped"
        snapshot = self._mirror.get(account)
        if snapshot is not None and snapshot.agent != self._agent:
            return "retry cancelled: agent grant revoked"
        return None

    async def _finalize(
        self,
        account: str,
        proposal: RebalanceProposal,
        move_proof: str,
        cycle_id: str,
        result: LedgerResult[LedgerEvent],
        attempts: int,
    ) -> AccountOutcome:
        """Record a confirmed move or a non-retryable failure."""
        if result.ok:
            event = result.unwrap()
            await self._mirror.apply(event)
            self._breaker.record_success()
            record = self._records.append(
                account,
                RecordOutcome.CONFIRMED,
                proposal=proposal,
                move_proof=move_proof,
                external_reference=f"ledger:{event.offset}",
                attempts=attempts,
                cycle_id=cycle_id,
            )
            await self._publish(
                EventType.REBALANCE_CONFIRMED,
                {"account": account, "move_proof": move_proof, "offset": event.offset},
                cycle_id,
            )
            logger.info("Move confirmed for %s at ledger offset %d", account, event.offset)
            return AccountOutcome(
                account=account, outcome=RecordOutcome.CONFIRMED, record_id=record.record_id
            )

        error = result.error
        record = self._records.append(
            account,
            RecordOutcome.FAILED,
            proposal=proposal,
            move_proof=move_proof,
            reason=error.message,
            error_code=error.code,
            attempts=attempts,
            cycle_id=cycle_id,
        )
        if error.is_systemic:
            logger.critical("Systemic failure for %s: %s", account, error)
            await self._publish(
                EventType.REBALANCE_FAILED,
                {"account": account, "error_code": error.code.value, "message": error.message},
                cycle_id,
            )
            if not self._breaker.is_tripped:
                self._breaker.trip(f"{error.code.value} for {account}: {error.message}")
                await self._publish(
                    EventType.CIRCUIT_BREAKER_TRIPPED,
                    {"reason": self._breaker.trip_reason},
                    cycle_id,
                )
            await self._alert_if_needed()
        elif error.is_permission:
            logger.warning("Permission drift for %s: %s; resyncing mirror", account, error)
            await self._mirror.resync(account, reason=f"permission drift ({error.code.value})")
            await self._publish(
                EventType.PERMISSION_DRIFT,
                {"account": account, "error_code": error.code.value, "message": error.message},
                cycle_id,
            )
        else:
            logger.warning("Move for %s rejected: %s", account, error)
            await self._publish(
                EventType.REBALANCE_FAILED,
                {"account": account, "error_code": error.code.value, "message": error.message},
                cycle_id,
            )
        return AccountOutcome(
            account=account,
            outcome=RecordOutcome.FAILED,
            reason=str(error),
            record_id=record.record_id,
        )

    async def _finalize_transient(
        self,
        account: str,
        proposal: RebalanceProposal,
        move_proof: str,
        cycle_id: str,
        result: LedgerResult[LedgerEvent],
        attempts: int,
        cancel_reason: str | None,
    ) -> AccountOutcome:
        """Record a transient failure that will not be retried further."""
        error = result.error
        reason = cancel_reason or f"retries exhausted: {error.message}"
        record = self._records.append(
            account,
            RecordOutcome.FAILED,
            proposal=proposal,
            move_proof=move_proof,
            reason=reason,
            error_code=error.code,
            attempts=attempts,
            cycle_id=cycle_id,
        )
        logger.error("Move for %s failed after %d attempts: %s", account, attempts, reason)
        await self._publish(
            EventType.REBALANCE_FAILED,
            {"account": account, "error_code": error.code.value, "message": reason},
            cycle_id,
        )

        if cancel_reason is None and self._breaker.record_failure(str(error)):
            await self._publish(
                EventType.CIRCUIT_BREAKER_TRIPPED,
                {"reason": self._breaker.trip_reason},
                cycle_id,
            )
            await self._alert_if_needed()

        return AccountOutcome(
            account=account,
            outcome=RecordOutcome.FAILED,
            reason=reason,
            record_id=record.record_id,
        )

    # =========================================================================
    # Recovery
    # =========================================================================

    async def _resolve_blocked(self) -> None:
        """Settle submissions whose fate was unknown at startup."""
        now = datetime.now(UTC)
        for account, record in list(self._blocked.items()):
            event = await self._ledger.find_move(account, record.move_proof or "")
            if event is not None:
                self._records.append(
                    account,
                    RecordOutcome.CONFIRMED,
                    proposal=record.proposal,
                    move_proof=record.move_proof,
                    external_reference=f"ledger:{event.offset}",
                    reason="recovered: move found in ledger",
                    attempts=record.attempts,
                    cycle_id=record.cycle_id,
                )
                del self._blocked[account]
                logger.info("Recovered submission %s for %s as confirmed", record.move_proof, account)
                continue

            age_s = (now - record.recorded_at).total_seconds()
            if age_s > self._record_timeout_s:
                self._records.append(
                    account,
                    RecordOutcome.FAILED,
                    proposal=record.proposal,
                    move_proof=record.move_proof,
                    reason=f"recovered: no ledger move after {age_s:.0f}s",
                    error_code=ErrorCode.SUBMISSION_TIMEOUT,
                    attempts=record.attempts,
                    cycle_id=record.cycle_id,
                )
                del self._blocked[account]
                await self._mirror.resync(account, reason="abandoned submission")
                logger.warning("Recovered submission %s for %s as failed", record.move_proof, account)

    # =========================================================================
    # Circuit breaker
    # =========================================================================

    async def _alert_if_needed(self) -> None:
        if self._breaker.should_alert():
            logger.critical(
                "CIRCUIT BREAKER TRIPPED: all submissions halted until cleared (%s)",
                self._breaker.trip_reason,
            )
            await self._publish(
                EventType.CIRCUIT_BREAKER_ALERT,
                {"reason": self._breaker.trip_reason},
            )

    async def clear_circuit_breaker(self, cleared_by: str = "operator") -> dict[str, Any]:
        result = self._breaker.clear(cleared_by)
        if result["was_tripped"]:
            await self._publish(EventType.CIRCUIT_BREAKER_CLEARED, result)
        return result

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "running": self._running,
            "agent": self._agent,
            "cycle_count": self._cycle_count,
            "cycle_interval_s": self._settings.cycle_interval_s,
            "in_flight": len(self._locks),
            "stale_leases": [
                {"account": l.account, "holder": l.holder, "age_s": round(l.age_s(), 1)}
                for l in self._locks.stale_leases()
            ],
            "blocked_accounts": sorted(self._blocked),
            "records": len(self._records),
            "circuit_breaker": self._breaker.get_stats(),
            "last_cycle": self._last_report.model_dump(mode="json") if self._last_report else None,
        }

    async def _publish(
        self, event_type: EventType, data: dict[str, Any], cycle_id: str | None = None
    ) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(Event(type=event_type, data=data, cycle_id=cycle_id))


# Module-level singleton
_orchestrator: RebalanceOrchestrator | None = None


def get_orchestrator() -> RebalanceOrchestrator | None:
    """Get the global orchestrator."""
    return _orchestrator


def set_orchestrator(orchestrator: RebalanceOrchestrator | None) -> None:
    """Set the global orchestrator (called from main.py lifespan)."""
    global _orchestrator
    _orchestrator = orchestrator
