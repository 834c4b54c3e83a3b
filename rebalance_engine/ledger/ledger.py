"""
Ledger: the authoritative record of who may move whose funds where.

Owns account balances, agent grants, per-account destination allowlists and
the global protocol registry, and is the only component that moves funds.

Every mutating operation:
- is serialized per account (one asyncio.Lock per account)
- validates against the ledger's own state at the moment of application
- is fully applied or leaves state unchanged
- returns a LedgerResult instead of raising for business failures
- emits a sequenced LedgerEvent on the change feed
"""

import asyncio
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from rebalance_engine.adapters import AdapterError, AdapterRegistry, DestinationAdapter
from rebalance_engine.domain import Holdings
from rebalance_engine.ledger.allowlist import IndexedSet
from rebalance_engine.ledger.errors import ErrorCode, LedgerResult
from rebalance_engine.ledger.feed import ChangeFeed
from rebalance_engine.ledger.models import (
    DEFAULT_PROOF_RETENTION,
    REGISTRY_STREAM,
    AccountState,
    AccountView,
    AllowlistChange,
    LedgerEvent,
    LedgerEventType,
)
from rebalance_engine.ledger.store import LedgerStore
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


def _parse_amount(amount: Any) -> Decimal | None:
    """Coerce to a finite positive Decimal, or None if malformed."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


class Ledger:
    """
    Authorization and fund-movement state machine.

    Per account the ledger is always Idle between operations; agent and
    allowlist are orthogonal flags. A rebalance is one atomic Idle -> Idle
    transition that may fail without mutating state.
    """

    def __init__(
        self,
        adapters: AdapterRegistry,
        admin: str,
        data_dir: Path | None = None,
        feed: ChangeFeed | None = None,
        proof_retention: int = DEFAULT_PROOF_RETENTION,
    ):
        """
        Initialize ledger.

        Args:
            adapters: Destination adapters used for fund side effects
            admin: Address allowed to vet destinations
            data_dir: Directory for the event log and snapshot (None = memory only)
            feed: Change feed to publish events on
            proof_retention: Rebalance events kept per account for move proof
                replay and recovery lookups (oldest dropped first)
        """
        self._adapters = adapters
        self._admin = admin
        self._store = LedgerStore(data_dir)
        self._feed = feed or ChangeFeed()
        self._proof_retention = proof_retention

        self._accounts: dict[str, AccountState] = {}
        self._registry = IndexedSet()
        self._registry_sequence = 0
        self._offset = 0

        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

        self._load()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def head_offset(self) -> int:
        return self._offset

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        snapshot = self._store.load_state()
        if snapshot is not None:
            self._offset = snapshot.get("offset", 0)
            self._registry = IndexedSet(snapshot.get("registry", []))
            self._registry_sequence = snapshot.get("registry_sequence", 0)
            self._accounts = {
                account: AccountState.from_dict(account, data, self._proof_retention)
                for account, data in snapshot.get("accounts", {}).items()
            }

        events = self._store.load_events()
        replayed = 0
        for event in events:
            if event.offset > self._offset:
                self._apply(event)
                replayed += 1
        self._feed.seed(events)

        if snapshot is not None or events:
            logger.info(
                "Ledger loaded: %d accounts, %d registered destinations, offset %d "
                "(%d events replayed past snapshot)",
                len(self._accounts),
                len(self._registry),
                self._offset,
                replayed,
            )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "offset": self._offset,
            "registry": self._registry.members(),
            "registry_sequence": self._registry_sequence,
            "accounts": {a: s.to_dict() for a, s in self._accounts.items()},
        }

    def _apply(self, event: LedgerEvent) -> None:
        """Apply an event's post-state to in-memory state."""
        if event.account == REGISTRY_STREAM:
            destination = event.payload["destination"]
            if event.payload["registered"]:
                self._registry.add(destination)
            else:
                self._registry.remove(destination)
            self._registry_sequence = event.sequence
        else:
            state = self._accounts.get(event.account)
            if state is None:
                state = AccountState(account=event.account, proof_retention=self._proof_retention)
                self._accounts[event.account] = state
            state.apply(event)
        self._offset = event.offset

    def _commit(
        self,
        account: str,
        event_type: LedgerEventType,
        payload: dict[str, Any],
    ) -> LedgerEvent:
        """Durably record an event, apply it, and publish it."""
        if account == REGISTRY_STREAM:
            sequence = self._registry_sequence + 1
        else:
            state = self._accounts.get(account)
            sequence = (state.sequence if state else 0) + 1

        event = LedgerEvent(
            type=event_type,
            account=account,
            payload=payload,
            sequence=sequence,
            offset=self._offset + 1,
        )
        self._store.append_event(event)
        self._apply(event)
        self._store.save_state(self._snapshot())
        self._feed.publish(event)
        logger.debug(
            "Ledger event %s account=%s seq=%d offset=%d",
            event_type.value,
            account,
            event.sequence,
            event.offset,
        )
        return event

    def _lock_for(self, account: str) -> asyncio.Lock:
        lock = self._locks.get(account)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account] = lock
        return lock

    def _adapter_for(self, destination: str) -> DestinationAdapter | None:
        return self._adapters.get(destination)

    # =========================================================================
    # Principal operations
    # =========================================================================

    async def deposit(self, account: str, amount: Any, caller: str) -> LedgerResult[LedgerEvent]:
        """Credit the idle balance. Creates the account on first deposit."""
        value = _parse_amount(amount)
        if value is None:
            return LedgerResult.failure(ErrorCode.INVALID_AMOUNT, f"Invalid amount: {amount!r}")
        if caller != account:
            return LedgerResult.failure(
                ErrorCode.NOT_AUTHORIZED, "Deposits are credited to the caller's own account"
            )

        async with self._lock_for(account):
            state = self._accounts.get(account) or AccountState(account=account)
            payload = state.holdings_payload(state.balance + value, state.positions)
            payload["amount"] = str(value)
            event = self._commit(account, LedgerEventType.DEPOSITED, payload)

        logger.info("Deposit %s to %s", value, account)
        return LedgerResult.success(event)

    async def withdraw(
        self,
        account: str,
        amount: Any,
        caller: str,
        source: str | None = None,
    ) -> LedgerResult[LedgerEvent]:
        """
        Pay funds out to the principal, from the idle balance or a destination.

        Only the principal may withdraw, never the delegate.
        """
        value = _parse_amount(amount)
        if value is None:
            return LedgerResult.failure(ErrorCode.INVALID_AMOUNT, f"Invalid amount: {amount!r}")
        if caller != account:
            return LedgerResult.failure(
                ErrorCode.NOT_AUTHORIZED, "Only the account principal may withdraw"
            )

        async with self._lock_for(account):
            state = self._accounts.get(account)
            available = ZERO if state is None else (
                state.balance if source is None else state.positions.get(source, ZERO)
            )
            if state is None or value > available:
                return LedgerResult.failure(
                    ErrorCode.INSUFFICIENT_FUNDS,
                    f"Requested {value}, available {available}",
                )

            balance = state.balance
            positions = dict(state.positions)
            if source is None:
                balance -= value
            else:
                adapter = self._adapter_for(source)
                if adapter is None:
                    return LedgerResult.failure(
                        ErrorCode.ADAPTER_UNAVAILABLE, f"No adapter for {source}"
                    )
                try:
                    await adapter.withdraw(value)
                except AdapterError as e:
                    logger.warning("Withdrawal from %s failed for %s: %s", source, account, e)
                    return LedgerResult.failure(ErrorCode.ADAPTER_UNAVAILABLE, str(e))
                positions[source] = positions[source] - value

            payload = state.holdings_payload(balance, positions)
            payload.update({"amount": str(value), "source": source})
            event = self._commit(account, LedgerEventType.WITHDRAWN, payload)

        logger.info("Withdrawal %s from %s (source=%s)", value, account, source or "pool")
        return LedgerResult.success(event)

    async def set_agent(
        self,
        account: str,
        delegate: str | None,
        caller: str,
    ) -> LedgerResult[LedgerEvent]:
        """Replace the account's delegate. None revokes the grant."""
        if caller != account:
            return LedgerResult.failure(
                ErrorCode.NOT_AUTHORIZED, "Only the account principal may set the agent"
            )

        async with self._lock_for(account):
            event = self._commit(account, LedgerEventType.AGENT_SET, {"agent": delegate})

        if delegate is None:
            logger.warning("Agent grant revoked for %s", account)
        else:
            logger.info("Agent for %s set to %s", account, delegate)
        return LedgerResult.success(event)

    async def set_allowlist(
        self,
        account: str,
        destination: str,
        enabled: bool,
        caller: str,
    ) -> LedgerResult[LedgerEvent | None]:
        """Enable or disable one destination for the account's delegate."""
        return await self.set_allowlist_batch(
            account,
            [AllowlistChange(destination=destination, enabled=enabled)],
            caller,
        )

    async def set_allowlist_batch(
        self,
        account: str,
        changes: list[AllowlistChange],
        caller: str,
    ) -> LedgerResult[LedgerEvent | None]:
        """
        Apply several allowlist changes all-or-nothing.

        Returns a success with no event when every change is already in effect.
        """
        if caller != account:
            return LedgerResult.failure(
                ErrorCode.NOT_AUTHORIZED, "Only the account principal may change the allowlist"
            )

        async with self._lock_for(account):
            state = self._accounts.get(account) or AccountState(account=account)
            allowlist = state.allowlist.copy()
            applied: list[dict[str, Any]] = []

            for change in changes:
                if change.enabled:
                    if change.destination not in self._registry:
                        return LedgerResult.failure(
                            ErrorCode.DESTINATION_NOT_REGISTERED,
                            f"{change.destination} is not in the protocol registry",
                        )
                    if allowlist.add(change.destination):
                        applied.append(change.model_dump())
                else:
                    if state.positions.get(change.destination, ZERO) > 0:
                        return LedgerResult.failure(
                            ErrorCode.DESTINATION_IN_USE,
                            f"{change.destination} holds {state.positions[change.destination]}; "
                            "withdraw before removing it",
                        )
                    if allowlist.remove(change.destination):
                        applied.append(change.model_dump())

            if not applied:
                return LedgerResult.success(None)

            event = self._commit(
                account,
                LedgerEventType.ALLOWLIST_CHANGED,
                {"changes": applied, "allowlist": allowlist.members()},
            )

        logger.info("Allowlist for %s changed: %s", account, applied)
        return LedgerResult.success(event)

    # =========================================================================
    # Delegate operation
    # =========================================================================

    async def rebalance(
        self,
        account: str,
        from_destination: str | None,
        to_destination: str | None,
        amount: Any,
        move_proof: str,
        caller: str,
    ) -> LedgerResult[LedgerEvent]:
        """
        Move funds between the idle pool and allowlisted destinations.

        Authorization is checked against current state inside the account
        lock. The source side effect runs first; if the target side fails the
        source is compensated and the book is untouched. A move_proof that was
        already applied returns the original event without moving funds again.
        """
        value = _parse_amount(amount)
        if value is None:
            return LedgerResult.failure(ErrorCode.INVALID_AMOUNT, f"Invalid amount: {amount!r}")
        if from_destination == to_destination:
            return LedgerResult.failure(
                ErrorCode.INVALID_MOVE, "Source and target must differ"
            )
        if not move_proof:
            return LedgerResult.failure(ErrorCode.INVALID_MOVE, "A move proof is required")

        async with self._lock_for(account):
            state = self._accounts.get(account)
            if state is None:
                return LedgerResult.failure(ErrorCode.NOT_AUTHORIZED, f"Unknown account {account}")

            prior = state.applied_proofs.get(move_proof)
            if prior is not None:
                if prior["payload"].get("caller") != caller:
                    return LedgerResult.failure(
                        ErrorCode.NOT_AUTHORIZED, "Move proof belongs to another caller"
                    )
                logger.info("Replayed move proof %s for %s", move_proof, account)
                return LedgerResult.success(LedgerEvent.model_validate(prior))

            if state.agent is None or caller != state.agent:
                return LedgerResult.failure(
                    ErrorCode.NOT_AUTHORIZED, f"{caller} is not the delegate of {account}"
                )
            for destination in (from_destination, to_destination):
                if destination is not None and destination not in state.allowlist:
                    return LedgerResult.failure(
                        ErrorCode.DESTINATION_NOT_APPROVED,
                        f"{destination} is not in the allowlist of {account}",
                    )
            if to_destination is not None and to_destination not in self._registry:
                return LedgerResult.failure(
                    ErrorCode.DESTINATION_NOT_REGISTERED,
                    f"{to_destination} is no longer in the protocol registry",
                )

            available = (
                state.balance
                if from_destination is None
                else state.positions.get(from_destination, ZERO)
            )
            if value > available:
                return LedgerResult.failure(
                    ErrorCode.INSUFFICIENT_FUNDS,
                    f"Requested {value}, available {available} at {from_destination or 'pool'}",
                )

            failure = await self._move_funds(from_destination, to_destination, value)
            if failure is not None:
                code, message = failure
                if code == ErrorCode.COMPENSATION_FAILED:
                    logger.critical("Rebalance for %s left funds in transit: %s", account, message)
                else:
                    logger.warning("Rebalance for %s rolled back: %s", account, message)
                return LedgerResult.failure(code, message)

            balance = state.balance
            positions = dict(state.positions)
            if from_destination is None:
                balance -= value
            else:
                positions[from_destination] -= value
            if to_destination is None:
                balance += value
            else:
                positions[to_destination] = positions.get(to_destination, ZERO) + value

            payload = state.holdings_payload(balance, positions)
            payload.update({
                "from": from_destination,
                "to": to_destination,
                "amount": str(value),
                "move_proof": move_proof,
                "caller": caller,
            })
            event = self._commit(account, LedgerEventType.REBALANCED, payload)

        logger.info(
            "Rebalanced %s for %s: %s -> %s (proof %s)",
            value,
            account,
            from_destination or "pool",
            to_destination or "pool",
            move_proof,
        )
        return LedgerResult.success(event)

    async def _move_funds(
        self,
        from_destination: str | None,
        to_destination: str | None,
        amount: Decimal,
    ) -> tuple[ErrorCode, str] | None:
        """
        Run withdrawal then deposit side effects.

        Returns None on success, ADAPTER_UNAVAILABLE when nothing moved, or
        COMPENSATION_FAILED when the source was withdrawn from and could not
        be restored.
        """
        source = self._adapter_for(from_destination) if from_destination else None
        target = self._adapter_for(to_destination) if to_destination else None
        if from_destination and source is None:
            return ErrorCode.ADAPTER_UNAVAILABLE, f"No adapter for {from_destination}"
        if to_destination and target is None:
            return ErrorCode.ADAPTER_UNAVAILABLE, f"No adapter for {to_destination}"

        if source is not None:
            try:
                await source.withdraw(amount)
            except AdapterError as e:
                return ErrorCode.ADAPTER_UNAVAILABLE, str(e)

        if target is not None:
            try:
                await target.deposit(amount)
            except AdapterError as e:
                if source is not None and not await self._compensate(source, amount):
                    return (
                        ErrorCode.COMPENSATION_FAILED,
                        f"{amount} withdrawn from {source.destination} and not restored after: {e}",
                    )
                return ErrorCode.ADAPTER_UNAVAILABLE, str(e)

        return None

    async def _compensate(self, source: DestinationAdapter, amount: Decimal) -> bool:
        try:
            await source.deposit(amount)
        except AdapterError as e:
            # Book still shows the funds at the source; operator must restore them
            logger.critical(
                "Compensating deposit of %s to %s failed: %s",
                amount,
                source.destination,
                e,
            )
            return False
        return True

    # =========================================================================
    # Administrator operations
    # =========================================================================

    async def register_destination(self, destination: str, caller: str) -> LedgerResult[LedgerEvent | None]:
        """Add a vetted destination to the protocol registry."""
        return await self._set_registered(destination, True, caller)

    async def deregister_destination(self, destination: str, caller: str) -> LedgerResult[LedgerEvent | None]:
        """
        Remove a destination from the registry.

        Existing allowlist entries stay, so funds can still be moved out; no
        new funds may be moved in.
        """
        return await self._set_registered(destination, False, caller)

    async def _set_registered(
        self,
        destination: str,
        registered: bool,
        caller: str,
    ) -> LedgerResult[LedgerEvent | None]:
        if caller != self._admin:
            return LedgerResult.failure(
                ErrorCode.NOT_AUTHORIZED, "Only the administrator may change the registry"
            )
        async with self._registry_lock:
            if (destination in self._registry) == registered:
                return LedgerResult.success(None)
            event = self._commit(
                REGISTRY_STREAM,
                LedgerEventType.REGISTRY_CHANGED,
                {"destination": destination, "registered": registered},
            )
        logger.info(
            "Destination %s %s",
            destination,
            "registered" if registered else "deregistered",
        )
        return LedgerResult.success(event)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_allowlist(self, account: str) -> list[str]:
        state = self._accounts.get(account)
        return state.allowlist.members() if state else []

    async def get_agent(self, account: str) -> str | None:
        state = self._accounts.get(account)
        return state.agent if state else None

    async def get_balances(self, account: str) -> Holdings:
        state = self._accounts.get(account)
        return state.holdings() if state else Holdings()

    async def get_account(self, account: str) -> AccountView:
        """Consistent read of agent, allowlist, holdings and sequence."""
        state = self._accounts.get(account)
        return state.view() if state else AccountView(account=account)

    async def list_accounts(self, predicate: Callable[[AccountView], bool] | None = None) -> list[str]:
        views = [s.view() for s in self._accounts.values()]
        return sorted(v.account for v in views if predicate is None or predicate(v))

    async def find_move(self, account: str, move_proof: str) -> LedgerEvent | None:
        """The rebalance event applied under move_proof, if any."""
        state = self._accounts.get(account)
        if state is None or move_proof not in state.applied_proofs:
            return None
        return LedgerEvent.model_validate(state.applied_proofs[move_proof])

    def is_registered(self, destination: str) -> bool:
        return destination in self._registry

    def registry(self) -> list[str]:
        return self._registry.members()
