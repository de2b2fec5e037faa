"""
Atomic Swap Coordinator.

Drives the HTLC swap state machine across two ledgers:

    pending -> locking -> locked -> completing -> completed
                  |          |           |
                  v          |           v
               expired ------+------> failed
                  |          |
                  v          v
             rolling_back -> rolled_back

1. execute_atomic_swap() checks authority for both assets, generates the
   secret, creates the record and dispatches both locks in the background.
2. Both legs are polled until each meets its chain's confirmation count,
   then the swap becomes `locked`.
3. complete_atomic_swap() reveals the secret to both claim calls.
4. Past the deadlines the TimeoutScheduler unwinds through refunds.

The coordinator is the only writer of SwapRecords. Every transition happens
under the swap's registry lock and is checked against SWAP_TRANSITIONS, so of
the two racing exits from `locked` (complete vs rollback) only one wins.
"""

import asyncio
import logging
import math
import time
import uuid
from typing import Optional, Dict, List, Any, Union

from ..authority import AuthorityRegistry
from ..chains.base import LedgerAdapter
from ..config import CoordinatorConfig
from ..confirmations import ConfirmationLedger
from ..core import (
    SwapState, SwapRequest, SwapRecord, SwapLeg, LegRole, RollbackInfo,
    ConfirmationStatus, TERMINAL_STATES, SWAP_PROGRESS,
    can_transition, generate_secret, verify_preimage, validate_timelock_cascade,
)
from ..errors import (
    RouterError, UnauthorizedRouter, UnsupportedAsset, UnsupportedChain,
    InvalidSwapRequest, InvalidSwapState, SwapExpired, AlreadyFinalized,
    SwapNotReady, CancellationRejected, InvalidSecret, RollbackPartialFailure,
    LedgerError, LockFailed, ClaimFailed, RefundFailed,
    AlreadyTerminal, ConfirmationLimitExceeded,
)
from .registry import SwapRegistry

log = logging.getLogger(__name__)

ROLLBACK_ELIGIBLE = (SwapState.LOCKING, SwapState.LOCKED, SwapState.EXPIRED)


class AtomicSwapCoordinator:
    """
    Orchestrates HTLC swaps.

    Args:
        adapters: chain id -> LedgerAdapter
        authority: asset authority gate
        confirmations: dual confirmation ledger
        registry: swap record owner
        config: timing and retry settings
        store: optional StateStore, written after every transition
    """

    def __init__(self, adapters: Dict[str, LedgerAdapter], authority: AuthorityRegistry,
                 confirmations: ConfirmationLedger, registry: SwapRegistry,
                 config: Optional[CoordinatorConfig] = None, store=None):
        self.adapters = adapters
        self.authority = authority
        self.confirmations = confirmations
        self.registry = registry
        self.config = config or CoordinatorConfig()
        self.store = store

        self._tasks: set = set()
        self._lock_phase: Dict[str, asyncio.Event] = {}
        self._completions: Dict[str, asyncio.Task] = {}
        self._rollbacks: Dict[str, asyncio.Task] = {}
        self._writer: Optional[asyncio.Task] = None
        self._dirty = False

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _persist(self):
        """Queue a state snapshot. Writes are coalesced and run off the loop."""
        if self.store is None:
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(
                self._write_state(), name="persist-state")

    async def _write_state(self):
        while self._dirty:
            self._dirty = False
            state = self.store.snapshot(self.registry, self.authority, self.confirmations)
            try:
                await asyncio.to_thread(self.store.write, state)
            except OSError as e:
                log.error(f"Failed to persist router state: {e}")

    async def flush(self):
        """Wait until every queued snapshot is on disk."""
        while self._writer is not None and not self._writer.done():
            await asyncio.shield(self._writer)

    def _transition(self, record: SwapRecord, new_state: SwapState, message: str, **metadata):
        """Move a record to new_state. Caller holds the swap lock."""
        old_state = record.state
        if not can_transition(old_state, new_state):
            raise InvalidSwapState(
                f"Swap {record.swap_id}: illegal transition {old_state.value} -> {new_state.value}",
                swap_id=record.swap_id,
            )
        record.state = new_state
        record.add_event("state_change", message, from_state=old_state,
                         to_state=new_state, **metadata)
        log.info(f"Swap {record.swap_id}: {old_state.value} -> {new_state.value} ({message})")

        if new_state in TERMINAL_STATES:
            self._release(record)
        self._persist()

    def _release(self, record: SwapRecord):
        self._lock_phase.pop(record.swap_id, None)
        for leg in record.legs():
            self.authority.remove_reference(leg.asset_id, record.swap_id)

    def _fail(self, record: SwapRecord, reason: str, manual: bool = False, **metadata):
        """Move to failed if the state machine still allows it."""
        if record.state in TERMINAL_STATES:
            return
        record.failure_reason = reason
        if manual:
            record.manual_intervention = True
        self._transition(record, SwapState.FAILED, reason,
                         manual_intervention=record.manual_intervention, **metadata)

    def _adapter(self, chain: str) -> LedgerAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise UnsupportedChain(f"Chain {chain} is not configured", chain=chain)
        return adapter

    async def _call(self, error_cls, op: str, chain: str, fn, *args,
                    deadline: Optional[float] = None, retries: Optional[int] = None):
        """Call an adapter method with bounded exponential backoff.

        deadline is a time.monotonic() instant; no attempt starts after it and
        no attempt runs past it. Unrecoverable errors are raised immediately.
        """
        cfg = self.config
        retries = cfg.max_retries if retries is None else retries
        attempt = 0
        while True:
            timeout = cfg.call_timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise error_cls(f"{op} deadline passed", chain=chain, recoverable=False)
                timeout = min(timeout, remaining)
            try:
                return await asyncio.wait_for(fn(*args), timeout=timeout)
            except asyncio.TimeoutError:
                error = error_cls(f"{op} timed out after {timeout:.1f}s", chain=chain,
                                  recoverable=True)
            except LedgerError as e:
                error = e
            if not error.recoverable or attempt >= retries:
                raise error

            delay = min(cfg.backoff_base_seconds * (2 ** attempt), cfg.backoff_max_seconds)
            if deadline is not None:
                delay = min(delay, max(0.0, deadline - time.monotonic()))
            attempt += 1
            log.warning(f"[{chain}] {op} failed ({error}), retry {attempt}/{retries} "
                        f"in {delay:.2f}s")
            await asyncio.sleep(delay)

    def _record_confirmation(self, record: SwapRecord, leg: SwapLeg,
                             status: ConfirmationStatus, ref: Optional[str] = None,
                             reason: Optional[str] = None):
        metadata = {
            "swap_id": record.swap_id,
            "from_account": leg.router_id,
            "to_account": leg.recipient,
            "asset": leg.asset_id,
            "chain": leg.chain,
            "amount": str(leg.amount),
        }
        if ref:
            metadata["ledger_tx"] = ref
        if reason:
            metadata["reason"] = reason
        try:
            confirmation = self.confirmations.record(record.swap_id, leg.router_id,
                                                     status, metadata)
        except (AlreadyTerminal, ConfirmationLimitExceeded) as e:
            log.warning(f"Swap {record.swap_id}: confirmation for {leg.router_id} "
                        f"not recorded: {e}")
            return
        leg.confirmation_id = confirmation.confirmation_id
        view = self.confirmations.reconcile(record.swap_id)
        log.debug(f"Swap {record.swap_id}: dual confirmation {view.status.value}")

    # =========================================================================
    # Execute
    # =========================================================================

    async def execute_atomic_swap(self, request: SwapRequest) -> Dict[str, Any]:
        """
        Validate and start a swap.

        Returns as soon as locks are dispatched:
            {"swap_id", "status": "locking", "secret_hash", "deadline", "claim_deadline"}

        Raises:
            InvalidSwapRequest, UnsupportedChain, UnsupportedAsset,
            UnauthorizedRouter (nothing is created or written on rejection)
        """
        request.validate()

        legs_in = (
            (LegRole.INITIATOR, request.initiator_id, request.initiator_asset),
            (LegRole.RESPONDER, request.responder_id, request.responder_asset),
        )
        for _, _, asset in legs_in:
            self._adapter(asset.chain)
            if asset.asset_id not in self.authority:
                raise UnsupportedAsset(f"Asset {asset.asset_id} is not registered",
                                       asset_id=asset.asset_id)
        for _, router_id, asset in legs_in:
            validation = self.authority.validate_authority(asset.asset_id, router_id)
            if not validation.authorized:
                log.warning(f"Router {router_id} rejected for {asset.asset_id}: "
                            f"{validation.reason}")
                raise UnauthorizedRouter(
                    f"Router {router_id} cannot transfer {asset.asset_id}: {validation.reason}",
                    router_id=router_id, asset_id=asset.asset_id, reason=validation.reason,
                )

        secret, secret_hash = generate_secret()
        now = time.time()
        deadline = now + request.timeout_seconds
        claim_deadline = deadline + self.config.claim_window_seconds
        responder_timelock = math.ceil(claim_deadline)
        initiator_timelock = math.ceil(claim_deadline + self.config.timelock_gap_seconds)
        try:
            validate_timelock_cascade(initiator_timelock, responder_timelock)
        except ValueError as e:
            raise InvalidSwapRequest(str(e))

        default_conf = self.config.default_required_confirmations
        legs = {}
        for role, router_id, asset in legs_in:
            legs[role] = SwapLeg(
                role=role,
                chain=asset.chain,
                asset_id=asset.asset_id,
                amount=asset.amount,
                recipient=asset.recipient,
                router_id=router_id,
                required_confirmations=request.confirmations_for(asset.chain, default_conf),
                timelock=initiator_timelock if role == LegRole.INITIATOR else responder_timelock,
            )

        swap_id = f"swap_{uuid.uuid4().hex[:12]}"
        record = SwapRecord(
            swap_id=swap_id,
            request=request,
            secret_hash=secret_hash,
            secret=secret,
            state=SwapState.PENDING,
            initiator=legs[LegRole.INITIATOR],
            responder=legs[LegRole.RESPONDER],
            created_at=now,
            deadline=deadline,
            claim_deadline=claim_deadline,
        )
        record.add_event("created", "Atomic swap created",
                         to_state=SwapState.PENDING, secret_hash=secret_hash)
        self.registry.create(record)
        for leg in record.legs():
            self.authority.add_reference(leg.asset_id, swap_id)

        log.info(f"Swap {swap_id} created: {request.initiator_asset.amount} "
                 f"{request.initiator_asset.asset_id}@{request.initiator_asset.chain} <-> "
                 f"{request.responder_asset.amount} "
                 f"{request.responder_asset.asset_id}@{request.responder_asset.chain} "
                 f"(H={secret_hash[:16]}...)")

        self._lock_phase[swap_id] = asyncio.Event()
        async with self.registry.locked(swap_id) as record:
            self._transition(record, SwapState.LOCKING, "Dispatching locks on both chains")
        self._spawn(self._drive(swap_id), name=f"drive-{swap_id}")

        return {
            "swap_id": swap_id,
            "status": SwapState.LOCKING.value,
            "secret_hash": secret_hash,
            "deadline": deadline,
            "claim_deadline": claim_deadline,
        }

    async def _drive(self, swap_id: str):
        """Background driver: locks, confirmations, optional auto-complete."""
        try:
            try:
                all_locked = await self._lock_legs(swap_id)
            finally:
                phase = self._lock_phase.get(swap_id)
                if phase is not None:
                    phase.set()
            if not all_locked:
                return
            if await self._await_confirmations(swap_id) and self.config.auto_complete:
                await self.complete_atomic_swap(swap_id, completion_ref="auto")
        except RouterError as e:
            log.warning(f"Swap {swap_id}: driver stopped: {e}")
        except Exception as e:
            log.error(f"Swap {swap_id}: driver crashed: {e}")
            async with self.registry.locked(swap_id) as record:
                self._fail(record, f"Driver error: {e}", manual=True)

    async def _lock_leg(self, swap_id: str, leg: SwapLeg, secret_hash: str,
                        deadline: float) -> str:
        adapter = self._adapter(leg.chain)
        lock_ref = await self._call(LockFailed, "lock", leg.chain, adapter.lock,
                                    secret_hash, leg.recipient, leg.amount,
                                    int(leg.timelock), leg.asset_id, deadline=deadline)
        async with self.registry.locked(swap_id) as record:
            leg.lock_ref = lock_ref
            record.add_event("lock_submitted", f"Lock submitted on {leg.chain}",
                             chain=leg.chain, ref=lock_ref, role=leg.role.value)
            self._record_confirmation(record, leg, ConfirmationStatus.PENDING, ref=lock_ref)
            self._persist()
        log.info(f"Swap {swap_id}: {leg.role.value} leg lock on {leg.chain}: {lock_ref}")
        return lock_ref

    async def _lock_legs(self, swap_id: str) -> bool:
        record = self.registry.get(swap_id)
        results = await asyncio.gather(
            *(self._lock_leg(swap_id, leg, record.secret_hash, record.deadline_monotonic)
              for leg in record.legs()),
            return_exceptions=True,
        )
        errors = [(leg, r) for leg, r in zip(record.legs(), results)
                  if isinstance(r, BaseException)]
        if not errors:
            return True

        async with self.registry.locked(swap_id) as record:
            for leg, error in errors:
                leg.error = str(error)
                record.add_event("lock_failed", f"Lock failed on {leg.chain}: {error}",
                                 chain=leg.chain, role=leg.role.value)
                log.warning(f"Swap {swap_id}: lock failed on {leg.chain}: {error}")
            if record.state != SwapState.LOCKING:
                return False

            reason = "; ".join(f"{leg.chain}: {error}" for leg, error in errors)
            if not any(leg.lock_ref for leg in record.legs()):
                self._fail(record, f"Lock failed: {reason}")
                return False

            self._transition(record, SwapState.EXPIRED, f"Lock failed, unwinding: {reason}")
            if record.request.auto_rollback:
                self._begin_rollback(record, f"Lock failed: {reason}")
        return False

    async def _await_confirmations(self, swap_id: str) -> bool:
        """Poll both legs until they meet their confirmation counts."""
        poll = self.config.confirmation_poll_interval
        while True:
            record = self.registry.get(swap_id)
            if record.state != SwapState.LOCKING:
                return False
            if time.monotonic() >= record.deadline_monotonic:
                # The scheduler owns the expiry transition
                return False

            counts = {}
            for leg in record.legs():
                if leg.locked or not leg.lock_ref:
                    continue
                adapter = self._adapter(leg.chain)
                try:
                    counts[leg.role] = await self._call(
                        LedgerError, "get_confirmation_count", leg.chain,
                        adapter.get_confirmation_count, leg.lock_ref,
                        deadline=record.deadline_monotonic,
                    )
                except LedgerError as e:
                    log.warning(f"Swap {swap_id}: confirmation read on {leg.chain} failed: {e}")

            async with self.registry.locked(swap_id) as record:
                if record.state != SwapState.LOCKING:
                    return False
                for role, count in counts.items():
                    leg = record.leg(role)
                    leg.lock_confirmations = max(leg.lock_confirmations, count)
                    if not leg.locked and leg.lock_confirmations >= leg.required_confirmations:
                        leg.locked = True
                        leg.locked_at = time.time()
                        record.add_event(
                            "leg_locked",
                            f"{leg.chain} lock confirmed "
                            f"({leg.lock_confirmations}/{leg.required_confirmations})",
                            chain=leg.chain, ref=leg.lock_ref, role=leg.role.value,
                        )
                        log.info(f"Swap {swap_id}: {leg.role.value} leg locked on {leg.chain}")

                if all(leg.locked and leg.lock_ref for leg in record.legs()):
                    if time.monotonic() < record.deadline_monotonic:
                        self._transition(record, SwapState.LOCKED,
                                         "Both legs locked and confirmed")
                        return True
                    return False

            await asyncio.sleep(poll)

    # =========================================================================
    # Complete
    # =========================================================================

    async def complete_atomic_swap(self, swap_id: str, completion_ref: Optional[str] = None,
                                   secret: Optional[str] = None) -> Dict[str, Any]:
        """
        Reveal the secret to both legs' claim calls.

        Only valid from `locked`. A second call on a completed swap returns the
        stored result. A supplied secret must hash to the swap's secret hash.

        Raises:
            SwapNotFound, InvalidSecret, AlreadyFinalized, SwapExpired,
            SwapNotReady, ClaimFailed
        """
        record = self.registry.get(swap_id)
        if secret is not None and not verify_preimage(secret, record.secret_hash):
            raise InvalidSecret(f"Secret does not match hashlock of {swap_id}",
                                swap_id=swap_id)
        if record.state == SwapState.COMPLETED:
            return dict(record.result)

        task = self._completions.get(swap_id)
        if task is None:
            async with self.registry.locked(swap_id) as record:
                task = self._completions.get(swap_id)
                if task is None:
                    if record.state == SwapState.COMPLETED:
                        return dict(record.result)
                    self._check_completable(record)

                    revealed = secret or record.secret
                    if revealed is None:
                        raise InvalidSecret(
                            f"Secret for {swap_id} is not held by this router; supply the preimage",
                            swap_id=swap_id,
                        )
                    record.completion_ref = completion_ref
                    record.revealed_secret = revealed
                    record.secret = None
                    self._transition(record, SwapState.COMPLETING, "Secret revealed, claiming",
                                     completion_ref=completion_ref)
                    task = self._spawn(self._run_completion(swap_id, revealed),
                                       name=f"complete-{swap_id}")
                    self._completions[swap_id] = task

        return await asyncio.shield(task)

    def _check_completable(self, record: SwapRecord):
        state = record.state
        if state in TERMINAL_STATES:
            raise AlreadyFinalized(f"Swap {record.swap_id} is already {state.value}",
                                   swap_id=record.swap_id, state=state.value)
        if state in (SwapState.EXPIRED, SwapState.ROLLING_BACK):
            raise SwapExpired(f"Swap {record.swap_id} is {state.value}",
                              swap_id=record.swap_id, state=state.value)
        if state != SwapState.LOCKED:
            raise SwapNotReady(f"Swap {record.swap_id} is {state.value}, not locked",
                               swap_id=record.swap_id, state=state.value)
        if time.monotonic() >= record.claim_deadline_monotonic:
            raise SwapExpired(f"Claim deadline for {record.swap_id} has passed",
                              swap_id=record.swap_id, state=state.value)

    async def _claim_leg(self, swap_id: str, leg: SwapLeg, secret: str, deadline: float) -> str:
        if leg.claim_ref:
            return leg.claim_ref
        adapter = self._adapter(leg.chain)
        claim_ref = await self._call(ClaimFailed, "claim", leg.chain, adapter.claim,
                                     leg.lock_ref, secret, deadline=deadline)
        async with self.registry.locked(swap_id) as record:
            leg.claim_ref = claim_ref
            record.add_event("claimed", f"Claimed on {leg.chain}", chain=leg.chain,
                             ref=claim_ref, role=leg.role.value)
            self._persist()
        log.info(f"Swap {swap_id}: {leg.role.value} leg claimed on {leg.chain}: {claim_ref}")
        return claim_ref

    async def _run_completion(self, swap_id: str, secret: str) -> Dict[str, Any]:
        try:
            record = self.registry.get(swap_id)
            results = await asyncio.gather(
                *(self._claim_leg(swap_id, leg, secret, record.claim_deadline_monotonic)
                  for leg in record.legs()),
                return_exceptions=True,
            )
            errors = [(leg, r) for leg, r in zip(record.legs(), results)
                      if isinstance(r, BaseException)]

            async with self.registry.locked(swap_id) as record:
                for leg in record.legs():
                    if leg.claim_ref:
                        self._record_confirmation(record, leg, ConfirmationStatus.CONFIRMED,
                                                  ref=leg.claim_ref)
                if errors:
                    for leg, error in errors:
                        leg.error = str(error)
                        self._record_confirmation(record, leg, ConfirmationStatus.FAILED,
                                                  reason=str(error))
                    reason = "; ".join(f"{leg.chain}: {error}" for leg, error in errors)
                    log.error(f"Swap {swap_id}: claim failed after lock, "
                              f"manual intervention required: {reason}")
                    self._fail(record, f"Claim failed: {reason}", manual=True)
                    failed_leg, first = errors[0]
                    raise ClaimFailed(
                        f"Claim failed for {swap_id}: {reason}",
                        chain=failed_leg.chain, recoverable=False,
                        swap_id=swap_id, manual_intervention=True,
                    ) from (first if isinstance(first, Exception) else None)

                record.completed_at = time.time()
                record.result = {
                    "swap_id": swap_id,
                    "status": SwapState.COMPLETED.value,
                    "completion_ref": record.completion_ref,
                    "initiator_claim_ref": record.initiator.claim_ref,
                    "responder_claim_ref": record.responder.claim_ref,
                    "completed_at": record.completed_at,
                }
                self._transition(record, SwapState.COMPLETED, "Both claims observed")
                return dict(record.result)
        finally:
            self._completions.pop(swap_id, None)

    # =========================================================================
    # Rollback
    # =========================================================================

    def _begin_rollback(self, record: SwapRecord, reason: str):
        """Start unwinding. Caller holds the swap lock."""
        if record.state == SwapState.LOCKING:
            self._transition(record, SwapState.EXPIRED, reason)
        record.rollback = RollbackInfo(reason=reason, started_at=time.time())
        self._transition(record, SwapState.ROLLING_BACK, reason)
        task = self._spawn(self._run_rollback(record.swap_id), name=f"rollback-{record.swap_id}")
        self._rollbacks[record.swap_id] = task

    async def _wait_refundable(self, swap_id: str, leg: SwapLeg):
        """Poll until the leg's timelock has passed on its ledger.

        Each failed check already carries _call's retries; after max_retries
        such failures the leg is given up as a refund failure.
        """
        adapter = self._adapter(leg.chain)
        failures = 0
        while True:
            try:
                if await self._call(LedgerError, "is_expired", leg.chain,
                                    adapter.is_expired, leg.lock_ref):
                    return
            except LedgerError as e:
                if not e.recoverable:
                    raise
                failures += 1
                if failures > self.config.max_retries:
                    raise RefundFailed(
                        f"Expiry of {leg.lock_ref} could not be read after "
                        f"{failures} attempts: {e}",
                        chain=leg.chain, recoverable=False,
                    ) from e
                log.warning(f"Swap {swap_id}: expiry check on {leg.chain} failed: {e}")
            await asyncio.sleep(self.config.confirmation_poll_interval)

    async def _refund_leg(self, swap_id: str, leg: SwapLeg) -> str:
        if leg.refund_ref:
            return leg.refund_ref
        await self._wait_refundable(swap_id, leg)
        adapter = self._adapter(leg.chain)
        refund_ref = await self._call(RefundFailed, "refund", leg.chain,
                                      adapter.refund, leg.lock_ref)
        async with self.registry.locked(swap_id) as record:
            leg.refund_ref = refund_ref
            record.add_event("refunded", f"Refunded on {leg.chain}", chain=leg.chain,
                             ref=refund_ref, role=leg.role.value)
            self._persist()
        log.info(f"Swap {swap_id}: {leg.role.value} leg refunded on {leg.chain}: {refund_ref}")
        return refund_ref

    async def _run_rollback(self, swap_id: str):
        try:
            phase = self._lock_phase.get(swap_id)
            if phase is not None:
                await phase.wait()

            record = self.registry.get(swap_id)
            legs = [leg for leg in record.legs() if leg.lock_ref]
            results = await asyncio.gather(
                *(self._refund_leg(swap_id, leg) for leg in legs),
                return_exceptions=True,
            )

            async with self.registry.locked(swap_id) as record:
                reason = record.rollback.reason if record.rollback else "rollback"
                failures = []
                for leg, result in zip(legs, results):
                    if isinstance(result, BaseException):
                        leg.error = str(result)
                        failures.append((leg, result))
                        record.add_event("refund_failed", f"Refund failed on {leg.chain}: {result}",
                                         chain=leg.chain, role=leg.role.value)
                        continue
                    if record.rollback and leg.role.value not in record.rollback.legs_unwound:
                        record.rollback.legs_unwound.append(leg.role.value)
                    self._record_confirmation(record, leg, ConfirmationStatus.ROLLED_BACK,
                                              ref=leg.refund_ref, reason=reason)

                if record.state != SwapState.ROLLING_BACK:
                    return
                if not failures:
                    if record.rollback:
                        record.rollback.completed_at = time.time()
                    record.secret = None
                    self._transition(record, SwapState.ROLLED_BACK,
                                     f"Refunds confirmed on {len(legs)} leg(s)")
                    return

                detail = "; ".join(f"{leg.chain}: {error}" for leg, error in failures)
                error = RollbackPartialFailure(
                    f"Rollback of {swap_id} incomplete: {detail}", swap_id=swap_id)
                log.error(f"{error}, manual intervention required")
                if record.rollback:
                    record.rollback.manual_intervention = True
                    record.rollback.completed_at = time.time()
                self._fail(record, str(error), manual=True, error=error.code)
        except Exception as e:
            log.error(f"Swap {swap_id}: rollback crashed: {e}")
            async with self.registry.locked(swap_id) as record:
                self._fail(record, f"Rollback error: {e}", manual=True)
        finally:
            self._rollbacks.pop(swap_id, None)
            self._lock_phase.pop(swap_id, None)

    async def handle_deadline(self, swap_id: str, observed: SwapState,
                              now: Optional[float] = None) -> bool:
        """Act on a swap the scheduler saw past a deadline.

        `observed` is the state seen during the scan; nothing happens if the
        swap has moved since. Returns True if a transition was made.
        """
        now = time.monotonic() if now is None else now
        async with self.registry.locked(swap_id) as record:
            if record.state != observed:
                return False
            auto = record.request.auto_rollback

            if observed == SwapState.LOCKING:
                if now < record.deadline_monotonic:
                    return False
                if auto:
                    self._begin_rollback(record, "Lock deadline passed")
                else:
                    self._transition(record, SwapState.EXPIRED,
                                     "Lock deadline passed, awaiting operator rollback")
                return True

            if observed == SwapState.LOCKED:
                if not auto or now < record.claim_deadline_monotonic:
                    return False
                self._begin_rollback(record, "Claim deadline passed")
                return True

            if observed == SwapState.EXPIRED:
                if not auto or swap_id in self._rollbacks:
                    return False
                self._begin_rollback(record, "Swap expired")
                return True
        return False

    async def rollback_atomic_swap(self, swap_id: str,
                                   reason: str = "Operator rollback") -> Dict[str, Any]:
        """Operator-triggered unwind of a locking, locked or expired swap."""
        async with self.registry.locked(swap_id) as record:
            state = record.state
            if state in TERMINAL_STATES:
                raise AlreadyFinalized(f"Swap {swap_id} is already {state.value}",
                                       swap_id=swap_id, state=state.value)
            if state == SwapState.COMPLETING:
                raise InvalidSwapState(f"Swap {swap_id} is claiming, cannot roll back",
                                       swap_id=swap_id, state=state.value)
            if state == SwapState.PENDING:
                raise SwapNotReady(f"Swap {swap_id} has no locks to roll back",
                                   swap_id=swap_id, state=state.value)
            if state != SwapState.ROLLING_BACK:
                self._begin_rollback(record, reason)
        return self.get_atomic_swap_status(swap_id)

    async def cancel_atomic_swap(self, swap_id: str,
                                 reason: str = "Cancelled by caller") -> Dict[str, Any]:
        """Cancel a swap before any leg has confirmed its lock.

        Locks already submitted are refunded through the rollback path.
        """
        async with self.registry.locked(swap_id) as record:
            state = record.state
            if state in TERMINAL_STATES:
                raise AlreadyFinalized(f"Swap {swap_id} is already {state.value}",
                                       swap_id=swap_id, state=state.value)
            if state == SwapState.PENDING:
                self._fail(record, f"Cancelled: {reason}")
            elif state == SwapState.LOCKING and not any(leg.locked for leg in record.legs()):
                self._begin_rollback(record, f"Cancelled: {reason}")
            else:
                raise CancellationRejected(
                    f"Swap {swap_id} is {state.value} with a confirmed lock; use rollback",
                    swap_id=swap_id, state=state.value,
                )
        return self.get_atomic_swap_status(swap_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_atomic_swap_status(self, swap_id: str) -> Dict[str, Any]:
        """Read-only status document. Raises SwapNotFound."""
        record = self.registry.get(swap_id)
        state = record.state
        progress, description = SWAP_PROGRESS[state]
        now = time.monotonic()

        if state in (SwapState.PENDING, SwapState.LOCKING):
            time_remaining = max(0.0, record.deadline_monotonic - now)
        elif state in (SwapState.LOCKED, SwapState.COMPLETING):
            time_remaining = max(0.0, record.claim_deadline_monotonic - now)
        else:
            time_remaining = 0.0

        return {
            "swap_id": swap_id,
            "status": state.value,
            "progress": progress,
            "description": description,
            "secret_hash": record.secret_hash,
            "initiator_id": record.request.initiator_id,
            "responder_id": record.request.responder_id,
            "legs": {
                "initiator": record.initiator.to_dict(),
                "responder": record.responder.to_dict(),
            },
            "created_at": record.created_at,
            "deadline": record.deadline,
            "claim_deadline": record.claim_deadline,
            "time_remaining": time_remaining,
            "auto_rollback": record.request.auto_rollback,
            "rollback_eligible": state in ROLLBACK_ELIGIBLE,
            "cancellable": state == SwapState.PENDING or (
                state == SwapState.LOCKING and not any(leg.locked for leg in record.legs())),
            "rollback": record.rollback.to_dict() if record.rollback else None,
            "completion_ref": record.completion_ref,
            "completed_at": record.completed_at,
            "result": dict(record.result) if record.result else None,
            "failure_reason": record.failure_reason,
            "manual_intervention": record.manual_intervention,
            "confirmation": self.confirmations.reconcile(swap_id).to_dict(),
            "events": [e.to_dict() for e in record.events],
        }

    def list_swaps(self, state: Optional[Union[SwapState, str]] = None) -> List[Dict[str, Any]]:
        if isinstance(state, str):
            state = SwapState(state)
        return [
            {
                "swap_id": r.swap_id,
                "status": r.state.value,
                "progress": SWAP_PROGRESS[r.state][0],
                "initiator_id": r.request.initiator_id,
                "responder_id": r.request.responder_id,
                "initiator_asset": r.request.initiator_asset.to_dict(),
                "responder_asset": r.request.responder_asset.to_dict(),
                "created_at": r.created_at,
                "deadline": r.deadline,
                "manual_intervention": r.manual_intervention,
            }
            for r in self.registry.list(state)
        ]

    def stats(self) -> Dict[str, Any]:
        return {
            "router_id": self.config.router_id,
            "chains": sorted(self.adapters),
            "swaps": self.registry.counts(),
            "in_flight_tasks": len(self._tasks),
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Load persisted state and resume non-terminal swaps."""
        if self.store is None:
            return
        data = self.store.load()
        if not data:
            return
        self.authority.load(data.get("assets") or {})
        self.confirmations.load(data.get("confirmations") or {})
        records = self.registry.load(data.get("swaps") or {})
        for record in records:
            if record.state in TERMINAL_STATES:
                continue
            for leg in record.legs():
                self.authority.add_reference(leg.asset_id, record.swap_id)
            await self._resume(record.swap_id)

    async def _resume(self, swap_id: str):
        async with self.registry.locked(swap_id) as record:
            state = record.state
            log.info(f"Resuming swap {swap_id} in state {state.value}")
            record.add_event("resumed", f"Resumed in state {state.value}")

            if state == SwapState.PENDING:
                self._fail(record, "Interrupted before locks were dispatched")

            elif state == SwapState.LOCKING:
                event = asyncio.Event()
                event.set()
                self._lock_phase[swap_id] = event
                if all(leg.lock_ref for leg in record.legs()):
                    self._spawn(self._resume_confirmations(swap_id), name=f"drive-{swap_id}")
                elif record.request.auto_rollback:
                    self._begin_rollback(record, "Interrupted while locking")
                else:
                    self._transition(record, SwapState.EXPIRED, "Interrupted while locking")

            elif state == SwapState.COMPLETING:
                if record.revealed_secret:
                    task = self._spawn(self._run_completion(swap_id, record.revealed_secret),
                                       name=f"complete-{swap_id}")
                    self._completions[swap_id] = task
                else:
                    self._fail(record, "Interrupted while claiming without the secret",
                               manual=True)

            elif state == SwapState.ROLLING_BACK:
                task = self._spawn(self._run_rollback(swap_id), name=f"rollback-{swap_id}")
                self._rollbacks[swap_id] = task

    async def _resume_confirmations(self, swap_id: str):
        try:
            if await self._await_confirmations(swap_id) and self.config.auto_complete:
                await self.complete_atomic_swap(swap_id, completion_ref="auto")
        except RouterError as e:
            log.warning(f"Swap {swap_id}: resumed driver stopped: {e}")

    async def shutdown(self):
        """Stop taking swaps, let in-flight work settle, persist, close adapters."""
        open_swaps = self.registry.drain()
        log.info(f"Coordinator shutting down with {len(open_swaps)} open swap(s)")

        tasks = [t for t in self._tasks if not t.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.config.drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                log.warning(f"Cancelled {len(pending)} in-flight task(s); state persisted")

        self._persist()
        await self.flush()
        for chain, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                log.error(f"Failed to close adapter {chain}: {e}")
