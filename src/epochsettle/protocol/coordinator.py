"""
epochsettle/protocol/coordinator.py

Three-phase settlement of reward ranges against the ledger.

Flow per range:
1. Calculate rewards from worker metrics and ledger stakes
2. Split into batches and build the Merkle tree
3. Commit the root (only inside this distributor's round-robin window)
4. Wait for the required approvals (other distributors approve)
5. Distribute every unprocessed batch with its proof

Key Features:
- Ledger state is re-read before every phase; nothing is assumed
- Commit collisions shift the range forward and retry, bounded
- Duplicate approvals and already-processed batches count as success
- One failed batch never stops the rest of the range
- Per-range lock: no two passes over the same range run at once
- Independent trio loops for committing and approving
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import trio

from ..analytics.metrics_view import WorkerMetricsView
from ..blockchain.batches import Batch, EpochRange, create_batches
from ..blockchain.gateway import ChainGateway
from ..blockchain.merkle import MerkleTree, build_tree
from ..config import (
    AprConfig,
    BatchConfig,
    CoordinatorConfig,
    RetryPolicy,
    SettlementConfig,
)
from ..errors import (
    AlreadySettled,
    InsufficientData,
    NotEligible,
    ProofInvalid,
    RangeCollision,
    SettlementError,
    classify_error,
)
from .apr import target_apr
from .audit import AuditLog
from .retry import RetryExhausted, advance_range, retry_async
from .rewards import (
    NetworkParams,
    RewardEngine,
    RewardResult,
    WorkerMetrics,
    build_rewards_report,
    emit_rewards_report,
    emit_worker_reports,
)
from .status_store import BatchOutcome, DistributionPhase, DistributionStatus, StatusStore
from .uptime import compute_liveness, compute_tenure

if TYPE_CHECKING:
    from ..metrics import SettlementMetrics

logger = logging.getLogger("epochsettle.protocol.coordinator")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class SettlementPlan:
    """Immutable result of calculating one range: rewards, batches, tree."""
    epoch_range: EpochRange
    result: RewardResult
    batches: List[Batch]
    tree: MerkleTree
    target_apr: float

    @property
    def root(self) -> bytes:
        return self.tree.root

    def proof(self, batch_index: int) -> List[bytes]:
        return self.tree.get_proof(batch_index)


class CommitStatus(Enum):
    """Outcome of a commit attempt."""
    COMMITTED = "committed"
    ALREADY_SETTLED = "already_settled"
    NOT_ELIGIBLE = "not_eligible"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass
class CommitOutcome:
    status: CommitStatus
    epoch_range: EpochRange             # range actually committed, after any shift
    tx_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[SettlementError] = None

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'epoch_id': self.epoch_range.epoch_id,
            'tx_hash': self.tx_hash,
            'attempts': self.attempts,
            'error': str(self.error) if self.error else None,
        }


@dataclass
class ApproveOutcome:
    status: str                         # approved | already_approved | skipped | rejected | failed
    epoch_range: Optional[EpochRange] = None
    tx_hash: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'epoch_id': self.epoch_range.epoch_id if self.epoch_range else None,
            'tx_hash': self.tx_hash,
            'reason': self.reason,
        }


# ============================================================================
# COORDINATOR
# ============================================================================

class DistributionCoordinator:
    """
    Drives ranges through calculate -> commit -> approve -> distribute.

    Usage:
        coordinator = DistributionCoordinator.from_config(config, gateway, view)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(coordinator.run)
    """

    def __init__(
        self,
        gateway: ChainGateway,
        metrics_view: WorkerMetricsView,
        engine: Optional[RewardEngine] = None,
        config: Optional[CoordinatorConfig] = None,
        batch_config: Optional[BatchConfig] = None,
        apr_config: Optional[AprConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        store: Optional[StatusStore] = None,
        audit: Optional[AuditLog] = None,
        metrics: Optional["SettlementMetrics"] = None,
    ):
        """
        Initialize DistributionCoordinator.

        Args:
            gateway: Ledger reads and writes
            metrics_view: Worker activity source
            engine: Reward formula
            config: Loop timing and range selection
            batch_config: Batch size
            apr_config: Target APR settings
            retry_policy: Bounds for commit collision retries
            store: Status store shared with the admin API
            audit: Append-only record of write attempts
            metrics: Prometheus counters
        """
        self.gateway = gateway
        self.metrics_view = metrics_view
        self.engine = engine or RewardEngine()
        self.config = config or CoordinatorConfig()
        self.batch_config = batch_config or BatchConfig()
        self.apr_config = apr_config or AprConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.store = store if store is not None else StatusStore()
        self.audit = audit if audit is not None else AuditLog()
        self.metrics = metrics

        self._plans: Dict[str, SettlementPlan] = {}
        self._locks: Dict[str, trio.Lock] = {}

        self._on_distribution_complete: Optional[Callable[[DistributionStatus], None]] = None
        self._on_distribution_failed: Optional[Callable[[DistributionStatus], None]] = None

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        gateway: ChainGateway,
        metrics_view: WorkerMetricsView,
        store: Optional[StatusStore] = None,
        metrics: Optional["SettlementMetrics"] = None,
    ) -> "DistributionCoordinator":
        return cls(
            gateway=gateway,
            metrics_view=metrics_view,
            engine=RewardEngine(config.reward),
            config=config.coordinator,
            batch_config=config.batch,
            apr_config=config.apr,
            retry_policy=config.retry,
            store=store,
            audit=AuditLog(config.audit_log_path),
            metrics=metrics,
        )

    def set_on_distribution_complete(self, callback: Callable[[DistributionStatus], None]) -> None:
        self._on_distribution_complete = callback

    def set_on_distribution_failed(self, callback: Callable[[DistributionStatus], None]) -> None:
        self._on_distribution_failed = callback

    # ========================================================================
    # CALCULATION
    # ========================================================================

    def _tenure_factors(self, peer_ids: List[str], start: float, end: float) -> Dict[str, float]:
        cfg = self.engine.config
        epochs = cfg.tenure_epoch_count
        if epochs == 0:
            return {peer_id: 1.0 for peer_id in peer_ids}

        duration = end - start
        boundaries = [start - (epochs - i) * duration for i in range(epochs + 1)]
        history_pings = self.metrics_view.pings(boundaries[0], boundaries[-1])
        records = compute_tenure(
            {peer_id: history_pings.get(peer_id, []) for peer_id in peer_ids},
            boundaries,
            offline_threshold=cfg.offline_threshold_seconds,
            threshold=cfg.tenure_liveness_threshold,
        )
        return {peer_id: record.coefficient for peer_id, record in records.items()}

    def build_plan(self, epoch_range: EpochRange) -> SettlementPlan:
        """
        Calculate rewards, batches and tree for a range. Blocking.

        Raises:
            InsufficientData: no registered worker was active in the range
        """
        gateway = self.gateway
        cfg = self.engine.config

        start = gateway.block_timestamp(epoch_range.from_block)
        end = gateway.block_timestamp(epoch_range.to_block)
        snapshot = self.metrics_view.snapshot(start, end)
        if not snapshot.workers:
            raise InsufficientData(f"No worker activity in {epoch_range}")

        peer_ids = sorted(snapshot.workers)
        worker_ids = gateway.worker_ids_of(peer_ids)
        registered = [worker_ids[p] for p in peer_ids if worker_ids[p] is not None]
        stakes = gateway.stakes(registered) if registered else {}
        tenure = self._tenure_factors(peer_ids, start, end)

        metrics = []
        for peer_id in peer_ids:
            activity = snapshot.workers[peer_id]
            worker_id = worker_ids[peer_id]
            stake = 0
            if worker_id is not None:
                stake_result = stakes.get(worker_id)
                if stake_result is None or not stake_result.ok:
                    reason = stake_result.error if stake_result else "missing"
                    logger.warning(f"Stake unavailable for worker {worker_id} ({reason}), using 0")
                stake = stake_result.unwrap_or(0) if stake_result else 0
            metrics.append(WorkerMetrics(
                peer_id=peer_id,
                worker_id=worker_id,
                bytes_sent=activity.bytes_sent,
                chunks_read=activity.chunks_read,
                total_requests=activity.total_requests,
                valid_requests=activity.valid_requests,
                stake=stake,
                total_delegated_stake=stake,
                liveness_factor=compute_liveness(
                    activity.pings, start, end, cfg.offline_threshold_seconds,
                ),
                tenure_factor=tenure.get(peer_id, 0.5),
            ))

        apr = self.apr_config.base_apr
        if self.apr_config.dynamic:
            apr = target_apr(self.apr_config, gateway.active_worker_count())

        params = NetworkParams(
            bond_amount=gateway.bond_amount(),
            epoch_length_seconds=max(0.0, end - start),
            target_apr=apr,
        )
        result = self.engine.compute(metrics, params)
        if not result.assignments:
            raise InsufficientData(f"No registered workers active in {epoch_range}")

        batches = create_batches(result.assignments, self.batch_config.batch_size)
        tree = build_tree([batch.leaf_hash for batch in batches])
        return SettlementPlan(epoch_range, result, batches, tree, apr)

    def next_commit_range(self) -> EpochRange:
        """
        Next range to commit, from the ledger's last rewarded block. Blocking.

        Raises:
            NotEligible: fewer than one epoch of confirmed blocks since the last reward
        """
        gateway = self.gateway
        epoch_length = gateway.epoch_length() or self.config.epoch_length_blocks

        last_rewarded = gateway.last_rewarded_block()
        if last_rewarded == 0:
            last_rewarded = gateway.first_registration_block()

        last_confirmed = gateway.current_block() - self.config.confirmation_blocks
        if last_confirmed - last_rewarded < epoch_length:
            raise NotEligible(
                f"Only {max(0, last_confirmed - last_rewarded)} confirmed blocks since "
                f"{last_rewarded}, need {epoch_length}"
            )

        to_block = min(last_rewarded + epoch_length * self.config.max_epochs_per_commit, last_confirmed)
        return EpochRange(last_rewarded + 1, to_block)

    # ========================================================================
    # INTERNAL HELPERS
    # ========================================================================

    def _lock_for(self, epoch_id: str) -> trio.Lock:
        lock = self._locks.get(epoch_id)
        if lock is None:
            lock = self._locks[epoch_id] = trio.Lock()
        return lock

    def _status_for(self, epoch_range: EpochRange, reopen: bool = False) -> DistributionStatus:
        """Stored status for the range, or a fresh one (also when reopening a completed one)."""
        status = self.store.get(epoch_range.epoch_id)
        if status is None or (reopen and status.phase == DistributionPhase.COMPLETED):
            status = DistributionStatus(
                epoch_id=epoch_range.epoch_id,
                from_block=epoch_range.from_block,
                to_block=epoch_range.to_block,
            )
        return status

    def _move(self, status: DistributionStatus, *phases: DistributionPhase) -> None:
        for phase in phases:
            status.transition(phase)
        self.store.upsert(status)

    def _finish(self, status: DistributionStatus, phase: DistributionPhase,
                error: Optional[str] = None) -> None:
        status.error = error
        self._move(status, phase)
        callback = (
            self._on_distribution_complete if phase == DistributionPhase.COMPLETED
            else self._on_distribution_failed
        )
        if callback:
            callback(status)

    def _record_plan(self, status: DistributionStatus, plan: SettlementPlan) -> None:
        status.total_workers = plan.result.total_workers
        status.total_batches = len(plan.batches)
        status.total_rewards = plan.result.total_reward
        status.merkle_root = plan.tree.root_hex
        self._plans[plan.epoch_range.epoch_id] = plan

    def _count(self, kind: str, outcome: str, amount: int = 0) -> None:
        if self.metrics is None:
            return
        if kind == "commit":
            self.metrics.record_commit(outcome)
        elif kind == "approve":
            self.metrics.record_approval(outcome)
        else:
            self.metrics.record_batch(outcome, amount)

    async def _calculate(self, status: DistributionStatus, epoch_range: EpochRange) -> SettlementPlan:
        """Move status through calculating/generating_tree and return the plan."""
        if status.phase in (DistributionPhase.IDLE, DistributionPhase.FAILED):
            self._move(status, DistributionPhase.CALCULATING)
        cached = self._plans.get(epoch_range.epoch_id)
        plan = cached or await trio.to_thread.run_sync(self.build_plan, epoch_range)
        self._record_plan(status, plan)
        if status.phase == DistributionPhase.CALCULATING:
            self._move(status, DistributionPhase.GENERATING_TREE)
        return plan

    # ========================================================================
    # COMMIT
    # ========================================================================

    async def commit_range(self, epoch_range: EpochRange) -> CommitOutcome:
        """
        Commit the Merkle root for a range.

        Skips without writing when the range is already committed or this
        distributor is outside its commit window. A collision with another
        distributor shifts the range forward and retries.
        """
        async with self._lock_for(epoch_range.epoch_id):
            return await self._commit_locked(epoch_range)

    async def _commit_locked(self, epoch_range: EpochRange) -> CommitOutcome:
        gateway = self.gateway
        try:
            committed = await trio.to_thread.run_sync(
                gateway.is_committed, epoch_range.from_block, epoch_range.to_block,
            )
            if committed:
                logger.debug(f"Range {epoch_range} already committed, skipping")
                self._count("commit", "already_settled")
                return CommitOutcome(
                    CommitStatus.ALREADY_SETTLED, epoch_range,
                    error=AlreadySettled(f"{epoch_range} already committed"),
                )
            eligible = await trio.to_thread.run_sync(gateway.can_commit, gateway.address)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Commit pre-checks failed for {epoch_range}: {error}")
            self._count("commit", "failed")
            return CommitOutcome(CommitStatus.FAILED, epoch_range, error=error)

        if not eligible:
            logger.info(f"{gateway.address} is outside its commit window, waiting")
            self._count("commit", "not_eligible")
            return CommitOutcome(
                CommitStatus.NOT_ELIGIBLE, epoch_range,
                error=NotEligible(f"{gateway.address} cannot commit now"),
            )

        # range, status and plan of the current attempt; a collision moves all three
        state = {
            'range': epoch_range,
            'status': self._status_for(epoch_range, reopen=True),
            'plan': None,
            'attempts': 0,
        }

        async def attempt(n: int) -> str:
            state['attempts'] = n + 1
            current = state['range']
            if current == epoch_range:
                return await submit()
            # the caller holds only the original range's lock
            async with self._lock_for(current.epoch_id):
                return await submit()

        async def submit() -> str:
            status = state['status']
            state['plan'] = await self._calculate(status, state['range'])
            self._move(status, DistributionPhase.COMMITTING)
            plan = state['plan']
            return await trio.to_thread.run_sync(
                gateway.commit_root,
                plan.epoch_range,
                plan.root,
                len(plan.batches),
                self.config.metadata_link(plan.epoch_range.from_block, plan.epoch_range.to_block),
            )

        def on_collision(n: int, error: SettlementError) -> None:
            old = state['range']
            shifted = advance_range(old, self.retry_policy.range_shift_blocks)
            logger.warning(f"Range {old} was committed concurrently, retrying as {shifted}")
            self._count("commit", "collision")
            self.audit.record("commit", old.epoch_id, gateway.address, False, reason=str(error))
            old_status = state['status']
            old_status.error = f"committed by another distributor: {error}"
            self._move(old_status, DistributionPhase.COMPLETED)
            state['range'] = shifted
            state['status'] = self._status_for(shifted, reopen=True)
            state['plan'] = None

        try:
            tx_hash = await retry_async(attempt, self.retry_policy, (RangeCollision,), on_collision)
        except InsufficientData as e:
            final = state['range']
            logger.info(f"Range {final}: {e}; completing with zero rewards")
            self._count("commit", "no_data")
            self._finish(state['status'], DistributionPhase.COMPLETED)
            return CommitOutcome(CommitStatus.NO_DATA, final, attempts=state['attempts'], error=e)
        except RetryExhausted as e:
            final = state['range']
            logger.error(f"Commit for {final} gave up after {e.attempts} collisions")
            self.audit.record("commit", final.epoch_id, gateway.address, False, reason=str(e))
            self._count("commit", "failed")
            self._finish(state['status'], DistributionPhase.FAILED, str(e))
            return CommitOutcome(CommitStatus.FAILED, final, attempts=e.attempts, error=e)
        except SettlementError as e:
            return self._commit_failed(state, e)

        plan = state['plan']
        status = state['status']
        status.commit_tx_hash = tx_hash
        status.error = None
        self.store.upsert(status)
        self.audit.record("commit", plan.epoch_range.epoch_id, gateway.address, True, tx_hash=tx_hash)
        self._count("commit", "committed")
        if self.metrics:
            self.metrics.set_last_committed_block(plan.epoch_range.to_block)
        self._emit_report(plan, commit_tx_hash=tx_hash)
        logger.info(
            f"Committed {plan.epoch_range}: root {plan.tree.root_hex}, "
            f"{len(plan.batches)} batches, tx {tx_hash}"
        )
        return CommitOutcome(CommitStatus.COMMITTED, plan.epoch_range, tx_hash, state['attempts'])

    def _commit_failed(self, state: dict, error: SettlementError) -> CommitOutcome:
        """Record a non-retryable commit failure."""
        final = state['range']
        status = state['status']
        attempts = state['attempts']
        self.audit.record("commit", final.epoch_id, self.gateway.address, False, reason=str(error))
        if state['plan'] is not None:
            self._emit_report(state['plan'], commit_error=str(error))

        if isinstance(error, AlreadySettled):
            logger.debug(f"Commit for {final} already settled: {error}")
            self._count("commit", "already_settled")
            return CommitOutcome(CommitStatus.ALREADY_SETTLED, final, attempts=attempts, error=error)

        if isinstance(error, NotEligible):
            # window closed before the write landed; the next poll retries
            logger.warning(f"Commit for {final} not eligible, retrying next poll: {error}")
            self._count("commit", "not_eligible")
            status.error = f"waiting for commit window: {error}"
            self.store.upsert(status)
            return CommitOutcome(CommitStatus.NOT_ELIGIBLE, final, attempts=attempts, error=error)

        logger.warning(f"Commit for {final} failed: {type(error).__name__}: {error}")
        self._count("commit", "failed")
        self._finish(status, DistributionPhase.FAILED, str(error))
        return CommitOutcome(CommitStatus.FAILED, final, attempts=attempts, error=error)

    def _emit_report(self, plan: SettlementPlan, commit_tx_hash: Optional[str] = None,
                     commit_error: Optional[str] = None) -> None:
        emit_worker_reports(plan.result)
        emit_rewards_report(build_rewards_report(
            plan.result,
            plan.epoch_range.from_block,
            plan.epoch_range.to_block,
            self.gateway.address,
            plan.target_apr,
            commit_tx_hash=commit_tx_hash,
            commit_error=commit_error,
        ))

    # ========================================================================
    # APPROVE
    # ========================================================================

    async def approve_pending(self) -> ApproveOutcome:
        """
        Approve the latest commitment still short of approvals.

        Commitments this distributor authored are skipped. A duplicate
        approval rejected by the ledger counts as success.
        """
        gateway = self.gateway
        try:
            events = await trio.to_thread.run_sync(gateway.recent_commitments)
            if not events:
                return ApproveOutcome("skipped", reason="no commitments")
            latest = events[-1]
            last_rewarded = await trio.to_thread.run_sync(gateway.last_rewarded_block)
            if last_rewarded >= latest.epoch_range.to_block:
                return ApproveOutcome("skipped", latest.epoch_range, reason="already distributed")
            if latest.author.lower() == gateway.address.lower():
                return ApproveOutcome("skipped", latest.epoch_range, reason="own commitment")

            commitment = await trio.to_thread.run_sync(gateway.commitments, latest.key)
            required = await trio.to_thread.run_sync(gateway.required_approvals)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Approve pre-checks failed: {error}")
            self._count("approve", "failed")
            return ApproveOutcome("failed", reason=str(error))

        epoch_range = latest.epoch_range
        if not commitment.exists or commitment.approval_count >= required:
            return ApproveOutcome("skipped", epoch_range, reason="no approval needed")

        async with self._lock_for(epoch_range.epoch_id):
            if self.config.verify_before_approve:
                try:
                    plan = self._plans.get(epoch_range.epoch_id) or await trio.to_thread.run_sync(
                        self.build_plan, epoch_range,
                    )
                except Exception as e:
                    error = classify_error(e)
                    logger.warning(f"Cannot verify commitment {epoch_range} before approving: {error}")
                    self._count("approve", "failed")
                    return ApproveOutcome("failed", epoch_range, reason=str(error))
                if plan.root != commitment.merkle_root:
                    logger.error(
                        f"Commitment {epoch_range} root 0x{commitment.merkle_root.hex()} does not match "
                        f"local calculation {plan.tree.root_hex}, refusing to approve"
                    )
                    self._count("approve", "rejected")
                    self.audit.record("approve", epoch_range.epoch_id, gateway.address, False,
                                      reason="root mismatch")
                    return ApproveOutcome("rejected", epoch_range, reason="root mismatch")
                self._plans[epoch_range.epoch_id] = plan

            try:
                tx_hash = await trio.to_thread.run_sync(gateway.approve_root, epoch_range)
            except Exception as e:
                error = classify_error(e)
                if isinstance(error, AlreadySettled):
                    logger.debug(f"Commitment {epoch_range} already approved by {gateway.address}")
                    self._count("approve", "already_approved")
                    return ApproveOutcome("already_approved", epoch_range, reason=str(error))
                logger.warning(f"Approve for {epoch_range} failed: {type(error).__name__}: {error}")
                self.audit.record("approve", epoch_range.epoch_id, gateway.address, False, reason=str(error))
                self._count("approve", "failed")
                return ApproveOutcome("failed", epoch_range, reason=str(error))

        self.audit.record("approve", epoch_range.epoch_id, gateway.address, True, tx_hash=tx_hash)
        self._count("approve", "approved")
        logger.info(f"Approved {epoch_range}, tx {tx_hash}")
        return ApproveOutcome("approved", epoch_range, tx_hash)

    # ========================================================================
    # DISTRIBUTE
    # ========================================================================

    async def distribute_range(self, epoch_range: EpochRange) -> DistributionStatus:
        """
        Settle every unprocessed batch of a committed, approved range.

        Returns:
            Status snapshot with one BatchOutcome per batch

        Raises:
            NotEligible: range not committed or still short of approvals
        """
        async with self._lock_for(epoch_range.epoch_id):
            return await self._distribute_locked(epoch_range)

    async def _distribute_locked(self, epoch_range: EpochRange) -> DistributionStatus:
        gateway = self.gateway
        key = epoch_range.key

        try:
            commitment = await trio.to_thread.run_sync(gateway.commitments, key)
            required = await trio.to_thread.run_sync(gateway.required_approvals)
        except Exception as e:
            raise classify_error(e) from e
        if not commitment.exists:
            raise NotEligible(f"{epoch_range} is not committed")
        if commitment.approval_count < required:
            raise NotEligible(
                f"{epoch_range} has {commitment.approval_count}/{required} approvals"
            )

        status = self._status_for(epoch_range)
        if status.phase == DistributionPhase.COMPLETED and commitment.is_fully_processed:
            logger.debug(f"Range {epoch_range} already distributed")
            return status
        status = self._status_for(epoch_range, reopen=True)

        try:
            plan = await self._calculate(status, epoch_range)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Cannot rebuild batches for {epoch_range}: {error}")
            self._finish(status, DistributionPhase.FAILED, str(error))
            return status

        if status.phase == DistributionPhase.GENERATING_TREE:
            self._move(status, DistributionPhase.COMMITTING)

        if plan.root != commitment.merkle_root:
            message = (
                f"Local root {plan.tree.root_hex} does not match committed root "
                f"0x{commitment.merkle_root.hex()}"
            )
            logger.error(f"ProofInvalid for {epoch_range}: {message}")
            self._plans.pop(epoch_range.epoch_id, None)
            self._finish(status, DistributionPhase.FAILED, str(ProofInvalid(message)))
            return status

        self._move(status, DistributionPhase.DISTRIBUTING)
        outcomes = []
        for batch in plan.batches:
            outcome = await self._distribute_batch(plan, batch)
            outcomes.append(outcome)
            status.batches = list(outcomes)
            status.processed_batches = sum(1 for o in outcomes if o.status != "failed")
            self.store.upsert(status)

        failed = [o for o in outcomes if o.status == "failed"]
        if failed:
            self._finish(
                status, DistributionPhase.FAILED,
                f"{len(failed)} of {len(outcomes)} batches failed: "
                + "; ".join(f"#{o.index}: {o.error}" for o in failed),
            )
        else:
            logger.info(f"Distributed {epoch_range}: {len(outcomes)} batches settled")
            self._finish(status, DistributionPhase.COMPLETED)
        return status

    async def _distribute_batch(self, plan: SettlementPlan, batch: Batch) -> BatchOutcome:
        gateway = self.gateway
        epoch_range = plan.epoch_range
        leaf_hex = "0x" + batch.leaf_hash.hex()

        try:
            if await trio.to_thread.run_sync(gateway.processed, epoch_range.key, batch.leaf_hash):
                logger.debug(f"Batch {batch.index} of {epoch_range} already processed")
                self._count("batch", "skipped")
                return BatchOutcome(batch.index, leaf_hex, "skipped")
        except Exception as e:
            error = classify_error(e)
            self._count("batch", "failed")
            return BatchOutcome(batch.index, leaf_hex, "failed", error=str(error))

        proof = plan.proof(batch.index)
        if not MerkleTree.verify_proof(batch.leaf_hash, proof, plan.root):
            message = f"Proof for batch {batch.index} does not verify against local root"
            logger.error(f"ProofInvalid for {epoch_range}: {message}")
            self._count("batch", "failed")
            return BatchOutcome(batch.index, leaf_hex, "failed", error=str(ProofInvalid(message)))

        try:
            tx_hash = await trio.to_thread.run_sync(
                gateway.distribute,
                epoch_range,
                batch.recipients,
                batch.worker_rewards,
                batch.staker_rewards,
                proof,
            )
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, AlreadySettled):
                logger.debug(f"Batch {batch.index} of {epoch_range} settled concurrently")
                self._count("batch", "skipped")
                return BatchOutcome(batch.index, leaf_hex, "skipped")
            if isinstance(error, ProofInvalid):
                logger.error(f"Ledger rejected proof for batch {batch.index} of {epoch_range}: {error}")
            else:
                logger.warning(f"Batch {batch.index} of {epoch_range} failed: {type(error).__name__}: {error}")
            self.audit.record("distribute", epoch_range.epoch_id, gateway.address, False,
                              reason=str(error), batch_index=batch.index)
            self._count("batch", "failed")
            return BatchOutcome(batch.index, leaf_hex, "failed", error=str(error))

        self.audit.record("distribute", epoch_range.epoch_id, gateway.address, True,
                          tx_hash=tx_hash, batch_index=batch.index)
        self._count("batch", "distributed", batch.total_reward)
        return BatchOutcome(batch.index, leaf_hex, "distributed", tx_hash=tx_hash)

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def run_distribution(self, epoch_range: EpochRange) -> DistributionStatus:
        """
        Operator trigger: commit (unless already committed) and distribute.

        Returns the status snapshot of the range that ended up committed.

        Raises:
            NotEligible: outside the commit window
            SettlementError: commit failed before any status was recorded
        """
        outcome = await self.commit_range(epoch_range)
        target = outcome.epoch_range
        if outcome.status == CommitStatus.NOT_ELIGIBLE:
            raise outcome.error
        if outcome.status == CommitStatus.FAILED and self.store.get(target.epoch_id) is None:
            raise outcome.error

        if outcome.status in (CommitStatus.COMMITTED, CommitStatus.ALREADY_SETTLED):
            try:
                return await self.distribute_range(target)
            except NotEligible as e:
                logger.info(f"Distribution of {target} deferred: {e}")
        return self._status_for(target)

    async def calculate(self, epoch_range: EpochRange) -> SettlementPlan:
        """Preview a range's rewards and batches without writing anything."""
        return await trio.to_thread.run_sync(self.build_plan, epoch_range)

    async def settle_pending(self) -> List[DistributionStatus]:
        """Distribute ranges this process committed that are not yet settled."""
        settled = []
        for status in self.store.list():
            if not status.commit_tx_hash or status.phase == DistributionPhase.COMPLETED:
                continue
            epoch_range = EpochRange(status.from_block, status.to_block)
            try:
                settled.append(await self.distribute_range(epoch_range))
            except NotEligible as e:
                logger.debug(f"Range {epoch_range} not ready: {e}")
            except SettlementError as e:
                logger.warning(f"Settling {epoch_range} failed: {e}")
        return settled

    async def commit_tick(self) -> Optional[CommitOutcome]:
        """One pass of the commit loop."""
        await self.settle_pending()
        try:
            epoch_range = await trio.to_thread.run_sync(self.next_commit_range)
        except NotEligible as e:
            logger.debug(f"Nothing to commit: {e}")
            return None
        except Exception as e:
            logger.warning(f"Cannot determine next commit range: {classify_error(e)}")
            return None

        try:
            end_time = await trio.to_thread.run_sync(self.gateway.block_timestamp, epoch_range.to_block)
            caught_up = await trio.to_thread.run_sync(self.metrics_view.has_data_after, end_time)
        except Exception as e:
            logger.warning(f"Analytics store unavailable: {classify_error(e)}")
            return None
        if not caught_up:
            logger.info(f"Analytics store has not caught up past {epoch_range}, waiting")
            return None

        outcome = await self.commit_range(epoch_range)
        # an already committed range may be unsettled after a restart; processed batches are skipped
        if outcome.status in (CommitStatus.COMMITTED, CommitStatus.ALREADY_SETTLED):
            try:
                await self.distribute_range(outcome.epoch_range)
            except NotEligible as e:
                logger.info(f"Distribution of {outcome.epoch_range} waits for approvals: {e}")
            except SettlementError as e:
                logger.warning(f"Distribution of {outcome.epoch_range} failed: {e}")
        return outcome

    def cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Evict finished statuses and their cached plans."""
        age = self.config.status_retention_seconds if max_age_seconds is None else max_age_seconds
        before = {s.epoch_id for s in self.store.list()}
        removed = self.store.evict(age)
        after = {s.epoch_id for s in self.store.list()}
        for epoch_id in before - after:
            self._plans.pop(epoch_id, None)
            self._locks.pop(epoch_id, None)
        return removed

    # ========================================================================
    # LOOPS
    # ========================================================================

    async def run_commit_loop(self) -> None:
        logger.info(f"Commit loop started, every {self.config.commit_interval_seconds}s")
        while True:
            try:
                await self.commit_tick()
                self.cleanup()
            except Exception as e:
                logger.error(f"Commit loop error: {type(e).__name__}: {e}")
            await trio.sleep(self.config.commit_interval_seconds)

    async def run_approve_loop(self) -> None:
        logger.info(f"Approve loop started, every {self.config.approve_interval_seconds}s")
        while True:
            try:
                await self.approve_pending()
            except Exception as e:
                logger.error(f"Approve loop error: {type(e).__name__}: {e}")
            await trio.sleep(self.config.approve_interval_seconds)

    async def run(self) -> None:
        """Run commit and approve loops until cancelled."""
        async with trio.open_nursery() as nursery:
            nursery.start_soon(self.run_commit_loop)
            nursery.start_soon(self.run_approve_loop)
