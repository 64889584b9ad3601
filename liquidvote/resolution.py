# liquidvote/resolution.py

"""Runs delegation resolution for proposals whose voting deadline has passed.

One run reads a point-in-time snapshot of the proposal, resolves every
delegation chain, tallies the result and records audit and tally together.
Actions arriving after the snapshot are left for the next run. At most one run
per proposal is in flight; different proposals resolve in parallel.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime

from liquidvote.delegation.resolver import ResolutionOutcome, resolve
from liquidvote.delegation.tally import TallyResult, tally_outcome
from liquidvote.errors import ConcurrentResolutionInProgress, LiquidVoteError, VotingStillOpen
from liquidvote.operations.backup_manager import TRIGGER_PRE_CALCULATION

logger = logging.getLogger(__name__)

TRIGGER_SCHEDULED = 'scheduled'
TRIGGER_ADMIN = 'admin'


class ProposalLockRegistry:
    """Non-blocking mutual exclusion keyed by proposal id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held = set()

    def acquire(self, proposal_id):
        with self._guard:
            if proposal_id in self._held:
                return False
            self._held.add(proposal_id)
            return True

    def release(self, proposal_id):
        with self._guard:
            self._held.discard(proposal_id)

    def is_locked(self, proposal_id):
        with self._guard:
            return proposal_id in self._held


@dataclass
class ResolutionReport:
    proposal_id: int
    status: str
    tally: TallyResult
    outcome: ResolutionOutcome
    duration_ms: float

    def to_dict(self):
        return {
            'proposal_id': self.proposal_id,
            'status': self.status,
            'tally': self.tally.to_dict(),
            'counts': self.outcome.stats.to_dict(),
            'duration_ms': round(self.duration_ms, 3),
        }


class ResolutionService:
    def __init__(self, store, recorder, snapshots=None, locks=None, app=None, workers=4):
        self.store = store
        self.recorder = recorder
        self.snapshots = snapshots
        self.locks = locks or ProposalLockRegistry()
        self.app = app
        self.workers = max(1, workers)

    def resolve_proposal(self, proposal_id, force=False, trigger=TRIGGER_ADMIN, now=None):
        if not self.locks.acquire(proposal_id):
            raise ConcurrentResolutionInProgress(proposal_id)
        try:
            return self._resolve_locked(proposal_id, force, trigger, now or datetime.utcnow())
        finally:
            self.locks.release(proposal_id)

    def _resolve_locked(self, proposal_id, force, trigger, now):
        proposal = self.store.get_proposal(proposal_id)
        if proposal.is_open(now):
            raise VotingStillOpen(f"Voting on proposal {proposal_id} is still open", proposal_id)
        self.recorder.ensure_resolvable(proposal_id, force)

        if self.snapshots is not None:
            self.snapshots.capture(proposal_id, TRIGGER_PRE_CALCULATION)

        snapshot = self.store.load_snapshot(proposal_id, now=now)
        logger.info("Resolving proposal %s (%s, %d actions)", proposal_id, trigger, len(snapshot.actions))
        started = time.perf_counter()
        try:
            outcome = resolve(snapshot)
            tally = tally_outcome(outcome, snapshot.options)
        except LiquidVoteError as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.error("Resolution of proposal %s rejected: %s", proposal_id, e.kind)
            self.recorder.record_failure(
                proposal_id, e.kind, trigger, duration_ms, snapshot.taken_at, retryable=e.retryable
            )
            raise
        duration_ms = (time.perf_counter() - started) * 1000

        audit = self.recorder.record(outcome, tally, duration_ms, trigger, snapshot.taken_at, force)
        return ResolutionReport(proposal_id, audit.status, tally, outcome, duration_ms)

    def _resolve_in_context(self, proposal_id, now):
        if self.app is None:
            return self.resolve_proposal(proposal_id, trigger=TRIGGER_SCHEDULED, now=now)
        with self.app.app_context():
            return self.resolve_proposal(proposal_id, trigger=TRIGGER_SCHEDULED, now=now)

    def sweep_due_proposals(self, now=None):
        """Resolve every proposal whose deadline has passed. Returns {proposal_id: status or error kind}."""
        now = now or datetime.utcnow()
        due = self.store.due_proposals(now=now)
        if not due:
            return {}
        logger.info("Deadline sweep found %d proposal(s) to resolve", len(due))
        summary = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(due))) as pool:
            futures = {pool.submit(self._resolve_in_context, proposal_id, now): proposal_id for proposal_id in due}
            for future in as_completed(futures):
                proposal_id = futures[future]
                try:
                    summary[proposal_id] = future.result().status
                except LiquidVoteError as e:
                    logger.warning("Scheduled resolution of proposal %s failed: %s", proposal_id, e.kind)
                    summary[proposal_id] = e.kind
        return summary
