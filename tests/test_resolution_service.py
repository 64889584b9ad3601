import threading
from datetime import datetime, timedelta

import pytest

from conftest import snapshot_of, wallet
from liquidvote import db
from liquidvote.audit.resolution_recorder import ResolutionAuditRecorder
from liquidvote.database.models import ResolutionAudit
from liquidvote.database.store import VoteStore
from liquidvote.delegation.actions import Delegate, Vote
from liquidvote.delegation.resolver import Abstained, AbstentionReason
from liquidvote.errors import (
    AlreadyResolved,
    ConcurrentResolutionInProgress,
    InvalidDelegationTarget,
    ProposalNotFound,
    VotingStillOpen,
)
from liquidvote.operations.backup_manager import TRIGGER_PRE_CALCULATION, SnapshotCoordinator
from liquidvote.resolution import ProposalLockRegistry, ResolutionService, TRIGGER_SCHEDULED


@pytest.fixture
def store():
    return VoteStore()


@pytest.fixture
def snapshots(store, tmp_path):
    return SnapshotCoordinator(store, outdir=str(tmp_path / "backups"))


@pytest.fixture
def service(store, snapshots):
    return ResolutionService(store, ResolutionAuditRecorder(), snapshots=snapshots)


def _close_voting(proposal, store, actions):
    for action in actions:
        store.apply_action(proposal.id, action)
    return proposal.voting_deadline + timedelta(seconds=1)


def test_resolve_after_deadline(service, store, snapshots, make_proposal):
    proposal = make_proposal()
    after = _close_voting(proposal, store, [
        Vote(wallet(1), 1), Vote(wallet(2), 2), Delegate(wallet(3), wallet(1)), Delegate(wallet(4), wallet(5)),
    ])

    report = service.resolve_proposal(proposal.id, now=after)
    assert report.status == "partial"
    assert report.tally.totals == {1: 2, 2: 1, 3: 0}
    assert report.to_dict()["counts"]["orphaned_chains"] == 1

    pre = snapshots.list_snapshots(proposal.id)
    assert [meta["trigger"] for meta in pre] == [TRIGGER_PRE_CALCULATION]


def test_vote_delegation_and_two_cycle_among_five(service, store, make_proposal):
    proposal = make_proposal(options=("Approve", "Reject"))
    after = _close_voting(proposal, store, [
        Vote(wallet(1), 1), Delegate(wallet(2), wallet(1)), Vote(wallet(3), 2),
        Delegate(wallet(4), wallet(5)), Delegate(wallet(5), wallet(4)),
    ])

    report = service.resolve_proposal(proposal.id, now=after)
    assert report.tally.totals == {1: 2, 2: 1}
    assert report.tally.abstentions == 2
    assert report.outcome.results[wallet(4)] == Abstained(AbstentionReason.CYCLE)
    assert report.outcome.results[wallet(5)] == Abstained(AbstentionReason.CYCLE)
    assert report.outcome.stats.cycles == 1


def test_resolving_open_proposal_is_refused(service, make_proposal):
    proposal = make_proposal()
    with pytest.raises(VotingStillOpen):
        service.resolve_proposal(proposal.id)


def test_unknown_proposal(service, members):
    with pytest.raises(ProposalNotFound):
        service.resolve_proposal(12345)


def test_already_resolved_needs_force(service, store, make_proposal):
    proposal = make_proposal()
    after = _close_voting(proposal, store, [Vote(wallet(1), 1)])
    service.resolve_proposal(proposal.id, now=after)

    with pytest.raises(AlreadyResolved):
        service.resolve_proposal(proposal.id, now=after)
    report = service.resolve_proposal(proposal.id, force=True, now=after)
    assert report.status == "completed"


def test_concurrent_run_is_rejected(service, make_proposal):
    proposal = make_proposal(deadline=datetime.utcnow() - timedelta(minutes=5))
    service.locks.acquire(proposal.id)
    try:
        with pytest.raises(ConcurrentResolutionInProgress) as excinfo:
            service.resolve_proposal(proposal.id)
        assert excinfo.value.retryable is True
    finally:
        service.locks.release(proposal.id)
    assert service.resolve_proposal(proposal.id).status == "completed"


def test_lock_is_released_after_failure(service, make_proposal):
    proposal = make_proposal()
    with pytest.raises(VotingStillOpen):
        service.resolve_proposal(proposal.id)
    assert not service.locks.is_locked(proposal.id)


def test_snapshot_failure_does_not_block_resolution(service, store, snapshots, make_proposal, monkeypatch):
    def disk_full(snapshot, trigger):
        raise OSError("No space left on device")

    monkeypatch.setattr(snapshots, "write", disk_full)
    proposal = make_proposal()
    after = _close_voting(proposal, store, [Vote(wallet(1), 2)])
    assert service.resolve_proposal(proposal.id, now=after).tally.totals[2] == 1
    assert snapshots.list_snapshots(proposal.id) == []


def test_invalid_snapshot_records_error_audit(service, make_proposal, monkeypatch):
    proposal = make_proposal(deadline=datetime.utcnow() - timedelta(minutes=5))
    bad = snapshot_of([Delegate(wallet(1), wallet(99))], participants={wallet(1)}, proposal_id=proposal.id)
    monkeypatch.setattr(service.store, "load_snapshot", lambda proposal_id, now=None: bad)

    with pytest.raises(InvalidDelegationTarget):
        service.resolve_proposal(proposal.id)
    audit = db.session.get(ResolutionAudit, proposal.id)
    assert audit.status == "error"
    assert audit.error_kind == "invalid_delegation_target"
    assert audit.retryable is False
    assert service.recorder.tally_rows(proposal.id) == []


def test_lock_registry_is_exclusive():
    locks = ProposalLockRegistry()
    results = []
    barrier = threading.Barrier(8)

    def contend():
        barrier.wait()
        results.append(locks.acquire(7))

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert locks.acquire(8) is True


class StubStore:
    def __init__(self, due):
        self.due = due

    def due_proposals(self, now=None):
        return list(self.due)


class StubService(ResolutionService):
    def __init__(self, due, failures):
        super().__init__(StubStore(due), recorder=None, workers=3)
        self.failures = failures
        self.seen = []

    def resolve_proposal(self, proposal_id, force=False, trigger=None, now=None):
        self.seen.append((proposal_id, trigger))
        if proposal_id in self.failures:
            raise self.failures[proposal_id]

        class Report:
            status = "completed"
        return Report()


def test_sweep_resolves_every_due_proposal():
    service = StubService([1, 2, 3], {2: ConcurrentResolutionInProgress(2)})
    summary = service.sweep_due_proposals()
    assert summary == {1: "completed", 2: "already_resolving", 3: "completed"}
    assert sorted(service.seen) == [(1, TRIGGER_SCHEDULED), (2, TRIGGER_SCHEDULED), (3, TRIGGER_SCHEDULED)]


def test_sweep_with_nothing_due():
    assert StubService([], {}).sweep_due_proposals() == {}


def test_rejected_proposal_leaves_the_sweep(app, store, snapshots, make_proposal, monkeypatch):
    service = ResolutionService(store, ResolutionAuditRecorder(), snapshots=snapshots, app=app, workers=1)
    proposal = make_proposal(deadline=datetime.utcnow() - timedelta(minutes=5))
    proposal_id = proposal.id
    bad = snapshot_of([Delegate(wallet(1), wallet(99))], participants={wallet(1)}, proposal_id=proposal_id)
    monkeypatch.setattr(store, "load_snapshot", lambda proposal_id, now=None: bad)
    db.session.commit()

    assert service.sweep_due_proposals() == {proposal_id: "invalid_delegation_target"}
    for _ in range(4):
        assert service.sweep_due_proposals() == {}
    assert len(snapshots.list_snapshots(proposal_id)) == 1
