import pytest

from conftest import snapshot_of
from liquidvote.delegation.actions import Delegate, Vote
from liquidvote.delegation.resolver import DirectVote, ResolutionOutcome, ResolutionStats, resolve
from liquidvote.delegation.tally import tally_outcome
from liquidvote.errors import InvalidVoteOption

OPTIONS = ("Yes", "No", "Abstain")


def test_zero_votes_gives_all_zero_tally_without_winner():
    outcome = resolve(snapshot_of([Delegate("a", "b"), Delegate("b", "a")]))
    tally = tally_outcome(outcome, OPTIONS)
    assert tally.totals == {1: 0, 2: 0, 3: 0}
    assert tally.total_cast == 0
    assert tally.winners == ()
    assert tally.is_tie is False


def test_empty_proposal_tallies():
    tally = tally_outcome(resolve(snapshot_of([])), OPTIONS)
    assert tally.total_cast == 0
    assert tally.abstentions == 0


def test_tie_is_reported_explicitly():
    outcome = resolve(snapshot_of([Vote("a", 1), Vote("b", 2), Delegate("c", "a"), Delegate("d", "b")]))
    tally = tally_outcome(outcome, OPTIONS)
    assert tally.winners == (1, 2)
    assert tally.is_tie is True
    assert tally.to_dict()["tie"] is True


def test_delegation_transfers_weight_intact():
    outcome = resolve(snapshot_of([
        Vote("a", 2), Delegate("b", "a"), Delegate("c", "b"), Delegate("d", "c"),
    ]))
    tally = tally_outcome(outcome, OPTIONS)
    assert tally.totals[2] == 4
    assert tally.total_cast == 4


def test_to_dict_labels_options():
    tally = tally_outcome(resolve(snapshot_of([Vote("a", 3)])), OPTIONS)
    assert tally.to_dict()["totals"] == [
        {"option": 1, "label": "Yes", "total": 0},
        {"option": 2, "label": "No", "total": 0},
        {"option": 3, "label": "Abstain", "total": 1},
    ]
    assert tally.to_dict()["winners"] == [3]


def test_result_outside_option_range_is_rejected():
    outcome = ResolutionOutcome(7, {"a": DirectVote(9)}, ResolutionStats(participants=1, direct_voters=1))
    with pytest.raises(InvalidVoteOption) as excinfo:
        tally_outcome(outcome, OPTIONS)
    assert excinfo.value.proposal_id == 7
