import pytest

from conftest import snapshot_of
from liquidvote.delegation.actions import Delegate, Vote
from liquidvote.delegation.resolver import (
    Abstained,
    AbstentionReason,
    DelegatedVote,
    DirectVote,
    resolve,
)
from liquidvote.delegation.tally import tally_outcome
from liquidvote.errors import InvalidDelegationTarget, InvalidVoteOption, SelfDelegation


def test_direct_votes_resolve_to_themselves():
    outcome = resolve(snapshot_of([Vote("a", 1), Vote("b", 2)]))
    assert outcome.results == {"a": DirectVote(1), "b": DirectVote(2)}
    assert outcome.stats.direct_voters == 2
    assert outcome.cycles == []


def test_five_participants_mixed_actions():
    snapshot = snapshot_of(
        [Vote("a", 1), Vote("b", 2), Delegate("c", "a"), Delegate("d", "e")],
        participants={"a", "b", "c", "d", "e"},
    )
    outcome = resolve(snapshot)
    assert outcome.results["c"] == DelegatedVote(1, 1, "a")
    assert outcome.results["d"] == Abstained(AbstentionReason.ORPHANED_CHAIN)
    assert outcome.results["e"] == Abstained(AbstentionReason.NO_ACTION)

    tally = tally_outcome(outcome, snapshot.options)
    assert tally.totals == {1: 2, 2: 1, 3: 0}
    assert tally.winners == (1,)
    assert tally.abstentions == 2


def test_chain_lengths_follow_hops_to_terminal_voter():
    outcome = resolve(snapshot_of([Delegate("a", "b"), Delegate("b", "c"), Vote("c", 3)]))
    assert outcome.results["a"] == DelegatedVote(3, 2, "c")
    assert outcome.results["b"] == DelegatedVote(3, 1, "c")
    assert outcome.results["c"] == DirectVote(3)
    assert outcome.stats.longest_chain == 2


def test_long_chain_resolves_without_recursion_limits():
    actions = [Delegate(f"p{i}", f"p{i + 1}") for i in range(5000)] + [Vote("p5000", 2)]
    outcome = resolve(snapshot_of(actions))
    assert outcome.results["p0"] == DelegatedVote(2, 5000, "p5000")
    assert outcome.stats.contributing == 5001


def test_two_cycle_abstains_both_members():
    outcome = resolve(snapshot_of([Delegate("a", "b"), Delegate("b", "a")]))
    assert outcome.results["a"] == Abstained(AbstentionReason.CYCLE)
    assert outcome.results["b"] == Abstained(AbstentionReason.CYCLE)
    assert outcome.cycles == [["a", "b"]]
    assert outcome.stats.cycles == 1
    assert outcome.stats.cyclic_participants == 2


def test_three_cycle_does_not_affect_unrelated_chain():
    outcome = resolve(snapshot_of([
        Delegate("a", "b"), Delegate("b", "c"), Delegate("c", "a"),
        Delegate("x", "y"), Vote("y", 1),
    ]))
    for member in ("a", "b", "c"):
        assert outcome.results[member] == Abstained(AbstentionReason.CYCLE)
    assert outcome.results["x"] == DelegatedVote(1, 1, "y")
    assert len(outcome.cycles) == 1
    assert sorted(outcome.cycles[0]) == ["a", "b", "c"]


def test_delegating_into_cycle_abstains():
    outcome = resolve(snapshot_of([
        Delegate("a", "b"), Delegate("b", "a"), Delegate("z", "y"), Delegate("y", "a"),
    ]))
    assert outcome.results["y"] == Abstained(AbstentionReason.DELEGATES_INTO_CYCLE)
    assert outcome.results["z"] == Abstained(AbstentionReason.DELEGATES_INTO_CYCLE)
    assert outcome.stats.cyclic_participants == 2
    assert outcome.stats.delegates_into_cycle == 2
    assert outcome.stats.cycles == 1


def test_converging_chains_are_not_cycles():
    outcome = resolve(snapshot_of([
        Delegate("a", "c"), Delegate("b", "c"), Delegate("c", "d"), Vote("d", 2),
    ]))
    assert outcome.cycles == []
    assert outcome.results["a"] == DelegatedVote(2, 2, "d")
    assert outcome.results["b"] == DelegatedVote(2, 2, "d")


def test_orphaned_chain_abstains_every_member():
    outcome = resolve(snapshot_of([Delegate("a", "b")]))
    assert outcome.results["a"] == Abstained(AbstentionReason.ORPHANED_CHAIN)
    assert outcome.results["b"] == Abstained(AbstentionReason.NO_ACTION)
    assert outcome.stats.orphaned_chains == 1
    assert outcome.stats.orphaned_participants == 1
    assert outcome.stats.cycles == 0
    assert outcome.stats.lost_delegations == 1


def test_multi_hop_orphaned_chain_counts_once():
    outcome = resolve(snapshot_of([Delegate("a", "b"), Delegate("b", "c")]))
    assert outcome.results["a"] == Abstained(AbstentionReason.ORPHANED_CHAIN)
    assert outcome.results["b"] == Abstained(AbstentionReason.ORPHANED_CHAIN)
    assert outcome.stats.orphaned_chains == 1
    assert outcome.stats.orphaned_participants == 2
    assert outcome.stats.cycles == 0


def test_chains_sharing_a_dead_end_are_one_orphaned_chain():
    outcome = resolve(snapshot_of([Delegate("a", "c"), Delegate("b", "c"), Delegate("d", "e")]))
    assert outcome.stats.orphaned_chains == 2
    assert outcome.stats.orphaned_participants == 3


def test_vote_delegation_and_two_cycle_among_five():
    snapshot = snapshot_of(
        [Vote("p1", 1), Delegate("p2", "p1"), Vote("p3", 2), Delegate("p4", "p5"), Delegate("p5", "p4")],
        participants={"p1", "p2", "p3", "p4", "p5"},
        options=("Approve", "Reject"),
    )
    outcome = resolve(snapshot)
    assert outcome.results["p2"] == DelegatedVote(1, 1, "p1")
    assert outcome.results["p4"] == Abstained(AbstentionReason.CYCLE)
    assert outcome.results["p5"] == Abstained(AbstentionReason.CYCLE)
    assert outcome.stats.cycles == 1
    assert outcome.stats.orphaned_chains == 0

    tally = tally_outcome(outcome, snapshot.options)
    assert tally.totals == {1: 2, 2: 1}
    assert tally.abstentions == 2
    assert tally.winners == (1,)


def test_participants_without_any_link_are_not_classified():
    outcome = resolve(snapshot_of([Vote("a", 1)], participants={"a", "idle"}))
    assert "idle" not in outcome.results


def test_tally_matches_contributing_participants():
    outcome = resolve(snapshot_of([
        Vote("a", 1), Delegate("b", "a"), Delegate("c", "b"),
        Delegate("d", "e"), Delegate("e", "d"), Delegate("f", "g"),
    ]))
    tally = tally_outcome(outcome, ("Yes", "No", "Abstain"))
    contributing = sum(1 for r in outcome.results.values() if not isinstance(r, Abstained))
    assert tally.total_cast == contributing == outcome.stats.contributing == 3
    assert tally.totals[1] == 3


def test_resolution_is_deterministic():
    actions = [
        Delegate("a", "b"), Delegate("b", "c"), Delegate("c", "a"),
        Delegate("d", "a"), Vote("e", 2), Delegate("f", "e"),
    ]
    first = resolve(snapshot_of(actions))
    second = resolve(snapshot_of(list(reversed(actions))))
    assert first.results == second.results
    assert first.cycles == second.cycles
    assert first.stats == second.stats


def test_self_delegation_is_rejected():
    with pytest.raises(SelfDelegation):
        Delegate("a", "a")


def test_delegation_to_outsider_is_rejected():
    snapshot = snapshot_of([Delegate("a", "outsider")], participants={"a"})
    with pytest.raises(InvalidDelegationTarget) as excinfo:
        resolve(snapshot)
    assert excinfo.value.target == "outsider"
    assert excinfo.value.proposal_id == 1


def test_vote_for_unknown_option_is_rejected():
    with pytest.raises(InvalidVoteOption) as excinfo:
        resolve(snapshot_of([Vote("a", 4)]))
    assert excinfo.value.option == 4


def test_classifications_are_serializable():
    outcome = resolve(snapshot_of([Vote("a", 1), Delegate("b", "a"), Delegate("c", "d")]))
    assert outcome.classifications() == {
        "a": {"result": "direct_vote", "option": 1},
        "b": {"result": "delegated_vote", "option": 1, "chain_length": 1, "terminal_voter": "a"},
        "c": {"result": "abstained", "reason": "orphaned_chain"},
        "d": {"result": "abstained", "reason": "no_action"},
    }
