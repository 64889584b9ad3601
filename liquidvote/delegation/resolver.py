# liquidvote/delegation/resolver.py

"""Liquid-democracy delegation resolution.

Every participant of a proposal ends up with exactly one result:

* ``DirectVote`` - the participant voted themselves.
* ``DelegatedVote`` - the participant's delegation chain reached a direct
  voter; the option is inherited from that terminal voter.
* ``Abstained`` - no action, or a chain that ended at a participant without
  any action (orphaned) or ran into a cycle.

Chains are followed with path marking: a participant is ``IN_PATH`` while the
current walk passes through it and holds its final result once resolved, so
each participant is resolved once and two chains meeting at the same node are
never mistaken for a cycle.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Union

from liquidvote.delegation.actions import ProposalSnapshot
from liquidvote.errors import InvalidDelegationTarget, InvalidVoteOption

logger = logging.getLogger(__name__)


class AbstentionReason(Enum):
    NO_ACTION = "no_action"
    ORPHANED_CHAIN = "orphaned_chain"
    CYCLE = "cycle"
    DELEGATES_INTO_CYCLE = "delegates_into_cycle"


@dataclass(frozen=True)
class Abstained:
    reason: AbstentionReason = AbstentionReason.NO_ACTION

    contributes = False

    def to_dict(self):
        return {"result": "abstained", "reason": self.reason.value}


@dataclass(frozen=True)
class DirectVote:
    option: int

    contributes = True

    def to_dict(self):
        return {"result": "direct_vote", "option": self.option}


@dataclass(frozen=True)
class DelegatedVote:
    option: int
    chain_length: int
    terminal_voter: str

    contributes = True

    def to_dict(self):
        return {
            "result": "delegated_vote",
            "option": self.option,
            "chain_length": self.chain_length,
            "terminal_voter": self.terminal_voter,
        }


ResolutionResult = Union[Abstained, DirectVote, DelegatedVote]


class _Mark(Enum):
    IN_PATH = "in_path"


@dataclass
class ResolutionStats:
    participants: int = 0
    direct_voters: int = 0
    delegators: int = 0
    delegated_votes: int = 0
    abstentions: int = 0
    orphaned_chains: int = 0
    orphaned_participants: int = 0
    cycles: int = 0
    cyclic_participants: int = 0
    delegates_into_cycle: int = 0
    longest_chain: int = 0

    @property
    def contributing(self):
        return self.direct_voters + self.delegated_votes

    @property
    def lost_delegations(self):
        """Delegators whose voting power never reached a direct voter."""
        return self.delegators - self.delegated_votes

    def to_dict(self):
        return {
            "participants": self.participants,
            "direct_voters": self.direct_voters,
            "delegators": self.delegators,
            "delegated_votes": self.delegated_votes,
            "abstentions": self.abstentions,
            "orphaned_chains": self.orphaned_chains,
            "orphaned_participants": self.orphaned_participants,
            "cycles": self.cycles,
            "cyclic_participants": self.cyclic_participants,
            "delegates_into_cycle": self.delegates_into_cycle,
            "longest_chain": self.longest_chain,
        }


@dataclass
class ResolutionOutcome:
    proposal_id: int
    results: Dict[str, ResolutionResult]
    stats: ResolutionStats
    cycles: List[List[str]] = field(default_factory=list)

    def classifications(self):
        return {participant: self.results[participant].to_dict() for participant in sorted(self.results)}


class DelegationResolver:
    """Resolves one proposal snapshot. Instances are single use."""

    def __init__(self, snapshot: ProposalSnapshot):
        self.snapshot = snapshot
        self.votes: Dict[str, int] = snapshot.votes()
        self.delegations: Dict[str, str] = snapshot.delegations()
        self._state: Dict[str, Union[_Mark, ResolutionResult]] = {}
        self._cycles: List[List[str]] = []
        self._dead_ends: List[str] = []
        self._validate()

    def _validate(self):
        snapshot = self.snapshot
        valid_options = set(snapshot.option_numbers)
        for participant, option in self.votes.items():
            if participant not in snapshot.participants:
                raise InvalidDelegationTarget(participant, participant, snapshot.proposal_id)
            if option not in valid_options:
                raise InvalidVoteOption(participant, option, snapshot.proposal_id)
        for participant, target in self.delegations.items():
            if participant not in snapshot.participants or target not in snapshot.participants:
                raise InvalidDelegationTarget(participant, target, snapshot.proposal_id)

    def resolve(self) -> ResolutionOutcome:
        for participant, option in self.votes.items():
            self._state[participant] = DirectVote(option)

        for participant in sorted(self.delegations):
            if participant not in self._state:
                self._follow_chain(participant)

        results = {p: r for p, r in self._state.items() if not isinstance(r, _Mark)}
        stats = self._collect_stats(results)
        logger.info(
            "Resolved proposal %s: %d participants, %d contributing, %d cycles, %d orphaned chains",
            self.snapshot.proposal_id, stats.participants, stats.contributing,
            stats.cycles, stats.orphaned_chains,
        )
        return ResolutionOutcome(self.snapshot.proposal_id, results, stats, list(self._cycles))

    def _follow_chain(self, start: str):
        path: List[str] = []
        node = start
        while True:
            state = self._state.get(node)
            if state is _Mark.IN_PATH:
                # node is on the current path: everything from it onwards is the cycle
                cycle = path[path.index(node):]
                self._cycles.append(cycle)
                for member in cycle:
                    self._state[member] = Abstained(AbstentionReason.CYCLE)
                downstream = self._state[node]
                path = path[:path.index(node)]
                break
            if state is not None:
                downstream = state
                break
            target = self.delegations.get(node)
            if target is None:
                # reachable only as a delegation target, took no action
                downstream = Abstained(AbstentionReason.NO_ACTION)
                self._state[node] = downstream
                self._dead_ends.append(node)
                break
            self._state[node] = _Mark.IN_PATH
            path.append(node)
            node = target

        for member in reversed(path):
            downstream = self._inherit(member, downstream)
            self._state[member] = downstream

    def _inherit(self, participant: str, downstream: ResolutionResult) -> ResolutionResult:
        target = self.delegations[participant]
        if isinstance(downstream, DirectVote):
            return DelegatedVote(downstream.option, 1, target)
        if isinstance(downstream, DelegatedVote):
            return DelegatedVote(downstream.option, downstream.chain_length + 1, downstream.terminal_voter)
        if downstream.reason in (AbstentionReason.CYCLE, AbstentionReason.DELEGATES_INTO_CYCLE):
            return Abstained(AbstentionReason.DELEGATES_INTO_CYCLE)
        return Abstained(AbstentionReason.ORPHANED_CHAIN)

    def _collect_stats(self, results) -> ResolutionStats:
        stats = ResolutionStats(participants=len(results), delegators=len(self.delegations))
        stats.cycles = len(self._cycles)
        # one orphaned chain per dead end, however many delegators run into it
        stats.orphaned_chains = len(self._dead_ends)
        for result in results.values():
            if isinstance(result, DirectVote):
                stats.direct_voters += 1
            elif isinstance(result, DelegatedVote):
                stats.delegated_votes += 1
                stats.longest_chain = max(stats.longest_chain, result.chain_length)
            else:
                stats.abstentions += 1
                if result.reason is AbstentionReason.ORPHANED_CHAIN:
                    stats.orphaned_participants += 1
                elif result.reason is AbstentionReason.CYCLE:
                    stats.cyclic_participants += 1
                elif result.reason is AbstentionReason.DELEGATES_INTO_CYCLE:
                    stats.delegates_into_cycle += 1
        return stats


def resolve(snapshot: ProposalSnapshot) -> ResolutionOutcome:
    """Resolve every participant of ``snapshot`` who voted, delegated or was delegated to."""
    return DelegationResolver(snapshot).resolve()
