# liquidvote/delegation/tally.py

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from liquidvote.delegation.resolver import ResolutionOutcome
from liquidvote.errors import InvalidVoteOption

# Every non-abstaining participant adds exactly one unit to the option they
# ended up with, however long their delegation chain was.


@dataclass(frozen=True)
class TallyResult:
    proposal_id: int
    options: Tuple[str, ...]
    totals: Dict[int, int]
    abstentions: int

    @property
    def total_cast(self) -> int:
        return sum(self.totals.values())

    @property
    def winners(self) -> Tuple[int, ...]:
        """Options with the highest total. Empty when nobody voted."""
        if self.total_cast == 0:
            return ()
        best = max(self.totals.values())
        return tuple(option for option, total in sorted(self.totals.items()) if total == best)

    @property
    def is_tie(self) -> bool:
        return len(self.winners) > 1

    def to_dict(self):
        return {
            "proposal_id": self.proposal_id,
            "totals": [
                {"option": option, "label": self.options[option - 1], "total": total}
                for option, total in sorted(self.totals.items())
            ],
            "total_cast": self.total_cast,
            "abstentions": self.abstentions,
            "winners": list(self.winners),
            "tie": self.is_tie,
        }


def tally_outcome(outcome: ResolutionOutcome, options: Sequence[str]) -> TallyResult:
    totals = {option: 0 for option in range(1, len(options) + 1)}
    abstentions = 0
    for participant, result in outcome.results.items():
        if not result.contributes:
            abstentions += 1
            continue
        if result.option not in totals:
            raise InvalidVoteOption(participant, result.option, outcome.proposal_id)
        totals[result.option] += 1
    return TallyResult(outcome.proposal_id, tuple(options), totals, abstentions)
