# liquidvote/delegation/actions.py

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple, Union

from liquidvote.errors import NoActiveAction, SelfDelegation

# A participant's action on a proposal is exactly one of these variants.
# Vote and Delegate are also the two possible *active* states; the remove
# variants only clear an active state of their own kind.


@dataclass(frozen=True)
class Vote:
    participant: str
    option: int


@dataclass(frozen=True)
class RemoveVote:
    participant: str


@dataclass(frozen=True)
class Delegate:
    participant: str
    target: str

    def __post_init__(self):
        if self.participant == self.target:
            raise SelfDelegation(self.participant)


@dataclass(frozen=True)
class RemoveDelegation:
    participant: str


VoteAction = Union[Vote, RemoveVote, Delegate, RemoveDelegation]
ActiveAction = Union[Vote, Delegate]


def apply_action(current: Optional[ActiveAction], action: VoteAction) -> Optional[ActiveAction]:
    """Return the participant's active state after ``action``.

    Vote and Delegate replace whatever was active before, so a participant
    never holds a vote and a delegation at the same time.
    """
    if current is not None and current.participant != action.participant:
        raise ValueError("Action and current state belong to different participants")
    if isinstance(action, (Vote, Delegate)):
        return action
    if isinstance(action, RemoveVote):
        if not isinstance(current, Vote):
            raise NoActiveAction(f"{action.participant} has no active vote")
        return None
    if isinstance(action, RemoveDelegation):
        if not isinstance(current, Delegate):
            raise NoActiveAction(f"{action.participant} has no active delegation")
        return None
    raise TypeError(f"Unknown vote action: {action!r}")


def action_to_dict(action: VoteAction) -> dict:
    data = {"type": type(action).__name__, "participant": action.participant}
    if isinstance(action, Vote):
        data["option"] = action.option
    elif isinstance(action, Delegate):
        data["target"] = action.target
    return data


def action_from_dict(data: dict) -> VoteAction:
    kind = data.get("type")
    if kind == "Vote":
        return Vote(data["participant"], int(data["option"]))
    if kind == "Delegate":
        return Delegate(data["participant"], data["target"])
    if kind == "RemoveVote":
        return RemoveVote(data["participant"])
    if kind == "RemoveDelegation":
        return RemoveDelegation(data["participant"])
    raise ValueError(f"Unknown vote action type: {kind}")


@dataclass(frozen=True)
class ProposalSnapshot:
    """Point-in-time copy of everything resolution needs for one proposal.

    ``participants`` is the organization's membership at snapshot time and
    ``actions`` maps each participant to their active Vote or Delegate.
    """
    proposal_id: int
    organization_id: str
    options: Tuple[str, ...]
    voting_deadline: datetime
    participants: FrozenSet[str]
    actions: Mapping[str, ActiveAction]
    taken_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        for participant, action in self.actions.items():
            if action.participant != participant:
                raise ValueError(f"Action stored under {participant} belongs to {action.participant}")
        # freeze the mapping so a snapshot cannot be altered after the read
        object.__setattr__(self, "actions", MappingProxyType(dict(self.actions)))
        object.__setattr__(self, "participants", frozenset(self.participants))
        object.__setattr__(self, "options", tuple(self.options))

    @property
    def option_numbers(self):
        return range(1, len(self.options) + 1)

    def votes(self):
        return {p: a.option for p, a in self.actions.items() if isinstance(a, Vote)}

    def delegations(self):
        return {p: a.target for p, a in self.actions.items() if isinstance(a, Delegate)}

    def to_dict(self):
        return {
            "proposal_id": self.proposal_id,
            "organization_id": self.organization_id,
            "options": list(self.options),
            "voting_deadline": self.voting_deadline.isoformat(),
            "participants": sorted(self.participants),
            "actions": [action_to_dict(self.actions[p]) for p in sorted(self.actions)],
            "taken_at": self.taken_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data):
        actions = {}
        for item in data.get("actions", []):
            action = action_from_dict(item)
            actions[action.participant] = action
        return cls(
            proposal_id=data["proposal_id"],
            organization_id=data["organization_id"],
            options=tuple(data["options"]),
            voting_deadline=datetime.fromisoformat(data["voting_deadline"]),
            participants=frozenset(data["participants"]),
            actions=actions,
            taken_at=datetime.fromisoformat(data["taken_at"]),
        )
