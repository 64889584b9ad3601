# liquidvote/errors.py

# Error kinds surfaced to operators and API clients. Each error carries the
# proposal it concerns and whether repeating the request can succeed.


class LiquidVoteError(Exception):
    kind = "liquidvote_error"
    retryable = False

    def __init__(self, message=None, proposal_id=None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.proposal_id = proposal_id

    def to_dict(self):
        return {
            "error": self.kind,
            "message": self.message,
            "proposal_id": self.proposal_id,
            "retryable": self.retryable,
        }


class InvalidDelegationTarget(LiquidVoteError):
    kind = "invalid_delegation_target"

    def __init__(self, participant, target, proposal_id=None):
        super().__init__(
            f"Delegation target {target} of {participant} is not a participant of this proposal",
            proposal_id,
        )
        self.participant = participant
        self.target = target


class InvalidVoteOption(LiquidVoteError):
    kind = "invalid_vote_option"

    def __init__(self, participant, option, proposal_id=None):
        super().__init__(f"Option {option} chosen by {participant} does not exist", proposal_id)
        self.participant = participant
        self.option = option


class SelfDelegation(LiquidVoteError):
    kind = "self_delegation"

    def __init__(self, participant, proposal_id=None):
        super().__init__(f"{participant} cannot delegate to themselves", proposal_id)
        self.participant = participant


class NoActiveAction(LiquidVoteError):
    kind = "no_active_action"


class DelegationChainTooLong(LiquidVoteError):
    kind = "delegation_chain_too_long"


class ProposalNotFound(LiquidVoteError):
    kind = "proposal_not_found"


class ParticipantNotFound(LiquidVoteError):
    kind = "participant_not_found"


class VotingClosed(LiquidVoteError):
    kind = "voting_closed"


class VotingStillOpen(LiquidVoteError):
    kind = "voting_still_open"


class AlreadyResolved(LiquidVoteError):
    kind = "already_resolved"

    def __init__(self, proposal_id):
        super().__init__(f"Proposal {proposal_id} has already been resolved", proposal_id)


class ConcurrentResolutionInProgress(LiquidVoteError):
    kind = "already_resolving"
    retryable = True

    def __init__(self, proposal_id):
        super().__init__(f"Proposal {proposal_id} is already resolving", proposal_id)


class StoreUnavailable(LiquidVoteError):
    kind = "store_unavailable"
    retryable = True
