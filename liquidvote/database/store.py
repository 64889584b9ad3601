# liquidvote/database/store.py

import logging
from datetime import datetime
from functools import wraps

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from liquidvote import db
from liquidvote.database.models import ParticipantAction, Proposal, ResolutionAudit, User
from liquidvote.delegation.actions import Delegate, ProposalSnapshot, Vote, apply_action
from liquidvote.errors import (
    DelegationChainTooLong,
    InvalidDelegationTarget,
    InvalidVoteOption,
    LiquidVoteError,
    ParticipantNotFound,
    ProposalNotFound,
    StoreUnavailable,
    VotingClosed,
)

logger = logging.getLogger(__name__)


def store_operation(func):
    """Turn database failures into StoreUnavailable and leave the session clean."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        proposal_id = args[0] if args else kwargs.get("proposal_id")
        try:
            return func(self, *args, **kwargs)
        except LiquidVoteError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Store operation %s failed for proposal %s: %s", func.__name__, proposal_id, e)
            raise StoreUnavailable(f"Store operation {func.__name__} failed", proposal_id) from e
    return wrapper


class VoteStore:
    """Current vote or delegation per participant and proposal.

    Writes are last-write-wins per participant-proposal pair: the existing row
    is locked for update and the unique constraint catches a concurrent first
    insert, which is then retried as an update.
    """

    def __init__(self, action_logger=None, max_chain_length=None):
        self.action_logger = action_logger
        self.max_chain_length = max_chain_length

    def _proposal(self, proposal_id):
        proposal = db.session.get(Proposal, proposal_id)
        if proposal is None:
            raise ProposalNotFound(f"Proposal {proposal_id} not found", proposal_id)
        return proposal

    def _member(self, proposal, wallet_address):
        user = db.session.get(User, wallet_address)
        if user is None or user.organization_id != proposal.organization_id:
            return None
        return user

    @staticmethod
    def _row_to_action(row):
        if row is None:
            return None
        if row.kind == 'vote':
            return Vote(row.participant, row.option_number)
        return Delegate(row.participant, row.delegate_to)

    @store_operation
    def get_proposal(self, proposal_id):
        return self._proposal(proposal_id)

    @store_operation
    def current_action(self, proposal_id, participant):
        row = db.session.execute(
            select(ParticipantAction).filter_by(proposal_id=proposal_id, participant=participant)
        ).scalar_one_or_none()
        return self._row_to_action(row)

    @store_operation
    def apply_action(self, proposal_id, action, now=None):
        """Apply ``action`` and return the participant's new active state (or None)."""
        proposal = self._proposal(proposal_id)
        if not proposal.is_open(now):
            raise VotingClosed(f"Voting on proposal {proposal_id} has closed", proposal_id)
        if self._member(proposal, action.participant) is None:
            raise ParticipantNotFound(
                f"{action.participant} is not a member of organization {proposal.organization_id}", proposal_id
            )
        if isinstance(action, Vote) and not 1 <= action.option <= len(proposal.options):
            raise InvalidVoteOption(action.participant, action.option, proposal_id)
        if isinstance(action, Delegate):
            if self._member(proposal, action.target) is None:
                raise InvalidDelegationTarget(action.participant, action.target, proposal_id)
            self._check_chain_length(proposal_id, action)

        for attempt in range(2):
            try:
                new_state = self._write_action(proposal_id, action)
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if attempt:
                    raise
                logger.info("Concurrent first action by %s on proposal %s, retrying", action.participant, proposal_id)

        logger.info("Applied %s by %s on proposal %s", type(action).__name__, action.participant, proposal_id)
        if self.action_logger is not None:
            self.action_logger.log_action(proposal_id, action)
        return new_state

    def _write_action(self, proposal_id, action):
        row = db.session.execute(
            select(ParticipantAction)
            .filter_by(proposal_id=proposal_id, participant=action.participant)
            .with_for_update()
        ).scalar_one_or_none()
        new_state = apply_action(self._row_to_action(row), action)

        if new_state is None:
            db.session.delete(row)
            return None
        if row is None:
            row = ParticipantAction(proposal_id=proposal_id, participant=action.participant)
            db.session.add(row)
        if isinstance(new_state, Vote):
            row.kind, row.option_number, row.delegate_to = 'vote', new_state.option, None
        else:
            row.kind, row.option_number, row.delegate_to = 'delegate', None, new_state.target
        row.updated_at = datetime.utcnow()
        db.session.flush()
        return new_state

    def _check_chain_length(self, proposal_id, action):
        if not self.max_chain_length:
            return
        delegations = dict(db.session.execute(
            select(ParticipantAction.participant, ParticipantAction.delegate_to)
            .filter_by(proposal_id=proposal_id, kind='delegate')
        ).all())
        delegations[action.participant] = action.target

        # hops from the new delegator down to the end of its chain
        downstream, node, seen = 0, action.participant, set()
        while node in delegations and node not in seen:
            seen.add(node)
            node = delegations[node]
            downstream += 1

        # deepest chain of delegators leading into the new delegator
        incoming = {}
        for source, target in delegations.items():
            incoming.setdefault(target, []).append(source)
        upstream, frontier, visited = 0, [action.participant], {action.participant}
        while True:
            frontier = [s for n in frontier for s in incoming.get(n, []) if s not in visited]
            if not frontier:
                break
            visited.update(frontier)
            upstream += 1

        if upstream + downstream > self.max_chain_length:
            raise DelegationChainTooLong(
                f"Delegation would create a chain of {upstream + downstream} hops "
                f"(maximum {self.max_chain_length})",
                proposal_id,
            )

    @store_operation
    def load_snapshot(self, proposal_id, now=None):
        """Read the proposal's complete current action state as an immutable snapshot."""
        proposal = self._proposal(proposal_id)
        members = db.session.execute(
            select(User.wallet_address).filter_by(organization_id=proposal.organization_id)
        ).scalars().all()
        rows = db.session.execute(
            select(ParticipantAction).filter_by(proposal_id=proposal_id)
        ).scalars().all()
        snapshot = ProposalSnapshot(
            proposal_id=proposal.id,
            organization_id=proposal.organization_id,
            options=tuple(proposal.options),
            voting_deadline=proposal.voting_deadline,
            participants=frozenset(members),
            actions={row.participant: self._row_to_action(row) for row in rows},
            taken_at=now or datetime.utcnow(),
        )
        db.session.commit()
        return snapshot

    @store_operation
    def due_proposals(self, now=None):
        """Ids of proposals past their deadline with no resolution yet, or whose last run failed retryably.

        A run rejected for good (invalid snapshot data) stays out of the sweep
        until an admin resolves it again.
        """
        query = (
            select(Proposal.id)
            .outerjoin(ResolutionAudit, ResolutionAudit.proposal_id == Proposal.id)
            .where(Proposal.voting_deadline <= (now or datetime.utcnow()))
            .where(
                (ResolutionAudit.proposal_id.is_(None))
                | ((ResolutionAudit.status == 'error') & ResolutionAudit.retryable.is_(True))
            )
            .order_by(Proposal.voting_deadline)
        )
        return list(db.session.execute(query).scalars().all())

    @store_operation
    def open_proposals(self, now=None):
        query = select(Proposal.id).where(Proposal.voting_deadline > (now or datetime.utcnow()))
        return list(db.session.execute(query).scalars().all())
