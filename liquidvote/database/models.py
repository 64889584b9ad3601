# liquidvote/database/models.py

from liquidvote import db
from datetime import datetime

# Relational schema for organizations, participants, proposals, the current
# vote/delegation per participant and the per-proposal resolution results.


class Organization(db.Model):
    __tablename__ = 'organizations'
    organization_id = db.Column(db.String(64), primary_key=True)
    organization_name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    members = db.relationship('User', backref='organization', lazy=True)

    def to_dict(self):
        return {'organization_id': self.organization_id, 'organization_name': self.organization_name}


class User(db.Model):
    __tablename__ = 'users'
    wallet_address = db.Column(db.String(42), primary_key=True)  # lower-cased 0x address
    unique_id = db.Column(db.String(16), unique=True, nullable=False)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    organization_id = db.Column(db.String(64), db.ForeignKey('organizations.organization_id'), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='member')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'wallet_address': self.wallet_address,
            'unique_id': self.unique_id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'organization_id': self.organization_id,
            'organization_name': self.organization.organization_name if self.organization else None,
            'role': self.role,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Proposal(db.Model):
    __tablename__ = 'proposals'
    __table_args__ = (
        db.UniqueConstraint('organization_id', 'title', name='uq_proposal_title_per_org'),
    )
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(1000), nullable=False)
    options = db.Column(db.JSON, nullable=False)  # ordered labels, option n is options[n - 1]
    voting_deadline = db.Column(db.DateTime, nullable=False)
    organization_id = db.Column(db.String(64), db.ForeignKey('organizations.organization_id'), nullable=False)
    created_by = db.Column(db.String(42), db.ForeignKey('users.wallet_address'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    actions = db.relationship('ParticipantAction', backref='proposal', lazy=True, cascade='all, delete-orphan')

    def is_open(self, now=None):
        return (now or datetime.utcnow()) < self.voting_deadline

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'options': [{'option': i, 'label': label} for i, label in enumerate(self.options, start=1)],
            'voting_deadline': self.voting_deadline.isoformat(),
            'organization_id': self.organization_id,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ParticipantAction(db.Model):
    """The one active vote or delegation of a participant on a proposal."""
    __tablename__ = 'participant_actions'
    __table_args__ = (
        db.UniqueConstraint('proposal_id', 'participant', name='uq_action_per_participant'),
        db.CheckConstraint("kind IN ('vote', 'delegate')", name='ck_action_kind'),
        db.CheckConstraint(
            "(kind = 'vote' AND option_number IS NOT NULL AND delegate_to IS NULL) OR "
            "(kind = 'delegate' AND option_number IS NULL AND delegate_to IS NOT NULL)",
            name='ck_vote_xor_delegation',
        ),
        db.CheckConstraint('delegate_to IS NULL OR delegate_to <> participant', name='ck_no_self_delegation'),
    )
    id = db.Column(db.Integer, primary_key=True)
    proposal_id = db.Column(db.Integer, db.ForeignKey('proposals.id'), nullable=False, index=True)
    participant = db.Column(db.String(42), db.ForeignKey('users.wallet_address'), nullable=False)
    kind = db.Column(db.String(10), nullable=False)
    option_number = db.Column(db.Integer, nullable=True)
    delegate_to = db.Column(db.String(42), db.ForeignKey('users.wallet_address'), nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<ParticipantAction {self.kind} by {self.participant} on {self.proposal_id}>'


class ResolutionAudit(db.Model):
    __tablename__ = 'resolution_audits'
    proposal_id = db.Column(db.Integer, db.ForeignKey('proposals.id'), primary_key=True)
    status = db.Column(db.String(10), nullable=False)  # completed / partial / error
    triggered_by = db.Column(db.String(20), nullable=False)
    forced = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    snapshot_taken_at = db.Column(db.DateTime, nullable=True)
    duration_ms = db.Column(db.Float, nullable=False, default=0.0)
    participants = db.Column(db.Integer, nullable=False, default=0)
    direct_voters = db.Column(db.Integer, nullable=False, default=0)
    delegators = db.Column(db.Integer, nullable=False, default=0)
    delegated_votes = db.Column(db.Integer, nullable=False, default=0)
    abstentions = db.Column(db.Integer, nullable=False, default=0)
    orphaned_chains = db.Column(db.Integer, nullable=False, default=0)
    orphaned_participants = db.Column(db.Integer, nullable=False, default=0)
    cycles = db.Column(db.Integer, nullable=False, default=0)
    cyclic_participants = db.Column(db.Integer, nullable=False, default=0)
    delegates_into_cycle = db.Column(db.Integer, nullable=False, default=0)
    longest_chain = db.Column(db.Integer, nullable=False, default=0)
    classifications = db.Column(db.JSON, nullable=True)
    error_kind = db.Column(db.String(50), nullable=True)
    retryable = db.Column(db.Boolean, nullable=False, default=False)  # error audits only

    def to_dict(self, include_classifications=False):
        data = {
            'proposal_id': self.proposal_id,
            'status': self.status,
            'trigger': self.triggered_by,
            'forced': self.forced,
            'resolved_at': self.resolved_at.isoformat(),
            'duration_ms': self.duration_ms,
            'counts': {
                'participants': self.participants,
                'direct_voters': self.direct_voters,
                'delegators': self.delegators,
                'delegated_votes': self.delegated_votes,
                'abstentions': self.abstentions,
                'orphaned_chains': self.orphaned_chains,
                'orphaned_participants': self.orphaned_participants,
                'cycles': self.cycles,
                'cyclic_participants': self.cyclic_participants,
                'delegates_into_cycle': self.delegates_into_cycle,
                'longest_chain': self.longest_chain,
            },
            'error_kind': self.error_kind,
            'retryable': self.retryable,
        }
        if include_classifications:
            data['classifications'] = self.classifications or {}
        return data


class TallyEntry(db.Model):
    __tablename__ = 'tally_entries'
    proposal_id = db.Column(db.Integer, db.ForeignKey('proposals.id'), primary_key=True)
    option = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(200), nullable=False)
    total = db.Column(db.Integer, nullable=False, default=0)
