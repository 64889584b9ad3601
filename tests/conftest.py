# tests/conftest.py
import os
import tempfile

# Configure the app before the liquidvote package builds it at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATELIMIT_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ACTION_LOG_DIR", tempfile.mkdtemp(prefix="liquidvote-actions-"))
os.environ.setdefault("BACKUP_OUTDIR", tempfile.mkdtemp(prefix="liquidvote-backups-"))
os.environ.setdefault("SESSION_ISSUER_SECRET", "test-issuer-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-that-is-long-enough")
os.environ.setdefault("RESOLUTION_WORKERS", "1")

from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from liquidvote import app as flask_app, db
from liquidvote.database.models import Organization, Proposal, User
from liquidvote.delegation.actions import Delegate, ProposalSnapshot


def wallet(n):
    return "0x" + format(n, "040x")


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def org(app):
    organization = Organization(organization_id="acme", organization_name="Acme Cooperative")
    db.session.add(organization)
    db.session.commit()
    return organization


@pytest.fixture
def members(org):
    """Five members of ``org``: wallets 1..5, unique ids user1..user5."""
    users = []
    for n in range(1, 6):
        user = User(
            wallet_address=wallet(n),
            unique_id=f"user{n}",
            first_name=f"First{n}",
            last_name=f"Last{n}",
            organization_id=org.organization_id,
        )
        db.session.add(user)
        users.append(user)
    db.session.commit()
    return users


@pytest.fixture
def make_proposal(members):
    def _make(title="Budget allocation 2026", deadline=None, options=("Parks", "Roads", "Schools")):
        proposal = Proposal(
            title=title,
            description="How the cooperative should spend the surplus of the last financial year.",
            options=list(options),
            voting_deadline=deadline or datetime.utcnow() + timedelta(days=1),
            organization_id="acme",
            created_by=members[0].wallet_address,
        )
        db.session.add(proposal)
        db.session.commit()
        return proposal
    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(address, role="member"):
        token = create_access_token(identity=address, additional_claims={"role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


def snapshot_of(actions, participants=None, options=("Yes", "No", "Abstain"), proposal_id=1):
    """Build a snapshot from Vote/Delegate actions; participants default to everyone mentioned."""
    mentioned = set()
    for action in actions:
        mentioned.add(action.participant)
        if isinstance(action, Delegate):
            mentioned.add(action.target)
    return ProposalSnapshot(
        proposal_id=proposal_id,
        organization_id="acme",
        options=options,
        voting_deadline=datetime(2026, 1, 1),
        participants=frozenset(participants if participants is not None else mentioned),
        actions={action.participant: action for action in actions},
        taken_at=datetime(2026, 1, 1, 0, 0, 1),
    )
