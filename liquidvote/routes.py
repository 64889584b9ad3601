# liquidvote/routes.py

# JSON API: wallet sessions, profiles, proposals, voting/delegation actions
# and resolution results. Resolution itself lives in liquidvote.resolution.

from flask import request, jsonify
import hmac
import logging
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from flask_limiter.util import get_remote_address
from flask_jwt_extended import (
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
    verify_jwt_in_request,
)

from liquidvote import app, db, limiter
from liquidvote.audit.action_log import ActionLogger
from liquidvote.audit.resolution_recorder import STATUS_ERROR, ResolutionAuditRecorder
from liquidvote.authentication.rbac import Permission, require_permission
from liquidvote.database.models import Organization, ParticipantAction, Proposal, ResolutionAudit, User
from liquidvote.database.store import VoteStore
from liquidvote.delegation.actions import Delegate, RemoveDelegation, RemoveVote, Vote, action_to_dict
from liquidvote.errors import LiquidVoteError, ProposalNotFound, StoreUnavailable
from liquidvote.operations.backup_manager import TRIGGER_MANUAL, SnapshotCoordinator
from liquidvote.resolution import TRIGGER_ADMIN, ResolutionService
from liquidvote.security.input_validator import InputValidator, ValidationFailed
from liquidvote.security.token_manager import TokenManager

logger = logging.getLogger(__name__)

validator = InputValidator()
token_manager = TokenManager(app)
action_logger = ActionLogger(
    log_dir=app.config['ACTION_LOG_DIR'],
    signing_key_pem=app.config['ACTION_LOG_SIGNING_KEY'],
)
vote_store = VoteStore(action_logger, max_chain_length=app.config['MAX_DELEGATION_CHAIN_LENGTH'])
audit_recorder = ResolutionAuditRecorder()
snapshot_coordinator = SnapshotCoordinator(
    vote_store,
    outdir=app.config['BACKUP_OUTDIR'],
    aes256_key_hex=app.config['BACKUP_AES256_KEY'],
)
resolution_service = ResolutionService(
    vote_store,
    audit_recorder,
    snapshots=snapshot_coordinator,
    app=app,
    workers=app.config['RESOLUTION_WORKERS'],
)

ERROR_STATUS = {
    'invalid_delegation_target': 400,
    'invalid_vote_option': 400,
    'self_delegation': 400,
    'delegation_chain_too_long': 400,
    'proposal_not_found': 404,
    'participant_not_found': 404,
    'no_active_action': 404,
    'voting_closed': 409,
    'voting_still_open': 409,
    'already_resolved': 409,
    'already_resolving': 409,
    'store_unavailable': 503,
}

MAX_PAGE_SIZE = 100


@app.errorhandler(LiquidVoteError)
def handle_liquidvote_error(error):
    return jsonify(error.to_dict()), ERROR_STATUS.get(error.kind, 400)


@app.errorhandler(ValidationFailed)
def handle_validation_failed(error):
    return jsonify({'error': 'validation_failed', 'details': error.details}), 400


@app.errorhandler(SQLAlchemyError)
def handle_store_failure(error):
    db.session.rollback()
    logger.error("Unhandled store failure: %s", error)
    return jsonify(StoreUnavailable("Store unavailable").to_dict()), 503


def wallet_rate_key():
    try:
        verify_jwt_in_request(optional=True)
        identity = get_jwt_identity()
    except Exception:
        identity = None
    return identity or get_remote_address()


def vote_action_limit():
    return app.config['VOTE_ACTION_RATE_LIMIT']


def _succeeded(response):
    return response.status_code < 400


# one shared budget for vote, delegate and remove actions per wallet
vote_action_rate_limit = limiter.shared_limit(
    vote_action_limit, scope="vote_actions", key_func=wallet_rate_key, deduct_when=_succeeded
)


def _current_user():
    wallet = get_jwt_identity()
    return db.session.get(User, wallet) if wallet else None


def _paging():
    try:
        limit = min(int(request.args.get('limit', 20)), MAX_PAGE_SIZE)
        offset = max(int(request.args.get('offset', 0)), 0)
    except ValueError:
        raise ValidationFailed(["limit and offset must be integers"])
    return max(limit, 1), offset


def _member_proposal(proposal_id, user):
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None or user is None or proposal.organization_id != user.organization_id:
        raise ProposalNotFound(f"Proposal {proposal_id} not found", proposal_id)
    return proposal


def _profile_required():
    user = _current_user()
    if user is None:
        return None, (jsonify({'error': 'profile_not_found', 'exists': False}), 404)
    return user, None


def _has_pending_participation(user):
    """True while the user voted, delegated or is delegated to on an unresolved proposal."""
    query = (
        select(ParticipantAction.id)
        .join(Proposal, Proposal.id == ParticipantAction.proposal_id)
        .outerjoin(ResolutionAudit, ResolutionAudit.proposal_id == Proposal.id)
        .where(or_(
            ParticipantAction.participant == user.wallet_address,
            ParticipantAction.delegate_to == user.wallet_address,
        ))
        .where(or_(ResolutionAudit.proposal_id.is_(None), ResolutionAudit.status == STATUS_ERROR))
        .limit(1)
    )
    return db.session.execute(query).first() is not None


# ================ SESSION ================

@app.route('/api/session', methods=['POST'])
def create_session():
    # Called by the wallet-signature verifier once it has checked the signature
    issuer_secret = app.config['SESSION_ISSUER_SECRET'] or ''
    provided = request.headers.get('X-Session-Issuer-Secret', '')
    if not issuer_secret or not hmac.compare_digest(issuer_secret, provided):
        return jsonify({'error': 'forbidden'}), 403

    data = request.get_json(silent=True) or {}
    try:
        address = validator.normalize_wallet_address(data.get('address'))
    except ValueError as e:
        raise ValidationFailed([str(e)])

    user = db.session.get(User, address)
    role = user.role if user else 'member'
    token = token_manager.generate_token(address, role=role)
    logger.info("Session issued for %s", address)
    resp = jsonify({'authenticated': True, 'address': address, 'access_token': token})
    set_access_cookies(resp, token)
    return resp


@app.route('/api/logout', methods=['POST'])
def logout():
    resp = jsonify({'authenticated': False})
    unset_jwt_cookies(resp)
    return resp


@app.route('/api/me')
@jwt_required(optional=True)
def me():
    wallet = get_jwt_identity()
    if not wallet:
        return jsonify({'authenticated': False})
    return jsonify({'authenticated': True, 'address': wallet, 'role': token_manager.current_role()})


# ================ USERS ================

@app.route('/api/user/exists')
def user_exists():
    address = request.args.get('address')
    if not address:
        return jsonify({'error': 'Wallet address is required'}), 400
    if not validator.validate_wallet_address(address):
        return jsonify({'error': 'Invalid wallet address format'}), 400
    address = address.lower()
    return jsonify({'exists': db.session.get(User, address) is not None, 'address': address})


@app.route('/api/user/unique-id/check')
def unique_id_check():
    unique_id = request.args.get('id')
    if not unique_id:
        return jsonify({'error': 'Unique ID is required'}), 400
    if not validator.validate_unique_id(unique_id):
        return jsonify({
            'error': 'Invalid format. Use only letters, numbers, and underscores (max 16 characters)',
            'available': False,
        }), 400
    unique_id = unique_id.lower()
    taken = db.session.execute(select(User.wallet_address).filter_by(unique_id=unique_id)).first()
    return jsonify({'available': taken is None, 'unique_id': unique_id})


@app.route('/api/user/organization/check')
def organization_check():
    organization_id = request.args.get('id')
    if not organization_id:
        return jsonify({'error': 'Organization ID is required'}), 400
    organization_id = organization_id.lower()
    return jsonify({
        'exists': db.session.get(Organization, organization_id) is not None,
        'organization_id': organization_id,
    })


@app.route('/api/user/organizations')
def organizations():
    orgs = db.session.execute(select(Organization).order_by(Organization.organization_name)).scalars().all()
    return jsonify({'organizations': [org.to_dict() for org in orgs]})


@app.route('/api/user/profile', methods=['GET'])
@jwt_required()
def get_profile():
    user, error = _profile_required()
    if error:
        return error
    return jsonify({'user': user.to_dict(), 'exists': True})


@app.route('/api/user/create', methods=['POST'])
@jwt_required()
def create_profile():
    wallet = get_jwt_identity()
    cleaned = validator.validate_profile_data(request.get_json(silent=True) or {})

    if db.session.get(User, wallet) is not None:
        return jsonify({'error': 'User profile already exists for this wallet address'}), 409
    if db.session.execute(select(User.wallet_address).filter_by(unique_id=cleaned['unique_id'])).first():
        return jsonify({'error': 'Unique ID is already taken'}), 409
    organization_id = cleaned.get('organization_id')
    if organization_id and db.session.get(Organization, organization_id) is None:
        return jsonify({'error': 'Organization does not exist'}), 400

    user = User(
        wallet_address=wallet,
        unique_id=cleaned['unique_id'],
        first_name=cleaned['first_name'],
        last_name=cleaned['last_name'],
        organization_id=organization_id,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'Unique ID is already taken'}), 409
    logger.info("User created: %s (%s)", user.unique_id, wallet)
    return jsonify({'success': True, 'user': user.to_dict(), 'message': 'User profile created successfully'}), 201


@app.route('/api/user/profile', methods=['PUT'])
@jwt_required()
def update_profile():
    user, error = _profile_required()
    if error:
        return error
    cleaned = validator.validate_profile_data(request.get_json(silent=True) or {}, partial=True)

    if 'unique_id' in cleaned and cleaned['unique_id'] != user.unique_id:
        if db.session.execute(select(User.wallet_address).filter_by(unique_id=cleaned['unique_id'])).first():
            return jsonify({'error': 'Unique ID is already taken'}), 409
    if 'organization_id' in cleaned and cleaned['organization_id'] != user.organization_id:
        if cleaned['organization_id'] and db.session.get(Organization, cleaned['organization_id']) is None:
            return jsonify({'error': 'Organization does not exist'}), 400
        if _has_pending_participation(user):
            return jsonify({'error': 'Organization cannot change while you take part in an unresolved proposal'}), 409

    for field, value in cleaned.items():
        setattr(user, field, value)
    db.session.commit()
    return jsonify({'success': True, 'user': user.to_dict()})


@app.route('/api/user/profile', methods=['DELETE'])
@jwt_required()
def delete_profile():
    user, error = _profile_required()
    if error:
        return error
    created = db.session.execute(select(Proposal.id).filter_by(created_by=user.wallet_address).limit(1)).first()
    # votes and delegations stay as cast so a forced re-resolution sees the same graph
    acted = db.session.execute(
        select(ParticipantAction.id)
        .where(or_(
            ParticipantAction.participant == user.wallet_address,
            ParticipantAction.delegate_to == user.wallet_address,
        ))
        .limit(1)
    ).first()
    if created or acted:
        return jsonify({'error': 'Profile is referenced by proposals, votes or delegations'}), 409
    db.session.delete(user)
    db.session.commit()
    logger.info("User deleted: %s", user.wallet_address)
    return jsonify({'success': True})


# ================ PROPOSALS ================

@app.route('/api/proposals/create', methods=['POST'])
@require_permission(Permission.CREATE_PROPOSAL)
def create_proposal():
    cleaned = validator.validate_proposal_data(request.get_json(silent=True) or {})
    user = _current_user()
    if user is None:
        return jsonify({'error': 'User profile not found. Please complete your profile setup.'}), 404
    if not user.organization_id:
        return jsonify({'error': 'You must be part of an organization to create proposals'}), 403

    proposal = Proposal(
        title=cleaned['title'],
        description=cleaned['description'],
        voting_deadline=cleaned['voting_deadline'],
        options=cleaned['options'],
        organization_id=user.organization_id,
        created_by=user.wallet_address,
    )
    db.session.add(proposal)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'A proposal with this title already exists in your organization'}), 409
    logger.info(
        'Proposal created: "%s" with %d options by %s', proposal.title, len(proposal.options), user.unique_id
    )
    return jsonify({'success': True, 'proposal': proposal.to_dict(), 'message': 'Proposal created successfully'}), 201


@app.route('/api/proposals/my-proposals')
@jwt_required()
def my_proposals():
    limit, offset = _paging()
    proposals = db.session.execute(
        select(Proposal)
        .filter_by(created_by=get_jwt_identity())
        .order_by(Proposal.created_at.desc())
        .limit(limit).offset(offset)
    ).scalars().all()
    return jsonify({
        'proposals': [p.to_dict() for p in proposals],
        'limit': limit,
        'offset': offset,
        'count': len(proposals),
    })


@app.route('/api/proposals/organization')
@jwt_required()
def organization_proposals():
    user = _current_user()
    if user is None or not user.organization_id:
        return jsonify({'error': 'You must be part of an organization to view proposals'}), 403
    limit, offset = _paging()
    proposals = db.session.execute(
        select(Proposal)
        .filter_by(organization_id=user.organization_id)
        .order_by(Proposal.voting_deadline)
        .limit(limit).offset(offset)
    ).scalars().all()
    return jsonify({
        'proposals': [p.to_dict() for p in proposals],
        'organization_id': user.organization_id,
        'limit': limit,
        'offset': offset,
        'count': len(proposals),
    })


@app.route('/api/proposals/can-create')
@jwt_required()
def can_create():
    user = _current_user()
    return jsonify({
        'can_create': bool(user and user.organization_id),
        'organization_id': user.organization_id if user else None,
        'organization_name': user.organization.organization_name if user and user.organization else None,
    })


@app.route('/api/proposals/<int:proposal_id>', methods=['GET'])
@jwt_required()
def get_proposal(proposal_id):
    proposal = _member_proposal(proposal_id, _current_user())
    data = proposal.to_dict()
    data['is_open'] = proposal.is_open()
    audit = db.session.get(ResolutionAudit, proposal_id)
    data['resolution_status'] = audit.status if audit else None
    return jsonify({'proposal': data})


@app.route('/api/proposals/<int:proposal_id>', methods=['DELETE'])
@jwt_required()
def delete_proposal(proposal_id):
    proposal = _member_proposal(proposal_id, _current_user())
    if proposal.created_by != get_jwt_identity():
        return jsonify({'error': 'Only the creator can delete a proposal'}), 403
    if not proposal.is_open() or proposal.actions:
        return jsonify({'error': 'Proposals can only be deleted while open and before any vote'}), 409
    db.session.delete(proposal)
    db.session.commit()
    return jsonify({'success': True})


# ================ VOTING ================

def _action_response(proposal_id, state):
    return jsonify({
        'success': True,
        'proposal_id': proposal_id,
        'action': action_to_dict(state) if state else None,
    })


@app.route('/api/proposals/<int:proposal_id>/vote', methods=['POST'])
@vote_action_rate_limit
@require_permission(Permission.VOTE)
def cast_vote(proposal_id):
    proposal = _member_proposal(proposal_id, _current_user())
    data = request.get_json(silent=True) or {}
    try:
        option = validator.validate_option_number(data.get('option'), len(proposal.options))
    except ValueError as e:
        raise ValidationFailed([str(e)])
    state = vote_store.apply_action(proposal_id, Vote(get_jwt_identity(), option))
    return _action_response(proposal_id, state)


@app.route('/api/proposals/<int:proposal_id>/vote', methods=['DELETE'])
@vote_action_rate_limit
@require_permission(Permission.VOTE)
def remove_vote(proposal_id):
    _member_proposal(proposal_id, _current_user())
    state = vote_store.apply_action(proposal_id, RemoveVote(get_jwt_identity()))
    return _action_response(proposal_id, state)


@app.route('/api/proposals/<int:proposal_id>/delegate', methods=['POST'])
@vote_action_rate_limit
@require_permission(Permission.DELEGATE)
def delegate_vote(proposal_id):
    user = _current_user()
    _member_proposal(proposal_id, user)
    target = (request.get_json(silent=True) or {}).get('target')
    if not isinstance(target, str) or not target.strip():
        raise ValidationFailed(["target is required (wallet address or unique_id)"])
    target = target.strip().lower()
    if not validator.validate_wallet_address(target):
        # unique_id handle
        wallet = db.session.execute(select(User.wallet_address).filter_by(unique_id=target)).scalar_one_or_none()
        if wallet is None:
            return jsonify({'error': 'participant_not_found', 'proposal_id': proposal_id}), 404
        target = wallet
    state = vote_store.apply_action(proposal_id, Delegate(user.wallet_address, target))
    return _action_response(proposal_id, state)


@app.route('/api/proposals/<int:proposal_id>/delegate', methods=['DELETE'])
@vote_action_rate_limit
@require_permission(Permission.DELEGATE)
def remove_delegation(proposal_id):
    _member_proposal(proposal_id, _current_user())
    state = vote_store.apply_action(proposal_id, RemoveDelegation(get_jwt_identity()))
    return _action_response(proposal_id, state)


@app.route('/api/proposals/<int:proposal_id>/my-action')
@jwt_required()
def my_action(proposal_id):
    _member_proposal(proposal_id, _current_user())
    state = vote_store.current_action(proposal_id, get_jwt_identity())
    return jsonify({'proposal_id': proposal_id, 'action': action_to_dict(state) if state else None})


# ================ RESULTS ================

@app.route('/api/proposals/<int:proposal_id>/results')
@require_permission(Permission.VIEW_RESULTS)
def proposal_results(proposal_id):
    proposal = _member_proposal(proposal_id, _current_user())
    audit = db.session.get(ResolutionAudit, proposal_id)
    if audit is None or audit.status == STATUS_ERROR:
        return jsonify({
            'error': 'not_resolved',
            'proposal_id': proposal_id,
            'status': audit.status if audit else None,
        }), 409

    rows = audit_recorder.tally_rows(proposal_id)
    totals = [{'option': r.option, 'label': r.label, 'total': r.total} for r in rows]
    best = max((r.total for r in rows), default=0)
    winners = [r.option for r in rows if best and r.total == best]
    wallet = get_jwt_identity()
    return jsonify({
        'proposal_id': proposal.id,
        'status': audit.status,
        'resolved_at': audit.resolved_at.isoformat(),
        'totals': totals,
        'total_cast': sum(r.total for r in rows),
        'winners': winners,
        'tie': len(winners) > 1,
        'counts': audit.to_dict()['counts'],
        'my_result': (audit.classifications or {}).get(wallet),
    })


@app.route('/api/proposals/<int:proposal_id>/resolve', methods=['POST'])
@require_permission(Permission.TRIGGER_RESOLUTION)
def resolve_proposal(proposal_id):
    _member_proposal(proposal_id, _current_user())
    force = bool((request.get_json(silent=True) or {}).get('force', False))
    report = resolution_service.resolve_proposal(proposal_id, force=force, trigger=TRIGGER_ADMIN)
    return jsonify({'success': True, 'resolution': report.to_dict()})


@app.route('/api/proposals/<int:proposal_id>/audit')
@require_permission(Permission.VIEW_AUDIT)
def proposal_audit(proposal_id):
    _member_proposal(proposal_id, _current_user())
    audit = db.session.get(ResolutionAudit, proposal_id)
    if audit is None:
        return jsonify({'error': 'not_resolved', 'proposal_id': proposal_id}), 404
    return jsonify({
        'audit': audit.to_dict(include_classifications=True),
        'action_log': action_logger.entries(proposal_id),
    })


@app.route('/api/proposals/<int:proposal_id>/snapshots', methods=['POST'])
@require_permission(Permission.MANAGE_SNAPSHOTS)
def manual_snapshot(proposal_id):
    _member_proposal(proposal_id, _current_user())
    meta = snapshot_coordinator.capture(proposal_id, TRIGGER_MANUAL)
    if meta is None:
        return jsonify({'error': 'snapshot_failed', 'proposal_id': proposal_id, 'retryable': True}), 503
    return jsonify({'success': True, 'snapshot': meta}), 201


@app.route('/api/proposals/<int:proposal_id>/snapshots', methods=['GET'])
@require_permission(Permission.MANAGE_SNAPSHOTS)
def list_snapshots(proposal_id):
    _member_proposal(proposal_id, _current_user())
    return jsonify({'snapshots': snapshot_coordinator.list_snapshots(proposal_id)})
