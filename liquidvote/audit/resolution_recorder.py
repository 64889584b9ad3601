# liquidvote/audit/resolution_recorder.py

import logging
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from liquidvote import db
from liquidvote.database.models import ResolutionAudit, TallyEntry
from liquidvote.errors import AlreadyResolved, StoreUnavailable

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'completed'
STATUS_PARTIAL = 'partial'
STATUS_ERROR = 'error'


def outcome_status(outcome):
    """``partial`` when some delegated voting power never reached a direct voter."""
    return STATUS_PARTIAL if outcome.stats.lost_delegations else STATUS_COMPLETED


class ResolutionAuditRecorder:
    """Writes the single audit record and the tally of a proposal.

    Both are committed in one transaction. A proposal that already has a
    completed or partial audit is only re-recorded when ``force`` is given;
    an error audit never blocks a later run.
    """

    def existing(self, proposal_id):
        try:
            return db.session.get(ResolutionAudit, proposal_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreUnavailable("Could not read resolution audit", proposal_id) from e

    def ensure_resolvable(self, proposal_id, force=False):
        audit = self.existing(proposal_id)
        if audit is not None and audit.status != STATUS_ERROR and not force:
            raise AlreadyResolved(proposal_id)
        return audit

    def record(self, outcome, tally, duration_ms, trigger, snapshot_taken_at=None, force=False):
        proposal_id = outcome.proposal_id
        stats = outcome.stats
        try:
            previous = self.ensure_resolvable(proposal_id, force)
            if previous is not None:
                db.session.delete(previous)
            db.session.execute(delete(TallyEntry).where(TallyEntry.proposal_id == proposal_id))
            db.session.flush()

            audit = ResolutionAudit(
                proposal_id=proposal_id,
                status=outcome_status(outcome),
                triggered_by=trigger,
                forced=bool(force and previous is not None),
                resolved_at=datetime.utcnow(),
                snapshot_taken_at=snapshot_taken_at,
                duration_ms=round(duration_ms, 3),
                classifications=outcome.classifications(),
                **stats.to_dict(),
            )
            db.session.add(audit)
            for option, total in sorted(tally.totals.items()):
                db.session.add(TallyEntry(
                    proposal_id=proposal_id,
                    option=option,
                    label=tally.options[option - 1],
                    total=total,
                ))
            db.session.commit()
        except AlreadyResolved:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to record resolution of proposal %s: %s", proposal_id, e)
            raise StoreUnavailable("Could not write resolution audit and tally", proposal_id) from e

        logger.info("Recorded %s resolution of proposal %s", audit.status, proposal_id)
        return audit

    def record_failure(self, proposal_id, error_kind, trigger, duration_ms=0.0, snapshot_taken_at=None,
                       retryable=False):
        """Record an ``error`` audit without touching any existing tally or successful audit."""
        try:
            audit = db.session.get(ResolutionAudit, proposal_id)
            if audit is not None and audit.status != STATUS_ERROR:
                logger.warning(
                    "Not overwriting %s audit of proposal %s with error %s", audit.status, proposal_id, error_kind
                )
                return audit
            if audit is not None:
                db.session.delete(audit)
                db.session.flush()
            audit = ResolutionAudit(
                proposal_id=proposal_id,
                status=STATUS_ERROR,
                triggered_by=trigger,
                resolved_at=datetime.utcnow(),
                snapshot_taken_at=snapshot_taken_at,
                duration_ms=round(duration_ms, 3),
                error_kind=error_kind,
                retryable=retryable,
            )
            db.session.add(audit)
            db.session.commit()
            return audit
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to record error audit for proposal %s: %s", proposal_id, e)
            return None

    def tally_rows(self, proposal_id):
        return (
            db.session.query(TallyEntry)
            .filter_by(proposal_id=proposal_id)
            .order_by(TallyEntry.option)
            .all()
        )
