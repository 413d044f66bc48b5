"""
Bid State Machine
Validates and applies bid status transitions.

    pending ──► accepted
            ├─► rejected
            └─► withdrawn

accepted, rejected and withdrawn are terminal. Every transition is written as
UPDATE ... WHERE status = <expected>, so a bid changed by a concurrent request
is reported as a conflict instead of being silently overwritten.
"""

import logging
from datetime import datetime

from escrow_ledger import to_money
from exceptions import (
    InvalidBidStateError,
    JobNotOpenError,
    UnauthorizedError,
    ValidationError
)
from models import db, Bid, BidStatus, JobStatus, UserType

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BidStatus.PENDING: frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN}),
    BidStatus.ACCEPTED: frozenset(),
    BidStatus.REJECTED: frozenset(),
    BidStatus.WITHDRAWN: frozenset(),
}

_missing = set(BidStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Bid transitions undefined for: {sorted(s.value for s in _missing)}")

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current, target):
    return target in TRANSITIONS[current]


class BidStateMachine:
    """Bid lifecycle operations. Flushes only; the caller owns the transaction."""

    MIN_PROPOSAL_LENGTH = 50

    def submit(self, job, worker, amount, proposal_message, estimated_days=None):
        """
        Create a pending bid from a gig worker on an open job.

        Args:
            job: Job being bid on
            worker: User submitting the proposal
            amount: Proposed price (positive)
            proposal_message: Cover letter, at least MIN_PROPOSAL_LENGTH characters
            estimated_days: Worker's delivery estimate in days (>= 1 when given)

        Returns:
            Bid: the new pending bid
        """
        if job.status != JobStatus.OPEN:
            raise JobNotOpenError(job.id, job.status.value)
        if worker.user_type != UserType.GIG_WORKER:
            raise UnauthorizedError('Only gig workers can submit bids.')

        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError('Bid amount must be greater than zero', {'amount': amount})
        if not proposal_message or len(proposal_message.strip()) < self.MIN_PROPOSAL_LENGTH:
            raise ValidationError(
                f"Proposal must be at least {self.MIN_PROPOSAL_LENGTH} characters",
                {'min_length': self.MIN_PROPOSAL_LENGTH}
            )
        if estimated_days is not None and int(estimated_days) < 1:
            raise ValidationError('Estimated days must be at least 1')

        existing = Bid.query.filter_by(job_id=job.id, gig_worker_id=worker.id).first()
        if existing:
            raise ValidationError('You have already submitted a bid for this job.',
                                  {'bid_id': existing.id})

        bid = Bid(
            job_id=job.id,
            gig_worker_id=worker.id,
            amount=amount,
            proposal_message=proposal_message.strip(),
            estimated_days=int(estimated_days) if estimated_days is not None else None,
            status=BidStatus.PENDING
        )
        db.session.add(bid)
        db.session.flush()
        logger.info(f"Bid {bid.id} submitted by user {worker.id} on job {job.id} for {amount}")
        return bid

    def ensure_acceptable(self, bid, job):
        """Fail fast unless the bid is pending and its job is open"""
        if bid.status != BidStatus.PENDING:
            # Rejected because another bid already took the job
            if bid.status == BidStatus.REJECTED and job.status != JobStatus.OPEN:
                raise JobNotOpenError(job.id, job.status.value)
            raise InvalidBidStateError(bid.id, bid.status.value, BidStatus.ACCEPTED.value)
        if job.status != JobStatus.OPEN:
            raise JobNotOpenError(job.id, job.status.value)

    def accept(self, bid, job, accepted_at=None):
        """
        pending -> accepted. Requires the job to be open.

        If the guarded write loses a race, the job is re-read so the caller gets
        JobNotOpenError when another acceptance already took the job.
        """
        self.ensure_acceptable(bid, job)
        try:
            self._apply(bid, BidStatus.ACCEPTED, accepted_at=accepted_at or datetime.utcnow())
        except InvalidBidStateError:
            db.session.refresh(job)
            if job.status != JobStatus.OPEN:
                raise JobNotOpenError(job.id, job.status.value)
            raise

    def reject(self, bid):
        self._apply(bid, BidStatus.REJECTED)

    def withdraw(self, bid):
        self._apply(bid, BidStatus.WITHDRAWN)

    def reject_competing(self, job_id, except_bid_id):
        """
        Reject every other pending bid on the job.

        Idempotent: once the job is settled no bid is left pending and a second
        call changes nothing.

        Returns:
            list: bids moved to rejected by this call
        """
        pending = Bid.query.filter(
            Bid.job_id == job_id,
            Bid.id != except_bid_id,
            Bid.status == BidStatus.PENDING
        ).order_by(Bid.id).all()
        if not pending:
            return []

        Bid.query.filter(
            Bid.id.in_([b.id for b in pending]),
            Bid.status == BidStatus.PENDING
        ).update({
            Bid.status: BidStatus.REJECTED,
            Bid.updated_at: datetime.utcnow()
        }, synchronize_session=False)

        rejected = []
        for bid in pending:
            db.session.refresh(bid)
            if bid.status == BidStatus.REJECTED:
                rejected.append(bid)
        logger.info(f"Rejected {len(rejected)} competing bid(s) on job {job_id}")
        return rejected

    def _apply(self, bid, target, accepted_at=None):
        current = bid.status
        if not can_transition(current, target):
            raise InvalidBidStateError(bid.id, current.value, target.value)

        values = {Bid.status: target, Bid.updated_at: datetime.utcnow()}
        if accepted_at is not None:
            values[Bid.accepted_at] = accepted_at

        updated = Bid.query.filter(
            Bid.id == bid.id,
            Bid.status == current
        ).update(values, synchronize_session=False)
        db.session.refresh(bid)

        if updated != 1:
            raise InvalidBidStateError(bid.id, bid.status.value, target.value)
        logger.info(f"Bid {bid.id}: {current.value} -> {target.value}")
