"""Bid lifecycle: submission rules, guarded transitions and competing-bid rejection"""

from decimal import Decimal

import pytest

from bid_state_machine import (
    BidStateMachine,
    TERMINAL_STATES,
    TRANSITIONS,
    can_transition
)
from exceptions import InvalidBidStateError, JobNotOpenError, UnauthorizedError, ValidationError
from models import db, Bid, BidStatus, JobStatus, UserType

PROPOSAL = 'Seven years of Flask and React work; I can deliver the first milestone in a week.'


def accepted_bid_count(job_id):
    return Bid.query.filter_by(job_id=job_id, status=BidStatus.ACCEPTED).count()


@pytest.fixture
def machine():
    return BidStateMachine()


def test_every_status_has_transitions_defined():
    assert set(TRANSITIONS) == set(BidStatus)
    assert TERMINAL_STATES == {BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN}


def test_only_pending_bids_can_move():
    assert can_transition(BidStatus.PENDING, BidStatus.ACCEPTED)
    assert can_transition(BidStatus.PENDING, BidStatus.WITHDRAWN)
    for terminal in TERMINAL_STATES:
        for target in BidStatus:
            assert not can_transition(terminal, target)


def test_submit_creates_pending_bid(machine, employer, worker, make_job):
    job = make_job(employer)
    bid = machine.submit(job, worker, '350.499', PROPOSAL, estimated_days=5)
    db.session.commit()

    assert bid.status == BidStatus.PENDING
    assert bid.amount == Decimal('350.50')
    assert bid.estimated_days == 5


def test_submit_rules(machine, employer, worker, make_job, make_user):
    job = make_job(employer)

    with pytest.raises(UnauthorizedError):
        machine.submit(job, make_user(UserType.EMPLOYER), '100', PROPOSAL)
    with pytest.raises(ValidationError):
        machine.submit(job, worker, '0', PROPOSAL)
    with pytest.raises(ValidationError):
        machine.submit(job, worker, '100', 'too short')
    with pytest.raises(ValidationError):
        machine.submit(job, worker, '100', PROPOSAL, estimated_days=0)

    machine.submit(job, worker, '100', PROPOSAL)
    db.session.commit()
    with pytest.raises(ValidationError):
        machine.submit(job, worker, '120', PROPOSAL)


def test_submit_on_closed_job_is_refused(machine, employer, worker, make_job):
    job = make_job(employer, status=JobStatus.IN_PROGRESS)
    with pytest.raises(JobNotOpenError):
        machine.submit(job, worker, '100', PROPOSAL)


def test_accept_sets_status_and_timestamp(machine, employer, worker, make_job, make_bid, clock):
    job = make_job(employer)
    bid = make_bid(job, worker)

    machine.accept(bid, job, accepted_at=clock.now())
    db.session.commit()

    assert bid.status == BidStatus.ACCEPTED
    assert bid.accepted_at == clock.now()
    assert accepted_bid_count(job.id) == 1


def test_accept_requires_open_job(machine, employer, worker, make_job, make_bid):
    job = make_job(employer, status=JobStatus.COMPLETED)
    bid = make_bid(job, worker)
    with pytest.raises(JobNotOpenError):
        machine.accept(bid, job)


def test_rejected_bid_on_taken_job_reports_job_not_open(machine, employer, worker, make_job, make_bid):
    job = make_job(employer, status=JobStatus.IN_PROGRESS)
    rejected = make_bid(job, worker, status=BidStatus.REJECTED)

    with pytest.raises(JobNotOpenError) as excinfo:
        machine.ensure_acceptable(rejected, job)
    assert excinfo.value.current_status == 'in_progress'


def test_accepted_bid_stays_an_invalid_state_on_a_taken_job(machine, employer, worker, make_job, make_bid):
    job = make_job(employer, status=JobStatus.IN_PROGRESS)
    accepted = make_bid(job, worker, status=BidStatus.ACCEPTED)

    with pytest.raises(InvalidBidStateError):
        machine.ensure_acceptable(accepted, job)


@pytest.mark.parametrize('status', [BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN])
def test_terminal_bids_cannot_change(machine, employer, worker, make_job, make_bid, status):
    job = make_job(employer)
    bid = make_bid(job, worker, status=status)

    with pytest.raises(InvalidBidStateError):
        machine.accept(bid, job)
    with pytest.raises(InvalidBidStateError):
        machine.reject(bid)
    with pytest.raises(InvalidBidStateError):
        machine.withdraw(bid)


def test_stale_bid_is_detected_by_guarded_update(machine, employer, worker, make_job, make_bid):
    job = make_job(employer)
    bid = make_bid(job, worker)

    assert bid.status == BidStatus.PENDING
    # Another request withdraws the bid behind this session's back
    Bid.query.filter_by(id=bid.id).update({Bid.status: BidStatus.WITHDRAWN}, synchronize_session=False)

    with pytest.raises(InvalidBidStateError) as excinfo:
        machine.reject(bid)
    assert excinfo.value.current_status == 'withdrawn'
    assert bid.status == BidStatus.WITHDRAWN


def test_reject_competing_rejects_only_other_pending_bids(machine, employer, make_job, make_bid, make_user):
    job = make_job(employer)
    other_job = make_job(employer, title='Other job')
    winner = make_bid(job, make_user())
    loser_a = make_bid(job, make_user())
    loser_b = make_bid(job, make_user())
    withdrawn = make_bid(job, make_user(), status=BidStatus.WITHDRAWN)
    elsewhere = make_bid(other_job, make_user())

    rejected = machine.reject_competing(job.id, winner.id)
    db.session.commit()

    assert [b.id for b in rejected] == [loser_a.id, loser_b.id]
    assert winner.status == BidStatus.PENDING
    assert withdrawn.status == BidStatus.WITHDRAWN
    assert elsewhere.status == BidStatus.PENDING


def test_reject_competing_is_idempotent(machine, employer, make_job, make_bid, make_user):
    job = make_job(employer)
    winner = make_bid(job, make_user())
    make_bid(job, make_user())

    assert len(machine.reject_competing(job.id, winner.id)) == 1
    assert machine.reject_competing(job.id, winner.id) == []
    db.session.commit()

    statuses = sorted(b.status.value for b in Bid.query.filter_by(job_id=job.id))
    assert statuses == ['pending', 'rejected']
