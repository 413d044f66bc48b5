"""Contract issuance, numbering and the employer-then-worker signing order"""

import json
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from contract_issuer import ContractIssuer
from exceptions import ContractSigningError, InvalidProjectStateError, UnauthorizedError
from models import db, Contract, ContractStatus, Project, ProjectStatus, UserType


@pytest.fixture
def issuer(clock, config):
    return ContractIssuer(clock, config)


@pytest.fixture
def make_project(make_job, make_bid):
    def _make_project(employer, worker, job_kwargs=None, bid_kwargs=None):
        job = make_job(employer, **(job_kwargs or {}))
        bid = make_bid(job, worker, amount='1000.00', **(bid_kwargs or {}))
        project = Project(job_id=job.id, bid_id=bid.id, employer_id=employer.id,
                          gig_worker_id=worker.id, agreed_amount=Decimal('1000.00'),
                          platform_fee=Decimal('50.00'), net_amount=Decimal('950.00'),
                          status=ProjectStatus.PENDING_CONTRACT)
        db.session.add(project)
        db.session.flush()
        return project, bid

    return _make_project


def test_contract_dates_follow_job_duration(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker, job_kwargs={'estimated_duration_days': 14},
                                bid_kwargs={'estimated_days': 10})
    contract = issuer.issue(project, bid)
    db.session.commit()

    assert contract.project_start_date == date(2026, 3, 12)
    assert contract.project_end_date == date(2026, 3, 26)
    assert contract.total_payment == Decimal('1000.00')
    assert contract.status == ContractStatus.PENDING_SIGNATURES
    assert project.contract is contract


def test_contract_duration_falls_back_to_bid_then_default(issuer, employer, worker, make_project, make_user):
    project, bid = make_project(employer, worker, bid_kwargs={'estimated_days': 10})
    assert issuer.issue(project, bid).project_end_date == date(2026, 3, 22)

    other_project, other_bid = make_project(employer, make_user())
    assert issuer.issue(other_project, other_bid).project_end_date == date(2026, 3, 19)


def test_contract_numbers_are_sequential_per_year(issuer, clock, employer, make_project, make_user):
    first = issuer.issue(*make_project(employer, make_user()))
    second = issuer.issue(*make_project(employer, make_user()))
    clock.advance(timedelta(days=365))
    next_year = issuer.issue(*make_project(employer, make_user()))

    assert first.contract_number == 'WW-2026-000001'
    assert second.contract_number == 'WW-2026-000002'
    assert next_year.contract_number == 'WW-2027-000001'


def test_scope_of_work_lists_skills_and_proposal(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker, job_kwargs={
        'required_skills': json.dumps(['Flask', 'PostgreSQL'])
    })
    scope = issuer.issue(project, bid).scope_of_work

    assert 'The gig worker, Worker, agrees' in scope
    assert 'for the employer, Employer:' in scope
    assert 'Project: Landing page redesign' in scope
    assert '1. Flask\n2. PostgreSQL' in scope
    assert scope.endswith(bid.proposal_message)


def test_scope_of_work_tolerates_bad_skills_json(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker, job_kwargs={'required_skills': 'not json'})
    assert 'Required Skills' not in issuer.issue(project, bid).scope_of_work


def test_employer_signs_first_then_worker(issuer, clock, employer, worker, make_project):
    project, bid = make_project(employer, worker)
    contract = issuer.issue(project, bid)

    with pytest.raises(ContractSigningError):
        issuer.sign(contract, worker.id)

    assert issuer.sign(contract, employer.id) == 'employer'
    assert contract.get_next_signer() == 'gig_worker'
    assert project.status == ProjectStatus.PENDING_CONTRACT

    clock.advance(timedelta(hours=3))
    assert issuer.sign(contract, worker.id) == 'gig_worker'
    db.session.commit()

    assert contract.status == ContractStatus.ACTIVE
    assert contract.get_next_signer() is None
    assert project.status == ProjectStatus.ACTIVE
    assert project.started_at == clock.now()


def test_fully_signed_contract_cannot_be_signed_again(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker)
    contract = issuer.issue(project, bid)
    issuer.sign(contract, employer.id)
    issuer.sign(contract, worker.id)

    with pytest.raises(ContractSigningError):
        issuer.sign(contract, employer.id)


def test_only_parties_can_sign(issuer, employer, worker, make_project, make_user):
    contract = issuer.issue(*make_project(employer, worker))
    with pytest.raises(UnauthorizedError):
        issuer.sign(contract, make_user(UserType.EMPLOYER).id)


def test_cancel_only_while_pending_signatures(issuer, employer, worker, make_project, make_user):
    pending = issuer.issue(*make_project(employer, worker))
    issuer.cancel(pending)
    assert pending.status == ContractStatus.CANCELLED

    other_worker = make_user()
    active = issuer.issue(*make_project(employer, other_worker))
    issuer.sign(active, employer.id)
    issuer.sign(active, other_worker.id)
    with pytest.raises(ContractSigningError):
        issuer.cancel(active)


def test_worker_signature_does_not_revive_a_cancelled_contract(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker)
    contract = issuer.issue(project, bid)
    issuer.sign(contract, employer.id)
    db.session.commit()
    assert contract.status == ContractStatus.PENDING_SIGNATURES

    # Cancelled by another request after this session read the contract
    Contract.query.filter_by(id=contract.id).update({Contract.status: ContractStatus.CANCELLED},
                                                    synchronize_session=False)
    Project.query.filter_by(id=project.id).update({Project.status: ProjectStatus.CANCELLED},
                                                  synchronize_session=False)

    with pytest.raises(ContractSigningError):
        issuer.sign(contract, worker.id)
    assert contract.status == ContractStatus.CANCELLED
    assert contract.gig_worker_signed_at is None
    db.session.refresh(project)
    assert project.status == ProjectStatus.CANCELLED


def test_activation_requires_project_awaiting_contract(issuer, employer, worker, make_project):
    project, bid = make_project(employer, worker)
    contract = issuer.issue(project, bid)
    issuer.sign(contract, employer.id)
    Project.query.filter_by(id=project.id).update({Project.status: ProjectStatus.CANCELLED},
                                                  synchronize_session=False)
    db.session.commit()

    with pytest.raises(InvalidProjectStateError):
        issuer.sign(contract, worker.id)
    db.session.rollback()

    assert contract.status == ContractStatus.PENDING_SIGNATURES
    assert contract.gig_worker_signed_at is None


class TakenNumberIssuer(ContractIssuer):
    def __init__(self, clock, config, taken):
        super().__init__(clock, config)
        self.taken = taken

    def next_contract_number(self):
        return self.taken


def test_issue_gives_up_after_repeated_number_collisions(clock, config, issuer, employer, make_project, make_user):
    existing = issuer.issue(*make_project(employer, make_user()))
    stuck = TakenNumberIssuer(clock, config, existing.contract_number)

    with pytest.raises(IntegrityError):
        stuck.issue(*make_project(employer, make_user()))
    assert Contract.query.count() == 1
