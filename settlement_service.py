"""
Settlement Service for WorkWise
Accepting a bid is one atomic unit of work:

1. reject every competing bid on the job
2. move the agreed amount out of the employer's escrow balance
3. create the project and its contract
4. take the job out of the open pool

Either all of it commits or none of it does. Concurrent acceptances on the same
job are serialised by the database (row lock on the job where the backend has
one, plus guarded status updates everywhere), so at most one bid per job is
ever accepted. Notifications go out only after commit and never undo it.

The same service covers the rest of the escrow lifecycle: bid submission,
decline/withdraw, deposits, contract signing, payment release, refunds and
disputes.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bid_state_machine import BidStateMachine
from clock import SystemClock
from config import SettlementConfig
from contract_issuer import ContractIssuer
from escrow_ledger import EscrowLedger, calculate_platform_fee, to_money
from exceptions import (
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidProjectStateError,
    JobNotOpenError,
    NotFoundError,
    SettlementError,
    StorageError,
    UnauthorizedError,
    ValidationError
)
from models import (
    db,
    Bid,
    Contract,
    Job,
    JobStatus,
    Project,
    ProjectStatus,
    TransactionType,
    User
)
from notifier import DatabaseNotifier, notify_safely

logger = logging.getLogger(__name__)


class SettlementResult:
    """Outcome of accept_bid"""

    def __init__(self, project, contract, rejected_bid_ids=None, replayed=False):
        self.project = project
        self.contract = contract
        self.rejected_bid_ids = rejected_bid_ids or []
        self.replayed = replayed

    def to_dict(self):
        return {
            'project': self.project.to_dict(),
            'contract': self.contract.to_dict() if self.contract else None,
            'rejected_bid_ids': self.rejected_bid_ids,
            'replayed': self.replayed
        }


class SettlementService:
    """
    Coordinates the escrow ledger, bid state machine and contract issuer.

    Collaborators are injected so tests can swap the clock, the notifier or a
    failing contract issuer.
    """

    def __init__(self, ledger=None, bids=None, issuer=None, notifier=None,
                 config=None, clock=None, audit_logger=None):
        self.config = config or SettlementConfig()
        self.clock = clock or SystemClock()
        self.ledger = ledger or EscrowLedger(self.config)
        self.bids = bids or BidStateMachine()
        self.issuer = issuer or ContractIssuer(self.clock, self.config)
        self.notifier = notifier or DatabaseNotifier()
        self.audit_logger = audit_logger

    # ------------------------------------------------------------------
    # Bid acceptance
    # ------------------------------------------------------------------

    def accept_bid(self, bid_id, acting_employer_id, idempotency_key=None):
        """
        Accept a bid and settle it into a project + contract.

        Args:
            bid_id: Bid being accepted
            acting_employer_id: User performing the acceptance (must own the job)
            idempotency_key: Optional client key; repeating a request with the
                same key returns the original result instead of failing

        Returns:
            SettlementResult

        Raises:
            NotFoundError, UnauthorizedError, InvalidBidStateError,
            JobNotOpenError, InsufficientFundsError, IdempotencyConflictError,
            StorageError
        """
        try:
            with self._transaction('accept_bid'):
                bid = self._get(Bid, bid_id, 'bid')
                job = bid.job
                if job.employer_id != acting_employer_id:
                    raise UnauthorizedError('Only the job owner can accept bids.',
                                            {'bid_id': bid_id, 'job_id': job.id})

                if idempotency_key:
                    replay = self._find_replay(idempotency_key, bid.id)
                    if replay:
                        return replay

                # Fail fast before touching anything
                self.bids.ensure_acceptable(bid, job)
                amount = to_money(bid.amount)
                current_balance = self.ledger.balance(job.employer_id)
                if current_balance < amount:
                    raise InsufficientFundsError(amount, current_balance)

                # Re-validate under the job lock, then mutate
                job = self._lock_job(job.id)
                now = self.clock.now()
                self.bids.accept(bid, job, accepted_at=now)
                self._claim_job(job)
                rejected = self.bids.reject_competing(job.id, bid.id)

                platform_fee = calculate_platform_fee(amount, self.config.platform_fee_rate)
                net_amount = amount - platform_fee
                project = Project(
                    job_id=job.id,
                    bid_id=bid.id,
                    employer_id=job.employer_id,
                    gig_worker_id=bid.gig_worker_id,
                    agreed_amount=amount,
                    platform_fee=platform_fee,
                    net_amount=net_amount,
                    status=ProjectStatus.PENDING_CONTRACT,
                    acceptance_key=idempotency_key
                )
                db.session.add(project)
                db.session.flush()

                account = self.ledger.find_account(job.employer_id)
                if account is None:
                    raise InsufficientFundsError(amount, Decimal('0.00'))
                escrow_entry = self.ledger.debit(
                    account, amount, TransactionType.ESCROW,
                    project=project,
                    payee_id=bid.gig_worker_id,
                    platform_fee=platform_fee,
                    net_amount=net_amount,
                    description=f"Escrow payment for project #{project.id}"
                )

                contract = self.issuer.issue(project, bid)
                escrow_reference = escrow_entry.reference
                rejected_ids = [b.id for b in rejected]
                rejected_workers = [b.gig_worker_id for b in rejected]
        except StorageError as e:
            if idempotency_key and isinstance(e.__cause__, IntegrityError):
                replay = self._find_replay(idempotency_key, bid_id)
                if replay:
                    return replay
            self._audit_refusal('bid_acceptance_failed', f"Accept bid {bid_id}", e,
                                'bid', bid_id, acting_employer_id)
            raise
        except SettlementError as e:
            self._audit_refusal('bid_acceptance_refused', f"Accept bid {bid_id}", e,
                                'bid', bid_id, acting_employer_id)
            raise
        except Exception as e:
            self._audit_refusal('bid_acceptance_failed', f"Accept bid {bid_id}",
                                SettlementError(str(e), {'exception': type(e).__name__}),
                                'bid', bid_id, acting_employer_id)
            raise

        logger.info(f"Bid {bid_id} settled: project {project.id}, contract {contract.contract_number}, "
                    f"{len(rejected_ids)} competing bid(s) rejected")
        result = SettlementResult(project, contract, rejected_ids)
        self._after_acceptance(result, job, rejected_workers, escrow_reference, acting_employer_id)
        return result

    def _find_replay(self, idempotency_key, bid_id):
        project = Project.query.filter_by(acceptance_key=idempotency_key).first()
        if project is None:
            return None
        if project.bid_id != bid_id:
            raise IdempotencyConflictError(idempotency_key, bid_id)
        logger.info(f"Replaying settlement for key {idempotency_key}: project {project.id}")
        return SettlementResult(project, project.contract, replayed=True)

    def _lock_job(self, job_id):
        return Job.query.filter_by(id=job_id).with_for_update().populate_existing().one()

    def _claim_job(self, job):
        updated = Job.query.filter(
            Job.id == job.id,
            Job.status == JobStatus.OPEN
        ).update({Job.status: JobStatus.IN_PROGRESS}, synchronize_session=False)
        db.session.refresh(job)
        if updated != 1:
            raise JobNotOpenError(job.id, job.status.value)

    def _after_acceptance(self, result, job, rejected_workers, escrow_reference, employer_id):
        project = result.project
        contract = result.contract
        payload = {
            'job_id': job.id,
            'job_title': job.title,
            'project_id': project.id,
            'contract_id': contract.id
        }
        notify_safely(self.notifier, project.gig_worker_id, 'contract_ready', payload)
        notify_safely(self.notifier, project.employer_id, 'contract_ready', payload)
        for worker_id in rejected_workers:
            notify_safely(self.notifier, worker_id, 'bid_rejected',
                          {'job_id': job.id, 'job_title': job.title})

        self._audit_financial('escrow_debit', f"Escrow funded for project #{project.id}",
                              project.agreed_amount, 'project', project.id, employer_id,
                              {'reference': escrow_reference,
                               'platform_fee': project.platform_fee,
                               'net_amount': project.net_amount,
                               'contract_number': contract.contract_number})

    # ------------------------------------------------------------------
    # Other bid actions
    # ------------------------------------------------------------------

    def submit_bid(self, job_id, worker_id, amount, proposal_message, estimated_days=None):
        with self._transaction('submit_bid'):
            job = self._get(Job, job_id, 'job')
            worker = self._get(User, worker_id, 'user')
            bid = self.bids.submit(job, worker, amount, proposal_message, estimated_days)
        return bid

    def decline_bid(self, bid_id, acting_employer_id):
        with self._transaction('decline_bid'):
            bid = self._get(Bid, bid_id, 'bid')
            job = bid.job
            if job.employer_id != acting_employer_id:
                raise UnauthorizedError('Only the job owner can reject bids.',
                                        {'bid_id': bid_id, 'job_id': job.id})
            self.bids.reject(bid)
        notify_safely(self.notifier, bid.gig_worker_id, 'bid_rejected',
                      {'job_id': job.id, 'job_title': job.title})
        return bid

    def withdraw_bid(self, bid_id, acting_worker_id):
        with self._transaction('withdraw_bid'):
            bid = self._get(Bid, bid_id, 'bid')
            if bid.gig_worker_id != acting_worker_id:
                raise UnauthorizedError('You can only withdraw your own bids.', {'bid_id': bid_id})
            self.bids.withdraw(bid)
        return bid

    # ------------------------------------------------------------------
    # Escrow funding, contract signing, release and refund
    # ------------------------------------------------------------------

    def deposit(self, user_id, amount):
        with self._transaction('deposit'):
            entry = self.ledger.deposit(user_id, amount)
            reference = entry.reference
            credited = entry.amount
        self._audit_financial('escrow_deposit', 'Escrow deposit', credited, 'account',
                              entry.account_id, user_id, {'reference': reference})
        return entry

    def sign_contract(self, contract_id, user_id):
        with self._transaction('sign_contract'):
            contract = self._get(Contract, contract_id, 'contract')
            # Same lock order as release and cancel: project row first, then its contract
            Project.query.filter_by(id=contract.project_id).with_for_update().populate_existing().one()
            db.session.refresh(contract)
            role = self.issuer.sign(contract, user_id)

        job = db.session.get(Job, contract.job_id)
        payload = {'job_title': job.title, 'contract_id': contract.id,
                   'project_id': contract.project_id,
                   'signer': role.replace('_', ' ')}
        if role == 'employer':
            notify_safely(self.notifier, contract.gig_worker_id, 'contract_signed', payload)
        else:
            notify_safely(self.notifier, contract.employer_id, 'contract_active', payload)
            notify_safely(self.notifier, contract.gig_worker_id, 'contract_active', payload)
        return contract

    def release_payment(self, project_id, acting_employer_id):
        """Pay the worker the project's net amount once the contract is active"""
        with self._transaction('release_payment'):
            project = self._lock_project(project_id, acting_employer_id)
            now = self.clock.now()
            updated = Project.query.filter(
                Project.id == project.id,
                Project.status == ProjectStatus.ACTIVE,
                Project.payment_released.is_(False)
            ).update({
                Project.status: ProjectStatus.COMPLETED,
                Project.payment_released: True,
                Project.payment_released_at: now,
                Project.completed_at: now
            }, synchronize_session=False)
            db.session.refresh(project)
            if updated != 1:
                raise InvalidProjectStateError(project.id, project.status.value, 'release payment')

            worker_account = self.ledger.get_or_create_account(project.gig_worker_id)
            entry = self.ledger.credit(
                worker_account, project.net_amount, TransactionType.RELEASE,
                project=project,
                payer_id=project.employer_id,
                platform_fee=project.platform_fee,
                net_amount=project.net_amount,
                description=f"Payment release for project #{project.id}"
            )
            project.job.status = JobStatus.COMPLETED
            reference = entry.reference

        notify_safely(self.notifier, project.gig_worker_id, 'payment_released', {
            'job_title': project.job.title,
            'project_id': project.id,
            'amount': project.net_amount
        })
        self._audit_financial('payment_release', f"Payment released for project #{project.id}",
                              project.net_amount, 'project', project.id, acting_employer_id,
                              {'reference': reference, 'platform_fee': project.platform_fee})
        return project

    def cancel_project(self, project_id, acting_employer_id):
        """Cancel before the contract is fully signed and refund the employer"""
        with self._transaction('cancel_project'):
            project = self._lock_project(project_id, acting_employer_id)
            updated = Project.query.filter(
                Project.id == project.id,
                Project.status == ProjectStatus.PENDING_CONTRACT
            ).update({Project.status: ProjectStatus.CANCELLED}, synchronize_session=False)
            db.session.refresh(project)
            if updated != 1:
                raise InvalidProjectStateError(project.id, project.status.value, 'cancel')

            if project.contract is not None:
                self.issuer.cancel(project.contract)
            employer_account = self.ledger.get_or_create_account(project.employer_id)
            entry = self.ledger.credit(
                employer_account, project.agreed_amount, TransactionType.REFUND,
                project=project,
                net_amount=project.agreed_amount,
                description=f"Refund for cancelled project #{project.id}"
            )
            project.job.status = JobStatus.CANCELLED
            reference = entry.reference

        notify_safely(self.notifier, project.gig_worker_id, 'project_cancelled', {
            'job_title': project.job.title,
            'project_id': project.id
        })
        self._audit_financial('escrow_refund', f"Escrow refunded for project #{project.id}",
                              project.agreed_amount, 'project', project.id, acting_employer_id,
                              {'reference': reference})
        return project

    def dispute_project(self, project_id, acting_user_id, reason):
        """
        Either party can dispute an active project. The escrowed amount stays
        frozen: release and cancel both refuse a disputed project.
        """
        reason = (reason or '').strip()
        if not reason:
            raise ValidationError('A reason is required to open a dispute')

        with self._transaction('dispute_project'):
            project = self._lock_project(project_id, acting_user_id, allow_worker=True)
            updated = Project.query.filter(
                Project.id == project.id,
                Project.status == ProjectStatus.ACTIVE,
                Project.payment_released.is_(False)
            ).update({
                Project.status: ProjectStatus.DISPUTED,
                Project.disputed_at: self.clock.now(),
                Project.disputed_by: acting_user_id,
                Project.dispute_reason: reason
            }, synchronize_session=False)
            db.session.refresh(project)
            if updated != 1:
                raise InvalidProjectStateError(project.id, project.status.value, 'open a dispute')

        other_party = (project.employer_id if acting_user_id == project.gig_worker_id
                       else project.gig_worker_id)
        notify_safely(self.notifier, other_party, 'project_disputed', {
            'job_title': project.job.title,
            'project_id': project.id
        })
        self._audit_financial('escrow_frozen', f"Escrow frozen by dispute on project #{project.id}",
                              project.agreed_amount, 'project', project.id, acting_user_id,
                              {'reason': reason})
        return project

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation):
        """
        One database transaction around the block. Typed errors pass through,
        SQLAlchemy failures become StorageError; either way nothing persists.
        """
        try:
            yield
            db.session.commit()
        except SettlementError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"{operation} failed and was rolled back: {str(e)}")
            raise StorageError(details={'operation': operation}) from e
        except Exception:
            db.session.rollback()
            logger.exception(f"{operation} failed and was rolled back")
            raise

    def _get(self, model, object_id, name):
        obj = db.session.get(model, object_id)
        if obj is None:
            raise NotFoundError(name, object_id)
        return obj

    def _lock_project(self, project_id, acting_user_id, allow_worker=False):
        project = Project.query.filter_by(id=project_id).with_for_update().populate_existing().first()
        if project is None:
            raise NotFoundError('project', project_id)
        if allow_worker and acting_user_id == project.gig_worker_id:
            return project
        if project.employer_id != acting_user_id:
            raise UnauthorizedError('Only the employer on this project can do that.'
                                    if not allow_worker else 'Only the parties to this project can do that.',
                                    {'project_id': project_id})
        return project

    def _audit_financial(self, event_type, action, amount, resource_type, resource_id, user_id, details):
        if not self.audit_logger:
            return
        try:
            self.audit_logger.log_financial(event_type, action, amount, resource_type, resource_id,
                                            details=details, user_id=user_id)
        except Exception as e:
            logger.error(f"Audit logging failed for {event_type}: {str(e)}")

    def _audit_refusal(self, event_type, action, error, resource_type, resource_id, user_id):
        if not self.audit_logger:
            return
        try:
            self.audit_logger.log_refusal(event_type, action, error, resource_type, resource_id,
                                          user_id=user_id)
        except Exception as e:
            logger.error(f"Audit logging failed for {event_type}: {str(e)}")
