"""
Contract Issuer
Generates the signable contract for a settled project and tracks signatures.
Signing order: employer first, then gig worker. The contract (and its project)
becomes active once both parties have signed.
"""

import json
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from clock import SystemClock
from config import SettlementConfig
from exceptions import ContractSigningError, InvalidProjectStateError, UnauthorizedError
from models import db, Contract, ContractStatus, Project, ProjectStatus

logger = logging.getLogger(__name__)


class ContractIssuer:
    CONTRACT_PREFIX = 'WW'
    MAX_NUMBER_ATTEMPTS = 3

    def __init__(self, clock=None, config=None):
        self.clock = clock or SystemClock()
        self.config = config or SettlementConfig()

    def issue(self, project, bid):
        """
        Create a pending_signatures contract for a project and its accepted bid.

        The project starts after the signing grace period; its length comes from
        the job's duration estimate, then the bid's, then the configured default.
        Storage errors propagate so the enclosing settlement rolls back.
        """
        job = bid.job
        start_date = (self.clock.now() + timedelta(days=self.config.signing_grace_days)).date()
        duration_days = (job.estimated_duration_days
                         or bid.estimated_days
                         or self.config.default_contract_days)
        end_date = start_date + timedelta(days=duration_days)
        scope_of_work = self.build_scope_of_work(job, bid)

        # Settlements on different jobs can read the same last number; the
        # unique constraint decides and the loser retries inside a savepoint
        for attempt in range(1, self.MAX_NUMBER_ATTEMPTS + 1):
            contract = Contract(
                contract_number=self.next_contract_number(),
                project_id=project.id,
                bid_id=bid.id,
                job_id=job.id,
                employer_id=project.employer_id,
                gig_worker_id=project.gig_worker_id,
                scope_of_work=scope_of_work,
                total_payment=project.agreed_amount,
                project_start_date=start_date,
                project_end_date=end_date,
                status=ContractStatus.PENDING_SIGNATURES
            )
            try:
                with db.session.begin_nested():
                    db.session.add(contract)
                    db.session.flush()
                break
            except IntegrityError:
                if attempt == self.MAX_NUMBER_ATTEMPTS:
                    raise
                logger.warning(f"Contract number {contract.contract_number} already taken, "
                               f"retrying (attempt {attempt})")

        logger.info(f"Contract {contract.contract_number} issued for project {project.id} "
                    f"({start_date} to {end_date})")
        return contract

    def next_contract_number(self):
        """Sequential per year: WW-2026-000001, WW-2026-000002, ..."""
        prefix = f"{self.CONTRACT_PREFIX}-{self.clock.now().year}-"
        last = Contract.query.filter(
            Contract.contract_number.like(f"{prefix}%")
        ).order_by(Contract.contract_number.desc()).first()
        sequence = int(last.contract_number[-6:]) + 1 if last else 1
        return f"{prefix}{sequence:06d}"

    def build_scope_of_work(self, job, bid):
        worker_name = bid.gig_worker.display_name if bid.gig_worker else 'the gig worker'
        employer_name = job.employer.display_name if job.employer else 'the employer'

        lines = [
            f"The gig worker, {worker_name}, agrees to provide the following services "
            f"for the employer, {employer_name}:",
            '',
            f"Project: {job.title or 'the project'}",
            '',
            f"Description: {job.description or 'No description provided'}",
            ''
        ]

        skills = []
        if job.required_skills:
            try:
                decoded = json.loads(job.required_skills)
                if isinstance(decoded, list):
                    skills = [str(s) for s in decoded if s]
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse required skills for job {job.id}")
        if skills:
            lines.append('Required Skills/Technologies:')
            lines.extend(f"{index}. {skill}" for index, skill in enumerate(skills, start=1))
            lines.append('')

        lines.append('Additional Details from Proposal:')
        lines.append(bid.proposal_message or '')
        return '\n'.join(lines)

    def sign(self, contract, user_id):
        """
        Record a party's signature.

        Returns:
            str: the role that signed ('employer' or 'gig_worker')
        """
        if user_id == contract.employer_id:
            role = 'employer'
        elif user_id == contract.gig_worker_id:
            role = 'gig_worker'
        else:
            raise UnauthorizedError('Only the parties to this contract can sign it.')

        if contract.status != ContractStatus.PENDING_SIGNATURES:
            raise ContractSigningError(
                f"Contract is {contract.status.value} and cannot be signed",
                {'contract_id': contract.id, 'contract_status': contract.status.value}
            )

        expected = contract.get_next_signer()
        if role != expected:
            raise ContractSigningError(
                f"Waiting for the {expected.replace('_', ' ')} to sign",
                {'contract_id': contract.id, 'next_signer': expected}
            )

        now = self.clock.now()
        if role == 'employer':
            self._guarded_update(contract, {Contract.employer_signed_at: now},
                                 Contract.employer_signed_at.is_(None))
        else:
            self._guarded_update(contract, {
                Contract.gig_worker_signed_at: now,
                Contract.status: ContractStatus.ACTIVE
            }, Contract.employer_signed_at.isnot(None), Contract.gig_worker_signed_at.is_(None))
            self._activate_project(contract, now)

        logger.info(f"Contract {contract.contract_number} signed by {role} (user {user_id})")
        return role

    def cancel(self, contract):
        if contract.status != ContractStatus.PENDING_SIGNATURES:
            raise ContractSigningError(
                f"Contract is {contract.status.value} and cannot be cancelled",
                {'contract_id': contract.id, 'contract_status': contract.status.value}
            )
        self._guarded_update(contract, {Contract.status: ContractStatus.CANCELLED})
        logger.info(f"Contract {contract.contract_number} cancelled")

    def _guarded_update(self, contract, values, *conditions):
        """Write only if the contract is still awaiting signatures as this session saw it"""
        updated = Contract.query.filter(
            Contract.id == contract.id,
            Contract.status == ContractStatus.PENDING_SIGNATURES,
            *conditions
        ).update(values, synchronize_session=False)
        db.session.refresh(contract)
        if updated != 1:
            raise ContractSigningError(
                f"Contract changed concurrently and is now {contract.status.value}",
                {'contract_id': contract.id, 'contract_status': contract.status.value}
            )

    def _activate_project(self, contract, started_at):
        updated = Project.query.filter(
            Project.id == contract.project_id,
            Project.status == ProjectStatus.PENDING_CONTRACT
        ).update({
            Project.status: ProjectStatus.ACTIVE,
            Project.started_at: started_at
        }, synchronize_session=False)
        project = contract.project
        db.session.refresh(project)
        if updated != 1:
            raise InvalidProjectStateError(project.id, project.status.value, 'activate')
