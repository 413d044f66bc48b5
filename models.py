"""
Database models for the WorkWise settlement engine.

Money columns are Numeric(12, 2) and come back as Decimal. Every status column is
a closed enum stored as its lowercase value.
"""

import enum
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

from exceptions import LedgerImmutableError

db = SQLAlchemy()


class UserType(str, enum.Enum):
    EMPLOYER = 'employer'
    GIG_WORKER = 'gig_worker'


class JobStatus(str, enum.Enum):
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class BidStatus(str, enum.Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    WITHDRAWN = 'withdrawn'


class ProjectStatus(str, enum.Enum):
    PENDING_CONTRACT = 'pending_contract'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    DISPUTED = 'disputed'
    CANCELLED = 'cancelled'


class ContractStatus(str, enum.Enum):
    PENDING_SIGNATURES = 'pending_signatures'
    ACTIVE = 'active'
    CANCELLED = 'cancelled'


class TransactionType(str, enum.Enum):
    ESCROW = 'escrow'
    RELEASE = 'release'
    REFUND = 'refund'
    DEPOSIT = 'deposit'


class TransactionStatus(str, enum.Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(enum_cls, native_enum=False, length=30,
                values_callable=lambda members: [m.value for m in members]),
        **kwargs
    )


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    full_name = db.Column(db.String(120))
    user_type = _enum_column(UserType, nullable=False, default=UserType.GIG_WORKER)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def display_name(self):
        return self.full_name or self.username


class Account(db.Model):
    """Escrow account owned by one user. Only EscrowLedger writes escrow_balance."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    escrow_balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)  # set by EscrowLedger from config
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('escrow_balance >= 0', name='ck_account_balance_non_negative'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'escrow_balance': _money(self.escrow_balance),
            'currency': self.currency,
            'updated_at': _iso(self.updated_at)
        }


class Job(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    required_skills = db.Column(db.Text)  # JSON list
    estimated_duration_days = db.Column(db.Integer)
    budget_min = db.Column(db.Numeric(12, 2))
    budget_max = db.Column(db.Numeric(12, 2))
    status = _enum_column(JobStatus, nullable=False, default=JobStatus.OPEN)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    employer = db.relationship('User', foreign_keys=[employer_id])

    def to_dict(self):
        return {
            'id': self.id,
            'employer_id': self.employer_id,
            'title': self.title,
            'description': self.description,
            'estimated_duration_days': self.estimated_duration_days,
            'budget_min': _money(self.budget_min),
            'budget_max': _money(self.budget_max),
            'status': self.status.value,
            'created_at': _iso(self.created_at)
        }


class Bid(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False, index=True)
    gig_worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    proposal_message = db.Column(db.Text)
    estimated_days = db.Column(db.Integer)
    status = _enum_column(BidStatus, nullable=False, default=BidStatus.PENDING)
    accepted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('job_id', 'gig_worker_id', name='unique_bid_per_worker'),
        db.CheckConstraint('amount > 0', name='ck_bid_amount_positive'),
    )

    job = db.relationship('Job')
    gig_worker = db.relationship('User', foreign_keys=[gig_worker_id])

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'gig_worker_id': self.gig_worker_id,
            'amount': _money(self.amount),
            'proposal_message': self.proposal_message,
            'estimated_days': self.estimated_days,
            'status': self.status.value,
            'accepted_at': _iso(self.accepted_at),
            'created_at': _iso(self.created_at)
        }


class Project(db.Model):
    """Financial record of an engagement, created once per accepted bid"""
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    bid_id = db.Column(db.Integer, db.ForeignKey('bid.id'), nullable=False, unique=True)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    agreed_amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = _enum_column(ProjectStatus, nullable=False, default=ProjectStatus.PENDING_CONTRACT)
    acceptance_key = db.Column(db.String(100), unique=True)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    payment_released = db.Column(db.Boolean, default=False, nullable=False)
    payment_released_at = db.Column(db.DateTime)
    disputed_at = db.Column(db.DateTime)
    disputed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    dispute_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    job = db.relationship('Job')
    bid = db.relationship('Bid')
    contract = db.relationship('Contract', back_populates='project', uselist=False)
    transactions = db.relationship('Transaction', back_populates='project',
                                   order_by='Transaction.id')

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'bid_id': self.bid_id,
            'employer_id': self.employer_id,
            'gig_worker_id': self.gig_worker_id,
            'agreed_amount': _money(self.agreed_amount),
            'platform_fee': _money(self.platform_fee),
            'net_amount': _money(self.net_amount),
            'status': self.status.value,
            'payment_released': self.payment_released,
            'is_disputed': self.status == ProjectStatus.DISPUTED,
            'dispute_reason': self.dispute_reason,
            'disputed_at': _iso(self.disputed_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'created_at': _iso(self.created_at)
        }


class Transaction(db.Model):
    """Append-only ledger entry. Never updated or deleted once flushed."""
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'))
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    payer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    payee_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    type = _enum_column(TransactionType, nullable=False)
    status = _enum_column(TransactionStatus, nullable=False, default=TransactionStatus.COMPLETED)
    reference = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    project = db.relationship('Project', back_populates='transactions')

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'payer_id': self.payer_id,
            'payee_id': self.payee_id,
            'amount': _money(self.amount),
            'platform_fee': _money(self.platform_fee),
            'net_amount': _money(self.net_amount),
            'type': self.type.value,
            'status': self.status.value,
            'reference': self.reference,
            'description': self.description,
            'created_at': _iso(self.created_at)
        }


@event.listens_for(Transaction, 'before_update')
def _reject_transaction_update(mapper, connection, target):
    raise LedgerImmutableError(target.id, 'update')


@event.listens_for(Transaction, 'before_delete')
def _reject_transaction_delete(mapper, connection, target):
    raise LedgerImmutableError(target.id, 'delete')


class Contract(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contract_number = db.Column(db.String(20), unique=True, nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, unique=True)
    bid_id = db.Column(db.Integer, db.ForeignKey('bid.id'), nullable=False)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    employer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_worker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    scope_of_work = db.Column(db.Text, nullable=False)
    total_payment = db.Column(db.Numeric(12, 2), nullable=False)
    project_start_date = db.Column(db.Date, nullable=False)
    project_end_date = db.Column(db.Date, nullable=False)
    employer_signed_at = db.Column(db.DateTime)
    gig_worker_signed_at = db.Column(db.DateTime)
    status = _enum_column(ContractStatus, nullable=False, default=ContractStatus.PENDING_SIGNATURES)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship('Project', back_populates='contract')

    def get_next_signer(self):
        """Employer signs first, then the gig worker"""
        if self.status != ContractStatus.PENDING_SIGNATURES:
            return None
        if not self.employer_signed_at:
            return 'employer'
        if not self.gig_worker_signed_at:
            return 'gig_worker'
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'contract_number': self.contract_number,
            'project_id': self.project_id,
            'bid_id': self.bid_id,
            'job_id': self.job_id,
            'employer_id': self.employer_id,
            'gig_worker_id': self.gig_worker_id,
            'scope_of_work': self.scope_of_work,
            'total_payment': _money(self.total_payment),
            'project_start_date': _iso(self.project_start_date),
            'project_end_date': _iso(self.project_end_date),
            'employer_signed': self.employer_signed_at is not None,
            'gig_worker_signed': self.gig_worker_signed_at is not None,
            'next_signer': self.get_next_signer(),
            'status': self.status.value,
            'created_at': _iso(self.created_at)
        }


class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)  # contract_ready, bid_rejected, payment, ...
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    related_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'related_id': self.related_id,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at)
        }
