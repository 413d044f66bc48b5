"""
Escrow Ledger for WorkWise
Owns every escrow balance mutation and records each one as an immutable
Transaction entry.

The ledger never commits. All of its operations run inside the caller's
transaction (the settlement service, or a route handler for deposits) and only
flush, so a later failure in the same unit of work rolls them back.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import or_

from config import SettlementConfig
from exceptions import InsufficientFundsError, ValidationError
from models import db, Account, Transaction, TransactionType, TransactionStatus

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
MAX_AMOUNT = Decimal('9999999999.99')

REFERENCE_PREFIXES = {
    TransactionType.ESCROW: 'ESC',
    TransactionType.RELEASE: 'REL',
    TransactionType.REFUND: 'REF',
    TransactionType.DEPOSIT: 'DEP'
}


def to_money(value) -> Decimal:
    """Quantize any numeric input to currency precision (2 places, half-up)"""
    if value is None:
        raise ValidationError('Amount is required')
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount: {value!r}")
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except ArithmeticError:
        raise ValidationError(f"Invalid amount: {value!r}")

    # Numeric(12, 2) holds at most ten integer digits
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"Amount exceeds the maximum of {MAX_AMOUNT}",
                              {'maximum_amount': MAX_AMOUNT})
    return amount


def calculate_platform_fee(amount, rate) -> Decimal:
    """
    Platform fee withheld from an agreed amount

    Args:
        amount: Agreed amount
        rate: Fee rate as a fraction (0.05 for 5%)

    Returns:
        Decimal: Fee rounded to currency precision
    """
    return to_money(to_money(amount) * Decimal(str(rate)))


def generate_reference(transaction_type) -> str:
    """Unique ledger reference, e.g. ESC-20261019-3FA2C1D09B7E"""
    prefix = REFERENCE_PREFIXES.get(transaction_type, 'TXN')
    date_part = datetime.utcnow().strftime('%Y%m%d')
    return f"{prefix}-{date_part}-{uuid.uuid4().hex[:12].upper()}"


class EscrowLedger:
    """
    Balance mutations for escrow accounts.

    debit() refuses to take a balance below zero; the guard is a conditional
    UPDATE evaluated by the database, so two concurrent debits can never both
    pass on the same funds.
    """

    def __init__(self, config=None):
        self.config = config or SettlementConfig()

    def find_account(self, user_id):
        return Account.query.filter_by(user_id=user_id).first()

    def get_or_create_account(self, user_id) -> Account:
        account = self.find_account(user_id)
        if account is None:
            account = Account(user_id=user_id, escrow_balance=Decimal('0.00'),
                              currency=self.config.currency)
            db.session.add(account)
            db.session.flush()
            logger.info(f"Opened escrow account {account.id} for user {user_id}")
        return account

    def balance(self, user_id) -> Decimal:
        account = self.find_account(user_id)
        return to_money(account.escrow_balance) if account else Decimal('0.00')

    def debit(self, account, amount, transaction_type=TransactionType.ESCROW, project=None,
              payee_id=None, platform_fee=Decimal('0.00'), net_amount=None, description=None):
        """
        Move funds out of an account.

        Raises:
            InsufficientFundsError: balance is lower than amount
            ValidationError: amount is not positive
        """
        amount = self._positive(amount)
        updated = Account.query.filter(
            Account.id == account.id,
            Account.escrow_balance >= amount
        ).update({
            Account.escrow_balance: Account.escrow_balance - amount,
            Account.updated_at: datetime.utcnow()
        }, synchronize_session=False)

        db.session.refresh(account)
        if updated != 1:
            current = to_money(account.escrow_balance)
            logger.warning(f"Debit of {amount} refused for account {account.id}: balance {current}")
            raise InsufficientFundsError(amount, current)

        return self._append(
            account, transaction_type, amount,
            payer_id=account.user_id,
            payee_id=payee_id,
            project=project,
            platform_fee=platform_fee,
            net_amount=net_amount,
            description=description
        )

    def credit(self, account, amount, transaction_type, project=None, payer_id=None,
               platform_fee=Decimal('0.00'), net_amount=None, description=None):
        """Move funds into an account"""
        amount = self._positive(amount)
        Account.query.filter(Account.id == account.id).update({
            Account.escrow_balance: Account.escrow_balance + amount,
            Account.updated_at: datetime.utcnow()
        }, synchronize_session=False)
        db.session.refresh(account)

        return self._append(
            account, transaction_type, amount,
            payer_id=payer_id,
            payee_id=account.user_id,
            project=project,
            platform_fee=platform_fee,
            net_amount=net_amount,
            description=description
        )

    def deposit(self, user_id, amount, description=None):
        """Top up an employer's escrow balance (caller commits)"""
        amount = to_money(amount)
        if amount < self.config.min_deposit_amount:
            raise ValidationError(
                f"Minimum deposit is {self.config.min_deposit_amount:.2f}",
                {'minimum_amount': self.config.min_deposit_amount, 'amount': amount}
            )
        account = self.get_or_create_account(user_id)
        return self.credit(account, amount, TransactionType.DEPOSIT,
                           description=description or 'Escrow deposit')

    def history(self, user_id, limit=50):
        """Newest-first ledger entries where the user paid or was paid"""
        return Transaction.query.filter(
            or_(Transaction.payer_id == user_id, Transaction.payee_id == user_id)
        ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()

    def _positive(self, amount):
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError('Amount must be greater than zero', {'amount': amount})
        return amount

    def _append(self, account, transaction_type, amount, payer_id, payee_id, project,
                platform_fee, net_amount, description):
        platform_fee = to_money(platform_fee)
        entry = Transaction(
            project_id=project.id if project is not None else None,
            account_id=account.id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            platform_fee=platform_fee,
            net_amount=to_money(net_amount) if net_amount is not None else amount - platform_fee,
            type=transaction_type,
            status=TransactionStatus.COMPLETED,
            reference=generate_reference(transaction_type),
            description=description
        )
        db.session.add(entry)
        db.session.flush()
        logger.info(
            f"Ledger {transaction_type.value} {entry.reference}: {amount} on account {account.id}, "
            f"balance now {account.escrow_balance}"
        )
        return entry
