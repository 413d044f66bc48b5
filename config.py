"""
Business-rule configuration for escrow settlement.

Rates and thresholds are injected from the environment rather than hard-coded:
- PLATFORM_FEE_RATE: fraction withheld from the agreed amount (default 0.05)
- MIN_DEPOSIT_AMOUNT: smallest escrow top-up accepted (default 50.00)
- CONTRACT_SIGNING_GRACE_DAYS: days between acceptance and project start (default 2)
- DEFAULT_CONTRACT_DAYS: contract length when neither job nor bid gives one (default 7)
- CURRENCY: ISO code for new escrow accounts (default PHP)
"""

import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

load_dotenv()


def _decimal_env(name, default):
    raw = os.environ.get(name, default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}")


class SettlementConfig:
    """Settlement settings read from the environment"""

    def __init__(self, platform_fee_rate=None, min_deposit_amount=None,
                 signing_grace_days=None, default_contract_days=None, currency=None):
        self.platform_fee_rate = (Decimal(str(platform_fee_rate)) if platform_fee_rate is not None
                                  else _decimal_env('PLATFORM_FEE_RATE', '0.05'))
        self.min_deposit_amount = (Decimal(str(min_deposit_amount)) if min_deposit_amount is not None
                                   else _decimal_env('MIN_DEPOSIT_AMOUNT', '50.00'))
        self.signing_grace_days = (signing_grace_days if signing_grace_days is not None
                                   else int(os.environ.get('CONTRACT_SIGNING_GRACE_DAYS', 2)))
        self.default_contract_days = (default_contract_days if default_contract_days is not None
                                      else int(os.environ.get('DEFAULT_CONTRACT_DAYS', 7)))
        self.currency = currency or os.environ.get('CURRENCY', 'PHP')

        if not Decimal('0') <= self.platform_fee_rate < Decimal('1'):
            raise ValueError(f"PLATFORM_FEE_RATE must be in [0, 1), got {self.platform_fee_rate}")
        if self.min_deposit_amount < 0:
            raise ValueError('MIN_DEPOSIT_AMOUNT cannot be negative')

    def to_dict(self):
        return {
            'platform_fee_rate': float(self.platform_fee_rate),
            'min_deposit_amount': float(self.min_deposit_amount),
            'signing_grace_days': self.signing_grace_days,
            'default_contract_days': self.default_contract_days,
            'currency': self.currency
        }
