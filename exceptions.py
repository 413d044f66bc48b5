"""
Custom exceptions for the settlement engine.

Exception Hierarchy:
    SettlementError (base)
    ├── UnauthorizedError         - actor is not a party allowed to act (403)
    ├── NotFoundError             - bid, job, project or contract missing (404)
    ├── ValidationError           - malformed request values (400)
    ├── InsufficientFundsError    - escrow balance below the bid amount (402)
    ├── InvalidBidStateError      - bid already accepted/rejected/withdrawn (409)
    ├── JobNotOpenError           - job no longer accepting bids (409)
    ├── IdempotencyConflictError  - key reused for a different bid (409)
    ├── ContractSigningError      - out-of-order or repeated signature (409)
    ├── InvalidProjectStateError  - release, cancel or dispute in the wrong project state (409)
    ├── LedgerImmutableError      - attempt to change a ledger entry (500)
    └── StorageError              - commit failure or lost connection (503)

Usage:
    Every error is raised synchronously and aborts the enclosing database
    transaction. The HTTP layer turns them into JSON bodies via to_dict().
    StorageError is safe to retry: nothing from the failed call persists.
"""

from decimal import Decimal
from typing import Optional, Dict, Any


class SettlementError(Exception):
    """
    Base exception for all settlement errors.

    Subclasses set error_type and status_code so the web layer never has to
    know the concrete class.
    """

    error_type = 'settlement_error'
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        body = {'error': self.message, 'error_type': self.error_type}
        for key, value in self.details.items():
            body[key] = float(value) if isinstance(value, Decimal) else value
        return body


class UnauthorizedError(SettlementError):
    error_type = 'unauthorized'
    status_code = 403


class NotFoundError(SettlementError):
    error_type = 'not_found'
    status_code = 404

    def __init__(self, resource: str, resource_id):
        super().__init__(f"{resource.capitalize()} {resource_id} not found",
                         {'resource': resource, 'resource_id': resource_id})
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(SettlementError):
    error_type = 'validation_error'
    status_code = 400


class InsufficientFundsError(SettlementError):
    """
    Escrow balance is lower than the amount being moved.

    Recoverable and user-actionable: the caller shows both amounts and
    prompts the employer to top up. Not a system fault.
    """

    error_type = 'insufficient_escrow'
    status_code = 402

    def __init__(self, required_amount: Decimal, current_balance: Decimal):
        message = 'Insufficient escrow balance to accept this proposal.'
        details = {
            'required_amount': required_amount,
            'current_balance': current_balance
        }
        super().__init__(message, details)
        self.required_amount = required_amount
        self.current_balance = current_balance


class InvalidBidStateError(SettlementError):
    error_type = 'invalid_bid_state'
    status_code = 409

    def __init__(self, bid_id, current_status, attempted_status=None):
        message = f"Bid {bid_id} is {current_status} and cannot be changed"
        details = {'bid_id': bid_id, 'bid_status': current_status}
        if attempted_status:
            message += f" to {attempted_status}"
            details['attempted_status'] = attempted_status
        super().__init__(message, details)
        self.bid_id = bid_id
        self.current_status = current_status


class JobNotOpenError(SettlementError):
    error_type = 'job_not_open'
    status_code = 409

    def __init__(self, job_id, current_status):
        super().__init__('This job is no longer accepting bids.',
                         {'job_id': job_id, 'job_status': current_status})
        self.job_id = job_id
        self.current_status = current_status


class IdempotencyConflictError(SettlementError):
    error_type = 'idempotency_conflict'
    status_code = 409

    def __init__(self, key: str, bid_id):
        super().__init__('Idempotency key was already used for a different bid.',
                         {'idempotency_key': key, 'bid_id': bid_id})


class ContractSigningError(SettlementError):
    error_type = 'contract_signing_error'
    status_code = 409


class LedgerImmutableError(SettlementError):
    """Ledger entries are append-only"""

    error_type = 'ledger_immutable'
    status_code = 500

    def __init__(self, transaction_id, operation: str):
        super().__init__(f"Ledger entry {transaction_id} cannot be modified ({operation})",
                         {'transaction_id': transaction_id, 'operation': operation})


class StorageError(SettlementError):
    """
    The data store failed mid-operation (commit failure, lost connection,
    lock timeout). The whole operation was rolled back and may be retried.
    """

    error_type = 'storage_error'
    status_code = 503

    def __init__(self, message: str = 'Storage failure, no changes were saved',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InvalidProjectStateError(SettlementError):
    error_type = 'invalid_project_state'
    status_code = 409

    def __init__(self, project_id, current_status, action: str):
        super().__init__(f"Project {project_id} is {current_status}; cannot {action}",
                         {'project_id': project_id, 'project_status': current_status})
