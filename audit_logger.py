"""
Financial Audit Logging
Structured JSON log of every escrow movement and refused settlement, written to
rotating files separate from the application log.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from decimal import Decimal
from flask import has_request_context, request, session
from typing import Optional, Dict, Any


class AuditLogger:
    """
    Append-only audit trail for escrow settlement events
    """

    def __init__(self, app=None):
        self.app = app
        self.logger = None
        self.log_dir = None

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize audit logger with Flask app"""
        self.app = app
        self._setup_structured_logging()

        if not hasattr(app, 'extensions'):
            app.extensions = {}
        app.extensions['audit_logger'] = self

    def _setup_structured_logging(self):
        """Configure JSON-line logging with file rotation"""
        self.log_dir = os.environ.get('AUDIT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(self.log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        if self.logger.handlers:
            return

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "event": %(message)s}'
        )

        # 50MB per file, keep 10 backups
        audit_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'audit.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(json_formatter)
        self.logger.addHandler(audit_handler)

        # Refused or failed operations also go to their own file
        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'audit_critical.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.WARNING)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app and self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract context from the current request, if there is one"""
        context = {
            'ip_address': None,
            'request_method': None,
            'request_path': None,
            'session_user_id': None
        }
        if not has_request_context():
            return context

        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        if ip_address and ',' in ip_address:
            ip_address = ip_address.split(',')[0].strip()
        context['ip_address'] = ip_address
        context['request_method'] = request.method
        context['request_path'] = request.path
        context['session_user_id'] = session.get('user_id')
        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'low',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Write one audit event

        Args:
            event_category: Category (financial, authorization, settlement)
            event_type: Specific event (escrow_debit, payment_release, ...)
            action: Human-readable action description
            severity: low, medium, high or critical
            status: success, failure or blocked
            message: Additional message
            resource_type: Type of resource affected (project, bid, account, ...)
            resource_id: ID of affected resource
            details: Additional context as dictionary
            user_id: Acting user
        """
        if not self.logger:
            return

        context = self._get_request_context()
        log_data = {
            'event_category': event_category,
            'event_type': event_type,
            'severity': severity,
            'status': status,
            'user_id': user_id or context['session_user_id'],
            'ip_address': context['ip_address'],
            'request_method': context['request_method'],
            'request_path': context['request_path'],
            'action': action,
            'resource_type': resource_type,
            'resource_id': str(resource_id) if resource_id is not None else None,
            'message': message,
            'details': details,
            'logged_at': datetime.utcnow().isoformat()
        }

        log_level = {
            'low': logging.INFO,
            'medium': logging.WARNING,
            'high': logging.ERROR,
            'critical': logging.CRITICAL
        }.get(severity, logging.INFO)

        self.logger.log(log_level, json.dumps(log_data, default=_json_default))

    def log_financial(self, event_type: str, action: str, amount, resource_type: str, resource_id,
                      details: Optional[Dict] = None, **kwargs):
        """Log an escrow balance movement"""
        merged = {'amount': amount}
        if details:
            merged.update(details)
        self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=merged,
            **kwargs
        )

    def log_refusal(self, event_type: str, action: str, error, resource_type: str, resource_id, **kwargs):
        """Log a settlement attempt that was refused"""
        self.log_event(
            event_category='settlement',
            event_type=event_type,
            action=action,
            severity='medium',
            status='blocked',
            message=error.message,
            resource_type=resource_type,
            resource_id=resource_id,
            details=error.to_dict(),
            **kwargs
        )


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def init_audit_logger(app):
    """Create the audit logger and register it in app.extensions"""
    return AuditLogger(app)
