"""
Notification sink for settlement events.

Notifications are sent only after the settlement has committed. Delivery is
best-effort: notify_safely() logs a failure and returns False, it never raises.
"""

import logging

from models import db, Notification

logger = logging.getLogger(__name__)

EVENT_TEMPLATES = {
    'contract_ready': (
        'Contract Ready to Sign',
        'Your contract for "{job_title}" is ready. Please review and sign it.',
        '/contracts/{contract_id}'
    ),
    'bid_rejected': (
        'Proposal Not Selected',
        'Your proposal for "{job_title}" was not selected this time.',
        '/jobs/{job_id}'
    ),
    'contract_signed': (
        'Contract Signed',
        'The {signer} has signed the contract for "{job_title}".',
        '/contracts/{contract_id}'
    ),
    'contract_active': (
        'Contract Fully Signed',
        'Both parties have signed the contract for "{job_title}". Work can begin.',
        '/contracts/{contract_id}'
    ),
    'payment_released': (
        'Payment Released',
        '{amount:.2f} has been released to you for "{job_title}".',
        '/projects/{project_id}'
    ),
    'project_cancelled': (
        'Project Cancelled',
        'The employer cancelled "{job_title}" before work started.',
        '/projects/{project_id}'
    ),
    'project_disputed': (
        'Project Disputed',
        'A dispute was opened on "{job_title}". The escrowed payment is on hold until it is resolved.',
        '/projects/{project_id}'
    ),
}


class Notifier:
    """Interface: deliver one event to one user"""

    def notify(self, user_id, event_type, payload):
        raise NotImplementedError


class DatabaseNotifier(Notifier):
    """Stores in-app notifications in the notification table, in its own commit"""

    def notify(self, user_id, event_type, payload):
        title, message, link = self.render(event_type, payload)
        notification = Notification(
            user_id=user_id,
            notification_type=event_type,
            title=title,
            message=message,
            link=link,
            related_id=payload.get('project_id') or payload.get('job_id')
        )
        db.session.add(notification)
        db.session.commit()
        return notification

    def render(self, event_type, payload):
        template = EVENT_TEMPLATES.get(event_type)
        if template is None:
            return event_type.replace('_', ' ').title(), None, None
        title, message, link = template
        try:
            return title, message.format(**payload), link.format(**payload)
        except (KeyError, ValueError) as e:
            logger.warning(f"Incomplete payload for {event_type} notification: {e}")
            return title, None, None


def notify_safely(notifier, user_id, event_type, payload):
    """Deliver a notification without letting a failure reach the caller"""
    try:
        notifier.notify(user_id, event_type, payload)
        return True
    except Exception as e:
        db.session.rollback()
        logger.error(f"Notification {event_type} to user {user_id} failed: {str(e)}")
        return False
