"""
Shared pytest fixtures: a throwaway SQLite database, model factories, a frozen
clock and notifiers that record or fail.
"""

import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal

import pytest

_tmp_dir = tempfile.mkdtemp(prefix='workwise-test-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_tmp_dir, 'test.db')
os.environ['AUDIT_LOG_DIR'] = os.path.join(_tmp_dir, 'logs')
os.environ.setdefault('SESSION_SECRET', 'test-secret')

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app import app as flask_app  # noqa: E402
from clock import FixedClock  # noqa: E402
from config import SettlementConfig  # noqa: E402
from escrow_ledger import EscrowLedger  # noqa: E402
from models import db, Bid, BidStatus, Job, JobStatus, User, UserType  # noqa: E402
from notifier import Notifier  # noqa: E402
from settlement_service import SettlementService  # noqa: E402

PROPOSAL = ('I have delivered several similar projects and can start right away. '
            'Milestones and daily updates included.')


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def notify(self, user_id, event_type, payload):
        self.sent.append((user_id, event_type, payload))

    def events_for(self, user_id):
        return [event for uid, event, _ in self.sent if uid == user_id]


class FailingNotifier(Notifier):
    def __init__(self):
        self.attempts = 0

    def notify(self, user_id, event_type, payload):
        self.attempts += 1
        raise RuntimeError('notification backend unavailable')


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        flask_app.extensions.pop('settlement_service', None)
        yield flask_app
        flask_app.extensions.pop('settlement_service', None)
        db.session.remove()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 10, 9, 0, 0))


@pytest.fixture
def config():
    return SettlementConfig(platform_fee_rate='0.05', min_deposit_amount='50.00',
                            signing_grace_days=2, default_contract_days=7, currency='PHP')


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def service(app, config, clock, notifier):
    return SettlementService(config=config, clock=clock, notifier=notifier)


@pytest.fixture
def client(app, service):
    app.extensions['settlement_service'] = service
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(user_type=UserType.GIG_WORKER, name=None):
        counter['n'] += 1
        username = name or f"{user_type.value}{counter['n']}"
        user = User(username=username, email=f"{username}@example.com",
                    full_name=username.title(), user_type=user_type)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_job(app):
    def _make_job(employer, title='Landing page redesign', status=JobStatus.OPEN, **kwargs):
        job = Job(employer_id=employer.id, title=title,
                  description=kwargs.pop('description', 'Redesign the marketing landing page'),
                  status=status, **kwargs)
        db.session.add(job)
        db.session.commit()
        return job

    return _make_job


@pytest.fixture
def make_bid(app):
    def _make_bid(job, worker, amount='500.00', status=BidStatus.PENDING, **kwargs):
        bid = Bid(job_id=job.id, gig_worker_id=worker.id, amount=Decimal(amount),
                  proposal_message=PROPOSAL, status=status, **kwargs)
        db.session.add(bid)
        db.session.commit()
        return bid

    return _make_bid


@pytest.fixture
def fund(app, config):
    def _fund(user, amount):
        account = EscrowLedger(config).get_or_create_account(user.id)
        account.escrow_balance = Decimal(amount)
        db.session.commit()
        return account

    return _fund


@pytest.fixture
def employer(make_user):
    return make_user(UserType.EMPLOYER, 'employer')


@pytest.fixture
def worker(make_user):
    return make_user(UserType.GIG_WORKER, 'worker')


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id

    return _login
