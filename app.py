from flask import Flask, request, jsonify, session
from flask_cors import CORS
from datetime import timedelta
from functools import wraps
import json
import logging
import os
import secrets

from audit_logger import init_audit_logger
from escrow_ledger import to_money
from exceptions import SettlementError, ValidationError
from models import db, Bid, Contract, Job, JobStatus, Notification, User, UserType
from settlement_service import SettlementService

logging.basicConfig(level=logging.INFO)

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # Development only; production must set SESSION_SECRET or SECRET_KEY
    app.secret_key = secrets.token_hex(32)
    app.logger.warning("Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///workwise.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# SQLite serialises writers at the database level; wait for the lock instead of failing
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'connect_args': {'check_same_thread': False, 'timeout': 30}
    }

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

db.init_app(app)

# Restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

audit_logger = init_audit_logger(app)


def get_settlement_service():
    """Settlement service for this app (tests may pre-register their own)"""
    service = app.extensions.get('settlement_service')
    if service is None:
        service = SettlementService(audit_logger=app.extensions.get('audit_logger'))
        app.extensions['settlement_service'] = service
    return service


def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function


@app.errorhandler(SettlementError)
def handle_settlement_error(error):
    """Typed settlement failures become JSON bodies with their own status code"""
    db.session.rollback()
    if error.status_code >= 500:
        app.logger.error(f"Settlement error on {request.path}: {str(error)}")
    else:
        app.logger.info(f"Request refused on {request.path}: {error.error_type}")
    return jsonify(error.to_dict()), error.status_code


# ==================== JOBS & BIDS ====================

@app.route('/api/jobs', methods=['POST'])
@login_required
def create_job():
    """Employer posts a job that is open for bids"""
    try:
        user = db.session.get(User, session['user_id'])
        if not user or user.user_type != UserType.EMPLOYER:
            return jsonify({'error': 'Only employers can post jobs'}), 403

        data = request.get_json(silent=True) or {}
        title = (data.get('title') or '').strip()
        if not title:
            raise ValidationError('Title is required')

        duration = data.get('estimated_duration_days')
        if duration is not None and int(duration) < 1:
            raise ValidationError('Estimated duration must be at least 1 day')

        job = Job(
            employer_id=user.id,
            title=title,
            description=data.get('description'),
            required_skills=json.dumps(data.get('required_skills') or []),
            estimated_duration_days=int(duration) if duration is not None else None,
            budget_min=to_money(data['budget_min']) if data.get('budget_min') is not None else None,
            budget_max=to_money(data['budget_max']) if data.get('budget_max') is not None else None,
            status=JobStatus.OPEN
        )
        db.session.add(job)
        db.session.commit()

        return jsonify({'message': 'Job posted successfully', 'job': job.to_dict()}), 201

    except SettlementError:
        raise
    except (TypeError, ValueError):
        db.session.rollback()
        return jsonify({'error': 'Invalid job data'}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create job error: {str(e)}")
        return jsonify({'error': 'Failed to create job'}), 500


@app.route('/api/jobs/<int:job_id>/bids', methods=['POST'])
@login_required
def submit_bid(job_id):
    """Gig worker submits a proposal on an open job"""
    try:
        data = request.get_json(silent=True) or {}
        bid = get_settlement_service().submit_bid(
            job_id,
            session['user_id'],
            data.get('amount'),
            data.get('proposal_message'),
            data.get('estimated_days')
        )
        return jsonify({'message': 'Proposal submitted successfully', 'bid': bid.to_dict()}), 201

    except SettlementError:
        raise
    except (TypeError, ValueError):
        db.session.rollback()
        return jsonify({'error': 'Invalid bid data'}), 400
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit bid error: {str(e)}")
        return jsonify({'error': 'Failed to submit proposal'}), 500


@app.route('/api/jobs/<int:job_id>/bids', methods=['GET'])
@login_required
def list_bids(job_id):
    """Job owner lists every bid on the job"""
    try:
        job = db.session.get(Job, job_id)
        if not job:
            return jsonify({'error': 'Job not found'}), 404
        if job.employer_id != session['user_id']:
            return jsonify({'error': 'Access denied'}), 403

        bids = Bid.query.filter_by(job_id=job_id).order_by(Bid.created_at, Bid.id).all()
        return jsonify({'job': job.to_dict(), 'bids': [b.to_dict() for b in bids]}), 200

    except Exception as e:
        app.logger.error(f"List bids error: {str(e)}")
        return jsonify({'error': 'Failed to get bids'}), 500


@app.route('/api/bids/<int:bid_id>', methods=['PATCH'])
@login_required
def update_bid_status(bid_id):
    """
    Employer accepts or rejects a bid.

    Accepting settles the bid: escrow debit, project, contract and rejection of
    every competing bid in one transaction. Send an Idempotency-Key header to make
    retries safe.
    """
    try:
        data = request.get_json(silent=True) or {}
        status = data.get('status')
        user_id = session['user_id']
        service = get_settlement_service()

        if status == 'accepted':
            idempotency_key = request.headers.get('Idempotency-Key') or data.get('idempotency_key')
            result = service.accept_bid(bid_id, user_id, idempotency_key=idempotency_key)
            body = result.to_dict()
            body['message'] = ('Proposal already accepted.' if result.replayed
                               else 'Proposal accepted! A contract has been generated for both parties to sign.')
            return jsonify(body), 200

        if status == 'rejected':
            bid = service.decline_bid(bid_id, user_id)
            return jsonify({'message': 'Proposal rejected', 'bid': bid.to_dict()}), 200

        return jsonify({'error': 'Status must be "accepted" or "rejected"'}), 400

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update bid error: {str(e)}")
        return jsonify({'error': 'Failed to update proposal'}), 500


@app.route('/api/bids/<int:bid_id>', methods=['DELETE'])
@login_required
def withdraw_bid(bid_id):
    """Gig worker withdraws their own pending bid"""
    try:
        bid = get_settlement_service().withdraw_bid(bid_id, session['user_id'])
        return jsonify({'message': 'Proposal withdrawn', 'bid': bid.to_dict()}), 200

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdraw bid error: {str(e)}")
        return jsonify({'error': 'Failed to withdraw proposal'}), 500


# ==================== ESCROW ====================

@app.route('/api/escrow/deposit', methods=['POST'])
@login_required
def deposit_escrow():
    """Top up the current user's escrow balance"""
    try:
        data = request.get_json(silent=True) or {}
        user_id = session['user_id']
        service = get_settlement_service()
        entry = service.deposit(user_id, data.get('amount'))

        return jsonify({
            'message': 'Deposit successful',
            'transaction': entry.to_dict(),
            'escrow_balance': float(service.ledger.balance(user_id))
        }), 201

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Deposit error: {str(e)}")
        return jsonify({'error': 'Failed to process deposit'}), 500


@app.route('/api/escrow/balance', methods=['GET'])
@login_required
def get_escrow_balance():
    try:
        ledger = get_settlement_service().ledger
        account = ledger.find_account(session['user_id'])
        return jsonify({
            'escrow_balance': float(ledger.balance(session['user_id'])),
            'currency': account.currency if account else ledger.config.currency
        }), 200

    except Exception as e:
        app.logger.error(f"Get balance error: {str(e)}")
        return jsonify({'error': 'Failed to get balance'}), 500


@app.route('/api/escrow/transactions', methods=['GET'])
@login_required
def get_escrow_transactions():
    """Ledger entries for the current user, newest first"""
    try:
        limit = min(request.args.get('limit', 50, type=int), 200)
        entries = get_settlement_service().ledger.history(session['user_id'], limit=limit)
        return jsonify({'transactions': [t.to_dict() for t in entries]}), 200

    except Exception as e:
        app.logger.error(f"Get transactions error: {str(e)}")
        return jsonify({'error': 'Failed to get transactions'}), 500


# ==================== CONTRACTS & PROJECTS ====================

@app.route('/api/contracts/<int:contract_id>', methods=['GET'])
@login_required
def get_contract(contract_id):
    try:
        contract = db.session.get(Contract, contract_id)
        if not contract:
            return jsonify({'error': 'Contract not found'}), 404

        user_id = session['user_id']
        if user_id not in (contract.employer_id, contract.gig_worker_id):
            return jsonify({'error': 'Access denied'}), 403

        return jsonify({'contract': contract.to_dict()}), 200

    except Exception as e:
        app.logger.error(f"Get contract error: {str(e)}")
        return jsonify({'error': 'Failed to get contract'}), 500


@app.route('/api/contracts/<int:contract_id>/sign', methods=['POST'])
@login_required
def sign_contract(contract_id):
    """Employer signs first, then the gig worker"""
    try:
        contract = get_settlement_service().sign_contract(contract_id, session['user_id'])
        message = ('Contract fully signed. Work can begin.' if contract.get_next_signer() is None
                   else 'Contract signed successfully')
        return jsonify({'message': message, 'contract': contract.to_dict()}), 200

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Sign contract error: {str(e)}")
        return jsonify({'error': 'Failed to sign contract'}), 500


@app.route('/api/projects/<int:project_id>/release', methods=['POST'])
@login_required
def release_payment(project_id):
    """Release escrowed funds to the gig worker after the work is approved"""
    try:
        project = get_settlement_service().release_payment(project_id, session['user_id'])
        return jsonify({
            'message': 'Payment released successfully! Funds transferred to gig worker.',
            'project': project.to_dict()
        }), 200

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Release payment error: {str(e)}")
        return jsonify({'error': 'Failed to release payment'}), 500


@app.route('/api/projects/<int:project_id>/cancel', methods=['POST'])
@login_required
def cancel_project(project_id):
    """Cancel before the contract is fully signed and refund the escrow"""
    try:
        project = get_settlement_service().cancel_project(project_id, session['user_id'])
        return jsonify({
            'message': 'Project cancelled and escrow refunded',
            'project': project.to_dict()
        }), 200

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Cancel project error: {str(e)}")
        return jsonify({'error': 'Failed to cancel project'}), 500


@app.route('/api/projects/<int:project_id>/dispute', methods=['POST'])
@login_required
def dispute_project(project_id):
    """Either party disputes an active project; escrow stays frozen"""
    try:
        data = request.get_json(silent=True) or {}
        project = get_settlement_service().dispute_project(project_id, session['user_id'], data.get('reason'))
        return jsonify({
            'message': 'Dispute opened. The escrowed payment is on hold.',
            'project': project.to_dict()
        }), 200

    except SettlementError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Dispute project error: {str(e)}")
        return jsonify({'error': 'Failed to open dispute'}), 500


# ==================== NOTIFICATIONS ====================

@app.route('/api/notifications', methods=['GET'])
@login_required
def get_notifications():
    try:
        notifications = Notification.query.filter_by(
            user_id=session['user_id']
        ).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(50).all()
        unread = sum(1 for n in notifications if not n.is_read)
        return jsonify({
            'notifications': [n.to_dict() for n in notifications],
            'unread_count': unread
        }), 200

    except Exception as e:
        app.logger.error(f"Get notifications error: {str(e)}")
        return jsonify({'error': 'Failed to get notifications'}), 500


_db_initialized = False


def init_database():
    """Create tables (once per process)"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        _db_initialized = True
        app.logger.info("Database tables ready")
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Database initialization error: {str(e)}")
        raise


with app.app_context():
    init_database()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
