import os
import atexit
import logging
from functools import wraps
from flask import Flask, abort, current_app, request, jsonify

import redis

from shared.notifications import BackgroundEmitter, LocalEmitter, RedisNotificationEmitter

from .accounts import Accounts
from .cache import RedisCache, TTLCache
from .config import config
from .errors import ErrorKind, PersistenceError, RegistrationResult
from .ledger_store import InMemoryLedgerStore, SqlLedgerStore
from .models import db
from .registration_service import RegistrationService
from .tournament_registry import EDITABLE_FIELDS, LEDGER_UNAVAILABLE, TOURNAMENT_NOT_FOUND, TournamentRegistry

logger = logging.getLogger(__name__)

USER_ID_HEADER = 'X-Telegram-User-Id'

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.NOT_REGISTERED: 400,
    ErrorKind.INVALID_STATUS: 409,
    ErrorKind.ALREADY_REGISTERED: 409,
    ErrorKind.CAPACITY_EXCEEDED: 409,
    ErrorKind.PERSISTENCE_ERROR: 503,
}


def create_app(config_name: str = None, store=None, cache=None, emitter=None) -> Flask:
    """Application factory. Collaborators may be injected, e.g. by tests."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)

    # Create tables
    with app.app_context():
        db.create_all()

    # Initialize services
    if store is None:
        store = build_store(app)
    if cache is None:
        cache = build_cache(app)
    if emitter is None:
        emitter = build_emitter(app)

    retry_options = {
        'max_retries': app.config['REGISTRATION_MAX_RETRIES'],
        'retry_backoff': app.config['RETRY_BACKOFF_SECONDS'],
    }

    # Store services on app for access in routes
    app.ledger = store
    app.cache = cache
    app.emitter = emitter
    app.registration = RegistrationService(store, cache, emitter, **retry_options)
    app.accounts = Accounts(store, starting_balance=app.config['STARTING_BALANCE'], **retry_options)
    app.registry = TournamentRegistry(store, cache, emitter)

    register_api_routes(app)
    atexit.register(shutdown_services, app)

    return app


def shutdown_services(app: Flask):
    """Stop background workers: the cache sweeper and queued notifications."""
    app.cache.close()
    app.emitter.close()


def build_store(app: Flask):
    timeout = app.config['LOCK_TIMEOUT_SECONDS']
    if app.config['LEDGER_BACKEND'] == 'memory':
        return InMemoryLedgerStore(lock_timeout=timeout)
    return SqlLedgerStore(db, lock_timeout=timeout)


def build_cache(app: Flask):
    ttl = app.config['CACHE_TTL_SECONDS']
    if app.config['CACHE_BACKEND'] == 'redis':
        return RedisCache(redis.from_url(app.config['REDIS_URL'], decode_responses=True), ttl=ttl)
    cache = TTLCache(ttl=ttl)
    cache.start_sweeper(app.config['CACHE_SWEEP_INTERVAL_SECONDS'])
    return cache


def build_emitter(app: Flask):
    if app.config['NOTIFICATION_BACKEND'] == 'redis':
        return BackgroundEmitter(RedisNotificationEmitter(app.config['REDIS_URL']))
    return LocalEmitter()


def result_response(result: RegistrationResult, success_status: int = 200):
    if result.ok:
        return jsonify(result.to_dict()), success_status
    return jsonify(result.to_dict()), ERROR_STATUS.get(result.error_kind, 400)


def registry_failure(message: str):
    if message == TOURNAMENT_NOT_FOUND:
        return jsonify({'error': message}), 404
    if message == LEDGER_UNAVAILABLE:
        return jsonify({'error': message}), 503
    return jsonify({'error': message}), 400


def current_user_id():
    """Trusted identity set by the upstream auth layer."""
    return (request.headers.get(USER_ID_HEADER) or '').strip() or None


def require_admin(func):
    """Only identities listed in ADMIN_USER_IDS may call the route."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        user_id = current_user_id()
        if not user_id:
            abort(401)
        if user_id not in current_app.config['ADMIN_USER_IDS']:
            logger.warning(f"Rejected admin request from {user_id} to {request.path}")
            abort(403)
        return func(*args, **kwargs)
    return wrapper


def register_api_routes(app: Flask):
    """Register API routes."""

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({'error': 'Authentication required'}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({'error': 'Admin access required'}), 403

    # ==================== Users ====================

    @app.route('/api/v1/users/me', methods=['GET'])
    def api_current_user():
        """Get the calling user, creating the account on first access."""
        user_id = current_user_id()
        if not user_id:
            abort(401)

        username = request.headers.get('X-Telegram-Username')
        result = app.accounts.get_or_create_user(user_id, username=username)
        if not result.ok:
            return result_response(result)
        return jsonify(result.user.to_dict())

    @app.route('/api/v1/users/<user_id>/stars/award', methods=['POST'])
    @require_admin
    def api_award_stars(user_id: str):
        """Credit stars to a user."""
        data = request.json or {}
        return result_response(app.accounts.award(user_id, data.get('amount')))

    @app.route('/api/v1/users/<user_id>/stars/deduct', methods=['POST'])
    @require_admin
    def api_deduct_stars(user_id: str):
        """Debit stars from a user."""
        data = request.json or {}
        return result_response(app.accounts.deduct(user_id, data.get('amount')))

    # ==================== Tournament CRUD ====================

    @app.route('/api/v1/tournaments', methods=['GET'])
    def api_list_tournaments():
        """List tournaments with optional status filter."""
        status = request.args.get('status')
        tournaments = app.registry.list_tournaments(status=status)

        return jsonify({
            'tournaments': [t.to_dict() for t in tournaments],
            'count': len(tournaments)
        })

    @app.route('/api/v1/tournaments', methods=['POST'])
    @require_admin
    def api_create_tournament():
        """Create a new tournament."""
        data = request.json or {}

        title = data.get('title')
        if title is None or title == '':
            return jsonify({'error': 'Tournament title is required'}), 400

        try:
            tournament = app.registry.create_tournament(
                title=title,
                entry_fee=data.get('entry_fee', 0),
                prize=data.get('prize', 0),
                max_participants=data.get('max_participants', 100),
                description=data.get('description', ''),
                map_name=data.get('map_name'),
                tournament_type=data.get('tournament_type', 'BATTLE ROYALE'),
                starts_at=data.get('starts_at')
            )
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except PersistenceError:
            return jsonify({'error': LEDGER_UNAVAILABLE}), 503

        return jsonify(tournament.to_dict()), 201

    @app.route('/api/v1/tournaments/<tournament_id>', methods=['GET'])
    def api_get_tournament(tournament_id: str):
        """Get tournament details."""
        tournament = app.registry.get_tournament(tournament_id)
        if not tournament:
            return jsonify({'error': 'Tournament not found'}), 404

        return jsonify(tournament.to_dict())

    @app.route('/api/v1/tournaments/<tournament_id>', methods=['PUT'])
    @require_admin
    def api_update_tournament(tournament_id: str):
        """Update tournament fields."""
        data = request.json or {}
        fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}

        success, message = app.registry.update_tournament(tournament_id, **fields)
        if not success:
            return registry_failure(message)

        return jsonify(app.ledger.get_tournament(tournament_id).to_dict())

    @app.route('/api/v1/tournaments/<tournament_id>', methods=['DELETE'])
    @require_admin
    def api_delete_tournament(tournament_id: str):
        """Delete an upcoming tournament and refund its participants."""
        success, message = app.registry.delete_tournament(tournament_id)
        if not success:
            return registry_failure(message)
        return jsonify({'message': message})

    # ==================== Tournament Lifecycle ====================

    @app.route('/api/v1/tournaments/<tournament_id>/start', methods=['POST'])
    @require_admin
    def api_start_tournament(tournament_id: str):
        """Start tournament; the roster is frozen from here on."""
        success, message = app.registry.start_tournament(tournament_id)
        if not success:
            return registry_failure(message)

        return jsonify({
            'message': message,
            'tournament': app.ledger.get_tournament(tournament_id).to_dict()
        })

    @app.route('/api/v1/tournaments/<tournament_id>/complete', methods=['POST'])
    @require_admin
    def api_complete_tournament(tournament_id: str):
        """Complete an active tournament."""
        success, message = app.registry.complete_tournament(tournament_id)
        if not success:
            return registry_failure(message)

        return jsonify({
            'message': message,
            'tournament': app.ledger.get_tournament(tournament_id).to_dict()
        })

    # ==================== Registration ====================

    @app.route('/api/v1/tournaments/<tournament_id>/register', methods=['POST'])
    def api_register(tournament_id: str):
        """Register the calling user, paying the entry fee."""
        user_id = current_user_id()
        if not user_id:
            abort(401)
        return result_response(app.registration.register(tournament_id, user_id))

    @app.route('/api/v1/tournaments/<tournament_id>/register', methods=['DELETE'])
    def api_unregister(tournament_id: str):
        """Unregister the calling user, refunding the entry fee."""
        user_id = current_user_id()
        if not user_id:
            abort(401)
        return result_response(app.registration.unregister(tournament_id, user_id))

    @app.route('/api/v1/tournaments/<tournament_id>/participants', methods=['GET'])
    def api_list_participants(tournament_id: str):
        """List users on the roster in join order."""
        participants = app.registry.get_participants(tournament_id)
        if participants is None:
            return jsonify({'error': 'Tournament not found'}), 404

        return jsonify({
            'participants': [u.to_dict() for u in participants],
            'count': len(participants)
        })

    # ==================== Health Check ====================

    @app.route('/api/v1/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            db_ok = False

        status = 'healthy' if db_ok else 'unhealthy'
        code = 200 if status == 'healthy' else 503

        return jsonify({
            'status': status,
            'database': 'connected' if db_ok else 'disconnected'
        }), code
