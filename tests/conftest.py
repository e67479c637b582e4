"""
Pytest configuration and fixtures for registration engine tests.
"""
import os
import sys
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from arena.app import create_app
from arena.accounts import Accounts
from arena.cache import TTLCache
from arena.ledger_store import InMemoryLedgerStore
from arena.models import db
from arena.registration_service import RegistrationService
from arena.tournament_registry import TournamentRegistry
from shared.notifications import LocalEmitter


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope='session')
def app():
    """Create application for testing (SQL ledger on in-memory SQLite)."""
    app = create_app('testing')
    
    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Clear all tables and the shared cache before each test."""
    with app.app_context():
        db.session.remove()
        
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.cache.invalidate('', prefix=True)
        
        yield db.session
        
        db.session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory ledger with a short lock timeout."""
    return InMemoryLedgerStore(lock_timeout=1.0)


@pytest.fixture
def cache(clock):
    return TTLCache(ttl=300, clock=clock)


@pytest.fixture
def events():
    """Events received by the emitter, in order."""
    return []


@pytest.fixture
def emitter(events):
    emitter = LocalEmitter()
    emitter.subscribe(events.append)
    return emitter


@pytest.fixture
def registry(store, cache, emitter):
    return TournamentRegistry(store, cache, emitter)


@pytest.fixture
def accounts(store):
    return Accounts(store, starting_balance=1000, retry_backoff=0)


@pytest.fixture
def service(store, cache, emitter):
    return RegistrationService(store, cache, emitter, max_retries=2, retry_backoff=0)


@pytest.fixture
def make_user(accounts):
    """Create a user with an exact balance."""
    def _make(user_id: str, balance: int = 200):
        user = accounts.get_or_create_user(user_id).user
        if balance > user.balance:
            accounts.award(user_id, balance - user.balance)
        elif balance < user.balance:
            accounts.deduct(user_id, user.balance - balance)
        return accounts.get_user(user_id)
    return _make


@pytest.fixture
def sample_tournament(registry):
    """Upcoming tournament with a 100 star fee and two slots."""
    return registry.create_tournament(
        title='Rebirth Island Showdown',
        entry_fee=100,
        prize=2500,
        max_participants=2,
        map_name='REBIRTH ISLAND'
    )
