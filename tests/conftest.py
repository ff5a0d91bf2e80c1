"""Shared test fixtures for the paybridge test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- gateway: MagicMock gateway client approving every charge by default
- gateway_responses: queue specific gateway outcomes / exceptions
- engine: billing engine wired to db.session and the mock gateway
- seed_data: one account with an active token and a monthly schedule
- admin_headers: bearer header for /admin/api
"""

import itertools
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from paybridge import create_app
from paybridge.extensions import db as _db
from paybridge.services.engine import build_engine
from paybridge.services.gateway import ChargeResult

RESPONSE_CODES = {
    "approved": ("00", "Transaction Approved"),
    "declined": ("05", "Do Not Honour"),
    "failed": ("ERR", "Gateway rejected the request"),
    "pending": (None, None),
}


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def gateway():
    """Gateway double. Every charge is approved with a fresh gateway id."""
    ids = itertools.count(10000001)
    mock = MagicMock()

    def _approve(token, amount, currency, reference, transaction_type="Purchase"):
        return ChargeResult("approved", str(next(ids)), "00", "Transaction Approved", {})

    mock.charge.side_effect = _approve
    mock.next_id = lambda: str(next(ids))
    return mock


@pytest.fixture
def gateway_responses(gateway):
    """Queue outcomes for the next charges.

    Usage:
        gateway_responses("declined", "declined", GatewayTransientError("timeout"), "approved")

    Strings become ChargeResults with that status; exceptions are raised.
    Once the queue is empty every charge is approved.
    """
    queue = []

    def _charge(token, amount, currency, reference, transaction_type="Purchase"):
        item = queue.pop(0) if queue else "approved"
        if isinstance(item, Exception):
            raise item
        code, message = RESPONSE_CODES[item]
        return ChargeResult(item, gateway.next_id(), code, message, {})

    def _queue(*items):
        queue.extend(items)
        gateway.charge.side_effect = _charge

    return _queue


@pytest.fixture
def engine(app, db_session, gateway):
    """Billing engine on db.session with the mock gateway, installed on the app."""
    engine = build_engine(app.config, _db.session, gateway=gateway)
    app.extensions["paybridge"] = engine
    yield engine
    app.extensions["paybridge"] = None


@pytest.fixture
def seed_data(app, db_session, engine):
    """Seed one account with an active Visa token and a 29.99 AUD monthly
    schedule starting 2024-01-01.

    Returns plain ids so tests can re-load objects after requests.
    """
    account_id = str(uuid.uuid4())
    token = engine.token_store.store(
        account_id,
        "918273645501",
        {"last4": "1111", "brand": "Visa", "expiry_month": 12, "expiry_year": 2030},
    )
    schedule = engine.scheduler.create_schedule(
        account_id,
        "29.99",
        "AUD",
        "monthly",
        datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    _db.session.commit()

    return {
        "account_id": account_id,
        "token_id": token.id,
        "gateway_token": token.gateway_token,
        "schedule_id": schedule.id,
    }


@pytest.fixture
def admin_headers(app):
    return {"Authorization": f"Bearer {app.config['ADMIN_API_TOKEN']}"}
