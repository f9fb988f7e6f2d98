"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, master data, recording sinks and test client.
"""

from decimal import Decimal

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Location, Product, ProductVariant, StockBalance, User, Warehouse
from stockledger.models.catalog import ROLE_ADMIN, ROLE_APPROVER, ROLE_STAFF
from stockledger.services import movement_service
from stockledger.services.audit_service import EXTENSION_KEY as AUDIT_SINK_KEY
from stockledger.services.notification_service import EXTENSION_KEY as NOTIFIER_KEY


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DISPATCH_INLINE': True,
        'POSTING_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class RecordingAuditSink:
    def __init__(self):
        self.records = []

    def record(self, actor_id, action, ref_type, ref_id, payload=None):
        self.records.append((actor_id, action, ref_type, ref_id, payload))

    def actions(self, ref_type=None, ref_id=None):
        return [
            r[1] for r in self.records
            if (ref_type is None or r[2] == ref_type) and (ref_id is None or r[3] == ref_id)
        ]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_ids, topic, payload):
        self.sent.append((list(user_ids), topic, payload))

    def topics(self):
        return [s[1] for s in self.sent]


@pytest.fixture(scope='function')
def audit_sink(app):
    """Swap the audit sink for an in-memory recorder."""
    original = app.extensions[AUDIT_SINK_KEY]
    sink = RecordingAuditSink()
    app.extensions[AUDIT_SINK_KEY] = sink
    yield sink
    app.extensions[AUDIT_SINK_KEY] = original


@pytest.fixture(scope='function')
def notifier(app):
    """Swap the notifier for an in-memory recorder."""
    original = app.extensions[NOTIFIER_KEY]
    recorder = RecordingNotifier()
    app.extensions[NOTIFIER_KEY] = recorder
    yield recorder
    app.extensions[NOTIFIER_KEY] = original


@pytest.fixture(scope='function')
def warehouse(db_session):
    wh = Warehouse(code="WH1", name="Main Warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def other_warehouse(db_session):
    wh = Warehouse(code="WH2", name="Overflow Warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def loc_x(db_session, warehouse):
    loc = Location(warehouse_id=warehouse.id, code="A-01", name="Aisle A shelf 1")
    db_session.add(loc)
    db_session.commit()
    return loc


@pytest.fixture(scope='function')
def loc_y(db_session, warehouse):
    loc = Location(warehouse_id=warehouse.id, code="B-01", name="Aisle B shelf 1")
    db_session.add(loc)
    db_session.commit()
    return loc


@pytest.fixture(scope='function')
def product(db_session):
    p = Product(sku="SKU-100", name="Steel Bolt")
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def variant(db_session, product):
    v = ProductVariant(product_id=product.id, sku="SKU-100-M8", name="M8")
    db_session.add(v)
    db_session.commit()
    return v


@pytest.fixture(scope='function')
def staff(db_session):
    user = User(username="staff", name="Stock Clerk", role=ROLE_STAFF)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def approver(db_session):
    user = User(username="approver", name="Shift Lead", role=ROLE_APPROVER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    user = User(username="admin", name="Administrator", role=ROLE_ADMIN)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def seed_balance(db_session):
    """Write a balance row directly (test setup only)."""
    def _seed(product_id, location_id, qty, variant_id=None):
        balance = StockBalance(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            quantity_on_hand=Decimal(str(qty)),
        )
        db_session.add(balance)
        db_session.commit()
        return balance
    return _seed


@pytest.fixture(scope='function')
def run_movement(db_session):
    """Create, submit, approve and post a movement in one call."""
    def _run(movement_type, lines, creator, approver_user, post=True):
        movement = movement_service.create_movement(movement_type, lines, creator.id)
        movement_service.submit_movement(movement.id, creator.id)
        movement_service.approve_movement(movement.id, approver_user.id)
        if post:
            movement_service.post_movement(movement.id, approver_user.id)
        return movement
    return _run
