"""
Pytest fixtures for goldpos backend tests.

Provides an in-memory application, per-test table wipe, a test client and
ownership record factories.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from goldpos import create_app
from goldpos.extensions import db
from goldpos.services import ownership_store
from goldpos.services.ownership_policy import ConfiguredOwnershipPolicy, OwnershipSettings


BASE_DATE = datetime(2026, 1, 1, 9, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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


@pytest.fixture(scope='function')
def make_record(db_session):
    """
    Factory for committed ownership records.

    Defaults describe a supplier lot of 100 units / 100 g costing 5000 with
    nothing paid yet. `day` orders lots for FIFO/LIFO tests.
    """
    def _make(day: int = 0, **overrides):
        fields = {
            'product_id': 1,
            'branch_id': 1,
            'supplier_id': 1,
            'total_quantity': Decimal('100'),
            'total_weight': Decimal('100'),
            'total_cost': Decimal('5000'),
            'initial_payment': Decimal('0'),
            'received_at': BASE_DATE + timedelta(days=day),
        }
        fields.update(overrides)
        return ownership_store.create_record(**fields)

    return _make


@pytest.fixture(scope='function')
def make_paid_record(make_record):
    """Factory for fully paid lots (owned == total)."""
    def _make(day: int = 0, **overrides):
        cost = overrides.get('total_cost', Decimal('5000'))
        overrides.setdefault('initial_payment', cost)
        return make_record(day=day, **overrides)

    return _make


@pytest.fixture(scope='function')
def make_policy():
    """Policy with default thresholds overridden by keyword."""
    def _make(**settings) -> ConfiguredOwnershipPolicy:
        return ConfiguredOwnershipPolicy(OwnershipSettings(**settings))

    return _make
