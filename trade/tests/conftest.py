"""
Shared fixtures: an in-memory SQLite ledger store with four seeded users.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from trade.credit import CreditService
from trade.models import CreateOrderRequest
from trade.orders import OrderService
from trade.payments import PaymentService
from trade.store import LedgerStore, UserCreditRow, utcnow


@pytest.fixture
def store():
    store = LedgerStore.from_url("sqlite://")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def users(store):
    return {name: store.add_user(name) for name in ("alice", "bob", "carol", "dave")}


@pytest.fixture
def credit_service(store):
    return CreditService(store)


@pytest.fixture
def payment_service(store):
    return PaymentService(store)


@pytest.fixture
def order_service(store, credit_service, payment_service):
    return OrderService(store, credit=credit_service, payments=payment_service)


@pytest.fixture
def make_order(order_service, users):
    """Create an order from alice (employer) to bob (provider)."""
    def _make(amount="100.00", **overrides):
        fields = dict(
            employer_id=users["alice"],
            provider_id=users["bob"],
            skill_id=1,
            order_amount=Decimal(amount),
            service_time=utcnow() + timedelta(days=1),
            order_remark="Guitar lesson",
        )
        fields.update(overrides)
        return order_service.create_order(CreateOrderRequest(**fields))
    return _make


@pytest.fixture
def set_credit(store):
    """Write a credit row directly, bypassing the scoring rules."""
    def _set(user_id, score, completed_orders=0, total_orders=None):
        with store.transaction() as session:
            row = session.get(UserCreditRow, user_id)
            if row is None:
                row = UserCreditRow(user_id=user_id)
                session.add(row)
            row.credit_score = Decimal(str(score))
            row.completed_orders = completed_orders
            row.total_orders = completed_orders if total_orders is None else total_orders
            row.positive_reviews = 0
            row.negative_reviews = 0
    return _set
