"""
Order Trade Core for the Skill Exchange

This package provides:
- Order lifecycle state machine: pending → paid → in progress → completed → reviewed / cancelled
- Payment and refund sub-ledger kept in step with order status
- Credit scoring: bounded reputation score, levels, ranking and statistics
- A typed error taxonomy and a transactional SQLAlchemy store
"""

from .errors import (
    TradeError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    ConflictError,
    DatabaseError,
)
from .models import (
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    Order,
    Payment,
    Refund,
    CreditRecord,
)
from .store import LedgerStore
from .credit import CreditService
from .payments import PaymentService
from .orders import OrderService

__all__ = [
    "TradeError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConflictError",
    "DatabaseError",
    "OrderStatus",
    "PaymentStatus",
    "RefundStatus",
    "Order",
    "Payment",
    "Refund",
    "CreditRecord",
    "LedgerStore",
    "CreditService",
    "PaymentService",
    "OrderService",
]
