"""
Transition tables for orders, payments and refunds.

The tables are authoritative: a status change that is not an edge here is
rejected with ``InvalidTransitionError``.
"""
from enum import IntEnum
from typing import Mapping, TypeVar

from .errors import InvalidTransitionError
from .models import OrderStatus, PaymentStatus, RefundStatus

S = TypeVar("S", bound=IntEnum)


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REVIEWED}),
    OrderStatus.REVIEWED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# cancel_order is narrower than the table: work that has started is not cancellable by a party.
CANCELLABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID})

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDING}),
    PaymentStatus.REFUNDING: frozenset({PaymentStatus.SUCCESS}),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.SUCCESS)

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PROCESSING: frozenset({RefundStatus.SUCCESS, RefundStatus.FAILED, RefundStatus.CANCELLED}),
    RefundStatus.SUCCESS: frozenset(),
    RefundStatus.FAILED: frozenset(),
    RefundStatus.CANCELLED: frozenset(),
}


def allowed_targets(table: Mapping[S, frozenset[S]], current: S) -> frozenset[S]:
    return table.get(current, frozenset())


def ensure_transition(entity: str, table: Mapping[S, frozenset[S]], current: S, target: S) -> None:
    allowed = allowed_targets(table, current)
    if target not in allowed:
        raise InvalidTransitionError(entity, current, target, allowed)