"""
Order lifecycle service.

Each public operation is one store transaction: the order row is locked,
the transition is checked against ``ORDER_TRANSITIONS``, and the payment and
credit side effects are written in the same unit of work. Any failure rolls
all of it back.
"""
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from scoring import ScoringEvent
from .credit import CreditService
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .log import get_logger
from .models import (
    ORDER_STATUS_NAMES, CreateOrderRequest, Order, OrderCreated, OrderPage, OrderRole,
    OrderStats, OrderStatus, Payment, Review, StatusStat, SubmitReviewRequest, UserOrderStats,
)
from .payments import PaymentService
from .states import CANCELLABLE_ORDER_STATUSES, ORDER_TRANSITIONS, ensure_transition
from .store import (
    LedgerStore, OrderRow, ReviewRow, UserRow, find_order, money, new_order_no, utcnow,
)

logger = get_logger(__name__)

# Statuses whose amount counts as money spent by the employer.
SPENT_STATUSES = (OrderStatus.PAID, OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)


class OrderService:
    def __init__(
        self,
        store: LedgerStore,
        credit: Optional[CreditService] = None,
        payments: Optional[PaymentService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.credit = credit or CreditService(store)
        self.payments = payments or PaymentService(store)
        self.clock = clock

    def create_order(self, request: CreateOrderRequest) -> OrderCreated:
        now = self.clock()
        if request.order_amount <= 0:
            raise ValidationError("Order amount must be greater than 0", order_amount=str(request.order_amount))
        service_time = _as_utc(request.service_time)
        if service_time <= now:
            raise ValidationError("Service time must be in the future", service_time=service_time.isoformat())

        with self.store.transaction() as session:
            for user_id in (request.employer_id, request.provider_id):
                if session.get(UserRow, user_id) is None:
                    raise NotFoundError(f"User {user_id} not found", user_id=user_id)

            order = OrderRow(
                order_no=new_order_no(now),
                employer_id=request.employer_id,
                provider_id=request.provider_id,
                skill_id=request.skill_id,
                task_id=request.task_id,
                order_amount=request.order_amount,
                service_time=service_time,
                order_remark=request.order_remark,
                order_status=int(OrderStatus.PENDING),
                is_deleted=False,
                created_time=now,
                updated_time=now,
            )
            session.add(order)
            session.flush()
            payment = self.payments.open_payment(session, order, request.payment_method)

            logger.info(
                "order.created",
                order_no=order.order_no,
                payment_no=payment.payment_no,
                employer_id=order.employer_id,
                provider_id=order.provider_id,
                order_amount=str(order.order_amount),
            )
            return OrderCreated(
                order=Order.model_validate(order),
                payment=Payment.model_validate(payment),
                message="Order created successfully",
            )

    def confirm_payment(self, order_id: int) -> Order:
        return self._run_transition(order_id, OrderStatus.PAID)

    def start_service(self, order_id: int) -> Order:
        return self._run_transition(order_id, OrderStatus.IN_PROGRESS)

    def complete_service(self, order_id: int) -> Order:
        return self._run_transition(order_id, OrderStatus.COMPLETED)

    def cancel_order(self, order_id: int, cancelled_by: Optional[int] = None) -> Order:
        with self.store.transaction() as session:
            order = self._require(session, order_id)
            current = OrderStatus(order.order_status)
            if current not in CANCELLABLE_ORDER_STATUSES:
                raise InvalidTransitionError(
                    "order", current, OrderStatus.CANCELLED,
                    ORDER_TRANSITIONS[current] - {OrderStatus.CANCELLED},
                )

            initiator = order.employer_id if cancelled_by is None else cancelled_by
            if initiator not in (order.employer_id, order.provider_id):
                raise ValidationError(
                    f"User {initiator} is not a party to order {order_id}",
                    cancelled_by=initiator,
                )

            self._apply_transition(session, order, OrderStatus.CANCELLED, initiator=initiator)
            return Order.model_validate(order)

    def update_order_status(self, order_id: int, target_status: int) -> Order:
        try:
            target = OrderStatus(target_status)
        except ValueError:
            raise ValidationError(f"Invalid order status value: {target_status}", order_status=target_status)
        return self._run_transition(order_id, target)

    def submit_review(self, order_id: int, request: SubmitReviewRequest) -> Review:
        with self.store.transaction() as session:
            order = self._require(session, order_id)
            if request.reviewer_id != order.employer_id:
                raise ValidationError(
                    f"Only the employer of order {order_id} can review it",
                    reviewer_id=request.reviewer_id,
                )

            self._apply_transition(session, order, OrderStatus.REVIEWED)

            review = ReviewRow(
                order_id=order.order_id,
                reviewer_id=request.reviewer_id,
                is_positive=request.is_positive,
                content=request.content,
                created_time=self.clock(),
            )
            session.add(review)
            session.flush()

            event = ScoringEvent.POSITIVE_REVIEW if request.is_positive else ScoringEvent.NEGATIVE_REVIEW
            self.credit.apply_events(session, order.provider_id, [event])
            return Review.model_validate(review)

    def delete_order(self, order_id: int) -> None:
        with self.store.transaction() as session:
            order = session.scalar(
                select(OrderRow).where(OrderRow.order_id == order_id).with_for_update()
            )
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            if order.is_deleted:
                return
            order.is_deleted = True
            order.updated_time = self.clock()
            logger.info("order.deleted", order_no=order.order_no)

    def get_order(self, order_id: int) -> Order:
        with self.store.read() as session:
            order = find_order(session, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            return Order.model_validate(order)

    def list_order_reviews(self, order_id: int) -> list[Review]:
        with self.store.read() as session:
            if find_order(session, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            reviews = session.scalars(
                select(ReviewRow).where(ReviewRow.order_id == order_id)
            ).all()
            return [Review.model_validate(r) for r in reviews]

    def list_user_reviews(self, user_id: int, received: bool = False) -> list[Review]:
        """Reviews written by the user, or with ``received`` those left on orders they provided."""
        conditions = [OrderRow.is_deleted.is_(False)]
        if received:
            conditions.append(OrderRow.provider_id == user_id)
        else:
            conditions.append(ReviewRow.reviewer_id == user_id)

        with self.store.read() as session:
            reviews = session.scalars(
                select(ReviewRow)
                .join(OrderRow, OrderRow.order_id == ReviewRow.order_id)
                .where(*conditions)
                .order_by(ReviewRow.created_time.desc(), ReviewRow.review_id.desc())
            ).all()
            return [Review.model_validate(r) for r in reviews]

    def list_user_orders(
        self,
        user_id: int,
        role: Optional[OrderRole] = None,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> OrderPage:
        page = max(1, page)
        page_size = min(100, max(1, page_size))

        conditions = [OrderRow.is_deleted.is_(False)]
        if role == OrderRole.EMPLOYER:
            conditions.append(OrderRow.employer_id == user_id)
        elif role == OrderRole.PROVIDER:
            conditions.append(OrderRow.provider_id == user_id)
        else:
            conditions.append(or_(OrderRow.employer_id == user_id, OrderRow.provider_id == user_id))
        if status is not None:
            conditions.append(OrderRow.order_status == int(status))

        with self.store.read() as session:
            total = session.scalar(select(func.count()).select_from(OrderRow).where(*conditions)) or 0
            orders = session.scalars(
                select(OrderRow)
                .where(*conditions)
                .order_by(OrderRow.created_time.desc(), OrderRow.order_id.desc())
                .limit(page_size)
                .offset((page - 1) * page_size)
            ).all()
            items = [Order.model_validate(o) for o in orders]

        return OrderPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size),
        )

    def get_order_stats(self) -> OrderStats:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        live = OrderRow.is_deleted.is_(False)

        with self.store.read() as session:
            rows = session.execute(
                select(OrderRow.order_status, func.count(), func.coalesce(func.sum(OrderRow.order_amount), 0))
                .where(live)
                .group_by(OrderRow.order_status)
                .order_by(OrderRow.order_status)
            ).all()
            today_orders, today_amount = session.execute(
                select(func.count(), func.coalesce(func.sum(OrderRow.order_amount), 0))
                .where(live, OrderRow.created_time >= today)
            ).one()

        return OrderStats(
            status_stats=[
                StatusStat(
                    order_status=status,
                    status_name=ORDER_STATUS_NAMES[OrderStatus(status)],
                    count=count,
                    total_amount=money(amount),
                )
                for status, count, amount in rows
            ],
            today_orders=today_orders,
            today_amount=money(today_amount),
            generated_at=now,
        )

    def get_user_order_stats(self, user_id: int) -> UserOrderStats:
        status = OrderRow.order_status
        completed = status == int(OrderStatus.COMPLETED)
        spent = status.in_([int(s) for s in SPENT_STATUSES])

        with self.store.read() as session:
            total, completed_count, total_spent, avg_amount = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(case((completed, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((spent, OrderRow.order_amount), else_=0)), 0),
                    func.coalesce(func.avg(case((completed, OrderRow.order_amount), else_=None)), 0),
                ).where(OrderRow.employer_id == user_id, OrderRow.is_deleted.is_(False))
            ).one()

        return UserOrderStats(
            user_id=user_id,
            total_orders=total,
            completed_orders=completed_count,
            total_spent=money(total_spent),
            avg_order_amount=money(avg_amount),
        )

    def _run_transition(self, order_id: int, target: OrderStatus) -> Order:
        with self.store.transaction() as session:
            order = self._require(session, order_id)
            self._apply_transition(session, order, target)
            return Order.model_validate(order)

    def _apply_transition(
        self,
        session: Session,
        order: OrderRow,
        target: OrderStatus,
        initiator: Optional[int] = None,
    ) -> OrderStatus:
        current = OrderStatus(order.order_status)
        ensure_transition("order", ORDER_TRANSITIONS, current, target)
        order.order_status = int(target)
        order.updated_time = self.clock()

        if target == OrderStatus.PAID:
            self.payments.settle_pending(session, order.order_id)
        elif target == OrderStatus.COMPLETED:
            self.credit.apply_events(session, order.provider_id, [ScoringEvent.ORDER_COMPLETED])
        elif target == OrderStatus.CANCELLED:
            if current == OrderStatus.PENDING:
                self.payments.cancel_pending(session, order.order_id)
            elif current == OrderStatus.PAID:
                penalized = order.employer_id if initiator is None else initiator
                self.credit.apply_events(session, penalized, [ScoringEvent.CANCEL_PENALTY])

        logger.info(
            "order.transition",
            order_no=order.order_no,
            from_status=current.name,
            to_status=target.name,
        )
        return current

    def _require(self, session: Session, order_id: int) -> OrderRow:
        order = find_order(session, order_id, lock=True)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
