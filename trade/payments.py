"""
Payment sub-ledger.

Payments hang off orders (at most one active per order) and refunds hang off
payments (at most one processing per payment). The session-level helpers are
used by the order service so that order and payment rows change together.
"""
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import Date, case, func, select
from sqlalchemy.orm import Session, aliased

from .errors import ConflictError, NotFoundError, ValidationError
from .log import get_logger
from .models import (
    PAYMENT_STATUS_NAMES, CreatePaymentRequest, DailyPaymentStat, DailyPaymentStats,
    DailyPaymentSummary, OrderStatus, Payment, PaymentFilters, PaymentListItem,
    PaymentMethodStat, PaymentPage, PaymentStatus, PaymentStatusStat, PaymentStatusView,
    PaymentSummary, PaymentTotals, PeriodTotals, Refund, RefundHistory, RefundRequest,
    RefundStatus,
)
from .states import (
    ACTIVE_PAYMENT_STATUSES, PAYMENT_TRANSITIONS, REFUND_TRANSITIONS, ensure_transition,
)
from .store import (
    LedgerStore, OrderRow, PaymentRow, RefundRow, UserRow,
    find_order, find_payment, money, new_payment_no, new_refund_no, utcnow,
)

logger = get_logger(__name__)


class PaymentService:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def create_payment(self, request: CreatePaymentRequest) -> Payment:
        with self.store.transaction() as session:
            order = find_order(session, request.order_id, lock=True)
            if order is None:
                raise NotFoundError(f"Order {request.order_id} not found", order_id=request.order_id)
            if order.order_status != OrderStatus.PENDING:
                raise ConflictError(
                    f"Order {order.order_id} is not awaiting payment",
                    order_status=OrderStatus(order.order_status).name,
                )
            payment = self.open_payment(session, order, request.payment_method)
            return Payment.model_validate(payment)

    def cancel_payment(self, payment_id: int) -> Payment:
        with self.store.transaction() as session:
            payment = self._require_payment(session, payment_id)
            self._move(payment, PaymentStatus.CANCELLED)
            return Payment.model_validate(payment)

    def process_refund(self, payment_id: int, request: RefundRequest) -> Refund:
        with self.store.transaction() as session:
            payment = self._require_payment(session, payment_id)

            processing = session.scalar(
                select(RefundRow).where(
                    RefundRow.payment_id == payment_id,
                    RefundRow.refund_status == int(RefundStatus.PROCESSING),
                )
            )
            if processing is not None:
                raise ConflictError(
                    f"Payment {payment_id} already has a refund in progress",
                    refund_no=processing.refund_no,
                )

            ensure_transition(
                "payment", PAYMENT_TRANSITIONS,
                PaymentStatus(payment.payment_status), PaymentStatus.REFUNDING,
            )

            if request.refund_amount <= 0:
                raise ValidationError("Refund amount must be greater than 0", refund_amount=str(request.refund_amount))
            refundable = payment.payment_amount - self._refunded_amount(session, payment_id)
            if request.refund_amount > refundable:
                raise ValidationError(
                    "Refund amount cannot exceed the amount still refundable",
                    refund_amount=str(request.refund_amount),
                    refundable_amount=str(refundable),
                )
            if not request.refund_reason.strip():
                raise ValidationError("Refund reason cannot be empty")

            refund = RefundRow(
                refund_no=new_refund_no(),
                payment_id=payment_id,
                refund_amount=request.refund_amount,
                refund_reason=request.refund_reason,
                refund_status=int(RefundStatus.PROCESSING),
                created_time=utcnow(),
            )
            session.add(refund)
            self._move(payment, PaymentStatus.REFUNDING)
            session.flush()

            logger.info(
                "refund.created",
                refund_no=refund.refund_no,
                payment_id=payment_id,
                refund_amount=str(request.refund_amount),
            )
            return Refund.model_validate(refund)

    def resolve_refund(self, refund_id: int, succeeded: bool) -> Refund:
        """Settle a processing refund. The payment reopens to SUCCESS while part of it is unrefunded."""
        target = RefundStatus.SUCCESS if succeeded else RefundStatus.FAILED
        return self._finish_refund(refund_id, target)

    def cancel_refund(self, refund_id: int) -> Refund:
        return self._finish_refund(refund_id, RefundStatus.CANCELLED)

    def get_payment(self, payment_id: int) -> Payment:
        with self.store.read() as session:
            payment = find_payment(session, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
            return Payment.model_validate(payment)

    def get_payment_by_order(self, order_id: int) -> Payment:
        with self.store.read() as session:
            if find_order(session, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            payment = session.scalar(
                select(PaymentRow)
                .where(PaymentRow.order_id == order_id)
                .order_by(PaymentRow.payment_id.desc())
                .limit(1)
            )
            if payment is None:
                raise NotFoundError(f"No payment for order {order_id}", order_id=order_id)
            return Payment.model_validate(payment)

    def get_payment_status(self, payment_id: int) -> PaymentStatusView:
        with self.store.read() as session:
            row = session.execute(
                select(PaymentRow, OrderRow)
                .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
                .where(PaymentRow.payment_id == payment_id, OrderRow.is_deleted.is_(False))
            ).first()
            if row is None:
                raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
            payment, order = row

            active_refund = session.scalar(
                select(RefundRow.refund_status)
                .where(
                    RefundRow.payment_id == payment_id,
                    RefundRow.refund_status == int(RefundStatus.PROCESSING),
                )
                .limit(1)
            )

            return PaymentStatusView(
                payment_id=payment.payment_id,
                payment_no=payment.payment_no,
                payment_status=payment.payment_status,
                payment_amount=payment.payment_amount,
                payment_time=payment.payment_time,
                order_id=order.order_id,
                order_no=order.order_no,
                order_status=order.order_status,
                has_active_refund=active_refund is not None,
                active_refund_status=active_refund,
            )

    def get_refund_history(self, payment_id: int) -> RefundHistory:
        with self.store.read() as session:
            payment = find_payment(session, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
            refunds = session.scalars(
                select(RefundRow)
                .where(RefundRow.payment_id == payment_id)
                .order_by(RefundRow.created_time.desc(), RefundRow.refund_id.desc())
            ).all()

            return RefundHistory(
                payment=Payment.model_validate(payment),
                refunds=[Refund.model_validate(r) for r in refunds],
                total_refunds=len(refunds),
                total_refund_amount=money(sum(r.refund_amount for r in refunds)),
                refunded_amount=money(sum(
                    r.refund_amount for r in refunds if r.refund_status == RefundStatus.SUCCESS
                )),
            )

    def list_payments(self, filters: Optional[PaymentFilters] = None) -> PaymentPage:
        filters = (filters or PaymentFilters()).normalized()
        conditions = [OrderRow.is_deleted.is_(False)]
        if filters.payment_status is not None:
            conditions.append(PaymentRow.payment_status == int(filters.payment_status))
        if filters.payment_method:
            conditions.append(PaymentRow.payment_method == filters.payment_method)
        if filters.start_date is not None:
            conditions.append(PaymentRow.created_time >= _day_start(filters.start_date))
        if filters.end_date is not None:
            conditions.append(PaymentRow.created_time < _day_start(filters.end_date + timedelta(days=1)))

        employer = aliased(UserRow)
        provider = aliased(UserRow)

        with self.store.read() as session:
            total = session.scalar(
                select(func.count())
                .select_from(PaymentRow)
                .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
                .where(*conditions)
            ) or 0
            rows = session.execute(
                select(PaymentRow, OrderRow, employer.username, provider.username)
                .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
                .outerjoin(employer, employer.user_id == OrderRow.employer_id)
                .outerjoin(provider, provider.user_id == OrderRow.provider_id)
                .where(*conditions)
                .order_by(PaymentRow.created_time.desc(), PaymentRow.payment_id.desc())
                .limit(filters.page_size)
                .offset(filters.offset)
            ).all()

            items = [
                PaymentListItem(
                    **Payment.model_validate(payment).model_dump(exclude={"status_name"}),
                    order_no=order.order_no,
                    employer_id=order.employer_id,
                    provider_id=order.provider_id,
                    employer_name=employer_name,
                    provider_name=provider_name,
                )
                for payment, order, employer_name, provider_name in rows
            ]

        return PaymentPage(
            items=items,
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            pages=math.ceil(total / filters.page_size),
            filters=filters,
        )

    def get_payment_summary(self) -> PaymentSummary:
        now = self.clock()
        today = _day_start(now.date())
        week = today - timedelta(days=now.weekday())
        month = today.replace(day=1)
        amount = PaymentRow.payment_amount

        def live(stmt):
            return stmt.select_from(PaymentRow).join(OrderRow, OrderRow.order_id == PaymentRow.order_id).where(
                OrderRow.is_deleted.is_(False)
            )

        def since(start):
            return case((PaymentRow.created_time >= start, 1), else_=0)

        def amount_since(start):
            return case((PaymentRow.created_time >= start, amount), else_=0)

        with self.store.read() as session:
            status_rows = session.execute(
                live(select(PaymentRow.payment_status, func.count(), func.coalesce(func.sum(amount), 0)))
                .group_by(PaymentRow.payment_status)
                .order_by(PaymentRow.payment_status)
            ).all()
            method_total = func.coalesce(func.sum(amount), 0)
            method_rows = session.execute(
                live(select(PaymentRow.payment_method, func.count(), method_total))
                .group_by(PaymentRow.payment_method)
                .order_by(method_total.desc(), PaymentRow.payment_method)
            ).all()
            totals = session.execute(
                live(select(
                    func.count(),
                    func.coalesce(func.sum(amount), 0),
                    func.coalesce(func.avg(amount), 0),
                    func.coalesce(func.sum(since(today)), 0),
                    func.coalesce(func.sum(amount_since(today)), 0),
                    func.coalesce(func.sum(since(week)), 0),
                    func.coalesce(func.sum(amount_since(week)), 0),
                    func.coalesce(func.sum(since(month)), 0),
                    func.coalesce(func.sum(amount_since(month)), 0),
                ))
            ).one()

        (
            count, total_amount, avg_amount, today_count, today_amount,
            week_count, week_amount, month_count, month_amount,
        ) = totals

        return PaymentSummary(
            status_stats=[
                PaymentStatusStat(
                    payment_status=status,
                    status_name=PAYMENT_STATUS_NAMES[PaymentStatus(status)],
                    count=status_count,
                    total_amount=money(status_amount),
                )
                for status, status_count, status_amount in status_rows
            ],
            method_stats=[
                PaymentMethodStat(payment_method=method, count=method_count, total_amount=money(method_amount))
                for method, method_count, method_amount in method_rows
            ],
            today=PeriodTotals(count=today_count, total_amount=money(today_amount)),
            week=PeriodTotals(count=week_count, total_amount=money(week_amount)),
            month=PeriodTotals(count=month_count, total_amount=money(month_amount)),
            total=PaymentTotals(count=count, total_amount=money(total_amount), avg_amount=money(avg_amount)),
            generated_at=now,
        )

    def get_daily_payment_stats(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        days: int = 30,
    ) -> DailyPaymentStats:
        """Per-day payment totals, newest day first. Defaults to the last ``days`` days."""
        now = self.clock()
        days = min(365, max(1, days))
        end_date = end_date or now.date()
        start_date = start_date or end_date - timedelta(days=days)
        if start_date > end_date:
            raise ValidationError(
                "start_date must not be after end_date",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )

        amount = PaymentRow.payment_amount
        day = func.date(PaymentRow.created_time, type_=Date)
        succeeded = PaymentRow.payment_status == int(PaymentStatus.SUCCESS)
        failed = PaymentRow.payment_status == int(PaymentStatus.FAILED)
        conditions = (
            OrderRow.is_deleted.is_(False),
            PaymentRow.created_time >= _day_start(start_date),
            PaymentRow.created_time < _day_start(end_date + timedelta(days=1)),
        )

        with self.store.read() as session:
            daily_rows = session.execute(
                select(
                    day,
                    func.count(),
                    func.coalesce(func.sum(amount), 0),
                    func.coalesce(func.avg(amount), 0),
                    func.coalesce(func.sum(case((succeeded, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((succeeded, amount), else_=0)), 0),
                    func.coalesce(func.sum(case((failed, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((failed, amount), else_=0)), 0),
                )
                .select_from(PaymentRow)
                .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
                .where(*conditions)
                .group_by(day)
                .order_by(day.desc())
            ).all()
            summary = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(amount), 0),
                    func.coalesce(func.avg(amount), 0),
                    func.coalesce(func.min(amount), 0),
                    func.coalesce(func.max(amount), 0),
                    func.count(func.distinct(day)),
                )
                .select_from(PaymentRow)
                .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
                .where(*conditions)
            ).one()

        return DailyPaymentStats(
            daily_stats=[
                DailyPaymentStat(
                    day=row[0],
                    payment_count=row[1],
                    total_amount=money(row[2]),
                    avg_amount=money(row[3]),
                    success_count=row[4],
                    success_amount=money(row[5]),
                    failed_count=row[6],
                    failed_amount=money(row[7]),
                )
                for row in daily_rows
            ],
            summary=DailyPaymentSummary(
                total_count=summary[0],
                total_amount=money(summary[1]),
                overall_avg=money(summary[2]),
                min_amount=money(summary[3]),
                max_amount=money(summary[4]),
                active_days=summary[5],
            ),
            start_date=start_date,
            end_date=end_date,
            generated_at=now,
        )

    # Session-level helpers shared with the order service

    def open_payment(self, session: Session, order: OrderRow, payment_method: str = "balance") -> PaymentRow:
        active = session.scalar(
            select(PaymentRow)
            .where(
                PaymentRow.order_id == order.order_id,
                PaymentRow.payment_status.in_([int(s) for s in ACTIVE_PAYMENT_STATUSES]),
            )
            .with_for_update()
        )
        if active is not None:
            raise ConflictError(
                f"Order {order.order_id} already has an active payment",
                payment_no=active.payment_no,
            )

        now = self.clock()
        payment = PaymentRow(
            payment_no=new_payment_no(now),
            order_id=order.order_id,
            payment_amount=order.order_amount,
            payment_method=payment_method,
            payment_status=int(PaymentStatus.PENDING),
            created_time=now,
            updated_time=now,
        )
        session.add(payment)
        session.flush()
        logger.info("payment.created", payment_no=payment.payment_no, order_id=order.order_id)
        return payment

    def settle_pending(self, session: Session, order_id: int) -> PaymentRow:
        payment = self._pending_for_order(session, order_id)
        if payment is None:
            raise NotFoundError(f"No pending payment for order {order_id}", order_id=order_id)
        self._move(payment, PaymentStatus.SUCCESS)
        payment.payment_time = utcnow()
        return payment

    def cancel_pending(self, session: Session, order_id: int) -> Optional[PaymentRow]:
        payment = self._pending_for_order(session, order_id)
        if payment is not None:
            self._move(payment, PaymentStatus.CANCELLED)
        return payment

    def _pending_for_order(self, session: Session, order_id: int) -> Optional[PaymentRow]:
        return session.scalar(
            select(PaymentRow)
            .where(
                PaymentRow.order_id == order_id,
                PaymentRow.payment_status == int(PaymentStatus.PENDING),
            )
            .with_for_update()
        )

    def _refunded_amount(self, session: Session, payment_id: int) -> Decimal:
        total = session.scalar(
            select(func.coalesce(func.sum(RefundRow.refund_amount), 0)).where(
                RefundRow.payment_id == payment_id,
                RefundRow.refund_status == int(RefundStatus.SUCCESS),
            )
        )
        return money(total)

    def _require_payment(self, session: Session, payment_id: int) -> PaymentRow:
        payment = find_payment(session, payment_id, lock=True)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    def _finish_refund(self, refund_id: int, target: RefundStatus) -> Refund:
        with self.store.transaction() as session:
            refund = session.scalar(
                select(RefundRow).where(RefundRow.refund_id == refund_id).with_for_update()
            )
            if refund is None:
                raise NotFoundError(f"Refund {refund_id} not found", refund_id=refund_id)
            payment = self._require_payment(session, refund.payment_id)

            ensure_transition("refund", REFUND_TRANSITIONS, RefundStatus(refund.refund_status), target)
            refund.refund_status = int(target)
            refund.processed_time = utcnow()
            session.flush()

            # A payment stays REFUNDING only once nothing is left to refund.
            if self._refunded_amount(session, payment.payment_id) < payment.payment_amount:
                self._move(payment, PaymentStatus.SUCCESS)

            logger.info(
                "refund.finished",
                refund_no=refund.refund_no,
                payment_id=payment.payment_id,
                refund_status=target.name,
            )
            return Refund.model_validate(refund)

    def _move(self, payment: PaymentRow, target: PaymentStatus) -> None:
        current = PaymentStatus(payment.payment_status)
        ensure_transition("payment", PAYMENT_TRANSITIONS, current, target)
        payment.payment_status = int(target)
        payment.updated_time = utcnow()
        logger.info(
            "payment.transition",
            payment_no=payment.payment_no,
            from_status=current.name,
            to_status=target.name,
        )


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)
