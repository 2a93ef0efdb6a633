"""
Unit Tests for the Payment Service

Tests cover:
1. Standalone payment creation and the one-active-payment rule
2. Payment cancellation
3. Refund creation, settlement and cancellation
4. Status projection and refund history
5. Payment listing, summary and daily statistics
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from trade.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from trade.models import (
    CreatePaymentRequest,
    OrderStatus,
    PaymentFilters,
    PaymentStatus,
    RefundRequest,
    RefundStatus,
)
from trade.store import utcnow


@pytest.fixture
def paid_order(make_order, order_service):
    created = make_order("200.00")
    order_service.confirm_payment(created.order.order_id)
    return created


def refund(amount, reason="Lesson shortened"):
    return RefundRequest(refund_amount=Decimal(amount), refund_reason=reason)


class TestCreatePayment:
    """Tests for payment creation outside order creation."""

    def test_duplicate_active_payment_rejected(self, make_order, payment_service):
        created = make_order()

        with pytest.raises(ConflictError):
            payment_service.create_payment(CreatePaymentRequest(order_id=created.order.order_id))

    def test_new_payment_after_cancellation(self, make_order, payment_service, order_service):
        created = make_order()
        order_id = created.order.order_id
        payment_service.cancel_payment(created.payment.payment_id)

        replacement = payment_service.create_payment(
            CreatePaymentRequest(order_id=order_id, payment_method="card")
        )
        assert replacement.payment_status == PaymentStatus.PENDING
        assert replacement.payment_method == "card"
        assert replacement.payment_amount == Decimal("100.00")

        order_service.confirm_payment(order_id)
        assert payment_service.get_payment(replacement.payment_id).payment_status == PaymentStatus.SUCCESS
        assert payment_service.get_payment(created.payment.payment_id).payment_status == PaymentStatus.CANCELLED
        assert payment_service.get_payment_by_order(order_id).payment_id == replacement.payment_id

    def test_payment_requires_pending_order(self, paid_order, payment_service):
        with pytest.raises(ConflictError):
            payment_service.create_payment(CreatePaymentRequest(order_id=paid_order.order.order_id))

    def test_confirm_without_pending_payment(self, make_order, payment_service, order_service):
        created = make_order()
        payment_service.cancel_payment(created.payment.payment_id)

        with pytest.raises(NotFoundError):
            order_service.confirm_payment(created.order.order_id)

        assert order_service.get_order(created.order.order_id).order_status == OrderStatus.PENDING

    def test_payment_for_missing_order(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.create_payment(CreatePaymentRequest(order_id=777))

    def test_status_names(self, make_order, payment_service):
        created = make_order()
        assert created.payment.status_name == "Awaiting payment"

        cancelled = payment_service.cancel_payment(created.payment.payment_id)
        assert cancelled.status_name == "Cancelled"


class TestCancelPayment:
    """Tests for cancelling a payment."""

    def test_cancel_pending_payment(self, make_order, payment_service):
        created = make_order()
        payment = payment_service.cancel_payment(created.payment.payment_id)
        assert payment.payment_status == PaymentStatus.CANCELLED

    def test_cannot_cancel_successful_payment(self, paid_order, payment_service):
        with pytest.raises(InvalidTransitionError) as exc_info:
            payment_service.cancel_payment(paid_order.payment.payment_id)

        assert exc_info.value.current == PaymentStatus.SUCCESS

    def test_cancel_missing_payment(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.cancel_payment(31337)


class TestRefunds:
    """Tests for the refund flow."""

    def test_process_refund(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id

        created = payment_service.process_refund(payment_id, refund("50.00"))

        assert created.refund_status == RefundStatus.PROCESSING
        assert created.status_name == "Processing"
        assert created.refund_amount == Decimal("50.00")
        assert created.refund_reason == "Lesson shortened"
        assert created.refund_no.startswith("R")
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.REFUNDING

    def test_refund_requires_successful_payment(self, make_order, payment_service):
        created = make_order()

        with pytest.raises(InvalidTransitionError):
            payment_service.process_refund(created.payment.payment_id, refund("10.00"))

    def test_refund_cannot_exceed_payment(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id

        with pytest.raises(ValidationError):
            payment_service.process_refund(payment_id, refund("200.01"))

        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS
        assert payment_service.get_refund_history(payment_id).refunds == []

    def test_full_refund_allowed(self, paid_order, payment_service):
        created = payment_service.process_refund(paid_order.payment.payment_id, refund("200.00"))
        assert created.refund_amount == Decimal("200.00")

    def test_non_positive_refund_rejected(self, paid_order, payment_service):
        with pytest.raises(ValidationError):
            payment_service.process_refund(paid_order.payment.payment_id, refund("0"))

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_blank_reason_rejected(self, paid_order, payment_service, reason):
        payment_id = paid_order.payment.payment_id

        with pytest.raises(ValidationError):
            payment_service.process_refund(payment_id, refund("10.00", reason=reason))

        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS

    def test_second_refund_in_progress_conflicts(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        payment_service.process_refund(payment_id, refund("20.00"))

        with pytest.raises(ConflictError):
            payment_service.process_refund(payment_id, refund("20.00"))

    def test_failed_refund_reopens_payment(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        first = payment_service.process_refund(payment_id, refund("20.00"))

        failed = payment_service.resolve_refund(first.refund_id, succeeded=False)

        assert failed.refund_status == RefundStatus.FAILED
        assert failed.processed_time is not None
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS

        payment_service.process_refund(payment_id, refund("20.00"))
        history = payment_service.get_refund_history(payment_id)
        assert len(history.refunds) == 2
        assert {r.refund_status for r in history.refunds} == {RefundStatus.FAILED, RefundStatus.PROCESSING}

    def test_partial_refund_then_remainder(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        first = payment_service.process_refund(payment_id, refund("60.00"))

        payment_service.resolve_refund(first.refund_id, succeeded=True)
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS

        second = payment_service.process_refund(payment_id, refund("140.00", reason="Rest of the session"))
        payment_service.resolve_refund(second.refund_id, succeeded=True)

        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.REFUNDING
        with pytest.raises(InvalidTransitionError):
            payment_service.process_refund(payment_id, refund("0.01"))

    def test_refund_above_remainder_rejected(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        first = payment_service.process_refund(payment_id, refund("150.00"))
        payment_service.resolve_refund(first.refund_id, succeeded=True)

        with pytest.raises(ValidationError) as exc_info:
            payment_service.process_refund(payment_id, refund("50.01"))

        assert exc_info.value.context["refundable_amount"] == "50.00"
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS
        payment_service.process_refund(payment_id, refund("50.00"))

    def test_failed_refunds_do_not_reduce_refundable_amount(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        first = payment_service.process_refund(payment_id, refund("200.00"))
        payment_service.resolve_refund(first.refund_id, succeeded=False)

        again = payment_service.process_refund(payment_id, refund("200.00"))
        assert again.refund_amount == Decimal("200.00")

    def test_successful_full_refund_keeps_payment_refunding(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        created = payment_service.process_refund(payment_id, refund("200.00"))

        settled = payment_service.resolve_refund(created.refund_id, succeeded=True)

        assert settled.refund_status == RefundStatus.SUCCESS
        assert settled.status_name == "Refunded"
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.REFUNDING

        with pytest.raises(InvalidTransitionError):
            payment_service.resolve_refund(created.refund_id, succeeded=False)

    def test_cancel_refund(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        created = payment_service.process_refund(payment_id, refund("5.00"))

        cancelled = payment_service.cancel_refund(created.refund_id)

        assert cancelled.refund_status == RefundStatus.CANCELLED
        assert payment_service.get_payment(payment_id).payment_status == PaymentStatus.SUCCESS

    def test_resolve_missing_refund(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.resolve_refund(404, succeeded=True)


class TestRefundHistory:
    """Tests for refund history totals."""

    def test_history_totals(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        first = payment_service.process_refund(payment_id, refund("30.00"))
        payment_service.resolve_refund(first.refund_id, succeeded=True)
        second = payment_service.process_refund(payment_id, refund("20.00"))
        payment_service.resolve_refund(second.refund_id, succeeded=False)

        history = payment_service.get_refund_history(payment_id)

        assert history.payment.payment_id == payment_id
        assert history.total_refunds == 2
        assert history.total_refund_amount == Decimal("50.00")
        assert history.refunded_amount == Decimal("30.00")

    def test_empty_history(self, paid_order, payment_service):
        history = payment_service.get_refund_history(paid_order.payment.payment_id)

        assert history.total_refunds == 0
        assert history.total_refund_amount == Decimal("0.00")

    def test_history_of_missing_payment(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.get_refund_history(999)


class TestPaymentStatus:
    """Tests for the status projection."""

    def test_status_without_refund(self, paid_order, payment_service):
        view = payment_service.get_payment_status(paid_order.payment.payment_id)

        assert view.payment_status == PaymentStatus.SUCCESS
        assert view.order_status == OrderStatus.PAID
        assert view.order_no == paid_order.order.order_no
        assert view.has_active_refund is False
        assert view.active_refund_status is None

    def test_status_with_active_refund(self, paid_order, payment_service):
        payment_id = paid_order.payment.payment_id
        payment_service.process_refund(payment_id, refund("1.00"))

        view = payment_service.get_payment_status(payment_id)

        assert view.payment_status == PaymentStatus.REFUNDING
        assert view.has_active_refund is True
        assert view.active_refund_status == RefundStatus.PROCESSING

    def test_status_of_deleted_order_hidden(self, paid_order, payment_service, order_service):
        order_service.delete_order(paid_order.order.order_id)

        with pytest.raises(NotFoundError):
            payment_service.get_payment_status(paid_order.payment.payment_id)


class TestListPayments:
    """Tests for the paged payment list."""

    @pytest.fixture
    def payments(self, make_order, order_service, payment_service, users):
        paid = make_order("200.00")
        order_service.confirm_payment(paid.order.order_id)
        pending = make_order("50.00", employer_id=users["carol"], provider_id=users["dave"])
        card = make_order("75.00", payment_method="card")
        return {"paid": paid, "pending": pending, "card": card}

    def test_lists_newest_first_with_parties(self, payments, payment_service):
        page = payment_service.list_payments()

        assert page.total == 3
        assert [p.payment_id for p in page.items] == [
            payments["card"].payment.payment_id,
            payments["pending"].payment.payment_id,
            payments["paid"].payment.payment_id,
        ]
        carol_order = page.items[1]
        assert carol_order.employer_name == "carol"
        assert carol_order.provider_name == "dave"
        assert carol_order.order_no == payments["pending"].order.order_no

    def test_filters(self, payments, payment_service):
        by_status = payment_service.list_payments(PaymentFilters(payment_status=PaymentStatus.SUCCESS))
        by_method = payment_service.list_payments(PaymentFilters(payment_method="card"))

        assert [p.payment_id for p in by_status.items] == [payments["paid"].payment.payment_id]
        assert by_status.items[0].status_name == "Paid"
        assert [p.payment_id for p in by_method.items] == [payments["card"].payment.payment_id]

    def test_date_range(self, payments, payment_service):
        today = utcnow().date()

        inside = payment_service.list_payments(PaymentFilters(start_date=today, end_date=today))
        before = payment_service.list_payments(PaymentFilters(end_date=today - timedelta(days=1)))

        assert inside.total == 3
        assert before.total == 0

    def test_pagination_clamped(self, payments, payment_service):
        page = payment_service.list_payments(PaymentFilters(page=0, page_size=2))

        assert page.page == 1
        assert page.page_size == 2
        assert page.pages == 2
        assert len(page.items) == 2

    def test_deleted_orders_excluded(self, payments, payment_service, order_service):
        order_service.delete_order(payments["pending"].order.order_id)

        assert payment_service.list_payments().total == 2


class TestPaymentSummary:
    """Tests for the payment summary report."""

    def test_summary(self, make_order, order_service, payment_service):
        paid = make_order("200.00")
        order_service.confirm_payment(paid.order.order_id)
        make_order("50.00")
        make_order("75.00", payment_method="card")

        summary = payment_service.get_payment_summary()

        by_status = {s.payment_status: s for s in summary.status_stats}
        assert by_status[PaymentStatus.PENDING].count == 2
        assert by_status[PaymentStatus.PENDING].total_amount == Decimal("125.00")
        assert by_status[PaymentStatus.PENDING].status_name == "Awaiting payment"
        assert by_status[PaymentStatus.SUCCESS].total_amount == Decimal("200.00")

        assert [(m.payment_method, m.count) for m in summary.method_stats] == [("balance", 2), ("card", 1)]
        assert summary.method_stats[0].total_amount == Decimal("250.00")

        assert summary.today.count == 3
        assert summary.week.count == 3
        assert summary.month.total_amount == Decimal("325.00")
        assert summary.total.count == 3
        assert summary.total.avg_amount == Decimal("108.33")

    def test_empty_summary(self, payment_service):
        summary = payment_service.get_payment_summary()

        assert summary.status_stats == []
        assert summary.total.count == 0
        assert summary.total.total_amount == Decimal("0.00")


class TestDailyPaymentStats:
    """Tests for per-day payment statistics."""

    def test_today_bucket(self, make_order, order_service, payment_service):
        paid = make_order("100.00")
        order_service.confirm_payment(paid.order.order_id)
        make_order("50.00")

        stats = payment_service.get_daily_payment_stats()

        assert len(stats.daily_stats) == 1
        day = stats.daily_stats[0]
        assert day.day == utcnow().date()
        assert day.payment_count == 2
        assert day.total_amount == Decimal("150.00")
        assert day.avg_amount == Decimal("75.00")
        assert day.success_count == 1
        assert day.success_amount == Decimal("100.00")
        assert day.failed_count == 0
        assert stats.summary.total_count == 2
        assert stats.summary.min_amount == Decimal("50.00")
        assert stats.summary.max_amount == Decimal("100.00")
        assert stats.summary.active_days == 1
        assert stats.end_date == utcnow().date()
        assert stats.start_date == stats.end_date - timedelta(days=30)

    def test_range_excludes_other_days(self, make_order, payment_service):
        make_order("100.00")
        yesterday = utcnow().date() - timedelta(days=1)

        stats = payment_service.get_daily_payment_stats(start_date=yesterday, end_date=yesterday)

        assert stats.daily_stats == []
        assert stats.summary.total_count == 0
        assert stats.summary.active_days == 0

    def test_inverted_range_rejected(self, payment_service):
        today = utcnow().date()

        with pytest.raises(ValidationError):
            payment_service.get_daily_payment_stats(start_date=today, end_date=today - timedelta(days=1))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
