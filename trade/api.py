from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .credit import CreditService
from .errors import TradeError
from .log import get_logger, setup_logging
from .models import (
    CancelOrderRequest, CreateOrderRequest, CreatePaymentRequest, CreditEvents,
    CreditRanking, CreditRecord, CreditStats, DailyPaymentStats, Order, OrderCreated,
    OrderPage, OrderRole, OrderStats, OrderStatus, Payment, PaymentFilters, PaymentPage,
    PaymentStatus, PaymentStatusView, PaymentSummary, RankingFilters, Refund,
    RefundHistory, RefundRequest, ResolveRefundRequest, Review, SubmitReviewRequest,
    UpdateOrderStatusRequest, UserOrderStats,
)
from .orders import OrderService
from .payments import PaymentService
from .store import LedgerStore

logger = get_logger(__name__)

router = APIRouter()


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_credit(request: Request) -> CreditService:
    return request.app.state.credit


def get_payments(request: Request) -> PaymentService:
    return request.app.state.payments


async def trade_error_handler(request: Request, exc: TradeError) -> JSONResponse:
    logger.info("request.rejected", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.to_dict()},
    )


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "skill-trade"}


# Orders

@router.post("/orders", response_model=OrderCreated, status_code=status.HTTP_201_CREATED, tags=["Orders"])
def create_order(request: CreateOrderRequest, orders: OrderService = Depends(get_orders)) -> OrderCreated:
    return orders.create_order(request)


@router.get("/orders/stats", response_model=OrderStats, tags=["Orders"])
def get_order_stats(orders: OrderService = Depends(get_orders)) -> OrderStats:
    return orders.get_order_stats()


@router.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
def get_order(order_id: int, orders: OrderService = Depends(get_orders)) -> Order:
    return orders.get_order(order_id)


@router.post("/orders/{order_id}/confirm-payment", response_model=Order, tags=["Orders"])
def confirm_payment(order_id: int, orders: OrderService = Depends(get_orders)) -> Order:
    return orders.confirm_payment(order_id)


@router.post("/orders/{order_id}/start", response_model=Order, tags=["Orders"])
def start_service(order_id: int, orders: OrderService = Depends(get_orders)) -> Order:
    return orders.start_service(order_id)


@router.post("/orders/{order_id}/complete", response_model=Order, tags=["Orders"])
def complete_service(order_id: int, orders: OrderService = Depends(get_orders)) -> Order:
    return orders.complete_service(order_id)


@router.post("/orders/{order_id}/cancel", response_model=Order, tags=["Orders"])
def cancel_order(
    order_id: int,
    request: Optional[CancelOrderRequest] = None,
    orders: OrderService = Depends(get_orders),
) -> Order:
    cancelled_by = request.cancelled_by if request else None
    return orders.cancel_order(order_id, cancelled_by=cancelled_by)


@router.patch("/orders/{order_id}/status", response_model=Order, tags=["Orders"])
def update_order_status(
    order_id: int, request: UpdateOrderStatusRequest, orders: OrderService = Depends(get_orders)
) -> Order:
    return orders.update_order_status(order_id, request.order_status)


@router.post("/orders/{order_id}/review", response_model=Review, status_code=status.HTTP_201_CREATED, tags=["Orders"])
def submit_review(
    order_id: int, request: SubmitReviewRequest, orders: OrderService = Depends(get_orders)
) -> Review:
    return orders.submit_review(order_id, request)


@router.get("/orders/{order_id}/reviews", response_model=list[Review], tags=["Orders"])
def list_order_reviews(order_id: int, orders: OrderService = Depends(get_orders)) -> list[Review]:
    return orders.list_order_reviews(order_id)


@router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Orders"])
def delete_order(order_id: int, orders: OrderService = Depends(get_orders)) -> Response:
    orders.delete_order(order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/orders/{order_id}/payment", response_model=Payment, tags=["Payments"])
def get_order_payment(order_id: int, payments: PaymentService = Depends(get_payments)) -> Payment:
    return payments.get_payment_by_order(order_id)


# Users

@router.get("/users/{user_id}/orders", response_model=OrderPage, tags=["Users"])
def list_user_orders(
    user_id: int,
    role: Optional[OrderRole] = None,
    order_status: Optional[OrderStatus] = None,
    page: int = 1,
    page_size: int = 10,
    orders: OrderService = Depends(get_orders),
) -> OrderPage:
    return orders.list_user_orders(user_id, role=role, status=order_status, page=page, page_size=page_size)


@router.get("/users/{user_id}/order-stats", response_model=UserOrderStats, tags=["Users"])
def get_user_order_stats(user_id: int, orders: OrderService = Depends(get_orders)) -> UserOrderStats:
    return orders.get_user_order_stats(user_id)


@router.get("/users/{user_id}/reviews", response_model=list[Review], tags=["Users"])
def list_user_reviews(
    user_id: int, received: bool = False, orders: OrderService = Depends(get_orders)
) -> list[Review]:
    return orders.list_user_reviews(user_id, received=received)


@router.get("/users/{user_id}/credit", response_model=CreditRecord, tags=["Credit"])
def get_user_credit(user_id: int, credit: CreditService = Depends(get_credit)) -> CreditRecord:
    return credit.get_user_credit(user_id)


@router.post("/users/{user_id}/credit", response_model=CreditRecord, tags=["Credit"])
def update_user_credit(
    user_id: int, events: CreditEvents, credit: CreditService = Depends(get_credit)
) -> CreditRecord:
    return credit.update_user_credit(user_id, events)


# Credit

@router.get("/credit/ranking", response_model=CreditRanking, tags=["Credit"])
def get_credit_ranking(
    min_orders: int = 0,
    min_score: Decimal = Decimal("0"),
    page: int = 1,
    page_size: int = 10,
    credit: CreditService = Depends(get_credit),
) -> CreditRanking:
    filters = RankingFilters(min_orders=min_orders, min_score=min_score, page=page, page_size=page_size)
    return credit.get_credit_ranking(filters)


@router.get("/credit/stats", response_model=CreditStats, tags=["Credit"])
def get_credit_stats(credit: CreditService = Depends(get_credit)) -> CreditStats:
    return credit.get_credit_stats()


# Payments

@router.post("/payments", response_model=Payment, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def create_payment(request: CreatePaymentRequest, payments: PaymentService = Depends(get_payments)) -> Payment:
    return payments.create_payment(request)


@router.get("/payments", response_model=PaymentPage, tags=["Payments"])
def list_payments(
    payment_status: Optional[PaymentStatus] = None,
    payment_method: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    page_size: int = 10,
    payments: PaymentService = Depends(get_payments),
) -> PaymentPage:
    filters = PaymentFilters(
        payment_status=payment_status,
        payment_method=payment_method,
        start_date=start_date,
        end_date=end_date,
        page=page,
        page_size=page_size,
    )
    return payments.list_payments(filters)


@router.get("/payments/summary", response_model=PaymentSummary, tags=["Payments"])
def get_payment_summary(payments: PaymentService = Depends(get_payments)) -> PaymentSummary:
    return payments.get_payment_summary()


@router.get("/payments/daily-stats", response_model=DailyPaymentStats, tags=["Payments"])
def get_daily_payment_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    days: int = 30,
    payments: PaymentService = Depends(get_payments),
) -> DailyPaymentStats:
    return payments.get_daily_payment_stats(start_date=start_date, end_date=end_date, days=days)


@router.get("/payments/{payment_id}", response_model=Payment, tags=["Payments"])
def get_payment(payment_id: int, payments: PaymentService = Depends(get_payments)) -> Payment:
    return payments.get_payment(payment_id)


@router.get("/payments/{payment_id}/status", response_model=PaymentStatusView, tags=["Payments"])
def get_payment_status(payment_id: int, payments: PaymentService = Depends(get_payments)) -> PaymentStatusView:
    return payments.get_payment_status(payment_id)


@router.post("/payments/{payment_id}/cancel", response_model=Payment, tags=["Payments"])
def cancel_payment(payment_id: int, payments: PaymentService = Depends(get_payments)) -> Payment:
    return payments.cancel_payment(payment_id)


@router.post("/payments/{payment_id}/refunds", response_model=Refund, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def process_refund(
    payment_id: int, request: RefundRequest, payments: PaymentService = Depends(get_payments)
) -> Refund:
    return payments.process_refund(payment_id, request)


@router.get("/payments/{payment_id}/refunds", response_model=RefundHistory, tags=["Payments"])
def get_refund_history(payment_id: int, payments: PaymentService = Depends(get_payments)) -> RefundHistory:
    return payments.get_refund_history(payment_id)


@router.post("/refunds/{refund_id}/resolve", response_model=Refund, tags=["Payments"])
def resolve_refund(
    refund_id: int, request: ResolveRefundRequest, payments: PaymentService = Depends(get_payments)
) -> Refund:
    return payments.resolve_refund(refund_id, request.succeeded)


@router.post("/refunds/{refund_id}/cancel", response_model=Refund, tags=["Payments"])
def cancel_refund(refund_id: int, payments: PaymentService = Depends(get_payments)) -> Refund:
    return payments.cancel_refund(refund_id)


def create_app(settings: Optional[Settings] = None, store: Optional[LedgerStore] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    if store is None:
        store = LedgerStore.from_settings(settings)
        store.create_all()

    app = FastAPI(
        title=settings.api_title,
        description="Order lifecycle, payments and credit scoring for the skill exchange",
        version=settings.api_version,
        root_path=settings.api_root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    credit = CreditService(store)
    payments = PaymentService(store)
    app.state.store = store
    app.state.credit = credit
    app.state.payments = payments
    app.state.orders = OrderService(store, credit=credit, payments=payments)

    app.add_exception_handler(TradeError, trade_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
