from datetime import date, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field

from scoring import ScoringEvent, classify_score


class OrderStatus(IntEnum):
    PENDING = 1
    PAID = 2
    IN_PROGRESS = 3
    COMPLETED = 4
    REVIEWED = 5
    CANCELLED = 6


class PaymentStatus(IntEnum):
    PENDING = 0
    SUCCESS = 1
    CANCELLED = 2
    REFUNDING = 3
    FAILED = 4


class RefundStatus(IntEnum):
    PROCESSING = 0
    SUCCESS = 1
    FAILED = 2
    CANCELLED = 3


class OrderRole(str, Enum):
    EMPLOYER = "employer"
    PROVIDER = "provider"


ORDER_STATUS_NAMES = {
    OrderStatus.PENDING: "Awaiting payment",
    OrderStatus.PAID: "Paid",
    OrderStatus.IN_PROGRESS: "In progress",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.REVIEWED: "Reviewed",
    OrderStatus.CANCELLED: "Cancelled",
}

PAYMENT_STATUS_NAMES = {
    PaymentStatus.PENDING: "Awaiting payment",
    PaymentStatus.SUCCESS: "Paid",
    PaymentStatus.CANCELLED: "Cancelled",
    PaymentStatus.REFUNDING: "Refunding",
    PaymentStatus.FAILED: "Failed",
}

REFUND_STATUS_NAMES = {
    RefundStatus.PROCESSING: "Processing",
    RefundStatus.SUCCESS: "Refunded",
    RefundStatus.FAILED: "Refund failed",
    RefundStatus.CANCELLED: "Refund cancelled",
}


# Requests

class CreateOrderRequest(BaseModel):
    employer_id: int
    provider_id: int
    skill_id: int
    order_amount: Decimal
    service_time: datetime
    order_remark: str = ""
    task_id: Optional[int] = None
    payment_method: str = Field(default="balance")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "employer_id": 1,
            "provider_id": 2,
            "skill_id": 10,
            "order_amount": 100.00,
            "service_time": "2030-01-01T10:00:00Z",
            "order_remark": "Two hour guitar lesson",
        }
    })


class UpdateOrderStatusRequest(BaseModel):
    order_status: int


class CancelOrderRequest(BaseModel):
    cancelled_by: Optional[int] = Field(default=None, description="User initiating the cancellation")


class SubmitReviewRequest(BaseModel):
    reviewer_id: int
    is_positive: bool
    content: str = ""


class CreatePaymentRequest(BaseModel):
    order_id: int
    payment_method: str = Field(default="balance")


class RefundRequest(BaseModel):
    refund_amount: Decimal
    refund_reason: str = ""


class ResolveRefundRequest(BaseModel):
    succeeded: bool


class CreditEvents(BaseModel):
    order_completed: bool = False
    positive_review: bool = False
    negative_review: bool = False
    cancel_penalty: bool = False

    def to_events(self) -> list[ScoringEvent]:
        flags = (
            (self.order_completed, ScoringEvent.ORDER_COMPLETED),
            (self.positive_review, ScoringEvent.POSITIVE_REVIEW),
            (self.negative_review, ScoringEvent.NEGATIVE_REVIEW),
            (self.cancel_penalty, ScoringEvent.CANCEL_PENALTY),
        )
        return [event for enabled, event in flags if enabled]


class RankingFilters(BaseModel):
    min_orders: int = 0
    min_score: Decimal = Decimal("0")
    page: int = 1
    page_size: int = 10

    def normalized(self) -> "RankingFilters":
        return RankingFilters(
            min_orders=max(0, self.min_orders),
            min_score=max(Decimal("0"), self.min_score),
            page=max(1, self.page),
            page_size=min(100, max(1, self.page_size)),
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaymentFilters(BaseModel):
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[str] = None
    start_date: Optional[date] = Field(default=None, description="Inclusive, by creation day (UTC)")
    end_date: Optional[date] = Field(default=None, description="Inclusive, by creation day (UTC)")
    page: int = 1
    page_size: int = 10

    def normalized(self) -> "PaymentFilters":
        return self.model_copy(update={
            "page": max(1, self.page),
            "page_size": min(100, max(1, self.page_size)),
        })

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


# Records

class Order(BaseModel):
    order_id: int
    order_no: str
    employer_id: int
    provider_id: int
    skill_id: int
    task_id: Optional[int] = None
    order_amount: Decimal
    service_time: datetime
    order_remark: str = ""
    order_status: OrderStatus
    created_time: datetime
    updated_time: datetime

    model_config = ConfigDict(from_attributes=True)


class Payment(BaseModel):
    payment_id: int
    payment_no: str
    order_id: int
    payment_amount: Decimal
    payment_method: str
    payment_status: PaymentStatus
    payment_time: Optional[datetime] = None
    created_time: datetime
    updated_time: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def status_name(self) -> str:
        return PAYMENT_STATUS_NAMES[self.payment_status]


class Refund(BaseModel):
    refund_id: int
    refund_no: str
    payment_id: int
    refund_amount: Decimal
    refund_reason: str = ""
    refund_status: RefundStatus
    created_time: datetime
    processed_time: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def status_name(self) -> str:
        return REFUND_STATUS_NAMES[self.refund_status]


class Review(BaseModel):
    review_id: int
    order_id: int
    reviewer_id: int
    is_positive: bool
    content: str = ""
    created_time: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditLevel(BaseModel):
    level: str
    name: str
    color: str


class CreditRecord(BaseModel):
    user_id: int
    username: Optional[str] = None
    credit_score: Decimal
    total_orders: int = 0
    completed_orders: int = 0
    positive_reviews: int = 0
    negative_reviews: int = 0
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def credit_level(self) -> CreditLevel:
        return CreditLevel(**classify_score(self.credit_score).to_dict())


# Responses

class OrderCreated(BaseModel):
    order: Order
    payment: Payment
    message: str


class OrderPage(BaseModel):
    items: list[Order]
    total: int
    page: int
    page_size: int
    pages: int


class StatusStat(BaseModel):
    order_status: OrderStatus
    status_name: str
    count: int
    total_amount: Decimal


class OrderStats(BaseModel):
    status_stats: list[StatusStat]
    today_orders: int
    today_amount: Decimal
    generated_at: datetime


class UserOrderStats(BaseModel):
    user_id: int
    total_orders: int
    completed_orders: int
    total_spent: Decimal
    avg_order_amount: Decimal


class RankingEntry(CreditRecord):
    rank: int


class CreditRanking(BaseModel):
    ranking: list[RankingEntry]
    total: int
    page: int
    page_size: int
    pages: int
    filters: RankingFilters


class ScoreDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    average: int = 0
    poor: int = 0
    bad: int = 0


class CreditStats(BaseModel):
    total_users: int
    active_users: int
    average_score: Decimal
    score_distribution: ScoreDistribution


class PaymentStatusView(BaseModel):
    payment_id: int
    payment_no: str
    payment_status: PaymentStatus
    payment_amount: Decimal
    payment_time: Optional[datetime] = None
    order_id: int
    order_no: str
    order_status: OrderStatus
    has_active_refund: bool = False
    active_refund_status: Optional[RefundStatus] = None


class PaymentListItem(Payment):
    """A payment joined with its order and both parties' usernames."""
    order_no: str
    employer_id: int
    provider_id: int
    employer_name: Optional[str] = None
    provider_name: Optional[str] = None


class PaymentPage(BaseModel):
    items: list[PaymentListItem]
    total: int
    page: int
    page_size: int
    pages: int
    filters: PaymentFilters


class RefundHistory(BaseModel):
    payment: Payment
    refunds: list[Refund]
    total_refunds: int
    total_refund_amount: Decimal = Field(description="Sum over every refund request, whatever its outcome")
    refunded_amount: Decimal = Field(description="Sum over successful refunds only")


class PaymentStatusStat(BaseModel):
    payment_status: PaymentStatus
    status_name: str
    count: int
    total_amount: Decimal


class PaymentMethodStat(BaseModel):
    payment_method: str
    count: int
    total_amount: Decimal


class PeriodTotals(BaseModel):
    count: int = 0
    total_amount: Decimal = Decimal("0.00")


class PaymentTotals(PeriodTotals):
    avg_amount: Decimal = Decimal("0.00")


class PaymentSummary(BaseModel):
    status_stats: list[PaymentStatusStat]
    method_stats: list[PaymentMethodStat]
    today: PeriodTotals
    week: PeriodTotals
    month: PeriodTotals
    total: PaymentTotals
    generated_at: datetime


class DailyPaymentStat(BaseModel):
    day: date
    payment_count: int
    total_amount: Decimal
    avg_amount: Decimal
    success_count: int
    success_amount: Decimal
    failed_count: int
    failed_amount: Decimal


class DailyPaymentSummary(BaseModel):
    total_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    overall_avg: Decimal = Decimal("0.00")
    min_amount: Decimal = Decimal("0.00")
    max_amount: Decimal = Decimal("0.00")
    active_days: int = 0


class DailyPaymentStats(BaseModel):
    daily_stats: list[DailyPaymentStat]
    summary: DailyPaymentSummary
    start_date: date
    end_date: date
    generated_at: datetime
