from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional


MIN_SCORE = Decimal("0")
MAX_SCORE = Decimal("100")
DEFAULT_SCORE = Decimal("80.0")
SCORE_STEP = Decimal("0.1")


class ScoringEvent(str, Enum):
    ORDER_COMPLETED = "order_completed"
    POSITIVE_REVIEW = "positive_review"
    NEGATIVE_REVIEW = "negative_review"
    CANCEL_PENALTY = "cancel_penalty"


class CounterField(str, Enum):
    TOTAL_ORDERS = "total_orders"
    COMPLETED_ORDERS = "completed_orders"
    POSITIVE_REVIEWS = "positive_reviews"
    NEGATIVE_REVIEWS = "negative_reviews"


@dataclass(frozen=True)
class ScoringRule:
    event: ScoringEvent
    delta: Decimal
    counters: tuple[CounterField, ...] = ()
    description: str = ""


@dataclass
class ScoreChange:
    """Result of applying a batch of events to one score."""
    old_score: Decimal
    new_score: Decimal
    events: list[ScoringEvent]
    counter_increments: dict[CounterField, int] = field(default_factory=dict)

    @property
    def delta(self) -> Decimal:
        return self.new_score - self.old_score


@dataclass(frozen=True)
class CreditLevelBand:
    level: str
    name: str
    min_score: Decimal
    color: str

    def to_dict(self) -> dict:
        return {"level": self.level, "name": self.name, "color": self.color}


# Ordered from highest threshold down; the last band catches everything.
CREDIT_LEVEL_BANDS: tuple[CreditLevelBand, ...] = (
    CreditLevelBand("excellent", "Excellent", Decimal("90"), "#52c41a"),
    CreditLevelBand("good", "Good", Decimal("80"), "#1890ff"),
    CreditLevelBand("average", "Average", Decimal("70"), "#faad14"),
    CreditLevelBand("poor", "Poor", Decimal("60"), "#fa8c16"),
    CreditLevelBand("bad", "Bad", Decimal("0"), "#f5222d"),
)


def classify_score(score: Decimal) -> CreditLevelBand:
    score = Decimal(str(score))
    for band in CREDIT_LEVEL_BANDS:
        if score >= band.min_score:
            return band
    return CREDIT_LEVEL_BANDS[-1]


def clamp_score(score: Decimal) -> Decimal:
    bounded = max(MIN_SCORE, min(MAX_SCORE, Decimal(str(score))))
    return bounded.quantize(SCORE_STEP, rounding=ROUND_HALF_UP)


class ScoreRuleEngine:
    def __init__(self, rules: Optional[Iterable[ScoringRule]] = None):
        self.rules: dict[ScoringEvent, ScoringRule] = {}
        for rule in rules if rules is not None else default_rules():
            self.add_rule(rule)

    def add_rule(self, rule: ScoringRule) -> None:
        self.rules[rule.event] = rule

    def get_rule(self, event: ScoringEvent) -> Optional[ScoringRule]:
        return self.rules.get(event)

    def apply(self, score: Decimal, events: Iterable[ScoringEvent]) -> ScoreChange:
        """Sum the deltas of all events, then clamp and round once."""
        old_score = Decimal(str(score))
        applied: list[ScoringEvent] = []
        counters: dict[CounterField, int] = {}
        total = Decimal("0")

        for event in events:
            rule = self.rules.get(ScoringEvent(event))
            if rule is None:
                raise KeyError(f"No scoring rule for event {event}")
            total += rule.delta
            for counter in rule.counters:
                counters[counter] = counters.get(counter, 0) + 1
            applied.append(rule.event)

        return ScoreChange(
            old_score=old_score,
            new_score=clamp_score(old_score + total),
            events=applied,
            counter_increments=counters,
        )


def default_rules() -> list[ScoringRule]:
    return [
        ScoringRule(
            event=ScoringEvent.ORDER_COMPLETED, delta=Decimal("2"),
            counters=(CounterField.TOTAL_ORDERS, CounterField.COMPLETED_ORDERS),
            description="Provider finished an order",
        ),
        ScoringRule(
            event=ScoringEvent.POSITIVE_REVIEW, delta=Decimal("3"),
            counters=(CounterField.POSITIVE_REVIEWS,),
            description="Employer left a positive review",
        ),
        ScoringRule(
            event=ScoringEvent.NEGATIVE_REVIEW, delta=Decimal("-5"),
            counters=(CounterField.NEGATIVE_REVIEWS,),
            description="Employer left a negative review",
        ),
        ScoringRule(
            event=ScoringEvent.CANCEL_PENALTY, delta=Decimal("-3"),
            description="Order cancelled after payment",
        ),
    ]
