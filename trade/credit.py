"""
Credit scoring service.

Every mutation of a user's credit row goes through ``_apply`` while the row is
held with ``SELECT ... FOR UPDATE``, so concurrent events for the same user are
applied one after the other instead of overwriting each other.
"""
import math
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scoring import DEFAULT_SCORE, ScoreChange, ScoreRuleEngine, ScoringEvent
from .errors import NotFoundError
from .log import get_logger
from .models import (
    CreditEvents, CreditRanking, CreditRecord, CreditStats,
    RankingEntry, RankingFilters, ScoreDistribution,
)
from .store import LedgerStore, UserCreditRow, UserRow, utcnow

logger = get_logger(__name__)


class CreditService:
    def __init__(self, store: LedgerStore, rules: Optional[ScoreRuleEngine] = None):
        self.store = store
        self.rules = rules or ScoreRuleEngine()

    def get_user_credit(self, user_id: int) -> CreditRecord:
        with self.store.transaction() as session:
            user = session.get(UserRow, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found", user_id=user_id)
            credit = self._lock_or_create(session, user_id)
            return CreditRecord(**_credit_fields(credit, user.username))

    def update_user_credit(self, user_id: int, events: CreditEvents) -> CreditRecord:
        with self.store.transaction() as session:
            credit = self._lock(session, user_id)
            if credit is None:
                raise NotFoundError(f"Credit record for user {user_id} not found", user_id=user_id)
            self._apply(credit, events.to_events())
            username = session.scalar(select(UserRow.username).where(UserRow.user_id == user_id))
            return CreditRecord(**_credit_fields(credit, username))

    def apply_events(self, session: Session, user_id: int, events: Iterable[ScoringEvent]) -> ScoreChange:
        """Apply events inside the caller's transaction, creating the record if needed."""
        credit = self._lock_or_create(session, user_id)
        return self._apply(credit, events)

    def get_credit_ranking(self, filters: Optional[RankingFilters] = None) -> CreditRanking:
        filters = (filters or RankingFilters()).normalized()
        conditions = (
            UserCreditRow.total_orders >= filters.min_orders,
            UserCreditRow.credit_score >= filters.min_score,
        )

        with self.store.read() as session:
            total = session.scalar(
                select(func.count()).select_from(UserCreditRow).where(*conditions)
            ) or 0
            rows = session.execute(
                select(UserCreditRow, UserRow.username)
                .outerjoin(UserRow, UserRow.user_id == UserCreditRow.user_id)
                .where(*conditions)
                .order_by(
                    UserCreditRow.credit_score.desc(),
                    UserCreditRow.completed_orders.desc(),
                    UserCreditRow.user_id.asc(),
                )
                .limit(filters.page_size)
                .offset(filters.offset)
            ).all()

            ranking = [
                RankingEntry(**_credit_fields(credit, username), rank=filters.offset + index + 1)
                for index, (credit, username) in enumerate(rows)
            ]

        return CreditRanking(
            ranking=ranking,
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            pages=math.ceil(total / filters.page_size),
            filters=filters,
        )

    def get_credit_stats(self) -> CreditStats:
        active = UserCreditRow.total_orders > 0
        score = UserCreditRow.credit_score

        def bucket(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        with self.store.read() as session:
            total_users = session.scalar(select(func.count()).select_from(UserCreditRow)) or 0
            active_users = session.scalar(
                select(func.count()).select_from(UserCreditRow).where(active)
            ) or 0
            average = session.scalar(select(func.avg(score)).where(active))
            buckets = session.execute(
                select(
                    bucket(score >= 90),
                    bucket((score >= 80) & (score < 90)),
                    bucket((score >= 70) & (score < 80)),
                    bucket((score >= 60) & (score < 70)),
                    bucket(score < 60),
                ).where(active)
            ).one()

        return CreditStats(
            total_users=total_users,
            active_users=active_users,
            average_score=Decimal(str(average or 0)).quantize(Decimal("0.01")),
            score_distribution=ScoreDistribution(
                excellent=buckets[0], good=buckets[1], average=buckets[2],
                poor=buckets[3], bad=buckets[4],
            ),
        )

    def _lock(self, session: Session, user_id: int) -> Optional[UserCreditRow]:
        return session.scalar(
            select(UserCreditRow).where(UserCreditRow.user_id == user_id).with_for_update()
        )

    def _lock_or_create(self, session: Session, user_id: int) -> UserCreditRow:
        credit = self._lock(session, user_id)
        if credit is not None:
            return credit

        # FOR UPDATE cannot lock a missing row, so a concurrent first event may
        # insert it before us. The savepoint keeps the outer transaction alive.
        now = utcnow()
        try:
            with session.begin_nested():
                credit = UserCreditRow(
                    user_id=user_id,
                    credit_score=DEFAULT_SCORE,
                    total_orders=0,
                    completed_orders=0,
                    positive_reviews=0,
                    negative_reviews=0,
                    created_time=now,
                    updated_time=now,
                )
                session.add(credit)
                session.flush()
        except IntegrityError:
            logger.info("credit.create_raced", user_id=user_id)
            credit = self._lock(session, user_id)
            if credit is None:
                raise
            return credit

        logger.info("credit.created", user_id=user_id, credit_score=str(DEFAULT_SCORE))
        return credit

    def _apply(self, credit: UserCreditRow, events: Iterable[ScoringEvent]) -> ScoreChange:
        change = self.rules.apply(credit.credit_score, events)
        credit.credit_score = change.new_score
        for counter, increment in change.counter_increments.items():
            setattr(credit, counter.value, getattr(credit, counter.value) + increment)
        credit.updated_time = utcnow()

        logger.info(
            "credit.updated",
            user_id=credit.user_id,
            events=[e.value for e in change.events],
            old_score=str(change.old_score),
            new_score=str(change.new_score),
        )
        return change


def _credit_fields(credit: UserCreditRow, username: Optional[str]) -> dict:
    return {
        "user_id": credit.user_id,
        "username": username,
        "credit_score": credit.credit_score,
        "total_orders": credit.total_orders,
        "completed_orders": credit.completed_orders,
        "positive_reviews": credit.positive_reviews,
        "negative_reviews": credit.negative_reviews,
        "created_time": credit.created_time,
        "updated_time": credit.updated_time,
    }
