"""
Relational ledger store for orders, payments, refunds and user credit.

The store is an explicit object handed to each service; nothing in this
module opens a connection at import time.
"""
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text,
    create_engine, event, select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from scoring import DEFAULT_SCORE
from .config import Settings
from .errors import ConflictError, DatabaseError, TradeError
from .log import get_logger
from .models import OrderStatus, PaymentStatus, RefundStatus

logger = get_logger(__name__)

MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class UserRow(Base):
    """Users are owned by the auth layer; the core only reads them."""
    __tablename__ = "users"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class OrderRow(Base):
    __tablename__ = "orders"

    order_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    employer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.user_id"), index=True, nullable=False)
    provider_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.user_id"), index=True, nullable=False)
    skill_id: Mapped[int] = mapped_column(Integer, nullable=False)
    task_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    order_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    service_time: Mapped[datetime] = mapped_column(nullable=False)
    order_remark: Mapped[str] = mapped_column(Text, default="", nullable=False)
    order_status: Mapped[int] = mapped_column(
        Integer, default=int(OrderStatus.PENDING), index=True, nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_time: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payments"

    payment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.order_id"), index=True, nullable=False)
    payment_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), default="balance", nullable=False)
    payment_status: Mapped[int] = mapped_column(
        Integer, default=int(PaymentStatus.PENDING), index=True, nullable=False
    )
    payment_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_time: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class RefundRow(Base):
    __tablename__ = "refunds"

    refund_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    refund_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    payment_id: Mapped[int] = mapped_column(Integer, ForeignKey("payments.payment_id"), index=True, nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    refund_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    refund_status: Mapped[int] = mapped_column(
        Integer, default=int(RefundStatus.PROCESSING), nullable=False
    )
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    processed_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class UserCreditRow(Base):
    __tablename__ = "user_credit"

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.user_id"), primary_key=True)
    credit_score: Mapped[Decimal] = mapped_column(Numeric(4, 1), default=DEFAULT_SCORE, index=True, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    positive_reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    negative_reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_time: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class ReviewRow(Base):
    __tablename__ = "reviews"

    review_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.order_id"), unique=True, nullable=False)
    reviewer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.user_id"), nullable=False)
    is_positive: Mapped[bool] = mapped_column(Boolean, nullable=False)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


def new_order_no(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"O{now:%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"


def new_payment_no(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"P{int(now.timestamp() * 1000)}{secrets.randbelow(10**6):06d}"


def new_refund_no(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"R{int(now.timestamp() * 1000)}{secrets.randbelow(10**6):06d}"


def find_order(session: Session, order_id: int, lock: bool = False) -> Optional[OrderRow]:
    stmt = select(OrderRow).where(OrderRow.order_id == order_id, OrderRow.is_deleted.is_(False))
    if lock:
        stmt = stmt.with_for_update()
    return session.scalar(stmt)


def find_payment(session: Session, payment_id: int, lock: bool = False) -> Optional[PaymentRow]:
    """Payments of soft-deleted orders are invisible."""
    stmt = (
        select(PaymentRow)
        .join(OrderRow, OrderRow.order_id == PaymentRow.order_id)
        .where(PaymentRow.payment_id == payment_id, OrderRow.is_deleted.is_(False))
    )
    if lock:
        stmt = stmt.with_for_update(of=PaymentRow)
    return session.scalar(stmt)


def _serialize_sqlite_writes(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front
    # so read-modify-write transactions queue behind each other.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    lock_timeout_seconds: float = 5.0,
) -> Engine:
    url = make_url(database_url)
    backend = url.get_backend_name()

    if backend == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": lock_timeout_seconds}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _serialize_sqlite_writes(engine)
        return engine

    connect_args = {}
    if backend == "postgresql":
        connect_args["options"] = f"-c lock_timeout={int(lock_timeout_seconds * 1000)}"
    elif backend == "mysql":
        connect_args["init_command"] = f"SET innodb_lock_wait_timeout={max(1, int(lock_timeout_seconds))}"

    return create_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


class LedgerStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, database_url: str, **engine_options) -> "LedgerStore":
        return cls(create_store_engine(database_url, **engine_options))

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerStore":
        return cls.from_url(
            settings.database_url,
            echo=settings.db_echo,
            pool_size=settings.db_pool_size,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run one unit of work; commit on success, roll back on any failure."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except TradeError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            logger.warning("store.integrity_error", error=str(e.orig))
            raise ConflictError("Unique or integrity constraint violated", detail=str(e.orig)) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("store.transaction_failed", error=str(e))
            raise DatabaseError(f"Database transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error("store.read_failed", error=str(e))
            raise DatabaseError(f"Database read failed: {e}", cause=e) from e
        finally:
            session.close()

    def add_user(self, username: str) -> int:
        with self.transaction() as session:
            user = UserRow(username=username)
            session.add(user)
            session.flush()
            return user.user_id
