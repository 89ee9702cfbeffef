"""SQLAlchemy database models for the payment-transaction lifecycle."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")

ACTIVE_STATUS_CLAUSE = "status IN ('initiated', 'processing')"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a store-assigned identifier."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    Payment transaction records table.

    One row per attempt to move money for an order. Rows are never deleted;
    terminal rows are the audit trail of what the provider settled.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, default="anonymous")
    merchant_order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    gateway_order_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True, index=True
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    environment: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="phonepe")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    gateway_response: Mapped[Dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict
    )
    customer_info: Mapped[Dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('initiated', 'processing', 'succeeded', 'failed')",
            name="valid_status",
        ),
        CheckConstraint("environment IN ('test', 'production')", name="valid_environment"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        # At most one active attempt per order
        Index(
            "uq_payment_transactions_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
        ),
        Index("idx_payment_transactions_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, order_id={self.order_id}, "
            f"amount_minor={self.amount_minor}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction events audit trail table.

    One row per status change, written in the same database transaction
    as the change itself. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Outbound notifications are written in the same transaction as the
    status change that causes them, then delivered by the outbox publisher.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
