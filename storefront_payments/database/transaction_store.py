"""
Transaction store.

Persists payment transactions keyed by internal id and by the
provider-assigned gateway order id. Status changes are compare-and-swap
writes: the UPDATE only matches while the stored status is still the one
the caller observed, so a terminal status can never be overwritten by a
late or duplicate writer.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.database.connection import get_session_factory
from storefront_payments.database.models import (
    OutboxEvent,
    PaymentTransaction,
    TransactionEvent,
    new_id,
    utcnow,
)
from storefront_payments.domain.models import TransactionRecord, from_minor_units, to_minor_units
from storefront_payments.domain.state_machine import (
    ACTIVE_STATUSES,
    TransactionStatus,
    ensure_transition,
)
from storefront_payments.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ("order_id", "merchant_order_id", "amount", "environment")

IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "order_id",
        "user_id",
        "merchant_order_id",
        "amount",
        "amount_minor",
        "currency",
        "environment",
        "provider",
        "created_at",
    }
)

MUTABLE_FIELDS = frozenset({"status", "gateway_order_id", "gateway_response", "customer_info"})


def _document(value: Any, field_name: str) -> Dict[str, Any]:
    """Coerce an optional document field to an object; None becomes {}."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field_name} must be an object")
    return dict(value)


def _to_record(row: PaymentTransaction) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        order_id=row.order_id,
        user_id=row.user_id,
        merchant_order_id=row.merchant_order_id,
        gateway_order_id=row.gateway_order_id,
        amount=from_minor_units(row.amount_minor),
        currency=row.currency,
        environment=row.environment,
        provider=row.provider,
        status=TransactionStatus(row.status),
        gateway_response=row.gateway_response or {},
        customer_info=row.customer_info or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class TransactionStore:
    """
    Persistence for payment transactions.

    Each operation runs in its own short database transaction, so a
    failure halfway through a checkout still leaves every earlier step
    committed and auditable.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        """
        Initialize transaction store.

        Args:
            session_factory: Optional session factory (defaults to the app engine)
        """
        self._session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session, translating backend failures into PersistenceError."""
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error("transaction_store_error", operation=operation, error=str(e))
            raise PersistenceError(
                f"Transaction store unavailable during {operation}: {e}"
            ) from e

    async def create(
        self, record: Mapping[str, Any], correlation_id: Optional[str] = None
    ) -> str:
        """
        Create a transaction in the initiated state.

        Args:
            record: Transaction fields (order_id, merchant_order_id, amount,
                environment required; everything else defaulted)
            correlation_id: Optional correlation id for the audit event

        Returns:
            str: Store-assigned transaction id

        Raises:
            ValidationError: If required fields are missing or invalid, or an
                active transaction already exists for the order
            PersistenceError: If the backend is unavailable
        """
        missing = [name for name in REQUIRED_FIELDS if not record.get(name)]
        if missing:
            raise ValidationError(f"Missing required transaction fields: {', '.join(missing)}")

        status = TransactionStatus(record.get("status", TransactionStatus.INITIATED))
        if status is not TransactionStatus.INITIATED:
            raise InvalidTransitionError("Transactions must be created in the initiated state")

        try:
            amount_minor = to_minor_units(record["amount"])
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if amount_minor <= 0:
            raise ValidationError("Amount must be positive")

        transaction_id = new_id()
        now = utcnow()
        row = PaymentTransaction(
            id=transaction_id,
            order_id=str(record["order_id"]),
            user_id=str(record.get("user_id") or "anonymous"),
            merchant_order_id=str(record["merchant_order_id"]),
            gateway_order_id=None,
            amount_minor=amount_minor,
            currency=str(record.get("currency") or "INR").upper(),
            environment=str(record["environment"]),
            provider=str(record.get("provider") or "phonepe"),
            status=status.value,
            gateway_response=_document(record.get("gateway_response"), "gateway_response"),
            customer_info=_document(record.get("customer_info"), "customer_info"),
            created_at=now,
            updated_at=now,
        )
        event = TransactionEvent(
            transaction_id=transaction_id,
            event_type=f"transaction.{status.value}",
            event_data={
                "order_id": row.order_id,
                "merchant_order_id": row.merchant_order_id,
                "amount_minor": amount_minor,
                "currency": row.currency,
                "environment": row.environment,
            },
            correlation_id=correlation_id or new_id(),
            created_at=now,
        )

        async with self._session("create") as db:
            db.add(row)
            db.add(event)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.warning(
                    "transaction_create_conflict",
                    order_id=row.order_id,
                    merchant_order_id=row.merchant_order_id,
                    error=str(e.orig),
                )
                raise ValidationError(
                    f"An active transaction already exists for order {row.order_id}"
                ) from e

        logger.info(
            "transaction_created",
            transaction_id=transaction_id,
            order_id=row.order_id,
            amount_minor=amount_minor,
            environment=row.environment,
        )
        return transaction_id

    async def update(
        self,
        transaction_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[TransactionStatus] = None,
        outbox_events: Optional[Iterable[Dict[str, Any]]] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Merge fields into a transaction and stamp updated_at.

        A status change must name the status the caller observed; the write
        only applies while the stored status still equals it. Outbox events
        are written only if the update applies, in the same database
        transaction.

        Args:
            transaction_id: Transaction id
            changes: Fields to merge (status, gateway_order_id,
                gateway_response, customer_info)
            expected_status: Status the stored record must still have
            outbox_events: Optional outbound events ({"event_type", "payload"})
            correlation_id: Optional correlation id for the audit event

        Returns:
            bool: True if applied, False if the stored status had moved on

        Raises:
            NotFoundError: If the transaction does not exist
            ValidationError: If immutable or unknown fields are changed
            InvalidTransitionError: If the status change is not legal
            PersistenceError: If the backend is unavailable
        """
        changes = dict(changes)

        immutable = sorted(set(changes) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationError(f"Immutable transaction fields cannot change: {', '.join(immutable)}")
        unknown = sorted(set(changes) - MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown transaction fields: {', '.join(unknown)}")

        expected = TransactionStatus(expected_status) if expected_status is not None else None
        new_status: Optional[TransactionStatus] = None
        if "status" in changes:
            new_status = TransactionStatus(changes.pop("status"))
            if expected is None:
                raise InvalidTransitionError("A status change requires the expected current status")
            ensure_transition(expected, new_status)

        values: Dict[str, Any] = {"updated_at": utcnow()}
        if new_status is not None:
            values["status"] = new_status.value
        if "gateway_response" in changes:
            values["gateway_response"] = _document(changes["gateway_response"], "gateway_response")
        if "customer_info" in changes:
            values["customer_info"] = _document(changes["customer_info"], "customer_info")
        if "gateway_order_id" in changes:
            if not changes["gateway_order_id"]:
                raise ValidationError("gateway_order_id cannot be cleared")
            values["gateway_order_id"] = str(changes["gateway_order_id"])

        stmt = update(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        if expected is not None:
            stmt = stmt.where(PaymentTransaction.status == expected.value)
        if "gateway_order_id" in values:
            # Write-once
            stmt = stmt.where(PaymentTransaction.gateway_order_id.is_(None))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self._session("update") as db:
            try:
                result = await db.execute(stmt)
            except IntegrityError as e:
                await db.rollback()
                raise ValidationError(
                    f"Transaction {transaction_id} update conflicts with an existing record"
                ) from e

            if result.rowcount == 0:
                await db.rollback()
                exists = await db.scalar(
                    select(PaymentTransaction.id).where(PaymentTransaction.id == transaction_id)
                )
                if exists is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found")

                metrics.record_transition_conflict(
                    expected.value if expected else "any",
                    new_status.value if new_status else "none",
                )
                logger.info(
                    "transaction_update_not_applied",
                    transaction_id=transaction_id,
                    expected_status=expected.value if expected else None,
                    target_status=new_status.value if new_status else None,
                )
                return False

            if new_status is not None:
                event_data: Dict[str, Any] = {
                    "from_status": expected.value if expected else None,
                    "to_status": new_status.value,
                }
                if "gateway_order_id" in values:
                    event_data["gateway_order_id"] = values["gateway_order_id"]
                db.add(
                    TransactionEvent(
                        transaction_id=transaction_id,
                        event_type=f"transaction.{new_status.value}",
                        event_data=event_data,
                        correlation_id=correlation_id or new_id(),
                        created_at=values["updated_at"],
                    )
                )

            for outbox_event in outbox_events or ():
                db.add(
                    OutboxEvent(
                        aggregate_id=transaction_id,
                        aggregate_type="payment_transaction",
                        event_type=outbox_event["event_type"],
                        payload=outbox_event["payload"],
                        published=False,
                        attempts=0,
                        created_at=values["updated_at"],
                    )
                )

            await db.commit()

        logger.info(
            "transaction_updated",
            transaction_id=transaction_id,
            fields=sorted(values),
            status=new_status.value if new_status else None,
        )
        return True

    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Get a transaction by id, or None."""
        async with self._session("get") as db:
            row = await db.get(PaymentTransaction, transaction_id)
            return _to_record(row) if row is not None else None

    async def find_by_gateway_order_id(
        self, gateway_order_id: str
    ) -> Optional[TransactionRecord]:
        """Get a transaction by its provider-assigned order id, or None."""
        async with self._session("find_by_gateway_order_id") as db:
            row = await db.scalar(
                select(PaymentTransaction).where(
                    PaymentTransaction.gateway_order_id == gateway_order_id
                )
            )
            return _to_record(row) if row is not None else None

    async def find_active_by_order_id(self, order_id: str) -> Optional[TransactionRecord]:
        """Get the initiated or processing transaction for an order, or None."""
        async with self._session("find_active_by_order_id") as db:
            row = await db.scalar(
                select(PaymentTransaction).where(
                    PaymentTransaction.order_id == order_id,
                    PaymentTransaction.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            return _to_record(row) if row is not None else None

    async def list_by_status(
        self,
        status: TransactionStatus,
        older_than: Optional[datetime] = None,
        environment: Optional[str] = None,
        limit: int = 100,
    ) -> List[TransactionRecord]:
        """
        List transactions in a status, oldest update first.

        Args:
            status: Status to filter on
            older_than: Only include rows last updated before this time
            environment: Only include rows from this gateway environment
            limit: Max results

        Returns:
            List[TransactionRecord]: Matching transactions
        """
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.status == TransactionStatus(status).value
        )
        if older_than is not None:
            stmt = stmt.where(PaymentTransaction.updated_at < older_than)
        if environment is not None:
            stmt = stmt.where(PaymentTransaction.environment == environment)
        stmt = stmt.order_by(PaymentTransaction.updated_at).limit(limit)

        async with self._session("list_by_status") as db:
            result = await db.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def list_events(self, transaction_id: str) -> List[Dict[str, Any]]:
        """Audit events for a transaction, oldest first."""
        stmt = (
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.id)
        )
        async with self._session("list_events") as db:
            result = await db.execute(stmt)
            return [
                {
                    "event_type": event.event_type,
                    "event_data": event.event_data,
                    "correlation_id": event.correlation_id,
                    "created_at": event.created_at.isoformat(),
                }
                for event in result.scalars().all()
            ]
