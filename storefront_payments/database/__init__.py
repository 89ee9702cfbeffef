"""Database package for storefront payments."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, OutboxEvent, PaymentTransaction, TransactionEvent
from .transaction_store import TransactionStore

__all__ = [
    "Base",
    "OutboxEvent",
    "PaymentTransaction",
    "TransactionEvent",
    "TransactionStore",
    "close_db",
    "get_session_factory",
    "init_db",
]
