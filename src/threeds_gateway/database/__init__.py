"""Database module for callback state, audit log and payment attempt persistence."""

from .models import (
    Base,
    CallbackState,
    ProviderLog,
    PaymentAttempt,
)
from .session import (
    Database,
    get_db,
    get_database_url,
    create_async_engine,
    get_async_session_factory,
)
from .repository import (
    CallbackStateRepository,
    ProviderLogRepository,
    PaymentAttemptRepository,
)

__all__ = [
    # Models
    "Base",
    "CallbackState",
    "ProviderLog",
    "PaymentAttempt",
    # Session management
    "Database",
    "get_db",
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    # Repositories
    "CallbackStateRepository",
    "ProviderLogRepository",
    "PaymentAttemptRepository",
]
