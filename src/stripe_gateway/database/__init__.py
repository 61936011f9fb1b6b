"""Database module for gateway persistence."""

from .models import (
    Base,
    User,
    Order,
    OrderStatus,
    PaymentToken,
    CardToken,
    SepaToken,
    LinkToken,
    AmazonPayToken,
    AchToken,
    AcssToken,
    CashAppToken,
    BacsDebitToken,
    BecsDebitToken,
    TOKEN_CLASSES_BY_PAYMENT_METHOD,
    token_class_for,
    CacheEntry,
    Option,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    get_db_context,
)
from .repository import (
    UserRepository,
    OrderRepository,
    PaymentTokenRepository,
    TransientCache,
    OptionRepository,
)

__all__ = [
    # Models
    "Base",
    "User",
    "Order",
    "OrderStatus",
    "PaymentToken",
    "CardToken",
    "SepaToken",
    "LinkToken",
    "AmazonPayToken",
    "AchToken",
    "AcssToken",
    "CashAppToken",
    "BacsDebitToken",
    "BecsDebitToken",
    "TOKEN_CLASSES_BY_PAYMENT_METHOD",
    "token_class_for",
    "CacheEntry",
    "Option",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_tables",
    "get_async_session_factory",
    "get_db_context",
    # Repositories
    "UserRepository",
    "OrderRepository",
    "PaymentTokenRepository",
    "TransientCache",
    "OptionRepository",
]
