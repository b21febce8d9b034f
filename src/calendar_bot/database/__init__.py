"""Database package."""

from calendar_bot.database.models import (
    Account,
    AccountState,
    Base,
    LinkRequest,
    Macro,
    Subscription,
    SubscriptionStatus,
    TrackedEvent,
)
from calendar_bot.database.session import (
    build_engine,
    create_session_factory,
    session_scope,
)

__all__ = [
    # Models
    "Base",
    "Account",
    "AccountState",
    "LinkRequest",
    "Subscription",
    "SubscriptionStatus",
    "TrackedEvent",
    "Macro",
    # Session
    "build_engine",
    "create_session_factory",
    "session_scope",
]
