"""Client modules for external service integrations."""

from src.clients.supabase_client import (
    SupabaseClient,
    UserRepository,
    TokenLedgerRepository,
    SessionRepository,
    PaymentRepository,
    DatabaseManager
)

from src.clients.sms_client import (
    WasilianaSMSClient,
    signup_message,
    login_message
)

__all__ = [
    "SupabaseClient",
    "UserRepository",
    "TokenLedgerRepository",
    "SessionRepository",
    "PaymentRepository",
    "DatabaseManager",
    "WasilianaSMSClient",
    "signup_message",
    "login_message"
]
