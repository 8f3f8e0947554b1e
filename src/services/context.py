"""
Explicit dependency context for the services.

Built once per process (in the application lifespan) and passed to every
service, instead of module-level clients.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from src.clients.protocols import PaymentStore, SessionStore, SMSGateway, TokenStore, UserStore
from src.config import Settings, settings as default_settings

if TYPE_CHECKING:
    from src.services.auth_service import AuthenticationService
    from src.services.payment_service import PaymentService
    from src.services.token_ledger import TokenLedger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServiceContext:
    """Handles to the stores, the SMS gateway and policy settings."""

    users: UserStore
    tokens: TokenStore
    sessions: SessionStore
    payments: PaymentStore
    sms: SMSGateway
    settings: Settings = field(default_factory=lambda: default_settings)
    clock: Callable[[], datetime] = utcnow
    health_check: Optional[Callable[[], Awaitable[bool]]] = None


@dataclass
class Services:
    """The services built on one ServiceContext."""

    context: ServiceContext
    ledger: "TokenLedger"
    auth: "AuthenticationService"
    payments: "PaymentService"


def build_services(context: ServiceContext) -> Services:
    from src.services.auth_service import AuthenticationService
    from src.services.payment_service import PaymentService
    from src.services.token_ledger import TokenLedger

    ledger = TokenLedger(context)
    return Services(
        context=context,
        ledger=ledger,
        auth=AuthenticationService(context, ledger),
        payments=PaymentService(context),
    )


def build_default_context(app_settings: Optional[Settings] = None) -> ServiceContext:
    """Wire the Supabase repositories and the Wasiliana SMS client."""
    from src.clients.sms_client import WasilianaSMSClient
    from src.clients.supabase_client import DatabaseManager, SupabaseClient

    app_settings = app_settings or default_settings
    db = DatabaseManager(SupabaseClient(app_settings.supabase_url, app_settings.supabase_service_role_key))
    sms = WasilianaSMSClient(
        base_url=app_settings.sms_base_url,
        api_key=app_settings.sms_api_key,
        sender_id=app_settings.sms_sender_id,
        timeout=app_settings.sms_timeout_seconds,
    )
    return ServiceContext(
        users=db.users,
        tokens=db.tokens,
        sessions=db.sessions,
        payments=db.payments,
        sms=sms,
        settings=app_settings,
        health_check=db.health_check,
    )
