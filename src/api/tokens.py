"""
Token balance and billable-action endpoints.
"""

import structlog
from fastapi import APIRouter, Depends

from src.api.dependencies import get_services, require_session
from src.models.api_models import BalanceResponse, ChargeResponse
from src.models.internal_models import AuthenticatedSession
from src.observability import trace_function
from src.services.context import Services
from src.services.token_ledger import EXPORT

logger = structlog.get_logger()
router = APIRouter(prefix="/api/tokens", tags=["tokens"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    authenticated: AuthenticatedSession = Depends(require_session),
    services: Services = Depends(get_services)
) -> BalanceResponse:
    balance = await services.ledger.get_balance(authenticated.user.id)
    return BalanceResponse(user_id=authenticated.user.id, balance=balance)


@router.post("/charge/export", response_model=ChargeResponse)
@trace_function("export_charge_endpoint")
async def charge_export(
    authenticated: AuthenticatedSession = Depends(require_session),
    services: Services = Depends(get_services)
) -> ChargeResponse:
    """
    Charge the caller for one report or data export.

    The export itself is rendered by the reporting service once this call
    succeeds; a 402 response carries the required price and current balance.
    """
    remaining = await services.ledger.charge(authenticated.user.id, EXPORT)
    price = services.ledger.price_of(EXPORT)

    logger.info("Export charged", user_id=str(authenticated.user.id), tokens=price, remaining=remaining)
    return ChargeResponse(action=EXPORT, tokens_deducted=price, tokens_remaining=remaining)
