"""
M-PESA payment endpoints: STK push result callback and payment status.
"""

import re
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from src.api.dependencies import get_services, require_session
from src.api.errors import correlation_id_for
from src.models.api_models import CallbackAck, PaymentStatusResponse, STKCallbackEnvelope
from src.models.internal_models import AuthenticatedSession
from src.observability import trace_function
from src.services.context import Services

logger = structlog.get_logger()
router = APIRouter(prefix="/api/mpesa", tags=["payments"])

REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{4,64}$")


@router.post("/callback", response_model=CallbackAck)
@trace_function("mpesa_callback")
async def mpesa_callback(http_request: Request, services: Services = Depends(get_services)) -> CallbackAck:
    """
    Receive an STK push result from M-PESA.

    Well-formed callbacks are always acknowledged so the provider stops
    retrying; replays of a receipt are acknowledged without a second credit.
    """
    correlation_id = correlation_id_for(http_request)

    try:
        payload: Dict[str, Any] = await http_request.json()
        envelope = STKCallbackEnvelope.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.error("Malformed M-PESA callback", error=str(e), correlation_id=correlation_id)
        raise HTTPException(
            status_code=400,
            detail={"error": "MalformedCallback", "message": "Unrecognised callback payload"}
        )

    callback = envelope.Body.stkCallback
    logger.info(
        "M-PESA callback received",
        checkout_request_id=callback.CheckoutRequestID,
        result_code=callback.ResultCode,
        correlation_id=correlation_id
    )

    outcome = await services.payments.handle_stk_callback(callback)

    logger.info(
        "M-PESA callback processed",
        checkout_request_id=callback.CheckoutRequestID,
        status=outcome.status,
        tokens_added=outcome.tokens_added,
        correlation_id=correlation_id
    )
    return CallbackAck()


@router.get("/status/{reference}", response_model=PaymentStatusResponse)
async def payment_status(
    reference: str,
    authenticated: AuthenticatedSession = Depends(require_session),
    services: Services = Depends(get_services)
) -> PaymentStatusResponse:
    """Look up one of the caller's payments by receipt or checkout request id."""
    if not REFERENCE_PATTERN.match(reference):
        raise HTTPException(
            status_code=400,
            detail={"error": "InvalidReference", "message": "Invalid transaction reference"}
        )

    payment = await services.payments.get_payment(authenticated.user.id, reference)
    return PaymentStatusResponse(
        found=True,
        receipt=payment.receipt,
        checkout_request_id=payment.checkout_request_id,
        amount=payment.amount,
        tokens_added=payment.tokens_added,
    )
