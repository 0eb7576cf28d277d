"""
Payment Webhooks Router

Inbound confirmations from the three payment channels. Every handler:
    1. authenticates the raw body (401 on a bad or missing signature)
    2. durably records the event
    3. maps it to a grant / gift purchase and applies it idempotently
and answers 2xx once the event is recorded, including replays and no-ops.
"""

import json
import logging
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.auth import get_messenger_dep
from core.database import get_db
from core.exceptions import (
    DomainError,
    GatewayUnavailableError,
    MalformedPayloadError,
    PaymentVerificationError,
)
from core.logging import log_security_event
from schemas import WebhookAck
from services.gateways import CryptoPayGateway, PaymentGateway, StripeGateway, TributeGateway
from services.messaging import Messenger
from services.payment_reconciler import PaymentReconciler, record_webhook_event, set_webhook_outcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments/webhooks", tags=["payment-webhooks"])


def get_stripe_gateway() -> PaymentGateway:
    return StripeGateway()


def get_crypto_pay_gateway() -> PaymentGateway:
    return CryptoPayGateway()


def get_tribute_gateway() -> PaymentGateway:
    return TributeGateway()


def _build_gateway(factory: Callable[[], PaymentGateway]) -> PaymentGateway:
    try:
        return factory()
    except GatewayUnavailableError as e:
        logger.error(f"Webhook received for unconfigured gateway: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook not configured")


async def _handle(request: Request, gateway: PaymentGateway, db: Session, messenger: Messenger) -> WebhookAck:
    raw = await request.body()

    try:
        event = gateway.verify(raw, request.headers)
    except MalformedPayloadError as e:
        log_security_event(f"{gateway.name} webhook malformed: {e}", provider=gateway.name)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")
    except PaymentVerificationError as e:
        log_security_event(
            f"{gateway.name} webhook rejected: {e}",
            provider=gateway.name,
            client=request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except GatewayUnavailableError as e:
        logger.error(f"{gateway.name} webhook cannot be verified: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook not configured")

    # Signature verified: the body is trusted from here on.
    first_delivery = record_webhook_event(
        db,
        provider=gateway.name,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=json.loads(raw),
    )
    if not first_delivery:
        logger.info(f"{gateway.name} event {event.event_id} redelivered")

    try:
        instruction = gateway.to_instruction(db, event)
        if instruction is None:
            outcome, detail = "ignored", None
        else:
            outcome, detail = PaymentReconciler(db, messenger).apply(instruction)["outcome"], None
    except MalformedPayloadError as e:
        db.rollback()
        log_security_event(f"{gateway.name} event {event.event_id} unusable: {e}", provider=gateway.name)
        set_webhook_outcome(db, provider=gateway.name, event_id=event.event_id, outcome="rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")
    except DomainError as e:
        # Unknown plan / user / gift: nothing to apply, and a retry would not change that.
        db.rollback()
        logger.warning(f"{gateway.name} event {event.event_id} rejected: {e}")
        outcome, detail = "rejected", str(e)

    set_webhook_outcome(db, provider=gateway.name, event_id=event.event_id, outcome=outcome)
    logger.info(f"{gateway.name} event {event.event_id} ({event.event_type}): {outcome}")
    return WebhookAck(outcome=outcome, detail=detail)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    """Card checkout completions (Stripe-Signature, verified by the Stripe SDK)."""
    return await _handle(request, _build_gateway(get_stripe_gateway), db, messenger)


@router.post("/crypto-pay", response_model=WebhookAck)
async def crypto_pay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    """Crypto Pay updates (crypto-pay-api-signature)."""
    return await _handle(request, _build_gateway(get_crypto_pay_gateway), db, messenger)


@router.post("/tribute", response_model=WebhookAck)
async def tribute_webhook(
    request: Request,
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    """Tribute subscription events (trbt-signature)."""
    return await _handle(request, _build_gateway(get_tribute_gateway), db, messenger)


@router.get("/crypto-pay")
def crypto_pay_probe():
    return {"ok": True, "message": "Crypto Pay webhook endpoint is active"}


@router.get("/tribute")
def tribute_probe():
    return {"ok": True, "message": "Tribute webhook endpoint is active"}
