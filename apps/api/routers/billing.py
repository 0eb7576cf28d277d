from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_messenger_dep, require_internal_token
from core.config import settings
from core.database import get_db
from core.exceptions import (
    DomainError,
    GatewayUnavailableError,
    NotFoundError,
    ServiceUnavailableError,
    UnknownPlanError,
    ValidationError,
)
from models import User
from schemas import CheckoutRequest, CheckoutResponse, GiftPurchase, PlanListResponse, PlanResponse
from services import message_templates as templates
from services.gateways import CryptoPayGateway, StripeGateway, TributeGateway
from services.gift_service import GiftTokenStore
from services.messaging import Messenger
from services.payment_reconciler import PaymentReconciler
from services.plans import get_plan, list_plans

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/billing",
    tags=["billing"],
    dependencies=[Depends(require_internal_token)],
)

# Checkout method -> the gateway name that later confirms the payment.
METHOD_GATEWAYS = {
    "card": StripeGateway.name,
    "crypto": CryptoPayGateway.name,
    "tribute": TributeGateway.name,
}


def get_card_gateway() -> StripeGateway:
    return StripeGateway()


def get_crypto_gateway() -> CryptoPayGateway:
    return CryptoPayGateway()


@router.get("/plans", response_model=PlanListResponse)
def get_plans():
    return {"plans": [PlanResponse(id=p.id, title=p.title, days=p.days, price_rub=p.price_rub) for p in list_plans()]}


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    """
    Start a payment for a plan, for the caller or as a gift.

    With PAYMENTS_TEST_MODE the payment is confirmed on the spot through the
    same reconciler path a webhook would take, under a `test:` key.
    """
    user = db.get(User, request.user_id)
    if user is None:
        raise NotFoundError("User", str(request.user_id))
    try:
        plan = get_plan(request.plan_id)
    except UnknownPlanError:
        raise NotFoundError("Plan", request.plan_id)

    gift = None
    if request.gift:
        gift = GiftTokenStore(db).create(
            purchaser_id=user.id,
            plan_id=plan.id,
            gateway="test" if settings.PAYMENTS_TEST_MODE else METHOD_GATEWAYS[request.method],
            pending_external=request.method == "tribute",
        )
        db.commit()

    if settings.PAYMENTS_TEST_MODE:
        return _confirm_test_payment(db, messenger, user, plan, gift)

    try:
        if request.method == "card":
            session = get_card_gateway().create_checkout_session(
                user=user, plan=plan, gift_token=gift.token if gift else None,
            )
            mode = "redirect"
        elif request.method == "crypto":
            session = get_crypto_gateway().create_invoice(
                user=user, plan=plan, gift_token=gift.token if gift else None,
            )
            mode = "redirect"
        else:
            if not settings.TRIBUTE_SUBSCRIPTION_URL:
                raise GatewayUnavailableError("Tribute not configured (missing: TRIBUTE_SUBSCRIPTION_URL)")
            return CheckoutResponse(
                mode="external",
                checkout_url=settings.TRIBUTE_SUBSCRIPTION_URL,
                gift_token=gift.token if gift else None,
            )
    except GatewayUnavailableError as e:
        logger.error(f"Checkout via {request.method} failed for user {user.id}: {e}")
        raise ServiceUnavailableError(str(e))

    logger.info(f"Checkout created for user {user.id}: method={request.method} plan={plan.id} gift={bool(gift)}")
    return CheckoutResponse(mode=mode, checkout_url=session.url, gift_token=gift.token if gift else None)


def _confirm_test_payment(db, messenger, user, plan, gift) -> CheckoutResponse:
    key = f"test:{uuid4()}"
    reconciler = PaymentReconciler(db, messenger)
    try:
        if gift is not None:
            reconciler.apply(GiftPurchase(gift_token=gift.token, idempotency_key=key, source="test"))
            artifact = templates.gift_link(gift.token)
            return CheckoutResponse(
                mode="test",
                gift_token=gift.token,
                gift_link=artifact["link"] or artifact["start_command"],
            )
        result = reconciler.grant(user.id, plan.days, key, source="test")
    except DomainError as e:
        db.rollback()
        raise ValidationError(str(e))

    logger.info(f"Test-mode payment applied for user {user.id} (plan={plan.id})")
    return CheckoutResponse(
        mode="test",
        paid_until=result.paid_until,
        confirmation=templates.payment_confirmation(result.paid_until, "test mode"),
    )
