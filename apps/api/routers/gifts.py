"""
Gifts Router

Redemption of gift tokens, either directly or through the bot's /start
payload (`gift_<token>` deep links).
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_messenger_dep, get_user_or_404, require_internal_token
from core.database import get_db
from core.exceptions import (
    ConflictError,
    GiftAlreadyRedeemedError,
    GiftNotFoundError,
    GiftNotPaidError,
    NotFoundError,
    UnknownUserError,
)
from models import User, utc_now
from schemas import GiftRedeemRequest, GiftRedeemResponse, GiftStatusResponse, StartRequest, StartResponse
from services import message_templates as templates
from services.gift_service import GiftTokenStore
from services.messaging import Messenger
from services.onboarding import handle_start
from services.payment_reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["gifts"], dependencies=[Depends(require_internal_token)])


@router.post("/gifts/redeem", response_model=GiftRedeemResponse)
def redeem_gift(
    request: GiftRedeemRequest,
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    try:
        result = PaymentReconciler(db, messenger).redeem_gift(request.token, request.user_id, now=utc_now())
    except GiftNotFoundError:
        raise NotFoundError("Gift", request.token)
    except UnknownUserError:
        raise NotFoundError("User", str(request.user_id))
    except (GiftAlreadyRedeemedError, GiftNotPaidError) as e:
        raise ConflictError(str(e))

    return GiftRedeemResponse(
        token=request.token,
        user_id=request.user_id,
        days=result.days,
        paid_until=result.paid_until,
        stream_started=result.stream_started,
    )


@router.post("/users/{user_id}/start", response_model=StartResponse)
def start(
    request: StartRequest,
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    """/start with an optional payload; `gift_<token>` redeems for this user."""
    return handle_start(db, user, request.payload, messenger, utc_now())


@router.get("/gifts/{token}", response_model=GiftStatusResponse)
def get_gift(token: str, db: Session = Depends(get_db)):
    gift = GiftTokenStore(db).get(token)
    if gift is None:
        raise NotFoundError("Gift", token)
    artifact = templates.gift_link(gift.token)
    response = GiftStatusResponse.model_validate(gift)
    return response.model_copy(update=artifact)
