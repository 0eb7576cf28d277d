from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Annotated, Literal, Optional, List, Union


# --- Payment instructions ----------------------------------------------------
# Every verified gateway payload is mapped into one of these before it reaches
# the reconciler.


class SubscriptionGrant(BaseModel):
    kind: Literal["subscription"] = "subscription"
    user_id: int
    days: int = Field(gt=0)
    idempotency_key: str
    source: str
    plan_id: Optional[str] = None


class GiftPurchase(BaseModel):
    kind: Literal["gift"] = "gift"
    gift_token: str
    idempotency_key: str
    source: str


PaymentInstruction = Annotated[Union[SubscriptionGrant, GiftPurchase], Field(discriminator="kind")]


class GrantResult(BaseModel):
    applied: bool
    replay: bool = False
    user_id: Optional[int] = None
    days: Optional[int] = None
    paid_until: Optional[datetime] = None
    stream_started: bool = False


# --- Users -------------------------------------------------------------------


class UserRegister(BaseModel):
    telegram_id: int
    first_name: Optional[str] = None
    timezone: Optional[str] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    timezone: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    telegram_id: int
    first_name: Optional[str] = None
    name: Optional[str] = None
    timezone: str
    onboarding_completed: bool
    current_day: int
    stream_started_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccessStatusResponse(BaseModel):
    user_id: int
    has_access: bool
    paid_active: bool
    trial_active: bool
    active: bool
    paid_until: Optional[datetime] = None
    trial_days_used: int
    trial_limit: int
    current_day: int


class OnboardingCompleteResponse(BaseModel):
    user_id: int
    stream_started: bool
    first_content: str  # delivered | no_content | failed | skipped
    current_day: int


class ReminderResponse(BaseModel):
    user_id: int
    kind: Literal["morning", "evening", "subscription"]
    remind_at: datetime


# --- Billing -----------------------------------------------------------------


class PlanResponse(BaseModel):
    id: str
    title: str
    days: int
    price_rub: int


class CheckoutRequest(BaseModel):
    user_id: int
    plan_id: str
    method: Literal["card", "crypto", "tribute"] = "card"
    gift: bool = False


class CheckoutResponse(BaseModel):
    mode: Literal["redirect", "external", "test"]
    checkout_url: Optional[str] = None
    gift_token: Optional[str] = None
    # Test mode applies the grant synchronously and reports the outcome.
    paid_until: Optional[datetime] = None
    confirmation: Optional[str] = None
    gift_link: Optional[str] = None


# --- Gifts -------------------------------------------------------------------


class GiftRedeemRequest(BaseModel):
    token: str = Field(min_length=1)
    user_id: int


class GiftRedeemResponse(BaseModel):
    token: str
    user_id: int
    days: int
    paid_until: datetime
    stream_started: bool = False


class StartRequest(BaseModel):
    payload: Optional[str] = None


class StartResponse(BaseModel):
    user_id: int
    action: Literal["gift_redeemed", "gift_rejected", "welcome"]
    detail: Optional[str] = None
    paid_until: Optional[datetime] = None


class GiftStatusResponse(BaseModel):
    token: str
    status: str
    plan_id: str
    days: int
    purchaser_id: int
    redeemed_by_user_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    link: Optional[str] = None
    start_command: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# --- Webhooks ----------------------------------------------------------------


class WebhookAck(BaseModel):
    ok: bool = True
    outcome: str
    detail: Optional[str] = None


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]
