"""
Users Router

Internal endpoints the bot calls on user actions: registration, onboarding
completion, "remind me later" buttons and access checks.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_messenger_dep, get_user_or_404, require_internal_token
from core.database import get_db, insert_for
from core.exceptions import ValidationError
from models import User, utc_now
from schemas import (
    AccessStatusResponse,
    OnboardingCompleteResponse,
    ReminderResponse,
    UserRegister,
    UserResponse,
    UserUpdate,
)
from services.messaging import Messenger
from services.onboarding import complete_onboarding
from services.reminders import schedule_reminder
from services.subscription_ledger import access_status
from services.timezone_resolver import resolve_zone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/users", tags=["users"], dependencies=[Depends(require_internal_token)])


def _valid_timezone(tz_name):
    if tz_name is None:
        return None
    if resolve_zone(tz_name).key != tz_name:
        raise ValidationError(f"Unknown timezone: {tz_name}", field="timezone")
    return tz_name


@router.post("", response_model=UserResponse)
def register_user(request: UserRegister, db: Session = Depends(get_db)):
    """Create the user on first contact; repeated calls return the existing row."""
    values = {"telegram_id": request.telegram_id, "first_name": request.first_name}
    tz = _valid_timezone(request.timezone)
    if tz:
        values["timezone"] = tz
    stmt = insert_for(db, User).values(**values).on_conflict_do_nothing(index_elements=[User.telegram_id])
    db.execute(stmt)
    db.commit()
    return db.query(User).filter(User.telegram_id == request.telegram_id).one()


@router.patch("/{user_id}", response_model=UserResponse)
def update_user(request: UserUpdate, user: User = Depends(get_user_or_404), db: Session = Depends(get_db)):
    if request.name is not None:
        user.name = request.name.strip() or None
    if request.timezone is not None:
        user.timezone = _valid_timezone(request.timezone)
    db.commit()
    db.refresh(user)
    return user


@router.post("/{user_id}/onboarding/complete", response_model=OnboardingCompleteResponse)
def finish_onboarding(
    user: User = Depends(get_user_or_404),
    db: Session = Depends(get_db),
    messenger: Messenger = Depends(get_messenger_dep),
):
    return complete_onboarding(db, user, utc_now(), messenger)


def _remind(kind: str, user: User, db: Session) -> ReminderResponse:
    remind_at = schedule_reminder(db, user, kind, utc_now())
    logger.info(f"{kind} reminder scheduled for user {user.id} at {remind_at.isoformat()}")
    return ReminderResponse(user_id=user.id, kind=kind, remind_at=remind_at)


@router.post("/{user_id}/remind-morning", response_model=ReminderResponse)
def remind_morning(user: User = Depends(get_user_or_404), db: Session = Depends(get_db)):
    return _remind("morning", user, db)


@router.post("/{user_id}/remind-evening", response_model=ReminderResponse)
def remind_evening(user: User = Depends(get_user_or_404), db: Session = Depends(get_db)):
    return _remind("evening", user, db)


@router.post("/{user_id}/remind-subscription", response_model=ReminderResponse)
def remind_subscription(user: User = Depends(get_user_or_404), db: Session = Depends(get_db)):
    return _remind("subscription", user, db)


@router.get("/{user_id}/access", response_model=AccessStatusResponse)
def get_access(user: User = Depends(get_user_or_404), db: Session = Depends(get_db)):
    return access_status(db, user, utc_now())
