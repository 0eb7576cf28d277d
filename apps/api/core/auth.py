"""
Authentication and shared request dependencies.

The internal API is called only by the chat bot process, which presents the
shared INTERNAL_API_TOKEN in `X-Internal-Token`. Payment webhooks do not use
this; each gateway authenticates its own signature.
"""
import hmac
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.exceptions import NotFoundError, ServiceUnavailableError, UnauthorizedError
from core.logging import log_security_event
from models import User
from services.messaging import Messenger, get_messenger


def require_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
) -> None:
    """Reject the request unless it carries the shared internal token."""
    expected = settings.INTERNAL_API_TOKEN
    if not expected:
        raise ServiceUnavailableError("Internal API not configured")
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        log_security_event("Internal API call with missing or invalid token")
        raise UnauthorizedError("Not authenticated")


def get_messenger_dep() -> Messenger:
    return get_messenger()


def get_user_or_404(user_id: int, db: Session = Depends(get_db)) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", str(user_id))
    return user
