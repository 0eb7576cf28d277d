"""
Delivery Tasks

Celery Beat fires `run_delivery_tick` every minute. The tick scans all
stream-active users once (see services/delivery_scheduler.py); a short Redis
lock keeps two overlapping beat firings from scanning at the same time.

`deliver_first_content` sends day 1 after a payment started someone's stream,
so the payment webhook does not wait on the chat API.
"""

from datetime import datetime, timezone
from typing import Dict

from celery import Task
from sqlalchemy.orm import Session

from tasks import celery_app
from core.cache import acquire_lock, release_lock
from core.database import get_db_sync
from core.exceptions import DeliveryError
from models import User
from services.delivery_scheduler import DeliveryScheduler
from services.messaging import get_messenger
from services.progression_engine import ProgressionEngine
import logging

logger = logging.getLogger(__name__)

TICK_LOCK_NAME = "delivery_tick"
TICK_LOCK_TTL_S = 55


@celery_app.task(
    name="tasks.run_delivery_tick",
    bind=True,
    max_retries=0,       # A missed tick is covered by the next one
    soft_time_limit=50,
    time_limit=58,
)
def run_delivery_tick(self: Task) -> Dict:
    """
    One scheduler pass. Returns a summary dict for monitoring.
    """
    utc_now = datetime.now(timezone.utc).replace(second=0, microsecond=0)

    if not acquire_lock(TICK_LOCK_NAME, TICK_LOCK_TTL_S):
        logger.info(f"Delivery tick {utc_now.strftime('%H:%M UTC')} skipped: previous tick still running")
        return {"status": "skipped", "utc_time": utc_now.isoformat()}

    db: Session = get_db_sync()
    try:
        return DeliveryScheduler(db, get_messenger()).run_tick(utc_now)
    except Exception as e:
        logger.error(f"Delivery tick failed: {e}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
        release_lock(TICK_LOCK_NAME)


@celery_app.task(
    name="tasks.deliver_first_content",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def deliver_first_content(self: Task, user_id: int) -> Dict:
    db: Session = get_db_sync()
    try:
        user = db.get(User, user_id)
        if not user:
            return {"status": "error", "message": f"User {user_id} not found"}
        outcome = ProgressionEngine(db, get_messenger()).deliver_first_content(user)
        return {"status": "ok", "user_id": user_id, "outcome": outcome}
    except DeliveryError as e:
        logger.warning(f"Day 1 delivery for user {user_id} failed, retrying: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
