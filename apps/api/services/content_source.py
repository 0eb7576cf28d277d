"""Read-only access to the daily content sequence."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import ContentItem


def get_content(db: Session, day: int) -> Optional[ContentItem]:
    """Content for `day`, or None past the end of the sequence (the wraparound signal)."""
    if day < 1:
        return None
    return db.query(ContentItem).filter(ContentItem.day == day).first()


def content_length(db: Session) -> int:
    """Highest content day; 0 when no content is loaded."""
    return int(db.query(func.max(ContentItem.day)).scalar() or 0)


def next_day(db: Session, target: int) -> int:
    """Pointer value after delivering `target`: target + 1, wrapping to 1 past the end."""
    length = content_length(db)
    nxt = target + 1
    if length and nxt > length:
        return 1
    return max(nxt, 1)
