"""Confirmation countdown classification, for presentation only.

Has no effect on the state machine; the sweeper acts on the deadline alone.
"""

import enum
from datetime import datetime

from photo_escrow.config import settings


class Urgency(enum.Enum):
    OVERDUE = "overdue"
    URGENT = "urgent"
    WARNING = "warning"
    NORMAL = "normal"


def hours_remaining(deadline: datetime | None, now: datetime) -> float | None:
    if deadline is None:
        return None
    return (deadline - now).total_seconds() / 3600


def classify_urgency(deadline: datetime | None, now: datetime) -> Urgency | None:
    """Bucket the time left before auto-release. None when there is no deadline."""
    remaining = hours_remaining(deadline, now)
    if remaining is None:
        return None
    if remaining <= 0:
        return Urgency.OVERDUE
    if remaining < settings.urgency_urgent_hours:
        return Urgency.URGENT
    if remaining < settings.urgency_warning_hours:
        return Urgency.WARNING
    return Urgency.NORMAL
