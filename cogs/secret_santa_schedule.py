"""
Secret Santa Schedule Module - Deadline and Reminder Rules

Pure decision functions used by the cog's background loops:
- signups_should_close: close signups once the signup deadline passes
- reminder_due: which reminder (if any) goes out today
"""

import datetime as dt
import math
from typing import Optional

from .secret_santa_storage import parse_datetime

# Days before the submission deadline that get a reminder DM
REMINDER_DAYS = (30, 14, 7, 3, 1, 0)

DEADLINE_CHECK_INTERVAL = 60 * 60       # 1 hour
REMINDER_INTERVAL = 24 * 60 * 60        # 24 hours
STARTUP_DELAY = 10


def days_until(deadline: dt.datetime, now: dt.datetime) -> int:
    """Whole days left until deadline, rounded up (negative once it has passed)"""
    return math.ceil((deadline - now).total_seconds() / 86400)


def signups_should_close(settings: dict, now: dt.datetime) -> bool:
    """Signup deadline reached while still open and unmatched. Matching stays manual."""
    deadline = parse_datetime(settings.get("signup_deadline"))
    if deadline is None:
        return False
    return now >= deadline and bool(settings.get("signups_open")) and not settings.get("matched")


def reminder_due(settings: dict, now: dt.datetime) -> Optional[int]:
    """
    Return the day count for today's reminder, or None if no reminder is due.

    A day already recorded in `last_reminder_day` is not due again, so
    restarts on a reminder day do not repeat the DMs.
    """
    if not settings.get("matches_approved"):
        return None
    deadline = parse_datetime(settings.get("submission_deadline"))
    if deadline is None:
        return None
    days = days_until(deadline, now)
    if days not in REMINDER_DAYS or settings.get("last_reminder_day") == days:
        return None
    return days


# Deadlines are announced as 11:59 PM EST
EST = dt.timezone(dt.timedelta(hours=-5), "EST")


def parse_deadline(text: str) -> dt.datetime:
    """Parse a YYYY-MM-DD date into 11:59 PM EST that day (ValueError if malformed)"""
    day = dt.datetime.strptime(text.strip(), "%Y-%m-%d")
    return day.replace(hour=23, minute=59, tzinfo=EST)
