### app/utils/general.py

# Standard library imports
import re
import hashlib
import json
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Tuple

# Third party imports
from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, rrule

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_month(month: str) -> str:
    """Return the month unchanged if it is a YYYY-MM string, else raise ValueError"""
    if not isinstance(month, str) or not MONTH_PATTERN.match(month):
        raise ValueError(f"Invalid month '{month}', expected YYYY-MM")
    return month


def month_bounds(month: str) -> Tuple[date, date]:
    """First and last calendar day of a YYYY-MM month"""
    validate_month(month)
    start = datetime.strptime(f"{month}-01", "%Y-%m-%d").date()
    end = start + relativedelta(months=1) - timedelta(days=1)
    return start, end


def month_of(value) -> str:
    """YYYY-MM of a date or datetime"""
    return value.strftime("%Y-%m")


def shift_month(month: str, months: int) -> str:
    """Month offset by `months` (negative for the past)"""
    start, _ = month_bounds(month)
    return month_of(start + relativedelta(months=months))


def count_weekdays(
    start: date, end: date, weekdays: Iterable[int], allowed: Optional[Iterable[int]] = None
) -> int:
    """
    Count days between start and end (inclusive) that fall on one of the
    ISO weekdays (1=Mon .. 7=Sun). If `allowed` is given, only weekdays in
    both sets count.
    """
    if start > end:
        return 0
    days = set(weekdays)
    if allowed is not None:
        days &= set(allowed)
    if not days:
        return 0
    # rrule weekday numbers are 0=Mon .. 6=Sun
    return rrule(DAILY, dtstart=start, until=end, byweekday=sorted(d - 1 for d in days)).count()


def fingerprint(payload: dict) -> str:
    """Stable hash of a JSON-able payload, used to detect idempotency key reuse"""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def ordered_unique(values: Iterable) -> List:
    """Deduplicate while keeping first-seen order"""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
