# app/tuition/pricing.py

"""
Session pricing for a single enrollment in a billing month.
"""

from datetime import date

from app.students.models import Enrollment
from app.tuition.schemas import LineItem
from app.utils.general import count_weekdays


def price_enrollment(enrollment: Enrollment, month_start: date, month_end: date) -> LineItem:
    """
    Billable sessions x effective rate for the part of the enrollment that
    falls in [month_start, month_end].

    An enrollment whose class is gone (deleted or deactivated) prices at zero
    and is marked `missing_class` so the caller can flag it.
    """
    klass = enrollment.klass
    if enrollment.class_id is None or klass is None or not klass.is_active:
        return LineItem(
            enrollment_id=enrollment.id,
            class_id=enrollment.class_id,
            missing_class=True,
        )

    window_start = max(enrollment.start_date, month_start)
    window_end = min(enrollment.end_date or month_end, month_end)
    sessions = count_weekdays(window_start, window_end, klass.schedule_days or [], enrollment.allowed_days)

    rate = enrollment.rate_override if enrollment.rate_override is not None else klass.session_rate
    return LineItem(
        enrollment_id=enrollment.id,
        class_id=klass.id,
        class_name=klass.name,
        sessions=sessions,
        rate=rate,
        class_rate=klass.session_rate,
        rate_overridden=enrollment.rate_override is not None and enrollment.rate_override != klass.session_rate,
        amount=sessions * rate,
    )
