from datetime import date, datetime, time
import logging
from typing import Optional, Union
from pytz import timezone
from smartclass.config import settings
from smartclass.schemas.academics_schemas import AcademicPeriod
from smartclass.utils.errors import GateViolation

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]

MIDDAY = time(12, 0)


class PeriodWindowGate:
    """
    Decides which calendar dates are legal for an academic period.

    Every date is pinned to midday in the school timezone before it is
    compared, so a UTC offset can never move it across a day boundary.
    Both ends of the window are inclusive. A missing period, or one
    without both dates, allows everything.
    """

    def __init__(self, tz_name: Optional[str] = None):
        self.tz = timezone(tz_name or settings.TIMEZONE)

    def to_local_date(self, value: DateLike) -> date:
        """Calendar date of value as seen in the school timezone"""
        if isinstance(value, str):
            if len(value) > 10:
                # Timestamps go through the datetime branch so their offset is honoured
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            else:
                value = date.fromisoformat(value)
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(self.tz)
            return value.date()
        return value

    def normalize(self, value: DateLike) -> datetime:
        return self.tz.localize(datetime.combine(self.to_local_date(value), MIDDAY))

    def _window(self, period: Optional[AcademicPeriod]):
        start = getattr(period, "start_date", None)
        end = getattr(period, "end_date", None)
        if start is None or end is None:
            return None
        return self.normalize(start), self.normalize(end)

    def is_date_allowed(self, value: DateLike, period: Optional[AcademicPeriod]) -> bool:
        window = self._window(period)
        if window is None:
            return True
        start, end = window
        return start <= self.normalize(value) <= end

    def clamp_to_period(self, value: DateLike, period: Optional[AcademicPeriod]) -> date:
        """Reset the selection to the period start when it falls outside the window"""
        if self._window(period) is None:
            return self.to_local_date(value)
        if self.is_date_allowed(value, period):
            return self.to_local_date(value)
        logger.info(f"Date {value} outside period {period.id}, resetting to {period.start_date}")
        return period.start_date

    def ensure_date_allowed(self, value: DateLike, period: Optional[AcademicPeriod]) -> date:
        if not self.is_date_allowed(value, period):
            raise GateViolation(
                self.to_local_date(value), period.id, period.start_date, period.end_date
            )
        return self.to_local_date(value)


default_gate = PeriodWindowGate()


def is_date_allowed(value: DateLike, period: Optional[AcademicPeriod]) -> bool:
    return default_gate.is_date_allowed(value, period)


def clamp_to_period(value: DateLike, period: Optional[AcademicPeriod]) -> date:
    return default_gate.clamp_to_period(value, period)
