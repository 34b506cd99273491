import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

HISTORY_DEFAULT_DAYS = 30

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


@dataclass(frozen=True)
class Period:
    start: date
    end: date


@dataclass(frozen=True)
class YearMonth:
    year: int
    month: int

    @property
    def name(self) -> str:
        return MONTH_NAMES[self.month - 1]

    def previous(self) -> "YearMonth":
        if self.month == 1:
            return YearMonth(self.year - 1, 12)
        return YearMonth(self.year, self.month - 1)

    @classmethod
    def of(cls, d: date) -> "YearMonth":
        return cls(d.year, d.month)


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


def local_today() -> date:
    return local_now().date()


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def next_month_start(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1)
    return date(year, month + 1, 1)


def month_to_date(today: date) -> Period:
    return Period(today.replace(day=1), today)


def parse_iso_date(value: str, field: str) -> date:
    if not _ISO_DATE.match(value or ""):
        raise ValidationError(f"Invalid {field} format. Use YYYY-MM-DD.")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value}") from exc


def resolve_history_range(
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    end_date = parse_iso_date(end, "endDate") if end else today
    if start:
        start_date = parse_iso_date(start, "startDate")
    else:
        start_date = end_date - timedelta(days=HISTORY_DEFAULT_DAYS)
    if start_date > end_date:
        raise ValidationError("startDate cannot be after endDate.")
    return Period(start_date, end_date)


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")
