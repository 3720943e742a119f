import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

# Ledger dates are always taken at a fixed UTC+9 offset, independent of the
# server's zone and of daylight saving.
LEDGER_TZ = timezone(timedelta(hours=9))

YM_PATTERN = re.compile(r"^\d{4}-\d{2}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_date(instant: datetime) -> date:
    """Calendar date of an instant at the ledger offset.

    Naive datetimes are treated as UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(LEDGER_TZ).date()


def local_midnight(day: date) -> datetime:
    """Naive UTC instant of 00:00 local time on ``day``."""
    return to_naive_utc(datetime.combine(day, time(0, 0), tzinfo=LEDGER_TZ))


def local_today(now: Optional[datetime] = None) -> date:
    return local_date(now or utcnow())


def parse_instant(value: str) -> datetime:
    """Parse an ISO instant; a bare ``YYYY-MM-DD`` means local midnight."""
    raw = value.strip()
    if len(raw) == 10:
        return local_midnight(date.fromisoformat(raw))
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(raw))


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_naive_utc(value).isoformat(timespec="microseconds") + "Z"


def is_valid_ym(value: Optional[str]) -> bool:
    if not value or not YM_PATTERN.match(value):
        return False
    return 1 <= int(value[5:7]) <= 12


def ym_of(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def ym_to_index(ym: str) -> int:
    return int(ym[0:4]) * 12 + int(ym[5:7]) - 1


def ym_from_index(index: int) -> str:
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def add_months_to_ym(ym: str, diff: int) -> str:
    return ym_from_index(ym_to_index(ym) + diff)


def min_ym(a: str, b: str) -> str:
    return a if ym_to_index(a) <= ym_to_index(b) else b


def month_bounds(ym: str) -> tuple[date, date]:
    """First day of ``ym`` and first day of the following month."""
    start = date(int(ym[0:4]), int(ym[5:7]), 1)
    following = add_months_to_ym(ym, 1)
    end = date(int(following[0:4]), int(following[5:7]), 1)
    return start, end


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days
