from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Optional


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp stored in the workbook and normalize to UTC.

    - None / "" -> None
    - "YYYY-MM-DD HH:MM" or "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in UTC; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(UTC).date()


def timestamp_date(value: Optional[str]) -> Optional[date]:
    parsed = parse_iso_datetime(value)
    return parsed.date() if parsed is not None else None


def parse_period(period: str) -> date:
    """
    Parse a settlement period key ("YYYY-MM") into the first day of that month.

    Raises ValueError for anything else.
    """
    try:
        parsed = datetime.strptime(period.strip(), "%Y-%m")
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid settlement period '{period}'; expected YYYY-MM") from exc
    return parsed.date()


def period_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"
