import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_MONTH_DAY = re.compile(r"(?<!\d)(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2,4}))?(?!\d)")


def local_today(tz_name: Optional[str] = "UTC") -> date:
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    return datetime.now(tz).date()


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_entry_date(
    text: Optional[str],
    today: Optional[date] = None,
    tz_name: Optional[str] = "UTC",
) -> Optional[str]:
    """Resolve a relative or partial date expression to ``YYYY-MM-DD``.

    Understands today/yesterday/tomorrow, ISO dates, and month/day forms with an
    optional 2- or 4-digit year. A month/day without a year that would land in
    the future is read as last year's occurrence. Returns None when nothing
    matches, so callers can fall back to today.
    """
    if not text:
        return None
    today = today or local_today(tz_name)
    lowered = text.lower()

    if "today" in lowered:
        return today.isoformat()
    if "yesterday" in lowered:
        return (today - timedelta(days=1)).isoformat()
    if "tomorrow" in lowered:
        return (today + timedelta(days=1)).isoformat()

    iso = _ISO_DATE.search(lowered)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3))).isoformat()
        except ValueError:
            return None

    match = _MONTH_DAY.search(lowered)
    if not match:
        return None
    month = int(match.group(1))
    day = int(match.group(2))
    explicit_year = match.group(3)
    year = today.year
    if explicit_year:
        year = int(explicit_year)
        if year < 100:
            year += 2000
    try:
        resolved = date(year, month, day)
    except ValueError:
        return None
    if not explicit_year and resolved > today:
        try:
            resolved = resolved.replace(year=year - 1)
        except ValueError:
            # Feb 29 has no occurrence last year.
            return None
    return resolved.isoformat()
