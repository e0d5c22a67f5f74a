from datetime import datetime, timedelta, timezone

from .config import WEEK_MS


def week_start_utc_ms(now_ms: int) -> int:
    """Monday 00:00 UTC of the week containing now_ms, in epoch milliseconds."""
    d = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    monday = (d - timedelta(days=d.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(monday.timestamp() * 1000)


def period_start_ms(now_ms: int, period_ms: int = WEEK_MS) -> int:
    """Start of the period containing now_ms. Weeks are Monday-aligned, other widths epoch-aligned."""
    if period_ms == WEEK_MS:
        return week_start_utc_ms(now_ms)
    return now_ms - (now_ms % period_ms)


def previous_period_ms(current_start_ms: int, period_ms: int = WEEK_MS) -> int:
    return current_start_ms - period_ms


def period_label(start_ms: int) -> str:
    return datetime.fromtimestamp(start_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
