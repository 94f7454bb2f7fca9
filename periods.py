from bisect import bisect_right
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Window:
    """Half-open period window: ``start <= d < end``."""

    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole months, clamping the day to the target month."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def boundary(anchor: date, period: BudgetPeriod, index: int) -> date:
    """Return ``anchor + index * period``.

    Boundaries are always derived from the anchor rather than from the previous
    boundary, so a budget anchored on the 31st keeps returning to the 31st
    after passing through shorter months.
    """
    if period == BudgetPeriod.weekly:
        return anchor + timedelta(weeks=index)
    if period == BudgetPeriod.monthly:
        return add_months(anchor, index)
    if period == BudgetPeriod.yearly:
        return add_months(anchor, 12 * index)
    raise ValueError(f"Unsupported budget period: {period}")


def _first_overlapping_index(
    anchor: date, period: BudgetPeriod, range_start: date
) -> int:
    if range_start < anchor:
        return 0
    if period == BudgetPeriod.weekly:
        return (range_start - anchor).days // 7
    months_per_step = 1 if period == BudgetPeriod.monthly else 12
    elapsed = (range_start.year - anchor.year) * 12 + (
        range_start.month - anchor.month
    )
    index = max(elapsed // months_per_step - 1, 0)
    while boundary(anchor, period, index + 1) <= range_start:
        index += 1
    return index


def generate_windows(
    anchor: date,
    period: BudgetPeriod,
    range_start: date,
    range_end: date,
) -> list[Window]:
    """Anchor-aligned windows overlapping ``[range_start, range_end)``.

    Windows that end on or before ``range_start`` are skipped; emission stops
    at the first window starting on or after ``range_end``.
    """
    if range_start >= range_end:
        return []

    index = _first_overlapping_index(anchor, period, range_start)
    windows: list[Window] = []
    cursor = boundary(anchor, period, index)
    while cursor < range_end:
        next_cursor = boundary(anchor, period, index + 1)
        windows.append(Window(cursor, next_cursor))
        index += 1
        cursor = next_cursor
    return windows


def window_index_for(
    windows: Sequence[Window],
    value: date,
    starts: Optional[Sequence[date]] = None,
) -> Optional[int]:
    """Index of the window containing ``value``; windows must be sorted."""
    if starts is None:
        starts = [w.start for w in windows]
    pos = bisect_right(starts, value) - 1
    if pos < 0 or not windows[pos].contains(value):
        return None
    return pos


def resolve_progress_range(
    budget_start: date,
    budget_end: Optional[date],
    requested_start: Optional[date],
    requested_end: Optional[date],
    *,
    today: Optional[date] = None,
) -> tuple[date, date]:
    """Clamp a progress query to the budget's lifetime.

    ``requested_end`` is exclusive; ``budget_end`` is inclusive. Without an
    explicit end the range runs through ``today``.
    """
    today = today or local_today()
    range_start = budget_start
    if requested_start and requested_start > budget_start:
        range_start = requested_start
    range_end = requested_end or today + timedelta(days=1)
    if budget_end is not None:
        range_end = min(range_end, budget_end + timedelta(days=1))
    return range_start, range_end
