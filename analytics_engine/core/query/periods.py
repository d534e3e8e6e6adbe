import calendar
from datetime import date, timedelta
from typing import Optional, Tuple

from analytics_engine.core.errors import ValidationError
from analytics_engine.core.schemas import ComparisonType, DateRange, PeriodComparison


# -----------------------------------------------------------------------------
# PERIODS MODULE
# Purpose: derive the comparison date range for period-over-period charts.
# -----------------------------------------------------------------------------

# frequency -> (unit, size). Month based units are stepped on the calendar.
FREQUENCY_UNITS = {
    "daily": ("days", 1),
    "weekly": ("days", 7),
    "monthly": ("months", 1),
    "quarterly": ("months", 3),
    "yearly": ("months", 12),
    "annual": ("months", 12),
}

FREQUENCY_NOUNS = {
    "daily": "Day",
    "weekly": "Week",
    "monthly": "Month",
    "quarterly": "Quarter",
    "yearly": "Year",
    "annual": "Year",
}


def _unit_for(frequency: str) -> Tuple[str, int]:
    unit = FREQUENCY_UNITS.get(frequency.strip().lower())
    if unit is None:
        raise ValidationError("unsupported frequency for period comparison", field="frequency")
    return unit


def _is_month_end(day: date) -> bool:
    return day.day == calendar.monthrange(day.year, day.month)[1]


def shift_months(day: date, months: int, snap_to_month_end: bool = False) -> date:
    """Move a date by whole months, clamping to the last day of the target month."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    if snap_to_month_end:
        return date(year, month, last_day)
    return date(year, month, min(day.day, last_day))


def _months_spanned(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month) + 1


def _shift_range(start: date, end: date, unit: str, amount: int) -> DateRange:
    if unit == "days":
        delta = timedelta(days=amount)
        return DateRange(start=start - delta, end=end - delta)

    return DateRange(
        start=shift_months(start, -amount),
        end=shift_months(end, -amount, snap_to_month_end=_is_month_end(end)),
    )


def _periods_in_window(start: date, end: date, unit: str, size: int) -> int:
    """How many whole frequency units the window covers, rounded up."""
    if unit == "days":
        days = (end - start).days + 1
        return -(-days // size)
    return -(-_months_spanned(start, end) // size)


def calculate_comparison_range(
    start: date,
    end: date,
    frequency: str,
    comparison: PeriodComparison,
) -> DateRange:
    """
    Work out the date range to compare the current window against.

    Args:
        start: First day of the current window.
        end: Last day of the current window.
        frequency: Time bucket of the chart (Daily, Weekly, Monthly, ...).
        comparison: Comparison settings; an explicit comparison_range wins.

    Returns:
        The comparison DateRange.

    Example:
        2024-04-01..2024-06-30 Monthly previous_period -> 2024-01-01..2024-03-31
    """
    if comparison.comparison_range is not None:
        return comparison.comparison_range

    if end < start:
        raise ValidationError("end_date must not be before start_date", field="end_date")

    unit, size = _unit_for(frequency)

    if comparison.comparison_type == ComparisonType.SAME_PERIOD_LAST_YEAR:
        return _shift_range(start, end, "months", 12)

    if comparison.comparison_type == ComparisonType.CUSTOM_PERIOD:
        offset = comparison.custom_period_offset
        if offset is None or offset < 1:
            raise ValidationError("custom period offset must be at least 1", field="period_comparison")
        return _shift_range(start, end, unit, offset * size)

    periods = _periods_in_window(start, end, unit, size)
    return _shift_range(start, end, unit, periods * size)


def comparison_label(frequency: Optional[str], comparison: PeriodComparison) -> str:
    noun = FREQUENCY_NOUNS.get((frequency or "").strip().lower(), "Period")

    if comparison.comparison_type == ComparisonType.SAME_PERIOD_LAST_YEAR:
        return "Same Period Last Year"

    if comparison.comparison_type == ComparisonType.CUSTOM_PERIOD and comparison.custom_period_offset:
        offset = comparison.custom_period_offset
        return f"{offset} {noun}{'s' if offset > 1 else ''} Ago"

    if comparison.comparison_range is not None:
        return "Comparison Period"

    return f"Previous {noun}"
