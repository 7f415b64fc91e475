# ============================================================================
# STREET PATROL LOG - Patrol Aggregator
# ============================================================================
# Pure functions over already-fetched patrols: date-range filtering,
# counter and contact-matrix totals, and the named report periods.
# No I/O happens here.
# ============================================================================

import calendar
from dataclasses import dataclass, field
from datetime import MAXYEAR, MINYEAR, datetime, time
from typing import Any, Dict, Iterable, List, Optional

from app.errors import ValidationError

from .models import CONTACT_KEYS, STATISTIC_KEYS, Patrol, format_ts


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def contains(self, ts: Optional[datetime]) -> bool:
        """Inclusive at both ends."""
        if ts is None:
            return False
        return self.start <= ts <= self.end

    def to_dict(self) -> Dict[str, Any]:
        return {"start": format_ts(self.start), "end": format_ts(self.end)}


@dataclass
class AggregationResult:
    date_range: Optional[DateRange]
    statistics: Dict[str, int]
    contact_statistics: Dict[str, int]
    patrols: List[Patrol] = field(default_factory=list)

    @property
    def patrol_count(self) -> int:
        return len(self.patrols)

    @property
    def has_data(self) -> bool:
        return bool(self.patrols)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_range": self.date_range.to_dict() if self.date_range else None,
            "patrol_count": self.patrol_count,
            "has_data": self.has_data,
            "statistics": dict(self.statistics),
            "contact_statistics": dict(self.contact_statistics),
            "patrols": [p.to_dict() for p in self.patrols],
        }


def sum_statistics(patrols: Iterable[Patrol]) -> Dict[str, int]:
    totals = {key: 0 for key in STATISTIC_KEYS}
    for patrol in patrols:
        stats = patrol.statistics or {}
        for key in STATISTIC_KEYS:
            totals[key] += stats.get(key) or 0
    return totals


def sum_contact_statistics(patrols: Iterable[Patrol]) -> Dict[str, int]:
    totals = {key: 0 for key in CONTACT_KEYS}
    for patrol in patrols:
        contacts = patrol.contact_statistics or {}
        for key in CONTACT_KEYS:
            totals[key] += contacts.get(key) or 0
    return totals


def filter_patrols(patrols: Iterable[Patrol], date_range: DateRange) -> List[Patrol]:
    """Patrols whose start time falls in the range, input order kept."""
    return [p for p in patrols if date_range.contains(p.start_time)]


def aggregate(patrols: Iterable[Patrol], date_range: DateRange) -> AggregationResult:
    """Filter by start time and total every counter and contact cell."""
    selected = filter_patrols(patrols, date_range)
    return AggregationResult(
        date_range=date_range,
        statistics=sum_statistics(selected),
        contact_statistics=sum_contact_statistics(selected),
        patrols=selected,
    )


def total_statistics(patrols: Iterable[Patrol]) -> Dict[str, int]:
    """Unfiltered counter totals, as shown above the history list."""
    return sum_statistics(patrols)


# ============================================================================
# Report periods
# ============================================================================

PERIOD_KINDS = ("lastMonth", "last3Months", "yearToDate", "previousYear")


@dataclass(frozen=True)
class ReportPeriod:
    kind: str
    title: str
    date_range: DateRange

    @property
    def label(self) -> str:
        return f"{format_long_date(self.date_range.start)} - {format_long_date(self.date_range.end)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "label": self.label,
            "date_range": self.date_range.to_dict(),
        }


def _ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_long_date(dt: datetime) -> str:
    """'January 1st, 2024'"""
    return f"{dt:%B} {_ordinal(dt.day)}, {dt.year}"


def _end_of_day(dt: datetime) -> datetime:
    return datetime.combine(dt.date(), time.max)


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _month_bounds(year: int, month: int):
    last_day = calendar.monthrange(year, month)[1]
    return (
        datetime(year, month, 1),
        datetime.combine(datetime(year, month, last_day).date(), time.max),
    )


def _year_range(year: int) -> DateRange:
    return DateRange(datetime(year, 1, 1), datetime.combine(datetime(year, 12, 31).date(), time.max))


def report_period(kind: Optional[str], now: datetime) -> ReportPeriod:
    """Resolve a period kind (or a 4-digit year) into a titled date range.

    Unknown kinds fall back to last month. A year outside the calendar
    raises ValidationError.
    """
    if kind == "last3Months":
        y, m = _shift_month(now.year, now.month, -3)
        start, _ = _month_bounds(y, m)
        y, m = _shift_month(now.year, now.month, -1)
        _, end = _month_bounds(y, m)
        return ReportPeriod(kind, "Last 3 Months Report", DateRange(start, end))

    if kind == "yearToDate":
        return ReportPeriod(
            kind,
            f"{now.year} Year to Date Report",
            DateRange(datetime(now.year, 1, 1), now),
        )

    if kind == "previousYear":
        year = now.year - 1
        return ReportPeriod(kind, f"{year} Annual Report", _year_range(year))

    if kind and kind.isascii() and kind.isdigit() and len(kind) == 4:
        year = int(kind)
        if not MINYEAR <= year <= MAXYEAR:
            raise ValidationError(f"No reports for the year {kind}")
        return ReportPeriod(kind, f"{year} Annual Report", _year_range(year))

    y, m = _shift_month(now.year, now.month, -1)
    start, end = _month_bounds(y, m)
    return ReportPeriod("lastMonth", f"{start:%B %Y} Report", DateRange(start, end))


def custom_period(start: datetime, end: datetime, title: Optional[str] = None) -> ReportPeriod:
    """An explicit range; a midnight end bound covers that whole day."""
    if end.time() == time.min:
        end = _end_of_day(end)
    date_range = DateRange(start, end)
    return ReportPeriod("custom", title or "Custom Report", date_range)


def available_years(patrols: Iterable[Patrol], now: datetime) -> List[int]:
    """Historical years with data; the current and previous year have their own periods."""
    years = {p.start_time.year for p in patrols if p.start_time is not None}
    years.discard(now.year)
    years.discard(now.year - 1)
    return sorted(years, reverse=True)


def patrol_duration(start: Optional[datetime], end: Optional[datetime]) -> str:
    if end is None or start is None:
        return "In progress"
    minutes = int((end - start).total_seconds() // 60)
    return f"{minutes // 60}h {minutes % 60}m"
