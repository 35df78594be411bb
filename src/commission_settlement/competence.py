"""Competence-month resolution.

A payment is booked into an accounting "competence month" that differs from
the calendar month it happened in. Two pieces of configuration drive the
decision:

* explicit :class:`CutoffPeriod` overrides, each mapping a date interval to a
  fixed competence month;
* a cutoff day for every calendar month. Payments on or before the cutoff
  book into the following month, later payments into the month after that.

Both are bundled into an immutable :class:`CutoffCalendar` loaded once per
session. :meth:`CutoffCalendar.resolve` depends only on its argument and the
calendar, so identical inputs always produce identical output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from . import log
from .constants import DEFAULT_CUTOFF_DAY
from .errors import CutoffConfigurationError


COMPETENCE_MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

# February and June close earlier; every other month closes on the 19th.
DEFAULT_MONTHLY_CUTOFF_DAYS: Mapping[int, int] = MappingProxyType(
    {
        1: 19, 2: 18, 3: 19, 4: 19, 5: 19, 6: 17,
        7: 19, 8: 19, 9: 19, 10: 19, 11: 19, 12: 19,
    }
)


@dataclass(frozen=True)
class CutoffPeriod:
    """Date interval whose payments book into a fixed competence month."""

    period_id: str
    name: str
    start_date: date
    end_date: date
    competence_month: str

    def contains(self, moment: date) -> bool:
        return self.start_date <= moment <= self.end_date

    def overlaps(self, other: "CutoffPeriod") -> bool:
        return self.start_date <= other.end_date and self.end_date >= other.start_date


def parse_competence_month(value: str) -> tuple[int, int]:
    """Split ``YYYY-MM`` into ``(year, month)``.

    Raises:
        CutoffConfigurationError: If ``value`` is not a valid month label.
    """

    match = COMPETENCE_MONTH_PATTERN.match(value or "")
    if match is None:
        raise CutoffConfigurationError(f"Invalid competence month: {value!r}")
    return int(match.group(1)), int(match.group(2))


def format_competence_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    """Move ``offset`` months forward from ``(year, month)``, rolling the year."""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def validate_period(period: CutoffPeriod) -> None:
    """Check a single period on its own.

    Args:
        period (CutoffPeriod): Candidate period.

    Raises:
        CutoffConfigurationError: If the name is blank, the start date comes
            after the end date, or the competence month does not come after
            the month in which the period ends.
    """

    if not period.name or not period.name.strip():
        raise CutoffConfigurationError("Cutoff period name is required")
    if period.start_date > period.end_date:
        raise CutoffConfigurationError(
            f"Cutoff period '{period.name}' starts after it ends"
        )
    year, month = parse_competence_month(period.competence_month)
    if (year, month) <= (period.end_date.year, period.end_date.month):
        raise CutoffConfigurationError(
            f"Competence month of '{period.name}' must come after the period end"
        )


def validate_cutoff_days(cutoff_days: Mapping[int, int]) -> None:
    for month, day in cutoff_days.items():
        if not 1 <= month <= 12:
            raise CutoffConfigurationError(f"Invalid month in cutoff table: {month}")
        if not 1 <= day <= 31:
            raise CutoffConfigurationError(f"Invalid cutoff day for month {month}: {day}")


@dataclass(frozen=True)
class CutoffCalendar:
    """Immutable configuration consumed by :meth:`resolve`.

    Build instances through :func:`build_cutoff_calendar`, which enforces
    the invariants (valid periods, no overlaps, sane cutoff days).
    """

    periods: tuple[CutoffPeriod, ...] = ()
    cutoff_days: Mapping[int, int] = field(default_factory=lambda: DEFAULT_MONTHLY_CUTOFF_DAYS)
    default_cutoff_day: int = DEFAULT_CUTOFF_DAY

    def cutoff_day_for(self, month: int) -> int:
        return self.cutoff_days.get(month, self.default_cutoff_day)

    def find_period(self, paid_date: date) -> Optional[CutoffPeriod]:
        for period in self.periods:
            if period.contains(paid_date):
                return period
        return None

    def resolve(self, paid_date: date) -> str:
        """Return the ``YYYY-MM`` competence month for a payment date.

        A configured :class:`CutoffPeriod` containing ``paid_date`` wins.
        Otherwise the calendar month's cutoff day decides: on or before the
        cutoff the payment books into the next month, after it into the
        month after next (December 20th books into February).

        Args:
            paid_date (date): Day the installment was paid.

        Returns:
            str: Competence month label.
        """

        period = self.find_period(paid_date)
        if period is not None:
            return period.competence_month

        offset = 1 if paid_date.day <= self.cutoff_day_for(paid_date.month) else 2
        year, month = shift_month(paid_date.year, paid_date.month, offset)
        return format_competence_month(year, month)


def build_cutoff_calendar(
    periods: Iterable[CutoffPeriod] = (),
    cutoff_days: Optional[Mapping[int, int]] = None,
    *,
    default_cutoff_day: int = DEFAULT_CUTOFF_DAY,
) -> CutoffCalendar:
    """Validate configuration and freeze it into a :class:`CutoffCalendar`.

    Periods are sorted by start date so lookups happen in a deterministic
    order. Overlapping periods are rejected outright since the competence
    month of a date inside both would otherwise depend on ordering.

    Args:
        periods (Iterable[CutoffPeriod]): Explicit overrides.
        cutoff_days (Mapping[int, int] | None): Month number to cutoff day.
            Months missing from the mapping fall back to the defaults.
        default_cutoff_day (int): Day used when a month has no entry at all.

    Returns:
        CutoffCalendar: Immutable calendar ready for resolution.

    Raises:
        CutoffConfigurationError: If a period is invalid, two periods
            overlap, or a cutoff day is out of range.
    """

    ordered = tuple(sorted(periods, key=lambda item: (item.start_date, item.period_id)))
    for period in ordered:
        validate_period(period)
    for previous, current in zip(ordered, ordered[1:]):
        if previous.overlaps(current):
            log.error(
                "Rejected overlapping cutoff periods '%s' and '%s'",
                previous.name,
                current.name,
            )
            raise CutoffConfigurationError(
                f"Cutoff periods '{previous.name}' and '{current.name}' overlap"
            )

    days = dict(DEFAULT_MONTHLY_CUTOFF_DAYS)
    if cutoff_days:
        days.update(cutoff_days)
    validate_cutoff_days(days)

    log.debug("Built cutoff calendar with %d periods", len(ordered))
    return CutoffCalendar(
        periods=ordered,
        cutoff_days=MappingProxyType(days),
        default_cutoff_day=default_cutoff_day,
    )


DEFAULT_CUTOFF_CALENDAR = CutoffCalendar()
