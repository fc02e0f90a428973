import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Optional

from dates import DayLike, add_days, days_in_month, local_today, months_between, parse_iso
from models import (
    MONTH_INTERVALS,
    OCCURRENCES_PER_YEAR,
    MonthDayPolicy,
    RecurrenceRule,
)
from schemas import Transaction


logger = logging.getLogger(__name__)

PostingFn = Callable[[date, str], date]
OccursFn = Callable[[Transaction, date], bool]


@lru_cache(maxsize=64)
def _warn_unknown_rule(rule: str) -> None:
    logger.warning(f"recurrence_unknown_rule: rule={rule!r} treated_as=no_occurrence")


def parse_rule(value: Optional[str]) -> Optional[RecurrenceRule]:
    if not value:
        return None
    try:
        return RecurrenceRule(value)
    except ValueError:
        _warn_unknown_rule(value)
        return None


def is_valid_rule(value: Optional[str]) -> bool:
    return value in {rule.value for rule in RecurrenceRule}


def _matches_month_day(
    anchor: date, target: date, interval: int, policy: MonthDayPolicy
) -> bool:
    if months_between(anchor, target) % interval != 0:
        return False
    if policy == MonthDayPolicy.snap_to_end:
        return target.day == min(anchor.day, days_in_month(target.year, target.month))
    return target.day == anchor.day


def occurs_on(master: Transaction, day: DayLike) -> bool:
    """Return True when the master materializes an occurrence on ``day``."""
    target = parse_iso(day)
    if target in master.exceptions:
        return False
    if master.recurrence_end and target >= master.recurrence_end:
        return False
    if not master.recurrence_rule or target < master.operation_date:
        return False

    rule = parse_rule(master.recurrence_rule)
    if rule is None:
        return False

    anchor = master.operation_date
    if rule == RecurrenceRule.daily:
        return True
    if rule == RecurrenceRule.weekly:
        return (target - anchor).days % 7 == 0
    if rule == RecurrenceRule.biweekly:
        return (target - anchor).days % 14 == 0
    if rule in MONTH_INTERVALS:
        return _matches_month_day(
            anchor, target, MONTH_INTERVALS[rule], master.month_day_policy
        )
    # yearly: same month and day, any year
    return _matches_month_day(anchor, target, 12, master.month_day_policy)


def occurrence_id(master_id: str, day: date) -> str:
    return f"{master_id}_{day.isoformat()}"


def split_occurrence_id(value: str) -> Optional[tuple[str, date]]:
    master_id, sep, suffix = value.rpartition("_")
    if not sep or not master_id:
        return None
    try:
        return master_id, date.fromisoformat(suffix)
    except ValueError:
        return None


def materialize(
    master: Transaction,
    day: date,
    *,
    posting: Optional[PostingFn] = None,
    today: Optional[date] = None,
) -> Transaction:
    today = today or local_today()
    return master.model_copy(
        update={
            "id": occurrence_id(master.id, day),
            "operation_date": day,
            "posting_date": posting(day, master.method) if posting else day,
            "planned": day > today,
            "parent_id": master.id,
            "recurrence_rule": None,
            "recurrence_end": None,
            "exceptions": [],
        }
    )


def expand(
    master: Transaction,
    start: DayLike,
    end: DayLike,
    *,
    posting: Optional[PostingFn] = None,
    occurs: OccursFn = occurs_on,
    today: Optional[date] = None,
) -> list[Transaction]:
    """Materialize every occurrence of ``master`` inside ``[start, end]``.

    The master is never modified; expanding the same window twice yields
    equal lists.
    """
    if not master.recurrence_rule:
        return []
    today = today or local_today()
    first = max(parse_iso(start), master.operation_date)
    last = parse_iso(end)
    if master.recurrence_end:
        last = min(last, master.recurrence_end - timedelta(days=1))

    occurrences: list[Transaction] = []
    current = first
    while current <= last:
        if occurs(master, current):
            occurrences.append(
                materialize(master, current, posting=posting, today=today)
            )
        current += timedelta(days=1)
    return occurrences


def next_occurrences(
    master: Transaction,
    count: int = 5,
    from_date: Optional[DayLike] = None,
    *,
    posting: Optional[PostingFn] = None,
    today: Optional[date] = None,
    max_days: int = 3660,
) -> list[Transaction]:
    today = today or local_today()
    current = parse_iso(from_date) if from_date else today
    found: list[Transaction] = []
    scanned = 0
    while len(found) < count and scanned < max_days:
        if master.recurrence_end and current >= master.recurrence_end:
            break
        if occurs_on(master, current):
            found.append(materialize(master, current, posting=posting, today=today))
        current += timedelta(days=1)
        scanned += 1
    return found


@dataclass(frozen=True)
class RecurrenceStats:
    rule: Optional[str]
    occurrences: int
    next_occurrence: Optional[date]
    total: Decimal
    average_monthly: Decimal
    period_days: int


def recurrence_stats(
    master: Transaction, days: int = 365, today: Optional[date] = None
) -> RecurrenceStats:
    today = today or local_today()
    if not master.is_master:
        return RecurrenceStats(None, 0, None, Decimal("0"), Decimal("0"), days)

    window = expand(master, today, add_days(today, days - 1), today=today)
    total = master.amount * len(window)
    months = Decimal(days) / Decimal("30.44")
    average = (total / months).quantize(Decimal("0.01")) if months else Decimal("0")
    upcoming = next_occurrences(master, 1, today, today=today)
    return RecurrenceStats(
        rule=master.recurrence_rule,
        occurrences=len(window),
        next_occurrence=upcoming[0].operation_date if upcoming else None,
        total=total,
        average_monthly=average,
        period_days=days,
    )


def occurrences_per_year(rule: Optional[str]) -> int:
    parsed = parse_rule(rule)
    return OCCURRENCES_PER_YEAR.get(parsed, 0) if parsed else 0


def add_exception(master: Transaction, day: DayLike) -> Transaction:
    target = parse_iso(day)
    return master.model_copy(
        update={"exceptions": sorted(set(master.exceptions) | {target})}
    )


def remove_exception(master: Transaction, day: DayLike) -> Transaction:
    target = parse_iso(day)
    return master.model_copy(
        update={"exceptions": [d for d in master.exceptions if d != target]}
    )
