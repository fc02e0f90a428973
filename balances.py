"""Day-by-day running balance.

Cash movements hit the balance on their operation date. Card movements hit it
through the invoice total on the invoice due date. Invoice adjustments are
amounts already settled for a (card, due date) pair and are taken off what the
invoice still owes.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Iterator, Mapping, Optional

from dates import DateRange, DayLike, local_today, month_start, parse_iso
from invoices import (
    PostingCalculator,
    adjustment_totals,
    adjustments_from,
    collect_invoice_items,
)
from recurrence import OccursFn, expand, occurs_on
from schemas import Card, InvoiceAdjustment, Transaction


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_LOOKBACK_DAYS = 60


@dataclass(frozen=True)
class DayImpact:
    day: date
    cash: Decimal
    card: Decimal

    @property
    def total(self) -> Decimal:
        return self.cash + self.card


@dataclass(frozen=True)
class ProjectionPoint:
    day: date
    balance: Decimal
    is_past: bool
    is_today: bool
    is_future: bool


@dataclass(frozen=True)
class BalanceStats:
    minimum: Decimal
    maximum: Decimal
    average: Decimal
    current: Decimal
    trend: str
    negative_days: int


class RunningBalanceMap(Mapping[date, Decimal]):
    """Ordered end-of-day balances over a contiguous range of days."""

    def __init__(self, balances: Mapping[date, Decimal]) -> None:
        self._balances = dict(sorted(balances.items()))

    def __getitem__(self, key: DayLike) -> Decimal:
        return self._balances[parse_iso(key)]

    def __iter__(self) -> Iterator[date]:
        return iter(self._balances)

    def __len__(self) -> int:
        return len(self._balances)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RunningBalanceMap):
            return list(self._balances.items()) == list(other._balances.items())
        return NotImplemented

    @property
    def start(self) -> Optional[date]:
        return next(iter(self._balances), None)

    @property
    def end(self) -> Optional[date]:
        return next(reversed(self._balances), None)

    def balance_on(self, day: DayLike) -> Decimal:
        """Balance at the end of ``day``.

        Days before the range have no balance yet (zero); days after it keep
        the last known balance.
        """
        target = parse_iso(day)
        if target in self._balances:
            return self._balances[target]
        if not self._balances or target < self.start:
            return ZERO
        return self._balances[self.end]

    def negative_dates(self) -> list[tuple[date, Decimal]]:
        return [(day, value) for day, value in self._balances.items() if value < 0]

    def project(self, days: int, today: date) -> list[ProjectionPoint]:
        points = []
        for offset in range(days + 1):
            day = today + timedelta(days=offset)
            points.append(
                ProjectionPoint(
                    day=day,
                    balance=self.balance_on(day),
                    is_past=day < today,
                    is_today=day == today,
                    is_future=day > today,
                )
            )
        return points

    def stats(self, today: date) -> BalanceStats:
        if not self._balances:
            return BalanceStats(ZERO, ZERO, ZERO, ZERO, "stable", 0)
        values = list(self._balances.values())
        window_end = min(today, self.end) if today >= self.start else self.end
        trailing = [
            value
            for day, value in self._balances.items()
            if window_end - timedelta(days=6) <= day <= window_end
        ]
        trend = "stable"
        if len(trailing) >= 2:
            if trailing[-1] > trailing[0]:
                trend = "up"
            elif trailing[-1] < trailing[0]:
                trend = "down"
        return BalanceStats(
            minimum=min(values),
            maximum=max(values),
            average=sum(values, ZERO) / len(values),
            current=self.balance_on(today),
            trend=trend,
            negative_days=len(self.negative_dates()),
        )

    def to_json(self) -> dict[str, str]:
        return {day.isoformat(): str(value) for day, value in self._balances.items()}


class BalanceBuilder:
    """Builds running balances from transactions and cards.

    Posting-date and recurrence rules are injected so the builder never reads
    global card lists; it holds no state between calls.
    """

    def __init__(
        self,
        cards: Iterable[Card] = (),
        *,
        posting: Optional[PostingCalculator] = None,
        occurs: OccursFn = occurs_on,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        today: Optional[date] = None,
    ) -> None:
        self.posting = posting or PostingCalculator(cards)
        self.occurs = occurs
        self.lookback_days = lookback_days
        self.today = today or local_today()

    def _expand(self, master: Transaction, start: date, end: date) -> list[Transaction]:
        return expand(
            master,
            start,
            end,
            posting=self.posting,
            occurs=self.occurs,
            today=self.today,
        )

    def observed_range(self, transactions: Iterable[Transaction]) -> DateRange:
        txns = list(transactions)
        days = [self.today]
        for txn in txns:
            days.append(txn.operation_date)
            days.append(self.posting.posting_date(txn.operation_date, txn.method))
        first = min(days)
        last = max(days)
        start = month_start(first.year, first.month)
        end = date(last.year, 12, 31)
        # The last occurrences of open card series are paid after year end.
        for txn in txns:
            if not txn.is_master or not self.posting.is_card(txn.method):
                continue
            if txn.recurrence_end and txn.recurrence_end <= end:
                continue
            end = max(end, self.posting.posting_date(end, txn.method))
        return DateRange(start, end)

    def cash_impacts(
        self,
        transactions: Iterable[Transaction],
        days: DateRange,
        *,
        available_only: bool = False,
    ) -> dict[date, Decimal]:
        impacts: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for txn in transactions:
            if self.posting.is_card(txn.method):
                continue
            if txn.is_master:
                occurrences = self._expand(txn, days.start, days.end)
            elif days.start <= txn.operation_date <= days.end:
                occurrences = [txn]
            else:
                continue
            for occ in occurrences:
                if available_only and occ.planned:
                    continue
                impacts[occ.operation_date] += occ.amount
        return dict(impacts)

    def card_impacts(
        self,
        transactions: Iterable[Transaction],
        days: DateRange,
        *,
        adjustments: Iterable[InvoiceAdjustment] = (),
        available_only: bool = False,
    ) -> dict[date, Decimal]:
        txns = list(transactions)
        buckets = collect_invoice_items(
            txns,
            self.posting,
            days.start,
            days.end,
            lookback_days=self.lookback_days,
            today=self.today,
            occurs=self.occurs,
        )
        impacts: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for (card, due), items in buckets.items():
            for item in items:
                if available_only and item.planned:
                    continue
                impacts[due] += item.amount
        for (card, due), amount in adjustment_totals(
            [*adjustments, *adjustments_from(txns)]
        ).items():
            if self.posting.is_card(card) and due in days:
                impacts[due] += amount
        return dict(impacts)

    def daily_impacts(
        self,
        transactions: Iterable[Transaction],
        days: DateRange,
        *,
        adjustments: Iterable[InvoiceAdjustment] = (),
        available_only: bool = False,
    ) -> dict[date, DayImpact]:
        txns = list(transactions)
        cash = self.cash_impacts(txns, days, available_only=available_only)
        card = self.card_impacts(
            txns, days, adjustments=adjustments, available_only=available_only
        )
        return {
            day: DayImpact(day, cash.get(day, ZERO), card.get(day, ZERO))
            for day in days
        }

    def build(
        self,
        transactions: Iterable[Transaction],
        start_balance: Decimal = ZERO,
        anchor: Optional[DayLike] = None,
        *,
        start: Optional[DayLike] = None,
        end: Optional[DayLike] = None,
        adjustments: Iterable[InvoiceAdjustment] = (),
        available_only: bool = False,
    ) -> RunningBalanceMap:
        txns = list(transactions)
        observed = self.observed_range(txns)
        days = DateRange(
            parse_iso(start) if start else observed.start,
            parse_iso(end) if end else observed.end,
        )
        if days.is_empty():
            return RunningBalanceMap({})

        impacts = self.daily_impacts(
            txns, days, adjustments=adjustments, available_only=available_only
        )
        anchor_day = parse_iso(anchor) if anchor else None
        seed = Decimal(start_balance or 0)

        balances: dict[date, Decimal] = {}
        running = ZERO
        if anchor_day is None or anchor_day < days.start:
            running = seed
        for day in days:
            if anchor_day is not None:
                if day < anchor_day:
                    balances[day] = ZERO
                    continue
                if day == anchor_day:
                    running = seed
            running += impacts[day].total
            balances[day] = running

        logger.debug(
            f"balance_build: start={days.start} end={days.end} "
            f"transactions={len(txns)} final={running}"
        )
        return RunningBalanceMap(balances)
