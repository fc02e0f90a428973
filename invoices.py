"""Card posting dates and virtual invoices.

A purchase made after a card's closing day lands on the following month's
invoice; the invoice is paid on the card's due day. Invoices are never stored:
they are rebuilt from transactions on every query.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from dates import DayLike, clamped_date, parse_iso, shift_month
from models import CASH
from recurrence import OccursFn, expand, occurs_on
from schemas import Card, InvoiceAdjustment, Transaction


logger = logging.getLogger(__name__)

InvoiceKey = tuple[str, date]


def invoice_due_date(card: Card, operation_date: DayLike) -> date:
    op = parse_iso(operation_date)
    year, month = op.year, op.month
    if op.day > card.closing_day:
        year, month = shift_month(year, month, 1)
    return clamped_date(year, month, card.due_day)


class PostingCalculator:
    """Maps (operation date, method) to the day the movement hits the balance."""

    def __init__(self, cards: Iterable[Card] = ()) -> None:
        self._cards = {card.name: card for card in cards}
        self._warned: set[str] = set()

    @property
    def cards(self) -> list[Card]:
        return list(self._cards.values())

    def card_for(self, method: str) -> Optional[Card]:
        if method == CASH:
            return None
        return self._cards.get(method)

    def is_card(self, method: str) -> bool:
        return self.card_for(method) is not None

    def posting_date(self, operation_date: DayLike, method: str) -> date:
        op = parse_iso(operation_date)
        if method == CASH:
            return op
        card = self._cards.get(method)
        if card is None:
            if method not in self._warned:
                self._warned.add(method)
                logger.warning(
                    f"posting_unknown_card: method={method!r} treated_as=cash"
                )
            return op
        return invoice_due_date(card, op)

    __call__ = posting_date


def posting_date(operation_date: DayLike, method: str, cards: Iterable[Card]) -> date:
    return PostingCalculator(cards).posting_date(operation_date, method)


def adjustments_from(transactions: Iterable[Transaction]) -> list[InvoiceAdjustment]:
    return [t.invoice_adjust for t in transactions if t.invoice_adjust is not None]


def adjustment_totals(
    adjustments: Iterable[InvoiceAdjustment],
) -> dict[InvoiceKey, Decimal]:
    totals: dict[InvoiceKey, Decimal] = defaultdict(lambda: Decimal("0"))
    for adj in adjustments:
        totals[(adj.card, adj.due_date)] += adj.amount
    return dict(totals)


def collect_invoice_items(
    transactions: Iterable[Transaction],
    posting: PostingCalculator,
    start: date,
    end: date,
    *,
    lookback_days: int,
    today: date,
    occurs: OccursFn = occurs_on,
) -> dict[InvoiceKey, list[Transaction]]:
    """Group card movements by (card, due date) for due dates in ``[start, end]``.

    Recurring masters are expanded from ``lookback_days`` before ``start`` so
    purchases made in earlier billing cycles still reach their invoice.
    """
    buckets: dict[InvoiceKey, list[Transaction]] = defaultdict(list)
    scan_start = start - timedelta(days=lookback_days)
    for txn in transactions:
        if not posting.is_card(txn.method):
            continue
        if txn.is_master:
            for occ in expand(
                txn, scan_start, end, posting=posting, occurs=occurs, today=today
            ):
                if start <= occ.posting_date <= end:
                    buckets[(txn.method, occ.posting_date)].append(occ)
            continue
        due = posting.posting_date(txn.operation_date, txn.method)
        if start <= due <= end:
            if txn.posting_date != due:
                txn = txn.model_copy(update={"posting_date": due})
            buckets[(txn.method, due)].append(txn)
    return dict(buckets)


@dataclass(frozen=True)
class Invoice:
    card: str
    due_date: date
    items: tuple[Transaction, ...]
    adjustments: Decimal

    @property
    def gross(self) -> Decimal:
        return sum((t.amount for t in self.items), Decimal("0"))

    @property
    def total(self) -> Decimal:
        # Adjustments are settled amounts; they shrink what is owed.
        return self.gross + self.adjustments

    def to_json(self) -> dict[str, object]:
        return {
            "card": self.card,
            "dueDate": self.due_date.isoformat(),
            "gross": str(self.gross),
            "adjustments": str(self.adjustments),
            "total": str(self.total),
            "items": [t.to_json() for t in self.items],
        }


def build_invoice(
    card: str,
    due_date: DayLike,
    transactions: Iterable[Transaction],
    posting: PostingCalculator,
    *,
    lookback_days: int,
    today: date,
    adjustments: Iterable[InvoiceAdjustment] = (),
) -> Invoice:
    due = parse_iso(due_date)
    txns = list(transactions)
    buckets = collect_invoice_items(
        txns, posting, due, due, lookback_days=lookback_days, today=today
    )
    items = sorted(buckets.get((card, due), []), key=Transaction.sort_key)
    adjusted = adjustment_totals([*adjustments, *adjustments_from(txns)])
    return Invoice(
        card=card,
        due_date=due,
        items=tuple(items),
        adjustments=adjusted.get((card, due), Decimal("0")),
    )
