from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from balances import (
    BalanceBuilder,
    BalanceStats,
    ProjectionPoint,
    RunningBalanceMap,
)
from config import get_settings
from dates import DayLike, clamped_date, local_today, month_end, month_start, parse_iso
from invoices import Invoice, build_invoice
from models import CASH, EditScope
from recurrence import (
    RecurrenceStats,
    add_exception,
    expand,
    materialize,
    next_occurrences,
    occurrence_id,
    occurs_on,
    recurrence_stats,
    split_occurrence_id,
)
from schemas import Card, CardIn, StartBalance, StartBalanceIn, Transaction, TransactionIn, utcnow
from store import LedgerStore


logger = logging.getLogger(__name__)


class TransactionNotFound(ValueError):
    pass


class CardNotFound(ValueError):
    pass


class DuplicateCardError(ValueError):
    pass


class UnknownCardError(ValueError):
    pass


class TransactionService:
    def __init__(self, store: LedgerStore, today: Optional[date] = None) -> None:
        self.store = store
        self._today = today

    @property
    def today(self) -> date:
        return self._today or local_today()

    def list_all(self) -> list[Transaction]:
        return self.store.transactions

    def get(self, transaction_id: str) -> Transaction:
        for txn in self.store.transactions:
            if txn.id == transaction_id:
                return txn
        raise TransactionNotFound("Transaction not found")

    def _find(self, transaction_id: str) -> Optional[Transaction]:
        try:
            return self.get(transaction_id)
        except TransactionNotFound:
            return None

    def _series(self, transaction_id: str) -> tuple[Optional[Transaction], Transaction, date]:
        """Return (stored record, master, occurrence date) for a series member.

        The stored record is None for virtual occurrences and for the master
        itself, whose own date is treated as its first occurrence.
        """
        txn = self._find(transaction_id)
        if txn is not None:
            if txn.is_master:
                return None, txn, txn.operation_date
            if txn.parent_id:
                master = self._find(txn.parent_id)
                if master is not None and master.is_master:
                    return txn, master, txn.operation_date
            raise TransactionNotFound("Transaction is not part of a recurring series")
        parsed = split_occurrence_id(transaction_id)
        if parsed is not None:
            master = self._find(parsed[0])
            if master is not None and master.is_master and occurs_on(master, parsed[1]):
                return None, master, parsed[1]
        raise TransactionNotFound("Transaction not found")

    def resolve(self, transaction_id: str) -> Transaction:
        """Return a stored record or the materialized occurrence an id names."""
        txn = self._find(transaction_id)
        if txn is not None:
            return txn
        _, master, day = self._series(transaction_id)
        return materialize(
            master, day, posting=self.store.posting_calculator(), today=self.today
        )

    def _standalone(self, stored: Optional[Transaction], scope: EditScope) -> bool:
        if stored is None or stored.is_master:
            return False
        if scope == EditScope.single or not stored.parent_id:
            return True
        parent = self._find(stored.parent_id)
        return parent is None or not parent.is_master

    def _check_method(self, method: str) -> None:
        if method != CASH and not self.store.posting_calculator().is_card(method):
            raise UnknownCardError(f"Unknown payment method: {method}")

    def _record_from(self, data: TransactionIn, **overrides: Any) -> Transaction:
        now = utcnow()
        fields: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "description": data.description,
            "amount": data.amount,
            "method": data.method,
            "operation_date": data.operation_date,
            "recurrence_rule": data.recurrence_rule.value if data.recurrence_rule else None,
            "recurrence_end": data.recurrence_end,
            "month_day_policy": data.month_day_policy,
            "planned": (
                data.planned
                if data.planned is not None
                else data.operation_date > self.today
            ),
            "created_at": now,
            "modified_at": now,
        }
        fields.update(overrides)
        if fields["recurrence_rule"]:
            fields["planned"] = False
        return Transaction(**fields)

    def create(
        self, data: TransactionIn, *, transaction_id: Optional[str] = None
    ) -> list[Transaction]:
        self._check_method(data.method)
        if transaction_id and self._find(transaction_id) is not None:
            raise ValueError("Transaction already exists")
        txn = self._record_from(data, id=transaction_id or uuid.uuid4().hex)
        logger.info(
            f"transaction_create: id={txn.id} method={txn.method} rule={txn.recurrence_rule}"
        )
        return self.store.replace_transactions([*self.store.transactions, txn])

    def _replace(self, updated: dict[str, Optional[Transaction]], *extra: Transaction) -> list[Transaction]:
        records = []
        for txn in self.store.transactions:
            if txn.id in updated:
                if updated[txn.id] is not None:
                    records.append(updated[txn.id])
            else:
                records.append(txn)
        records.extend(extra)
        return self.store.replace_transactions(records)

    def _touch(self, txn: Transaction, **changes: Any) -> Transaction:
        return txn.model_copy(update={**changes, "modified_at": utcnow()})

    def update(
        self,
        transaction_id: str,
        data: TransactionIn,
        scope: EditScope = EditScope.single,
    ) -> list[Transaction]:
        self._check_method(data.method)
        stored = self._find(transaction_id)
        if self._standalone(stored, scope):
            edited = self._record_from(
                data,
                id=stored.id,
                parent_id=stored.parent_id,
                invoice_adjust=stored.invoice_adjust,
                created_at=stored.created_at or utcnow(),
            )
            logger.info(f"transaction_update: id={stored.id} scope=record")
            return self._replace({stored.id: edited})

        record, master, day = self._series(transaction_id)
        if scope == EditScope.single:
            return self._edit_occurrence(record, master, day, data)
        if scope == EditScope.future and day > master.operation_date:
            return self._split_series(master, day, data)
        return self._edit_series(master, data)

    def _edit_occurrence(
        self,
        record: Optional[Transaction],
        master: Transaction,
        day: date,
        data: TransactionIn,
    ) -> list[Transaction]:
        detached = self._record_from(
            data,
            id=record.id if record else occurrence_id(master.id, day),
            parent_id=master.id,
            recurrence_rule=None,
            recurrence_end=None,
            created_at=(record.created_at if record else None) or utcnow(),
        )
        updated: dict[str, Optional[Transaction]] = {
            master.id: self._touch(add_exception(master, day))
        }
        if record is not None:
            updated[record.id] = detached
            logger.info(f"transaction_update: id={record.id} scope=single")
            return self._replace(updated)
        logger.info(f"transaction_detach: master={master.id} day={day}")
        return self._replace(updated, detached)

    def _split_series(
        self, master: Transaction, day: date, data: TransactionIn
    ) -> list[Transaction]:
        successor = self._record_from(
            data,
            recurrence_rule=(
                data.recurrence_rule.value if data.recurrence_rule else master.recurrence_rule
            ),
            recurrence_end=data.recurrence_end or master.recurrence_end,
            exceptions=[d for d in master.exceptions if d >= day],
        )
        truncated = self._touch(
            master,
            recurrence_end=day,
            exceptions=[d for d in master.exceptions if d < day],
        )
        logger.info(
            f"transaction_split: master={master.id} day={day} successor={successor.id}"
        )
        return self._replace({master.id: truncated}, successor)

    def _edit_series(self, master: Transaction, data: TransactionIn) -> list[Transaction]:
        end = data.recurrence_end or master.recurrence_end
        if end is not None and end <= master.operation_date:
            raise ValueError("Recurrence end must be after the operation date")
        edited = self._touch(
            master,
            description=data.description,
            amount=data.amount,
            method=data.method,
            recurrence_rule=(
                data.recurrence_rule.value if data.recurrence_rule else master.recurrence_rule
            ),
            recurrence_end=end,
            month_day_policy=data.month_day_policy,
        )
        logger.info(f"transaction_update: id={master.id} scope=all")
        return self._replace({master.id: edited})

    def delete(
        self, transaction_id: str, scope: EditScope = EditScope.single
    ) -> list[Transaction]:
        stored = self._find(transaction_id)
        if self._standalone(stored, scope):
            logger.info(f"transaction_delete: id={stored.id} scope=record")
            return self._replace({stored.id: None})

        record, master, day = self._series(transaction_id)
        if scope == EditScope.single:
            updated: dict[str, Optional[Transaction]] = {
                master.id: self._touch(add_exception(master, day))
            }
            if record is not None:
                updated[record.id] = None
            logger.info(f"transaction_delete: master={master.id} day={day} scope=single")
            return self._replace(updated)

        if scope == EditScope.future and day > master.operation_date:
            updated = {
                master.id: self._touch(
                    master,
                    recurrence_end=day,
                    exceptions=[d for d in master.exceptions if d < day],
                )
            }
            for txn in self.store.transactions:
                if txn.parent_id == master.id and txn.operation_date >= day:
                    updated[txn.id] = None
            logger.info(f"transaction_delete: master={master.id} day={day} scope=future")
            return self._replace(updated)

        updated = {master.id: None}
        for txn in self.store.transactions:
            if txn.parent_id == master.id:
                updated[txn.id] = None
        logger.info(f"transaction_delete: master={master.id} scope=all")
        return self._replace(updated)

    def set_planned(self, transaction_id: str, planned: bool) -> list[Transaction]:
        stored = self._find(transaction_id)
        if stored is not None:
            if stored.is_master:
                raise ValueError("Recurring transactions are marked per occurrence")
            return self._replace({stored.id: self._touch(stored, planned=planned)})

        _, master, day = self._series(transaction_id)
        now = utcnow()
        detached = materialize(
            master, day, posting=self.store.posting_calculator(), today=self.today
        ).model_copy(update={"planned": planned, "created_at": now, "modified_at": now})
        logger.info(f"transaction_detach: master={master.id} day={day} planned={planned}")
        return self._replace({master.id: self._touch(add_exception(master, day))}, detached)

    def occurrences_on(self, day: DayLike) -> list[Transaction]:
        target = parse_iso(day)
        return self.occurrences_between(target, target)

    def occurrences_between(self, start: DayLike, end: DayLike) -> list[Transaction]:
        """Everything that happens in ``[start, end]``, with masters expanded.

        Invoice adjustment records only feed invoice totals and are left out.
        """
        first, last = parse_iso(start), parse_iso(end)
        posting = self.store.posting_calculator()
        found: list[Transaction] = []
        for txn in self.store.transactions:
            if txn.invoice_adjust is not None:
                continue
            if txn.is_master:
                found.extend(expand(txn, first, last, posting=posting, today=self.today))
            elif first <= txn.operation_date <= last:
                found.append(txn)
        return sorted(found, key=Transaction.sort_key)

    def occurrences_in_month(self, year: int, month: int) -> list[Transaction]:
        return self.occurrences_between(month_start(year, month), month_end(year, month))

    def next_occurrences(self, transaction_id: str, count: int = 5) -> list[Transaction]:
        master = self.get(transaction_id)
        if not master.is_master:
            raise ValueError("Transaction is not recurring")
        return next_occurrences(
            master, count, posting=self.store.posting_calculator(), today=self.today
        )

    def recurrence_stats(self, transaction_id: str, days: int = 365) -> RecurrenceStats:
        return recurrence_stats(self.get(transaction_id), days, today=self.today)


class CardService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def list_all(self) -> list[Card]:
        return self.store.cards

    def methods(self) -> list[str]:
        return [CASH, *(card.name for card in self.store.cards)]

    def get(self, name: str) -> Card:
        for card in self.store.cards:
            if card.name == name:
                return card
        raise CardNotFound("Card not found")

    def _ensure_unique(self, name: str, ignore: Optional[str] = None) -> None:
        for card in self.store.cards:
            if card.name == ignore:
                continue
            if card.name.lower() == name.lower():
                raise DuplicateCardError("Card with this name already exists")

    def create(self, data: CardIn) -> list[Card]:
        self._ensure_unique(data.name)
        card = Card(name=data.name, closing_day=data.closing_day, due_day=data.due_day)
        logger.info(f"card_create: name={card.name}")
        return self.store.replace_cards([*self.store.cards, card])

    def update(self, name: str, data: CardIn) -> list[Card]:
        if name == CASH:
            raise ValueError("The cash method cannot be changed")
        current = self.get(name)
        self._ensure_unique(data.name, ignore=current.name)
        card = Card(name=data.name, closing_day=data.closing_day, due_day=data.due_day)
        cards = [card if c.name == current.name else c for c in self.store.cards]
        if card.name == current.name:
            return self.store.replace_cards(cards)

        renamed = []
        for txn in self.store.transactions:
            changes: dict[str, Any] = {}
            if txn.method == current.name:
                changes["method"] = card.name
            if txn.invoice_adjust is not None and txn.invoice_adjust.card == current.name:
                changes["invoice_adjust"] = txn.invoice_adjust.model_copy(
                    update={"card": card.name}
                )
            if changes:
                txn = txn.model_copy(update={**changes, "modified_at": utcnow()})
            renamed.append(txn)
        logger.info(f"card_rename: old={current.name} new={card.name}")
        return self.store.replace_cards(cards, transactions=renamed)

    def delete(self, name: str) -> list[Card]:
        if name == CASH:
            raise ValueError("The cash method cannot be removed")
        current = self.get(name)
        in_use = sum(1 for t in self.store.transactions if t.method == current.name)
        if in_use:
            logger.warning(
                f"card_delete: name={current.name} transactions={in_use} treated_as=cash"
            )
        return self.store.replace_cards(
            [c for c in self.store.cards if c.name != current.name]
        )


class LedgerService:
    """Read side of the ledger: balances, projections and invoices."""

    def __init__(
        self,
        store: LedgerStore,
        today: Optional[date] = None,
        lookback_days: Optional[int] = None,
    ) -> None:
        self.store = store
        self._today = today
        self.lookback_days = lookback_days or get_settings().card_lookback_days

    @property
    def today(self) -> date:
        return self._today or local_today()

    def builder(self) -> BalanceBuilder:
        return BalanceBuilder(
            posting=self.store.posting_calculator(),
            lookback_days=self.lookback_days,
            today=self.today,
        )

    def start_balance(self) -> StartBalance:
        return self.store.start_balance

    def set_start_balance(self, data: StartBalanceIn) -> StartBalance:
        logger.info(f"start_balance_set: amount={data.amount} anchor={data.anchor}")
        return self.store.set_start_balance(
            StartBalance(amount=data.amount, anchor=data.anchor)
        )

    def running_balance(
        self,
        *,
        available_only: bool = False,
        start: Optional[DayLike] = None,
        end: Optional[DayLike] = None,
    ) -> RunningBalanceMap:
        start_balance = self.store.start_balance
        return self.builder().build(
            self.store.transactions,
            start_balance.amount or Decimal("0"),
            start_balance.anchor,
            start=start,
            end=end,
            available_only=available_only,
        )

    def balance_on(self, day: DayLike, *, available_only: bool = False) -> Decimal:
        return self.running_balance(available_only=available_only).balance_on(day)

    def projection(self, days: int = 30) -> list[ProjectionPoint]:
        return self.running_balance().project(days, self.today)

    def negative_dates(self) -> list[tuple[date, Decimal]]:
        return self.running_balance().negative_dates()

    def stats(self) -> BalanceStats:
        return self.running_balance().stats(self.today)

    def _card(self, name: str) -> Card:
        card = self.store.posting_calculator().card_for(name)
        if card is None:
            raise CardNotFound("Card not found")
        return card

    def invoice(self, card: str, due_date: DayLike) -> Invoice:
        self._card(card)
        return build_invoice(
            card,
            due_date,
            self.store.transactions,
            self.store.posting_calculator(),
            lookback_days=self.lookback_days,
            today=self.today,
        )

    def invoices_for_month(self, year: int, month: int) -> list[Invoice]:
        return [
            self.invoice(card.name, clamped_date(year, month, card.due_day))
            for card in self.store.cards
        ]
