"""Owned in-memory copy of the ledger, mirrored to the local cache.

Every write replaces a whole collection, bumps the version and persists the
collection before returning, so readers never observe a half-applied merge.
Local writes are handed to listeners before the cache write; a failed cache
write is logged and the new value stays live in memory.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from cache import LocalCache
from invoices import PostingCalculator
from models import CASH, CASH_ALIASES, SyncKind
from schemas import Card, StartBalance, Transaction


logger = logging.getLogger(__name__)

Listener = Callable[[SyncKind], None]


class CorruptedStateError(RuntimeError):
    pass


def _as_items(raw: Any, kind: SyncKind) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        # Realtime databases hand sparse arrays back as objects keyed by index.
        return list(raw.values())
    if isinstance(raw, (list, tuple)):
        return list(raw)
    raise CorruptedStateError(
        f"Cannot read {kind.value}: expected a list, got {type(raw).__name__}"
    )


def normalize_transactions(
    raw: Any, posting: Optional[PostingCalculator] = None
) -> list[Transaction]:
    posting = posting or PostingCalculator()
    records: list[Transaction] = []
    for item in _as_items(raw, SyncKind.transactions):
        if isinstance(item, Transaction):
            txn = item
        elif isinstance(item, dict):
            data = dict(item)
            if data.get("id") in (None, ""):
                data["id"] = uuid.uuid4().hex
            try:
                txn = Transaction.model_validate(data)
            except ValidationError as exc:
                logger.warning(f"store_skip_transaction: id={data['id']} error={exc}")
                continue
        else:
            logger.warning(f"store_skip_transaction: type={type(item).__name__}")
            continue
        due = posting.posting_date(txn.operation_date, txn.method)
        if txn.posting_date != due:
            txn = txn.model_copy(update={"posting_date": due})
        records.append(txn)
    records.sort(key=Transaction.sort_key)
    return records


def normalize_cards(raw: Any) -> list[Card]:
    cards: list[Card] = []
    seen: set[str] = set()
    for item in _as_items(raw, SyncKind.cards):
        try:
            card = item if isinstance(item, Card) else Card.model_validate(item)
        except ValidationError as exc:
            logger.warning(f"store_skip_card: error={exc}")
            continue
        # The cash method is implicit and never stored as a card.
        if card.name == CASH or card.name.lower() in CASH_ALIASES:
            continue
        if card.name in seen:
            logger.warning(f"store_duplicate_card: name={card.name!r}")
            continue
        seen.add(card.name)
        cards.append(card)
    return cards


def normalize_start_balance(raw: Any) -> StartBalance:
    if raw is None:
        return StartBalance()
    if isinstance(raw, StartBalance):
        return raw
    if isinstance(raw, bool):
        raise CorruptedStateError("Cannot read startingBalance: got a boolean")
    if isinstance(raw, (int, float, str, Decimal)):
        try:
            return StartBalance(amount=Decimal(str(raw)))
        except InvalidOperation as exc:
            raise CorruptedStateError(f"Cannot read startingBalance: {raw!r}") from exc
    if isinstance(raw, dict):
        try:
            return StartBalance.model_validate(raw)
        except ValidationError as exc:
            raise CorruptedStateError(f"Cannot read startingBalance: {exc}") from exc
    raise CorruptedStateError(
        f"Cannot read startingBalance: got {type(raw).__name__}"
    )


@dataclass(frozen=True)
class LedgerSnapshot:
    version: int
    transactions: tuple[Transaction, ...]
    cards: tuple[Card, ...]
    start_balance: StartBalance


class LedgerStore:
    def __init__(self, cache: LocalCache) -> None:
        self.cache = cache
        self._transactions: list[Transaction] = []
        self._cards: list[Card] = []
        self._start_balance = StartBalance()
        self._posting = PostingCalculator()
        self._version = 0
        self._listeners: list[Listener] = []

    def load(self) -> "LedgerStore":
        self._cards = normalize_cards(self.cache.get(SyncKind.cards.value))
        self._posting = PostingCalculator(self._cards)
        self._transactions = normalize_transactions(
            self.cache.get(SyncKind.transactions.value), self._posting
        )
        self._start_balance = normalize_start_balance(
            self.cache.get(SyncKind.start_balance.value)
        )
        self._version += 1
        logger.info(
            f"store_load: transactions={len(self._transactions)} cards={len(self._cards)}"
        )
        return self

    @property
    def version(self) -> int:
        return self._version

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            version=self._version,
            transactions=tuple(self._transactions),
            cards=tuple(self._cards),
            start_balance=self._start_balance,
        )

    @property
    def transactions(self) -> list[Transaction]:
        return list(self._transactions)

    @property
    def cards(self) -> list[Card]:
        return list(self._cards)

    @property
    def start_balance(self) -> StartBalance:
        return self._start_balance

    def posting_calculator(self) -> PostingCalculator:
        return self._posting

    def export(self, kind: SyncKind) -> Any:
        if kind == SyncKind.transactions:
            return [t.to_json() for t in self._transactions]
        if kind == SyncKind.cards:
            return [c.to_json() for c in self._cards]
        return self._start_balance.to_json()

    def _persist(self, kind: SyncKind) -> None:
        try:
            self.cache.set(kind.value, self.export(kind))
        except Exception as exc:
            # The in-memory write stands and stays queued for the remote.
            logger.warning(f"store_persist_failed: kind={kind.value} error={exc}")

    def _commit(self, kinds: Iterable[SyncKind], local: bool) -> None:
        self._version += 1
        kinds = list(kinds)
        if local:
            for kind in kinds:
                for listener in self._listeners:
                    listener(kind)
        for kind in kinds:
            self._persist(kind)

    def replace_transactions(
        self, records: Iterable[Any], *, local: bool = True
    ) -> list[Transaction]:
        self._transactions = normalize_transactions(list(records), self._posting)
        self._commit([SyncKind.transactions], local)
        return self.transactions

    def replace_cards(
        self,
        records: Iterable[Any],
        *,
        transactions: Optional[Iterable[Any]] = None,
        local: bool = True,
    ) -> list[Card]:
        """Replace the card list, optionally with the transactions that change
        alongside it (a rename). Posting dates are recomputed either way."""
        self._cards = normalize_cards(list(records))
        self._posting = PostingCalculator(self._cards)
        kinds = [SyncKind.cards]
        if transactions is None:
            self._transactions = normalize_transactions(self._transactions, self._posting)
            self._persist(SyncKind.transactions)
        else:
            self._transactions = normalize_transactions(list(transactions), self._posting)
            kinds.append(SyncKind.transactions)
        self._commit(kinds, local)
        return self.cards

    def set_start_balance(self, value: Any, *, local: bool = True) -> StartBalance:
        self._start_balance = normalize_start_balance(value)
        self._commit([SyncKind.start_balance], local)
        return self._start_balance

    def apply_remote(self, kind: SyncKind, value: Any) -> None:
        if kind == SyncKind.transactions:
            self.replace_transactions(_as_items(value, kind), local=False)
        elif kind == SyncKind.cards:
            self.replace_cards(_as_items(value, kind), local=False)
        else:
            self.set_start_balance(value, local=False)
