import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException

from cache import SQLCache
from dates import parse_iso
from models import EditScope
from remote import get_remote_store
from scheduler import RetryScheduler
from schemas import CardIn, PlannedIn, StartBalanceIn, TransactionIn
from services import (
    CardNotFound,
    CardService,
    LedgerService,
    TransactionNotFound,
    TransactionService,
)
from store import LedgerStore
from sync import SyncManager


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


class AppContext:
    def __init__(
        self,
        store: LedgerStore,
        sync: SyncManager,
        scheduler: Optional[RetryScheduler] = None,
        today: Optional[date] = None,
    ) -> None:
        self.store = store
        self.sync = sync
        self.scheduler = scheduler
        self.transactions = TransactionService(store, today)
        self.cards = CardService(store)
        self.ledger = LedgerService(store, today)

    @classmethod
    def create(cls) -> "AppContext":
        store = LedgerStore(SQLCache()).load()
        retry = RetryScheduler()
        sync = SyncManager(store, get_remote_store(), retry=retry)
        return cls(store, sync, retry)


_context: Optional[AppContext] = None


def get_context() -> AppContext:
    global _context
    if _context is None:
        _context = AppContext.create()
    return _context


@app.on_event("startup")
async def startup_event():
    ctx = get_context()
    ctx.sync.start()
    if ctx.scheduler:
        ctx.scheduler.start(ctx.sync)
    await ctx.sync.flush_with_backoff()


@app.on_event("shutdown")
def shutdown_event():
    if _context is None:
        return
    _context.sync.stop()
    if _context.scheduler:
        _context.scheduler.stop()


def _http_error(exc: ValueError) -> HTTPException:
    status = 404 if isinstance(exc, (TransactionNotFound, CardNotFound)) else 400
    return HTTPException(status_code=status, detail=str(exc))


def _day(value: str) -> date:
    try:
        return parse_iso(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/transactions")
def list_transactions(ctx: AppContext = Depends(get_context)):
    return [t.to_json() for t in ctx.transactions.list_all()]


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str, ctx: AppContext = Depends(get_context)):
    try:
        return ctx.transactions.resolve(transaction_id).to_json()
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/transactions", status_code=201)
async def create_transaction(data: TransactionIn, ctx: AppContext = Depends(get_context)):
    try:
        records = ctx.transactions.create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [t.to_json() for t in records]


@app.put("/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    data: TransactionIn,
    scope: EditScope = EditScope.single,
    ctx: AppContext = Depends(get_context),
):
    try:
        records = ctx.transactions.update(transaction_id, data, scope)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [t.to_json() for t in records]


@app.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    scope: EditScope = EditScope.single,
    ctx: AppContext = Depends(get_context),
):
    try:
        records = ctx.transactions.delete(transaction_id, scope)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [t.to_json() for t in records]


@app.post("/transactions/{transaction_id}/planned")
async def set_planned(
    transaction_id: str, data: PlannedIn, ctx: AppContext = Depends(get_context)
):
    try:
        records = ctx.transactions.set_planned(transaction_id, data.planned)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [t.to_json() for t in records]


@app.get("/transactions/{transaction_id}/next")
def next_occurrences(
    transaction_id: str, count: int = 5, ctx: AppContext = Depends(get_context)
):
    try:
        return [t.to_json() for t in ctx.transactions.next_occurrences(transaction_id, count)]
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/transactions/{transaction_id}/stats")
def recurrence_stats(
    transaction_id: str, days: int = 365, ctx: AppContext = Depends(get_context)
):
    try:
        stats = ctx.transactions.recurrence_stats(transaction_id, days)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "rule": stats.rule,
        "occurrences": stats.occurrences,
        "nextOccurrence": stats.next_occurrence.isoformat() if stats.next_occurrence else None,
        "total": str(stats.total),
        "averageMonthly": str(stats.average_monthly),
        "periodDays": stats.period_days,
    }


@app.get("/days/{day}")
def day_transactions(day: str, ctx: AppContext = Depends(get_context)):
    return [t.to_json() for t in ctx.transactions.occurrences_on(_day(day))]


@app.get("/months/{year}/{month}")
def month_transactions(year: int, month: int, ctx: AppContext = Depends(get_context)):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return [t.to_json() for t in ctx.transactions.occurrences_in_month(year, month)]


@app.get("/cards")
def list_cards(ctx: AppContext = Depends(get_context)):
    return [c.to_json() for c in ctx.cards.list_all()]


@app.get("/methods")
def list_methods(ctx: AppContext = Depends(get_context)):
    return ctx.cards.methods()


@app.post("/cards", status_code=201)
async def create_card(data: CardIn, ctx: AppContext = Depends(get_context)):
    try:
        cards = ctx.cards.create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [c.to_json() for c in cards]


@app.put("/cards/{name}")
async def update_card(name: str, data: CardIn, ctx: AppContext = Depends(get_context)):
    try:
        cards = ctx.cards.update(name, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [c.to_json() for c in cards]


@app.delete("/cards/{name}")
async def delete_card(name: str, ctx: AppContext = Depends(get_context)):
    try:
        cards = ctx.cards.delete(name)
    except ValueError as exc:
        raise _http_error(exc) from exc
    await ctx.sync.flush_with_backoff()
    return [c.to_json() for c in cards]


@app.get("/start-balance")
def get_start_balance(ctx: AppContext = Depends(get_context)):
    return ctx.ledger.start_balance().to_json()


@app.put("/start-balance")
async def set_start_balance(data: StartBalanceIn, ctx: AppContext = Depends(get_context)):
    value = ctx.ledger.set_start_balance(data)
    await ctx.sync.flush_with_backoff()
    return value.to_json()


@app.get("/balances")
def running_balance(
    available_only: bool = False,
    start: Optional[str] = None,
    end: Optional[str] = None,
    ctx: AppContext = Depends(get_context),
):
    try:
        balances = ctx.ledger.running_balance(
            available_only=available_only, start=start, end=end
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return balances.to_json()


@app.get("/balances/{day}")
def balance_on(
    day: str, available_only: bool = False, ctx: AppContext = Depends(get_context)
):
    target = _day(day)
    value = ctx.ledger.balance_on(target, available_only=available_only)
    return {"day": target.isoformat(), "balance": str(value)}


@app.get("/projection")
def projection(days: int = 30, ctx: AppContext = Depends(get_context)):
    return [
        {
            "day": point.day.isoformat(),
            "balance": str(point.balance),
            "isPast": point.is_past,
            "isToday": point.is_today,
            "isFuture": point.is_future,
        }
        for point in ctx.ledger.projection(days)
    ]


@app.get("/negative-dates")
def negative_dates(ctx: AppContext = Depends(get_context)):
    return [
        {"day": day.isoformat(), "balance": str(value)}
        for day, value in ctx.ledger.negative_dates()
    ]


@app.get("/stats")
def balance_stats(ctx: AppContext = Depends(get_context)):
    stats = ctx.ledger.stats()
    return {
        "min": str(stats.minimum),
        "max": str(stats.maximum),
        "average": str(stats.average),
        "current": str(stats.current),
        "trend": stats.trend,
        "negativeDays": stats.negative_days,
    }


@app.get("/invoices")
def invoices_for_month(year: int, month: int, ctx: AppContext = Depends(get_context)):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return [invoice.to_json() for invoice in ctx.ledger.invoices_for_month(year, month)]


@app.get("/invoices/{card}/{due_date}")
def invoice(card: str, due_date: str, ctx: AppContext = Depends(get_context)):
    try:
        return ctx.ledger.invoice(card, _day(due_date)).to_json()
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/sync/status")
def sync_status(ctx: AppContext = Depends(get_context)):
    return ctx.sync.status().to_json()


@app.post("/sync/online")
async def set_online(online: bool, ctx: AppContext = Depends(get_context)):
    await ctx.sync.set_online(online)
    return ctx.sync.status().to_json()


@app.post("/sync/foreground")
async def foreground(ctx: AppContext = Depends(get_context)):
    await ctx.sync.on_foreground()
    return ctx.sync.status().to_json()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
