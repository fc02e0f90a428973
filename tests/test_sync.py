import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

from cache import MemoryCache
from models import SyncKind
from remote import InMemoryRemoteStore
from schemas import Transaction
from store import LedgerStore
from sync import BackoffPolicy, DirtyQueue, SyncManager, merge_transactions


def _txn(id: str, amount: str, modified: int, day: str = "2025-01-01") -> Transaction:
    return Transaction(
        id=id,
        description=id,
        amount=Decimal(amount),
        operation_date=day,
        modified_at=datetime(2025, 1, modified, tzinfo=timezone.utc),
    )


class RecordingRetry:
    def __init__(self) -> None:
        self.delays = []
        self.cancelled = 0

    def schedule(self, delay, callback) -> None:
        self.delays.append(delay)

    def cancel(self) -> None:
        self.cancelled += 1


def make_sync(remote=None, online=True, retry=None):
    cache = MemoryCache()
    store = LedgerStore(cache)
    remote = remote or InMemoryRemoteStore()
    sync = SyncManager(
        store,
        remote,
        online=online,
        backoff=BackoffPolicy(5, 60),
        retry=retry,
    )
    return store, remote, sync


def test_last_writer_wins():
    local = [_txn("a", "-1", 1)]

    newer_remote = merge_transactions(local, [_txn("a", "-2", 2)], online_and_clean=False)
    older_remote = merge_transactions(local, [_txn("a", "-3", 1)], online_and_clean=False)
    stale_remote = merge_transactions(
        [_txn("a", "-1", 3)], [_txn("a", "-4", 2)], online_and_clean=False
    )

    assert newer_remote[0].amount == Decimal("-2")
    # Equal timestamps keep the remote copy.
    assert older_remote[0].amount == Decimal("-3")
    assert stale_remote[0].amount == Decimal("-1")


def test_merge_adopts_new_records_and_keeps_local_ones():
    merged = merge_transactions(
        [_txn("a", "-1", 1, "2025-01-03")],
        [_txn("b", "-2", 1, "2025-01-02")],
        online_and_clean=False,
    )
    assert [t.id for t in merged] == ["b", "a"]


def test_merge_is_idempotent():
    local = [_txn("a", "-1", 3), _txn("c", "-9", 1)]
    remote = [_txn("a", "-2", 2), _txn("b", "-5", 4)]

    once = merge_transactions(local, remote, online_and_clean=False)
    twice = merge_transactions(once, remote, online_and_clean=False)

    assert once == twice


def test_online_and_clean_replaces_local():
    merged = merge_transactions(
        [_txn("a", "-1", 5), _txn("gone", "-1", 5)],
        [_txn("a", "-2", 1)],
        online_and_clean=True,
    )
    assert [(t.id, t.amount) for t in merged] == [("a", Decimal("-2"))]


def test_dirty_queue_persists_across_instances():
    cache = MemoryCache()
    queue = DirtyQueue(cache)
    queue.mark(SyncKind.cards, SyncKind.transactions)

    reloaded = DirtyQueue(cache)

    assert reloaded.pending() == [SyncKind.transactions, SyncKind.cards]
    assert reloaded.take() == [SyncKind.transactions, SyncKind.cards]
    assert DirtyQueue(cache).pending() == []


def test_backoff_is_bounded():
    policy = BackoffPolicy(5, 60)
    assert [policy.delay(n) for n in range(6)] == [5, 10, 20, 40, 60, 60]


def test_local_write_is_flushed_to_remote():
    store, remote, sync = make_sync()
    store.replace_transactions([_txn("a", "-1", 1)])
    assert sync.queue.pending() == [SyncKind.transactions]

    assert asyncio.run(sync.flush_with_backoff()) is True

    assert sync.queue.pending() == []
    saved = asyncio.run(remote.load("transactions"))
    assert [r["id"] for r in saved] == ["a"]
    assert sync.status().is_synced


def test_failed_flush_restores_queue_and_schedules_retry():
    retry = RecordingRetry()
    store, remote, sync = make_sync(retry=retry)
    remote.available = False

    store.replace_transactions([_txn("a", "-1", 1)])
    assert asyncio.run(sync.flush_with_backoff()) is False
    store.replace_cards([{"name": "Visa", "closingDay": 10, "dueDay": 20}])
    assert asyncio.run(sync.flush_with_backoff()) is False

    assert sync.queue.pending() == [SyncKind.transactions, SyncKind.cards]
    assert retry.delays == [5, 10]
    assert sync.status().last_error

    remote.available = True
    assert asyncio.run(sync.on_foreground()) is True
    assert sync.queue.pending() == []
    assert sync.attempt == 0
    assert asyncio.run(remote.load("cards"))[0]["name"] == "Visa"


def test_offline_writes_wait_for_connectivity():
    store, remote, sync = make_sync(online=False)
    store.set_start_balance({"amount": "250"})

    assert asyncio.run(sync.flush_with_backoff()) is False
    assert asyncio.run(remote.load("startingBalance")) is None

    asyncio.run(sync.set_online(True))

    assert asyncio.run(remote.load("startingBalance"))["amount"] == "250"


def test_remote_snapshot_replaces_local_when_clean():
    store, remote, sync = make_sync()
    remote.put("transactions", [_txn("a", "-1", 1).to_json(), _txn("b", "-2", 1).to_json()])
    sync.start()
    assert [t.id for t in store.transactions] == ["a", "b"]

    # Deleted elsewhere.
    remote.put("transactions", [_txn("a", "-1", 1).to_json()])

    assert [t.id for t in store.transactions] == ["a"]
    assert sync.queue.pending() == []


def test_empty_remote_does_not_wipe_local():
    store, remote, sync = make_sync()
    store.replace_transactions([_txn("a", "-1", 1)], local=False)
    sync.start()

    remote.put("transactions", [])

    assert [t.id for t in store.transactions] == ["a"]


def test_remote_update_merges_while_dirty():
    store, remote, sync = make_sync(online=False)
    sync.start()
    store.replace_transactions([_txn("a", "-1", 3), _txn("local", "-7", 1)])

    remote.put("transactions", [_txn("a", "-2", 2).to_json(), _txn("b", "-5", 4).to_json()])

    by_id = {t.id: t.amount for t in store.transactions}
    assert by_id == {"a": Decimal("-1"), "b": Decimal("-5"), "local": Decimal("-7")}
    assert sync.queue.is_dirty(SyncKind.transactions)


def test_remote_cards_ignored_while_dirty():
    store, remote, sync = make_sync(online=False)
    sync.start()
    store.replace_cards([{"name": "Visa", "closingDay": 10, "dueDay": 20}])

    remote.put("cards", [{"name": "Master", "closingDay": 5, "dueDay": 15}])
    assert [c.name for c in store.cards] == ["Visa"]

    asyncio.run(sync.set_online(True))
    assert [c["name"] for c in asyncio.run(remote.load("cards"))] == ["Visa"]


def test_remote_start_balance_applies_when_clean():
    store, remote, sync = make_sync()
    sync.start()
    remote.put("startingBalance", {"amount": "42", "anchor": "2025-02-01"})
    assert store.start_balance.amount == Decimal("42")
    assert store.start_balance.anchor == date(2025, 2, 1)


def test_stop_unsubscribes():
    store, remote, sync = make_sync()
    sync.start()
    sync.stop()
    remote.put("startingBalance", 99)
    assert store.start_balance.amount is None


class ServerErrorRemote(InMemoryRemoteStore):
    """Remote whose writes fail with a non-network error after yielding."""

    async def save(self, key, value):
        await asyncio.sleep(0)
        raise RuntimeError("HTTP 503")


def test_server_error_keeps_pending_kinds():
    retry = RecordingRetry()
    store, remote, sync = make_sync(remote=ServerErrorRemote(), retry=retry)
    store.replace_transactions([_txn("a", "-1", 1)])

    assert asyncio.run(sync.flush_with_backoff()) is False

    assert sync.queue.pending() == [SyncKind.transactions]
    assert store.cache.get("dirtyQueue") == ["transactions"]
    assert sync.status().last_error == "HTTP 503"
    assert retry.delays == [5]


def test_overlapping_flushes_do_not_clear_retry_state():
    retry = RecordingRetry()
    store, remote, sync = make_sync(remote=ServerErrorRemote(), retry=retry)
    store.replace_transactions([_txn("a", "-1", 1)])

    async def flush_twice():
        return await asyncio.gather(sync.flush_with_backoff(), sync.flush_with_backoff())

    assert asyncio.run(flush_twice()) == [False, False]

    assert sync.queue.pending() == [SyncKind.transactions]
    assert retry.cancelled == 0
    assert retry.delays == [5, 10]
    assert sync.attempt == 2
