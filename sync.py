"""Offline-first sync between the local store and the remote store.

Local writes mark their collection kind dirty; a flush pushes the full value of
every dirty kind. Remote notifications are merged by last-writer-wins unless the
client is online with nothing pending, in which case the remote is authoritative.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from cache import LocalCache
from config import get_settings
from models import DIRTY_QUEUE_KEY, SyncKind
from remote import RemoteStore, Unsubscribe
from schemas import Transaction, utcnow
from store import LedgerStore, normalize_cards, normalize_transactions


logger = logging.getLogger(__name__)

_KIND_ORDER = [SyncKind.transactions, SyncKind.cards, SyncKind.start_balance]


class DirtyQueue:
    """Set of kinds with unconfirmed local writes, persisted in the local cache."""

    def __init__(self, cache: LocalCache) -> None:
        self.cache = cache
        self._pending: set[SyncKind] = set()
        for value in cache.get(DIRTY_QUEUE_KEY, None) or []:
            try:
                self._pending.add(SyncKind(value))
            except ValueError:
                logger.warning(f"dirty_queue_unknown_kind: kind={value!r}")

    def _persist(self) -> None:
        try:
            self.cache.set(DIRTY_QUEUE_KEY, self.cache_value())
        except Exception as exc:
            logger.warning(f"dirty_queue_persist_failed: pending={self.cache_value()} error={exc}")

    def cache_value(self) -> list[str]:
        return [k.value for k in _KIND_ORDER if k in self._pending]

    def pending(self) -> list[SyncKind]:
        return [k for k in _KIND_ORDER if k in self._pending]

    def is_dirty(self, kind: SyncKind) -> bool:
        return kind in self._pending

    def __bool__(self) -> bool:
        return bool(self._pending)

    def mark(self, *kinds: SyncKind) -> None:
        self._pending.update(kinds)
        self._persist()

    def take(self) -> list[SyncKind]:
        taken = self.pending()
        self._pending.clear()
        self._persist()
        return taken

    def restore(self, kinds: Iterable[SyncKind]) -> None:
        self._pending.update(kinds)
        self._persist()


def merge_transactions(
    local: Iterable[Transaction],
    remote: Iterable[Transaction],
    *,
    online_and_clean: bool,
) -> list[Transaction]:
    """Reconcile two views of the transaction collection.

    Online with nothing pending, the remote snapshot replaces the local one so
    deletions made elsewhere propagate. Otherwise records are merged by id,
    keeping the later ``modified_at``; ties keep the remote record.
    """
    if online_and_clean:
        return sorted(remote, key=Transaction.sort_key)

    merged: dict[str, Transaction] = {t.id: t for t in local}
    for record in remote:
        current = merged.get(record.id)
        if current is None or record.last_modified >= current.last_modified:
            merged[record.id] = record
    return sorted(merged.values(), key=Transaction.sort_key)


@dataclass(frozen=True)
class BackoffPolicy:
    base_secs: float = 5.0
    max_secs: float = 60.0

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        settings = get_settings()
        return cls(settings.retry_base_secs, settings.retry_max_secs)

    def delay(self, attempt: int) -> float:
        return min(self.base_secs * (2 ** attempt), self.max_secs)


@dataclass
class SyncStatus:
    online: bool
    pending: list[str] = field(default_factory=list)
    last_flush: Optional[datetime] = None
    last_error: Optional[str] = None
    attempt: int = 0
    retry_in: Optional[float] = None

    @property
    def is_synced(self) -> bool:
        return self.online and not self.pending

    def to_json(self) -> dict[str, Any]:
        return {
            "online": self.online,
            "pending": list(self.pending),
            "synced": self.is_synced,
            "lastFlush": self.last_flush.isoformat() if self.last_flush else None,
            "lastError": self.last_error,
            "attempt": self.attempt,
            "retryIn": self.retry_in,
        }


class RetryHook(Protocol):
    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None: ...

    def cancel(self) -> None: ...


class SyncManager:
    def __init__(
        self,
        store: LedgerStore,
        remote: RemoteStore,
        queue: Optional[DirtyQueue] = None,
        *,
        online: bool = True,
        backoff: Optional[BackoffPolicy] = None,
        retry: Optional[RetryHook] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.queue = queue if queue is not None else DirtyQueue(store.cache)
        self.online = online
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.retry = retry
        self.attempt = 0
        self.last_flush: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.retry_in: Optional[float] = None
        self._unsubscribers: list[Unsubscribe] = []
        # One flush at a time; a second caller waits and flushes what is left.
        self._flush_lock = asyncio.Lock()
        store.add_listener(self._on_local_write)

    def _on_local_write(self, kind: SyncKind) -> None:
        self.queue.mark(kind)

    def _online_and_clean(self, kind: SyncKind) -> bool:
        return self.online and not self.queue.is_dirty(kind)

    def start(self) -> None:
        handlers = {
            SyncKind.transactions: self.apply_remote_transactions,
            SyncKind.cards: self.apply_remote_cards,
            SyncKind.start_balance: self.apply_remote_start_balance,
        }
        for kind, handler in handlers.items():
            self._unsubscribers.append(self.remote.subscribe(kind.value, handler))
        logger.info(f"sync_start: online={self.online} pending={self._pending_names()}")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self.retry:
            self.retry.cancel()

    def _pending_names(self) -> list[str]:
        return [k.value for k in self.queue.pending()]

    def apply_remote_transactions(self, value: Any) -> list[Transaction]:
        remote = normalize_transactions(value, self.store.posting_calculator())
        local = self.store.transactions
        clean = self._online_and_clean(SyncKind.transactions)
        if clean and not remote and local:
            logger.warning(
                f"sync_ignore_empty_remote: kind=transactions local={len(local)}"
            )
            return local
        merged = merge_transactions(local, remote, online_and_clean=clean)
        logger.info(
            f"sync_merge: kind=transactions mode={'replace' if clean else 'lww'} "
            f"local={len(local)} remote={len(remote)} merged={len(merged)}"
        )
        return self.store.replace_transactions(merged, local=False)

    def apply_remote_cards(self, value: Any) -> None:
        if self.queue.is_dirty(SyncKind.cards):
            logger.info("sync_ignore_remote: kind=cards reason=pending_local")
            return
        cards = normalize_cards(value)
        if not cards and self.store.cards:
            logger.warning(f"sync_ignore_empty_remote: kind=cards local={len(self.store.cards)}")
            return
        self.store.replace_cards(cards, local=False)

    def apply_remote_start_balance(self, value: Any) -> None:
        if self.queue.is_dirty(SyncKind.start_balance):
            logger.info("sync_ignore_remote: kind=startingBalance reason=pending_local")
            return
        self.store.set_start_balance(value, local=False)

    async def flush(self) -> bool:
        kinds = self.queue.take()
        if not kinds:
            return True
        try:
            for kind in kinds:
                await self.remote.save(kind.value, self.store.export(kind))
        except Exception as exc:
            self.queue.restore(kinds)
            self.last_error = str(exc)
            logger.warning(
                f"sync_flush_failed: kinds={[k.value for k in kinds]} error={exc}"
            )
            return False
        self.last_flush = utcnow()
        self.last_error = None
        logger.info(f"sync_flush: kinds={[k.value for k in kinds]}")
        return True

    async def flush_with_backoff(self) -> bool:
        async with self._flush_lock:
            return await self._flush_with_backoff()

    async def _flush_with_backoff(self) -> bool:
        if not self.online:
            return False
        if await self.flush():
            self.attempt = 0
            self.retry_in = None
            if self.retry:
                self.retry.cancel()
            return True
        self.retry_in = self.backoff.delay(self.attempt)
        self.attempt += 1
        logger.info(f"sync_retry_scheduled: attempt={self.attempt} delay={self.retry_in}")
        if self.retry:
            self.retry.schedule(self.retry_in, self.flush_with_backoff)
        return False

    async def set_online(self, online: bool) -> bool:
        was_online = self.online
        self.online = online
        logger.info(f"sync_connectivity: online={online}")
        if online and not was_online:
            self.attempt = 0
            return await self.flush_with_backoff()
        return not self.queue

    async def on_foreground(self) -> bool:
        if not self.queue:
            return True
        return await self.flush_with_backoff()

    def status(self) -> SyncStatus:
        return SyncStatus(
            online=self.online,
            pending=self._pending_names(),
            last_flush=self.last_flush,
            last_error=self.last_error,
            attempt=self.attempt,
            retry_in=self.retry_in,
        )
