import copy
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Protocol

from config import get_settings


logger = logging.getLogger(__name__)

ChangeHandler = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class RemoteUnavailable(ConnectionError):
    pass


class RemoteStore(Protocol):
    def load(self, key: str, default: Any = None) -> Awaitable[Any]: ...

    def save(self, key: str, value: Any) -> Awaitable[None]: ...

    def subscribe(self, key: str, on_change: ChangeHandler) -> Unsubscribe: ...


class InMemoryRemoteStore:
    """Authoritative copy kept in process, with the same push semantics as a
    realtime database: subscribers get the full value on every change and once
    on subscribe when the key exists."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._subscribers: dict[str, list[ChangeHandler]] = defaultdict(list)
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise RemoteUnavailable("Remote store is unreachable")

    async def load(self, key: str, default: Any = None) -> Any:
        self._check()
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def save(self, key: str, value: Any) -> None:
        self._check()
        self._data[key] = copy.deepcopy(value)
        self._notify(key)

    def put(self, key: str, value: Any) -> None:
        """Write as another client would, bypassing availability."""
        self._data[key] = copy.deepcopy(value)
        self._notify(key)

    def _notify(self, key: str) -> None:
        for handler in list(self._subscribers[key]):
            handler(copy.deepcopy(self._data[key]))

    def subscribe(self, key: str, on_change: ChangeHandler) -> Unsubscribe:
        self._subscribers[key].append(on_change)
        if key in self._data:
            on_change(copy.deepcopy(self._data[key]))

        def unsubscribe() -> None:
            if on_change in self._subscribers[key]:
                self._subscribers[key].remove(on_change)

        return unsubscribe


def get_remote_store() -> RemoteStore:
    provider = (get_settings().remote_provider or "memory").lower()
    if provider != "memory":
        raise ValueError(f"Unsupported remote provider: {provider}")
    logger.info(f"remote_store: provider={provider}")
    return InMemoryRemoteStore()
