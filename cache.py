import copy
import json
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, SessionLocal, session_scope
from models import CacheEntry


class LocalCache(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryCache:
    """Process-local cache; values are copied so callers never share state."""

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)


class SQLCache:
    """Key/value cache persisted as JSON text in the ``cache_entries`` table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory
        Base.metadata.create_all(session_factory.kw["bind"])

    def get(self, key: str, default: Any = None) -> Any:
        with session_scope(self.session_factory) as session:
            raw = session.scalar(select(CacheEntry.value).where(CacheEntry.key == key))
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, sort_keys=True)
        with session_scope(self.session_factory) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=payload))
            else:
                entry.value = payload
