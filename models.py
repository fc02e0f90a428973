from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


CASH = "Cash"
# Spellings written by older clients for the cash sentinel.
CASH_ALIASES = frozenset({"cash", "dinheiro"})


class RecurrenceRule(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    semiannual = "semiannual"
    yearly = "yearly"


# Month interval for the rules compared by day-of-month.
MONTH_INTERVALS = {
    RecurrenceRule.monthly: 1,
    RecurrenceRule.quarterly: 3,
    RecurrenceRule.semiannual: 6,
}

OCCURRENCES_PER_YEAR = {
    RecurrenceRule.daily: 365,
    RecurrenceRule.weekly: 52,
    RecurrenceRule.biweekly: 26,
    RecurrenceRule.monthly: 12,
    RecurrenceRule.quarterly: 4,
    RecurrenceRule.semiannual: 2,
    RecurrenceRule.yearly: 1,
}


class MonthDayPolicy(str, Enum):
    skip = "skip"
    snap_to_end = "snap_to_end"


class EditScope(str, Enum):
    single = "single"
    future = "future"
    all = "all"


class SyncKind(str, Enum):
    transactions = "transactions"
    cards = "cards"
    start_balance = "startingBalance"


DIRTY_QUEUE_KEY = "dirtyQueue"


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
