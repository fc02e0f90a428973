from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import CASH, CASH_ALIASES, MonthDayPolicy, RecurrenceRule, utcnow


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Single-letter tags written by older clients.
LEGACY_RULE_CODES = {
    "D": RecurrenceRule.daily.value,
    "W": RecurrenceRule.weekly.value,
    "BW": RecurrenceRule.biweekly.value,
    "M": RecurrenceRule.monthly.value,
    "Q": RecurrenceRule.quarterly.value,
    "S": RecurrenceRule.semiannual.value,
    "Y": RecurrenceRule.yearly.value,
}

_LEGACY_TRANSACTION_KEYS = {
    "desc": "description",
    "val": "amount",
    "opDate": "operationDate",
    "postDate": "postingDate",
    "recurrence": "recurrenceRule",
    "ts": "createdAt",
}

_LEGACY_CARD_KEYS = {"close": "closingDay", "due": "dueDay"}


def normalize_method(value: Optional[str]) -> str:
    if value is None:
        return CASH
    clean = str(value).strip()
    if not clean or clean.lower() in CASH_ALIASES:
        return CASH
    return clean


def _rename_legacy_keys(data: Any, mapping: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    renamed = dict(data)
    for old, new in mapping.items():
        if old in renamed and new not in renamed:
            renamed[new] = renamed.pop(old)
    return renamed


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InvoiceAdjustment(Record):
    card: str
    due_date: date
    amount: Decimal

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(data, {"dueISO": "dueDate"})


class Transaction(Record):
    id: str
    description: str = ""
    amount: Decimal = Decimal("0")
    method: str = CASH
    operation_date: date
    posting_date: Optional[date] = None
    recurrence_rule: Optional[str] = None
    recurrence_end: Optional[date] = None
    exceptions: list[date] = Field(default_factory=list)
    parent_id: Optional[str] = None
    planned: bool = False
    month_day_policy: MonthDayPolicy = MonthDayPolicy.skip
    invoice_adjust: Optional[InvoiceAdjustment] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(data, _LEGACY_TRANSACTION_KEYS)

    @field_validator("id", "parent_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("description", mode="before")
    @classmethod
    def _clean_description(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> str:
        return normalize_method(value)

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def _normalize_rule(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, RecurrenceRule):
            return value.value
        clean = str(value).strip()
        if not clean:
            return None
        return LEGACY_RULE_CODES.get(clean, clean)

    @field_validator("exceptions", mode="after")
    @classmethod
    def _sorted_exceptions(cls, value: list[date]) -> list[date]:
        return sorted(set(value))

    @field_validator("created_at", "modified_at", mode="after")
    @classmethod
    def _utc_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def is_master(self) -> bool:
        return self.recurrence_rule is not None

    @property
    def is_detached(self) -> bool:
        return self.parent_id is not None and not self.is_master

    @property
    def last_modified(self) -> datetime:
        return self.modified_at or self.created_at or EPOCH

    def sort_key(self) -> tuple[date, datetime, str]:
        return (self.operation_date, self.created_at or EPOCH, self.id)


class Card(Record):
    name: str = Field(..., min_length=1, max_length=60)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(data, _LEGACY_CARD_KEYS)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class StartBalance(Record):
    amount: Optional[Decimal] = None
    anchor: Optional[date] = None


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    method: str = CASH
    operation_date: date
    recurrence_rule: Optional[RecurrenceRule] = None
    recurrence_end: Optional[date] = None
    month_day_policy: MonthDayPolicy = MonthDayPolicy.skip
    planned: Optional[bool] = None

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("amount")
    @classmethod
    def _non_zero_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("Amount must be a finite number")
        if value == 0:
            raise ValueError("Amount must be non-zero")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> str:
        return normalize_method(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> "TransactionIn":
        if self.recurrence_end and self.recurrence_end <= self.operation_date:
            raise ValueError("Recurrence end must be after the operation date")
        return self


class CardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("name")
    @classmethod
    def _not_cash(cls, value: str) -> str:
        if value.lower() in CASH_ALIASES:
            raise ValueError("The cash method is reserved")
        return value

    @model_validator(mode="after")
    def _closing_before_due(self) -> "CardIn":
        if self.closing_day >= self.due_day:
            raise ValueError("Closing day must be before the due day")
        return self


class StartBalanceIn(BaseModel):
    amount: Decimal
    anchor: Optional[date] = None


class PlannedIn(BaseModel):
    planned: bool
