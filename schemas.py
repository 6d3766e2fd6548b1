from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import TransactionType

# Legacy blobs store dates as seconds since 2001-01-01 UTC.
APPLE_REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

LEGACY_DEFAULT_CURRENCY = "USD"


def _normalize_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {value!r}")
    return code


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class CategoryDeleteIn(BaseModel):
    indices: list[int] = Field(..., min_length=1)


class CategoryMoveIn(BaseModel):
    from_indices: list[int] = Field(..., min_length=1)
    to_index: int = Field(..., ge=0)


class CurrencyIn(BaseModel):
    currency: str

    @field_validator("currency")
    @classmethod
    def _code(cls, value: str) -> str:
        return _normalize_currency(value)


class TransactionIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    original_amount: float = Field(..., ge=0)
    date: datetime
    category: str = Field(..., max_length=100)
    type: TransactionType = TransactionType.expense
    currency: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _code(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_currency(value) if value is not None else None

    @field_validator("date")
    @classmethod
    def _naive(cls, value: datetime) -> datetime:
        return _naive_utc(value)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    amount: float
    original_amount: float
    date: datetime
    category: str
    type: str
    currency: str


class LegacyTransactionRecord(BaseModel):
    """One transaction as written by the key-value era of the app.

    Schema v1 records carry no ``originalAmount`` or ``currency``; they are
    filled from ``amount`` and ``USD``. Every other field is required, a
    record without one fails the blob it came from.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = 2
    id: str
    title: str
    amount: float
    original_amount: float = Field(alias="originalAmount")
    date: datetime
    category: str
    type: TransactionType
    currency: str

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        missing_v2 = "originalAmount" not in data or "currency" not in data
        data["schema_version"] = 1 if missing_v2 else 2
        if data.get("originalAmount") is None:
            data["originalAmount"] = data.get("amount")
        if not data.get("currency"):
            data["currency"] = LEGACY_DEFAULT_CURRENCY
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (str, int)) else value

    @field_validator("date", mode="before")
    @classmethod
    def _reference_seconds(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return APPLE_REFERENCE_DATE + timedelta(seconds=value)
        if isinstance(value, str) and len(value.strip()) == 10:
            return datetime.combine(date.fromisoformat(value.strip()), time.min)
        return value

    @field_validator("date")
    @classmethod
    def _naive(cls, value: datetime) -> datetime:
        return _naive_utc(value)

    @field_validator("currency")
    @classmethod
    def _code(cls, value: str) -> str:
        return value.strip().upper()
