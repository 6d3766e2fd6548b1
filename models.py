from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, Enum as SAEnum, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"


def parse_transaction_type(value: object) -> Optional[TransactionType]:
    try:
        return TransactionType(str(value))
    except ValueError:
        return None


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # no unique (type, name): duplicates left by older builds are repaired at start
    __table_args__ = (Index("ix_categories_type_order", "type", "order"),)

    def __repr__(self) -> str:
        return f"Category(name={self.name!r}, type={self.type}, order={self.order})"


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    original_amount: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # matched by name against categories, no foreign key
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    # raw text so rows with an unknown type still load and can be repaired
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionType.expense.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category", "category"),
    )

    @property
    def transaction_type(self) -> Optional[TransactionType]:
        return parse_transaction_type(self.type)

    def __repr__(self) -> str:
        return (
            f"Transaction(title={self.title!r}, amount={self.amount}, "
            f"type={self.type}, date={self.date})"
        )
