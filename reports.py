"""Rollups behind the home screen, the charts and the category views.

Every function here is pure: it takes a snapshot of transactions (anything
with ``amount``, ``date``, ``type`` and ``category`` attributes) and never
touches storage. Sums are plain float additions; rounding for display is
left to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Protocol, Sequence, TypeVar

from models import TransactionType
from periods import DateLike, add_months, as_date, month_start, same_day, same_month


class TransactionLike(Protocol):
    amount: float
    date: DateLike
    type: str
    category: str


T = TypeVar("T", bound=TransactionLike)


@dataclass(frozen=True)
class MonthlyTotal:
    month: date
    income: float
    expense: float

    @property
    def net(self) -> float:
        return self.income - self.expense

    @property
    def label(self) -> str:
        return f"{self.month.year:04d}-{self.month.month:02d}"


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    expense: float
    income: float

    @property
    def saved(self) -> float:
        return self.income - self.expense


def _sum_type(transactions: Iterable[TransactionLike], txn_type: TransactionType) -> float:
    total = 0.0
    for txn in transactions:
        if txn.type == txn_type:
            total += txn.amount
    return total


def _reference(reference_date: Optional[DateLike]) -> date:
    return as_date(reference_date) if reference_date is not None else date.today()


def month_range(months_back: int, reference_date: Optional[DateLike] = None) -> list[date]:
    """First days of the ``months_back`` months ending at the reference month, oldest first."""
    if months_back < 0:
        raise ValueError("months_back must not be negative")
    end = month_start(_reference(reference_date))
    return [add_months(end, -offset) for offset in range(months_back - 1, -1, -1)]


def monthly_totals(
    transactions: Sequence[TransactionLike],
    months_back: int = 12,
    reference_date: Optional[DateLike] = None,
) -> list[MonthlyTotal]:
    months = month_range(months_back, reference_date)
    income: dict[tuple[int, int], float] = {}
    expense: dict[tuple[int, int], float] = {}
    for txn in transactions:
        d = as_date(txn.date)
        key = (d.year, d.month)
        if txn.type == TransactionType.income:
            income[key] = income.get(key, 0.0) + txn.amount
        elif txn.type == TransactionType.expense:
            expense[key] = expense.get(key, 0.0) + txn.amount

    return [
        MonthlyTotal(
            month=m,
            income=income.get((m.year, m.month), 0.0),
            expense=expense.get((m.year, m.month), 0.0),
        )
        for m in months
    ]


def category_totals(transactions: Sequence[TransactionLike]) -> dict[str, CategoryTotal]:
    expense: dict[str, float] = {}
    income: dict[str, float] = {}
    for txn in transactions:
        expense.setdefault(txn.category, 0.0)
        income.setdefault(txn.category, 0.0)
        if txn.type == TransactionType.expense:
            expense[txn.category] += txn.amount
        elif txn.type == TransactionType.income:
            income[txn.category] += txn.amount
    return {
        name: CategoryTotal(category=name, expense=expense[name], income=income[name])
        for name in expense
    }


def amount_saved_by_category(transactions: Sequence[TransactionLike]) -> dict[str, float]:
    return {name: total.saved for name, total in category_totals(transactions).items()}


def amount_saved_by_month(
    transactions: Sequence[TransactionLike],
    months_back: int = 12,
    reference_date: Optional[DateLike] = None,
) -> list[tuple[date, float]]:
    return [
        (total.month, total.net)
        for total in monthly_totals(transactions, months_back, reference_date)
    ]


def category_month_breakdown(
    transactions: Sequence[TransactionLike],
    months_back: int = 12,
    reference_date: Optional[DateLike] = None,
) -> dict[str, list[MonthlyTotal]]:
    by_category: dict[str, list[TransactionLike]] = {}
    for txn in transactions:
        by_category.setdefault(txn.category, []).append(txn)
    return {
        name: monthly_totals(rows, months_back, reference_date)
        for name, rows in by_category.items()
    }


def filter_by_day(transactions: Iterable[T], day: DateLike) -> list[T]:
    return [txn for txn in transactions if same_day(txn.date, day)]


def filter_by_month(transactions: Iterable[T], month: DateLike) -> list[T]:
    return [txn for txn in transactions if same_month(txn.date, month)]


def month_summary(transactions: Sequence[TransactionLike], month: DateLike) -> MonthlyTotal:
    in_month = filter_by_month(transactions, month)
    return MonthlyTotal(
        month=month_start(month),
        income=_sum_type(in_month, TransactionType.income),
        expense=_sum_type(in_month, TransactionType.expense),
    )


def recent_transactions(
    transactions: Iterable[T], reference_date: Optional[DateLike] = None
) -> list[T]:
    in_month = filter_by_month(transactions, _reference(reference_date))
    return sorted(in_month, key=lambda txn: txn.date, reverse=True)
