from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Category, Transaction, TransactionType
from schemas import TransactionIn

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.expense: ("Transportation", "Grocery", "Entertainment", "Other"),
    TransactionType.income: ("Salary", "Investments", "Gifts", "Other"),
}


@dataclass
class StorageStatus:
    """What the sync-status screen reports about local storage."""

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_saved_at: Optional[datetime] = None

    def record_save(self) -> None:
        self.last_saved_at = datetime.utcnow()

    def record_error(self, action: str, exc: Exception) -> None:
        self.last_error = f"{action} failed: {exc}"
        self.last_error_at = datetime.utcnow()

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_at = None


def local_data_counts(session: Session) -> tuple[int, int]:
    transactions = session.execute(select(func.count(Transaction.id))).scalar_one()
    categories = session.execute(select(func.count(Category.id))).scalar_one()
    return int(transactions or 0), int(categories or 0)


def _commit(session: Session, action: str, status: StorageStatus) -> bool:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"storage_write_failed: action={action}")
        status.record_error(action, exc)
        return False
    status.record_save()
    return True


def build_transaction(
    data: TransactionIn, amount: float, *, display_currency: str
) -> Transaction:
    return Transaction(
        id=str(uuid4()),
        title=data.title.strip(),
        amount=amount,
        original_amount=data.original_amount,
        date=data.date,
        category=data.category,
        type=data.type.value,
        currency=data.currency or display_currency,
    )


def apply_transaction_edit(
    txn: Transaction, data: TransactionIn, amount: float, *, display_currency: str
) -> Transaction:
    txn.title = data.title.strip()
    txn.amount = amount
    txn.original_amount = data.original_amount
    txn.date = data.date
    txn.category = data.category
    txn.type = data.type.value
    txn.currency = data.currency or display_currency
    return txn


class TransactionStore:
    """In-memory snapshot of all transactions, newest first.

    Every mutation is written through to the session and followed by a full
    reload, so after a call returns ``transactions`` matches storage. Storage
    failures are logged and recorded on ``status``, never raised.
    """

    def __init__(
        self, session: Optional[Session] = None, status: Optional[StorageStatus] = None
    ) -> None:
        self.session = session
        self.status = status or StorageStatus()
        self.transactions: list[Transaction] = []

    def attach(self, session: Session) -> None:
        self.session = session
        self.load()

    def load(self) -> list[Transaction]:
        if self.session is None:
            logger.warning("transactions_load_skipped: reason=no_session")
            return self.transactions
        stmt = select(Transaction).order_by(Transaction.date.desc(), Transaction.id)
        try:
            self.transactions = list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            logger.exception("transactions_load_failed")
            self.status.record_error("load", exc)
            return self.transactions
        logger.info(f"transactions_loaded: count={len(self.transactions)}")
        return self.transactions

    def refresh(self) -> list[Transaction]:
        return self.load()

    def get(self, transaction_id: str) -> Optional[Transaction]:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        return None

    def add(self, transaction: Transaction) -> bool:
        if self.session is None:
            logger.warning("transaction_add_skipped: reason=no_session")
            return False
        logger.info(
            f"transaction_add: title={transaction.title!r} amount={transaction.amount}"
        )
        self.session.add(transaction)
        saved = _commit(self.session, "add transaction", self.status)
        self.load()
        return saved

    def delete(self, transaction: Transaction) -> bool:
        if self.session is None:
            logger.warning("transaction_delete_skipped: reason=no_session")
            return False
        logger.info(
            f"transaction_delete: title={transaction.title!r} amount={transaction.amount}"
        )
        try:
            self.session.delete(transaction)
        except SQLAlchemyError as exc:
            logger.exception("transaction_delete_failed")
            self.status.record_error("delete transaction", exc)
            self.load()
            return False
        saved = _commit(self.session, "delete transaction", self.status)
        self.load()
        return saved

    def update(self, transaction: Transaction) -> bool:
        if self.session is None:
            logger.warning("transaction_update_skipped: reason=no_session")
            return False
        saved = _commit(self.session, "update transaction", self.status)
        self.load()
        return saved


def move_offsets(items: list, source: Iterable[int], destination: int) -> list:
    """Move the items at ``source`` so they sit before the item that was at ``destination``."""
    picked = sorted({i for i in source if 0 <= i < len(items)})
    picked_set = set(picked)
    moving = [items[i] for i in picked]
    remaining = [item for i, item in enumerate(items) if i not in picked_set]
    insert_at = destination - sum(1 for i in picked if i < destination)
    insert_at = max(0, min(insert_at, len(remaining)))
    return remaining[:insert_at] + moving + remaining[insert_at:]


class CategoryRegistry:
    def __init__(
        self, session: Optional[Session] = None, status: Optional[StorageStatus] = None
    ) -> None:
        self.session = session
        self.status = status or StorageStatus()
        self.expense_categories: list[str] = []
        self.income_categories: list[str] = []

    def attach(self, session: Session) -> None:
        self.session = session
        self.seed_defaults_if_empty()
        self.cleanup_duplicates()
        self.load()

    def names(self, txn_type: TransactionType) -> list[str]:
        if txn_type == TransactionType.income:
            return self.income_categories
        return self.expense_categories

    def _fetch(self, txn_type: TransactionType) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.type == txn_type)
            .order_by(Category.order, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _renumber(categories: list[Category]) -> None:
        for index, category in enumerate(categories):
            if category.order != index:
                category.order = index

    def load(self) -> None:
        if self.session is None:
            logger.warning("categories_load_skipped: reason=no_session")
            return
        for txn_type in TransactionType:
            seen: set[str] = set()
            names: list[str] = []
            for category in self._fetch(txn_type):
                if category.name in seen:
                    continue
                seen.add(category.name)
                names.append(category.name)
            if txn_type == TransactionType.income:
                self.income_categories = names
            else:
                self.expense_categories = names
        logger.info(
            f"categories_loaded: expense={len(self.expense_categories)} "
            f"income={len(self.income_categories)}"
        )

    def refresh(self) -> None:
        self.load()

    def seed_defaults_if_empty(self) -> int:
        if self.session is None:
            return 0
        seeded = 0
        for txn_type, defaults in DEFAULT_CATEGORIES.items():
            if self._fetch(txn_type):
                continue
            for index, name in enumerate(defaults):
                self.session.add(Category(name=name, type=txn_type, order=index))
                seeded += 1
            logger.info(f"categories_seeded: type={txn_type.value}")
        if seeded:
            _commit(self.session, "seed categories", self.status)
        return seeded

    def add(self, name: str, txn_type: TransactionType) -> bool:
        trimmed = name.strip()
        if not trimmed:
            return False
        if self.session is None:
            logger.warning("category_add_skipped: reason=no_session")
            return False
        # storage decides, the cached lists may not be loaded yet
        stored = self._fetch(txn_type)
        if any(category.name == trimmed for category in stored):
            logger.info(f"category_exists: type={txn_type.value} name={trimmed!r}")
            self.load()
            return False
        self._renumber(stored)
        self.session.add(Category(name=trimmed, type=txn_type, order=len(stored)))
        saved = _commit(self.session, "add category", self.status)
        self.load()
        return saved

    def delete(self, txn_type: TransactionType, indices: Union[int, Iterable[int]]) -> int:
        if self.session is None:
            logger.warning("category_delete_skipped: reason=no_session")
            return 0
        if isinstance(indices, int):
            indices = [indices]
        categories = self._fetch(txn_type)
        doomed = {i for i in indices if 0 <= i < len(categories)}
        for index in sorted(doomed):
            logger.info(
                f"category_delete: type={txn_type.value} name={categories[index].name!r}"
            )
            self.session.delete(categories[index])
        survivors = [c for i, c in enumerate(categories) if i not in doomed]
        self._renumber(survivors)
        _commit(self.session, "delete category", self.status)
        self.load()
        return len(doomed)

    def move(
        self, txn_type: TransactionType, from_indices: Iterable[int], to_index: int
    ) -> None:
        if self.session is None:
            logger.warning("category_move_skipped: reason=no_session")
            return
        categories = move_offsets(self._fetch(txn_type), from_indices, to_index)
        self._renumber(categories)
        _commit(self.session, "move category", self.status)
        self.load()

    def cleanup_duplicates(self) -> int:
        if self.session is None:
            return 0
        removed = 0
        for txn_type in TransactionType:
            seen: set[str] = set()
            survivors: list[Category] = []
            for category in self._fetch(txn_type):
                if category.name in seen:
                    logger.info(
                        f"category_duplicate_removed: type={txn_type.value} "
                        f"name={category.name!r}"
                    )
                    self.session.delete(category)
                    removed += 1
                    continue
                seen.add(category.name)
                survivors.append(category)
            self._renumber(survivors)
        if removed or self.session.dirty:
            _commit(self.session, "cleanup categories", self.status)
        self.load()
        return removed
