from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kvstore import JsonKeyValueStore
from models import Category, Transaction, TransactionType, parse_transaction_type
from schemas import LegacyTransactionRecord

logger = logging.getLogger(__name__)

LEGACY_TRANSACTIONS_KEY = "transactions"
LEGACY_EXPENSE_CATEGORIES_KEY = "expenseCategories"
LEGACY_INCOME_CATEGORIES_KEY = "incomeCategories"
LEGACY_MIGRATED_KEYS = (
    LEGACY_TRANSACTIONS_KEY,
    LEGACY_EXPENSE_CATEGORIES_KEY,
    LEGACY_INCOME_CATEGORIES_KEY,
)

_transactions_adapter = TypeAdapter(list[LegacyTransactionRecord])
_names_adapter = TypeAdapter(list[str])


class MigrationState(str, Enum):
    unchecked = "unchecked"
    skipped = "skipped"
    migrating = "migrating"
    done = "done"


@dataclass
class MigrationResult:
    state: MigrationState
    transactions: int = 0
    categories: int = 0
    write_errors: list[str] = field(default_factory=list)
    legacy_cleared: bool = False


class LegacyMigrationService:
    """Copies the key-value era records into the database, once.

    The database is only touched when it holds no transaction and no
    category. A blob that fails to decode counts as absent. Write failures
    are logged and counted but do not stop the run; with
    ``verify_before_clear`` off the legacy keys are removed regardless.
    """

    def __init__(
        self,
        session: Session,
        legacy_store: JsonKeyValueStore,
        *,
        verify_before_clear: bool = False,
    ) -> None:
        self.session = session
        self.legacy_store = legacy_store
        self.verify_before_clear = verify_before_clear
        self.state = MigrationState.unchecked
        self.result: Optional[MigrationResult] = None

    def has_existing_data(self) -> bool:
        try:
            txn_count = self.session.execute(select(func.count(Transaction.id))).scalar_one()
            cat_count = self.session.execute(select(func.count(Category.id))).scalar_one()
        except SQLAlchemyError:
            # an unreadable database counts as empty
            self.session.rollback()
            logger.exception("legacy_migration: existing data check failed")
            return False
        return bool(txn_count) or bool(cat_count)

    def run(self) -> MigrationResult:
        if self.result is not None:
            return self.result

        if self.has_existing_data():
            logger.info("legacy_migration: state=skipped reason=database_not_empty")
            self.state = MigrationState.skipped
            self.result = MigrationResult(state=self.state)
            return self.result

        self.state = MigrationState.migrating
        logger.info("legacy_migration: state=migrating")
        result = MigrationResult(state=self.state)
        result.transactions = self._migrate_transactions(result)
        result.categories = self._migrate_categories(result)

        if result.write_errors and self.verify_before_clear:
            logger.warning(
                f"legacy_migration: keeping legacy data errors={len(result.write_errors)}"
            )
        else:
            if result.write_errors:
                logger.warning(
                    f"legacy_migration: clearing legacy data despite "
                    f"errors={len(result.write_errors)}"
                )
            self._clear_legacy()
            result.legacy_cleared = True

        self.state = MigrationState.done
        result.state = self.state
        self.result = result
        logger.info(
            f"legacy_migration: state=done transactions={result.transactions} "
            f"categories={result.categories}"
        )
        return result

    def _decode_transactions(self) -> list[LegacyTransactionRecord]:
        blob = self.legacy_store.get(LEGACY_TRANSACTIONS_KEY)
        if blob is None:
            return []
        try:
            return _transactions_adapter.validate_json(blob)
        except ValidationError:
            logger.warning("legacy_migration: transactions blob unreadable, skipping")
            return []

    def _decode_names(self, key: str) -> list[str]:
        blob = self.legacy_store.get(key)
        if blob is None:
            return []
        try:
            return _names_adapter.validate_json(blob)
        except ValidationError:
            logger.warning(f"legacy_migration: {key} blob unreadable, skipping")
            return []

    def _save(self, what: str, result: MigrationResult) -> bool:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"legacy_migration: write failed for {what}")
            result.write_errors.append(f"{what}: {exc}")
            return False
        return True

    def _migrate_transactions(self, result: MigrationResult) -> int:
        records = self._decode_transactions()
        if not records:
            return 0
        schema_v1 = sum(1 for r in records if r.schema_version == 1)
        for record in records:
            self.session.add(
                Transaction(
                    id=record.id,
                    title=record.title,
                    amount=record.amount,
                    original_amount=record.original_amount,
                    date=record.date,
                    category=record.category,
                    type=record.type.value,
                    currency=record.currency,
                )
            )
        if not self._save("transactions", result):
            return 0
        logger.info(
            f"legacy_migration: transactions={len(records)} schema_v1={schema_v1}"
        )
        return len(records)

    def _migrate_categories(self, result: MigrationResult) -> int:
        migrated = 0
        for key, txn_type in (
            (LEGACY_EXPENSE_CATEGORIES_KEY, TransactionType.expense),
            (LEGACY_INCOME_CATEGORIES_KEY, TransactionType.income),
        ):
            for index, name in enumerate(self._decode_names(key)):
                self.session.add(Category(name=name, type=txn_type, order=index))
                migrated += 1
        if not migrated:
            return 0
        if not self._save("categories", result):
            return 0
        return migrated

    def _clear_legacy(self) -> None:
        # selectedCurrency stays: it is a live setting, not migrated data
        for key in LEGACY_MIGRATED_KEYS:
            self.legacy_store.delete(key)
        logger.info("legacy_migration: cleared legacy keys")


def repair_transaction_types(session: Session) -> int:
    """Align each transaction's type with the partition its category lives in."""
    expense_names = set(
        session.scalars(
            select(Category.name).where(Category.type == TransactionType.expense)
        ).all()
    )
    income_names = set(
        session.scalars(
            select(Category.name).where(Category.type == TransactionType.income)
        ).all()
    )

    fixed = 0
    for txn in session.scalars(select(Transaction)).all():
        in_expense = txn.category in expense_names
        in_income = txn.category in income_names
        current = parse_transaction_type(txn.type)
        if in_income and not in_expense:
            wanted = TransactionType.income
        elif in_expense and not in_income:
            wanted = TransactionType.expense
        elif current is None:
            wanted = TransactionType.expense
        else:
            continue
        if txn.type != wanted.value:
            logger.info(
                f"transaction_type_repaired: id={txn.id} from={txn.type} to={wanted.value}"
            )
            txn.type = wanted.value
            fixed += 1

    if fixed:
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("transaction_type_repair_failed")
            return 0
    return fixed
