from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from config import Settings
from database import create_db_engine, init_schema, make_session_factory
from kvstore import AppSettings, JsonKeyValueStore
from migration import LegacyMigrationService, MigrationResult, repair_transaction_types
from services import CategoryRegistry, StorageStatus, TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session: Session
    legacy_store: JsonKeyValueStore
    app_settings: AppSettings
    status: StorageStatus
    transactions: TransactionStore
    categories: CategoryRegistry
    migration: MigrationResult

    def close(self) -> None:
        self.session.close()
        self.engine.dispose()


def initialize(settings: Settings) -> AppContext:
    """Open storage and bring every component to a loaded state.

    Raises ``DatabaseInitError`` when the database cannot be opened; nothing
    else in here is fatal.
    """
    engine = create_db_engine(settings.database_url)
    init_schema(engine)
    session = make_session_factory(engine)()

    legacy_store = JsonKeyValueStore(settings.preferences_path)
    migration = LegacyMigrationService(
        session,
        legacy_store,
        verify_before_clear=settings.migration_verify_before_clear,
    ).run()

    status = StorageStatus()
    categories = CategoryRegistry(status=status)
    categories.attach(session)

    repaired = repair_transaction_types(session)
    if repaired:
        logger.info(f"startup: repaired_transaction_types={repaired}")

    transactions = TransactionStore(status=status)
    transactions.attach(session)

    logger.info(
        f"startup: migration={migration.state.value} "
        f"transactions={len(transactions.transactions)}"
    )
    return AppContext(
        settings=settings,
        engine=engine,
        session=session,
        legacy_store=legacy_store,
        app_settings=AppSettings(legacy_store, settings.default_currency),
        status=status,
        transactions=transactions,
        categories=categories,
        migration=migration,
    )
