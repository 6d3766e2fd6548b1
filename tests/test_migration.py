import json
from datetime import datetime

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from kvstore import JsonKeyValueStore
from migration import (
    LegacyMigrationService,
    MigrationState,
    repair_transaction_types,
)
from models import Category, Transaction, TransactionType


def _legacy_store(tmp_path, **blobs) -> JsonKeyValueStore:
    store = JsonKeyValueStore(tmp_path / "preferences.json")
    for key, value in blobs.items():
        store.set(key, value if isinstance(value, str) else json.dumps(value))
    return store


def test_migrates_into_empty_database_and_clears_legacy_keys(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(
        tmp_path,
        transactions=[
            {
                "id": "6F9619FF-8B86-D011-B42D-00CF4FC964FF",
                "title": "Coffee",
                "amount": 4.5,
                "date": 725760000.0,
                "category": "Food",
                "type": "expense",
            }
        ],
        expenseCategories=["Food"],
        selectedCurrency="EUR",
    )

    with Session(engine) as session:
        result = LegacyMigrationService(session, store).run()

        assert result.state == MigrationState.done
        assert result.transactions == 1
        assert result.categories == 1
        txn = session.scalars(select(Transaction)).one()
        assert txn.title == "Coffee"
        assert txn.amount == 4.5
        assert txn.original_amount == 4.5
        assert txn.currency == "USD"
        assert txn.date == datetime(2024, 1, 1)
        categories = session.scalars(select(Category)).all()
        assert [(c.name, c.type, c.order) for c in categories] == [
            ("Food", TransactionType.expense, 0)
        ]

    assert not store.contains("transactions")
    assert not store.contains("expenseCategories")
    assert store.get("selectedCurrency") == "EUR"
    reopened = JsonKeyValueStore(tmp_path / "preferences.json")
    assert reopened.get("selectedCurrency") == "EUR"
    assert not reopened.contains("transactions")


def test_schema_v1_records_get_amount_and_currency_defaults(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(
        tmp_path,
        transactions=[
            {
                "id": "a1",
                "title": "Coffee",
                "amount": 4.5,
                "date": "2024-05-01",
                "category": "Food",
                "type": "expense",
            }
        ],
        incomeCategories=["Salary", "Salary"],
    )

    with Session(engine) as session:
        LegacyMigrationService(session, store).run()

        txn = session.scalars(select(Transaction)).one()
        assert txn.id == "a1"
        assert txn.original_amount == 4.5
        assert txn.currency == "USD"
        assert txn.date == datetime(2024, 5, 1)
        orders = session.scalars(
            select(Category.order).where(Category.type == TransactionType.income)
        ).all()
        assert sorted(orders) == [0, 1]


def test_record_missing_required_field_fails_its_blob(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(
        tmp_path,
        transactions=[
            {
                "id": "a1",
                "title": "Coffee",
                "amount": 4.5,
                "date": "2024-05-01",
                "category": "Food",
                "type": "expense",
            },
            {"title": "Tea", "amount": 3, "date": "2024-05-02"},
        ],
        expenseCategories=["Food"],
    )

    with Session(engine) as session:
        result = LegacyMigrationService(session, store).run()

        assert result.transactions == 0
        assert result.categories == 1
        assert session.scalars(select(Transaction)).all() == []


def test_existing_data_skips_and_leaves_legacy_untouched(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    blob = [{"title": "Tea", "amount": 3, "date": "2024-05-01"}]
    store = _legacy_store(tmp_path, transactions=blob, expenseCategories=["Food"])

    with Session(engine) as session:
        session.add(
            Transaction(
                id="existing",
                title="Bus",
                amount=2,
                original_amount=2,
                date=datetime(2024, 5, 2),
                category="Transportation",
                type="expense",
                currency="USD",
            )
        )
        session.commit()

        service = LegacyMigrationService(session, store)
        result = service.run()

        assert result.state == MigrationState.skipped
        assert service.state == MigrationState.skipped
        assert session.scalars(select(Transaction.id)).all() == ["existing"]

    assert json.loads(store.get("transactions")) == blob
    assert store.contains("expenseCategories")


def test_undecodable_blob_counts_as_absent(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(
        tmp_path,
        transactions="not json at all",
        expenseCategories=["Food", "Rent"],
    )

    with Session(engine) as session:
        result = LegacyMigrationService(session, store).run()

        assert result.state == MigrationState.done
        assert result.transactions == 0
        assert result.categories == 2

    assert not store.contains("transactions")


def test_run_is_terminal(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(tmp_path, expenseCategories=["Food"])

    with Session(engine) as session:
        service = LegacyMigrationService(session, store)
        first = service.run()
        store.set("expenseCategories", json.dumps(["Rent"]))
        second = service.run()

        assert second is first
        assert session.scalars(select(Category.name)).all() == ["Food"]


def test_write_failure_still_clears_unless_verification_requested(
    tmp_path, monkeypatch
) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def failing_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    store = _legacy_store(tmp_path, expenseCategories=["Food"])
    with Session(engine) as session:
        monkeypatch.setattr(session, "commit", failing_commit)
        result = LegacyMigrationService(session, store).run()
        assert result.state == MigrationState.done
        assert len(result.write_errors) == 1
        assert result.legacy_cleared is True
    assert not store.contains("expenseCategories")

    kept = _legacy_store(tmp_path / "kept", expenseCategories=["Food"])
    with Session(engine) as session:
        monkeypatch.setattr(session, "commit", failing_commit)
        result = LegacyMigrationService(session, kept, verify_before_clear=True).run()
        assert result.legacy_cleared is False
    assert kept.contains("expenseCategories")


def test_failed_existing_data_check_counts_as_empty(tmp_path, monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    store = _legacy_store(tmp_path, expenseCategories=["Food"])

    def unreadable(*args, **kwargs):
        raise OperationalError("SELECT count(*)", {}, Exception("database disk image is malformed"))

    with Session(engine) as session:
        service = LegacyMigrationService(session, store)
        monkeypatch.setattr(session, "execute", unreadable)
        assert service.has_existing_data() is False

        result = service.run()
        monkeypatch.undo()

        assert result.state == MigrationState.done
        assert result.categories == 1
        assert session.scalars(select(Category.name)).all() == ["Food"]


def _seed_partitions(session: Session) -> None:
    for order, name in enumerate(["Grocery", "Other"]):
        session.add(Category(name=name, type=TransactionType.expense, order=order))
    for order, name in enumerate(["Salary", "Other"]):
        session.add(Category(name=name, type=TransactionType.income, order=order))


def _stored(session: Session, txn_id: str, category: str, txn_type: str) -> None:
    session.add(
        Transaction(
            id=txn_id,
            title=txn_id,
            amount=1,
            original_amount=1,
            date=datetime(2024, 6, 1),
            category=category,
            type=txn_type,
            currency="USD",
        )
    )


def test_repair_transaction_types() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed_partitions(session)
        _stored(session, "salary-as-expense", "Salary", "expense")
        _stored(session, "grocery-as-income", "Grocery", "income")
        _stored(session, "unknown-category", "Mystery", "income")
        _stored(session, "both-partitions", "Other", "income")
        _stored(session, "broken-type", "Other", "refund")
        _stored(session, "broken-salary", "Salary", "???")
        session.commit()

        fixed = repair_transaction_types(session)

        types = dict(session.execute(select(Transaction.id, Transaction.type)).all())
        assert fixed == 4
        assert types == {
            "salary-as-expense": "income",
            "grocery-as-income": "expense",
            "unknown-category": "income",
            "both-partitions": "income",
            "broken-type": "expense",
            "broken-salary": "income",
        }
        assert repair_transaction_types(session) == 0
