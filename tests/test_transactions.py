from datetime import date, datetime

from sqlalchemy import func, select

from database import Base, build_session_factory, create_db_engine
from models import Account, Category, CurrencyCode, Transaction, TransactionType, User
from parsing import MAX_AMOUNT_CENTS
from results import ErrorKind
from services import TransactionFilters, TransactionService


def make_session():
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)()


def seed(session, email="owner@example.com"):
    user = User(email=email, display_name="Owner", password_hash="x")
    session.add(user)
    session.flush()
    account = Account(user_id=user.id, name="Cash", currency=CurrencyCode.uah)
    food = Category(user_id=user.id, name="Food", type=TransactionType.expense)
    salary = Category(user_id=user.id, name="Salary", type=TransactionType.income)
    session.add_all([account, food, salary])
    session.commit()
    return user, account, food, salary


def count_transactions(session) -> int:
    return session.scalar(select(func.count()).select_from(Transaction))


def test_create_stores_canonical_timestamp_and_date() -> None:
    session = make_session()
    user, account, food, _ = seed(session)

    result = TransactionService(session, user.id).create(
        account.id, food.id, 1250, "2024-05-01T09:30", "Lunch"
    )

    assert result.ok
    txn = session.get(Transaction, result.value)
    assert txn.amount_cents == 1250
    assert txn.occurred_at == datetime(2024, 5, 1, 9, 30)
    assert txn.date == date(2024, 5, 1)
    assert txn.description == "Lunch"


def test_zero_and_negative_amounts_are_rejected() -> None:
    session = make_session()
    user, account, food, _ = seed(session)
    service = TransactionService(session, user.id)

    for amount in (0, -5, "0", "-500"):
        result = service.create(account.id, food.id, amount, "2024-05-01 10:00:00")
        assert not result.ok
        assert result.kind == ErrorKind.validation
        assert result.field == "amount"

    assert count_transactions(session) == 0


def test_missing_fields_and_bad_timestamp_fail_validation() -> None:
    session = make_session()
    user, account, food, _ = seed(session)
    service = TransactionService(session, user.id)

    missing = service.create(account.id, None, 100, "2024-05-01 10:00:00")
    assert missing.kind == ErrorKind.validation
    assert missing.field == "category_id"

    bad_amount = service.create(account.id, food.id, "abc", "2024-05-01 10:00:00")
    assert bad_amount.kind == ErrorKind.validation

    bad_time = service.create(account.id, food.id, 100, "01/05/2024")
    assert bad_time.kind == ErrorKind.validation
    assert bad_time.field == "occurred_at"
    assert count_transactions(session) == 0


def test_foreign_account_or_category_is_not_found() -> None:
    session = make_session()
    owner, account, food, _ = seed(session)
    stranger, other_account, other_food, _ = seed(session, email="other@example.com")
    service = TransactionService(session, owner.id)

    foreign_account = service.create(other_account.id, food.id, 100, "2024-05-01 10:00:00")
    assert foreign_account.kind == ErrorKind.not_found

    foreign_category = service.create(account.id, other_food.id, 100, "2024-05-01 10:00:00")
    assert foreign_category.kind == ErrorKind.not_found
    assert count_transactions(session) == 0


def test_list_filters_and_orders_newest_first() -> None:
    session = make_session()
    user, account, food, salary = seed(session)
    service = TransactionService(session, user.id)
    service.create(account.id, food.id, 100, "2024-05-01 08:00:00")
    service.create(account.id, salary.id, 5000, "2024-05-10 08:00:00")
    service.create(account.id, food.id, 200, "2024-05-20 08:00:00")
    service.create(account.id, food.id, 300, "2024-06-02 08:00:00")

    everything = service.list(account.id)
    assert [txn.amount_cents for txn in everything] == [300, 200, 5000, 100]

    may_food = service.list(
        account.id,
        TransactionFilters(
            category_id=food.id, start=date(2024, 5, 1), end=date(2024, 5, 31)
        ),
    )
    assert [txn.amount_cents for txn in may_food] == [200, 100]

    assert [txn.amount_cents for txn in service.recent(account.id, limit=2)] == [300, 200]


def test_same_timestamp_orders_by_id_descending() -> None:
    session = make_session()
    user, account, food, _ = seed(session)
    service = TransactionService(session, user.id)
    first = service.create(account.id, food.id, 100, "2024-05-01 08:00:00").value
    second = service.create(account.id, food.id, 200, "2024-05-01 08:00:00").value

    assert [txn.id for txn in service.list(account.id)] == [second, first]


def test_delete_checks_ownership() -> None:
    session = make_session()
    owner, account, food, _ = seed(session)
    stranger, *_ = seed(session, email="other@example.com")
    txn_id = TransactionService(session, owner.id).create(
        account.id, food.id, 100, "2024-05-01 08:00:00"
    ).value

    denied = TransactionService(session, stranger.id).delete(txn_id)
    assert denied.kind == ErrorKind.not_found
    assert count_transactions(session) == 1

    assert TransactionService(session, owner.id).delete(txn_id).ok
    assert count_transactions(session) == 0


def test_delete_for_account_removes_only_that_account() -> None:
    session = make_session()
    user, account, food, _ = seed(session)
    savings = Account(user_id=user.id, name="Savings", currency=CurrencyCode.uah)
    session.add(savings)
    session.commit()
    service = TransactionService(session, user.id)
    service.create(account.id, food.id, 100, "2024-05-01 08:00:00")
    service.create(account.id, food.id, 200, "2024-05-02 08:00:00")
    service.create(savings.id, food.id, 300, "2024-05-03 08:00:00")

    removed = service.delete_for_account(account.id)
    session.commit()

    assert removed.value == 2
    assert count_transactions(session) == 1


def test_amount_above_limit_is_rejected_without_writing() -> None:
    session = make_session()
    user, account, food, _ = seed(session)
    service = TransactionService(session, user.id)

    for amount in (MAX_AMOUNT_CENTS + 1, 10**22, str(10**22)):
        result = service.create(account.id, food.id, amount, "2024-05-01 10:00:00")
        assert result.kind == ErrorKind.validation
        assert result.field == "amount"

    assert count_transactions(session) == 0
    assert service.create(account.id, food.id, MAX_AMOUNT_CENTS, "2024-05-01 10:00:00").ok
