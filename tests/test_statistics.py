from datetime import date

import pytest

from database import Base, build_session_factory, create_db_engine
from models import Account, Category, CurrencyCode, TransactionType, User
from periods import Period, resolve_period, resolve_period_or_default
from services import MetricsService, TransactionService


def make_session():
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)()


def seed(session):
    user = User(email="owner@example.com", display_name="Owner", password_hash="x")
    session.add(user)
    session.flush()
    account = Account(user_id=user.id, name="Cash", currency=CurrencyCode.uah)
    food = Category(user_id=user.id, name="Food", type=TransactionType.expense)
    rent = Category(user_id=user.id, name="Rent", type=TransactionType.expense)
    salary = Category(user_id=user.id, name="Salary", type=TransactionType.income)
    session.add_all([account, food, rent, salary])
    session.commit()
    return user, account, food, rent, salary


def test_may_statistics_scenario() -> None:
    session = make_session()
    user, account, food, _, salary = seed(session)
    txns = TransactionService(session, user.id)
    txns.create(account.id, food.id, 100, "2024-05-01 09:00:00")
    txns.create(account.id, salary.id, 300, "2024-05-15 18:30:00")
    txns.create(account.id, food.id, 999, "2024-06-01 00:00:00")

    stats = MetricsService(session, user.id).statistics(
        account.id, Period("custom", date(2024, 5, 1), date(2024, 5, 31))
    )

    assert stats["total_expense"] == 100
    assert stats["total_income"] == 300
    assert stats["balance"] == 200
    assert stats["daily_breakdown"] == [
        {"date": date(2024, 5, 1), "income": 0, "expense": 100},
        {"date": date(2024, 5, 15), "income": 300, "expense": 0},
    ]


def test_range_is_inclusive_on_both_ends() -> None:
    session = make_session()
    user, account, food, _, _ = seed(session)
    txns = TransactionService(session, user.id)
    txns.create(account.id, food.id, 10, "2024-05-01 00:00:00")
    txns.create(account.id, food.id, 20, "2024-05-31 23:59:59")
    txns.create(account.id, food.id, 40, "2024-04-30 23:59:59")

    stats = MetricsService(session, user.id).statistics(
        account.id, Period("custom", date(2024, 5, 1), date(2024, 5, 31))
    )

    assert stats["total_expense"] == 30


def test_category_breakdown_is_sorted_by_amount() -> None:
    session = make_session()
    user, account, food, rent, salary = seed(session)
    txns = TransactionService(session, user.id)
    txns.create(account.id, food.id, 250, "2024-05-02 10:00:00")
    txns.create(account.id, rent.id, 700, "2024-05-03 10:00:00")
    txns.create(account.id, food.id, 50, "2024-05-04 10:00:00")
    txns.create(account.id, salary.id, 2000, "2024-05-05 10:00:00")

    stats = MetricsService(session, user.id).statistics(
        account.id, Period("custom", date(2024, 5, 1), date(2024, 5, 31))
    )

    expense = stats["category_breakdown_expense"]
    assert [row["name"] for row in expense] == ["Rent", "Food"]
    assert [row["amount_cents"] for row in expense] == [700, 300]
    assert expense[0]["percent"] == pytest.approx(70.0)
    assert stats["category_breakdown_income"] == [
        {"name": "Salary", "amount_cents": 2000, "percent": 100.0}
    ]


def test_empty_period_and_foreign_account() -> None:
    session = make_session()
    user, account, food, _, _ = seed(session)
    TransactionService(session, user.id).create(
        account.id, food.id, 100, "2024-05-01 09:00:00"
    )
    may = Period("custom", date(2024, 5, 1), date(2024, 5, 31))

    empty = MetricsService(session, user.id).statistics(
        account.id, Period("custom", date(2023, 1, 1), date(2023, 1, 31))
    )
    foreign = MetricsService(session, user.id + 1).statistics(account.id, may)

    for stats in (empty, foreign):
        assert stats["total_income"] == 0
        assert stats["total_expense"] == 0
        assert stats["daily_breakdown"] == []
        assert stats["category_breakdown_expense"] == []


def test_default_period_is_current_month() -> None:
    period = resolve_period(None, None, None, today=date(2024, 2, 10))

    assert period.slug == "this_month"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)


def test_december_and_last_month_boundaries() -> None:
    december = resolve_period(None, None, None, today=date(2024, 12, 31))
    last = resolve_period("last_month", None, None, today=date(2024, 1, 15))

    assert december.end == date(2024, 12, 31)
    assert (last.start, last.end) == (date(2023, 12, 1), date(2023, 12, 31))


def test_custom_range_accepts_both_date_formats() -> None:
    period = resolve_period(None, "01.05.2024", "2024-05-31", today=date(2024, 6, 1))

    assert period.slug == "custom"
    assert (period.start, period.end) == (date(2024, 5, 1), date(2024, 5, 31))


def test_inverted_range_falls_back_to_month_with_warning() -> None:
    with pytest.raises(ValueError, match="must not be after"):
        resolve_period("custom", "2024-05-31", "2024-05-01", today=date(2024, 6, 3))

    period, warning = resolve_period_or_default(
        "custom", "2024-05-31", "2024-05-01", today=date(2024, 6, 3)
    )

    assert warning
    assert (period.start, period.end) == (date(2024, 6, 1), date(2024, 6, 30))
