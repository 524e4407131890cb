from sqlalchemy import func, select

from database import Base, build_session_factory, create_db_engine
from models import (
    ADJUSTMENT_CATEGORY,
    TRANSFER_OUT_CATEGORY,
    Account,
    Category,
    CurrencyCode,
    TransactionType,
    User,
)
from results import ErrorKind
from schemas import CategoryIn
from services import (
    DEFAULT_CATEGORIES,
    CategoryService,
    SystemCategoryResolver,
    TransactionService,
)


def make_session():
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)()


def make_user(session, email="owner@example.com") -> User:
    user = User(email=email, display_name="Owner", password_hash="x")
    session.add(user)
    session.commit()
    return user


def count_named(session, name: str) -> int:
    return session.scalar(
        select(func.count()).select_from(Category).where(Category.name == name)
    )


def test_transfer_category_is_created_once() -> None:
    session = make_session()
    user = make_user(session)
    resolver = SystemCategoryResolver(session, user.id)

    first = resolver.transfer_category(TransactionType.expense)
    second = resolver.transfer_category("expense")
    session.commit()

    assert first.ok and second.ok
    assert first.value == second.value
    assert count_named(session, TRANSFER_OUT_CATEGORY) == 1
    category = session.get(Category, first.value)
    assert category.type == TransactionType.expense
    assert category.is_system


def test_insert_race_converges_on_existing_row(monkeypatch) -> None:
    session = make_session()
    user = make_user(session)
    resolver = SystemCategoryResolver(session, user.id)
    existing = resolver.transfer_category("income").value
    session.commit()

    real_find = resolver._find
    lookups = []

    def stale_first_lookup(name, category_type):
        lookups.append(name)
        if len(lookups) == 1:
            return None
        return real_find(name, category_type)

    monkeypatch.setattr(resolver, "_find", stale_first_lookup)

    again = resolver.transfer_category("income")

    assert again.value == existing
    assert len(lookups) == 2


def test_adjustment_categories_are_split_by_type() -> None:
    session = make_session()
    user = make_user(session)
    resolver = SystemCategoryResolver(session, user.id)

    income = resolver.adjustment_category(TransactionType.income).value
    expense = resolver.adjustment_category(TransactionType.expense).value

    assert income != expense
    assert count_named(session, ADJUSTMENT_CATEGORY) == 2


def test_unknown_type_is_rejected() -> None:
    session = make_session()
    user = make_user(session)

    result = SystemCategoryResolver(session, user.id).transfer_category("refund")

    assert result.kind == ErrorKind.validation


def test_system_categories_are_per_user() -> None:
    session = make_session()
    alice = make_user(session, "alice@example.com")
    bob = make_user(session, "bob@example.com")

    a = SystemCategoryResolver(session, alice.id).initial_balance_category().value
    b = SystemCategoryResolver(session, bob.id).initial_balance_category().value

    assert a != b


def test_create_rejects_duplicate_name_case_insensitively() -> None:
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)

    assert service.create(CategoryIn(name="Food", type=TransactionType.expense)).ok
    duplicate = service.create(CategoryIn(name=" food ", type=TransactionType.expense))
    other_type = service.create(CategoryIn(name="Food", type=TransactionType.income))

    assert duplicate.kind == ErrorKind.conflict
    assert other_type.ok


def test_update_renames_and_checks_duplicates() -> None:
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    food = service.create(CategoryIn(name="Food", type=TransactionType.expense)).value
    service.create(CategoryIn(name="Rent", type=TransactionType.expense))

    clash = service.update(food.id, CategoryIn(name="Rent", type=TransactionType.expense))
    renamed = service.update(
        food.id,
        CategoryIn(name="Groceries", type=TransactionType.expense, description="Weekly"),
    )

    assert clash.kind == ErrorKind.conflict
    assert renamed.value.name == "Groceries"
    assert renamed.value.description == "Weekly"


def test_delete_is_blocked_while_category_is_used() -> None:
    session = make_session()
    user = make_user(session)
    account = Account(user_id=user.id, name="Cash", currency=CurrencyCode.uah)
    session.add(account)
    session.commit()
    service = CategoryService(session, user.id)
    food = service.create(CategoryIn(name="Food", type=TransactionType.expense)).value
    TransactionService(session, user.id).create(
        account.id, food.id, 100, "2024-05-01 12:00:00"
    )

    assert service.is_used_in_transactions(food.id)
    blocked = service.delete(food.id)

    assert blocked.kind == ErrorKind.conflict
    assert count_named(session, "Food") == 1


def test_delete_unused_and_missing_categories() -> None:
    session = make_session()
    owner = make_user(session)
    stranger = make_user(session, "stranger@example.com")
    service = CategoryService(session, owner.id)
    spare = service.create(CategoryIn(name="Spare", type=TransactionType.expense)).value

    foreign = CategoryService(session, stranger.id).delete(spare.id)
    assert foreign.kind == ErrorKind.not_found
    assert count_named(session, "Spare") == 1

    assert service.delete(spare.id).ok
    assert count_named(session, "Spare") == 0
    assert service.delete(spare.id).kind == ErrorKind.not_found


def test_seed_defaults_and_type_filter() -> None:
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.seed_defaults()
    session.commit()

    expense = service.list_all(TransactionType.expense)
    income = service.list_all(TransactionType.income)

    assert len(expense) + len(income) == len(DEFAULT_CATEGORIES)
    assert len(expense) == 10
    assert len(income) == 5
    assert [c.name for c in expense] == sorted(c.name for c in expense)
