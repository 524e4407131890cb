from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from models import (
    ADJUSTMENT_CATEGORY,
    INITIAL_BALANCE_CATEGORY,
    TRANSFER_IN_CATEGORY,
    TRANSFER_OUT_CATEGORY,
    Account,
    Category,
    CurrencyCode,
    Transaction,
    TransactionType,
    User,
)
from parsing import MAX_AMOUNT_CENTS, coerce_cents, parse_timestamp
from periods import Period
from results import Err, ErrorKind, Ok, Result, not_found, validation_error
from schemas import AccountCreateIn, AccountIn, CategoryIn, LoginIn, RegisterIn

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES: tuple[tuple[str, TransactionType, str], ...] = (
    ("Groceries", TransactionType.expense, "Food and everyday household goods."),
    ("Transport", TransactionType.expense, "Public transport, taxis, fuel, car upkeep."),
    ("Housing", TransactionType.expense, "Rent or mortgage, utilities, repairs, furniture."),
    ("Clothing", TransactionType.expense, "Clothes, shoes and accessories."),
    ("Health", TransactionType.expense, "Medical services, medicine, insurance, sport."),
    ("Entertainment", TransactionType.expense, "Cinema, concerts, cafes, hobbies, travel."),
    ("Education", TransactionType.expense, "Courses, books and learning materials."),
    ("Gifts", TransactionType.expense, "Presents for other people."),
    ("Phone & internet", TransactionType.expense, "Mobile, internet and TV bills."),
    ("Other expenses", TransactionType.expense, "Anything that fits nowhere else."),
    ("Salary", TransactionType.income, "Main income from work."),
    ("Side income", TransactionType.income, "Freelance and extra work."),
    ("Gifts", TransactionType.income, "Money received as a gift."),
    ("Interest", TransactionType.income, "Deposit interest and cashback."),
    ("Other income", TransactionType.income, "Anything that fits nowhere else."),
)


def local_now(timezone: str) -> datetime:
    return datetime.now(ZoneInfo(timezone)).replace(tzinfo=None, microsecond=0)


def _coerce_type(value: Union[TransactionType, str]) -> Optional[TransactionType]:
    try:
        return TransactionType(value)
    except ValueError:
        return None


@dataclass
class TransactionFilters:
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass(frozen=True)
class TransferReceipt:
    debit_id: int
    credit_id: int
    debited_cents: int
    credited_cents: int
    exchange_rate: Decimal


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )

    def register(self, data: RegisterIn) -> Result[User]:
        if self.find_by_email(data.email):
            return validation_error(
                "A user with this email is already registered", "email"
            )
        user = User(
            email=data.email,
            display_name=data.display_name,
            password_hash=hash_password(data.password),
        )
        try:
            self.session.add(user)
            self.session.flush()
            CategoryService(self.session, user.id).seed_defaults()
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(f"register_failed: email={data.email}: {exc.orig}")
            return validation_error(
                "A user with this email is already registered", "email"
            )
        self.session.refresh(user)
        logger.info(f"user_registered: id={user.id}")
        return Ok(user)

    def authenticate(self, data: LoginIn) -> Result[User]:
        user = self.find_by_email(data.email)
        if not user or not verify_password(data.password, user.password_hash):
            return validation_error("Wrong email or password")
        return Ok(user)


class SystemCategoryResolver:
    """Finds or lazily creates the categories the ledger itself relies on.

    Creation goes through ``INSERT .. ON CONFLICT DO NOTHING`` against the
    ``(user_id, type, name)`` unique constraint followed by a re-select, so
    concurrent callers end up with the same row. The resolver only flushes;
    committing belongs to the caller, which lets a transfer include category
    creation in its own transaction.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _find(self, name: str, category_type: TransactionType) -> Optional[int]:
        return self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.name == name,
                Category.type == category_type,
            )
        )

    def _insert_statement(
        self, name: str, category_type: TransactionType, description: str
    ):
        now = datetime.utcnow()
        values = {
            "user_id": self.user_id,
            "name": name,
            "type": category_type,
            "description": description,
            "created_at": now,
            "updated_at": now,
        }
        conflict_target = ["user_id", "type", "name"]
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            return (
                sqlite.insert(Category)
                .values(**values)
                .on_conflict_do_nothing(index_elements=conflict_target)
            )
        if dialect == "postgresql":
            return (
                postgresql.insert(Category)
                .values(**values)
                .on_conflict_do_nothing(index_elements=conflict_target)
            )
        return insert(Category).values(**values)

    def get_or_create(
        self,
        name: str,
        category_type: Union[TransactionType, str],
        description: str = "",
    ) -> Result[int]:
        kind = _coerce_type(category_type)
        if kind is None:
            return validation_error(f"Unknown category type '{category_type}'", "type")
        try:
            existing = self._find(name, kind)
            if existing is not None:
                return Ok(existing)
            self.session.execute(self._insert_statement(name, kind, description))
            created = self._find(name, kind)
        except SQLAlchemyError as exc:
            logger.error(
                f"system_category_failed: user={self.user_id} name={name!r} "
                f"type={kind.value}: {exc}"
            )
            return Err(ErrorKind.storage, f"Could not create category '{name}'")
        if created is None:
            logger.error(
                f"system_category_missing_after_insert: user={self.user_id} name={name!r}"
            )
            return Err(ErrorKind.storage, f"Could not create category '{name}'")
        logger.info(
            f"system_category_created: user={self.user_id} name={name!r} id={created}"
        )
        return Ok(created)

    def initial_balance_category(self) -> Result[int]:
        return self.get_or_create(
            INITIAL_BALANCE_CATEGORY,
            TransactionType.income,
            "Opening balance recorded when the account was created.",
        )

    def adjustment_category(
        self, category_type: Union[TransactionType, str]
    ) -> Result[int]:
        return self.get_or_create(
            ADJUSTMENT_CATEGORY,
            category_type,
            "Manual correction of an account balance.",
        )

    def transfer_category(
        self, category_type: Union[TransactionType, str]
    ) -> Result[int]:
        kind = _coerce_type(category_type)
        if kind == TransactionType.expense:
            return self.get_or_create(
                TRANSFER_OUT_CATEGORY,
                TransactionType.expense,
                "Money moved to another account.",
            )
        if kind == TransactionType.income:
            return self.get_or_create(
                TRANSFER_IN_CATEGORY,
                TransactionType.income,
                "Money received from another account.",
            )
        return validation_error(f"Unknown category type '{category_type}'", "type")


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(
        self, category_type: Optional[TransactionType] = None
    ) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if category_type:
            stmt = stmt.where(Category.type == category_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Result[Category]:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            return not_found("Category not found")
        return Ok(category)

    def _name_taken(
        self, data: CategoryIn, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == data.type,
            func.lower(Category.name) == data.name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Result[Category]:
        if self._name_taken(data):
            return Err(
                ErrorKind.conflict, "Category with this name already exists", "name"
            )
        category = Category(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            description=data.description or None,
        )
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error(f"category_create_failed: user={self.user_id}: {exc.orig}")
            return Err(
                ErrorKind.conflict, "Category with this name already exists", "name"
            )
        self.session.refresh(category)
        return Ok(category)

    def update(self, category_id: int, data: CategoryIn) -> Result[Category]:
        found = self.get(category_id)
        if isinstance(found, Err):
            return found
        category = found.value
        if self._name_taken(data, exclude_id=category.id):
            return Err(
                ErrorKind.conflict, "Category with this name already exists", "name"
            )
        category.name = data.name
        category.type = data.type
        category.description = data.description or None
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error(
                f"category_update_failed: user={self.user_id} id={category_id}: {exc.orig}"
            )
            return Err(
                ErrorKind.conflict, "Category with this name already exists", "name"
            )
        self.session.refresh(category)
        return Ok(category)

    def is_used_in_transactions(self, category_id: int) -> bool:
        stmt = select(Transaction.id).where(Transaction.category_id == category_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def delete(self, category_id: int) -> Result[None]:
        # check and delete in one statement; the foreign key backs it up
        in_use = (
            select(Transaction.id)
            .where(Transaction.category_id == category_id)
            .exists()
        )
        stmt = (
            delete(Category)
            .where(
                Category.id == category_id,
                Category.user_id == self.user_id,
                ~in_use,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(
                f"category_delete_blocked: user={self.user_id} id={category_id}: {exc.orig}"
            )
            return Err(
                ErrorKind.conflict,
                "Category is used by transactions and cannot be deleted",
            )
        if result.rowcount:
            return Ok(None)

        found = self.get(category_id)
        if isinstance(found, Err):
            return found
        return Err(
            ErrorKind.conflict,
            f"Category '{found.value.name}' is used by transactions and cannot be deleted",
        )

    def seed_defaults(self) -> None:
        self.session.add_all(
            Category(
                user_id=self.user_id,
                name=name,
                type=category_type,
                description=description,
            )
            for name, category_type, description in DEFAULT_CATEGORIES
        )
        self.session.flush()


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def owned_account(self, account_id: int) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )

    def owned_category(self, category_id: int) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )

    @staticmethod
    def validate(
        account_id: Optional[int],
        category_id: Optional[int],
        amount: object,
        occurred_at: object,
    ) -> Result[tuple[int, datetime]]:
        required = {
            "account_id": account_id,
            "category_id": category_id,
            "amount": amount,
            "occurred_at": occurred_at,
        }
        for field, value in required.items():
            if value is None or value == "":
                return validation_error("Required field is missing", field)
        try:
            amount_cents = coerce_cents(amount)
        except ValueError as exc:
            return validation_error(str(exc), "amount")
        if amount_cents <= 0:
            return validation_error("Amount must be a positive number", "amount")
        if amount_cents > MAX_AMOUNT_CENTS:
            return validation_error("Amount is too large", "amount")
        try:
            timestamp = parse_timestamp(occurred_at)
        except ValueError as exc:
            return validation_error(str(exc), "occurred_at")
        return Ok((amount_cents, timestamp))

    def record(
        self,
        account_id: Optional[int],
        category_id: Optional[int],
        amount: object,
        occurred_at: object,
        description: Optional[str] = None,
    ) -> Result[Transaction]:
        """Validate and flush one transaction without committing."""
        checked = self.validate(account_id, category_id, amount, occurred_at)
        if isinstance(checked, Err):
            logger.info(
                f"transaction_rejected: user={self.user_id} field={checked.field} "
                f"reason={checked.message}"
            )
            return checked
        amount_cents, timestamp = checked.value

        if not self.owned_account(account_id):
            return not_found("Account not found")
        if not self.owned_category(category_id):
            return not_found("Category not found")

        txn = Transaction(
            account_id=account_id,
            category_id=category_id,
            amount_cents=amount_cents,
            occurred_at=timestamp,
            date=timestamp.date(),
            description=(description or "").strip() or None,
        )
        self.session.add(txn)
        try:
            self.session.flush()
        except IntegrityError as exc:
            logger.error(
                f"transaction_insert_failed: user={self.user_id} account={account_id} "
                f"category={category_id}: {exc.orig}"
            )
            return Err(ErrorKind.storage, "Could not save the transaction")
        return Ok(txn)

    def create(
        self,
        account_id: Optional[int],
        category_id: Optional[int],
        amount: object,
        occurred_at: object,
        description: Optional[str] = None,
    ) -> Result[int]:
        recorded = self.record(account_id, category_id, amount, occurred_at, description)
        if isinstance(recorded, Err):
            self.session.rollback()
            return recorded
        self.session.commit()
        return Ok(recorded.value.id)

    def get(self, transaction_id: int) -> Result[Transaction]:
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id, Account.user_id == self.user_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            return not_found("Transaction not found")
        return Ok(txn)

    def list(
        self,
        account_id: int,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .options(joinedload(Transaction.category))
            .where(Transaction.account_id == account_id, Account.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def recent(self, account_id: int, limit: int = 5) -> list[Transaction]:
        return self.list(account_id, limit=limit)

    def delete(self, transaction_id: int) -> Result[None]:
        found = self.get(transaction_id)
        if isinstance(found, Err):
            logger.warning(
                f"transaction_delete_denied: user={self.user_id} id={transaction_id}"
            )
            return found
        self.session.delete(found.value)
        self.session.commit()
        return Ok(None)

    def delete_for_account(self, account_id: int) -> Result[int]:
        """Remove every transaction of an owned account. Does not commit."""
        if not self.owned_account(account_id):
            logger.warning(
                f"bulk_delete_denied: user={self.user_id} account={account_id}"
            )
            return not_found("Account not found")
        try:
            result = self.session.execute(
                delete(Transaction)
                .where(Transaction.account_id == account_id)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            logger.error(
                f"bulk_delete_failed: user={self.user_id} account={account_id}: {exc.orig}"
            )
            return Err(ErrorKind.storage, "Could not delete the account transactions")
        return Ok(result.rowcount or 0)


class AccountService:
    def __init__(self, session: Session, user_id: int, timezone: str = "UTC") -> None:
        self.session = session
        self.user_id = user_id
        self.timezone = timezone

    @staticmethod
    def allowed_currencies() -> list[str]:
        return [code.value for code in CurrencyCode]

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Result[Account]:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            return not_found("Account not found")
        return Ok(account)

    def create(self, data: AccountCreateIn) -> Result[Account]:
        account = Account(user_id=self.user_id, name=data.name, currency=data.currency)
        self.session.add(account)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error(f"account_create_failed: user={self.user_id}: {exc.orig}")
            return Err(ErrorKind.storage, "Could not create the account")
        self.session.refresh(account)
        logger.info(f"account_created: user={self.user_id} id={account.id}")

        if data.initial_balance_cents <= 0:
            return Ok(account)

        # the account stays even when the opening balance cannot be recorded
        category = SystemCategoryResolver(
            self.session, self.user_id
        ).initial_balance_category()
        if isinstance(category, Err):
            self.session.rollback()
            return Ok(
                account,
                warning="Account created, but the initial balance category could not be created.",
            )
        recorded = TransactionService(self.session, self.user_id).record(
            account.id,
            category.value,
            data.initial_balance_cents,
            local_now(self.timezone),
            "Initial balance",
        )
        if isinstance(recorded, Err):
            self.session.rollback()
            logger.warning(
                f"initial_balance_failed: user={self.user_id} account={account.id}: "
                f"{recorded.message}"
            )
            return Ok(
                account,
                warning="Account created, but the initial balance could not be recorded.",
            )
        self.session.commit()
        return Ok(account)

    def update(self, account_id: int, data: AccountIn) -> Result[Account]:
        found = self.get(account_id)
        if isinstance(found, Err):
            return found
        account = found.value
        account.name = data.name
        account.currency = data.currency
        self.session.commit()
        self.session.refresh(account)
        return Ok(account)

    def delete(self, account_id: int) -> Result[None]:
        found = self.get(account_id)
        if isinstance(found, Err):
            return found
        removed = TransactionService(self.session, self.user_id).delete_for_account(
            account_id
        )
        if isinstance(removed, Err):
            self.session.rollback()
            return removed
        try:
            self.session.delete(found.value)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error(
                f"account_delete_failed: user={self.user_id} id={account_id}: {exc.orig}"
            )
            return Err(ErrorKind.storage, "Could not delete the account")
        logger.info(
            f"account_deleted: user={self.user_id} id={account_id} "
            f"transactions_removed={removed.value}"
        )
        return Ok(None)

    def adjust_balance(
        self, account_id: int, amount_cents: int, description: Optional[str] = None
    ) -> Result[int]:
        if amount_cents == 0:
            return validation_error(
                "Adjustment must be a non-zero amount", "adjustment_amount"
            )
        found = self.get(account_id)
        if isinstance(found, Err):
            return found

        category_type = (
            TransactionType.income if amount_cents > 0 else TransactionType.expense
        )
        category = SystemCategoryResolver(
            self.session, self.user_id
        ).adjustment_category(category_type)
        if isinstance(category, Err):
            self.session.rollback()
            return category

        note = "Balance adjustment"
        if description and description.strip():
            note += f": {description.strip()}"
        recorded = TransactionService(self.session, self.user_id).record(
            account_id, category.value, abs(amount_cents), local_now(self.timezone), note
        )
        if isinstance(recorded, Err):
            self.session.rollback()
            return recorded
        self.session.commit()
        return Ok(recorded.value.id)


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def account_summary(self, account_id: int) -> dict[str, int]:
        stmt = (
            select(
                Category.type.label("type"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .join(Account, Account.id == Transaction.account_id)
            .where(Transaction.account_id == account_id, Account.user_id == self.user_id)
            .group_by(Category.type)
        )
        income = 0
        expense = 0
        for row in self.session.execute(stmt):
            if row.type == TransactionType.income:
                income = int(row.total or 0)
            elif row.type == TransactionType.expense:
                expense = int(row.total or 0)
        return {"income": income, "expense": expense, "balance": income - expense}

    @staticmethod
    def _breakdown(totals: dict[str, int]) -> list[dict[str, object]]:
        grand_total = sum(totals.values())
        ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        return [
            {
                "name": name,
                "amount_cents": amount,
                "percent": (amount / grand_total * 100) if grand_total else 0,
            }
            for name, amount in ordered
        ]

    def statistics(self, account_id: int, period: Period) -> dict[str, object]:
        stmt = (
            select(
                Transaction.amount_cents,
                Transaction.date,
                Category.name.label("category_name"),
                Category.type.label("category_type"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Transaction.account_id == account_id,
                Account.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        )

        total_income = 0
        total_expense = 0
        daily: dict[date, dict[str, int]] = {}
        by_income_category: dict[str, int] = {}
        by_expense_category: dict[str, int] = {}
        for row in self.session.execute(stmt):
            amount = int(row.amount_cents)
            bucket = daily.setdefault(row.date, {"income": 0, "expense": 0})
            if row.category_type == TransactionType.income:
                total_income += amount
                bucket["income"] += amount
                by_income_category[row.category_name] = (
                    by_income_category.get(row.category_name, 0) + amount
                )
            else:
                total_expense += amount
                bucket["expense"] += amount
                by_expense_category[row.category_name] = (
                    by_expense_category.get(row.category_name, 0) + amount
                )

        return {
            "start": period.start,
            "end": period.end,
            "total_income": total_income,
            "total_expense": total_expense,
            "balance": total_income - total_expense,
            "daily_breakdown": [
                {"date": day, "income": sums["income"], "expense": sums["expense"]}
                for day, sums in sorted(daily.items())
            ],
            "category_breakdown_income": self._breakdown(by_income_category),
            "category_breakdown_expense": self._breakdown(by_expense_category),
        }


class TransferAborted(Exception):
    """Raised inside a transfer to unwind to the rollback."""


class TransferService:
    def __init__(self, session: Session, user_id: int, timezone: str = "UTC") -> None:
        self.session = session
        self.user_id = user_id
        self.timezone = timezone
        self.categories = SystemCategoryResolver(session, user_id)
        self.transactions = TransactionService(session, user_id)

    @staticmethod
    def _coerce_rate(value: object) -> Optional[Decimal]:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValueError("Invalid exchange rate")
        try:
            rate = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError("Invalid exchange rate") from exc
        if not rate.is_finite():
            raise ValueError("Invalid exchange rate")
        return rate

    @staticmethod
    def _describe(
        prefix: str,
        counterpart: Account,
        rate: Decimal,
        converted: bool,
        note: Optional[str],
    ) -> str:
        text = f"{prefix} '{counterpart.name}'"
        if converted:
            text += f" (rate {rate.normalize():f})"
        if note:
            text += f". Note: {note}"
        return text

    def transfer(
        self,
        from_account_id: Optional[int],
        to_account_id: Optional[int],
        amount: object,
        exchange_rate: object = None,
        description: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Result[TransferReceipt]:
        if not from_account_id or not to_account_id:
            return validation_error("Select both accounts", "account")
        if from_account_id == to_account_id:
            return validation_error(
                "Cannot transfer to the same account", "to_account_id"
            )
        try:
            amount_cents = coerce_cents(amount)
        except ValueError as exc:
            return validation_error(str(exc), "amount")
        if amount_cents <= 0:
            return validation_error("Transfer amount must be positive", "amount")
        if amount_cents > MAX_AMOUNT_CENTS:
            return validation_error("Transfer amount is too large", "amount")

        source = self.transactions.owned_account(from_account_id)
        target = self.transactions.owned_account(to_account_id)
        if not source or not target:
            return not_found("One or both accounts were not found")

        converted = source.currency != target.currency
        if converted:
            try:
                rate = self._coerce_rate(exchange_rate)
            except ValueError as exc:
                return validation_error(str(exc), "exchange_rate")
            if rate is None or rate <= 0:
                return validation_error(
                    "Enter an exchange rate above zero for different currencies",
                    "exchange_rate",
                )
        else:
            rate = Decimal("1")

        try:
            credited = Decimal(amount_cents) * rate
            if credited > MAX_AMOUNT_CENTS:
                return validation_error(
                    "Converted amount is too large", "exchange_rate"
                )
            credited_cents = int(
                credited.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )
        except ArithmeticError:
            return validation_error("Invalid exchange rate", "exchange_rate")
        if credited_cents <= 0:
            return validation_error(
                "Converted amount rounds to zero", "exchange_rate"
            )

        note = (description or "").strip() or None
        when = occurred_at or local_now(self.timezone)

        try:
            out_category = self.categories.transfer_category(TransactionType.expense)
            if isinstance(out_category, Err):
                raise TransferAborted(out_category.message)
            debit = self.transactions.record(
                source.id,
                out_category.value,
                amount_cents,
                when,
                self._describe("Transfer to", target, rate, converted, note),
            )
            if isinstance(debit, Err):
                raise TransferAborted(f"debit: {debit.message}")

            in_category = self.categories.transfer_category(TransactionType.income)
            if isinstance(in_category, Err):
                raise TransferAborted(in_category.message)
            credit = self.transactions.record(
                target.id,
                in_category.value,
                credited_cents,
                when,
                self._describe("Transfer from", source, rate, converted, note),
            )
            if isinstance(credit, Err):
                raise TransferAborted(f"credit: {credit.message}")

            self.session.commit()
        except (TransferAborted, SQLAlchemyError) as exc:
            self.session.rollback()
            logger.error(
                f"transfer_failed: user={self.user_id} from={from_account_id} "
                f"to={to_account_id} amount_cents={amount_cents}: {exc}"
            )
            return Err(ErrorKind.transfer_failed, "Transfer failed")

        logger.info(
            f"transfer_committed: user={self.user_id} from={source.id} to={target.id} "
            f"debited={amount_cents} credited={credited_cents} rate={rate}"
        )
        return Ok(
            TransferReceipt(
                debit_id=debit.value.id,
                credit_id=credit.value.id,
                debited_cents=amount_cents,
                credited_cents=credited_cents,
                exchange_rate=rate,
            )
        )
