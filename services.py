from __future__ import annotations

import logging
import math
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload, sessionmaker

from auth import hash_password, verify_password
from models import BudgetAccount, Category, Transaction, TransactionType, User
from periods import resolve_time_range
from schemas import (
    BudgetAccountIn,
    BudgetAccountUpdate,
    CategoryIn,
    ProfileUpdate,
    TransactionIn,
    UserCreate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")
UNCATEGORIZED = "Uncategorized"


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    def __init__(self, message: str, blocking_count: Optional[int] = None) -> None:
        super().__init__(message)
        self.blocking_count = blocking_count


class InvalidReferenceError(ValueError):
    pass


def to_money(value: object) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _find_by_email(self, email: str, exclude_id: Optional[int] = None) -> Optional[User]:
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        return self.session.scalar(stmt)

    def register(self, data: UserCreate) -> User:
        if self._find_by_email(data.email):
            raise ConflictError("User with this email already exists")
        user = User(
            name=data.name,
            email=data.email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self._find_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            return None
        return user

    def get(self) -> User:
        user = self.session.get(User, self.user_id) if self.user_id else None
        if not user:
            raise NotFoundError("User not found")
        return user

    def counts(self) -> dict[str, int]:
        def count_of(model) -> int:
            stmt = select(func.count(model.id)).where(model.user_id == self.user_id)
            return int(self.session.execute(stmt).scalar_one() or 0)

        return {
            "transactions": count_of(Transaction),
            "categories": count_of(Category),
            "budget_accounts": count_of(BudgetAccount),
        }

    def update_profile(self, data: ProfileUpdate) -> User:
        user = self.get()
        if data.email.lower() != user.email.lower() and self._find_by_email(
            data.email, exclude_id=user.id
        ):
            raise ConflictError("Email already exists")
        user.name = data.name
        user.email = data.email
        if data.image is not None:
            user.image = str(data.image)
        self.session.commit()
        self.session.refresh(user)
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at.desc(), Category.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == data.name.lower(),
            )
        )
        if existing:
            raise ConflictError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def transaction_count(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.transaction_count(category.id)
        if in_use:
            raise ConflictError(
                f"Cannot delete category. It is being used by {in_use} transaction(s).",
                blocking_count=in_use,
            )
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: user_id={self.user_id} category_id={category_id}")


@dataclass(frozen=True)
class DeleteOutcome:
    soft: bool
    transaction_count: int


class BudgetAccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_active(self) -> list[tuple[BudgetAccount, int]]:
        txn_count = func.count(Transaction.id).label("transaction_count")
        stmt = (
            select(BudgetAccount, txn_count)
            .outerjoin(Transaction, Transaction.budget_account_id == BudgetAccount.id)
            .where(
                BudgetAccount.user_id == self.user_id,
                BudgetAccount.is_active.is_(True),
            )
            .group_by(BudgetAccount.id)
            .order_by(BudgetAccount.created_at.desc(), BudgetAccount.id.desc())
        )
        return [(row[0], int(row[1] or 0)) for row in self.session.execute(stmt).all()]

    def top_active(self, limit: int = 5) -> list[BudgetAccount]:
        stmt = (
            select(BudgetAccount)
            .where(
                BudgetAccount.user_id == self.user_id,
                BudgetAccount.is_active.is_(True),
            )
            .order_by(BudgetAccount.balance.desc(), BudgetAccount.id.asc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> BudgetAccount:
        account = self.session.scalar(
            select(BudgetAccount).where(
                BudgetAccount.id == account_id,
                BudgetAccount.user_id == self.user_id,
            )
        )
        if not account:
            raise NotFoundError("Budget account not found")
        return account

    def transaction_count(self, account_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.budget_account_id == account_id,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _ensure_name_free(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(BudgetAccount.id).where(
            BudgetAccount.user_id == self.user_id,
            BudgetAccount.is_active.is_(True),
            func.lower(BudgetAccount.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetAccount.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("Account name already exists")

    def create(self, data: BudgetAccountIn) -> BudgetAccount:
        self._ensure_name_free(data.name)
        account = BudgetAccount(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            balance=data.balance,
            color=data.color,
            icon=data.icon,
            is_active=True,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: BudgetAccountUpdate) -> BudgetAccount:
        account = self.get(account_id)
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in ("color", "icon")
        }
        if not changes:
            return account

        will_be_active = changes.get("is_active", account.is_active)
        if will_be_active and ("name" in changes or "is_active" in changes):
            self._ensure_name_free(changes.get("name", account.name), exclude_id=account.id)

        for key, value in changes.items():
            setattr(account, key, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> DeleteOutcome:
        account = self.get(account_id)
        in_use = self.transaction_count(account.id)
        if in_use:
            account.is_active = False
            self.session.commit()
            logger.info(
                f"budget_account_deactivated: user_id={self.user_id} "
                f"account_id={account_id} transaction_count={in_use}"
            )
            return DeleteOutcome(soft=True, transaction_count=in_use)

        self.session.delete(account)
        self.session.commit()
        logger.info(f"budget_account_deleted: user_id={self.user_id} account_id={account_id}")
        return DeleteOutcome(soft=False, transaction_count=0)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _with_refs(self):
        return select(Transaction).options(
            joinedload(Transaction.category), joinedload(Transaction.budget_account)
        )

    def create(self, data: TransactionIn) -> Transaction:
        category = self.session.scalar(
            select(Category).where(
                Category.id == data.category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise InvalidReferenceError("Category not found")

        account: Optional[BudgetAccount] = None
        if data.budget_account_id is not None:
            account = self.session.scalar(
                select(BudgetAccount).where(
                    BudgetAccount.id == data.budget_account_id,
                    BudgetAccount.user_id == self.user_id,
                    BudgetAccount.is_active.is_(True),
                )
            )
            if not account:
                raise InvalidReferenceError("Budget account not found")

        delta = data.amount if data.type == TransactionType.income else -data.amount
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            type=data.type,
            description=data.description,
            date=_naive_utc(data.date),
            category_id=category.id,
            budget_account_id=account.id if account else None,
        )
        # Balance adjustment and insert commit together or not at all.
        try:
            if account is not None:
                self.session.execute(
                    update(BudgetAccount)
                    .where(BudgetAccount.id == account.id)
                    .values(balance=BudgetAccount.balance + delta)
                )
            self.session.add(txn)
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if account is not None:
            self.session.refresh(account)
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"balance_delta={delta if account is not None else 0}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            self._with_refs().where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list_page(self, page: int = 1, limit: int = 10) -> tuple[list[Transaction], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        stmt = (
            self._with_refs()
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )
        return items, total

    def recent(self, limit: int = 10, account_id: Optional[int] = None) -> list[Transaction]:
        stmt = self._with_refs().where(Transaction.user_id == self.user_id)
        if account_id is not None:
            stmt = stmt.where(Transaction.budget_account_id == account_id)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc()).limit(limit)
        return self.session.scalars(stmt).all()

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(
            f"transaction_deleted: user_id={self.user_id} transaction_id={transaction_id}"
        )


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def top_categories(
    rows: Iterable[tuple[Optional[str], object]], limit: int = 5
) -> list[dict[str, object]]:
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for name, amount in rows:
        totals[name or UNCATEGORIZED] += to_money(amount)
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [{"name": name, "value": value} for name, value in ranked[:limit]]


def build_time_series(
    rows: Iterable[tuple[datetime, TransactionType, object]],
) -> list[dict[str, object]]:
    by_day: dict[str, dict[str, object]] = {}
    for moment, txn_type, amount in rows:
        key = moment.date().isoformat()
        point = by_day.setdefault(key, {"date": key, "income": ZERO, "expense": ZERO})
        bucket = "income" if txn_type == TransactionType.income else "expense"
        point[bucket] = point[bucket] + to_money(amount)

    series = sorted(by_day.values(), key=lambda p: p["date"])
    if len(series) == 1:
        # A lone point gives the chart a zero-width domain.
        only = datetime.fromisoformat(series[0]["date"])
        before = (only - timedelta(days=1)).date().isoformat()
        after = (only + timedelta(days=1)).date().isoformat()
        series = [
            {"date": before, "income": ZERO, "expense": ZERO},
            series[0],
            {"date": after, "income": ZERO, "expense": ZERO},
        ]
    return series


@dataclass
class DashboardView:
    stats: dict[str, Decimal]
    recent_transactions: list[Transaction] = field(default_factory=list)
    category_data: list[dict[str, object]] = field(default_factory=list)
    time_series_data: list[dict[str, object]] = field(default_factory=list)
    budget_accounts: list[BudgetAccount] = field(default_factory=list)


class DashboardService:
    """Builds the dashboard view-model from independent owner-scoped reads.

    Each read runs on its own session in a worker thread; the first failing
    read propagates out of ``build`` and no partial view is returned.
    """

    recent_limit = 5
    top_accounts_limit = 5
    top_categories_limit = 5

    def __init__(
        self, session_factory: sessionmaker, user_id: int, *, max_workers: int = 6
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.max_workers = max_workers

    def _read(self, query: Callable[..., T], *args) -> T:
        with self.session_factory() as session:
            return query(session, *args)

    def _scoped(self, stmt, account_id: Optional[int]):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if account_id is not None:
            stmt = stmt.where(Transaction.budget_account_id == account_id)
        return stmt

    def _total(
        self, session: Session, txn_type: TransactionType, account_id: Optional[int]
    ) -> Decimal:
        stmt = self._scoped(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.type == txn_type
            ),
            account_id,
        )
        return to_money(session.execute(stmt).scalar_one())

    def _recent(self, session: Session, account_id: Optional[int]) -> list[Transaction]:
        return TransactionService(session, self.user_id).recent(
            self.recent_limit, account_id=account_id
        )

    def _top_accounts(self, session: Session) -> list[BudgetAccount]:
        return BudgetAccountService(session, self.user_id).top_active(
            self.top_accounts_limit
        )

    def _expense_by_category(
        self, session: Session, account_id: Optional[int]
    ) -> list[tuple[Optional[str], object]]:
        stmt = self._scoped(
            select(Category.name, func.sum(Transaction.amount))
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(Transaction.type == TransactionType.expense)
            .group_by(Transaction.category_id, Category.name),
            account_id,
        )
        return [(row[0], row[1]) for row in session.execute(stmt).all()]

    def _window(
        self, session: Session, start: datetime, account_id: Optional[int]
    ) -> list[tuple[datetime, TransactionType, object]]:
        stmt = self._scoped(
            select(Transaction.date, Transaction.type, Transaction.amount)
            .where(Transaction.date >= start)
            .order_by(Transaction.date.asc()),
            account_id,
        )
        return [(row[0], row[1], row[2]) for row in session.execute(stmt).all()]

    def _check_account(self, session: Session, account_id: int) -> None:
        BudgetAccountService(session, self.user_id).get(account_id)

    def build(
        self,
        account_id: Optional[int] = None,
        time_range: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> DashboardView:
        period = resolve_time_range(time_range, now=now)
        if account_id is not None:
            self._read(self._check_account, account_id)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            income_f = pool.submit(self._read, self._total, TransactionType.income, account_id)
            expense_f = pool.submit(self._read, self._total, TransactionType.expense, account_id)
            recent_f = pool.submit(self._read, self._recent, account_id)
            accounts_f = pool.submit(self._read, self._top_accounts)
            categories_f = pool.submit(self._read, self._expense_by_category, account_id)
            window_f = pool.submit(self._read, self._window, period.start, account_id)

            income = income_f.result()
            expense = expense_f.result()
            recent = recent_f.result()
            accounts = accounts_f.result()
            category_rows = categories_f.result()
            window_rows = window_f.result()

        return DashboardView(
            stats={"income": income, "expense": expense, "balance": income - expense},
            recent_transactions=recent,
            category_data=top_categories(category_rows, self.top_categories_limit),
            time_series_data=build_time_series(window_rows),
            budget_accounts=accounts,
        )
