from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import BudgetAccount, BudgetAccountType, Transaction, TransactionType, User
from schemas import BudgetAccountIn, BudgetAccountUpdate, CategoryIn, TransactionIn
from services import (
    BudgetAccountService,
    CategoryService,
    InvalidReferenceError,
    TransactionService,
    total_pages,
)


def _user(session: Session, email: str = "ani@example.com") -> int:
    user = User(name="Ani", email=email)
    session.add(user)
    session.commit()
    return user.id


def _txn(category_id: int, amount: str, kind: TransactionType, **extra) -> TransactionIn:
    return TransactionIn(
        amount=Decimal(amount),
        description=extra.pop("description", "Test"),
        date=extra.pop("date", datetime(2025, 2, 1, 10, 0)),
        category_id=category_id,
        type=kind,
        **extra,
    )


def test_expense_reduces_account_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        account = BudgetAccountService(session, user_id).create(
            BudgetAccountIn(name="BCA", type=BudgetAccountType.bank, balance=Decimal("1000"))
        )
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))

        txn = TransactionService(session, user_id).create(
            _txn(category.id, "200", TransactionType.expense, budget_account_id=account.id)
        )

        assert session.get(BudgetAccount, account.id).balance == Decimal("800")
        assert txn.budget_account.id == account.id
        assert txn.category.name == "Food"


def test_income_increases_account_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        account = BudgetAccountService(session, user_id).create(
            BudgetAccountIn(name="Dana", type=BudgetAccountType.ewallet, balance=Decimal("50"))
        )
        category = CategoryService(session, user_id).create(CategoryIn(name="Salary"))

        TransactionService(session, user_id).create(
            _txn(category.id, "125.50", TransactionType.income, budget_account_id=account.id)
        )

        assert session.get(BudgetAccount, account.id).balance == Decimal("175.50")


def test_transaction_without_account_leaves_balances_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        account = BudgetAccountService(session, user_id).create(
            BudgetAccountIn(name="Cash", type=BudgetAccountType.cash, balance=Decimal("300"))
        )
        category = CategoryService(session, user_id).create(CategoryIn(name="Snacks"))

        txn = TransactionService(session, user_id).create(
            _txn(category.id, "20", TransactionType.expense)
        )

        assert txn.budget_account_id is None
        assert session.get(BudgetAccount, account.id).balance == Decimal("300")


def test_rejects_category_and_account_of_other_users() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _user(session)
        intruder = _user(session, email="budi@example.com")
        category = CategoryService(session, owner).create(CategoryIn(name="Food"))
        account = BudgetAccountService(session, owner).create(
            BudgetAccountIn(name="BCA", type=BudgetAccountType.bank, balance=Decimal("1000"))
        )
        own_category = CategoryService(session, intruder).create(CategoryIn(name="Food"))

        with pytest.raises(InvalidReferenceError, match="Category not found"):
            TransactionService(session, intruder).create(
                _txn(category.id, "10", TransactionType.expense)
            )
        with pytest.raises(InvalidReferenceError, match="Budget account not found"):
            TransactionService(session, intruder).create(
                _txn(own_category.id, "10", TransactionType.expense, budget_account_id=account.id)
            )

        assert session.execute(select(func.count(Transaction.id))).scalar_one() == 0
        assert session.get(BudgetAccount, account.id).balance == Decimal("1000")


def test_rejects_inactive_account() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
        account = BudgetAccountService(session, user_id).create(
            BudgetAccountIn(name="Old", type=BudgetAccountType.bank, balance=Decimal("5"))
        )
        BudgetAccountService(session, user_id).update(
            account.id, BudgetAccountUpdate(is_active=False)
        )

        with pytest.raises(InvalidReferenceError):
            TransactionService(session, user_id).create(
                _txn(category.id, "1", TransactionType.expense, budget_account_id=account.id)
            )


def test_aware_dates_are_stored_as_utc() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
        jakarta = timezone(timedelta(hours=7))

        txn = TransactionService(session, user_id).create(
            _txn(
                category.id,
                "10",
                TransactionType.expense,
                date=datetime(2025, 2, 1, 6, 0, tzinfo=jakarta),
            )
        )

        assert txn.date == datetime(2025, 1, 31, 23, 0)


def test_list_page_orders_newest_first_and_counts_all() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
        service = TransactionService(session, user_id)
        for day in range(1, 13):
            service.create(
                _txn(
                    category.id,
                    str(day),
                    TransactionType.expense,
                    date=datetime(2025, 1, day),
                    description=f"Day {day}",
                )
            )

        first, total = service.list_page(page=1, limit=5)
        last, _ = service.list_page(page=3, limit=5)

        assert total == 12
        assert [t.description for t in first] == [f"Day {d}" for d in (12, 11, 10, 9, 8)]
        assert [t.description for t in last] == ["Day 2", "Day 1"]
        assert total_pages(total, 5) == 3


def test_delete_keeps_account_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _user(session)
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
        account = BudgetAccountService(session, user_id).create(
            BudgetAccountIn(name="BCA", type=BudgetAccountType.bank, balance=Decimal("100"))
        )
        txn = TransactionService(session, user_id).create(
            _txn(category.id, "40", TransactionType.expense, budget_account_id=account.id)
        )

        TransactionService(session, user_id).delete(txn.id)

        assert session.get(Transaction, txn.id) is None
        assert session.get(BudgetAccount, account.id).balance == Decimal("60")
