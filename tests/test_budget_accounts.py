from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import BudgetAccount, BudgetAccountType, TransactionType, User
from schemas import BudgetAccountIn, BudgetAccountUpdate, CategoryIn, TransactionIn
from services import (
    BudgetAccountService,
    CategoryService,
    ConflictError,
    TransactionService,
)


def _setup(session: Session) -> int:
    user = User(name="Ani", email="ani@example.com")
    session.add(user)
    session.commit()
    return user.id


def _account(session: Session, user_id: int, name: str, balance: str = "0") -> BudgetAccount:
    return BudgetAccountService(session, user_id).create(
        BudgetAccountIn(name=name, type=BudgetAccountType.bank, balance=Decimal(balance))
    )


def test_account_with_transactions_is_deactivated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _setup(session)
        account = _account(session, user_id, "BCA", "500000")
        category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
        TransactionService(session, user_id).create(
            TransactionIn(
                amount=Decimal("20000"),
                description="Coffee",
                date=datetime(2025, 3, 1, 9, 0),
                category_id=category.id,
                type=TransactionType.expense,
                budget_account_id=account.id,
            )
        )

        outcome = BudgetAccountService(session, user_id).delete(account.id)

        assert outcome.soft is True
        assert outcome.transaction_count == 1
        kept = session.get(BudgetAccount, account.id)
        assert kept is not None
        assert kept.is_active is False
        assert BudgetAccountService(session, user_id).list_active() == []


def test_unused_account_is_removed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _setup(session)
        account = _account(session, user_id, "Wallet")

        outcome = BudgetAccountService(session, user_id).delete(account.id)

        assert outcome.soft is False
        assert session.get(BudgetAccount, account.id) is None


def test_account_names_unique_among_active_accounts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _setup(session)
        first = _account(session, user_id, "GoPay")

        with pytest.raises(ConflictError):
            _account(session, user_id, "gopay")

        BudgetAccountService(session, user_id).update(
            first.id, BudgetAccountUpdate(is_active=False)
        )
        second = _account(session, user_id, "GoPay")
        assert second.is_active is True

        # Reactivating the old one would clash with the new active name.
        with pytest.raises(ConflictError):
            BudgetAccountService(session, user_id).update(
                first.id, BudgetAccountUpdate(is_active=True)
            )


def test_update_changes_only_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _setup(session)
        account = _account(session, user_id, "Cash box", "10000")

        updated = BudgetAccountService(session, user_id).update(
            account.id, BudgetAccountUpdate(name="Cash", color="#22c55e")
        )

        assert updated.name == "Cash"
        assert updated.color == "#22c55e"
        assert updated.balance == Decimal("10000")
        assert updated.type == BudgetAccountType.bank


def test_list_active_reports_transaction_counts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _setup(session)
        used = _account(session, user_id, "Mandiri", "100000")
        _account(session, user_id, "OVO")
        category = CategoryService(session, user_id).create(CategoryIn(name="Bills"))
        for _ in range(2):
            TransactionService(session, user_id).create(
                TransactionIn(
                    amount=Decimal("1000"),
                    description="Fee",
                    date=datetime(2025, 3, 1),
                    category_id=category.id,
                    type=TransactionType.expense,
                    budget_account_id=used.id,
                )
            )

        counts = {
            account.name: count
            for account, count in BudgetAccountService(session, user_id).list_active()
        }
        assert counts == {"Mandiri": 2, "OVO": 0}
