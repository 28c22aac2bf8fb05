from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from assistant import (
    NO_DATA_INSIGHT,
    AssistantError,
    InsightService,
    build_insight_prompt,
    format_rupiah,
)
from cache import TTLCache
from database import Base
from models import TransactionType, User
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionService


class FakeGateway:
    def __init__(self, reply: str = "Kurangi jajan kopi minggu ini.") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.reply


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _seed(session: Session) -> int:
    user = User(name="Ani", email="ani@example.com")
    session.add(user)
    session.commit()
    category = CategoryService(session, user.id).create(CategoryIn(name="Coffee"))
    TransactionService(session, user.id).create(
        TransactionIn(
            amount=Decimal("35000"),
            description="Latte",
            date=datetime(2025, 5, 1, 8, 0),
            category_id=category.id,
            type=TransactionType.expense,
        )
    )
    return user.id


def test_insight_is_cached_per_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    gateway = FakeGateway()
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)

    with Session(engine) as session:
        user_id = _seed(session)
        service = InsightService(session, user_id, gateway, cache)

        first = service.get_insight()
        second = service.get_insight()

        assert first == second == gateway.reply
        assert len(gateway.prompts) == 1

        clock.now += 300
        service.get_insight()
        assert len(gateway.prompts) == 2


def test_no_transactions_skips_provider() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    gateway = FakeGateway()
    cache = TTLCache(300)

    with Session(engine) as session:
        user = User(name="Ani", email="ani@example.com")
        session.add(user)
        session.commit()

        insight = InsightService(session, user.id, gateway, cache).get_insight()

    assert insight == NO_DATA_INSIGHT
    assert gateway.prompts == []
    assert len(cache) == 0


def test_missing_gateway_is_an_error() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _seed(session)
        with pytest.raises(AssistantError):
            InsightService(session, user_id, None, TTLCache(300)).get_insight()


def test_prompt_carries_totals_and_language() -> None:
    rows = [
        (TransactionType.income, Decimal("5000000"), "Gaji"),
        (TransactionType.expense, Decimal("1250000.5"), "Sewa"),
    ]

    prompt = build_insight_prompt(rows, "English")

    assert "Reply in English" in prompt
    assert "Total income: Rp5.000.000" in prompt
    assert "Total expense: Rp1.250.000,5" in prompt
    assert '"description": "Sewa"' in prompt


def test_format_rupiah() -> None:
    assert format_rupiah(Decimal("0")) == "Rp0"
    assert format_rupiah(Decimal("1234567.80")) == "Rp1.234.567,8"
    assert format_rupiah(Decimal("-2500")) == "-Rp2.500"
