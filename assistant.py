"""Gemini-backed financial assistant.

Two entry points share the same grounding data, the caller's own
transactions:

* ``InsightService`` asks for one short tip and caches it per user.
* ``ChatService`` prepares a conversation whose reply is streamed back
  through ``relay_stream``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Iterable, Optional

import google.generativeai as genai
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from cache import TTLCache
from models import Transaction, TransactionType
from schemas import ChatMessage

logger = logging.getLogger(__name__)

NO_DATA_INSIGHT = "No transaction data available to analyze."
INSIGHT_SAMPLE_SIZE = 10
CHAT_CONTEXT_SIZE = 20
ASSISTANT_GREETING = (
    "Hi! I'm Dana, your AI finance assistant 👋\n\n"
    "I can help you analyse your spending patterns, keep track of your income "
    "and expenses, and find ways to improve your financial health.\n\n"
    "What can I help you with today? 😊"
)
FALLBACK_REPLY = (
    "Sorry, something went wrong while preparing the reply. Please try again."
)


class AssistantError(RuntimeError):
    pass


class ConversationError(ValueError):
    pass


def format_rupiah(amount: Decimal) -> str:
    sign = "-" if amount < 0 else ""
    amount = abs(amount).quantize(Decimal("0.01"))
    whole, _, cents = f"{amount:f}".partition(".")
    groups = f"{int(whole):,}".replace(",", ".")
    if cents and cents != "00":
        return f"{sign}Rp{groups},{cents.rstrip('0')}"
    return f"{sign}Rp{groups}"


def _chunk_text(chunk) -> str:
    parts = []
    for candidate in getattr(chunk, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            text = getattr(part, "text", "")
            if text:
                parts.append(text)
        break
    return "".join(parts)


class GeminiGateway:
    def __init__(self, api_key: str, model_name: str) -> None:
        genai.configure(api_key=api_key)
        self.model_name = model_name

    def generate(self, prompt: str) -> str:
        model = genai.GenerativeModel(
            self.model_name,
            generation_config=genai.GenerationConfig(
                temperature=0.7, max_output_tokens=150
            ),
        )
        try:
            response = model.generate_content(prompt)
            return response.text
        except Exception as exc:
            raise AssistantError("Gemini completion failed") from exc

    async def stream_chat(
        self, history: list[dict[str, object]], message: str
    ) -> AsyncIterator[str]:
        model = genai.GenerativeModel(
            self.model_name,
            generation_config=genai.GenerationConfig(
                temperature=0.8, top_p=0.9, top_k=40, max_output_tokens=1200
            ),
        )
        chat = model.start_chat(history=history)
        response = await chat.send_message_async(message, stream=True)
        async for chunk in response:
            text = _chunk_text(chunk)
            if text:
                yield text


def build_insight_prompt(
    rows: Iterable[tuple[TransactionType, Decimal, str]], language: str
) -> str:
    rows = list(rows)
    income = sum(
        (Decimal(amount) for kind, amount, _ in rows if kind == TransactionType.income),
        Decimal("0"),
    )
    expense = sum(
        (Decimal(amount) for kind, amount, _ in rows if kind == TransactionType.expense),
        Decimal("0"),
    )
    recent = json.dumps(
        [
            {"type": kind.value, "amount": float(amount), "description": description}
            for kind, amount, description in rows
        ],
        ensure_ascii=False,
    )
    return (
        f"You are Dana, a friendly AI finance assistant. Reply in {language}. "
        "Analyse these financial statistics and recent transactions, then give "
        "ONE actionable tip. Keep it friendly and under 50 words.\n\n"
        "Statistics:\n"
        f"- Total income: {format_rupiah(income)}\n"
        f"- Total expense: {format_rupiah(expense)}\n"
        f"- Balance: {format_rupiah(income - expense)}\n\n"
        f"Recent transactions: {recent}\n\n"
        "Give a helpful, personal tip to improve their financial health."
    )


class InsightService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        gateway,
        cache: TTLCache[str],
        *,
        language: str = "Bahasa Indonesia",
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.gateway = gateway
        self.cache = cache
        self.language = language

    def _sample(self) -> list[tuple[TransactionType, Decimal, str]]:
        stmt = (
            select(Transaction.type, Transaction.amount, Transaction.description)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(INSIGHT_SAMPLE_SIZE)
        )
        return [(row[0], row[1], row[2]) for row in self.session.execute(stmt).all()]

    def get_insight(self) -> str:
        cached = self.cache.get(self.user_id)
        if cached is not None:
            logger.info(f"insight_cache_hit: user_id={self.user_id}")
            return cached

        rows = self._sample()
        if not rows:
            return NO_DATA_INSIGHT
        if self.gateway is None:
            raise AssistantError("Assistant API key not configured")

        insight = self.gateway.generate(build_insight_prompt(rows, self.language))
        self.cache.set(self.user_id, insight)
        logger.info(f"insight_generated: user_id={self.user_id} sample={len(rows)}")
        return insight


@dataclass(frozen=True)
class ChatTurn:
    history: list[dict[str, object]]
    message: str


class ChatService:
    def __init__(
        self, session: Session, user_id: int, *, language: str = "Bahasa Indonesia"
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.language = language

    def context_transactions(self) -> list[dict[str, object]]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(CHAT_CONTEXT_SIZE)
        )
        return [
            {
                "id": txn.id,
                "amount": float(txn.amount),
                "type": txn.type.value,
                "date": txn.date.isoformat(),
                "description": txn.description,
                "category": {"name": txn.category.name if txn.category else None},
            }
            for txn in self.session.scalars(stmt).all()
        ]

    def system_prompt(self, transactions: list[dict[str, object]]) -> str:
        return (
            'You are "Dana", the friendly and knowledgeable AI finance assistant '
            "of the DanaWise app. Your goal is to help the user understand their "
            "finances and make smarter decisions.\n\n"
            "Guidelines:\n"
            f"- Always answer in friendly, easy to understand {self.language}\n"
            "- Base your answers on the transaction data below and be specific\n"
            "- If you do not know or the data is insufficient, say so honestly\n"
            "- Keep replies concise but helpful\n"
            "- Format money as Rupiah (Rp)\n"
            "- Offer actionable advice where possible\n\n"
            "User transaction data (JSON):\n"
            f"{json.dumps(transactions, indent=2, ensure_ascii=False)}\n\n"
            "This data is private. Only use it to help this user."
        )

    def prepare(self, messages: list[ChatMessage]) -> ChatTurn:
        if not messages:
            raise ConversationError("No messages provided")
        if messages[-1].role != "user":
            raise ConversationError("Last message must be from user")

        history: list[dict[str, object]] = [
            {"role": "user", "parts": [self.system_prompt(self.context_transactions())]},
            {"role": "model", "parts": [ASSISTANT_GREETING]},
        ]
        for msg in messages[:-1]:
            role = "model" if msg.role == "assistant" else "user"
            history.append({"role": role, "parts": [msg.content]})
        return ChatTurn(history=history, message=messages[-1].content)


_END = object()


async def relay_stream(
    chunks: AsyncIterator[str],
    fallback: str = FALLBACK_REPLY,
    *,
    maxsize: int = 16,
    source: Optional[str] = None,
) -> AsyncIterator[str]:
    """Relay ``chunks`` through a bounded queue.

    An upstream failure is logged and replaced by ``fallback``; the relay then
    ends normally. Closing the relay cancels the producer and closes
    ``chunks``.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def produce() -> None:
        try:
            async for chunk in chunks:
                if chunk:
                    await queue.put(chunk)
        except Exception:
            logger.exception(f"chat_stream_failed: source={source}")
            await queue.put(fallback)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        await queue.put(_END)

    producer = asyncio.create_task(produce())
    try:
        while True:
            item = await queue.get()
            if item is _END:
                break
            yield item
    finally:
        if not producer.done():
            producer.cancel()
            logger.info(f"chat_stream_cancelled: source={source}")
        with contextlib.suppress(asyncio.CancelledError):
            await producer
