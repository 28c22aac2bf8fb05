import datetime as dt
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    HttpUrl,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

from models import BudgetAccountType, TransactionType


def _strip(value: object) -> object:
    return value.strip() if isinstance(value, str) else value


StrippedStr = Annotated[str, BeforeValidator(_strip)]
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class UserCreate(ApiModel):
    name: StrippedStr = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginIn(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(ApiModel):
    name: StrippedStr = Field(..., min_length=1, max_length=100)
    email: EmailStr
    image: Optional[HttpUrl] = None


class CategoryIn(ApiModel):
    name: StrippedStr = Field(..., min_length=1, max_length=50)


class BudgetAccountIn(ApiModel):
    name: StrippedStr = Field(..., min_length=1, max_length=50)
    type: BudgetAccountType
    balance: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    color: Optional[str] = Field(default=None, max_length=20)
    icon: Optional[str] = Field(default=None, max_length=50)


class BudgetAccountUpdate(ApiModel):
    name: Optional[StrippedStr] = Field(default=None, min_length=1, max_length=50)
    type: Optional[BudgetAccountType] = None
    balance: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=14, decimal_places=2
    )
    color: Optional[str] = Field(default=None, max_length=20)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class TransactionIn(ApiModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    description: StrippedStr = Field(..., min_length=1, max_length=500)
    date: dt.datetime
    category_id: int
    type: TransactionType
    budget_account_id: Optional[int] = None


class ChatMessage(ApiModel):
    role: Literal["user", "assistant"]
    content: StrippedStr = Field(..., min_length=1)


class ChatRequest(ApiModel):
    messages: list[ChatMessage] = Field(default_factory=list)


class UserOut(ApiModel):
    id: int
    name: Optional[str]
    email: str
    image: Optional[str]
    created_at: dt.datetime
    updated_at: dt.datetime


class ProfileCounts(ApiModel):
    transactions: int
    categories: int
    budget_accounts: int


class ProfileOut(UserOut):
    counts: ProfileCounts


class RegisterOut(ApiModel):
    user: UserOut
    message: str


class TokenOut(ApiModel):
    token: str
    token_type: str = "bearer"
    expires_in: int


class CategoryOut(ApiModel):
    id: int
    name: str
    user_id: int
    created_at: dt.datetime
    updated_at: dt.datetime


class BudgetAccountOut(ApiModel):
    id: int
    name: str
    type: BudgetAccountType
    balance: Money
    color: Optional[str]
    icon: Optional[str]
    is_active: bool
    user_id: int
    created_at: dt.datetime
    updated_at: dt.datetime
    transaction_count: Optional[int] = None


class CategoryRef(ApiModel):
    id: int
    name: str


class BudgetAccountRef(ApiModel):
    id: int
    name: str
    type: BudgetAccountType


class TransactionOut(ApiModel):
    id: int
    amount: Money
    type: TransactionType
    description: str
    date: dt.datetime
    user_id: int
    category_id: int
    budget_account_id: Optional[int]
    created_at: dt.datetime
    updated_at: dt.datetime
    category: Optional[CategoryRef] = None
    budget_account: Optional[BudgetAccountRef] = None


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionPage(ApiModel):
    transactions: list[TransactionOut]
    pagination: Pagination


class DashboardStats(ApiModel):
    income: Money
    expense: Money
    balance: Money


class CategorySlice(ApiModel):
    name: str
    value: Money


class SeriesPoint(ApiModel):
    date: str
    income: Money
    expense: Money


class DashboardOut(ApiModel):
    stats: DashboardStats
    recent_transactions: list[TransactionOut]
    category_data: list[CategorySlice]
    time_series_data: list[SeriesPoint]
    budget_accounts: list[BudgetAccountOut]


class InsightOut(ApiModel):
    insight: str
