import logging
from typing import Optional, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from assistant import (
    AssistantError,
    ChatService,
    ConversationError,
    GeminiGateway,
    InsightService,
    relay_stream,
)
from auth import issue_session_token, read_session_token
from cache import TTLCache
from config import get_settings
from database import SessionLocal
from models import User
from schemas import (
    BudgetAccountIn,
    BudgetAccountOut,
    BudgetAccountUpdate,
    CategoryIn,
    CategoryOut,
    CategorySlice,
    ChatRequest,
    DashboardOut,
    DashboardStats,
    InsightOut,
    LoginIn,
    Pagination,
    ProfileCounts,
    ProfileOut,
    ProfileUpdate,
    RegisterOut,
    SeriesPoint,
    TokenOut,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    UserCreate,
    UserOut,
)
from services import (
    BudgetAccountService,
    CategoryService,
    ConflictError,
    DashboardService,
    InvalidReferenceError,
    NotFoundError,
    TransactionService,
    UserService,
    total_pages,
)
from validation import FieldError, Ok, ValidationFailed, validate

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SESSION_COOKIE = "session"
INSIGHT_CACHE_CONTROL = "s-maxage=300, stale-while-revalidate=600"

app = FastAPI(title="DanaWise")
app.state.insight_cache = TTLCache(get_settings().insight_ttl_secs)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_insight_cache(request: Request) -> TTLCache:
    return request.app.state.insight_cache


def get_assistant_gateway() -> Optional[GeminiGateway]:
    settings = get_settings()
    if not settings.gemini_api_key:
        return None
    return GeminiGateway(settings.gemini_api_key, settings.gemini_model)


def get_current_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    token = None
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        token = header[len("Bearer ") :].strip()
    if not token:
        token = request.cookies.get(SESSION_COOKIE)

    user_id = read_session_token(token) if token else None
    if user_id is None or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


async def parse_body(request: Request, schema: type[M]) -> M:
    try:
        payload = await request.json()
    except ValueError as exc:
        failed = ValidationFailed((FieldError("body", "Invalid JSON body"),))
        raise HTTPException(status_code=400, detail=failed.as_payload()) from exc

    result = validate(schema, payload)
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, ValidationFailed):
        raise HTTPException(status_code=400, detail=result.as_payload())
    raise result.cause


def conflict_detail(exc: ConflictError) -> dict[str, object]:
    detail: dict[str, object] = {"message": str(exc)}
    if exc.blocking_count is not None:
        detail["transactionCount"] = exc.blocking_count
        detail["canDelete"] = False
    return detail


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = tuple(
        FieldError(
            ".".join(str(p) for p in err.get("loc", ()) if p not in ("query", "path", "body"))
            or "body",
            err.get("msg", "Invalid value"),
        )
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=400, content={"detail": ValidationFailed(errors).as_payload()}
    )


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(AssistantError)
@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(
        f"request_failed: method={request.method} path={request.url.path} "
        f"error={type(exc).__name__}",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Accounts and sessions


@app.post("/api/user", status_code=201, response_model=RegisterOut)
async def register_user(request: Request, db: Session = Depends(get_db)):
    data = await parse_body(request, UserCreate)
    try:
        user = UserService(db).register(data)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RegisterOut(
        user=UserOut.model_validate(user), message="User created successfully"
    )


@app.post("/api/auth/login", response_model=TokenOut)
async def login(request: Request, response: Response, db: Session = Depends(get_db)):
    data = await parse_body(request, LoginIn)
    user = UserService(db).authenticate(data.email, data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    max_age = get_settings().session_max_age_secs
    token = issue_session_token(user.id)
    response.set_cookie(
        SESSION_COOKIE, token, max_age=max_age, httponly=True, samesite="lax"
    )
    logger.info(f"session_issued: user_id={user.id}")
    return TokenOut(token=token, expires_in=max_age)


def _profile_out(service: UserService, user: User) -> ProfileOut:
    base = UserOut.model_validate(user).model_dump()
    return ProfileOut(**base, counts=ProfileCounts(**service.counts()))


@app.get("/api/user/profile", response_model=ProfileOut)
def get_profile(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    service = UserService(db, user_id)
    try:
        user = service.get()
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _profile_out(service, user)


@app.put("/api/user/profile", response_model=ProfileOut)
async def update_profile(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = await parse_body(request, ProfileUpdate)
    service = UserService(db, user_id)
    try:
        user = service.update_profile(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=400, detail=conflict_detail(exc)) from exc
    return _profile_out(service, user)


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return [CategoryOut.model_validate(c) for c in CategoryService(db, user_id).list_all()]


@app.post("/api/categories", status_code=201, response_model=CategoryOut)
async def create_category(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = await parse_body(request, CategoryIn)
    try:
        category = CategoryService(db, user_id).create(data)
    except ConflictError as exc:
        raise HTTPException(status_code=400, detail=conflict_detail(exc)) from exc
    return CategoryOut.model_validate(category)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=400, detail=conflict_detail(exc)) from exc
    return {"message": "Category deleted successfully"}


# Budget accounts


def _account_out(account, transaction_count: Optional[int] = None) -> BudgetAccountOut:
    out = BudgetAccountOut.model_validate(account)
    out.transaction_count = transaction_count
    return out


@app.get("/api/budget-accounts", response_model=list[BudgetAccountOut])
def list_budget_accounts(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return [
        _account_out(account, count)
        for account, count in BudgetAccountService(db, user_id).list_active()
    ]


@app.post("/api/budget-accounts", status_code=201, response_model=BudgetAccountOut)
async def create_budget_account(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = await parse_body(request, BudgetAccountIn)
    try:
        account = BudgetAccountService(db, user_id).create(data)
    except ConflictError as exc:
        raise HTTPException(status_code=400, detail=conflict_detail(exc)) from exc
    return _account_out(account, 0)


@app.put("/api/budget-accounts/{account_id}", response_model=BudgetAccountOut)
async def update_budget_account(
    account_id: int,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = await parse_body(request, BudgetAccountUpdate)
    service = BudgetAccountService(db, user_id)
    try:
        account = service.update(account_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=400, detail=conflict_detail(exc)) from exc
    return _account_out(account, service.transaction_count(account.id))


@app.delete("/api/budget-accounts/{account_id}")
def delete_budget_account(
    account_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        outcome = BudgetAccountService(db, user_id).delete(account_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if outcome.soft:
        return {
            "message": "Budget account deactivated successfully",
            "transactionCount": outcome.transaction_count,
        }
    return {"message": "Budget account deleted successfully"}


# Transactions


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = 1,
    limit: int = 10,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    items, total = TransactionService(db, user_id).list_page(page, limit)
    return TransactionPage(
        transactions=[TransactionOut.model_validate(t) for t in items],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=total_pages(total, limit)
        ),
    )


@app.post("/api/transactions", status_code=201, response_model=TransactionOut)
async def create_transaction(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = await parse_body(request, TransactionIn)
    try:
        txn = TransactionService(db, user_id).create(data)
    except InvalidReferenceError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionOut.model_validate(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


# Dashboard and assistant


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(
    account_id: Optional[int] = Query(default=None, alias="accountId"),
    time_range: Optional[str] = Query(default=None, alias="timeRange"),
    user_id: int = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    service = DashboardService(session_factory, user_id)
    try:
        view = service.build(account_id=account_id, time_range=time_range)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return DashboardOut(
        stats=DashboardStats(**view.stats),
        recent_transactions=[
            TransactionOut.model_validate(t) for t in view.recent_transactions
        ],
        category_data=[CategorySlice(**c) for c in view.category_data],
        time_series_data=[SeriesPoint(**p) for p in view.time_series_data],
        budget_accounts=[_account_out(a) for a in view.budget_accounts],
    )


@app.get("/api/insight", response_model=InsightOut)
def insight(
    response: Response,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_insight_cache),
    gateway: Optional[GeminiGateway] = Depends(get_assistant_gateway),
):
    service = InsightService(
        db, user_id, gateway, cache, language=get_settings().assistant_language
    )
    text = service.get_insight()
    response.headers["Cache-Control"] = INSIGHT_CACHE_CONTROL
    return InsightOut(insight=text)


@app.post("/api/chat")
async def chat(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: Optional[GeminiGateway] = Depends(get_assistant_gateway),
):
    if gateway is None:
        logger.error("chat_unavailable: reason=missing_api_key")
        return JSONResponse(
            status_code=500, content={"detail": "Assistant API key not configured"}
        )

    data = await parse_body(request, ChatRequest)
    service = ChatService(db, user_id, language=get_settings().assistant_language)
    try:
        turn = service.prepare(data.messages)
    except ConversationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(f"chat_started: user_id={user_id} turns={len(data.messages)}")
    chunks = gateway.stream_chat(turn.history, turn.message)
    return StreamingResponse(
        relay_stream(chunks, source=f"user:{user_id}"),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache"},
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
