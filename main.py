import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import SESSION_COOKIE, issue_session_token, read_session_token
from config import Settings, get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import build_session_factory, create_db_engine
from fx_rates import FxRateService
from models import Account, Category, Transaction, TransactionType
from parsing import format_timestamp, parse_amount, parse_date, parse_rate
from periods import resolve_period_or_default
from results import Err, ErrorKind, Result
from schemas import AccountCreateIn, AccountIn, CategoryIn, LoginIn, RegisterIn
from services import (
    AccountService,
    CategoryService,
    MetricsService,
    TransactionFilters,
    TransactionService,
    TransferService,
    UserService,
    local_now,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    ErrorKind.validation: 400,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.storage: 500,
    ErrorKind.transfer_failed: 500,
}


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_user_id(request: Request) -> int:
    settings = app_settings(request)
    user_id = read_session_token(
        settings.secret_key,
        request.cookies.get(SESSION_COOKIE),
        settings.session_max_age_hours,
    )
    if user_id is None:
        raise HTTPException(status_code=401, detail="Sign in first")
    return user_id


async def checked_form(request: Request, user_id: int):
    form = await request.form()
    token = form.get("csrf_token", "")
    if not validate_csrf_token(app_settings(request).secret_key, token, user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def unwrap(result: Result):
    if isinstance(result, Err):
        raise HTTPException(status_code=ERROR_STATUS[result.kind], detail=result.message)
    return result.value


def error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if errors:
            return str(errors[0]["msg"]).removeprefix("Value error, ")
    if isinstance(exc, KeyError):
        return f"Missing field: {exc.args[0]}"
    return str(exc)


def optional_int(value) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    return int(value)


def changed(payload: dict, trigger: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers={"HX-Trigger": trigger})


def account_payload(account: Account, summary: Optional[dict] = None) -> dict:
    data = {"id": account.id, "name": account.name, "currency": account.currency.value}
    if summary is not None:
        data["summary"] = summary
    return data


def category_payload(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "description": category.description,
        "is_system": category.is_system,
    }


def transaction_payload(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "type": txn.category.type.value if txn.category else None,
        "amount_cents": txn.amount_cents,
        "occurred_at": format_timestamp(txn.occurred_at),
        "date": txn.date.isoformat(),
        "description": txn.description,
    }


@router.post("/auth/register")
async def register(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    try:
        data = RegisterIn(
            email=form.get("email", ""),
            display_name=form.get("display_name", ""),
            password=form.get("password", ""),
            password_confirm=form.get("password_confirm", ""),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    user = unwrap(UserService(db).register(data))
    return JSONResponse(
        {"id": user.id, "email": user.email, "display_name": user.display_name},
        status_code=201,
    )


@router.post("/auth/login")
async def login(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    try:
        data = LoginIn(email=form.get("email", ""), password=form.get("password", ""))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    result = UserService(db).authenticate(data)
    if isinstance(result, Err):
        logger.info(f"login_failed: email={data.email}")
        raise HTTPException(status_code=401, detail=result.message)
    user = result.value
    settings = app_settings(request)
    response = JSONResponse({"id": user.id, "display_name": user.display_name})
    response.set_cookie(
        SESSION_COOKIE,
        issue_session_token(settings.secret_key, user.id),
        max_age=settings.session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return response


@router.post("/auth/logout")
def logout():
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.get("/api/csrf-token")
def csrf_token(request: Request, user_id: int = Depends(current_user_id)):
    return {"csrf_token": generate_csrf_token(app_settings(request).secret_key, user_id)}


@router.get("/api/currencies")
def api_currencies():
    return {"currencies": AccountService.allowed_currencies()}


@router.get("/api/accounts")
def api_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    metrics = MetricsService(db, user_id)
    return {
        "items": [
            account_payload(account, metrics.account_summary(account.id))
            for account in AccountService(db, user_id).list_all()
        ]
    }


@router.get("/api/accounts/{account_id}")
def api_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    account = unwrap(AccountService(db, user_id).get(account_id))
    data = account_payload(account, MetricsService(db, user_id).account_summary(account_id))
    data["recent_transactions"] = [
        transaction_payload(txn)
        for txn in TransactionService(db, user_id).recent(account_id)
    ]
    return data


@router.post("/accounts")
async def create_account(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        raw_balance = str(form.get("initial_balance") or "").strip()
        data = AccountCreateIn(
            name=form.get("name", ""),
            currency=form.get("currency", ""),
            initial_balance_cents=parse_amount(raw_balance) if raw_balance else 0,
        )
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    service = AccountService(db, user_id, timezone=app_settings(request).timezone)
    result = service.create(data)
    account = unwrap(result)
    payload = account_payload(account)
    if result.warning:
        payload["warning"] = result.warning
    return changed(payload, "accounts-changed", status_code=201)


@router.post("/accounts/{account_id}")
async def update_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        data = AccountIn(name=form.get("name", ""), currency=form.get("currency", ""))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    account = unwrap(AccountService(db, user_id).update(account_id, data))
    return changed(account_payload(account), "accounts-changed")


@router.post("/accounts/{account_id}/delete")
async def delete_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    await checked_form(request, user_id)
    unwrap(AccountService(db, user_id).delete(account_id))
    return Response(status_code=204, headers={"HX-Trigger": "accounts-changed"})


@router.post("/accounts/{account_id}/adjust")
async def adjust_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        amount_cents = parse_amount(
            str(form.get("adjustment_amount") or ""), allow_negative=True
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = AccountService(db, user_id, timezone=app_settings(request).timezone)
    txn_id = unwrap(
        service.adjust_balance(account_id, amount_cents, form.get("description"))
    )
    return changed({"id": txn_id}, "transactions-changed", status_code=201)


@router.get("/api/categories")
def api_categories(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    type_param = request.query_params.get("type")
    category_type = None
    if type_param:
        try:
            category_type = TransactionType(type_param)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Unknown category type") from exc
    service = CategoryService(db, user_id)
    return {
        "items": [
            {
                **category_payload(category),
                "in_use": service.is_used_in_transactions(category.id),
            }
            for category in service.list_all(category_type)
        ]
    }


def category_from_form(form) -> CategoryIn:
    return CategoryIn(
        name=form.get("name", ""),
        type=form.get("type", ""),
        description=form.get("description") or None,
    )


@router.post("/categories")
async def create_category(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        data = category_from_form(form)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    category = unwrap(CategoryService(db, user_id).create(data))
    return changed(category_payload(category), "categories-updated", status_code=201)


@router.post("/categories/{category_id}")
async def update_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        data = category_from_form(form)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    category = unwrap(CategoryService(db, user_id).update(category_id, data))
    return changed(category_payload(category), "categories-updated")


@router.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    await checked_form(request, user_id)
    unwrap(CategoryService(db, user_id).delete(category_id))
    return Response(status_code=204, headers={"HX-Trigger": "categories-updated"})


@router.get("/api/accounts/{account_id}/transactions")
def api_transactions(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    unwrap(AccountService(db, user_id).get(account_id))
    params = request.query_params
    try:
        filters = TransactionFilters(
            category_id=optional_int(params.get("category")),
            start=parse_date(params["start"]) if params.get("start") else None,
            end=parse_date(params["end"]) if params.get("end") else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items = TransactionService(db, user_id).list(account_id, filters)
    return {"items": [transaction_payload(txn) for txn in items]}


@router.post("/transactions")
async def create_transaction(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        account_id = optional_int(form.get("account_id"))
        category_id = optional_int(form.get("category_id"))
        raw_amount = str(form.get("amount") or "").strip()
        amount = parse_amount(raw_amount) if raw_amount else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    txn_id = unwrap(
        TransactionService(db, user_id).create(
            account_id,
            category_id,
            amount,
            form.get("occurred_at"),
            form.get("description"),
        )
    )
    return changed({"id": txn_id}, "transactions-changed", status_code=201)


@router.post("/transactions/{transaction_id}/delete")
async def delete_transaction(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    await checked_form(request, user_id)
    unwrap(TransactionService(db, user_id).delete(transaction_id))
    return Response(status_code=204, headers={"HX-Trigger": "transactions-changed"})


@router.post("/transfers")
async def create_transfer(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    form = await checked_form(request, user_id)
    try:
        from_account_id = optional_int(form.get("from_account_id"))
        to_account_id = optional_int(form.get("to_account_id"))
        amount_cents = parse_amount(str(form.get("amount") or ""))
        rate = parse_rate(form.get("exchange_rate"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    service = TransferService(db, user_id, timezone=app_settings(request).timezone)
    receipt = unwrap(
        service.transfer(
            from_account_id,
            to_account_id,
            amount_cents,
            exchange_rate=rate,
            description=form.get("description"),
        )
    )
    return changed(
        {
            "debit_id": receipt.debit_id,
            "credit_id": receipt.credit_id,
            "debited_cents": receipt.debited_cents,
            "credited_cents": receipt.credited_cents,
            "exchange_rate": str(receipt.exchange_rate),
        },
        "transactions-changed",
        status_code=201,
    )


@router.get("/api/accounts/{account_id}/statistics")
def api_statistics(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    unwrap(AccountService(db, user_id).get(account_id))
    today = local_now(app_settings(request).timezone).date()
    params = request.query_params
    period, warning = resolve_period_or_default(
        params.get("period"), params.get("start"), params.get("end"), today=today
    )
    data = MetricsService(db, user_id).statistics(account_id, period)
    data["period"] = period.slug
    data["warning"] = warning
    return data


@router.get("/api/fx-rate")
def api_fx_rate(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    params = request.query_params
    accounts = AccountService(db, user_id)
    try:
        source = unwrap(accounts.get(int(params["from_account_id"])))
        target = unwrap(accounts.get(int(params["to_account_id"])))
    except (KeyError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Select both accounts") from exc
    settings = app_settings(request)
    try:
        on_date = parse_date(params["date"]) if params.get("date") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    on_date = on_date or local_now(settings.timezone).date()
    try:
        quote = FxRateService(settings).quote(
            source.currency.value, target.currency.value, on_date
        )
    except (RuntimeError, ValueError) as exc:
        raise HTTPException(status_code=502, detail="Exchange rate unavailable") from exc
    return {
        "base": quote.base,
        "quote": quote.quote,
        "rate": str(FxRateService.round_rate(quote.rate)),
        "rate_date": quote.rate_date.isoformat(),
        "provider": quote.provider,
    }


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"storage_error: {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse({"detail": "Storage error, please try again"}, status_code=500)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_db_engine(settings.database_url)

    app = FastAPI(title="Wallet")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.include_router(router)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    return app


def main():
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
