import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import user_id_from_authorization
from balance_sync import BalanceSyncJob
from config import get_settings
from database import SessionLocal
from errors import (
    AccountAccessDenied,
    AccountNotFound,
    BalanceTrackerError,
    DuplicateSnapshot,
    ProviderError,
    Unauthorized,
    ValidationError,
)
from periods import (
    format_timestamp,
    local_now,
    parse_iso_date,
    resolve_history_range,
)
from provider import AggregationProvider, build_provider
from scheduler import SchedulerManager
from schemas import AccountCategoriesIn, AccountUpdateIn, ExchangeTokenIn
from services import (
    AccountService,
    BalanceHistoryService,
    BalanceService,
    CashFlowService,
    MonthlyComparisonService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Balance Tracker")

_ERROR_STATUS: dict[type, int] = {
    ValidationError: 400,
    Unauthorized: 401,
    AccountAccessDenied: 403,
    AccountNotFound: 404,
    DuplicateSnapshot: 409,
    ProviderError: 502,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_provider(request: Request) -> AggregationProvider:
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise RuntimeError("Aggregation provider is not configured")
    return provider


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    return user_id_from_authorization(authorization)


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    app.state.provider = build_provider(settings)
    if settings.sync_enabled:
        app.state.scheduler = SchedulerManager(app.state.provider, settings)
        app.state.scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()


def ok(data: object) -> dict[str, object]:
    return {"success": True, "data": data}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


@app.exception_handler(BalanceTrackerError)
def handle_domain_error(request: Request, exc: BalanceTrackerError) -> JSONResponse:
    status_code = next(
        (status for kind, status in _ERROR_STATUS.items() if isinstance(exc, kind)),
        500,
    )
    if status_code == 500:
        logger.error(
            f"request_failed: path={request.url.path} kind={type(exc).__name__}"
        )
        return _error_response(500, exc.code, "An internal server error occurred")
    return _error_response(status_code, exc.code, str(exc))


@app.exception_handler(RequestValidationError)
def handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return _error_response(400, ValidationError.code, details or "Invalid request")


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"request_failed: path={request.url.path}")
    return _error_response(
        500, "INTERNAL_SERVER_ERROR", "An internal server error occurred"
    )


@app.get("/health")
def health():
    return {"status": "UP"}


@app.get("/balances")
def current_balances(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return jsonable_encoder(ok(BalanceService(db).current_for_user(user_id)))


@app.post("/balances/update")
def update_balances(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    logger.info(f"manual_balance_update: requested_by={user_id}")
    report = BalanceSyncJob(db, provider).run_once()
    # The run spans every user's items; the report stays in the logs.
    return ok(
        {
            "message": "Balance update completed",
            "timestamp": format_timestamp(report.started_at),
        }
    )


@app.get("/balance-history")
def balance_history(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    period = resolve_history_range(
        request.query_params.get("startDate"),
        request.query_params.get("endDate"),
        today=local_now().date(),
    )
    data = BalanceHistoryService(db).history_for_user(user_id, period.start, period.end)
    return jsonable_encoder(ok(data))


@app.get("/cashflow/monthly")
def monthly_cash_flow(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    data = CashFlowService(db, provider).monthly_for_user(user_id, local_now())
    return jsonable_encoder(ok(data))


@app.get("/monthly-comparison")
def monthly_comparison(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    raw = request.query_params.get("date")
    reference = parse_iso_date(raw, "date") if raw else local_now().date()
    data = MonthlyComparisonService(db).compare(user_id, reference)
    return jsonable_encoder(ok(data))


@app.get("/accounts")
def list_accounts(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    accounts = AccountService(db).list_for_user(user_id)
    return jsonable_encoder(ok({"accounts": accounts, "count": len(accounts)}))


@app.get("/accounts/stats")
def account_statistics(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return jsonable_encoder(ok(AccountService(db).statistics(user_id)))


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return jsonable_encoder(ok(AccountService(db).get_for_user(account_id, user_id)))


@app.put("/accounts/{account_id}")
def update_account(
    account_id: int,
    body: AccountUpdateIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    data = AccountService(db).update_account(account_id, user_id, body.changes())
    return jsonable_encoder(ok(data))


@app.put("/accounts/{account_id}/categories")
def update_account_categories(
    account_id: int,
    body: AccountCategoriesIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    result = AccountService(db).update_categories(
        account_id, user_id, body.is_inflow, body.is_outflow
    )
    return ok(result)


@app.delete("/accounts/{account_id}")
def deactivate_account(
    account_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ok(AccountService(db).deactivate(account_id, user_id))


@app.post("/plaid/link-token")
def create_link_token(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    return ok({"linkToken": AccountService(db, provider).create_link_token(user_id)})


@app.post("/plaid/exchange-token")
def exchange_token(
    body: ExchangeTokenIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    accounts = AccountService(db, provider).link_item(
        user_id, body.public_token, body.institution_name
    )
    if accounts:
        # A re-linked item gets its reauth flag cleared by this first sync.
        BalanceSyncJob(db, provider).sync_item(accounts[0].provider_item_id)
    return ok(
        {
            "itemId": accounts[0].provider_item_id if accounts else None,
            "accounts": [
                {
                    "id": a.id,
                    "name": a.account_name,
                    "type": a.account_type,
                    "institution": a.institution_name,
                }
                for a in accounts
            ],
        }
    )


@app.post("/plaid/items/{item_id}/link-token")
def create_update_link_token(
    item_id: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    service = AccountService(db, provider)
    return ok({"linkToken": service.create_link_token(user_id, item_id)})


@app.post("/plaid/items/{item_id}/sync")
def sync_linked_item(
    item_id: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: AggregationProvider = Depends(get_provider),
):
    AccountService(db).owned_item(item_id, user_id)
    report = BalanceSyncJob(db, provider).sync_item(item_id)
    return ok(report.to_dict())


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
