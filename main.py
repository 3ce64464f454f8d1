import hmac
import logging
from dataclasses import asdict
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from config import Settings, get_settings
from connections import ConnectionManager
from database import SessionLocal
from errors import (
    AuthenticationFailure,
    ConnectionInactive,
    ConnectionNotFound,
    InsufficientHistory,
    ProviderUnavailable,
    ValidationFailure,
)
from forecast import ForecastEngine
from models import Connection, RecurringTemplate, Transaction
from provider_client import ProviderClient
from recurrence import RecurringEngine
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    ConnectIn,
    DisconnectIn,
    RecurringTemplateIn,
    SyncIn,
    TransactionIn,
)
from services import (
    CategoryService,
    RecurringTemplateService,
    TransactionService,
    get_current_user_id,
)
from webhooks import WebhookProcessor


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger Sync")

PROVIDER_ERROR_DETAIL = "Failed to reach the bank aggregator. Try again later."


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_app_settings() -> Settings:
    return get_settings()


@lru_cache(maxsize=1)
def _shared_provider() -> ProviderClient:
    return ProviderClient(get_settings())


def get_provider() -> ProviderClient:
    return _shared_provider()


def get_connection_manager(
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider),
    settings: Settings = Depends(get_app_settings),
) -> ConnectionManager:
    return ConnectionManager(db, provider, settings)


def require_cron_token(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if not settings.cron_secret or not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    expected = f"Bearer {settings.cron_secret}".encode("utf-8")
    if not hmac.compare_digest(authorization.encode("utf-8"), expected):
        logger.warning("cron_rejected: bad bearer token")
        raise HTTPException(status_code=401, detail="Unauthorized")


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    if not get_settings().scheduler_enabled:
        return
    scheduler_manager = SchedulerManager()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


def _connection_dict(connection: Connection) -> dict:
    return {
        "id": connection.id,
        "provider": connection.provider,
        "institution_id": connection.institution_id,
        "institution_name": connection.institution_name,
        "item_id": connection.item_id,
        "status": connection.status.value,
        "last_sync_at": (
            connection.last_sync_at.isoformat() if connection.last_sync_at else None
        ),
        "error_message": connection.error_message,
    }


def _transaction_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "tags": txn.tags,
        "notes": txn.notes,
        "auto_categorized": txn.auto_categorized,
        "confidence_score": txn.confidence_score,
        "is_recurring": txn.is_recurring,
    }


def _template_dict(template: RecurringTemplate) -> dict:
    return {
        "id": template.id,
        "account_id": template.account_id,
        "category_id": template.category_id,
        "amount_cents": template.amount_cents,
        "type": template.type.value,
        "description": template.description,
        "frequency": template.frequency.value,
        "interval": template.interval,
        "start_date": template.start_date.isoformat(),
        "end_date": template.end_date.isoformat() if template.end_date else None,
        "next_run_date": template.next_run_date.isoformat(),
        "tags": template.tags,
        "is_active": template.is_active,
    }


# Inbound webhooks and cron


@app.post("/webhooks/provider")
async def provider_webhook(
    request: Request,
    x_provider_signature: Optional[str] = Header(default=None),
    manager: ConnectionManager = Depends(get_connection_manager),
    settings: Settings = Depends(get_app_settings),
):
    payload = await request.body()
    processor = WebhookProcessor(manager.session, manager, settings.webhook_secret)
    try:
        await run_in_threadpool(processor.process, payload, x_provider_signature)
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except ValidationFailure as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"received": True}


@app.api_route(
    "/cron/sync-open-finance",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_token)],
)
def cron_sync_open_finance(
    manager: ConnectionManager = Depends(get_connection_manager),
):
    outcomes = manager.sync_all()
    failed = sum(1 for o in outcomes if o.status == "error")
    return {
        "synced": len(outcomes) - failed,
        "failed": failed,
        "results": [asdict(o) for o in outcomes],
    }


@app.api_route(
    "/cron/process-recurring",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_token)],
)
def cron_process_recurring(db: Session = Depends(get_db)):
    result = RecurringEngine(db).process_due()
    db.commit()
    return {"processed": result.processed, "total": result.total}


# Open Finance


@app.get("/open-finance/institutions")
def list_institutions(
    search: Optional[str] = Query(default=None, max_length=100),
    provider: ProviderClient = Depends(get_provider),
):
    try:
        institutions = provider.list_institutions(search)
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=PROVIDER_ERROR_DETAIL) from exc
    return [i.model_dump() for i in institutions]


@app.post("/open-finance/connect-token")
def create_connect_token(provider: ProviderClient = Depends(get_provider)):
    try:
        token = provider.create_connect_token(str(get_current_user_id()))
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=PROVIDER_ERROR_DETAIL) from exc
    return {"accessToken": token}


@app.post("/open-finance/connect", status_code=201)
def connect_institution(
    data: ConnectIn,
    manager: ConnectionManager = Depends(get_connection_manager),
):
    try:
        connection = manager.connect(
            get_current_user_id(),
            data.institution_id,
            data.institution_name,
            data.item_id,
        )
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _connection_dict(connection)


@app.get("/open-finance/connections")
def list_connections(manager: ConnectionManager = Depends(get_connection_manager)):
    return [_connection_dict(c) for c in manager.list_connections(get_current_user_id())]


@app.post("/open-finance/sync")
def sync_connection(
    data: SyncIn,
    manager: ConnectionManager = Depends(get_connection_manager),
):
    try:
        manager.get(data.connection_id, get_current_user_id())
        result = manager.sync(data.connection_id, window_days=data.days, force=data.force)
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConnectionInactive as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=PROVIDER_ERROR_DETAIL) from exc
    return {
        "accounts_synced": result.accounts_synced,
        "transactions_synced": result.transactions_synced,
    }


@app.post("/open-finance/disconnect")
def disconnect_connection(
    data: DisconnectIn,
    manager: ConnectionManager = Depends(get_connection_manager),
):
    try:
        connection_id = int(data.connection_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid connection id") from exc
    try:
        connection = manager.disconnect(connection_id, get_current_user_id())
    except ConnectionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _connection_dict(connection)


# Categories, transactions and reports


@app.get("/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "type": c.type.value, "color": c.color}
        for c in CategoryService(db).list_all()
    ]


@app.post("/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
    }


@app.post("/transactions", status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_dict(txn)


@app.post("/transactions/{transaction_id}/categorize")
def categorize_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).categorize(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _transaction_dict(txn)


@app.get("/reports/cash-flow-projections")
def cash_flow_projections(
    months: int = Query(default=6),
    db: Session = Depends(get_db),
):
    try:
        forecast = ForecastEngine(db).project(get_current_user_id(), months)
    except InsufficientHistory as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "projections": [asdict(p) for p in forecast.projections],
        "summary": {
            "current_balance": forecast.current_balance,
            "average_monthly_income": forecast.average_monthly_income,
            "average_monthly_expense": forecast.average_monthly_expense,
            "average_monthly_balance": forecast.average_monthly_balance,
            "income_growth_rate": forecast.income_growth_rate,
            "expense_growth_rate": forecast.expense_growth_rate,
            "recurring_templates": forecast.recurring_templates,
        },
        "insights": forecast.insights,
    }


# Recurring templates


@app.get("/recurring-templates")
def list_recurring_templates(db: Session = Depends(get_db)):
    return [_template_dict(t) for t in RecurringTemplateService(db).list()]


@app.post("/recurring-templates", status_code=201)
def create_recurring_template(
    data: RecurringTemplateIn, db: Session = Depends(get_db)
):
    try:
        template = RecurringTemplateService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _template_dict(template)


@app.put("/recurring-templates/{template_id}")
def update_recurring_template(
    template_id: int, data: RecurringTemplateIn, db: Session = Depends(get_db)
):
    service = RecurringTemplateService(db)
    try:
        service.get(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        template = service.update(template_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _template_dict(template)


@app.post("/recurring-templates/{template_id}/toggle")
def toggle_recurring_template(template_id: int, db: Session = Depends(get_db)):
    try:
        template = RecurringTemplateService(db).toggle(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _template_dict(template)


@app.delete("/recurring-templates/{template_id}", status_code=204)
def delete_recurring_template(template_id: int, db: Session = Depends(get_db)):
    try:
        RecurringTemplateService(db).delete(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
