import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from cache import CacheFacade, get_cache
from database import get_session
from models import Role, TransactionType
from periods import Granularity, resolve_date_range
from scheduler import SchedulerManager
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate
from services import (
    AnalyticsService,
    CategoryInUse,
    CategoryService,
    Identity,
    NotFoundError,
    PermissionDenied,
    TransactionFilters,
    TransactionService,
    UserService,
    category_row_payload,
    transaction_payload,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker API")

scheduler_manager = SchedulerManager(get_cache())


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Identity:
    """Identity attached by the upstream auth middleware."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing identity")
    try:
        user_id = int(x_user_id)
        role = Role((x_user_role or Role.read_only.value).upper())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid identity") from exc
    return Identity(id=user_id, role=role, email=x_user_email)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return identity


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value.upper())
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid transaction type: {value}"
        ) from exc


def analytics_service(
    db: Session = Depends(get_session), cache: CacheFacade = Depends(get_cache)
) -> AnalyticsService:
    return AnalyticsService(db, cache)


@app.get("/health")
def health(cache: CacheFacade = Depends(get_cache)):
    return {"ok": True, "cache": cache.healthy()}


@app.get("/api/analytics/dashboard")
def api_dashboard(
    period: int = Query(30, ge=1, le=3650),
    identity: Identity = Depends(get_identity),
    service: AnalyticsService = Depends(analytics_service),
):
    try:
        return service.dashboard(identity.id, period)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/analytics/category")
def api_category_analytics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    type: Optional[str] = Query(None),
    identity: Identity = Depends(get_identity),
    service: AnalyticsService = Depends(analytics_service),
):
    txn_type = parse_type(type)
    try:
        period = resolve_date_range(start_date, end_date)
        stats = service.category_analytics(
            identity.id,
            start=period.start,
            end=period.end,
            transaction_type=txn_type,
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"categoryAnalytics": stats}


@app.get("/api/analytics/trends")
def api_spending_trends(
    period: Granularity = Query(Granularity.monthly),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    periods: Optional[int] = Query(None, ge=1, le=366),
    identity: Identity = Depends(get_identity),
    service: AnalyticsService = Depends(analytics_service),
):
    try:
        trends = service.spending_trends(
            identity.id, period, category_id=category_id, periods=periods
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"trends": trends}


@app.get("/api/analytics/monthly")
def api_monthly_overview(
    identity: Identity = Depends(get_identity),
    service: AnalyticsService = Depends(analytics_service),
):
    return service.monthly_overview(identity.id)


@app.get("/api/analytics/expenses-by-category")
def api_expense_by_category(
    identity: Identity = Depends(get_identity),
    service: AnalyticsService = Depends(analytics_service),
):
    return service.expense_by_category(identity.id)


@app.get("/api/transactions")
def api_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[str] = Query(None),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None, alias="userId"),
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    txn_type = parse_type(type)
    try:
        period = resolve_date_range(start_date, end_date)
        filters = TransactionFilters(
            type=txn_type,
            category_id=category_id,
            start=period.start,
            end=period.end,
            search=search,
        )
        return TransactionService(db, identity, cache).list(
            filters, page=page, limit=limit, user_id=user_id
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
):
    try:
        txn = TransactionService(db, identity).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"transaction": transaction_payload(txn)}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        txn = TransactionService(db, identity, cache).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "message": "Transaction created successfully",
        "transaction": transaction_payload(txn),
    }


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        txn = TransactionService(db, identity, cache).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "message": "Transaction updated successfully",
        "transaction": transaction_payload(txn),
    }


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        TransactionService(db, identity, cache).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Transaction deleted successfully"}


@app.get("/api/users")
def api_users(
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_session),
):
    return UserService(db).list_all()


@app.get("/api/categories")
def api_categories(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_session),
):
    return CategoryService(db).list_all()


@app.post("/api/categories")
def api_create_category(
    payload: CategoryIn,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        category = CategoryService(db, cache).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_row_payload(category)


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    payload: CategoryUpdate,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        category = CategoryService(db, cache).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_row_payload(category)


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_session),
    cache: CacheFacade = Depends(get_cache),
):
    try:
        CategoryService(db, cache).delete(category_id)
    except CategoryInUse as exc:
        logger.info(f"category_delete_refused: id={category_id} reason={exc}")
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Category deleted successfully"}
