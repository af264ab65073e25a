import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from auth import get_current_user_id
from budget_display import budget_status
from cache import BudgetListCache
from config import get_settings
from database import get_db
from periods import parse_period
from scheduler import SchedulerManager
from schemas import (
    BudgetCopyIn,
    BudgetIn,
    BudgetOut,
    BudgetProgressOut,
    BudgetUpdateIn,
    CategoryOut,
    RefreshResultOut,
    SubcategoryOut,
)
from services import (
    BudgetAccessDenied,
    BudgetConflict,
    BudgetNotFound,
    BudgetService,
    BudgetValidationError,
    BudgetView,
    CategoryService,
    NotAuthenticated,
    rebuild_budget_spending,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Budgets")

budget_cache: BudgetListCache[list[BudgetProgressOut]] = BudgetListCache(
    ttl_secs=get_settings().cache_ttl_secs
)
scheduler_manager = SchedulerManager()

ERROR_STATUS = {
    BudgetValidationError: 400,
    NotAuthenticated: 401,
    BudgetAccessDenied: 403,
    BudgetNotFound: 404,
    BudgetConflict: 409,
}


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def get_budget_service(
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
) -> BudgetService:
    return BudgetService(db, user_id, invalidator=budget_cache)


def http_error(exc: Exception) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS[type(exc)], detail=str(exc))


def period_from_request(request: Request) -> date:
    try:
        return parse_period(request.query_params.get("period"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def to_progress(view: BudgetView) -> BudgetProgressOut:
    status = budget_status(view.budget.amount_cents, view.actual_spend_cents)
    return BudgetProgressOut(
        **BudgetOut.model_validate(view.budget).model_dump(),
        category=CategoryOut.model_validate(view.category) if view.category else None,
        subcategory=(
            SubcategoryOut.model_validate(view.subcategory)
            if view.subcategory
            else None
        ),
        actual_spend_cents=view.actual_spend_cents,
        remaining_cents=status.remaining_cents,
        percentage=status.percentage,
        status=status.status,
    )


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/categories", response_model=list[CategoryOut])
def api_categories(
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return CategoryService(db, user_id).list_all(include_archived=include_archived)


@app.post("/api/categories/{category_id}/archive", status_code=204)
def api_archive_category(
    category_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        CategoryService(db, user_id).archive(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/budgets", response_model=list[BudgetProgressOut])
def api_budgets(
    request: Request,
    svc: BudgetService = Depends(get_budget_service),
):
    period = period_from_request(request)
    if not svc.user_id:
        return []
    cached = budget_cache.get(svc.user_id, period)
    if cached is not None:
        return cached
    generation = budget_cache.generation(period)
    budgets = [to_progress(view) for view in svc.get_budgets(period)]
    budget_cache.put(svc.user_id, period, budgets, generation=generation)
    return budgets


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def api_create_budget(
    data: BudgetIn, svc: BudgetService = Depends(get_budget_service)
):
    try:
        return svc.create_budget(data)
    except (BudgetValidationError, BudgetConflict, NotAuthenticated) as exc:
        raise http_error(exc) from exc


@app.post("/api/budgets/copy", response_model=list[BudgetOut])
def api_copy_budgets(
    data: BudgetCopyIn, svc: BudgetService = Depends(get_budget_service)
):
    try:
        return svc.copy_recurring_budgets(data.source_period, data.target_period)
    except (BudgetValidationError, NotAuthenticated) as exc:
        raise http_error(exc) from exc


@app.get("/api/budgets/{budget_id}", response_model=BudgetProgressOut)
def api_budget(budget_id: str, svc: BudgetService = Depends(get_budget_service)):
    view = svc.get_budget(budget_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    return to_progress(view)


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def api_update_budget(
    budget_id: str,
    data: BudgetUpdateIn,
    svc: BudgetService = Depends(get_budget_service),
):
    try:
        return svc.update_budget(budget_id, data)
    except (
        BudgetValidationError,
        NotAuthenticated,
        BudgetAccessDenied,
        BudgetNotFound,
    ) as exc:
        raise http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: str, svc: BudgetService = Depends(get_budget_service)
):
    try:
        svc.delete_budget(budget_id)
    except (NotAuthenticated, BudgetAccessDenied, BudgetNotFound) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/admin/refresh-budget-spending", response_model=RefreshResultOut)
def admin_refresh_budget_spending(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if user_id not in get_settings().admin_user_ids:
        logger.warning(f"admin_refresh_denied: user_id={user_id}")
        raise HTTPException(status_code=403, detail="Admin access required")
    period = period_from_request(request)
    users = rebuild_budget_spending(db, period)
    budget_cache.clear()
    logger.info(
        f"admin_refresh_budget_spending: period={period.isoformat()} "
        f"users_refreshed={users} requested_by={user_id}"
    )
    return RefreshResultOut(period=period, users_refreshed=users)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
