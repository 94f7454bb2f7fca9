import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetProgressOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AggregationError,
    BudgetNotFound,
    BudgetService,
    BudgetValidationError,
    CategoryConflictError,
    CategoryNotFound,
    CategoryService,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")


@dataclass(frozen=True)
class Scope:
    workspace_id: int
    user_id: int


def get_db():
    with session_scope() as db:
        yield db


def get_scope(
    x_workspace_id: int = Header(default=1, ge=1),
    x_user_id: int = Header(default=1, ge=1),
) -> Scope:
    return Scope(workspace_id=x_workspace_id, user_id=x_user_id)


def parse_query_date(
    value: Optional[str], name: str, exclusive_end: bool = False
) -> Optional[date]:
    """Parse an ISO date or date-time query value.

    Date-times are cut to their date. For an exclusive upper bound a time of
    day past midnight still covers that day, so the result moves to the next
    day.
    """
    if not value:
        return None
    try:
        if "T" in value:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if exclusive_end and moment.time() != time.min:
                return moment.date() + timedelta(days=1)
            return moment.date()
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid '{name}' date: {value}"
        ) from exc


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(AggregationError)
async def aggregation_exception_handler(request: Request, exc: AggregationError):
    logger.error(f"progress_failed: path={request.url.path}")
    return JSONResponse(
        status_code=500, content={"detail": "Error computing budget progress"}
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    try:
        return CategoryService(db, scope.workspace_id, scope.user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db), scope: Scope = Depends(get_scope)):
    return CategoryService(db, scope.workspace_id).list_all()


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    try:
        return TransactionService(db, scope.workspace_id, scope.user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: str = Query(..., min_length=1),
    end: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    start_date = parse_query_date(start, "start")
    end_date = parse_query_date(end, "end", exclusive_end=True)
    return TransactionService(db, scope.workspace_id).list_between(start_date, end_date)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    try:
        return BudgetService(db, scope.workspace_id, scope.user_id).create(data)
    except (CategoryConflictError, CategoryNotFound, BudgetValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(db: Session = Depends(get_db), scope: Scope = Depends(get_scope)):
    return BudgetService(db, scope.workspace_id).list_all()


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, db: Session = Depends(get_db), scope: Scope = Depends(get_scope)
):
    try:
        return BudgetService(db, scope.workspace_id).get(budget_id)
    except BudgetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/budgets/{budget_id}/progress", response_model=list[BudgetProgressOut])
def budget_progress(
    budget_id: int,
    start: Optional[str] = Query(default=None, alias="from"),
    end: Optional[str] = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    start_date = parse_query_date(start, "from")
    end_date = parse_query_date(end, "to", exclusive_end=True)
    try:
        progress = BudgetService(db, scope.workspace_id).progress(
            budget_id, start_date, end_date
        )
    except BudgetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [BudgetProgressOut.model_validate(row) for row in progress]


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    db: Session = Depends(get_db),
    scope: Scope = Depends(get_scope),
):
    try:
        return BudgetService(db, scope.workspace_id, scope.user_id).update(
            budget_id, data
        )
    except BudgetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (CategoryConflictError, CategoryNotFound, BudgetValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/budgets/{budget_id}", response_model=BudgetOut)
def delete_budget(
    budget_id: int, db: Session = Depends(get_db), scope: Scope = Depends(get_scope)
):
    service = BudgetService(db, scope.workspace_id)
    try:
        removed = BudgetOut.model_validate(service.get(budget_id))
        service.delete(budget_id)
    except BudgetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return removed


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
