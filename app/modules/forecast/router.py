"""
Router del presupuesto previsional

- /forecast-budget-lines: líneas previsionales y su resumen previsto / realizado
- /forecast-expenses: gastos previstos, disponibilidad para vincular y desviación
"""

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.budget.schemas import NatureEnum
from app.modules.forecast.schemas import (
    ForecastBudgetLineCreate, ForecastBudgetLineUpdate, ForecastBudgetLineOut, ForecastBudgetLineList,
    ForecastExpenseCreate, ForecastExpenseUpdate, ForecastExpenseOut, ForecastExpenseList,
    ForecastVariance, ForecastLineSummary
)
from app.modules.forecast.service import ForecastService, ForecastLinker

lines_router = APIRouter(prefix="/forecast-budget-lines", tags=["Forecast"])
expenses_router = APIRouter(prefix="/forecast-expenses", tags=["Forecast"])


# ===== LÍNEAS PREVISIONALES =====

@lines_router.get("/", response_model=ForecastBudgetLineList)
async def list_forecast_lines(
    year: Optional[int] = Query(None),
    nature: Optional[NatureEnum] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ForecastService(db).get_forecast_lines(
        auth_context.tenant_id, year=year, nature=nature.value if nature else None, limit=limit, offset=offset
    )


@lines_router.post("/", response_model=ForecastBudgetLineOut, status_code=status.HTTP_201_CREATED)
async def create_forecast_line(
    line_data: ForecastBudgetLineCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return ForecastService(db).create_forecast_line(line_data, auth_context)


@lines_router.get("/{line_id}", response_model=ForecastBudgetLineOut)
async def get_forecast_line(
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ForecastService(db).get_forecast_line_by_id(line_id, auth_context.tenant_id)


@lines_router.get("/{line_id}/summary", response_model=ForecastLineSummary)
async def get_forecast_line_summary(
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    """Previsto vs realizado de cada gasto de la línea"""
    return ForecastService(db).get_line_summary(line_id, auth_context.tenant_id)


@lines_router.put("/{line_id}", response_model=ForecastBudgetLineOut)
async def update_forecast_line(
    line_data: ForecastBudgetLineUpdate,
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return ForecastService(db).update_forecast_line(line_id, line_data, auth_context)


@lines_router.delete("/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_forecast_line(
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    ForecastService(db).delete_forecast_line(line_id, auth_context)


# ===== GASTOS PREVISTOS =====

@expenses_router.get("/", response_model=ForecastExpenseList)
async def list_forecast_expenses(
    year: Optional[int] = Query(None),
    forecast_budget_line_id: Optional[UUID] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ForecastService(db).get_expenses(
        auth_context.tenant_id, year=year, forecast_budget_line_id=forecast_budget_line_id,
        limit=limit, offset=offset
    )


@expenses_router.get("/available", response_model=List[ForecastExpenseOut])
async def list_available_forecast_expenses(
    year: int = Query(..., ge=2000, le=2100),
    exclude_invoice_id: Optional[UUID] = Query(None, description="Factura en edición"),
    exclude_purchase_order_id: Optional[UUID] = Query(None, description="Orden de compra en edición"),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    """Gastos previstos que se pueden vincular (sin vínculo, o vinculados solo al documento en edición)"""
    return ForecastLinker(db).list_available_forecast_expenses(
        auth_context.tenant_id, year,
        exclude_invoice_id=exclude_invoice_id,
        exclude_purchase_order_id=exclude_purchase_order_id
    )


@expenses_router.post("/", response_model=ForecastExpenseOut, status_code=status.HTTP_201_CREATED)
async def create_forecast_expense(
    expense_data: ForecastExpenseCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return ForecastService(db).create_expense(expense_data, auth_context)


@expenses_router.get("/{expense_id}", response_model=ForecastExpenseOut)
async def get_forecast_expense(
    expense_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ForecastService(db).get_expense_by_id(expense_id, auth_context.tenant_id)


@expenses_router.get("/{expense_id}/variance", response_model=ForecastVariance)
async def get_forecast_expense_variance(
    expense_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ForecastLinker(db).variance(expense_id, auth_context.tenant_id)


@expenses_router.put("/{expense_id}", response_model=ForecastExpenseOut)
async def update_forecast_expense(
    expense_data: ForecastExpenseUpdate,
    expense_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return ForecastService(db).update_expense(expense_id, expense_data, auth_context)


@expenses_router.delete("/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_forecast_expense(
    expense_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """Eliminar el gasto; sus facturas y órdenes quedan sin vínculo"""
    ForecastService(db).delete_expense(expense_id, auth_context)
