from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import datetime

from app.modules.budget.schemas import NatureEnum


# ===== LÍNEAS PREVISIONALES =====

class ForecastBudgetLineCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    nature: NatureEnum = NatureEnum.FONCTIONNEMENT
    year: int = Field(..., ge=2000, le=2100)
    budget: Decimal = Field(Decimal("0"), ge=0)
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None


class ForecastBudgetLineUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    nature: Optional[NatureEnum] = None
    year: Optional[int] = Field(None, ge=2000, le=2100)
    budget: Optional[Decimal] = Field(None, ge=0)
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None

    class Config:
        extra = "forbid"


class ForecastBudgetLineOut(BaseModel):
    id: UUID
    label: str
    description: Optional[str]
    nature: str
    year: int
    budget: Decimal
    type_id: Optional[UUID]
    domain_id: Optional[UUID]
    created_at: datetime

    class Config:
        from_attributes = True


class ForecastBudgetLineList(BaseModel):
    items: List[ForecastBudgetLineOut]
    total: int
    limit: int
    offset: int


# ===== GASTOS PREVISTOS =====

class ForecastExpenseCreate(BaseModel):
    forecast_budget_line_id: UUID
    label: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Decimal = Field(..., ge=0, description="Importe previsto")
    year: Optional[int] = Field(None, ge=2000, le=2100, description="Por defecto, el año de la línea")


class ForecastExpenseUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    year: Optional[int] = Field(None, ge=2000, le=2100)

    class Config:
        extra = "forbid"


class ForecastExpenseOut(BaseModel):
    id: UUID
    forecast_budget_line_id: UUID
    year: int
    label: str
    description: Optional[str]
    amount: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class ForecastExpenseList(BaseModel):
    items: List[ForecastExpenseOut]
    total: int
    limit: int
    offset: int


# ===== PIVOT =====

class ForecastLinkRequest(BaseModel):
    forecast_expense_id: Optional[UUID] = Field(None, description="null = desvincular")


class ForecastVariance(BaseModel):
    """
    Previsto vs realizado de un gasto previsto.

    `realized` suma los importes de las facturas vinculadas sin signo:
    un avoir vinculado suma igual que una factura.
    """
    forecast_expense_id: UUID
    label: Optional[str] = None
    planned: Decimal
    realized: Decimal
    variance: Decimal
    variance_percent: Optional[Decimal] = None  # None si planned == 0
    linked_invoices: int = 0
    linked_purchase_orders: int = 0


class ForecastLineSummary(BaseModel):
    forecast_budget_line_id: UUID
    label: str
    year: int
    budget: Decimal
    planned: Decimal
    realized: Decimal
    variance: Decimal
    expenses: List[ForecastVariance]
