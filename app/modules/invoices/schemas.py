"""
Esquemas Pydantic para Facturas y avoirs (notas de crédito)

`amount` siempre es positivo; el signo contable lo da `is_credit`.
"""

from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from app.modules.budget.schemas import NatureEnum


class InvoiceStatusEnum(str, Enum):
    PAID = "Payée"
    PENDING = "En attente"
    LATE = "Retard"


class InvoiceBase(BaseModel):
    number: str = Field(..., min_length=1, max_length=100, description="Número de factura")
    vendor: str = Field(..., min_length=1, max_length=200, description="Proveedor")
    description: Optional[str] = None
    amount: Decimal = Field(..., gt=0, description="Importe TTC, siempre positivo")
    amount_ht: Optional[Decimal] = Field(None, ge=0, description="Importe sin impuestos")
    is_credit: bool = Field(False, description="True = avoir (resta del facturado)")
    nature: Optional[NatureEnum] = None
    status: InvoiceStatusEnum = InvoiceStatusEnum.PENDING
    invoice_date: date
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    accounting_code: Optional[str] = Field(None, max_length=50)
    comment: Optional[str] = None
    pointed: bool = False

    contract_id: Optional[UUID] = None
    budget_line_id: Optional[UUID] = None
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None


class InvoiceCreate(InvoiceBase):
    linked_forecast_expense_id: Optional[UUID] = Field(None, description="Gasto previsto a vincular (PIVOT)")


class InvoiceUpdate(BaseModel):
    number: Optional[str] = Field(None, min_length=1, max_length=100)
    vendor: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    amount_ht: Optional[Decimal] = Field(None, ge=0)
    is_credit: Optional[bool] = None
    nature: Optional[NatureEnum] = None
    status: Optional[InvoiceStatusEnum] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    accounting_code: Optional[str] = Field(None, max_length=50)
    comment: Optional[str] = None
    pointed: Optional[bool] = None

    contract_id: Optional[UUID] = None
    budget_line_id: Optional[UUID] = None
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None

    class Config:
        extra = "forbid"


class InvoiceOut(BaseModel):
    id: UUID
    number: str
    vendor: str
    description: Optional[str]
    amount: Decimal
    amount_ht: Optional[Decimal]
    is_credit: bool
    signed_amount: Decimal
    nature: Optional[str]
    status: str
    invoice_date: date
    invoice_year: int
    due_date: Optional[date]
    payment_date: Optional[date]
    accounting_code: Optional[str]
    comment: Optional[str]
    pointed: bool

    contract_id: Optional[UUID]
    budget_line_id: Optional[UUID]
    type_id: Optional[UUID]
    domain_id: Optional[UUID]
    linked_forecast_expense_id: Optional[UUID]

    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceList(BaseModel):
    items: List[InvoiceOut]
    total: int
    limit: int
    offset: int
