from pydantic import BaseModel, Field, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.modules.purchase_orders.models import PurchaseOrderStatus


class PurchaseOrderCreate(BaseModel):
    number: str = Field(..., min_length=1, max_length=100, description="Número único en la organización")
    vendor: str = Field(..., min_length=1, max_length=200)
    order_date: Optional[date] = Field(None, description="Por defecto, hoy")
    expected_delivery_date: Optional[date] = None
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None
    status: PurchaseOrderStatus = Field(PurchaseOrderStatus.DRAFT, description="Estado inicial")
    linked_forecast_expense_id: Optional[UUID] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.order_date and self.expected_delivery_date and self.expected_delivery_date < self.order_date:
            raise ValueError("expected_delivery_date no puede ser anterior a order_date")
        return self


class PurchaseOrderUpdate(BaseModel):
    """El estado no se edita aquí: usar POST /purchase-orders/{id}/status"""
    number: Optional[str] = Field(None, min_length=1, max_length=100)
    vendor: Optional[str] = Field(None, min_length=1, max_length=200)
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = None

    class Config:
        extra = "forbid"


class PurchaseOrderStatusChange(BaseModel):
    status: PurchaseOrderStatus


class PurchaseOrderOut(BaseModel):
    id: UUID
    number: str
    vendor: str
    order_date: date
    expected_delivery_date: Optional[date]
    amount: Decimal
    description: Optional[str]
    status: PurchaseOrderStatus
    linked_forecast_expense_id: Optional[UUID]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PurchaseOrderList(BaseModel):
    items: List[PurchaseOrderOut]
    total: int
    limit: int
    offset: int
