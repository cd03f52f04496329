from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Any, Optional, List
from uuid import UUID
from datetime import date, datetime

from app.modules.contracts.status import ContractStatus


class ContractYearlyAmountIn(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    amount: Decimal = Field(..., ge=0)


class ContractYearlyAmountOut(BaseModel):
    year: int
    amount: Decimal

    class Config:
        from_attributes = True


class ContractBase(BaseModel):
    number: str = Field(..., min_length=1, max_length=100, description="Número de contrato")
    label: str = Field(..., min_length=1, max_length=200)
    vendor: str = Field(..., min_length=1, max_length=200, description="Proveedor")
    provider_name: Optional[str] = Field(None, max_length=200)
    start_date: date
    end_date: date
    amount: Decimal = Field(..., gt=0, description="Importe comprometido (positivo)")
    description: Optional[str] = None
    accounting_code: Optional[str] = Field(None, max_length=50)
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None
    budget_line_id: Optional[UUID] = None


class ContractCreate(ContractBase):
    yearly_amounts: List[ContractYearlyAmountIn] = Field(
        default_factory=list, description="Reparto plurianual; vacío = todo en el año de inicio"
    )

    @field_validator("yearly_amounts")
    @classmethod
    def unique_years(cls, v):
        if v:
            years = [item.year for item in v]
            if len(years) != len(set(years)):
                raise ValueError("Cada año solo puede aparecer una vez")
        return v

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date no puede ser anterior a start_date")
        return self


class ContractUpdate(BaseModel):
    number: Optional[str] = Field(None, min_length=1, max_length=100)
    label: Optional[str] = Field(None, min_length=1, max_length=200)
    vendor: Optional[str] = Field(None, min_length=1, max_length=200)
    provider_name: Optional[str] = Field(None, max_length=200)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = None
    accounting_code: Optional[str] = Field(None, max_length=50)
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None
    budget_line_id: Optional[UUID] = None
    yearly_amounts: Optional[List[ContractYearlyAmountIn]] = None

    @field_validator("yearly_amounts")
    @classmethod
    def unique_years(cls, v):
        if v:
            years = [item.year for item in v]
            if len(years) != len(set(years)):
                raise ValueError("Cada año solo puede aparecer una vez")
        return v

    class Config:
        extra = "forbid"


class ContractOut(ContractBase):
    id: UUID
    yearly_amounts: List[ContractYearlyAmountOut] = []
    created_at: datetime
    updated_at: datetime

    # Derivados en cada lectura
    status: Optional[ContractStatus] = None
    days_remaining: Optional[int] = None
    is_critical: bool = False
    total_invoiced: Decimal = Decimal("0")

    class Config:
        from_attributes = True


class ContractList(BaseModel):
    items: List[ContractOut]
    total: int
    limit: int
    offset: int


class ImportRowError(BaseModel):
    row: int
    detail: Any


class ImportResult(BaseModel):
    created: List[UUID]
    errors: List[ImportRowError]
