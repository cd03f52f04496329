"""
Esquemas Pydantic para el módulo de Presupuesto

`engaged` e `invoiced` solo aparecen en los esquemas de salida: ningún
esquema de entrada permite escribirlos.
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import datetime
from enum import Enum


class NatureEnum(str, Enum):
    INVESTISSEMENT = "Investissement"
    FONCTIONNEMENT = "Fonctionnement"


# ===== REFERENCIALES =====

class BudgetTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20, description="Color de presentación (#RRGGBB)")


class BudgetTypeOut(BaseModel):
    id: UUID
    name: str
    color: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class BudgetDomainCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    type_id: Optional[UUID] = None


class BudgetDomainOut(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    type_id: Optional[UUID]
    created_at: datetime

    class Config:
        from_attributes = True


# ===== PRESUPUESTO ANUAL =====

class YearlyBudgetIn(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    budget: Decimal = Field(Decimal("0"), ge=0)


class YearlyBudgetUpsert(BaseModel):
    budget: Decimal = Field(..., ge=0, description="Presupuesto nominal del año")


class YearlyBudgetOut(BaseModel):
    id: UUID
    budget_line_id: UUID
    year: int
    budget: Decimal
    engaged: Decimal
    invoiced: Decimal

    class Config:
        from_attributes = True


# ===== LÍNEAS PRESUPUESTARIAS =====

class BudgetLineBase(BaseModel):
    label: str = Field(..., min_length=1, max_length=200, description="Nombre de la línea")
    description: Optional[str] = None
    nature: NatureEnum = Field(NatureEnum.FONCTIONNEMENT, description="Investissement o Fonctionnement")
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None
    pole_id: Optional[UUID] = Field(None, description="Unidad organizativa")
    accounting_code: Optional[str] = Field(None, max_length=50)
    budget: Decimal = Field(Decimal("0"), ge=0, description="Presupuesto nominal (informativo)")


class BudgetLineCreate(BudgetLineBase):
    yearly_budgets: List[YearlyBudgetIn] = Field(default_factory=list)

    @field_validator("yearly_budgets")
    @classmethod
    def unique_years(cls, v):
        years = [item.year for item in v]
        if len(years) != len(set(years)):
            raise ValueError("Cada año solo puede aparecer una vez")
        return v


class BudgetLineUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    nature: Optional[NatureEnum] = None
    type_id: Optional[UUID] = None
    domain_id: Optional[UUID] = None
    pole_id: Optional[UUID] = None
    accounting_code: Optional[str] = Field(None, max_length=50)
    budget: Optional[Decimal] = Field(None, ge=0)

    class Config:
        extra = "forbid"


class BudgetLineOut(BaseModel):
    id: UUID
    label: str
    description: Optional[str]
    nature: str
    type_id: Optional[UUID]
    domain_id: Optional[UUID]
    pole_id: Optional[UUID]
    accounting_code: Optional[str]
    budget: Decimal
    engaged: Decimal
    invoiced: Decimal
    remaining: Decimal
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BudgetLineDetail(BudgetLineOut):
    yearly_budgets: List[YearlyBudgetOut] = []


class BudgetLineList(BaseModel):
    items: List[BudgetLineOut]
    total: int
    limit: int
    offset: int
