"""
Pydantic schemas for the budget reports

Every figure comes from the aggregates maintained by the ledger
(engaged / invoiced); no report re-sums documents.
"""

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class BudgetTotals(BaseModel):
    """Totals shared by every grouping"""
    budget: Decimal = Field(description="Nominal budget")
    engaged: Decimal = Field(description="Committed amount (contracts)")
    invoiced: Decimal = Field(description="Signed invoiced amount (credit notes subtract)")
    remaining: Decimal = Field(description="budget - invoiced")
    engagement_rate: Optional[Decimal] = Field(None, description="engaged / budget in %, None without budget")
    consumption_rate: Optional[Decimal] = Field(None, description="invoiced / budget in %, None without budget")


class BudgetSummaryResponse(BudgetTotals):
    year: Optional[int] = None
    currency: str
    lines_count: int
    over_budget_lines: int


class BudgetByYearItem(BudgetTotals):
    year: int


class BudgetByNatureItem(BudgetTotals):
    nature: str
    lines_count: int


class BudgetByDomainItem(BudgetTotals):
    domain_id: Optional[UUID] = None
    domain_name: str
    lines_count: int


class BudgetByYearResponse(BaseModel):
    currency: str
    items: List[BudgetByYearItem]


class BudgetByNatureResponse(BaseModel):
    year: Optional[int] = None
    currency: str
    items: List[BudgetByNatureItem]


class BudgetByDomainResponse(BaseModel):
    year: Optional[int] = None
    currency: str
    items: List[BudgetByDomainItem]


class BudgetAlert(BaseModel):
    """Alert shown on the dashboard"""
    id: UUID
    type: str = Field(description="contract | invoice | budget")
    severity: str = Field(description="warning | error")
    title: str
    message: str
    date: Optional[dt.date] = None
    critical: bool = False


class BudgetAlertsResponse(BaseModel):
    total: int
    items: List[BudgetAlert]


class MonthlyInvoicedItem(BaseModel):
    month: int = Field(ge=1, le=12)
    label: str = Field(description="Short month name")
    invoiced: Dict[int, Decimal] = Field(description="Signed invoiced amount per year")


class BudgetMonthlyResponse(BaseModel):
    years: List[int]
    currency: str
    items: List[MonthlyInvoicedItem]
