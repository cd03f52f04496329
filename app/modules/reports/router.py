"""
Budget Reports Router

Read-only endpoints consumed by the dashboards.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.common.exceptions import ValidationError
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.reports.schemas import (
    BudgetSummaryResponse,
    BudgetByYearResponse,
    BudgetByNatureResponse,
    BudgetByDomainResponse,
    BudgetAlertsResponse,
    BudgetMonthlyResponse
)
from app.modules.reports.service import BudgetReportService


router = APIRouter(prefix="/reports/budget", tags=["Reports"])


@router.get("/summary", response_model=BudgetSummaryResponse)
async def get_budget_summary(
    year: Optional[int] = Query(None, ge=2000, le=2100, description="Restrict to one budget year"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    """Global budget, engaged and invoiced totals."""
    return BudgetReportService(db, auth_context.tenant_id).get_summary(year)


@router.get("/by-year", response_model=BudgetByYearResponse)
async def get_budget_by_year(
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    """Totals per year from the yearly breakdown."""
    return BudgetReportService(db, auth_context.tenant_id).get_by_year()


@router.get("/by-nature", response_model=BudgetByNatureResponse)
async def get_budget_by_nature(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    """Investissement vs Fonctionnement."""
    return BudgetReportService(db, auth_context.tenant_id).get_by_nature(year)


@router.get("/by-domain", response_model=BudgetByDomainResponse)
async def get_budget_by_domain(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    return BudgetReportService(db, auth_context.tenant_id).get_by_domain(year)


@router.get("/alerts", response_model=BudgetAlertsResponse)
async def get_budget_alerts(
    limit: int = Query(5, ge=1, le=50, description="Max alerts per category"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    """Expiring contracts, late invoices and over-budget lines."""
    return BudgetReportService(db, auth_context.tenant_id).get_alerts(limit)


@router.get("/monthly", response_model=BudgetMonthlyResponse)
async def get_budget_monthly(
    years: str = Query(..., description="Comma separated years, e.g. 2024,2025"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    db: Session = Depends(get_db)
):
    """Invoiced amount per month for each requested year."""
    return BudgetReportService(db, auth_context.tenant_id).get_monthly_stats(parse_years(years))


def parse_years(raw: str) -> List[int]:
    try:
        years = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValidationError("years must be a comma separated list of integers", fields=["years"])
    if any(year < 2000 or year > 2100 for year in years):
        raise ValidationError("years must be between 2000 and 2100", fields=["years"])
    return years
