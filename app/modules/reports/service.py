"""
Budget report service

Read-only aggregations over BudgetLine / YearlyBudget. Figures come from the
ledger-maintained columns, so every report is a single grouped query.
"""

from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.common.exceptions import ValidationError
from app.core.config import settings
from app.modules.budget.models import BudgetLine, BudgetDomain, YearlyBudget
from app.modules.contracts.models import Contract
from app.modules.contracts.status import is_critical
from app.modules.invoices.models import Invoice, InvoiceStatus
from app.modules.reports.schemas import (
    BudgetSummaryResponse, BudgetByYearItem, BudgetByYearResponse,
    BudgetByNatureItem, BudgetByNatureResponse, BudgetByDomainItem, BudgetByDomainResponse,
    BudgetAlert, BudgetAlertsResponse, MonthlyInvoicedItem, BudgetMonthlyResponse
)

CENT = Decimal("0.01")
ZERO = Decimal("0")
MONTH_LABELS = (
    "janv.", "févr.", "mars", "avr.", "mai", "juin",
    "juil.", "août", "sept.", "oct.", "nov.", "déc.",
)


def _rate(part: Decimal, total: Decimal) -> Optional[Decimal]:
    if not total:
        return None
    return (Decimal(part) / Decimal(total) * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def _totals(budget, engaged, invoiced) -> Dict[str, Optional[Decimal]]:
    budget, engaged, invoiced = Decimal(budget or 0), Decimal(engaged or 0), Decimal(invoiced or 0)
    return {
        "budget": budget,
        "engaged": engaged,
        "invoiced": invoiced,
        "remaining": budget - invoiced,
        "engagement_rate": _rate(engaged, budget),
        "consumption_rate": _rate(invoiced, budget),
    }


class BudgetReportService:
    """Report service scoped to one tenant"""

    def __init__(self, db: Session, tenant_id: UUID):
        self.db = db
        self.tenant_id = tenant_id

    def _get_base_line_query(self, *columns):
        """Base query over budget lines with tenant filtering"""
        return self.db.query(*columns).select_from(BudgetLine).filter(
            BudgetLine.tenant_id == self.tenant_id
        )

    def _amount_columns(self, yearly: bool):
        """Line totals, or the yearly breakdown"""
        source = YearlyBudget if yearly else BudgetLine
        return (
            func.coalesce(func.sum(source.budget), 0),
            func.coalesce(func.sum(source.engaged), 0),
            func.coalesce(func.sum(source.invoiced), 0),
        )

    def _scoped(self, query, year: Optional[int]):
        if year:
            query = query.join(YearlyBudget, YearlyBudget.budget_line_id == BudgetLine.id).filter(
                YearlyBudget.year == year
            )
        return query

    def get_summary(self, year: Optional[int] = None) -> BudgetSummaryResponse:
        """Global budget / engaged / invoiced, optionally for one year"""
        budget, engaged, invoiced = self._scoped(
            self._get_base_line_query(*self._amount_columns(bool(year))), year
        ).one()

        lines_count = self._scoped(self._get_base_line_query(func.count(BudgetLine.id)), year).scalar()
        source = YearlyBudget if year else BudgetLine
        over_budget = self._scoped(
            self._get_base_line_query(func.count(BudgetLine.id)), year
        ).filter(source.invoiced > source.budget).scalar()

        return BudgetSummaryResponse(
            year=year,
            currency=settings.DEFAULT_CURRENCY,
            lines_count=lines_count or 0,
            over_budget_lines=over_budget or 0,
            **_totals(budget, engaged, invoiced)
        )

    def get_by_year(self) -> BudgetByYearResponse:
        rows = self._get_base_line_query(YearlyBudget.year, *self._amount_columns(True)).join(
            YearlyBudget, YearlyBudget.budget_line_id == BudgetLine.id
        ).group_by(YearlyBudget.year).order_by(YearlyBudget.year).all()

        items = [BudgetByYearItem(year=year, **_totals(b, e, i)) for year, b, e, i in rows]
        return BudgetByYearResponse(currency=settings.DEFAULT_CURRENCY, items=items)

    def get_by_nature(self, year: Optional[int] = None) -> BudgetByNatureResponse:
        rows = self._scoped(
            self._get_base_line_query(BudgetLine.nature, func.count(BudgetLine.id), *self._amount_columns(bool(year))),
            year
        ).group_by(BudgetLine.nature).order_by(BudgetLine.nature).all()

        items = [
            BudgetByNatureItem(nature=nature, lines_count=count, **_totals(b, e, i))
            for nature, count, b, e, i in rows
        ]
        return BudgetByNatureResponse(year=year, currency=settings.DEFAULT_CURRENCY, items=items)

    def get_by_domain(self, year: Optional[int] = None) -> BudgetByDomainResponse:
        rows = self._scoped(
            self._get_base_line_query(
                BudgetLine.domain_id, BudgetDomain.name, func.count(BudgetLine.id), *self._amount_columns(bool(year))
            ).outerjoin(BudgetDomain, BudgetDomain.id == BudgetLine.domain_id),
            year
        ).group_by(BudgetLine.domain_id, BudgetDomain.name).order_by(BudgetDomain.name).all()

        items = [
            BudgetByDomainItem(
                domain_id=domain_id,
                domain_name=name or "Sans domaine",
                lines_count=count,
                **_totals(b, e, i)
            )
            for domain_id, name, count, b, e, i in rows
        ]
        return BudgetByDomainResponse(year=year, currency=settings.DEFAULT_CURRENCY, items=items)

    def get_monthly_stats(self, years: List[int]) -> BudgetMonthlyResponse:
        """Signed invoiced amount per calendar month, one column per requested year"""
        years = sorted(set(years))
        if not years:
            raise ValidationError("At least one year is required", fields=["years"])

        month = func.extract("month", Invoice.invoice_date)
        signed = case((Invoice.is_credit.is_(True), -Invoice.amount), else_=Invoice.amount)
        rows = self.db.query(Invoice.invoice_year, month, func.coalesce(func.sum(signed), 0)).filter(
            Invoice.tenant_id == self.tenant_id,
            Invoice.invoice_year.in_(years)
        ).group_by(Invoice.invoice_year, month).all()
        totals = {(year, int(m)): Decimal(str(total)) for year, m, total in rows}

        items = [
            MonthlyInvoicedItem(
                month=m,
                label=MONTH_LABELS[m - 1],
                invoiced={year: totals.get((year, m), ZERO) for year in years}
            )
            for m in range(1, 13)
        ]
        return BudgetMonthlyResponse(years=years, currency=settings.DEFAULT_CURRENCY, items=items)

    def get_alerts(self, limit: int = 5, today: Optional[date] = None) -> BudgetAlertsResponse:
        """Expiring contracts, late invoices and over-budget lines"""
        today = today or date.today()
        alerts: List[BudgetAlert] = []

        expiring = self.db.query(Contract).filter(
            Contract.tenant_id == self.tenant_id,
            Contract.end_date >= today,
            Contract.end_date <= today + timedelta(days=settings.CONTRACT_EXPIRING_DAYS)
        ).order_by(Contract.end_date).limit(limit).all()
        for contract in expiring:
            critical = is_critical(contract.end_date, today)
            alerts.append(BudgetAlert(
                id=contract.id,
                type="contract",
                severity="error" if critical else "warning",
                title="Contrat expirant bientôt",
                message=f"{contract.label} ({contract.number}) expire le {contract.end_date.strftime('%d/%m/%Y')}",
                date=contract.end_date,
                critical=critical
            ))

        late = self.db.query(Invoice).filter(
            Invoice.tenant_id == self.tenant_id,
            Invoice.status == InvoiceStatus.LATE.value
        ).order_by(Invoice.due_date).limit(limit).all()
        for invoice in late:
            alerts.append(BudgetAlert(
                id=invoice.id,
                type="invoice",
                severity="error",
                title="Facture en retard",
                message=f"Facture {invoice.number} - {invoice.vendor} - {invoice.amount} {settings.DEFAULT_CURRENCY}",
                date=invoice.due_date
            ))

        overspent = self.db.query(BudgetLine).filter(
            BudgetLine.tenant_id == self.tenant_id,
            BudgetLine.invoiced > BudgetLine.budget
        ).order_by(BudgetLine.label).limit(limit).all()
        for line in overspent:
            alerts.append(BudgetAlert(
                id=line.id,
                type="budget",
                severity="error",
                title="Budget dépassé",
                message=f"{line.label} - Facturé: {line.invoiced} / Budget: {line.budget} {settings.DEFAULT_CURRENCY}",
                date=today
            ))

        return BudgetAlertsResponse(total=len(alerts), items=alerts)
