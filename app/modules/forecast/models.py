"""
Modelos del presupuesto previsional (jerarquía paralela al ledger real)

- ForecastBudgetLine: línea previsional con su propio budget
- ForecastExpense: gasto previsto al que se enlazan facturas / órdenes de compra (PIVOT)
"""

from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Numeric, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin


class ForecastBudgetLine(Base, TenantMixin, TimestampMixin):
    __tablename__ = "forecast_budget_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    label = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    nature = Column(String(20), nullable=False)
    year = Column(Integer, nullable=False, index=True)
    budget = Column(Numeric(15, 2), nullable=False, default=0)
    type_id = Column(UUID(as_uuid=True), ForeignKey("budget_types.id"), nullable=True)
    domain_id = Column(UUID(as_uuid=True), ForeignKey("budget_domains.id"), nullable=True)

    expenses = relationship(
        "ForecastExpense", back_populates="forecast_budget_line",
        cascade="all, delete-orphan", order_by="ForecastExpense.created_at"
    )


class ForecastExpense(Base, TenantMixin, TimestampMixin):
    __tablename__ = "forecast_expenses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    forecast_budget_line_id = Column(
        UUID(as_uuid=True), ForeignKey("forecast_budget_lines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    year = Column(Integer, nullable=False, index=True)
    label = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)

    # Relationships (uno a muchos físicamente)
    forecast_budget_line = relationship("ForecastBudgetLine", back_populates="expenses")
    linked_invoices = relationship("Invoice", back_populates="linked_forecast_expense")
    linked_purchase_orders = relationship("PurchaseOrder", back_populates="linked_forecast_expense")
