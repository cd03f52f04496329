"""
Modelos SQLAlchemy para el módulo de Presupuesto (Budget)

- BudgetType / BudgetDomain: referenciales de clasificación
- BudgetLine: línea presupuestaria con agregados `engaged` / `invoiced`
- YearlyBudget: desglose anual de cada línea

Los campos `engaged` e `invoiced` son contadores derivados: solo el
LedgerRepository (app.modules.ledger) los modifica.
"""

from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Numeric, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class BudgetNature(enum.Enum):
    """Eje de clasificación presupuestaria"""
    INVESTISSEMENT = "Investissement"   # Inversión (capital)
    FONCTIONNEMENT = "Fonctionnement"   # Funcionamiento (operación)


class BudgetType(Base, TenantMixin, TimestampMixin):
    __tablename__ = "budget_types"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False)
    color = Column(String(20), nullable=True)

    domains = relationship("BudgetDomain", back_populates="type")

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_budget_type_tenant_name"),
    )


class BudgetDomain(Base, TenantMixin, TimestampMixin):
    __tablename__ = "budget_domains"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    type_id = Column(UUID(as_uuid=True), ForeignKey("budget_types.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    type = relationship("BudgetType", back_populates="domains")


class BudgetLine(Base, TenantMixin, TimestampMixin):
    """
    Línea presupuestaria

    Invariante: engaged == Σ amount de los contratos asignados,
    invoiced == Σ importe firmado de las facturas asignadas (los avoirs restan).
    """
    __tablename__ = "budget_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    label = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    nature = Column(String(20), nullable=False, default=BudgetNature.FONCTIONNEMENT.value)
    type_id = Column(UUID(as_uuid=True), ForeignKey("budget_types.id"), nullable=True, index=True)
    domain_id = Column(UUID(as_uuid=True), ForeignKey("budget_domains.id"), nullable=True, index=True)
    pole_id = Column(UUID(as_uuid=True), nullable=True)  # unidad organizativa (externa)
    accounting_code = Column(String(50), nullable=True)

    budget = Column(Numeric(15, 2), nullable=False, default=0)  # informativo
    engaged = Column(Numeric(15, 2), nullable=False, default=0)
    invoiced = Column(Numeric(15, 2), nullable=False, default=0)

    # Relationships
    type = relationship("BudgetType")
    domain = relationship("BudgetDomain")
    yearly_budgets = relationship(
        "YearlyBudget", back_populates="budget_line",
        cascade="all, delete-orphan", order_by="YearlyBudget.year"
    )
    contracts = relationship("Contract", back_populates="budget_line")
    invoices = relationship("Invoice", back_populates="budget_line")

    @property
    def remaining(self):
        return (self.budget or 0) - (self.invoiced or 0)


class YearlyBudget(Base, TimestampMixin):
    """Desglose anual: mismo invariante restringido a los documentos del año"""
    __tablename__ = "yearly_budgets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    budget_line_id = Column(
        UUID(as_uuid=True), ForeignKey("budget_lines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    year = Column(Integer, nullable=False)

    budget = Column(Numeric(15, 2), nullable=False, default=0)
    engaged = Column(Numeric(15, 2), nullable=False, default=0)
    invoiced = Column(Numeric(15, 2), nullable=False, default=0)

    budget_line = relationship("BudgetLine", back_populates="yearly_budgets")

    __table_args__ = (
        UniqueConstraint("budget_line_id", "year", name="uq_yearly_budget_line_year"),
    )
