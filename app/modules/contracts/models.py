"""
Modelos SQLAlchemy para el módulo de Contratos

El estado del contrato (Actif / Expirant / Expiré) NO se persiste:
se deriva de end_date en cada lectura (ver status.py).
"""

from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Numeric, Integer, Date, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.common.ledger_guard import guard_ledger_fields, guard_ledger_rows


class Contract(Base, TenantMixin, TimestampMixin):
    """
    Compromiso con un proveedor

    `amount`, `budget_line_id`, `start_date` y el reparto anual solo los escribe
    el LedgerMutator (listeners de app/common/ledger_guard.py).
    """
    __tablename__ = "contracts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    number = Column(String(100), nullable=False, index=True)
    label = Column(String(200), nullable=False)
    vendor = Column(String(200), nullable=False, index=True)
    provider_name = Column(String(200), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, nullable=True)
    accounting_code = Column(String(50), nullable=True)

    type_id = Column(UUID(as_uuid=True), ForeignKey("budget_types.id"), nullable=True)
    domain_id = Column(UUID(as_uuid=True), ForeignKey("budget_domains.id"), nullable=True)
    budget_line_id = Column(UUID(as_uuid=True), ForeignKey("budget_lines.id"), nullable=True, index=True)

    # Relationships
    budget_line = relationship("BudgetLine", back_populates="contracts")
    yearly_amounts = relationship(
        "ContractYearlyAmount", back_populates="contract",
        cascade="all, delete-orphan", order_by="ContractYearlyAmount.year"
    )
    invoices = relationship("Invoice", back_populates="contract")


class ContractYearlyAmount(Base, TimestampMixin):
    """Reparto anual del importe de un contrato plurianual"""
    __tablename__ = "contract_yearly_amounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    contract_id = Column(
        UUID(as_uuid=True), ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    year = Column(Integer, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)

    contract = relationship("Contract", back_populates="yearly_amounts")

    __table_args__ = (
        UniqueConstraint("contract_id", "year", name="uq_contract_yearly_amount_year"),
    )


guard_ledger_fields(Contract, ("amount", "budget_line_id", "start_date"))
guard_ledger_rows(ContractYearlyAmount)
