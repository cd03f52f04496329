"""
Servicios de negocio para el módulo de Presupuesto

- CRUD de líneas presupuestarias (nunca toca engaged / invoiced)
- Presupuesto anual: solo el valor nominal `budget`
- Referenciales BudgetType / BudgetDomain
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func, or_
from typing import Optional
from uuid import UUID
import logging

from app.common.exceptions import ConflictError, NotFoundError, StorageError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder, snapshot, diff
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_admin, require_writer, tenant_of
from app.modules.budget.models import BudgetLine, BudgetType, BudgetDomain, YearlyBudget
from app.modules.budget.schemas import (
    BudgetLineCreate, BudgetLineUpdate, BudgetLineList,
    BudgetTypeCreate, BudgetDomainCreate
)
from app.modules.contracts.models import Contract
from app.modules.invoices.models import Invoice

logger = logging.getLogger(__name__)

LINE_AUDIT_FIELDS = (
    "label", "description", "nature", "type_id", "domain_id",
    "pole_id", "accounting_code", "budget"
)


class BudgetLineService:
    """Servicio de líneas presupuestarias"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    def get_budget_line_by_id(self, line_id: UUID, tenant_id: UUID) -> BudgetLine:
        line = self.db.query(BudgetLine).options(selectinload(BudgetLine.yearly_budgets)).filter(
            BudgetLine.id == line_id,
            BudgetLine.tenant_id == tenant_id
        ).first()
        if not line:
            raise NotFoundError("Línea presupuestaria no encontrada")
        return line

    def get_budget_lines(
        self,
        tenant_id: UUID,
        nature: Optional[str] = None,
        type_id: Optional[UUID] = None,
        domain_id: Optional[UUID] = None,
        year: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> BudgetLineList:
        query = self.db.query(BudgetLine).filter(BudgetLine.tenant_id == tenant_id)

        if nature:
            query = query.filter(BudgetLine.nature == nature)
        if type_id:
            query = query.filter(BudgetLine.type_id == type_id)
        if domain_id:
            query = query.filter(BudgetLine.domain_id == domain_id)
        if year:
            query = query.filter(BudgetLine.yearly_budgets.any(YearlyBudget.year == year))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                BudgetLine.label.ilike(pattern),
                BudgetLine.accounting_code.ilike(pattern)
            ))

        total = query.count()
        lines = query.order_by(BudgetLine.label).offset(offset).limit(limit).all()
        return BudgetLineList(items=lines, total=total, limit=limit, offset=offset)

    def create_budget_line(self, data: BudgetLineCreate, auth: AuthContext) -> BudgetLine:
        """Crear línea con agregados a cero y, opcionalmente, sus presupuestos anuales"""
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            self._check_references(tenant_id, data.type_id, data.domain_id)

            line = BudgetLine(
                label=data.label,
                description=data.description,
                nature=data.nature.value,
                type_id=data.type_id,
                domain_id=data.domain_id,
                pole_id=data.pole_id,
                accounting_code=data.accounting_code,
                budget=data.budget,
                engaged=0,
                invoiced=0,
                tenant_id=tenant_id
            )
            line.yearly_budgets = [
                YearlyBudget(year=item.year, budget=item.budget, engaged=0, invoiced=0)
                for item in data.yearly_budgets
            ]
            self.db.add(line)
            self.db.flush()

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "BudgetLine", line.id,
                {"after": snapshot(line, LINE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.commit()
            self.db.refresh(line)
            logger.info(f"BudgetLine {line.id} creada en tenant {tenant_id}")
            return line

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando línea presupuestaria")
            self.db.rollback()
            raise StorageError()

    def update_budget_line(self, line_id: UUID, data: BudgetLineUpdate, auth: AuthContext) -> BudgetLine:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            line = self.get_budget_line_by_id(line_id, tenant_id)
            before = snapshot(line, LINE_AUDIT_FIELDS)

            update_data = data.model_dump(exclude_unset=True)
            self._check_references(tenant_id, update_data.get("type_id"), update_data.get("domain_id"))
            if update_data.get("nature") is not None:
                update_data["nature"] = update_data["nature"].value

            for field, value in update_data.items():
                setattr(line, field, value)
            self.db.flush()

            changes = diff(before, snapshot(line, LINE_AUDIT_FIELDS))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "BudgetLine", line.id, changes, tenant_id)
            self.db.commit()
            self.db.refresh(line)
            return line

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error actualizando línea presupuestaria {line_id}")
            self.db.rollback()
            raise StorageError()

    def delete_budget_line(self, line_id: UUID, auth: AuthContext) -> None:
        """Solo admin; prohibido mientras tenga contratos o facturas asignados"""
        require_admin(auth, "Solo los administradores pueden eliminar líneas presupuestarias")
        tenant_id = tenant_of(auth)
        try:
            line = self.get_budget_line_by_id(line_id, tenant_id)

            contracts = self.db.query(func.count(Contract.id)).filter(Contract.budget_line_id == line.id).scalar()
            invoices = self.db.query(func.count(Invoice.id)).filter(Invoice.budget_line_id == line.id).scalar()
            if contracts or invoices:
                raise ConflictError(
                    f"No se puede eliminar la línea: tiene {contracts} contrato(s) y {invoices} factura(s) asociados"
                )

            self.audit.record(
                auth.user_id, AuditAction.DELETE, "BudgetLine", line.id,
                {"before": snapshot(line, LINE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.delete(line)
            self.db.commit()
            logger.info(f"BudgetLine {line_id} eliminada por {auth.user_id}")

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando línea presupuestaria {line_id}")
            self.db.rollback()
            raise StorageError()

    def upsert_yearly_budget(self, line_id: UUID, year: int, budget, auth: AuthContext) -> YearlyBudget:
        """Fija el presupuesto nominal de un año; engaged / invoiced no se tocan"""
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            line = self.get_budget_line_by_id(line_id, tenant_id)
            yearly = self.db.query(YearlyBudget).filter(
                YearlyBudget.budget_line_id == line.id,
                YearlyBudget.year == year
            ).first()

            if yearly:
                before = {"budget": str(yearly.budget)}
                yearly.budget = budget
                action = AuditAction.UPDATE
            else:
                before = None
                # Sin fila para el año = ningún documento ha contribuido todavía
                yearly = YearlyBudget(budget_line_id=line.id, year=year, budget=budget, engaged=0, invoiced=0)
                self.db.add(yearly)
                action = AuditAction.CREATE
            self.db.flush()

            self.audit.record(
                auth.user_id, action, "YearlyBudget", yearly.id,
                {"year": year, "budget": {"before": before["budget"] if before else None, "after": str(budget)}},
                tenant_id
            )
            self.db.commit()
            self.db.refresh(yearly)
            return yearly

        except HTTPException:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"El presupuesto {year} se modificó simultáneamente; reintente")
        except Exception:
            logger.exception(f"Error guardando presupuesto anual {line_id}/{year}")
            self.db.rollback()
            raise StorageError()

    def _check_references(self, tenant_id: UUID, type_id: Optional[UUID], domain_id: Optional[UUID]) -> None:
        if type_id and not self.db.query(BudgetType.id).filter(
            BudgetType.id == type_id, BudgetType.tenant_id == tenant_id
        ).first():
            raise NotFoundError("Tipo presupuestario no encontrado")
        if domain_id and not self.db.query(BudgetDomain.id).filter(
            BudgetDomain.id == domain_id, BudgetDomain.tenant_id == tenant_id
        ).first():
            raise NotFoundError("Dominio presupuestario no encontrado")


class BudgetReferenceService:
    """Tipos y dominios presupuestarios"""

    def __init__(self, db: Session):
        self.db = db

    def get_types(self, tenant_id: UUID):
        return self.db.query(BudgetType).filter(BudgetType.tenant_id == tenant_id).order_by(BudgetType.name).all()

    def create_type(self, data: BudgetTypeCreate, auth: AuthContext) -> BudgetType:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            budget_type = BudgetType(name=data.name, color=data.color, tenant_id=tenant_id)
            self.db.add(budget_type)
            self.db.commit()
            self.db.refresh(budget_type)
            return budget_type
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Ya existe un tipo presupuestario '{data.name}'")
        except Exception:
            logger.exception("Error creando tipo presupuestario")
            self.db.rollback()
            raise StorageError()

    def get_domains(self, tenant_id: UUID, type_id: Optional[UUID] = None):
        query = self.db.query(BudgetDomain).filter(BudgetDomain.tenant_id == tenant_id)
        if type_id:
            query = query.filter(BudgetDomain.type_id == type_id)
        return query.order_by(BudgetDomain.name).all()

    def create_domain(self, data: BudgetDomainCreate, auth: AuthContext) -> BudgetDomain:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            if data.type_id and not self.db.query(BudgetType.id).filter(
                BudgetType.id == data.type_id, BudgetType.tenant_id == tenant_id
            ).first():
                raise NotFoundError("Tipo presupuestario no encontrado")

            domain = BudgetDomain(
                name=data.name, description=data.description, type_id=data.type_id, tenant_id=tenant_id
            )
            self.db.add(domain)
            self.db.commit()
            self.db.refresh(domain)
            return domain
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando dominio presupuestario")
            self.db.rollback()
            raise StorageError()
