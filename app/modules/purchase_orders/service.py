"""
Servicios de negocio para Órdenes de compra

Máquina de estados explícita:

    DRAFT → SENT → CONFIRMED → DELIVERED → INVOICED
    (cualquier estado no terminal) → CANCELLED

El usuario elige el estado: desde un estado no terminal se puede ir a
cualquier otro, también hacia atrás. INVOICED y CANCELLED son terminales.
Las órdenes no participan en el ledger de líneas.
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy import or_
from datetime import date
from typing import Optional
from uuid import UUID
import logging

from app.common.exceptions import ConflictError, NotFoundError, ValidationError, StorageError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder, snapshot, diff
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_writer, tenant_of
from app.modules.forecast.service import ForecastLinker, LinkedDocument
from app.modules.purchase_orders.models import PurchaseOrder, PurchaseOrderStatus
from app.modules.purchase_orders.schemas import PurchaseOrderCreate, PurchaseOrderUpdate, PurchaseOrderList

logger = logging.getLogger(__name__)

TERMINAL_STATES = {PurchaseOrderStatus.INVOICED, PurchaseOrderStatus.CANCELLED}

PO_AUDIT_FIELDS = (
    "number", "vendor", "order_date", "expected_delivery_date", "amount",
    "description", "status", "linked_forecast_expense_id"
)


def can_transition(current: PurchaseOrderStatus, target: PurchaseOrderStatus) -> bool:
    """Solo los estados terminales son inmutables"""
    return current == target or current not in TERMINAL_STATES


class PurchaseOrderService:
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    def get_purchase_order_by_id(self, order_id: UUID, tenant_id: UUID) -> PurchaseOrder:
        order = self.db.query(PurchaseOrder).filter(
            PurchaseOrder.id == order_id,
            PurchaseOrder.tenant_id == tenant_id
        ).first()
        if not order:
            raise NotFoundError("Orden de compra no encontrada")
        return order

    def get_purchase_orders(
        self,
        tenant_id: UUID,
        status: Optional[PurchaseOrderStatus] = None,
        vendor: Optional[str] = None,
        unlinked_only: bool = False,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> PurchaseOrderList:
        query = self.db.query(PurchaseOrder).filter(PurchaseOrder.tenant_id == tenant_id)

        if status:
            query = query.filter(PurchaseOrder.status == status)
        if vendor:
            query = query.filter(PurchaseOrder.vendor.ilike(f"%{vendor}%"))
        if unlinked_only:
            query = query.filter(PurchaseOrder.linked_forecast_expense_id.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                PurchaseOrder.number.ilike(pattern),
                PurchaseOrder.vendor.ilike(pattern),
                PurchaseOrder.description.ilike(pattern)
            ))

        total = query.count()
        orders = query.order_by(PurchaseOrder.order_date.desc()).offset(offset).limit(limit).all()
        return PurchaseOrderList(items=orders, total=total, limit=limit, offset=offset)

    def create_purchase_order(self, data: PurchaseOrderCreate, auth: AuthContext) -> PurchaseOrder:
        require_writer(auth, "Los lectores no pueden crear órdenes de compra")
        tenant_id = tenant_of(auth)
        try:
            if not can_transition(PurchaseOrderStatus.DRAFT, data.status):
                raise ValidationError(f"Estado inicial no permitido: {data.status.value}", fields=["status"])
            self._check_unique_number(data.number, tenant_id)
            order = PurchaseOrder(
                number=data.number,
                vendor=data.vendor,
                order_date=data.order_date or date.today(),
                expected_delivery_date=data.expected_delivery_date,
                amount=data.amount,
                description=data.description,
                status=data.status,
                tenant_id=tenant_id
            )
            self.db.add(order)
            self.db.flush()

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "PurchaseOrder", order.id,
                {"after": snapshot(order, PO_AUDIT_FIELDS)}, tenant_id
            )
            if data.linked_forecast_expense_id:
                ForecastLinker(self.db).attach(
                    LinkedDocument.PURCHASE_ORDER, order, data.linked_forecast_expense_id, auth
                )

            self.db.commit()
            self.db.refresh(order)
            logger.info(f"Orden de compra {order.number} creada en tenant {tenant_id}")
            return order

        except HTTPException:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Ya existe una orden de compra con el número {data.number}")
        except Exception:
            logger.exception("Error creando orden de compra")
            self.db.rollback()
            raise StorageError()

    def update_purchase_order(self, order_id: UUID, data: PurchaseOrderUpdate, auth: AuthContext) -> PurchaseOrder:
        """Solo órdenes en estado no terminal"""
        require_writer(auth, "Los lectores no pueden modificar órdenes de compra")
        tenant_id = tenant_of(auth)
        try:
            order = self.get_purchase_order_by_id(order_id, tenant_id)
            if order.status in TERMINAL_STATES:
                raise ConflictError(f"La orden de compra está en estado terminal {order.status.value}")

            update_data = data.model_dump(exclude_unset=True)
            for required in ("number", "vendor", "order_date", "amount"):
                if required in update_data and update_data[required] is None:
                    raise ValidationError(f"{required} es obligatorio", fields=[required])
            if update_data.get("number") and update_data["number"] != order.number:
                self._check_unique_number(update_data["number"], tenant_id)

            before = snapshot(order, PO_AUDIT_FIELDS)
            for field, value in update_data.items():
                setattr(order, field, value)
            self.db.flush()

            changes = diff(before, snapshot(order, PO_AUDIT_FIELDS))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "PurchaseOrder", order.id, changes, tenant_id)
            self.db.commit()
            self.db.refresh(order)
            return order

        except HTTPException:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Ya existe una orden de compra con ese número")
        except Exception:
            logger.exception(f"Error actualizando orden de compra {order_id}")
            self.db.rollback()
            raise StorageError()

    def transition_status(self, order_id: UUID, target: PurchaseOrderStatus, auth: AuthContext) -> PurchaseOrder:
        """Cambia el estado; repetir el estado actual no hace nada"""
        require_writer(auth, "Los lectores no pueden modificar órdenes de compra")
        tenant_id = tenant_of(auth)
        try:
            order = self.db.query(PurchaseOrder).filter(
                PurchaseOrder.id == order_id,
                PurchaseOrder.tenant_id == tenant_id
            ).with_for_update().populate_existing().first()
            if not order:
                raise NotFoundError("Orden de compra no encontrada")

            current = order.status
            if not can_transition(current, target):
                raise ConflictError(f"Transición no permitida: {current.value} → {target.value}")

            if current != target:
                order.status = target
                self.db.flush()
                self.audit.record(
                    auth.user_id, AuditAction.UPDATE, "PurchaseOrder", order.id,
                    {"status": {"before": current.value, "after": target.value}}, tenant_id
                )
                logger.info(f"Orden de compra {order.number}: {current.value} → {target.value}")
            self.db.commit()
            self.db.refresh(order)
            return order

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error cambiando estado de la orden {order_id}")
            self.db.rollback()
            raise StorageError()

    def delete_purchase_order(self, order_id: UUID, auth: AuthContext) -> None:
        """Una orden facturada forma parte del histórico y no se borra"""
        require_writer(auth, "Los lectores no pueden eliminar órdenes de compra")
        tenant_id = tenant_of(auth)
        try:
            order = self.get_purchase_order_by_id(order_id, tenant_id)
            if order.status == PurchaseOrderStatus.INVOICED:
                raise ConflictError("No se puede eliminar una orden de compra facturada")

            self.audit.record(
                auth.user_id, AuditAction.DELETE, "PurchaseOrder", order.id,
                {"before": snapshot(order, PO_AUDIT_FIELDS)}, tenant_id
            )
            self.db.delete(order)
            self.db.commit()

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando orden de compra {order_id}")
            self.db.rollback()
            raise StorageError()

    def link_forecast(self, order_id: UUID, forecast_expense_id: Optional[UUID], auth: AuthContext) -> PurchaseOrder:
        return ForecastLinker(self.db).link_forecast(
            LinkedDocument.PURCHASE_ORDER, order_id, forecast_expense_id, auth
        )

    def _check_unique_number(self, number: str, tenant_id: UUID) -> None:
        existing = self.db.query(PurchaseOrder.id).filter(
            PurchaseOrder.tenant_id == tenant_id,
            PurchaseOrder.number == number
        ).first()
        if existing:
            raise ConflictError(f"Ya existe una orden de compra con el número {number}")
