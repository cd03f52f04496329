"""
Router para el módulo de Presupuesto

- /budget-lines: CRUD de líneas y presupuesto anual
- /budget-types, /budget-domains: referenciales

Los agregados engaged / invoiced son de solo lectura en toda la API.
"""

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.budget.schemas import (
    BudgetLineCreate, BudgetLineUpdate, BudgetLineDetail, BudgetLineList, NatureEnum,
    YearlyBudgetUpsert, YearlyBudgetOut,
    BudgetTypeCreate, BudgetTypeOut, BudgetDomainCreate, BudgetDomainOut
)
from app.modules.budget.service import BudgetLineService, BudgetReferenceService

router = APIRouter(
    prefix="/budget-lines",
    tags=["Budget Lines"],
    responses={404: {"description": "Not found"}}
)

types_router = APIRouter(prefix="/budget-types", tags=["Budget Lines"])
domains_router = APIRouter(prefix="/budget-domains", tags=["Budget Lines"])


@router.get("/", response_model=BudgetLineList)
async def list_budget_lines(
    nature: Optional[NatureEnum] = Query(None),
    type_id: Optional[UUID] = Query(None),
    domain_id: Optional[UUID] = Query(None),
    year: Optional[int] = Query(None, description="Solo líneas con presupuesto en ese año"),
    search: Optional[str] = Query(None, description="Búsqueda por nombre o código contable"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return BudgetLineService(db).get_budget_lines(
        tenant_id=auth_context.tenant_id,
        nature=nature.value if nature else None,
        type_id=type_id,
        domain_id=domain_id,
        year=year,
        search=search,
        limit=limit,
        offset=offset
    )


@router.post("/", response_model=BudgetLineDetail, status_code=status.HTTP_201_CREATED)
async def create_budget_line(
    line_data: BudgetLineCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """
    Crear una línea presupuestaria

    - **label**: nombre de la línea
    - **nature**: Investissement o Fonctionnement
    - **yearly_budgets**: presupuestos anuales iniciales (opcional)
    """
    return BudgetLineService(db).create_budget_line(line_data, auth_context)


@router.get("/{line_id}", response_model=BudgetLineDetail)
async def get_budget_line(
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return BudgetLineService(db).get_budget_line_by_id(line_id, auth_context.tenant_id)


@router.put("/{line_id}", response_model=BudgetLineDetail)
async def update_budget_line(
    line_data: BudgetLineUpdate,
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return BudgetLineService(db).update_budget_line(line_id, line_data, auth_context)


@router.delete("/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_budget_line(
    line_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Eliminar una línea sin contratos ni facturas (solo admin)"""
    BudgetLineService(db).delete_budget_line(line_id, auth_context)


@router.put("/{line_id}/yearly-budgets/{year}", response_model=YearlyBudgetOut)
async def upsert_yearly_budget(
    payload: YearlyBudgetUpsert,
    line_id: UUID = Path(...),
    year: int = Path(..., ge=2000, le=2100),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return BudgetLineService(db).upsert_yearly_budget(line_id, year, payload.budget, auth_context)


# ===== REFERENCIALES =====

@types_router.get("/", response_model=List[BudgetTypeOut])
async def list_budget_types(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return BudgetReferenceService(db).get_types(auth_context.tenant_id)


@types_router.post("/", response_model=BudgetTypeOut, status_code=status.HTTP_201_CREATED)
async def create_budget_type(
    type_data: BudgetTypeCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return BudgetReferenceService(db).create_type(type_data, auth_context)


@domains_router.get("/", response_model=List[BudgetDomainOut])
async def list_budget_domains(
    type_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return BudgetReferenceService(db).get_domains(auth_context.tenant_id, type_id)


@domains_router.post("/", response_model=BudgetDomainOut, status_code=status.HTTP_201_CREATED)
async def create_budget_domain(
    domain_data: BudgetDomainCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return BudgetReferenceService(db).create_domain(domain_data, auth_context)
