"""
Router para el módulo de Contratos

Todas las escrituras pasan por ContractService → LedgerMutator; el estado
(Actif / Expirant / Expiré) se calcula en cada lectura.
"""

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.contracts.schemas import ContractCreate, ContractUpdate, ContractOut, ContractList, ImportResult
from app.modules.contracts.service import ContractService
from app.modules.contracts.status import ContractStatus

router = APIRouter(
    prefix="/contracts",
    tags=["Contracts"],
    responses={404: {"description": "Not found"}}
)


@router.get("/", response_model=ContractList)
async def list_contracts(
    status_filter: Optional[ContractStatus] = Query(None, alias="status", description="Actif, Expirant o Expiré"),
    vendor: Optional[str] = Query(None),
    budget_line_id: Optional[UUID] = Query(None),
    search: Optional[str] = Query(None, description="Búsqueda por número, nombre o proveedor"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ContractService(db).get_contracts(
        tenant_id=auth_context.tenant_id,
        status=status_filter,
        vendor=vendor,
        budget_line_id=budget_line_id,
        search=search,
        limit=limit,
        offset=offset
    )


@router.post("/", response_model=ContractOut, status_code=status.HTTP_201_CREATED)
async def create_contract(
    contract_data: ContractCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """
    Crear un contrato

    Si tiene línea presupuestaria, su importe se suma a `engaged`
    (y al año de inicio o a su reparto anual).
    """
    return ContractService(db).create_contract(contract_data, auth_context)


@router.post("/import", response_model=ImportResult)
async def import_contracts(
    rows: List[ContractCreate],
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """Creación por lotes; cada fila en su propia transacción"""
    return ContractService(db).import_contracts(rows, auth_context)


@router.get("/{contract_id}", response_model=ContractOut)
async def get_contract(
    contract_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return ContractService(db).get_contract(contract_id, auth_context.tenant_id)


@router.put("/{contract_id}", response_model=ContractOut)
async def update_contract(
    contract_data: ContractUpdate,
    contract_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return ContractService(db).update_contract(contract_id, contract_data, auth_context)


@router.delete("/{contract_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contract(
    contract_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """Eliminar un contrato sin facturas (409 si tiene facturas)"""
    ContractService(db).delete_contract(contract_id, auth_context)
