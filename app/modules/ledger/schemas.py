from pydantic import BaseModel
from typing import List, Optional
from uuid import UUID
from decimal import Decimal


class LedgerDiscrepancyOut(BaseModel):
    budget_line_id: UUID
    year: Optional[int] = None  # None = agregado de la línea
    field: str
    stored: Decimal
    expected: Decimal
    difference: Decimal

    class Config:
        from_attributes = True


class LedgerCheckResult(BaseModel):
    consistent: bool
    discrepancies: List[LedgerDiscrepancyOut]


class LedgerRebuildResult(BaseModel):
    corrected: int
    discrepancies: List[LedgerDiscrepancyOut]
