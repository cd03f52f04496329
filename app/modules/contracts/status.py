"""
Estado derivado de un contrato

Función pura de end_date y de la fecha actual; nunca se persiste.
"""

from datetime import date, timedelta
from enum import Enum
from typing import Optional, Tuple

from app.core.config import settings


class ContractStatus(str, Enum):
    ACTIF = "Actif"
    EXPIRANT = "Expirant"
    EXPIRE = "Expiré"


def days_remaining(end_date: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    return (end_date - today).days


def derive_contract_status(end_date: date, today: Optional[date] = None) -> ContractStatus:
    remaining = days_remaining(end_date, today)
    if remaining < 0:
        return ContractStatus.EXPIRE
    if remaining <= settings.CONTRACT_EXPIRING_DAYS:
        return ContractStatus.EXPIRANT
    return ContractStatus.ACTIF


def is_critical(end_date: date, today: Optional[date] = None) -> bool:
    """Subdivisión de Expirant usada por las alertas"""
    remaining = days_remaining(end_date, today)
    return 0 <= remaining <= settings.CONTRACT_CRITICAL_DAYS


def end_date_range(status: ContractStatus, today: Optional[date] = None) -> Tuple[Optional[date], Optional[date]]:
    """Intervalo [desde, hasta] de end_date equivalente a un estado, para filtrar en SQL"""
    today = today or date.today()
    if status == ContractStatus.EXPIRE:
        return None, today - timedelta(days=1)
    if status == ContractStatus.EXPIRANT:
        return today, today + timedelta(days=settings.CONTRACT_EXPIRING_DAYS)
    return today + timedelta(days=settings.CONTRACT_EXPIRING_DAYS + 1), None
