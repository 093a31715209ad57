"""
Health and Operations Routes
Database and external service health, circuit reset and reconciliation cases.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from database import test_connection as database_answers
from routes.schemas import ReconciliationCaseRead, ResolveCaseRequest
from services.container import ServiceContainer, get_container
from utils.exception_handler import PaymentSystemError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: ServiceContainer = Depends(get_container)):
    database_ok = database_answers()
    external = services.resilience.get_all_service_status()
    open_circuits = [name for name, status in external.items() if status["status"] == "circuit_open"]
    return {
        "status": "healthy" if database_ok and not open_circuits else "degraded",
        "database": database_ok,
        "services": external,
        "open_circuits": open_circuits,
        "open_reconciliation_cases": services.reconciliation.summarize().open_cases,
        "cache": services.cache.get_stats(),
    }


@router.post("/admin/circuits/{service_name}/reset")
async def reset_circuit(service_name: str, services: ServiceContainer = Depends(get_container)):
    if not services.resilience.force_circuit_reset(service_name):
        raise HTTPException(status_code=404, detail=f"Service {service_name} is not monitored")
    logger.warning(f"Circuit for {service_name} manually reset")
    return services.resilience.get_service_status(service_name)


@router.get("/admin/reconciliation", response_model=List[ReconciliationCaseRead])
async def list_reconciliation_cases(status: str = "open", services: ServiceContainer = Depends(get_container)):
    return [ReconciliationCaseRead.model_validate(c) for c in services.reconciliation.list_cases(status or None)]


@router.post("/admin/reconciliation/{case_id}/resolve", response_model=ReconciliationCaseRead)
async def resolve_reconciliation_case(
    case_id: str, body: ResolveCaseRequest, services: ServiceContainer = Depends(get_container)
):
    try:
        return ReconciliationCaseRead.model_validate(
            services.reconciliation.resolve_case(case_id, body.resolution_note)
        )
    except PaymentSystemError as e:
        raise to_http_exception(e)
