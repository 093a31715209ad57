"""
Strategy Routes
Registry administration, pool rebalancing and harvest.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from routes.schemas import PauseRequest, RebalanceRead, RebalanceRequest, StrategyCreate, StrategyRead
from services.container import ServiceContainer, get_container
from utils.exception_handler import PaymentSystemError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/strategies", tags=["strategies"])


@router.post("", response_model=StrategyRead, status_code=201)
async def register_strategy(body: StrategyCreate, services: ServiceContainer = Depends(get_container)):
    try:
        snapshot = services.registry.register_strategy(
            strategy_id=body.strategy_id,
            name=body.name,
            protocol=body.protocol,
            risk_score=body.risk_score,
            cap_bp=body.cap_bp,
            expected_apy=body.expected_apy,
            endpoint_url=body.endpoint_url,
        )
        services.allocation_engine.client_for(snapshot)
        return StrategyRead.model_validate(snapshot)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error registering strategy: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("", response_model=List[StrategyRead])
async def list_strategies(include_removed: bool = False, services: ServiceContainer = Depends(get_container)):
    return [StrategyRead.model_validate(s) for s in services.registry.list_strategies(include_removed)]


@router.get("/pool")
async def get_pool(services: ServiceContainer = Depends(get_container)):
    """Current weights, vault APY and drift from target"""
    try:
        return {
            "weights": services.registry.current_weights(),
            "vault_apy": str(services.registry.vault_apy()),
            "drift": services.allocation_engine.check_drift(),
            "cooldown_remaining_seconds": services.allocation_engine.cooldown_remaining(),
        }
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.get("/rebalances", response_model=List[RebalanceRead])
async def rebalance_history(limit: int = 20, services: ServiceContainer = Depends(get_container)):
    return [RebalanceRead.model_validate(r) for r in services.allocation_engine.rebalance_history(limit)]


@router.post("/rebalance", response_model=RebalanceRead)
async def rebalance(body: RebalanceRequest, services: ServiceContainer = Depends(get_container)):
    try:
        record = await services.allocation_engine.rebalance(body.allocations, triggered_by="api")
        return RebalanceRead.model_validate(record)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error rebalancing: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/harvest")
async def harvest(services: ServiceContainer = Depends(get_container)):
    report = await services.allocation_engine.harvest_all()
    return report.to_dict()


@router.get("/{strategy_id}", response_model=StrategyRead)
async def get_strategy(strategy_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return StrategyRead.model_validate(services.registry.get_strategy(strategy_id))
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.post("/{strategy_id}/pause", response_model=StrategyRead)
async def pause_strategy(
    strategy_id: str, body: Optional[PauseRequest] = None, services: ServiceContainer = Depends(get_container)
):
    try:
        return StrategyRead.model_validate(
            services.registry.pause_strategy(strategy_id, body.reason if body else "")
        )
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.post("/{strategy_id}/resume", response_model=StrategyRead)
async def resume_strategy(strategy_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return StrategyRead.model_validate(services.registry.resume_strategy(strategy_id))
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.delete("/{strategy_id}", response_model=StrategyRead)
async def remove_strategy(strategy_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return StrategyRead.model_validate(services.registry.remove_strategy(strategy_id))
    except PaymentSystemError as e:
        raise to_http_exception(e)
