"""
Bridge Routes
Initiate, validate, complete and refund cross-chain transfers.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from routes.payments import require_caller
from routes.schemas import BridgeComplete, BridgeInitiate, BridgeRead, BridgeRefund, EstimateResponse
from services.container import ServiceContainer, get_container
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import PaymentSystemError, ValidationError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bridge", tags=["bridge"])


@router.post("/transfers", response_model=BridgeRead, status_code=201)
async def initiate_bridge(body: BridgeInitiate, services: ServiceContainer = Depends(get_container)):
    try:
        transaction = await services.bridge.initiate(
            source_chain=body.source_chain,
            destination_chain=body.destination_chain,
            token=body.token,
            amount=body.amount,
            source_address=body.source_address,
            destination_address=body.destination_address,
            payment_id=body.payment_id,
        )
        return BridgeRead.model_validate(transaction)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error initiating bridge transfer: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/transfers", response_model=List[BridgeRead])
async def list_bridge_transfers(
    status: Optional[str] = None, limit: int = 100, services: ServiceContainer = Depends(get_container)
):
    transactions = services.bridge.list_transactions(status, min(max(limit, 1), 500))
    return [BridgeRead.model_validate(t) for t in transactions]


@router.get("/transfers/{transaction_id}", response_model=BridgeRead)
async def get_bridge_transfer(transaction_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return BridgeRead.model_validate(services.bridge.get_transaction(transaction_id))
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.get("/transfers/{transaction_id}/status")
async def get_bridge_status(transaction_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return services.bridge.get_status(transaction_id)
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.post("/transfers/{transaction_id}/validate", response_model=BridgeRead)
async def validate_bridge(
    transaction_id: str,
    x_caller_address: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_container),
):
    try:
        caller = require_caller(x_caller_address)
        return BridgeRead.model_validate(await services.bridge.validate(transaction_id, caller))
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error validating bridge transfer {transaction_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/transfers/{transaction_id}/complete", response_model=BridgeRead)
async def complete_bridge(
    transaction_id: str,
    body: Optional[BridgeComplete] = None,
    x_caller_address: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_container),
):
    try:
        caller = require_caller(x_caller_address)
        transaction = await services.bridge.complete(transaction_id, caller, proof=body.proof if body else None)
        return BridgeRead.model_validate(transaction)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error completing bridge transfer {transaction_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/transfers/{transaction_id}/refund", response_model=BridgeRead)
async def refund_bridge(
    transaction_id: str,
    body: BridgeRefund,
    x_caller_address: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_container),
):
    try:
        caller = require_caller(x_caller_address)
        return BridgeRead.model_validate(await services.bridge.refund(transaction_id, caller, body.reason))
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error refunding bridge transfer {transaction_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/estimate", response_model=EstimateResponse)
async def estimate_bridge(
    source_chain: str,
    destination_chain: str,
    amount: str,
    services: ServiceContainer = Depends(get_container),
):
    try:
        try:
            value = MonetaryDecimal.to_decimal(amount, "amount")
        except ValueError as e:
            raise ValidationError("amount must be a decimal number") from e
        bridge = services.bridge
        seconds = bridge.estimate_time(source_chain.lower(), destination_chain.lower())
        fee = bridge.estimate_fee(value)
        estimated_yield = await bridge.estimate_yield(
            value, source_chain.lower(), destination_chain.lower(), seconds
        )
        return EstimateResponse(
            fee=fee, estimated_seconds=seconds, estimated_yield=estimated_yield,
            payout=value - fee + estimated_yield,
        )
    except PaymentSystemError as e:
        raise to_http_exception(e)
