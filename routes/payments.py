"""
Payment Routes
Create, confirm, release and cancel escrowed payments.

Caller identity comes from the X-Caller-Address header; release is
restricted to the payment's merchant.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from routes.schemas import CancelRequest, DepositProof, PaymentCreate, PaymentEventRead, PaymentRead
from services.container import ServiceContainer, get_container
from utils.exception_handler import AuthorizationError, PaymentSystemError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def require_caller(x_caller_address: Optional[str]) -> str:
    if not x_caller_address:
        raise AuthorizationError("X-Caller-Address header is required")
    return x_caller_address


@router.post("", response_model=PaymentRead, status_code=201)
async def create_payment(body: PaymentCreate, services: ServiceContainer = Depends(get_container)):
    try:
        payment = await services.payments.create(
            merchant_address=body.merchant_address,
            amount=body.amount,
            token=body.token,
            chain=body.chain,
            yield_enabled=body.yield_enabled,
            expires_at=body.expires_at,
            payer_address=body.payer_address,
            risk_tolerance=body.risk_tolerance,
            metadata=body.metadata,
        )
        return PaymentRead.model_validate(payment)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating payment: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("", response_model=List[PaymentRead])
async def list_payments(
    merchant_address: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    services: ServiceContainer = Depends(get_container),
):
    try:
        payments = services.payments.list_payments(merchant_address, status, min(max(limit, 1), 500))
        return [PaymentRead.model_validate(p) for p in payments]
    except Exception as e:
        logger.error(f"Error listing payments: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{payment_id}", response_model=PaymentRead)
async def get_payment(payment_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return PaymentRead.model_validate(services.payments.get_payment(payment_id))
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error loading payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{payment_id}/events", response_model=List[PaymentEventRead])
async def get_payment_events(payment_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return [PaymentEventRead.model_validate(e) for e in services.payments.get_events(payment_id)]
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.get("/{payment_id}/yield")
async def get_payment_yield(payment_id: str, services: ServiceContainer = Depends(get_container)):
    try:
        return services.payments.get_yield_info(payment_id)
    except PaymentSystemError as e:
        raise to_http_exception(e)


@router.post("/{payment_id}/confirm", response_model=PaymentRead)
async def confirm_payment(
    payment_id: str, body: DepositProof, services: ServiceContainer = Depends(get_container)
):
    try:
        payment = await services.payments.confirm_deposit(payment_id, body.model_dump())
        return PaymentRead.model_validate(payment)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error confirming payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{payment_id}/release", response_model=PaymentRead)
async def release_payment(
    payment_id: str,
    x_caller_address: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_container),
):
    try:
        caller = require_caller(x_caller_address)
        payment = await services.payments.release(payment_id, caller_address=caller)
        return PaymentRead.model_validate(payment)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error releasing payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{payment_id}/cancel", response_model=PaymentRead)
async def cancel_payment(
    payment_id: str,
    body: Optional[CancelRequest] = None,
    x_caller_address: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_container),
):
    try:
        caller = require_caller(x_caller_address)
        payment = await services.payments.cancel(
            payment_id, reason=body.reason if body else None, caller_address=caller
        )
        return PaymentRead.model_validate(payment)
    except PaymentSystemError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
