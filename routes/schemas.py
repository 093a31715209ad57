"""Request and response bodies for the orchestration API"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentCreate(BaseModel):
    merchant_address: str = Field(..., examples=["0x" + "ab" * 20])
    amount: Decimal = Field(..., examples=["1000.00"])
    token: str = Field(..., examples=["USDC"])
    chain: str = Field(..., examples=["ethereum"])
    yield_enabled: bool = False
    expires_at: Optional[datetime] = None
    payer_address: Optional[str] = None
    risk_tolerance: Optional[str] = Field(None, examples=["moderate"])
    metadata: Optional[Dict[str, Any]] = None


class DepositProof(BaseModel):
    tx_hash: str = Field(..., min_length=1)
    payer_address: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class PaymentRead(BaseModel):
    payment_id: str
    payer_address: Optional[str]
    merchant_address: str
    amount: Decimal
    token: str
    chain: str
    status: str
    escrow_address: str
    yield_enabled: bool
    risk_tolerance: str
    estimated_yield: Decimal
    actual_yield: Optional[Decimal]
    deposit_tx_hash: Optional[str]
    release_tx_hash: Optional[str]
    failure_reason: Optional[str]
    payment_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    confirmed_at: Optional[datetime]
    released_at: Optional[datetime]
    expires_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class PaymentEventRead(BaseModel):
    event_type: str
    from_status: Optional[str]
    to_status: Optional[str]
    tx_hash: Optional[str]
    error: Optional[str]
    payload: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StrategyCreate(BaseModel):
    strategy_id: str = Field(..., min_length=1, max_length=64)
    name: str
    protocol: str
    risk_score: int = Field(..., ge=1, le=10)
    cap_bp: Optional[int] = Field(None, gt=0, le=10000)
    expected_apy: Decimal = Field(Decimal("0"), ge=0)
    endpoint_url: Optional[str] = None


class StrategyRead(BaseModel):
    strategy_id: str
    name: str
    protocol: str
    risk_score: int
    cap_bp: int
    weight_bp: int
    expected_apy: Decimal
    status: str

    model_config = ConfigDict(from_attributes=True)


class PauseRequest(BaseModel):
    reason: Optional[str] = None


class RebalanceRequest(BaseModel):
    allocations: Dict[str, int]


class RebalanceRead(BaseModel):
    id: int
    previous_weights: Dict[str, int]
    new_weights: Dict[str, int]
    l1_distance_bp: int
    triggered_by: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BridgeInitiate(BaseModel):
    source_chain: str
    destination_chain: str
    token: str
    amount: Decimal
    source_address: str
    destination_address: str
    payment_id: Optional[str] = None


class BridgeComplete(BaseModel):
    proof: Optional[Dict[str, Any]] = None


class BridgeRefund(BaseModel):
    reason: str = Field(..., min_length=1)


class BridgeRead(BaseModel):
    transaction_id: str
    payment_id: Optional[str]
    source_chain: str
    destination_chain: str
    source_address: str
    destination_address: str
    token: str
    amount: Decimal
    fee_bp: int
    fee_amount: Decimal
    status: str
    source_tx_hash: Optional[str]
    destination_tx_hash: Optional[str]
    refund_tx_hash: Optional[str]
    applied_apy: Optional[Decimal]
    yield_amount: Optional[Decimal]
    payout_amount: Optional[Decimal]
    refund_reason: Optional[str]
    failure_reason: Optional[str]
    created_at: datetime
    validated_at: Optional[datetime]
    completed_at: Optional[datetime]
    refunded_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ReconciliationCaseRead(BaseModel):
    case_id: str
    subject_type: str
    subject_id: str
    operation: str
    external_reference: Optional[str]
    amount: Optional[Decimal]
    token: Optional[str]
    error: str
    status: str
    resolution_note: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ResolveCaseRequest(BaseModel):
    resolution_note: str = Field(..., min_length=1)


class EstimateResponse(BaseModel):
    fee: Decimal
    estimated_seconds: int
    estimated_yield: Decimal
    payout: Decimal

