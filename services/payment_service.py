"""
Escrow Payment Service - lifecycle of a single escrowed payment.

    PENDING -> CONFIRMED -> COMPLETED
    PENDING | CONFIRMED -> FAILED | CANCELLED
    PENDING -> EXPIRED

Every transition runs under the payment's id lock and a row lock, is checked
against PaymentStateValidator, and appends a PaymentEvent in the same
database transaction as the status change.

Release order is transfer first, then mark terminal: if the transfer fails
the payment stays CONFIRMED with a RELEASE_FAILED event and can be released
again (the transfer carries an idempotency key). If the transfer succeeds
but the COMPLETED write fails, a reconciliation case is opened and
ReconciliationRequired is raised; the transfer is never re-sent blindly.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from caching.simple_cache import SimpleCache, invalidate, read_through
from config import Config
from database import SessionFactory, managed_session
from models import (
    AllocationStatus,
    Payment,
    PaymentAllocation,
    PaymentEvent,
    PaymentEventType,
    PaymentStatus,
    RiskTolerance,
)
from services.allocation_engine import AllocationEngine
from services.api_resilience_service import ResilienceService
from services.financial_reconciliation import FinancialReconciliationService
from services.notification_service import NotificationService
from services.protocol_clients import ChainGatewayClient
from utils.address_detector import addresses_equal, validate_address
from utils.atomic_transactions import KeyedLockRegistry, locked_row
from utils.datetime_helpers import Clock, ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import PaymentStateValidator
from utils.exception_handler import (
    AuthorizationError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    PaymentSystemError,
    ReconciliationRequired,
    UnsupportedChainError,
    UnsupportedTokenError,
    ValidationError,
)
from utils.yield_calculator import simple_interest, weighted_apy

logger = logging.getLogger(__name__)

CHAIN_GATEWAY_SERVICE = "chain_gateway"


def token_decimals(token: str, chain: str) -> int:
    """Decimals of token on chain, raising when the pair is not configured"""
    if chain not in Config.CHAIN_CONFIGS:
        raise UnsupportedChainError(chain)
    token_config = Config.SUPPORTED_TOKENS.get(token)
    if token_config is None or chain not in token_config["chains"]:
        raise UnsupportedTokenError(token, chain)
    return int(token_config["decimals"])


def validate_amount(amount: Any, decimals: int, field: str = "amount") -> Decimal:
    try:
        value = MonetaryDecimal.to_decimal(amount, field)
    except ValueError as e:
        raise ValidationError(f"{field} must be a decimal number", {"field": field}) from e
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"{field} must be greater than zero", {"field": field})
    if value > Config.MAX_PAYMENT_AMOUNT:
        raise ValidationError(
            f"{field} exceeds maximum of {Config.MAX_PAYMENT_AMOUNT}", {"field": field}
        )
    if not MonetaryDecimal.fits_token_precision(value, decimals):
        raise ValidationError(f"{field} has more than {decimals} decimal places", {"field": field})
    return value


@dataclass
class AllocationYield:
    allocation_id: int
    strategy_id: str
    principal: Decimal
    apy: Decimal
    accrued: Decimal


class PaymentService:
    """Owns creation, confirmation, yield accrual, release and cancellation of payments"""

    def __init__(
        self,
        allocation_engine: AllocationEngine,
        resilience: ResilienceService,
        chain_gateway: ChainGatewayClient,
        notifications: NotificationService,
        reconciliation: FinancialReconciliationService,
        session_factory: Optional[SessionFactory] = None,
        cache: Optional[SimpleCache] = None,
        clock: Clock = get_naive_utc_now,
    ):
        self.allocation_engine = allocation_engine
        self.resilience = resilience
        self.chain_gateway = chain_gateway
        self.notifications = notifications
        self.reconciliation = reconciliation
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock
        self.locks = KeyedLockRegistry("payment")

    # Helpers

    def _session(self):
        return managed_session(self.session_factory)

    @staticmethod
    def _cache_key(payment_id: str) -> str:
        return f"payment:{payment_id}"

    def _load(self, payment_id: str) -> Payment:
        with self._session() as session:
            payment = session.query(Payment).filter(Payment.payment_id == payment_id).first()
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
            return payment

    @staticmethod
    def _append_event(
        session: Session,
        payment: Payment,
        event_type: PaymentEventType,
        from_status: Optional[str],
        now: datetime,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        session.add(
            PaymentEvent(
                payment_id=payment.payment_id,
                event_type=event_type.value,
                from_status=from_status,
                to_status=payment.status,
                tx_hash=tx_hash,
                error=error,
                payload=payload or {},
                created_at=now,
            )
        )

    def _transition(
        self,
        session: Session,
        payment: Payment,
        new_status: PaymentStatus,
        event_type: PaymentEventType,
        now: datetime,
        **event_fields,
    ):
        previous = payment.status
        PaymentStateValidator.ensure_transition(payment.payment_id, previous, new_status.value)
        payment.status = new_status.value
        payment.updated_at = now
        self._append_event(session, payment, event_type, previous, now, **event_fields)
        logger.info(f"Payment {payment.payment_id}: {previous} -> {new_status.value}")

    def _record_event(self, payment_id: str, event_type: PaymentEventType, **event_fields):
        """Append an event without changing status (failed attempts)"""
        now = self.clock()
        with self._session() as session:
            payment = locked_row(session, Payment, Payment.payment_id, payment_id)
            self._append_event(session, payment, event_type, payment.status, now, **event_fields)

    @staticmethod
    def summarize(payment: Payment) -> Dict[str, Any]:
        return {
            "payment_id": payment.payment_id,
            "status": payment.status,
            "amount": str(payment.amount),
            "token": payment.token,
            "chain": payment.chain,
            "merchant_address": payment.merchant_address,
        }

    # Create

    async def create(
        self,
        merchant_address: str,
        amount: Any,
        token: str,
        chain: str,
        yield_enabled: bool = False,
        expires_at: Optional[datetime] = None,
        payer_address: Optional[str] = None,
        risk_tolerance: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Open a PENDING escrow for a merchant.

        Raises:
            ValidationError: bad amount, address, expiry, metadata or risk tolerance
            UnsupportedTokenError / UnsupportedChainError: pair not configured
        """
        token = (token or "").upper()
        chain = (chain or "").lower()
        decimals = token_decimals(token, chain)
        value = validate_amount(amount, decimals)
        merchant_address = validate_address(merchant_address, chain, "merchant_address")
        if payer_address:
            payer_address = validate_address(payer_address, chain, "payer_address")

        now = self.clock()
        expires_at = ensure_naive_datetime(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future", {"field": "expires_at"})

        risk_tolerance = (risk_tolerance or Config.DEFAULT_RISK_TOLERANCE).lower()
        if risk_tolerance not in {r.value for r in RiskTolerance}:
            raise ValidationError(f"Unknown risk tolerance {risk_tolerance}", {"field": "risk_tolerance"})

        if metadata is not None:
            if not isinstance(metadata, dict):
                raise ValidationError("metadata must be an object", {"field": "metadata"})
            try:
                encoded = json.dumps(metadata)
            except (TypeError, ValueError) as e:
                raise ValidationError("metadata must be JSON serializable", {"field": "metadata"}) from e
            if len(encoded) > Config.MAX_METADATA_SIZE:
                raise ValidationError(
                    f"metadata exceeds {Config.MAX_METADATA_SIZE} characters", {"field": "metadata"}
                )

        payment_id = f"PAY_{uuid.uuid4().hex[:16].upper()}"
        with self._session() as session:
            payment = Payment(
                payment_id=payment_id,
                payer_address=payer_address,
                merchant_address=merchant_address,
                amount=value,
                token=token,
                chain=chain,
                status=PaymentStatus.PENDING.value,
                escrow_address=Config.ESCROW_ADDRESSES[chain],
                yield_enabled=bool(yield_enabled),
                risk_tolerance=risk_tolerance,
                estimated_yield=Decimal("0"),
                payment_metadata=metadata,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
            )
            session.add(payment)
            self._append_event(
                session, payment, PaymentEventType.CREATED, None, now,
                payload={"amount": str(value), "token": token, "chain": chain, "yield_enabled": bool(yield_enabled)},
            )

        logger.info(f"Created payment {payment_id}: {value} {token} on {chain} for {merchant_address}")
        self.notifications.notify("payment.created", self.summarize(payment))
        return self._load(payment_id)

    # Confirm

    async def confirm_deposit(self, payment_id: str, proof: Dict[str, Any]) -> Payment:
        """
        Verify the payer's deposit on-chain and move PENDING -> CONFIRMED.

        Yield-enabled payments are then placed into strategies.

        Raises:
            InvalidStateError: payment is not PENDING
            ExpiredError: expiry passed first (payment becomes EXPIRED)
            ValidationError: proof missing, not final, or short
        """
        tx_hash = (proof or {}).get("tx_hash")
        if not tx_hash:
            raise ValidationError("proof.tx_hash is required", {"field": "tx_hash"})

        async with self.locks.hold(payment_id):
            payment = self._load(payment_id)
            if payment.status != PaymentStatus.PENDING.value:
                raise InvalidStateError(
                    f"Payment {payment_id} is {payment.status}, only pending payments can be confirmed",
                    current_status=payment.status,
                )

            now = self.clock()
            if payment.expires_at is not None and now >= payment.expires_at:
                self._mark_expired(payment_id, now, "expired before deposit confirmation")
                raise ExpiredError(f"Payment {payment_id} expired at {payment.expires_at.isoformat()}")

            verification = await self.resilience.execute(
                CHAIN_GATEWAY_SERVICE,
                lambda: self.chain_gateway.verify_deposit(
                    payment.chain, payment.token, payment.escrow_address, tx_hash,
                    MonetaryDecimal.to_decimal(payment.amount),
                ),
                description="verify_deposit",
            )

            if verification.status == "failed":
                with self._session() as session:
                    locked = locked_row(session, Payment, Payment.payment_id, payment_id)
                    locked.failure_reason = verification.error or "deposit transaction failed"
                    self._transition(
                        session, locked, PaymentStatus.FAILED, PaymentEventType.FAILED, now,
                        tx_hash=tx_hash, error=locked.failure_reason,
                    )
                self._after_terminal(payment_id, "payment.failed")
                raise ValidationError(
                    f"Deposit {tx_hash} failed on-chain", {"tx_hash": tx_hash, "error": verification.error}
                )
            if not verification.is_confirmed:
                raise ValidationError(
                    f"Deposit {tx_hash} is not final yet",
                    {"tx_hash": tx_hash, "confirmations": verification.confirmations},
                )
            if verification.amount is not None and verification.amount < MonetaryDecimal.to_decimal(payment.amount):
                raise ValidationError(
                    f"Deposit of {verification.amount} is less than the payment amount {payment.amount}",
                    {"tx_hash": tx_hash},
                )

            payer = proof.get("payer_address") or verification.from_address or payment.payer_address
            if not payer:
                raise ValidationError("payer_address could not be determined from the proof", {"field": "payer_address"})
            payer = validate_address(payer, payment.chain, "payer_address")

            with self._session() as session:
                locked = locked_row(session, Payment, Payment.payment_id, payment_id)
                locked.payer_address = payer
                locked.deposit_tx_hash = tx_hash
                locked.confirmed_at = now
                locked.yield_accrued_at = now
                self._transition(
                    session, locked, PaymentStatus.CONFIRMED, PaymentEventType.CONFIRMED, now,
                    tx_hash=tx_hash, payload={"confirmations": verification.confirmations},
                )

            if payment.yield_enabled:
                await self._place_capital(payment)

        confirmed = self._load(payment_id)
        self.notifications.notify("payment.confirmed", self.summarize(confirmed))
        return confirmed

    async def _place_capital(self, payment: Payment):
        decimals = token_decimals(payment.token, payment.chain)
        try:
            allocations = await self.allocation_engine.place_capital(
                payment.payment_id,
                MonetaryDecimal.to_decimal(payment.amount),
                payment.token,
                decimals,
                payment.risk_tolerance,
            )
        except ValidationError as e:
            # No feasible allocation: the principal simply stays in escrow earning nothing
            logger.warning(f"Payment {payment.payment_id} not placed into strategies: {e.message}")
            self._record_event(payment.payment_id, PaymentEventType.ALLOCATED, error=e.message)
            return

        try:
            now = self.clock()
            with self._session() as session:
                locked = locked_row(session, Payment, Payment.payment_id, payment.payment_id)
                for allocation in allocations:
                    session.add(allocation)
                self._append_event(
                    session, locked, PaymentEventType.ALLOCATED, locked.status, now,
                    payload={
                        a.strategy_id: {"weight_bp": a.weight_bp, "principal": str(a.principal), "status": a.status}
                        for a in allocations
                    },
                )
        except SQLAlchemyError as e:
            placed = [a for a in allocations if a.status == AllocationStatus.PLACED.value]
            case_id = self.reconciliation.record_case(
                "payment", payment.payment_id, "place_capital", str(e),
                amount=sum((a.principal for a in placed), Decimal("0")), token=payment.token,
                context={a.strategy_id: a.deposit_reference for a in placed},
            )
            raise ReconciliationRequired(
                f"Capital for {payment.payment_id} was deposited but not recorded", case_id=case_id
            ) from e

    # Yield

    async def _compute_yield(self, payment: Payment, now: datetime) -> Tuple[Decimal, List[AllocationYield]]:
        if not payment.yield_enabled:
            return Decimal("0"), []

        quotes: Dict[str, Decimal] = {}
        breakdown = []
        for allocation in payment.allocations:
            if allocation.status == AllocationStatus.WITHDRAWN.value:
                # Out of the strategy: yield stopped at withdrawn_at and was stored then
                breakdown.append(
                    AllocationYield(
                        allocation_id=allocation.id,
                        strategy_id=allocation.strategy_id,
                        principal=MonetaryDecimal.to_decimal(allocation.principal),
                        apy=MonetaryDecimal.to_decimal(allocation.last_quoted_apy),
                        accrued=MonetaryDecimal.to_decimal(allocation.accrued_yield),
                    )
                )
                continue
            if allocation.status != AllocationStatus.PLACED.value:
                continue
            if allocation.strategy_id not in quotes:
                strategy = self.allocation_engine.registry.get_strategy(allocation.strategy_id)
                quotes[allocation.strategy_id] = await self.allocation_engine.quote_apy(strategy)
            apy = quotes[allocation.strategy_id]
            principal = MonetaryDecimal.to_decimal(allocation.principal)
            breakdown.append(
                AllocationYield(
                    allocation_id=allocation.id,
                    strategy_id=allocation.strategy_id,
                    principal=principal,
                    apy=apy,
                    accrued=simple_interest(principal, apy, allocation.placed_at, now),
                )
            )
        total = sum((item.accrued for item in breakdown), Decimal("0"))
        return MonetaryDecimal.quantize_storage(total), breakdown

    @staticmethod
    def _store_breakdown(session: Session, breakdown: List[AllocationYield]):
        for item in breakdown:
            session.query(PaymentAllocation).filter(PaymentAllocation.id == item.allocation_id).update(
                {"accrued_yield": item.accrued, "last_quoted_apy": item.apy}, synchronize_session=False
            )

    async def accrue_yield(self, payment_id: str) -> Payment:
        """
        Recompute estimated_yield from live strategy quotes.

        Idempotent: with no elapsed time and unchanged quotes the value is
        unchanged. Quotes are fetched outside the id lock; only the write
        is a locked step. actual_yield is never touched here.
        """
        payment = self._load(payment_id)
        if payment.status != PaymentStatus.CONFIRMED.value:
            raise InvalidStateError(
                f"Yield accrues only while confirmed, payment {payment_id} is {payment.status}",
                current_status=payment.status,
            )

        now = self.clock()
        estimated, breakdown = await self._compute_yield(payment, now)

        async with self.locks.hold(payment_id):
            with self._session() as session:
                locked = locked_row(session, Payment, Payment.payment_id, payment_id)
                if locked.status != PaymentStatus.CONFIRMED.value:
                    raise InvalidStateError(
                        f"Payment {payment_id} left confirmed state during accrual",
                        current_status=locked.status,
                    )
                locked.estimated_yield = estimated
                locked.yield_accrued_at = now
                self._store_breakdown(session, breakdown)

        logger.debug(f"Payment {payment_id} estimated yield {estimated}")
        return self._load(payment_id)

    # Release

    async def release(self, payment_id: str, caller_address: Optional[str] = None) -> Payment:
        """
        Pay principal plus frozen yield to the merchant and complete the payment.

        Raises:
            AuthorizationError: caller is not the merchant
            InvalidStateError: payment is not CONFIRMED
            ExternalServiceError / ServiceUnavailable: transfer failed, payment still CONFIRMED
            ReconciliationRequired: transfer sent but completion could not be recorded
        """
        async with self.locks.hold(payment_id):
            payment = self._load(payment_id)
            if caller_address is not None and not addresses_equal(caller_address, payment.merchant_address):
                raise AuthorizationError(f"Only the merchant can release payment {payment_id}")
            if payment.status != PaymentStatus.CONFIRMED.value:
                raise InvalidStateError(
                    f"Payment {payment_id} is {payment.status}, only confirmed payments can be released",
                    current_status=payment.status,
                )

            now = self.clock()
            actual_yield, breakdown = await self._compute_yield(payment, now)
            await self._withdraw_allocations(payment, PaymentEventType.RELEASE_FAILED, breakdown)

            decimals = token_decimals(payment.token, payment.chain)
            payout = MonetaryDecimal.quantize_token(
                MonetaryDecimal.to_decimal(payment.amount) + actual_yield, decimals
            )
            try:
                tx_hash = await self.resilience.execute(
                    CHAIN_GATEWAY_SERVICE,
                    lambda: self.chain_gateway.transfer(
                        payment.chain, payment.token, payment.merchant_address, payout, f"release:{payment_id}"
                    ),
                    description="release_transfer",
                )
            except PaymentSystemError as e:
                self._record_event(
                    payment_id, PaymentEventType.RELEASE_FAILED, error=e.message,
                    payload={"payout": str(payout)},
                )
                logger.error(f"Release transfer for {payment_id} failed, payment stays confirmed: {e.message}")
                raise

            try:
                self._mark_released(payment_id, now, actual_yield, breakdown, payout, tx_hash)
            except (SQLAlchemyError, InvalidStateError) as e:
                case_id = self.reconciliation.record_case(
                    "payment", payment_id, "release_transfer", str(e),
                    external_reference=tx_hash, amount=payout, token=payment.token,
                    context={"actual_yield": str(actual_yield), "merchant": payment.merchant_address},
                )
                try:
                    self._record_event(
                        payment_id, PaymentEventType.RECONCILIATION_REQUIRED, tx_hash=tx_hash,
                        error=str(e), payload={"case_id": case_id},
                    )
                except SQLAlchemyError as event_error:
                    logger.error(f"Could not record reconciliation event for {payment_id}: {event_error}")
                raise ReconciliationRequired(
                    f"Payment {payment_id} was paid out ({tx_hash}) but could not be marked completed",
                    case_id=case_id, tx_hash=tx_hash,
                ) from e

        released = self._load(payment_id)
        self._after_terminal(payment_id, "payment.released", released)
        return released

    def _mark_released(
        self,
        payment_id: str,
        now: datetime,
        actual_yield: Decimal,
        breakdown: List[AllocationYield],
        payout: Decimal,
        tx_hash: str,
    ):
        with self._session() as session:
            locked = locked_row(session, Payment, Payment.payment_id, payment_id)
            locked.estimated_yield = actual_yield
            locked.actual_yield = actual_yield
            locked.released_at = now
            locked.yield_accrued_at = now
            locked.release_tx_hash = tx_hash
            self._store_breakdown(session, breakdown)
            self._transition(
                session, locked, PaymentStatus.COMPLETED, PaymentEventType.RELEASED, now,
                tx_hash=tx_hash, payload={"payout": str(payout), "actual_yield": str(actual_yield)},
            )

    async def _withdraw_allocations(
        self, payment: Payment, failure_event: PaymentEventType, breakdown: List[AllocationYield]
    ):
        """
        Pull placed allocations back into escrow, one strategy at a time.

        Each withdrawn allocation keeps the yield it had earned, so a release
        or refund retried after a later failure still sees it.
        """
        earned = {item.allocation_id: item for item in breakdown}
        for allocation in payment.allocations:
            if allocation.status != AllocationStatus.PLACED.value:
                continue
            try:
                await self.allocation_engine.withdraw_allocation(allocation, payment.token)
            except PaymentSystemError as e:
                self._record_event(
                    payment.payment_id, failure_event, error=e.message,
                    payload={"strategy_id": allocation.strategy_id, "step": "withdraw"},
                )
                raise
            values = {"status": AllocationStatus.WITHDRAWN.value, "withdrawn_at": self.clock()}
            item = earned.get(allocation.id)
            if item is not None:
                values.update(accrued_yield=item.accrued, last_quoted_apy=item.apy)
            with self._session() as session:
                session.query(PaymentAllocation).filter(PaymentAllocation.id == allocation.id).update(
                    values, synchronize_session=False
                )

    # Cancel / fail / expire

    async def cancel(self, payment_id: str, reason: Optional[str] = None, caller_address: Optional[str] = None) -> Payment:
        """Cancel a PENDING or CONFIRMED payment, refunding a confirmed deposit to the payer"""
        return await self._terminate(
            payment_id, PaymentStatus.CANCELLED, PaymentEventType.CANCELLED,
            reason or "cancelled", caller_address, "payment.cancelled",
        )

    async def fail(self, payment_id: str, error: str) -> Payment:
        """Mark a PENDING or CONFIRMED payment FAILED, refunding a confirmed deposit to the payer"""
        return await self._terminate(
            payment_id, PaymentStatus.FAILED, PaymentEventType.FAILED, error, None, "payment.failed"
        )

    async def _terminate(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        event_type: PaymentEventType,
        reason: str,
        caller_address: Optional[str],
        notification: str,
    ) -> Payment:
        async with self.locks.hold(payment_id):
            payment = self._load(payment_id)
            if caller_address is not None and not (
                addresses_equal(caller_address, payment.merchant_address)
                or addresses_equal(caller_address, payment.payer_address)
            ):
                raise AuthorizationError(f"Only the merchant or payer can cancel payment {payment_id}")
            PaymentStateValidator.ensure_transition(payment_id, payment.status, new_status.value)

            now = self.clock()
            refund_tx_hash = None
            if payment.status == PaymentStatus.CONFIRMED.value:
                _, breakdown = await self._compute_yield(payment, now)
                await self._withdraw_allocations(payment, PaymentEventType.REFUND_FAILED, breakdown)
                refund = MonetaryDecimal.to_decimal(payment.amount)
                try:
                    refund_tx_hash = await self.resilience.execute(
                        CHAIN_GATEWAY_SERVICE,
                        lambda: self.chain_gateway.transfer(
                            payment.chain, payment.token, payment.payer_address, refund, f"refund:{payment_id}",
                        ),
                        description="refund_transfer",
                    )
                except PaymentSystemError as e:
                    self._record_event(
                        payment_id, PaymentEventType.REFUND_FAILED, error=e.message,
                        payload={"refund": str(refund), "requested_status": new_status.value},
                    )
                    logger.error(f"Refund transfer for {payment_id} failed, payment stays confirmed: {e.message}")
                    raise

            try:
                with self._session() as session:
                    locked = locked_row(session, Payment, Payment.payment_id, payment_id)
                    locked.failure_reason = reason
                    self._transition(
                        session, locked, new_status, event_type, now,
                        tx_hash=refund_tx_hash, error=reason,
                        payload={"refunded": refund_tx_hash is not None},
                    )
            except SQLAlchemyError as e:
                if refund_tx_hash is None:
                    raise
                case_id = self.reconciliation.record_case(
                    "payment", payment_id, "refund_transfer", str(e),
                    external_reference=refund_tx_hash, amount=MonetaryDecimal.to_decimal(payment.amount),
                    token=payment.token,
                )
                raise ReconciliationRequired(
                    f"Payment {payment_id} was refunded but could not be marked {new_status.value}",
                    case_id=case_id,
                ) from e

        terminated = self._load(payment_id)
        self._after_terminal(payment_id, notification, terminated)
        return terminated

    async def expire(self, payment_id: str) -> Payment:
        """Expire a PENDING payment whose expiry has passed"""
        async with self.locks.hold(payment_id):
            payment = self._load(payment_id)
            PaymentStateValidator.ensure_transition(payment_id, payment.status, PaymentStatus.EXPIRED.value)
            now = self.clock()
            if payment.expires_at is None or now < payment.expires_at:
                raise ValidationError(f"Payment {payment_id} has not reached its expiry")
            self._mark_expired(payment_id, now, "expired")
        return self._load(payment_id)

    def _mark_expired(self, payment_id: str, now: datetime, reason: str):
        with self._session() as session:
            locked = locked_row(session, Payment, Payment.payment_id, payment_id)
            locked.failure_reason = reason
            self._transition(session, locked, PaymentStatus.EXPIRED, PaymentEventType.EXPIRED, now, error=reason)
        self._after_terminal(payment_id, "payment.expired")

    def _after_terminal(self, payment_id: str, notification: str, payment: Optional[Payment] = None):
        invalidate(self.cache, self._cache_key(payment_id))
        payment = payment or self._load(payment_id)
        self.notifications.notify(notification, self.summarize(payment))

    # Queries

    def get_payment(self, payment_id: str) -> Payment:
        """Read-through cache; only terminal (immutable) payments are cached"""
        return read_through(
            self.cache,
            self._cache_key(payment_id),
            lambda: self._load(payment_id),
            should_cache=lambda p: PaymentStateValidator.is_terminal_state(p.status),
            ttl=Config.PAYMENT_CACHE_TTL,
        )

    def list_payments(
        self, merchant_address: Optional[str] = None, status: Optional[str] = None, limit: int = 100
    ) -> List[Payment]:
        with self._session() as session:
            query = session.query(Payment)
            if merchant_address:
                query = query.filter(Payment.merchant_address == merchant_address)
            if status:
                query = query.filter(Payment.status == status)
            return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()

    def get_events(self, payment_id: str) -> List[PaymentEvent]:
        return list(self._load(payment_id).events)

    def get_yield_info(self, payment_id: str) -> Dict[str, Any]:
        payment = self._load(payment_id)
        placed = [a for a in payment.allocations if a.status != AllocationStatus.FAILED.value]
        return {
            "payment_id": payment.payment_id,
            "status": payment.status,
            "principal": str(payment.amount),
            "yield_enabled": payment.yield_enabled,
            "estimated_yield": str(payment.estimated_yield),
            "actual_yield": str(payment.actual_yield) if payment.actual_yield is not None else None,
            "yield_accrued_at": payment.yield_accrued_at.isoformat() if payment.yield_accrued_at else None,
            "effective_apy": str(
                weighted_apy(
                    (MonetaryDecimal.to_decimal(a.principal), MonetaryDecimal.to_decimal(a.last_quoted_apy))
                    for a in placed
                    if a.last_quoted_apy is not None
                )
            ),
            "allocations": [
                {
                    "strategy_id": a.strategy_id,
                    "weight_bp": a.weight_bp,
                    "principal": str(a.principal),
                    "status": a.status,
                    "accrued_yield": str(a.accrued_yield),
                    "last_quoted_apy": str(a.last_quoted_apy) if a.last_quoted_apy is not None else None,
                    "error": a.error,
                }
                for a in payment.allocations
            ],
        }

    def overdue_pending_ids(self, limit: int = 50) -> List[str]:
        now = self.clock()
        with self._session() as session:
            rows = (
                session.query(Payment.payment_id)
                .filter(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.expires_at.isnot(None),
                    Payment.expires_at <= now,
                )
                .order_by(Payment.expires_at)
                .limit(limit)
                .all()
            )
        return [row[0] for row in rows]

    def yield_bearing_ids(self, limit: int, after_id: int = 0) -> List[Tuple[int, str]]:
        """(row id, payment_id) pairs past after_id, for keyset paging"""
        with self._session() as session:
            rows = (
                session.query(Payment.id, Payment.payment_id)
                .filter(
                    Payment.status == PaymentStatus.CONFIRMED.value,
                    Payment.yield_enabled.is_(True),
                    Payment.id > after_id,
                )
                .order_by(Payment.id)
                .limit(limit)
                .all()
            )
        return [(row[0], row[1]) for row in rows]
