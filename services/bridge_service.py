"""
Bridge Service - cross-chain transfers that earn yield while in transit.

    PENDING -> VALIDATED -> COMPLETED
    PENDING | VALIDATED -> REFUNDED
    PENDING -> FAILED          (source lock never succeeded)

Complete and refund are mutually exclusive: each commits through a
compare-and-set on the prior status, so whichever lands first wins and the
other sees InvalidStatus. Funds move before the status write; a funds
movement whose status write then loses becomes a reconciliation case.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import Config
from database import SessionFactory, managed_session
from models import BridgeStatus, BridgeTransaction
from services.api_resilience_service import ResilienceService
from services.financial_reconciliation import FinancialReconciliationService
from services.notification_service import NotificationService
from services.payment_service import validate_amount
from services.protocol_clients import BridgeSettlementClient
from utils.address_detector import addresses_equal, detect_address_family
from utils.atomic_transactions import KeyedLockRegistry
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import BridgeStateValidator
from utils.exception_handler import (
    AuthorizationError,
    ExternalServiceError,
    InvalidStatus,
    NotFoundError,
    ReconciliationRequired,
    ServiceUnavailable,
    UnsupportedChainError,
    UnsupportedTokenError,
    ValidationError,
)
from utils.yield_calculator import simple_interest

logger = logging.getLogger(__name__)

BRIDGE_SETTLEMENT_SERVICE = "bridge_settlement"

STATUS_PROGRESS = {
    BridgeStatus.PENDING.value: 25,
    BridgeStatus.VALIDATED.value: 60,
    BridgeStatus.COMPLETED.value: 100,
    BridgeStatus.REFUNDED.value: 100,
    BridgeStatus.FAILED.value: 100,
}


class BridgeService:
    """Initiate, validate, complete and refund bridge transfers"""

    def __init__(
        self,
        resilience: ResilienceService,
        settlement: BridgeSettlementClient,
        notifications: NotificationService,
        reconciliation: FinancialReconciliationService,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = get_naive_utc_now,
        fee_bp: int = Config.BRIDGE_FEE_BP,
        validators: Optional[List[str]] = None,
        operators: Optional[List[str]] = None,
        default_apy: Decimal = Config.BRIDGE_DEFAULT_APY,
    ):
        if not 0 <= fee_bp <= Config.MAX_BRIDGE_FEE_BP:
            raise ValueError(f"Bridge fee must be between 0 and {Config.MAX_BRIDGE_FEE_BP}bp, got {fee_bp}")
        self.resilience = resilience
        self.settlement = settlement
        self.notifications = notifications
        self.reconciliation = reconciliation
        self.session_factory = session_factory
        self.clock = clock
        self.fee_bp = fee_bp
        self.default_apy = default_apy
        self.validators = {a.lower() for a in (validators if validators is not None else Config.BRIDGE_VALIDATORS)}
        self.operators = {a.lower() for a in (operators if operators is not None else Config.BRIDGE_OPERATORS)}
        self.chains: Dict[str, Dict[str, Any]] = {name: dict(cfg) for name, cfg in Config.CHAIN_CONFIGS.items()}
        self.tokens: Dict[str, Dict[str, Any]] = {
            symbol: {"decimals": cfg["decimals"], "chains": set(cfg["chains"])}
            for symbol, cfg in Config.SUPPORTED_TOKENS.items()
        }
        self.paused = False
        self.locks = KeyedLockRegistry("bridge")

    def _session(self):
        return managed_session(self.session_factory)

    # Supported chains and tokens

    def add_supported_chain(
        self, chain: str, chain_id: int, confirmations: int, block_time_ms: int, address_family: str = "evm"
    ):
        chain = chain.lower()
        if confirmations < 1 or block_time_ms < 1:
            raise ValidationError("confirmations and block_time_ms must be positive")
        if address_family not in ("evm", "xrpl"):
            raise ValidationError(f"Unknown address family {address_family}")
        self.chains[chain] = {
            "chain_id": chain_id,
            "confirmations": confirmations,
            "block_time_ms": block_time_ms,
            "address_family": address_family,
        }
        logger.info(f"Bridge chain {chain} added ({confirmations} confirmations, {block_time_ms}ms blocks)")

    def remove_supported_chain(self, chain: str):
        if self.chains.pop(chain.lower(), None) is None:
            raise UnsupportedChainError(chain)
        for token in self.tokens.values():
            token["chains"].discard(chain.lower())
        logger.info(f"Bridge chain {chain} removed")

    def add_supported_token(self, token: str, decimals: int, chains: List[str]):
        token = token.upper()
        unknown = [c for c in chains if c not in self.chains]
        if unknown:
            raise UnsupportedChainError(unknown[0])
        entry = self.tokens.setdefault(token, {"decimals": decimals, "chains": set()})
        entry["chains"].update(chains)
        logger.info(f"Bridge token {token} enabled on {sorted(entry['chains'])}")

    def remove_supported_token(self, token: str):
        if self.tokens.pop(token.upper(), None) is None:
            raise UnsupportedTokenError(token, "*")
        logger.info(f"Bridge token {token} removed")

    def pause(self, reason: str = ""):
        self.paused = True
        logger.warning(f"Bridge paused: {reason or 'no reason given'}")

    def unpause(self):
        self.paused = False
        logger.info("Bridge unpaused")

    def _token_decimals(self, token: str, *chains: str) -> int:
        for chain in chains:
            if chain not in self.chains:
                raise UnsupportedChainError(chain)
        entry = self.tokens.get(token)
        if entry is None:
            raise UnsupportedTokenError(token, chains[0])
        for chain in chains:
            if chain not in entry["chains"]:
                raise UnsupportedTokenError(token, chain)
        return int(entry["decimals"])

    def _validate_address(self, address: str, chain: str, field: str) -> str:
        if not address:
            raise ValidationError(f"{field} is required", {"field": field})
        address = address.strip()
        if detect_address_family(address) != self.chains[chain]["address_family"]:
            raise ValidationError(f"Invalid {field} format for chain {chain}", {"field": field, "chain": chain})
        return address

    # Estimates

    def estimate_fee(self, amount: Any) -> Decimal:
        return MonetaryDecimal.bp_of(MonetaryDecimal.to_decimal(amount), self.fee_bp)

    def estimate_time(self, source_chain: str, destination_chain: str) -> int:
        """Seconds until funds arrive: both chains' finality plus settlement overhead"""
        total_ms = 0
        for chain in (source_chain, destination_chain):
            cfg = self.chains.get(chain)
            if cfg is None:
                raise UnsupportedChainError(chain)
            total_ms += cfg["block_time_ms"] * cfg["confirmations"]
        return total_ms // 1000 + Config.BRIDGE_SETTLEMENT_OVERHEAD_SECONDS

    async def _quote_apy(self, chain: str) -> Decimal:
        apy = await self.resilience.execute_with_fallback(
            BRIDGE_SETTLEMENT_SERVICE,
            lambda: self.settlement.quote_apy(chain),
            fallback=self.default_apy,
            description="quote_apy",
        )
        return MonetaryDecimal.to_decimal(apy, "apy")

    async def estimate_yield(
        self, amount: Any, source_chain: str, destination_chain: str, seconds_in_transit: Optional[int] = None
    ) -> Decimal:
        """Yield a transfer would earn in transit, using the live destination APY"""
        if seconds_in_transit is None:
            seconds_in_transit = self.estimate_time(source_chain, destination_chain)
        elif destination_chain not in self.chains:
            raise UnsupportedChainError(destination_chain)
        start = self.clock()
        apy = await self._quote_apy(destination_chain)
        return simple_interest(
            MonetaryDecimal.to_decimal(amount), apy, start, start + timedelta(seconds=seconds_in_transit)
        )

    # Lifecycle

    async def initiate(
        self,
        source_chain: str,
        destination_chain: str,
        token: str,
        amount: Any,
        source_address: str,
        destination_address: str,
        payment_id: Optional[str] = None,
    ) -> BridgeTransaction:
        """
        Record a PENDING transfer and lock the amount on the source chain.

        Raises:
            ServiceUnavailable: bridge is paused or the settlement circuit is open
            UnsupportedChainError / UnsupportedTokenError / ValidationError: bad request
            ExternalServiceError: lock failed; the transaction is left FAILED
        """
        if self.paused:
            raise ServiceUnavailable("bridge")
        source_chain = (source_chain or "").lower()
        destination_chain = (destination_chain or "").lower()
        token = (token or "").upper()
        if source_chain == destination_chain:
            raise ValidationError("Source and destination chains must differ")
        decimals = self._token_decimals(token, source_chain, destination_chain)
        value = validate_amount(amount, decimals)
        source_address = self._validate_address(source_address, source_chain, "source_address")
        destination_address = self._validate_address(destination_address, destination_chain, "destination_address")
        fee_amount = MonetaryDecimal.quantize_token(MonetaryDecimal.bp_of(value, self.fee_bp), decimals)

        transaction_id = f"BRG_{uuid.uuid4().hex[:16].upper()}"
        now = self.clock()
        async with self.locks.hold(transaction_id):
            with self._session() as session:
                session.add(
                    BridgeTransaction(
                        transaction_id=transaction_id,
                        payment_id=payment_id,
                        source_chain=source_chain,
                        destination_chain=destination_chain,
                        source_address=source_address,
                        destination_address=destination_address,
                        token=token,
                        amount=value,
                        fee_bp=self.fee_bp,
                        fee_amount=fee_amount,
                        status=BridgeStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    )
                )

            try:
                source_tx_hash = await self.resilience.execute(
                    BRIDGE_SETTLEMENT_SERVICE,
                    lambda: self.settlement.lock(
                        source_chain, token, source_address, value, f"bridge:{transaction_id}:lock"
                    ),
                    description="lock",
                )
            except (ExternalServiceError, ServiceUnavailable) as e:
                self._compare_and_set(
                    transaction_id, BridgeStatus.PENDING, BridgeStatus.FAILED, failure_reason=e.message
                )
                logger.error(f"Bridge {transaction_id} lock failed: {e.message}")
                raise

            with self._session() as session:
                session.query(BridgeTransaction).filter(
                    BridgeTransaction.transaction_id == transaction_id
                ).update({"source_tx_hash": source_tx_hash}, synchronize_session=False)

        logger.info(
            f"Bridge {transaction_id} initiated: {value} {token} {source_chain} -> {destination_chain} "
            f"(fee {fee_amount})"
        )
        transaction = self.get_transaction(transaction_id)
        self.notifications.notify("bridge.initiated", self.summarize(transaction))
        return transaction

    async def validate(self, transaction_id: str, validator_address: str) -> BridgeTransaction:
        if not validator_address or validator_address.lower() not in self.validators:
            raise AuthorizationError("Caller is not a bridge validator")
        async with self.locks.hold(transaction_id):
            now = self.clock()
            self._compare_and_set(
                transaction_id, BridgeStatus.PENDING, BridgeStatus.VALIDATED,
                validator_address=validator_address, validated_at=now,
            )
        logger.info(f"Bridge {transaction_id} validated by {validator_address}")
        transaction = self.get_transaction(transaction_id)
        self.notifications.notify("bridge.validated", self.summarize(transaction))
        return transaction

    async def complete(
        self, transaction_id: str, operator_address: str, proof: Optional[Dict[str, Any]] = None
    ) -> BridgeTransaction:
        """
        Pay amount - fee + in-transit yield to the destination address.

        Raises:
            AuthorizationError: caller is not an operator
            InvalidStatus: transaction is not VALIDATED
            ReconciliationRequired: settlement paid but the status could not be committed
        """
        if not operator_address or operator_address.lower() not in self.operators:
            raise AuthorizationError("Caller is not a bridge operator")

        async with self.locks.hold(transaction_id):
            transaction = self.get_transaction(transaction_id)
            if transaction.status != BridgeStatus.VALIDATED.value:
                raise InvalidStatus(
                    f"Bridge transaction {transaction_id} is {transaction.status}, only validated transfers complete",
                    current_status=transaction.status,
                )

            now = self.clock()
            apy = await self._quote_apy(transaction.destination_chain)
            amount = MonetaryDecimal.to_decimal(transaction.amount)
            yield_amount = simple_interest(amount, apy, transaction.created_at, now)
            decimals = self._token_decimals(transaction.token, transaction.destination_chain)
            payout = MonetaryDecimal.quantize_token(
                amount - MonetaryDecimal.to_decimal(transaction.fee_amount) + yield_amount, decimals
            )

            destination_tx_hash = await self.resilience.execute(
                BRIDGE_SETTLEMENT_SERVICE,
                lambda: self.settlement.settle(
                    transaction.destination_chain, transaction.token, transaction.destination_address,
                    payout, f"bridge:{transaction_id}:settle",
                ),
                description="settle",
            )

            try:
                self._compare_and_set(
                    transaction_id, BridgeStatus.VALIDATED, BridgeStatus.COMPLETED,
                    destination_tx_hash=destination_tx_hash,
                    operator_address=operator_address,
                    applied_apy=apy,
                    yield_amount=yield_amount,
                    payout_amount=payout,
                    completion_proof=proof or {},
                    completed_at=now,
                )
            except (InvalidStatus, SQLAlchemyError) as e:
                case_id = self.reconciliation.record_case(
                    "bridge", transaction_id, "settle", str(e),
                    external_reference=destination_tx_hash, amount=payout, token=transaction.token,
                    context={"destination": transaction.destination_address, "yield": str(yield_amount)},
                )
                raise ReconciliationRequired(
                    f"Bridge {transaction_id} was settled ({destination_tx_hash}) but could not be marked completed",
                    case_id=case_id,
                ) from e

        logger.info(f"Bridge {transaction_id} completed: paid {payout} (yield {yield_amount} at {apy})")
        completed = self.get_transaction(transaction_id)
        self.notifications.notify("bridge.completed", self.summarize(completed))
        return completed

    async def refund(self, transaction_id: str, caller_address: str, reason: str) -> BridgeTransaction:
        """Return amount - fee to the sender from PENDING or VALIDATED"""
        async with self.locks.hold(transaction_id):
            transaction = self.get_transaction(transaction_id)
            is_operator = bool(caller_address) and caller_address.lower() in self.operators
            if not (is_operator or addresses_equal(caller_address, transaction.source_address)):
                raise AuthorizationError("Only an operator or the sender can refund a bridge transfer")
            if transaction.status not in (BridgeStatus.PENDING.value, BridgeStatus.VALIDATED.value):
                raise InvalidStatus(
                    f"Bridge transaction {transaction_id} is {transaction.status} and cannot be refunded",
                    current_status=transaction.status,
                )
            if not reason or not reason.strip():
                raise ValidationError("A refund reason is required")

            decimals = self._token_decimals(transaction.token, transaction.source_chain)
            refund_amount = MonetaryDecimal.quantize_token(
                MonetaryDecimal.to_decimal(transaction.amount) - MonetaryDecimal.to_decimal(transaction.fee_amount),
                decimals,
            )
            refund_tx_hash = await self.resilience.execute(
                BRIDGE_SETTLEMENT_SERVICE,
                lambda: self.settlement.refund(
                    transaction.source_chain, transaction.token, transaction.source_address,
                    refund_amount, f"bridge:{transaction_id}:refund",
                ),
                description="refund",
            )

            now = self.clock()
            try:
                self._compare_and_set(
                    transaction_id, BridgeStatus(transaction.status), BridgeStatus.REFUNDED,
                    refund_tx_hash=refund_tx_hash, refund_reason=reason.strip(),
                    payout_amount=refund_amount, refunded_at=now,
                )
            except (InvalidStatus, SQLAlchemyError) as e:
                case_id = self.reconciliation.record_case(
                    "bridge", transaction_id, "refund", str(e),
                    external_reference=refund_tx_hash, amount=refund_amount, token=transaction.token,
                    context={"source": transaction.source_address, "reason": reason},
                )
                raise ReconciliationRequired(
                    f"Bridge {transaction_id} was refunded ({refund_tx_hash}) but could not be marked refunded",
                    case_id=case_id,
                ) from e

        logger.info(f"Bridge {transaction_id} refunded {refund_amount}: {reason}")
        refunded = self.get_transaction(transaction_id)
        self.notifications.notify("bridge.refunded", self.summarize(refunded))
        return refunded

    def _compare_and_set(
        self, transaction_id: str, expected: BridgeStatus, new_status: BridgeStatus, **fields
    ):
        """Move expected -> new_status only if the row still holds expected"""
        BridgeStateValidator.ensure_transition(transaction_id, expected.value, new_status.value)
        with self._session() as session:
            updated = (
                session.query(BridgeTransaction)
                .filter(
                    BridgeTransaction.transaction_id == transaction_id,
                    BridgeTransaction.status == expected.value,
                )
                .update(
                    {"status": new_status.value, "updated_at": self.clock(), **fields},
                    synchronize_session=False,
                )
            )
            if updated != 1:
                current = (
                    session.query(BridgeTransaction.status)
                    .filter(BridgeTransaction.transaction_id == transaction_id)
                    .scalar()
                )
                if current is None:
                    raise NotFoundError(f"Bridge transaction {transaction_id} not found")
                raise InvalidStatus(
                    f"Bridge transaction {transaction_id} is {current}, expected {expected.value}",
                    current_status=current,
                )

    # Queries

    def get_transaction(self, transaction_id: str) -> BridgeTransaction:
        with self._session() as session:
            transaction = (
                session.query(BridgeTransaction)
                .filter(BridgeTransaction.transaction_id == transaction_id)
                .first()
            )
            if transaction is None:
                raise NotFoundError(
                    f"Bridge transaction {transaction_id} not found", {"transaction_id": transaction_id}
                )
            return transaction

    def get_status(self, transaction_id: str) -> Dict[str, Any]:
        transaction = self.get_transaction(transaction_id)
        return {
            **self.summarize(transaction),
            "progress": STATUS_PROGRESS.get(transaction.status, 0),
            "can_refund": transaction.status in (BridgeStatus.PENDING.value, BridgeStatus.VALIDATED.value),
            "estimated_seconds": self.estimate_time(transaction.source_chain, transaction.destination_chain)
            if transaction.source_chain in self.chains and transaction.destination_chain in self.chains
            else None,
        }

    def list_transactions(self, status: Optional[str] = None, limit: int = 100) -> List[BridgeTransaction]:
        with self._session() as session:
            query = session.query(BridgeTransaction)
            if status:
                query = query.filter(BridgeTransaction.status == status)
            return query.order_by(BridgeTransaction.created_at.desc(), BridgeTransaction.id.desc()).limit(limit).all()

    @staticmethod
    def summarize(transaction: BridgeTransaction) -> Dict[str, Any]:
        return {
            "transaction_id": transaction.transaction_id,
            "status": transaction.status,
            "source_chain": transaction.source_chain,
            "destination_chain": transaction.destination_chain,
            "token": transaction.token,
            "amount": str(transaction.amount),
            "fee_amount": str(transaction.fee_amount),
        }
