"""
Strategy Registry - the set of yield strategies escrowed capital may be placed in.

Each strategy carries a risk score (1-10), an allocation cap in basis points
and a status. Weights are only changed by AllocationEngine.rebalance(); the
registry itself only adds, pauses, resumes and removes strategies.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from database import SessionFactory, managed_session
from models import StrategyStatus, YieldStrategy
from utils.atomic_transactions import locked_row
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.decimal_precision import BASIS_POINTS, MonetaryDecimal
from utils.exception_handler import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategySnapshot:
    """Detached, immutable view of a strategy row for allocation maths"""

    strategy_id: str
    name: str
    protocol: str
    risk_score: int
    cap_bp: int
    weight_bp: int
    expected_apy: Decimal
    status: str
    endpoint_url: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == StrategyStatus.ACTIVE.value

    @classmethod
    def from_model(cls, strategy: YieldStrategy) -> "StrategySnapshot":
        return cls(
            strategy_id=strategy.strategy_id,
            name=strategy.name,
            protocol=strategy.protocol,
            risk_score=strategy.risk_score,
            cap_bp=strategy.cap_bp,
            weight_bp=strategy.weight_bp or 0,
            expected_apy=MonetaryDecimal.to_decimal(strategy.expected_apy),
            status=strategy.status,
            endpoint_url=strategy.endpoint_url,
        )


class StrategyRegistry:
    """Persistent registry of yield strategies"""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = get_naive_utc_now,
        max_active: int = Config.MAX_ACTIVE_STRATEGIES,
        max_cap_bp: int = Config.MAX_ALLOCATION_PER_STRATEGY_BP,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.max_active = max_active
        self.max_cap_bp = max_cap_bp

    def _session(self):
        return managed_session(self.session_factory)

    def register_strategy(
        self,
        strategy_id: str,
        name: str,
        protocol: str,
        risk_score: int,
        cap_bp: Optional[int] = None,
        expected_apy: Decimal = Decimal("0"),
        endpoint_url: Optional[str] = None,
    ) -> StrategySnapshot:
        if not strategy_id or not strategy_id.strip():
            raise ValidationError("strategy_id is required")
        if not 1 <= int(risk_score) <= 10:
            raise ValidationError("risk_score must be between 1 and 10", {"risk_score": risk_score})
        cap_bp = self.max_cap_bp if cap_bp is None else int(cap_bp)
        if not 0 < cap_bp <= self.max_cap_bp:
            raise ValidationError(
                f"cap_bp must be between 1 and {self.max_cap_bp}", {"cap_bp": cap_bp}
            )
        expected_apy = MonetaryDecimal.to_decimal(expected_apy, "expected_apy")
        if expected_apy < 0:
            raise ValidationError("expected_apy must not be negative")
        if not Config.USE_SIMULATED_PROTOCOLS and not endpoint_url:
            raise ValidationError("endpoint_url is required when simulated protocols are disabled")

        now = self.clock()
        with self._session() as session:
            if session.query(YieldStrategy).filter(YieldStrategy.strategy_id == strategy_id).first():
                raise ValidationError(f"Strategy {strategy_id} already exists")
            if self._active_count(session) >= self.max_active:
                raise ValidationError(
                    f"At most {self.max_active} strategies may be active", {"max_active": self.max_active}
                )

            strategy = YieldStrategy(
                strategy_id=strategy_id,
                name=name,
                protocol=protocol,
                endpoint_url=endpoint_url,
                risk_score=int(risk_score),
                cap_bp=cap_bp,
                weight_bp=0,
                expected_apy=expected_apy,
                status=StrategyStatus.ACTIVE.value,
                total_harvested=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            session.add(strategy)
            session.flush()
            snapshot = StrategySnapshot.from_model(strategy)

        logger.info(f"Registered strategy {strategy_id} ({protocol}) risk={risk_score} cap={cap_bp}bp")
        return snapshot

    def _active_count(self, session: Session) -> int:
        return (
            session.query(YieldStrategy)
            .filter(YieldStrategy.status == StrategyStatus.ACTIVE.value)
            .count()
        )

    def get_strategy(self, strategy_id: str) -> StrategySnapshot:
        with self._session() as session:
            strategy = session.query(YieldStrategy).filter(YieldStrategy.strategy_id == strategy_id).first()
            if strategy is None:
                raise NotFoundError(f"Strategy {strategy_id} not found", {"strategy_id": strategy_id})
            return StrategySnapshot.from_model(strategy)

    def list_strategies(self, include_removed: bool = False) -> List[StrategySnapshot]:
        with self._session() as session:
            query = session.query(YieldStrategy)
            if not include_removed:
                query = query.filter(YieldStrategy.status != StrategyStatus.REMOVED.value)
            return [StrategySnapshot.from_model(s) for s in query.order_by(YieldStrategy.strategy_id).all()]

    def active_strategies(self) -> List[StrategySnapshot]:
        return [s for s in self.list_strategies() if s.is_active]

    def current_weights(self) -> Dict[str, int]:
        """Weights of active strategies, keyed by strategy id"""
        return {s.strategy_id: s.weight_bp for s in self.active_strategies()}

    def vault_apy(self) -> Decimal:
        """Expected APY of the pool, weighted by current allocation"""
        weighted = Decimal("0")
        for strategy in self.active_strategies():
            weighted += strategy.expected_apy * Decimal(strategy.weight_bp)
        return (weighted / Decimal(BASIS_POINTS)).quantize(MonetaryDecimal.APY_PRECISION)

    def _set_status(self, strategy_id: str, allowed_from: set, new_status: str, **fields) -> StrategySnapshot:
        with self._session() as session:
            strategy = locked_row(session, YieldStrategy, YieldStrategy.strategy_id, strategy_id)
            if strategy.status not in allowed_from:
                raise ValidationError(
                    f"Strategy {strategy_id} is {strategy.status}, cannot become {new_status}",
                    {"strategy_id": strategy_id, "status": strategy.status},
                )
            if new_status == StrategyStatus.ACTIVE.value and self._active_count(session) >= self.max_active:
                raise ValidationError(f"At most {self.max_active} strategies may be active")
            strategy.status = new_status
            strategy.updated_at = self.clock()
            for field_name, value in fields.items():
                setattr(strategy, field_name, value)
            session.flush()
            return StrategySnapshot.from_model(strategy)

    def pause_strategy(self, strategy_id: str, reason: str = "") -> StrategySnapshot:
        """Emergency pause: the strategy stops receiving capital and drops out of the pool weights"""
        snapshot = self._set_status(
            strategy_id, {StrategyStatus.ACTIVE.value}, StrategyStatus.PAUSED.value, weight_bp=0
        )
        logger.warning(f"Strategy {strategy_id} paused: {reason or 'no reason given'}")
        return snapshot

    def resume_strategy(self, strategy_id: str) -> StrategySnapshot:
        snapshot = self._set_status(strategy_id, {StrategyStatus.PAUSED.value}, StrategyStatus.ACTIVE.value)
        logger.info(f"Strategy {strategy_id} resumed with zero weight")
        return snapshot

    def remove_strategy(self, strategy_id: str) -> StrategySnapshot:
        with self._session() as session:
            strategy = locked_row(session, YieldStrategy, YieldStrategy.strategy_id, strategy_id)
            if strategy.weight_bp:
                raise ValidationError(
                    f"Strategy {strategy_id} still holds {strategy.weight_bp}bp, rebalance it to zero first"
                )
            if strategy.status == StrategyStatus.REMOVED.value:
                raise ValidationError(f"Strategy {strategy_id} is already removed")
            strategy.status = StrategyStatus.REMOVED.value
            strategy.updated_at = self.clock()
            session.flush()
            snapshot = StrategySnapshot.from_model(strategy)
        logger.info(f"Strategy {strategy_id} removed")
        return snapshot

    def update_expected_apy(self, strategy_id: str, expected_apy: Decimal) -> StrategySnapshot:
        expected_apy = MonetaryDecimal.to_decimal(expected_apy, "expected_apy")
        if expected_apy < 0:
            raise ValidationError("expected_apy must not be negative")
        with self._session() as session:
            strategy = locked_row(session, YieldStrategy, YieldStrategy.strategy_id, strategy_id)
            strategy.expected_apy = expected_apy
            strategy.updated_at = self.clock()
            session.flush()
            return StrategySnapshot.from_model(strategy)

    def record_harvest(self, strategy_id: str, amount: Decimal):
        with self._session() as session:
            strategy = locked_row(session, YieldStrategy, YieldStrategy.strategy_id, strategy_id)
            strategy.total_harvested = MonetaryDecimal.to_decimal(strategy.total_harvested) + amount
            strategy.last_harvest_at = self.clock()
