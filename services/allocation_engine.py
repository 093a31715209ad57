"""
Allocation Engine - decides how escrowed capital is split across yield strategies.

Weights are integer basis points. A target allocation always sums to exactly
10000, never puts more than a strategy's cap into it, and keeps the
weight-averaged risk score at or below the ceiling of the requested risk
tolerance. Rebalancing is all-or-nothing and rate limited by a cooldown so
capital is not shuffled back and forth between strategies.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import desc

from config import Config
from database import SessionFactory, managed_session
from models import AllocationStatus, PaymentAllocation, RebalanceRecord, YieldStrategy
from services.api_resilience_service import ResilienceService
from services.protocol_clients import HttpStrategyClient, StrategyClient
from services.simulated_protocols import SimulatedStrategyClient
from services.strategy_registry import StrategyRegistry, StrategySnapshot
from utils.datetime_helpers import Clock, get_naive_utc_now, seconds_between
from utils.decimal_precision import BASIS_POINTS, MonetaryDecimal
from utils.exception_handler import (
    PaymentSystemError,
    RebalanceCooldownActive,
    ValidationError,
)

logger = logging.getLogger(__name__)


def risk_ceiling_for(risk_tolerance: str) -> Decimal:
    ceiling = Config.RISK_TOLERANCE_CEILINGS.get((risk_tolerance or "").lower())
    if ceiling is None:
        raise ValidationError(
            f"Unknown risk tolerance {risk_tolerance}",
            {"allowed": sorted(Config.RISK_TOLERANCE_CEILINGS)},
        )
    return ceiling


def _min_risk_fill(by_risk: Sequence[StrategySnapshot], amount: int) -> Optional[int]:
    """Smallest achievable sum(weight * risk) placing amount bp; None if caps are too small"""
    remaining = amount
    total = 0
    for strategy in by_risk:
        if remaining == 0:
            break
        take = min(strategy.cap_bp, remaining)
        total += take * strategy.risk_score
        remaining -= take
    return total if remaining == 0 else None


def _risk_order(strategies: Sequence[StrategySnapshot]) -> List[StrategySnapshot]:
    return sorted(strategies, key=lambda s: (s.risk_score, s.strategy_id))


def compute_target_allocation(
    strategies: Sequence[StrategySnapshot], risk_ceiling: Decimal
) -> Dict[str, int]:
    """
    Greedy yield-first allocation under caps and a weighted risk ceiling.

    Strategies are ranked by expected APY (highest first); equally ranked
    strategies go to the lower risk score, then to the lower strategy id.
    Each strategy in turn receives the largest weight that still leaves the
    remainder placeable within the risk budget.
    """
    eligible = [s for s in strategies if s.is_active and s.cap_bp > 0]
    if not eligible:
        raise ValidationError("No active strategies to allocate to")

    budget = Decimal(risk_ceiling) * BASIS_POINTS
    ranked = sorted(eligible, key=lambda s: (-s.expected_apy, s.risk_score, s.strategy_id))

    floor = _min_risk_fill(_risk_order(ranked), BASIS_POINTS)
    if floor is None:
        raise ValidationError(
            "Strategy caps cannot cover the full allocation",
            {"total_cap_bp": sum(s.cap_bp for s in ranked)},
        )
    if floor > budget:
        raise ValidationError(
            f"No allocation satisfies risk ceiling {risk_ceiling}",
            {"lowest_weighted_risk": str(Decimal(floor) / BASIS_POINTS)},
        )

    weights: Dict[str, int] = {}
    remaining = BASIS_POINTS
    risk_used = 0
    for index, strategy in enumerate(ranked):
        rest = _risk_order(ranked[index + 1:])

        def cost(weight: int) -> Optional[int]:
            fill = _min_risk_fill(rest, remaining - weight)
            return None if fill is None else risk_used + weight * strategy.risk_score + fill

        # This strategy's share in the cheapest fill of what is left is always feasible
        cheapest = _risk_order(ranked[index:])
        feasible = 0
        left = remaining
        for candidate in cheapest:
            take = min(candidate.cap_bp, left)
            if candidate.strategy_id == strategy.strategy_id:
                feasible = take
                break
            left -= take

        # Feasible weights form an interval, so search upward from the known-good point
        low, high = feasible, min(strategy.cap_bp, remaining)
        while low < high:
            mid = (low + high + 1) // 2
            mid_cost = cost(mid)
            if mid_cost is not None and mid_cost <= budget:
                low = mid
            else:
                high = mid - 1

        weights[strategy.strategy_id] = low
        remaining -= low
        risk_used += low * strategy.risk_score

    if remaining != 0:
        raise ValidationError("Allocation could not place the full amount")
    return weights


def l1_distance(current: Dict[str, int], target: Dict[str, int]) -> int:
    keys = set(current) | set(target)
    return sum(abs(current.get(key, 0) - target.get(key, 0)) for key in keys)


def needs_rebalance(current: Dict[str, int], target: Dict[str, int], threshold_bp: int = 500) -> bool:
    """True when live weights have drifted more than threshold_bp from target"""
    return l1_distance(current, target) > threshold_bp


def weighted_risk(weights: Dict[str, int], strategies: Sequence[StrategySnapshot]) -> Decimal:
    risk_by_id = {s.strategy_id: s.risk_score for s in strategies}
    total = sum(weight * risk_by_id.get(strategy_id, 0) for strategy_id, weight in weights.items())
    return Decimal(total) / BASIS_POINTS


@dataclass
class HarvestResult:
    strategy_id: str
    success: bool
    amount: Decimal = Decimal("0")
    error: Optional[str] = None


@dataclass
class HarvestReport:
    results: List[HarvestResult] = field(default_factory=list)

    @property
    def total_harvested(self) -> Decimal:
        return sum((r.amount for r in self.results if r.success), Decimal("0"))

    @property
    def succeeded(self) -> List[str]:
        return [r.strategy_id for r in self.results if r.success]

    @property
    def failed(self) -> List[str]:
        return [r.strategy_id for r in self.results if not r.success]

    def to_dict(self) -> Dict:
        return {
            "total_harvested": str(self.total_harvested),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [
                {
                    "strategy_id": r.strategy_id,
                    "success": r.success,
                    "amount": str(r.amount),
                    "error": r.error,
                }
                for r in self.results
            ],
        }


class AllocationEngine:
    """Places capital, quotes yield, rebalances and harvests across strategies"""

    def __init__(
        self,
        registry: StrategyRegistry,
        resilience: ResilienceService,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = get_naive_utc_now,
        cooldown_seconds: int = Config.REBALANCE_COOLDOWN_SECONDS,
        threshold_bp: int = Config.REBALANCE_THRESHOLD_BP,
        client_factory: Optional[Callable[[StrategySnapshot], StrategyClient]] = None,
    ):
        self.registry = registry
        self.resilience = resilience
        self.session_factory = session_factory
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self.threshold_bp = threshold_bp
        self.client_factory = client_factory or self._default_client
        self.clients: Dict[str, StrategyClient] = {}
        self._rebalance_lock = asyncio.Lock()

    # Clients

    @staticmethod
    def service_name(strategy_id: str) -> str:
        return f"strategy:{strategy_id}"

    @staticmethod
    def _default_client(strategy: StrategySnapshot) -> StrategyClient:
        if strategy.endpoint_url and not Config.USE_SIMULATED_PROTOCOLS:
            return HttpStrategyClient(
                strategy.strategy_id, strategy.endpoint_url, Config.PROTOCOL_API_KEY, Config.EXTERNAL_CALL_TIMEOUT
            )
        return SimulatedStrategyClient(strategy.strategy_id, apy=strategy.expected_apy)

    def attach_client(self, strategy_id: str, client: StrategyClient):
        self.clients[strategy_id] = client
        self.resilience.register_service(self.service_name(strategy_id), health_check=client.health_check)

    def client_for(self, strategy: StrategySnapshot) -> StrategyClient:
        client = self.clients.get(strategy.strategy_id)
        if client is None:
            client = self.client_factory(strategy)
            self.attach_client(strategy.strategy_id, client)
        return client

    def register_health_checks(self):
        for strategy in self.registry.active_strategies():
            self.client_for(strategy)

    # Targets

    def target_for(self, risk_tolerance: str) -> Dict[str, int]:
        return compute_target_allocation(self.registry.active_strategies(), risk_ceiling_for(risk_tolerance))

    def weights_for_placement(self, risk_tolerance: str) -> Dict[str, int]:
        """Pool weights when they are complete and within the tolerance, else a fresh target"""
        strategies = self.registry.active_strategies()
        current = {s.strategy_id: s.weight_bp for s in strategies if s.weight_bp > 0}
        ceiling = risk_ceiling_for(risk_tolerance)
        if sum(current.values()) == BASIS_POINTS and weighted_risk(current, strategies) <= ceiling:
            return current
        return compute_target_allocation(strategies, ceiling)

    def check_drift(self, risk_tolerance: str = Config.VAULT_RISK_TOLERANCE) -> Dict:
        current = self.registry.current_weights()
        target = self.target_for(risk_tolerance)
        distance = l1_distance(current, target)
        return {
            "current": current,
            "target": target,
            "l1_distance_bp": distance,
            "threshold_bp": self.threshold_bp,
            "needs_rebalance": distance > self.threshold_bp,
        }

    # Rebalance

    def _latest_rebalance(self, session) -> Optional[RebalanceRecord]:
        return session.query(RebalanceRecord).order_by(desc(RebalanceRecord.created_at), desc(RebalanceRecord.id)).first()

    def cooldown_remaining(self) -> int:
        with managed_session(self.session_factory) as session:
            latest = self._latest_rebalance(session)
            if latest is None:
                return 0
            elapsed = seconds_between(latest.created_at, self.clock())
        return max(0, self.cooldown_seconds - elapsed)

    async def rebalance(self, new_allocations: Dict[str, int], triggered_by: str = "manual") -> RebalanceRecord:
        """
        Atomically replace the pool weights.

        Every active strategy not named in new_allocations drops to zero.

        Raises:
            ValidationError: weights do not sum to 10000, exceed a cap or name an inactive strategy
            RebalanceCooldownActive: the previous rebalance was too recent
        """
        async with self._rebalance_lock:
            return self._apply_rebalance(new_allocations, triggered_by)

    def _apply_rebalance(self, new_allocations: Dict[str, int], triggered_by: str) -> RebalanceRecord:
        weights: Dict[str, int] = {}
        for strategy_id, weight in new_allocations.items():
            if isinstance(weight, bool) or int(weight) != weight:
                raise ValidationError(f"Weight for {strategy_id} must be an integer number of basis points")
            weights[strategy_id] = int(weight)

        total = sum(weights.values())
        if total != BASIS_POINTS:
            raise ValidationError(
                f"Allocations must sum to {BASIS_POINTS} basis points, got {total}", {"total_bp": total}
            )

        now = self.clock()
        with managed_session(self.session_factory) as session:
            latest = self._latest_rebalance(session)
            if latest is not None:
                elapsed = seconds_between(latest.created_at, now)
                if elapsed < self.cooldown_seconds:
                    raise RebalanceCooldownActive(self.cooldown_seconds - elapsed)

            rows = {
                row.strategy_id: row
                for row in session.query(YieldStrategy)
                .filter(YieldStrategy.strategy_id.in_(list(weights)))
                .with_for_update()
                .all()
            }
            for strategy_id, weight in weights.items():
                row = rows.get(strategy_id)
                if row is None:
                    raise ValidationError(f"Unknown strategy {strategy_id}", {"strategy_id": strategy_id})
                if weight < 0 or weight > row.cap_bp:
                    raise ValidationError(
                        f"Weight {weight}bp for {strategy_id} is outside 0..{row.cap_bp}",
                        {"strategy_id": strategy_id, "cap_bp": row.cap_bp},
                    )
                if weight > 0 and not row.is_active:
                    raise ValidationError(f"Strategy {strategy_id} is {row.status}", {"strategy_id": strategy_id})

            active_rows = (
                session.query(YieldStrategy)
                .filter(YieldStrategy.weight_bp > 0)
                .with_for_update()
                .all()
            )
            previous = {row.strategy_id: row.weight_bp for row in active_rows}
            if len([w for w in weights.values() if w > 0]) > Config.MAX_ACTIVE_STRATEGIES:
                raise ValidationError(f"At most {Config.MAX_ACTIVE_STRATEGIES} strategies may hold weight")

            for row in active_rows:
                if row.strategy_id not in weights:
                    row.weight_bp = 0
                    row.updated_at = now
            for strategy_id, weight in weights.items():
                rows[strategy_id].weight_bp = weight
                rows[strategy_id].updated_at = now

            record = RebalanceRecord(
                previous_weights=previous,
                new_weights={k: v for k, v in weights.items() if v > 0},
                l1_distance_bp=l1_distance(previous, weights),
                triggered_by=triggered_by,
                created_at=now,
            )
            session.add(record)
            session.flush()

        logger.info(
            f"Rebalanced pool ({triggered_by}): {previous} -> {record.new_weights} "
            f"(moved {record.l1_distance_bp}bp)"
        )
        return record

    async def auto_rebalance(self, risk_tolerance: str = Config.VAULT_RISK_TOLERANCE) -> Dict:
        """Rebalance to target when drift exceeds the threshold and the cooldown allows it"""
        drift = self.check_drift(risk_tolerance)
        if not drift["needs_rebalance"]:
            return {**drift, "rebalanced": False}
        try:
            record = await self.rebalance(drift["target"], triggered_by="scheduler")
        except RebalanceCooldownActive as e:
            logger.info(f"Drift of {drift['l1_distance_bp']}bp waiting on cooldown ({e.retry_after_seconds}s)")
            return {**drift, "rebalanced": False, "retry_after_seconds": e.retry_after_seconds}
        return {**drift, "rebalanced": True, "record_id": record.id}

    def rebalance_history(self, limit: int = 20) -> List[RebalanceRecord]:
        with managed_session(self.session_factory) as session:
            return (
                session.query(RebalanceRecord)
                .order_by(desc(RebalanceRecord.created_at), desc(RebalanceRecord.id))
                .limit(limit)
                .all()
            )

    # Harvest

    async def harvest_all(self) -> HarvestReport:
        """Harvest every active strategy; one failing strategy never blocks the others"""
        strategies = self.registry.active_strategies()
        results = await asyncio.gather(*(self._harvest_one(strategy) for strategy in strategies))
        report = HarvestReport(results=list(results))
        if report.failed:
            logger.warning(f"Harvest partially failed: ok={report.succeeded} failed={report.failed}")
        logger.info(f"Harvested {report.total_harvested} across {len(report.succeeded)} strategies")
        return report

    async def _harvest_one(self, strategy: StrategySnapshot) -> HarvestResult:
        client = self.client_for(strategy)
        try:
            amount = await self.resilience.execute(
                self.service_name(strategy.strategy_id), client.harvest, description="harvest"
            )
            amount = MonetaryDecimal.to_decimal(amount, "harvest")
            self.registry.record_harvest(strategy.strategy_id, amount)
            return HarvestResult(strategy_id=strategy.strategy_id, success=True, amount=amount)
        except PaymentSystemError as e:
            logger.error(f"Harvest failed for {strategy.strategy_id}: {e.message}")
            return HarvestResult(strategy_id=strategy.strategy_id, success=False, error=e.message)

    # Payment capital

    async def quote_apy(self, strategy: StrategySnapshot) -> Decimal:
        """Live APY quote, falling back to the registered expectation when the protocol is down"""
        client = self.client_for(strategy)
        apy = await self.resilience.execute_with_fallback(
            self.service_name(strategy.strategy_id),
            client.quote_apy,
            fallback=strategy.expected_apy,
            description="quote_apy",
        )
        return MonetaryDecimal.to_decimal(apy, "apy")

    async def place_capital(
        self, payment_id: str, amount: Decimal, token: str, decimals: int, risk_tolerance: str
    ) -> List[PaymentAllocation]:
        """
        Deposit a confirmed payment's principal into strategies.

        A strategy whose deposit fails keeps its slice in escrow: the allocation
        is recorded FAILED and earns nothing.
        """
        weights = self.weights_for_placement(risk_tolerance)
        strategies = {s.strategy_id: s for s in self.registry.active_strategies()}
        slices = split_by_weights(amount, weights, decimals)

        allocations = []
        for strategy_id, (weight, principal) in slices.items():
            strategy = strategies[strategy_id]
            client = self.client_for(strategy)
            reference = f"deposit:{payment_id}:{strategy_id}"
            allocation = PaymentAllocation(
                payment_id=payment_id,
                strategy_id=strategy_id,
                weight_bp=weight,
                principal=principal,
                accrued_yield=Decimal("0"),
                placed_at=self.clock(),
            )
            try:
                allocation.deposit_reference = await self.resilience.execute(
                    self.service_name(strategy_id),
                    lambda c=client, p=principal, r=reference: c.deposit(p, token, r),
                    description="deposit",
                )
                allocation.status = AllocationStatus.PLACED.value
            except PaymentSystemError as e:
                allocation.status = AllocationStatus.FAILED.value
                allocation.error = e.message
                logger.error(f"Deposit of {principal} {token} into {strategy_id} for {payment_id} failed: {e.message}")
            allocations.append(allocation)

        placed = sum(1 for a in allocations if a.status == AllocationStatus.PLACED.value)
        logger.info(f"Placed {payment_id} into {placed}/{len(allocations)} strategies")
        return allocations

    async def withdraw_allocation(self, allocation: PaymentAllocation, token: str) -> str:
        """Pull one allocation's principal back out (idempotent per allocation)"""
        strategy = self.registry.get_strategy(allocation.strategy_id)
        client = self.client_for(strategy)
        reference = f"withdraw:{allocation.payment_id}:{allocation.strategy_id}"
        principal = MonetaryDecimal.to_decimal(allocation.principal)
        return await self.resilience.execute(
            self.service_name(allocation.strategy_id),
            lambda: client.withdraw(principal, token, reference),
            description="withdraw",
        )


def split_by_weights(amount: Decimal, weights: Dict[str, int], decimals: int) -> Dict[str, tuple]:
    """
    Split amount into per-strategy principals in token units.

    Slices round down; the last non-zero slice absorbs the remainder so the
    parts always add back up to amount exactly.
    """
    ordered = [(sid, w) for sid, w in sorted(weights.items()) if w > 0]
    slices: Dict[str, tuple] = {}
    allocated = Decimal("0")
    for index, (strategy_id, weight) in enumerate(ordered):
        if index == len(ordered) - 1:
            principal = amount - allocated
        else:
            principal = MonetaryDecimal.quantize_token(MonetaryDecimal.bp_of(amount, weight), decimals)
        allocated += principal
        slices[strategy_id] = (weight, principal)
    return slices
