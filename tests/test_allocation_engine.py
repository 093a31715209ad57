"""
Allocation Engine Tests
Target allocation under caps and risk ceilings, drift, rebalancing and harvest.
"""

import asyncio
from decimal import Decimal

import pytest

from models import YieldStrategy
from services.allocation_engine import (
    compute_target_allocation,
    needs_rebalance,
    risk_ceiling_for,
    split_by_weights,
    weighted_risk,
)
from services.strategy_registry import StrategySnapshot
from utils.exception_handler import RebalanceCooldownActive, ValidationError


def snapshot(strategy_id, risk_score, apy, cap_bp=5000, status="active", weight_bp=0):
    return StrategySnapshot(
        strategy_id=strategy_id,
        name=strategy_id,
        protocol="test",
        risk_score=risk_score,
        cap_bp=cap_bp,
        weight_bp=weight_bp,
        expected_apy=Decimal(apy),
        status=status,
    )


class TestTargetAllocation:
    def test_equal_yield_splits_to_caps(self):
        weights = compute_target_allocation(
            [snapshot("aave-usdc", 2, "0.05"), snapshot("comp-usdc", 3, "0.05")], Decimal("5")
        )
        assert weights == {"aave-usdc": 5000, "comp-usdc": 5000}

    def test_high_yield_strategy_limited_by_risk_ceiling(self):
        strategies = [
            snapshot("degen", 6, "0.08"),
            snapshot("blue", 2, "0.03"),
            snapshot("safe", 1, "0.02"),
        ]

        weights = compute_target_allocation(strategies, Decimal("3"))

        assert weights == {"degen": 3750, "blue": 1250, "safe": 5000}
        assert sum(weights.values()) == 10000
        assert weighted_risk(weights, strategies) <= Decimal("3")

    def test_aggressive_ceiling_gives_yield_its_cap(self):
        strategies = [snapshot("degen", 6, "0.08"), snapshot("blue", 2, "0.03"), snapshot("safe", 1, "0.02")]

        weights = compute_target_allocation(strategies, Decimal("8"))

        assert weights == {"degen": 5000, "blue": 5000, "safe": 0}

    def test_ties_go_to_lower_risk_then_lower_id(self):
        strategies = [
            snapshot("b-vault", 2, "0.05", cap_bp=6000),
            snapshot("a-vault", 2, "0.05", cap_bp=6000),
            snapshot("c-vault", 1, "0.05", cap_bp=6000),
        ]

        weights = compute_target_allocation(strategies, Decimal("5"))

        assert weights == {"c-vault": 6000, "a-vault": 4000, "b-vault": 0}

    def test_inactive_strategies_are_ignored(self):
        strategies = [
            snapshot("aave-usdc", 2, "0.05"),
            snapshot("comp-usdc", 3, "0.05"),
            snapshot("paused", 1, "0.20", status="paused"),
        ]

        weights = compute_target_allocation(strategies, Decimal("5"))

        assert "paused" not in weights

    def test_caps_too_small(self):
        with pytest.raises(ValidationError) as exc_info:
            compute_target_allocation([snapshot("only", 2, "0.05")], Decimal("5"))
        assert exc_info.value.details["total_cap_bp"] == 5000

    def test_no_allocation_under_ceiling(self):
        with pytest.raises(ValidationError):
            compute_target_allocation([snapshot("x", 8, "0.1"), snapshot("y", 9, "0.1")], Decimal("3"))

    def test_no_active_strategies(self):
        with pytest.raises(ValidationError):
            compute_target_allocation([snapshot("x", 1, "0.1", status="removed")], Decimal("5"))

    def test_risk_tolerance_names(self):
        assert risk_ceiling_for("conservative") == Decimal("3")
        assert risk_ceiling_for("MODERATE") == Decimal("5")
        with pytest.raises(ValidationError):
            risk_ceiling_for("yolo")


class TestDrift:
    def test_drift_must_exceed_threshold(self):
        target = {"a": 5000, "b": 5000}
        assert not needs_rebalance({"a": 5250, "b": 4750}, target, threshold_bp=500)
        assert needs_rebalance({"a": 5300, "b": 4700}, target, threshold_bp=500)

    def test_missing_keys_count_as_zero(self):
        assert needs_rebalance({"a": 10000}, {"a": 5000, "b": 5000}, threshold_bp=500)


class TestSplitByWeights:
    def test_parts_add_back_to_amount(self):
        amount = Decimal("100.000001")

        slices = split_by_weights(amount, {"a": 3333, "b": 3333, "c": 3334}, 6)

        assert slices["a"] == (3333, Decimal("33.330000"))
        assert slices["b"] == (3333, Decimal("33.330000"))
        assert slices["c"] == (3334, Decimal("33.340001"))
        assert sum(principal for _, principal in slices.values()) == amount

    def test_zero_weights_are_skipped(self):
        slices = split_by_weights(Decimal("10"), {"a": 10000, "b": 0}, 6)
        assert list(slices) == ["a"]


class TestRebalance:
    async def test_rebalance_sets_weights_and_records(self, two_five_percent_strategies):
        container = two_five_percent_strategies
        engine = container.allocation_engine

        record = await engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})

        assert container.registry.current_weights() == {"aave-usdc": 5000, "comp-usdc": 5000}
        assert record.previous_weights == {}
        assert record.new_weights == {"aave-usdc": 5000, "comp-usdc": 5000}
        assert record.l1_distance_bp == 10000
        assert container.registry.vault_apy() == Decimal("0.05")

    async def test_cooldown_between_rebalances(self, two_five_percent_strategies, clock):
        engine = two_five_percent_strategies.allocation_engine
        await engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})

        clock.advance(seconds=600)
        with pytest.raises(RebalanceCooldownActive) as exc_info:
            await engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})
        assert exc_info.value.retry_after_seconds == 3000
        assert engine.cooldown_remaining() == 3000

        clock.advance(seconds=3000)
        await engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})

    async def test_concurrent_rebalances_apply_once(self, two_five_percent_strategies):
        engine = two_five_percent_strategies.allocation_engine

        results = await asyncio.gather(
            engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000}),
            engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000}),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, RebalanceCooldownActive)) == 1
        assert len(engine.rebalance_history()) == 1

    async def test_omitted_strategies_drop_to_zero(self, two_five_percent_strategies, clock):
        container = two_five_percent_strategies
        container.registry.register_strategy("morpho-usdc", "Morpho USDC", "morpho", risk_score=4, expected_apy=Decimal("0.06"))
        engine = container.allocation_engine
        await engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})
        clock.advance(hours=2)

        record = await engine.rebalance({"aave-usdc": 5000, "morpho-usdc": 5000})

        assert container.registry.current_weights() == {"aave-usdc": 5000, "comp-usdc": 0, "morpho-usdc": 5000}
        assert record.l1_distance_bp == 10000

    @pytest.mark.parametrize(
        "weights",
        [
            {"aave-usdc": 5000, "comp-usdc": 4000},
            {"aave-usdc": 6000, "comp-usdc": 4000},
            {"aave-usdc": 5000, "unknown": 5000},
            {"aave-usdc": 5000.5, "comp-usdc": 4999.5},
        ],
    )
    async def test_invalid_weights_rejected(self, two_five_percent_strategies, weights):
        engine = two_five_percent_strategies.allocation_engine

        with pytest.raises(ValidationError):
            await engine.rebalance(weights)

        assert engine.rebalance_history() == []
        assert two_five_percent_strategies.registry.current_weights() == {"aave-usdc": 0, "comp-usdc": 0}

    async def test_paused_strategy_cannot_receive_weight(self, two_five_percent_strategies):
        container = two_five_percent_strategies
        container.registry.register_strategy("morpho-usdc", "Morpho USDC", "morpho", risk_score=4)
        container.registry.pause_strategy("comp-usdc", "exploit reported")

        with pytest.raises(ValidationError):
            await container.allocation_engine.rebalance({"aave-usdc": 5000, "comp-usdc": 5000})

    async def test_auto_rebalance_moves_to_target_once(self, two_five_percent_strategies):
        engine = two_five_percent_strategies.allocation_engine

        first = await engine.auto_rebalance()
        second = await engine.auto_rebalance()

        assert first["rebalanced"] is True
        assert first["l1_distance_bp"] == 10000
        assert second["rebalanced"] is False
        assert second["needs_rebalance"] is False

    async def test_auto_rebalance_waits_on_cooldown(self, two_five_percent_strategies, clock):
        container = two_five_percent_strategies
        engine = container.allocation_engine
        await engine.auto_rebalance()
        container.registry.pause_strategy("comp-usdc")
        container.registry.register_strategy("morpho-usdc", "Morpho USDC", "morpho", risk_score=4)
        clock.advance(minutes=5)

        result = await engine.auto_rebalance()

        assert result["rebalanced"] is False
        assert result["retry_after_seconds"] == 3300


class TestHarvest:
    async def test_partial_failure_does_not_block_others(self, two_five_percent_strategies, strategy_clients):
        container = two_five_percent_strategies
        engine = container.allocation_engine
        engine.register_health_checks()
        strategy_clients["aave-usdc"].harvest_amount = Decimal("12.5")
        strategy_clients["comp-usdc"].healthy = False

        report = await engine.harvest_all()

        assert report.succeeded == ["aave-usdc"]
        assert report.failed == ["comp-usdc"]
        assert report.total_harvested == Decimal("12.5")
        as_dict = report.to_dict()
        assert as_dict["total_harvested"] == "12.5"
        assert as_dict["results"][1]["error"]

    async def test_harvest_accumulates_on_strategy(self, two_five_percent_strategies, strategy_clients):
        container = two_five_percent_strategies
        container.allocation_engine.register_health_checks()
        strategy_clients["aave-usdc"].harvest_amount = Decimal("3")

        await container.allocation_engine.harvest_all()
        await container.allocation_engine.harvest_all()

        with container.registry._session() as session:
            row = session.query(YieldStrategy).filter(YieldStrategy.strategy_id == "aave-usdc").one()
            assert Decimal(str(row.total_harvested)) == Decimal("6")
            assert row.last_harvest_at is not None
