"""
Shared fixtures for the escrow payment test suite.

Every test gets a fresh in-memory SQLite database, a controllable wall
clock for payment and bridge timestamps, a controllable monotonic clock for
circuit breakers, and in-process protocol clients that can be told to fail.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List

import pytest

from caching.simple_cache import SimpleCache
from database import build_engine, build_session_factory, create_tables
from services.api_resilience_service import ResilienceService
from services.container import ServiceContainer
from services.notification_service import NotificationService
from services.retry_service import RetryPolicy
from services.simulated_protocols import (
    SimulatedBridgeSettlement,
    SimulatedChainGateway,
    SimulatedStrategyClient,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

MERCHANT = "0x" + "11" * 20
PAYER = "0x" + "22" * 20
OUTSIDER = "0x" + "33" * 20
RECIPIENT = "0x" + "44" * 20
VALIDATOR = "0x" + "aa" * 20
OPERATOR = "0x" + "bb" * 20


class FakeClock:
    """Naive UTC wall clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep: records requested delays and returns at once"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def resilience(monotonic, sleeps):
    return ResilienceService(
        retry_policy=RetryPolicy(max_attempts=3, retry_delay=1.0),
        failure_threshold=5,
        open_duration=60,
        call_timeout=5,
        clock=monotonic,
        sleep=sleeps,
    )


@pytest.fixture
def strategy_clients() -> Dict[str, SimulatedStrategyClient]:
    return {}


@pytest.fixture
def chain_gateway():
    return SimulatedChainGateway()


@pytest.fixture
def bridge_settlement():
    return SimulatedBridgeSettlement({"polygon": Decimal("0.04"), "arbitrum": Decimal("0.04")})


@pytest.fixture
def container(session_factory, clock, resilience, chain_gateway, bridge_settlement, strategy_clients):
    def client_factory(snapshot):
        client = SimulatedStrategyClient(snapshot.strategy_id, apy=Decimal(str(snapshot.expected_apy)))
        strategy_clients[snapshot.strategy_id] = client
        return client

    services = ServiceContainer(
        session_factory=session_factory,
        clock=clock,
        resilience=resilience,
        chain_gateway=chain_gateway,
        bridge_settlement=bridge_settlement,
        notifications=NotificationService(webhook_url=""),
        cache=SimpleCache(default_ttl=300),
        strategy_client_factory=client_factory,
    )
    services.bridge.validators = {VALIDATOR}
    services.bridge.operators = {OPERATOR}
    return services


@pytest.fixture
def two_five_percent_strategies(container):
    """Two 5% strategies capped at 50% each, so a payment splits evenly"""
    container.registry.register_strategy("aave-usdc", "Aave USDC", "aave", risk_score=2, expected_apy=Decimal("0.05"))
    container.registry.register_strategy("comp-usdc", "Compound USDC", "compound", risk_score=3, expected_apy=Decimal("0.05"))
    return container


async def create_confirmed_payment(container, amount="1000", yield_enabled=True, **kwargs):
    payment = await container.payments.create(
        merchant_address=MERCHANT,
        amount=amount,
        token="USDC",
        chain="ethereum",
        yield_enabled=yield_enabled,
        payer_address=PAYER,
        **kwargs,
    )
    return await container.payments.confirm_deposit(payment.payment_id, {"tx_hash": "0x" + "d" * 64})
