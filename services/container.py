"""
Service wiring.

Builds the resilience layer, protocol clients, registry, engine and the
payment and bridge services from Config. Tests construct a ServiceContainer
directly with their own session factory, clock and fake clients.
"""

import logging
from typing import Optional

from caching.simple_cache import SimpleCache
from config import Config
from database import SessionFactory
from services.allocation_engine import AllocationEngine
from services.api_resilience_service import ResilienceService
from services.bridge_service import BRIDGE_SETTLEMENT_SERVICE, BridgeService
from services.financial_reconciliation import FinancialReconciliationService
from services.notification_service import NotificationService
from services.payment_service import CHAIN_GATEWAY_SERVICE, PaymentService
from services.protocol_clients import (
    BridgeSettlementClient,
    ChainGatewayClient,
    HttpBridgeSettlementClient,
    HttpChainGatewayClient,
)
from services.retry_service import RetryPolicy
from services.simulated_protocols import SimulatedBridgeSettlement, SimulatedChainGateway
from services.strategy_registry import StrategyRegistry
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


def default_chain_gateway() -> ChainGatewayClient:
    if Config.USE_SIMULATED_PROTOCOLS or not Config.CHAIN_GATEWAY_URL:
        return SimulatedChainGateway()
    return HttpChainGatewayClient(Config.CHAIN_GATEWAY_URL, Config.PROTOCOL_API_KEY, Config.EXTERNAL_CALL_TIMEOUT)


def default_bridge_settlement() -> BridgeSettlementClient:
    if Config.USE_SIMULATED_PROTOCOLS or not Config.BRIDGE_SETTLEMENT_URL:
        return SimulatedBridgeSettlement()
    return HttpBridgeSettlementClient(
        Config.BRIDGE_SETTLEMENT_URL, Config.PROTOCOL_API_KEY, Config.EXTERNAL_CALL_TIMEOUT
    )


class ServiceContainer:
    """Holds one instance of every service, sharing a resilience layer and store"""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = get_naive_utc_now,
        resilience: Optional[ResilienceService] = None,
        chain_gateway: Optional[ChainGatewayClient] = None,
        bridge_settlement: Optional[BridgeSettlementClient] = None,
        notifications: Optional[NotificationService] = None,
        cache: Optional[SimpleCache] = None,
        strategy_client_factory=None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.resilience = resilience or ResilienceService(retry_policy=RetryPolicy.from_config())
        self.chain_gateway = chain_gateway or default_chain_gateway()
        self.bridge_settlement = bridge_settlement or default_bridge_settlement()
        self.notifications = notifications or NotificationService()
        self.cache = cache if cache is not None else SimpleCache(default_ttl=Config.PAYMENT_CACHE_TTL)

        self.resilience.register_service(CHAIN_GATEWAY_SERVICE, health_check=self.chain_gateway.health_check)
        self.resilience.register_service(
            BRIDGE_SETTLEMENT_SERVICE, health_check=self.bridge_settlement.health_check
        )

        self.reconciliation = FinancialReconciliationService(session_factory, clock)
        self.registry = StrategyRegistry(session_factory, clock)
        self.allocation_engine = AllocationEngine(
            self.registry,
            self.resilience,
            session_factory=session_factory,
            clock=clock,
            client_factory=strategy_client_factory,
        )
        self.payments = PaymentService(
            self.allocation_engine,
            self.resilience,
            self.chain_gateway,
            self.notifications,
            self.reconciliation,
            session_factory=session_factory,
            cache=self.cache,
            clock=clock,
        )
        self.bridge = BridgeService(
            self.resilience,
            self.bridge_settlement,
            self.notifications,
            self.reconciliation,
            session_factory=session_factory,
            clock=clock,
        )

    async def start(self):
        self.allocation_engine.register_health_checks()
        await self.resilience.start_monitoring()
        logger.info(f"Services started, monitoring {len(self.resilience.endpoints)} external services")

    async def stop(self):
        await self.resilience.stop_monitoring()
        await self.notifications.drain()
        logger.info("Services stopped")


_container_instance: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """Get singleton service container"""
    global _container_instance
    if _container_instance is None:
        _container_instance = ServiceContainer()
    return _container_instance


def set_container(container: Optional[ServiceContainer]):
    """Replace the singleton (tests and alternative wiring)"""
    global _container_instance
    _container_instance = container
