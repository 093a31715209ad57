"""
In-process protocol clients for sandbox runs.

They keep their own ledgers, honour idempotency keys the way the real
gateways do, and can be told to fail so outage handling can be exercised
without a network.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from services.protocol_clients import (
    BridgeSettlementClient,
    ChainGatewayClient,
    DepositVerification,
    ProtocolError,
    StrategyClient,
)

logger = logging.getLogger(__name__)


def fake_tx_hash(seed: str) -> str:
    return "0x" + hashlib.sha256(seed.encode()).hexdigest()


class FailureInjector:
    """Fail the next N calls, or every call while unhealthy"""

    def __init__(self):
        self.failures_remaining = 0
        self.healthy = True
        self.calls = 0

    def fail_next(self, count: int = 1):
        self.failures_remaining = count

    def _maybe_fail(self, operation: str):
        self.calls += 1
        if not self.healthy:
            raise ProtocolError(f"{operation}: service unhealthy")
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ProtocolError(f"{operation}: injected failure")

    async def health_check(self) -> bool:
        return self.healthy


class SimulatedStrategyClient(FailureInjector, StrategyClient):
    def __init__(self, strategy_id: str, apy: Decimal = Decimal("0.05"), harvest_amount: Decimal = Decimal("0")):
        super().__init__()
        self.strategy_id = strategy_id
        self.apy = apy
        self.harvest_amount = harvest_amount
        self.balance = Decimal("0")
        self._references: Dict[str, str] = {}

    async def quote_apy(self) -> Decimal:
        self._maybe_fail("quote_apy")
        return self.apy

    async def deposit(self, amount: Decimal, token: str, reference: str) -> str:
        self._maybe_fail("deposit")
        if reference not in self._references:
            self.balance += amount
            self._references[reference] = fake_tx_hash(f"{self.strategy_id}:{reference}")
        return self._references[reference]

    async def withdraw(self, amount: Decimal, token: str, reference: str) -> str:
        self._maybe_fail("withdraw")
        if reference not in self._references:
            self.balance -= amount
            self._references[reference] = fake_tx_hash(f"{self.strategy_id}:{reference}")
        return self._references[reference]

    async def harvest(self) -> Decimal:
        self._maybe_fail("harvest")
        return self.harvest_amount


class SimulatedChainGateway(FailureInjector, ChainGatewayClient):
    def __init__(self):
        super().__init__()
        self.deposits: Dict[str, DepositVerification] = {}
        self.transfers: Dict[str, Tuple[str, str, str, Decimal]] = {}

    def register_deposit(self, verification: DepositVerification):
        self.deposits[verification.tx_hash] = verification

    async def verify_deposit(
        self, chain: str, token: str, escrow_address: str, tx_hash: str, expected_amount: Decimal
    ) -> DepositVerification:
        self._maybe_fail("verify_deposit")
        known = self.deposits.get(tx_hash)
        if known is not None:
            return known
        # Sandbox: an unknown hash is treated as a final deposit of the expected amount
        return DepositVerification(status="confirmed", tx_hash=tx_hash, amount=expected_amount, confirmations=64)

    async def transfer(
        self, chain: str, token: str, to_address: str, amount: Decimal, idempotency_key: str
    ) -> str:
        self._maybe_fail("transfer")
        if idempotency_key not in self.transfers:
            self.transfers[idempotency_key] = (chain, token, to_address, amount)
            logger.info(f"Simulated transfer {amount} {token} to {to_address} on {chain}")
        return fake_tx_hash(idempotency_key)

    def transfers_to(self, address: str) -> List[Decimal]:
        return [amount for (_, _, to, amount) in self.transfers.values() if to == address]


class SimulatedBridgeSettlement(FailureInjector, BridgeSettlementClient):
    def __init__(self, apy_by_chain: Optional[Dict[str, Decimal]] = None):
        super().__init__()
        self.apy_by_chain = apy_by_chain or {}
        self.movements: Dict[str, Tuple[str, str, str, str, Decimal]] = {}

    def _record(self, action: str, chain: str, token: str, address: str, amount: Decimal, key: str) -> str:
        self._maybe_fail(action)
        if key not in self.movements:
            self.movements[key] = (action, chain, token, address, amount)
        return fake_tx_hash(key)

    async def lock(self, chain, token, from_address, amount, idempotency_key) -> str:
        return self._record("lock", chain, token, from_address, amount, idempotency_key)

    async def settle(self, chain, token, to_address, amount, idempotency_key) -> str:
        return self._record("settle", chain, token, to_address, amount, idempotency_key)

    async def refund(self, chain, token, to_address, amount, idempotency_key) -> str:
        return self._record("refund", chain, token, to_address, amount, idempotency_key)

    async def quote_apy(self, chain: str) -> Decimal:
        self._maybe_fail("quote_apy")
        if chain not in self.apy_by_chain:
            raise ProtocolError(f"No APY source for {chain}")
        return self.apy_by_chain[chain]

    def movements_of(self, action: str) -> List[Tuple[str, str, str, str, Decimal]]:
        return [movement for movement in self.movements.values() if movement[0] == action]
