"""
External protocol client contracts and their HTTP implementations.

Each client exposes health_check() plus the domain operations the core needs.
Clients are only ever invoked through ResilienceService, which owns retries,
timeouts and circuit breaking; the clients themselves make exactly one
request per call.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Transport or server-side failure talking to an external protocol"""


@dataclass
class DepositVerification:
    """Outcome of checking a deposit transaction against the chain"""

    status: str  # "confirmed", "pending" or "failed"
    tx_hash: str
    amount: Optional[Decimal] = None
    from_address: Optional[str] = None
    confirmations: int = 0
    error: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == "confirmed"


class StrategyClient(ABC):
    """A yield protocol accepting deposits and paying yield"""

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    async def quote_apy(self) -> Decimal: ...

    @abstractmethod
    async def deposit(self, amount: Decimal, token: str, reference: str) -> str: ...

    @abstractmethod
    async def withdraw(self, amount: Decimal, token: str, reference: str) -> str: ...

    @abstractmethod
    async def harvest(self) -> Decimal: ...


class ChainGatewayClient(ABC):
    """Reads deposits from and sends transfers on the payment chains"""

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    async def verify_deposit(
        self, chain: str, token: str, escrow_address: str, tx_hash: str, expected_amount: Decimal
    ) -> DepositVerification: ...

    @abstractmethod
    async def transfer(
        self, chain: str, token: str, to_address: str, amount: Decimal, idempotency_key: str
    ) -> str: ...


class BridgeSettlementClient(ABC):
    """Locks value on a source chain and releases or refunds it"""

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    async def lock(
        self, chain: str, token: str, from_address: str, amount: Decimal, idempotency_key: str
    ) -> str: ...

    @abstractmethod
    async def settle(
        self, chain: str, token: str, to_address: str, amount: Decimal, idempotency_key: str
    ) -> str: ...

    @abstractmethod
    async def refund(
        self, chain: str, token: str, to_address: str, amount: Decimal, idempotency_key: str
    ) -> str: ...

    @abstractmethod
    async def quote_apy(self, chain: str) -> Decimal: ...


class JsonHttpClient:
    """Single-request JSON client; 4xx are rejections, 5xx and network errors are failures"""

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds, connect=5)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(headers=self._headers(idempotency_key), timeout=self.timeout) as session:
                async with session.request(method, url, json=payload) as response:
                    if response.status >= 500:
                        error_text = await response.text()
                        raise ProtocolError(f"{method} {url} returned {response.status}: {error_text[:200]}")
                    if response.status >= 400:
                        error_text = await response.text()
                        logger.warning(f"{method} {url} rejected with {response.status}: {error_text[:200]}")
                        raise ValidationError(
                            f"Request rejected by {self.base_url}: {response.status}",
                            {"status": response.status},
                        )
                    return await response.json(content_type=None) or {}
        except aiohttp.ClientError as e:
            raise ProtocolError(f"{method} {url} failed: {e}") from e

    async def ping(self, path: str = "/health") -> bool:
        try:
            await self.request("GET", path)
            return True
        except (ProtocolError, ValidationError) as e:
            logger.debug(f"Health check {self.base_url}{path} failed: {e}")
            return False


def _decimal_field(data: Dict[str, Any], key: str) -> Decimal:
    if key not in data:
        raise ProtocolError(f"Response is missing {key}")
    return MonetaryDecimal.to_decimal(data[key], key)


class HttpStrategyClient(StrategyClient):
    def __init__(self, strategy_id: str, base_url: str, api_key: str = "", timeout_seconds: float = 10.0):
        self.strategy_id = strategy_id
        self.http = JsonHttpClient(base_url, api_key, timeout_seconds)

    async def health_check(self) -> bool:
        return await self.http.ping()

    async def quote_apy(self) -> Decimal:
        data = await self.http.request("GET", "/apy")
        return _decimal_field(data, "apy")

    async def deposit(self, amount: Decimal, token: str, reference: str) -> str:
        data = await self.http.request(
            "POST", "/deposits", {"amount": str(amount), "token": token}, idempotency_key=reference
        )
        return str(data.get("reference") or reference)

    async def withdraw(self, amount: Decimal, token: str, reference: str) -> str:
        data = await self.http.request(
            "POST", "/withdrawals", {"amount": str(amount), "token": token}, idempotency_key=reference
        )
        return str(data.get("reference") or reference)

    async def harvest(self) -> Decimal:
        data = await self.http.request("POST", "/harvest")
        return _decimal_field(data, "amount")


class HttpChainGatewayClient(ChainGatewayClient):
    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 10.0):
        self.http = JsonHttpClient(base_url, api_key, timeout_seconds)

    async def health_check(self) -> bool:
        return await self.http.ping()

    async def verify_deposit(
        self, chain: str, token: str, escrow_address: str, tx_hash: str, expected_amount: Decimal
    ) -> DepositVerification:
        data = await self.http.request(
            "GET", f"/chains/{chain}/transactions/{tx_hash}?token={token}&to={escrow_address}"
        )
        return DepositVerification(
            status=str(data.get("status", "pending")),
            tx_hash=tx_hash,
            amount=MonetaryDecimal.to_decimal(data["amount"]) if data.get("amount") is not None else None,
            from_address=data.get("from"),
            confirmations=int(data.get("confirmations", 0)),
            error=data.get("error"),
        )

    async def transfer(
        self, chain: str, token: str, to_address: str, amount: Decimal, idempotency_key: str
    ) -> str:
        data = await self.http.request(
            "POST",
            f"/chains/{chain}/transfers",
            {"token": token, "to": to_address, "amount": str(amount)},
            idempotency_key=idempotency_key,
        )
        if not data.get("tx_hash"):
            raise ProtocolError("Transfer response is missing tx_hash")
        return str(data["tx_hash"])


class HttpBridgeSettlementClient(BridgeSettlementClient):
    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 10.0):
        self.http = JsonHttpClient(base_url, api_key, timeout_seconds)

    async def health_check(self) -> bool:
        return await self.http.ping()

    async def _movement(self, action: str, chain: str, token: str, address: str, amount: Decimal, key: str) -> str:
        data = await self.http.request(
            "POST",
            f"/bridge/{action}",
            {"chain": chain, "token": token, "address": address, "amount": str(amount)},
            idempotency_key=key,
        )
        if not data.get("tx_hash"):
            raise ProtocolError(f"Bridge {action} response is missing tx_hash")
        return str(data["tx_hash"])

    async def lock(self, chain, token, from_address, amount, idempotency_key) -> str:
        return await self._movement("lock", chain, token, from_address, amount, idempotency_key)

    async def settle(self, chain, token, to_address, amount, idempotency_key) -> str:
        return await self._movement("settle", chain, token, to_address, amount, idempotency_key)

    async def refund(self, chain, token, to_address, amount, idempotency_key) -> str:
        return await self._movement("refund", chain, token, to_address, amount, idempotency_key)

    async def quote_apy(self, chain: str) -> Decimal:
        data = await self.http.request("GET", f"/bridge/apy/{chain}")
        return _decimal_field(data, "apy")
