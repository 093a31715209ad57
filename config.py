"""Configuration management for the escrow payment service"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any, List

logger = logging.getLogger(__name__)


def _csv_list(value: str) -> List[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database - sqlite file for local runs, PostgreSQL in production
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow_payments.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Chains: block_time_ms and confirmations feed the bridge time estimate
    CHAIN_CONFIGS: Dict[str, Dict[str, Any]] = {
        "ethereum": {"chain_id": 1, "confirmations": 12, "block_time_ms": 12000, "address_family": "evm"},
        "polygon": {"chain_id": 137, "confirmations": 20, "block_time_ms": 2000, "address_family": "evm"},
        "arbitrum": {"chain_id": 42161, "confirmations": 1, "block_time_ms": 1000, "address_family": "evm"},
        "base": {"chain_id": 8453, "confirmations": 3, "block_time_ms": 2000, "address_family": "evm"},
        "xrpl": {"chain_id": 0, "confirmations": 1, "block_time_ms": 4000, "address_family": "xrpl"},
    }

    SUPPORTED_TOKENS: Dict[str, Dict[str, Any]] = {
        "USDC": {"decimals": 6, "chains": ["ethereum", "polygon", "arbitrum", "base"]},
        "RLUSD": {"decimals": 6, "chains": ["xrpl", "ethereum"]},
    }

    # Escrow custody addresses per chain
    ESCROW_ADDRESSES: Dict[str, str] = {
        "ethereum": os.getenv("ESCROW_ADDRESS_ETHEREUM", "0x" + "e5c0" * 10),
        "polygon": os.getenv("ESCROW_ADDRESS_POLYGON", "0x" + "e5c1" * 10),
        "arbitrum": os.getenv("ESCROW_ADDRESS_ARBITRUM", "0x" + "e5c2" * 10),
        "base": os.getenv("ESCROW_ADDRESS_BASE", "0x" + "e5c3" * 10),
        "xrpl": os.getenv("ESCROW_ADDRESS_XRPL", "rEscrowVau1tXRPLAddressXXXXXXXXXX"),
    }

    # Payment limits
    MAX_PAYMENT_AMOUNT = Decimal(os.getenv("MAX_PAYMENT_AMOUNT", "1000000"))
    MAX_METADATA_SIZE = int(os.getenv("MAX_METADATA_SIZE", "10000"))
    PAYMENT_CACHE_TTL = int(os.getenv("PAYMENT_CACHE_TTL", "300"))

    # Risk tolerance -> maximum weighted-average risk score (1-10 scale)
    RISK_TOLERANCE_CEILINGS: Dict[str, Decimal] = {
        "conservative": Decimal(os.getenv("RISK_CEILING_CONSERVATIVE", "3")),
        "moderate": Decimal(os.getenv("RISK_CEILING_MODERATE", "5")),
        "aggressive": Decimal(os.getenv("RISK_CEILING_AGGRESSIVE", "8")),
    }
    DEFAULT_RISK_TOLERANCE = os.getenv("DEFAULT_RISK_TOLERANCE", "moderate")
    VAULT_RISK_TOLERANCE = os.getenv("VAULT_RISK_TOLERANCE", "moderate")

    # Strategy allocation
    MAX_ACTIVE_STRATEGIES = int(os.getenv("MAX_ACTIVE_STRATEGIES", "10"))
    MAX_ALLOCATION_PER_STRATEGY_BP = int(os.getenv("MAX_ALLOCATION_PER_STRATEGY_BP", "5000"))
    MIN_REBALANCE_THRESHOLD_BP = 100
    REBALANCE_THRESHOLD_BP = max(
        MIN_REBALANCE_THRESHOLD_BP, int(os.getenv("REBALANCE_THRESHOLD_BP", "500"))
    )
    REBALANCE_COOLDOWN_SECONDS = int(os.getenv("REBALANCE_COOLDOWN_SECONDS", "3600"))

    # Bridge
    BRIDGE_FEE_BP = int(os.getenv("BRIDGE_FEE_BP", "10"))
    MAX_BRIDGE_FEE_BP = 1000
    BRIDGE_DEFAULT_APY = Decimal(os.getenv("BRIDGE_DEFAULT_APY", "0.05"))
    BRIDGE_SETTLEMENT_OVERHEAD_SECONDS = 30
    BRIDGE_VALIDATORS = _csv_list(os.getenv("BRIDGE_VALIDATORS", ""))
    BRIDGE_OPERATORS = _csv_list(os.getenv("BRIDGE_OPERATORS", ""))

    # Resilience layer
    RESILIENCE_MAX_RETRIES = int(os.getenv("RESILIENCE_MAX_RETRIES", "3"))
    RESILIENCE_RETRY_DELAY = float(os.getenv("RESILIENCE_RETRY_DELAY", "1.0"))
    CIRCUIT_FAILURE_THRESHOLD = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    CIRCUIT_OPEN_DURATION = int(os.getenv("CIRCUIT_OPEN_DURATION", "60"))
    HEALTH_CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", "30"))
    EXTERNAL_CALL_TIMEOUT = float(os.getenv("EXTERNAL_CALL_TIMEOUT", "10"))

    # External protocol endpoints
    USE_SIMULATED_PROTOCOLS = os.getenv("USE_SIMULATED_PROTOCOLS", "true").lower() == "true"
    CHAIN_GATEWAY_URL = os.getenv("CHAIN_GATEWAY_URL", "")
    BRIDGE_SETTLEMENT_URL = os.getenv("BRIDGE_SETTLEMENT_URL", "")
    PROTOCOL_API_KEY = os.getenv("PROTOCOL_API_KEY", "")
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")

    # Background jobs (seconds)
    YIELD_ACCRUAL_INTERVAL = int(os.getenv("YIELD_ACCRUAL_INTERVAL", "300"))
    YIELD_BATCH_SIZE = int(os.getenv("YIELD_BATCH_SIZE", "10"))
    EXPIRY_CHECK_INTERVAL = int(os.getenv("EXPIRY_CHECK_INTERVAL", "60"))
    REBALANCE_CHECK_INTERVAL = int(os.getenv("REBALANCE_CHECK_INTERVAL", "3600"))
    HARVEST_INTERVAL = int(os.getenv("HARVEST_INTERVAL", "3600"))
    RECONCILIATION_MONITOR_INTERVAL = int(os.getenv("RECONCILIATION_MONITOR_INTERVAL", "900"))
    ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log the effective configuration without secrets"""
        logger.info(f"Environment: {Config.ENVIRONMENT} (production={Config.IS_PRODUCTION})")
        logger.info(f"Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"Chains: {', '.join(sorted(Config.CHAIN_CONFIGS))}")
        logger.info(f"Tokens: {', '.join(sorted(Config.SUPPORTED_TOKENS))}")
        logger.info(
            f"Resilience: retries={Config.RESILIENCE_MAX_RETRIES} "
            f"threshold={Config.CIRCUIT_FAILURE_THRESHOLD} open={Config.CIRCUIT_OPEN_DURATION}s "
            f"timeout={Config.EXTERNAL_CALL_TIMEOUT}s"
        )
        logger.info(
            f"Bridge fee: {Config.BRIDGE_FEE_BP}bp, validators={len(Config.BRIDGE_VALIDATORS)}, "
            f"operators={len(Config.BRIDGE_OPERATORS)}"
        )
        if Config.USE_SIMULATED_PROTOCOLS:
            logger.warning("Using simulated protocol clients - no funds move on-chain")
        if Config.BRIDGE_FEE_BP > Config.MAX_BRIDGE_FEE_BP:
            logger.error(
                f"BRIDGE_FEE_BP={Config.BRIDGE_FEE_BP} exceeds maximum {Config.MAX_BRIDGE_FEE_BP}"
            )
