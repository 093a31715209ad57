"""Address format validation per chain family"""

import re
import logging
from typing import Optional

from config import Config
from utils.exception_handler import UnsupportedChainError, ValidationError

logger = logging.getLogger(__name__)

EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
XRPL_ADDRESS_RE = re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$")

_FAMILY_PATTERNS = {
    "evm": EVM_ADDRESS_RE,
    "xrpl": XRPL_ADDRESS_RE,
}


def detect_address_family(address: str) -> Optional[str]:
    """
    Detect which chain family an address belongs to.

    Returns:
        "evm", "xrpl" or None when the format is not recognised
    """
    if not address:
        return None

    address = address.strip()
    for family, pattern in _FAMILY_PATTERNS.items():
        if pattern.match(address):
            return family
    return None


def is_valid_address(address: str, chain: str) -> bool:
    chain_config = Config.CHAIN_CONFIGS.get(chain)
    if chain_config is None:
        return False
    return detect_address_family(address) == chain_config["address_family"]


def validate_address(address: str, chain: str, field: str = "address") -> str:
    """Return the normalised address or raise ValidationError"""
    if chain not in Config.CHAIN_CONFIGS:
        raise UnsupportedChainError(chain)
    if not address or not isinstance(address, str):
        raise ValidationError(f"{field} is required", {"field": field})

    address = address.strip()
    if not is_valid_address(address, chain):
        logger.debug(f"Rejected {field} {address!r} for chain {chain}")
        raise ValidationError(
            f"Invalid {field} format for chain {chain}",
            {"field": field, "chain": chain},
        )
    return address


def addresses_equal(left: Optional[str], right: Optional[str]) -> bool:
    """EVM addresses compare case-insensitively (checksum casing is cosmetic)"""
    if not left or not right:
        return False
    if left.startswith("0x") and right.startswith("0x"):
        return left.lower() == right.lower()
    return left == right
