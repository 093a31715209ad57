"""
Escrow State Machine
Transition tables for payments and bridge transactions.

Services never assign a status directly: they call ensure_transition() first,
which raises InvalidStateError (InvalidStatus for bridges) on an illegal edge.
"""

import logging
from typing import Dict, Optional, Set

from models import BridgeStatus, PaymentStatus
from utils.exception_handler import InvalidStateError, InvalidStatus

logger = logging.getLogger(__name__)


class PaymentStateValidator:
    """Validates payment state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {PaymentStatus.PENDING.value},
        PaymentStatus.PENDING.value: {
            PaymentStatus.CONFIRMED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.EXPIRED.value,
            PaymentStatus.CANCELLED.value,
        },
        PaymentStatus.CONFIRMED.value: {
            PaymentStatus.COMPLETED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.CANCELLED.value,
        },
        # Terminal states (no transitions allowed)
        PaymentStatus.COMPLETED.value: set(),
        PaymentStatus.FAILED.value: set(),
        PaymentStatus.CANCELLED.value: set(),
        PaymentStatus.EXPIRED.value: set(),
        PaymentStatus.REFUNDED.value: set(),
    }

    error_class = InvalidStateError
    subject = "Payment"

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.VALID_TRANSITIONS and not cls.VALID_TRANSITIONS[status]

    @classmethod
    def ensure_transition(cls, record_id: str, current_status: Optional[str], new_status: str):
        if not cls.is_valid_transition(current_status, new_status):
            logger.warning(
                f"Rejected {cls.subject.lower()} transition {current_status} -> {new_status} for {record_id}"
            )
            raise cls.error_class(
                f"{cls.subject} {record_id} cannot move from {current_status} to {new_status}",
                current_status=current_status,
                requested_status=new_status,
            )


class BridgeStateValidator(PaymentStateValidator):
    """Bridge transactions: PENDING -> VALIDATED -> COMPLETED, or -> FAILED/REFUNDED"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {BridgeStatus.PENDING.value},
        BridgeStatus.PENDING.value: {
            BridgeStatus.VALIDATED.value,
            BridgeStatus.FAILED.value,
            BridgeStatus.REFUNDED.value,
        },
        BridgeStatus.VALIDATED.value: {
            BridgeStatus.COMPLETED.value,
            BridgeStatus.REFUNDED.value,
        },
        BridgeStatus.COMPLETED.value: set(),
        BridgeStatus.FAILED.value: set(),
        BridgeStatus.REFUNDED.value: set(),
    }

    error_class = InvalidStatus
    subject = "Bridge transaction"


__all__ = ["PaymentStateValidator", "BridgeStateValidator"]
