"""
Utility Tests
Decimal precision, yield math, addresses, state tables, time helpers and keyed locks.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from models import BridgeStatus, Payment, PaymentStatus
from utils.address_detector import addresses_equal, detect_address_family, validate_address
from utils.atomic_transactions import KeyedLockRegistry, locked_row
from utils.datetime_helpers import ensure_naive_datetime, seconds_between
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import BridgeStateValidator, PaymentStateValidator
from utils.exception_handler import (
    InvalidStateError,
    InvalidStatus,
    NotFoundError,
    UnsupportedChainError,
    ValidationError,
)
from utils.yield_calculator import simple_interest, weighted_apy

START = datetime(2025, 1, 1)


class TestMonetaryDecimal:
    def test_conversion_goes_through_str(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1")
        assert MonetaryDecimal.to_decimal(None) == Decimal("0")
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal("ten")

    def test_token_quantization_rounds_down(self):
        assert MonetaryDecimal.quantize_token("1.2345679", 6) == Decimal("1.234567")
        assert MonetaryDecimal.fits_token_precision(Decimal("1.5"), 6)
        assert not MonetaryDecimal.fits_token_precision(Decimal("0.0000001"), 6)

    def test_basis_points(self):
        assert MonetaryDecimal.bp_of("1000", 10) == Decimal("1")
        assert MonetaryDecimal.bp_of("1", 3333, Decimal("0.01")) == Decimal("0.33")


class TestYieldMath:
    def test_thirty_days_at_five_percent(self):
        earned = simple_interest(Decimal("1000"), Decimal("0.05"), START, START + timedelta(days=30))
        assert earned.quantize(Decimal("0.01")) == Decimal("4.11")

    def test_no_yield_without_time_rate_or_principal(self):
        assert simple_interest(Decimal("1000"), Decimal("0.05"), START, START) == 0
        assert simple_interest(Decimal("1000"), Decimal("0"), START, START + timedelta(days=1)) == 0
        assert simple_interest(Decimal("0"), Decimal("0.05"), START, START + timedelta(days=1)) == 0

    def test_clock_going_backwards_earns_nothing(self):
        assert simple_interest(Decimal("1000"), Decimal("0.05"), START, START - timedelta(days=1)) == 0

    def test_weighted_apy(self):
        assert weighted_apy([(Decimal("750"), Decimal("0.04")), (Decimal("250"), Decimal("0.08"))]) == Decimal("0.05")
        assert weighted_apy([]) == Decimal("0")


class TestAddresses:
    def test_families(self):
        assert detect_address_family("0x" + "ab" * 20) == "evm"
        assert detect_address_family("rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH") == "xrpl"
        assert detect_address_family("bc1qxyz") is None

    def test_validate_for_chain(self):
        assert validate_address(" 0x" + "ab" * 20 + " ", "polygon") == "0x" + "ab" * 20
        with pytest.raises(ValidationError):
            validate_address("0x" + "ab" * 20, "xrpl")
        with pytest.raises(UnsupportedChainError):
            validate_address("0x" + "ab" * 20, "solana")

    def test_evm_comparison_ignores_case(self):
        assert addresses_equal("0x" + "AB" * 20, "0x" + "ab" * 20)
        assert not addresses_equal("rABC", "rabc")
        assert not addresses_equal(None, "0x" + "ab" * 20)


class TestStateTables:
    def test_payment_edges(self):
        assert PaymentStateValidator.is_valid_transition(PaymentStatus.PENDING.value, PaymentStatus.CONFIRMED.value)
        assert not PaymentStateValidator.is_valid_transition(
            PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value
        )
        assert not PaymentStateValidator.is_valid_transition(
            PaymentStatus.CONFIRMED.value, PaymentStatus.EXPIRED.value
        )

    def test_terminal_states(self):
        for status in ("completed", "failed", "cancelled", "expired", "refunded"):
            assert PaymentStateValidator.is_terminal_state(status)
        assert not PaymentStateValidator.is_terminal_state(PaymentStatus.CONFIRMED.value)

    def test_illegal_transition_raises_with_statuses(self):
        with pytest.raises(InvalidStateError) as exc_info:
            PaymentStateValidator.ensure_transition("PAY_1", "completed", "cancelled")
        assert exc_info.value.details["current_status"] == "completed"

    def test_bridge_edges_raise_invalid_status(self):
        assert BridgeStateValidator.is_valid_transition(BridgeStatus.VALIDATED.value, BridgeStatus.REFUNDED.value)
        with pytest.raises(InvalidStatus):
            BridgeStateValidator.ensure_transition("BRG_1", BridgeStatus.PENDING.value, BridgeStatus.COMPLETED.value)


class TestDatetimeHelpers:
    def test_aware_datetimes_become_naive_utc(self):
        aware = datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_naive_datetime(aware) == datetime(2025, 1, 1, 12, 0)
        assert ensure_naive_datetime(None) is None

    def test_seconds_between_is_never_negative(self):
        assert seconds_between(START, START + timedelta(minutes=2)) == 120
        assert seconds_between(START + timedelta(minutes=2), START) == 0


class TestKeyedLockRegistry:
    async def test_same_key_is_serialised(self):
        locks = KeyedLockRegistry("payments")
        order = []

        async def worker(name):
            async with locks.hold("PAY_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    async def test_different_keys_do_not_block(self):
        locks = KeyedLockRegistry("payments")
        async with locks.hold("PAY_1"):
            assert locks.is_locked("PAY_1")
            async with locks.hold("PAY_2", timeout_seconds=0.1):
                assert locks.is_locked("PAY_2")

    async def test_timeout_releases_waiter(self):
        locks = KeyedLockRegistry("payments")
        async with locks.hold("PAY_1"):
            with pytest.raises(asyncio.TimeoutError):
                async with locks.hold("PAY_1", timeout_seconds=0.01):
                    pass
        assert len(locks) == 0


def _locking_session(*outcomes):
    session = MagicMock()
    session.query.return_value.filter.return_value.with_for_update.return_value.first.side_effect = list(outcomes)
    return session


def _deadlock():
    return OperationalError("SELECT ... FOR UPDATE", {}, Exception("deadlock detected"))


class TestLockedRow:
    def test_deadlock_is_retried_without_sleeping(self):
        row = Payment(payment_id="PAY_1")
        session = _locking_session(_deadlock(), _deadlock(), row)

        with patch("utils.atomic_transactions.time.sleep") as sleep:
            assert locked_row(session, Payment, Payment.payment_id, "PAY_1") is row

        sleep.assert_not_called()
        assert session.rollback.call_count == 2

    def test_gives_up_after_max_retries(self):
        session = _locking_session(_deadlock(), _deadlock(), _deadlock())

        with pytest.raises(OperationalError):
            locked_row(session, Payment, Payment.payment_id, "PAY_1", max_retries=3)
        assert session.rollback.call_count == 2

    def test_other_database_errors_are_not_retried(self):
        error = OperationalError("SELECT ... FOR UPDATE", {}, Exception("disk I/O error"))
        session = _locking_session(error)

        with pytest.raises(OperationalError):
            locked_row(session, Payment, Payment.payment_id, "PAY_1")
        session.rollback.assert_not_called()

    def test_missing_row_raises_not_found(self):
        with pytest.raises(NotFoundError):
            locked_row(_locking_session(None), Payment, Payment.payment_id, "PAY_404")
