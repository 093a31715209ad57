"""
Bridge Service Tests
Initiate, validate, complete and refund, with in-transit yield and role checks.
"""

import re
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import OPERATOR, OUTSIDER, PAYER, RECIPIENT, VALIDATOR
from models import BridgeStatus
from services.bridge_service import BridgeService
from services.notification_service import NotificationService
from utils.exception_handler import (
    AuthorizationError,
    ExternalServiceError,
    InvalidStatus,
    ReconciliationRequired,
    ServiceUnavailable,
    UnsupportedChainError,
    UnsupportedTokenError,
    ValidationError,
)

CENT = Decimal("0.01")
XRPL_ADDRESS = "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH"


async def _initiate(container, **overrides):
    fields = dict(
        source_chain="polygon",
        destination_chain="arbitrum",
        token="USDC",
        amount="1000",
        source_address=PAYER,
        destination_address=RECIPIENT,
    )
    fields.update(overrides)
    return await container.bridge.initiate(**fields)


async def _validated(container):
    transaction = await _initiate(container)
    return await container.bridge.validate(transaction.transaction_id, VALIDATOR)


class TestInitiate:
    async def test_initiate_locks_source_funds(self, container, bridge_settlement):
        transaction = await _initiate(container)

        assert re.fullmatch(r"BRG_[0-9A-F]{16}", transaction.transaction_id)
        assert transaction.status == BridgeStatus.PENDING.value
        assert Decimal(str(transaction.fee_amount)) == Decimal("1")
        assert transaction.fee_bp == 10
        assert transaction.source_tx_hash
        assert bridge_settlement.movements_of("lock") == [("lock", "polygon", "USDC", PAYER, Decimal("1000"))]

    async def test_same_chain_rejected(self, container):
        with pytest.raises(ValidationError):
            await _initiate(container, destination_chain="polygon")

    async def test_token_must_exist_on_both_chains(self, container):
        with pytest.raises(UnsupportedTokenError):
            await _initiate(container, destination_chain="xrpl", destination_address=XRPL_ADDRESS)

    async def test_unknown_chain(self, container):
        with pytest.raises(UnsupportedChainError):
            await _initiate(container, destination_chain="solana")

    async def test_destination_address_must_match_chain_family(self, container):
        with pytest.raises(ValidationError):
            await _initiate(container, destination_address=XRPL_ADDRESS)

    @pytest.mark.parametrize("amount", ["0", "-1", "0.0000001", "1000000.01"])
    async def test_invalid_amounts(self, container, amount):
        with pytest.raises(ValidationError):
            await _initiate(container, amount=amount)

    async def test_paused_bridge_rejects_new_transfers(self, container):
        container.bridge.pause("incident")
        with pytest.raises(ServiceUnavailable):
            await _initiate(container)

        container.bridge.unpause()
        transaction = await _initiate(container)
        assert transaction.status == BridgeStatus.PENDING.value

    async def test_failed_lock_leaves_transaction_failed(self, container, bridge_settlement, sleeps):
        bridge_settlement.healthy = False

        with pytest.raises(ExternalServiceError):
            await _initiate(container)

        failed = container.bridge.list_transactions(status=BridgeStatus.FAILED.value)
        assert len(failed) == 1
        assert "lock" in failed[0].failure_reason
        assert sleeps.delays == [1.0, 2.0]


class TestValidateAndComplete:
    async def test_full_flow_pays_amount_less_fee_plus_yield(self, container, bridge_settlement, clock):
        """1000 USDC, 10bp fee, 4% destination APY, one day in transit"""
        transaction = await _validated(container)
        assert transaction.status == BridgeStatus.VALIDATED.value
        assert transaction.validator_address == VALIDATOR

        clock.advance(days=1)
        completed = await container.bridge.complete(transaction.transaction_id, OPERATOR, {"relay": "ok"})

        assert completed.status == BridgeStatus.COMPLETED.value
        assert Decimal(str(completed.applied_apy)).quantize(Decimal("0.0001")) == Decimal("0.04")
        payout = Decimal(str(completed.payout_amount)).quantize(Decimal("0.000001"))
        assert payout == Decimal("999.109589")
        assert payout.quantize(CENT) == Decimal("999.11")
        assert bridge_settlement.movements_of("settle") == [
            ("settle", "arbitrum", "USDC", RECIPIENT, Decimal("999.109589"))
        ]
        assert completed.completion_proof == {"relay": "ok"}

    async def test_validate_twice(self, container):
        transaction = await _validated(container)
        with pytest.raises(InvalidStatus):
            await container.bridge.validate(transaction.transaction_id, VALIDATOR)

    async def test_complete_requires_validation(self, container):
        transaction = await _initiate(container)
        with pytest.raises(InvalidStatus):
            await container.bridge.complete(transaction.transaction_id, OPERATOR)

    async def test_roles_are_enforced(self, container):
        transaction = await _initiate(container)
        with pytest.raises(AuthorizationError):
            await container.bridge.validate(transaction.transaction_id, OPERATOR)

        await container.bridge.validate(transaction.transaction_id, VALIDATOR)
        with pytest.raises(AuthorizationError):
            await container.bridge.complete(transaction.transaction_id, VALIDATOR)

    async def test_validator_address_case_insensitive(self, container):
        transaction = await _initiate(container)
        validated = await container.bridge.validate(transaction.transaction_id, VALIDATOR.upper().replace("0X", "0x"))
        assert validated.status == BridgeStatus.VALIDATED.value

    async def test_settlement_outage_keeps_transfer_validated(self, container, bridge_settlement):
        transaction = await _validated(container)
        bridge_settlement.fail_next(3)

        with pytest.raises(ExternalServiceError):
            await container.bridge.complete(transaction.transaction_id, OPERATOR)
        assert container.bridge.get_transaction(transaction.transaction_id).status == BridgeStatus.VALIDATED.value

        completed = await container.bridge.complete(transaction.transaction_id, OPERATOR)
        assert completed.status == BridgeStatus.COMPLETED.value

    async def test_unrecorded_settlement_opens_case(self, container):
        transaction = await _validated(container)
        db_down = OperationalError("UPDATE bridge_transactions", {}, Exception("db down"))

        with patch.object(container.bridge, "_compare_and_set", side_effect=db_down):
            with pytest.raises(ReconciliationRequired) as exc_info:
                await container.bridge.complete(transaction.transaction_id, OPERATOR)

        cases = container.reconciliation.cases_for(transaction.transaction_id)
        assert [c.case_id for c in cases] == [exc_info.value.case_id]
        assert cases[0].operation == "settle"


class TestRefund:
    async def test_sender_refunds_pending_transfer(self, container, bridge_settlement):
        transaction = await _initiate(container)

        refunded = await container.bridge.refund(transaction.transaction_id, PAYER, "changed destination")

        assert refunded.status == BridgeStatus.REFUNDED.value
        assert refunded.refund_reason == "changed destination"
        assert bridge_settlement.movements_of("refund") == [("refund", "polygon", "USDC", PAYER, Decimal("999.000000"))]

    async def test_operator_refunds_validated_transfer(self, container):
        transaction = await _validated(container)
        refunded = await container.bridge.refund(transaction.transaction_id, OPERATOR, "destination congested")
        assert refunded.status == BridgeStatus.REFUNDED.value

    async def test_outsider_cannot_refund(self, container):
        transaction = await _initiate(container)
        with pytest.raises(AuthorizationError):
            await container.bridge.refund(transaction.transaction_id, OUTSIDER, "mine now")

    async def test_reason_required(self, container):
        transaction = await _initiate(container)
        with pytest.raises(ValidationError):
            await container.bridge.refund(transaction.transaction_id, PAYER, " ")

    async def test_complete_and_refund_are_exclusive(self, container):
        completed = await _validated(container)
        await container.bridge.complete(completed.transaction_id, OPERATOR)
        with pytest.raises(InvalidStatus):
            await container.bridge.refund(completed.transaction_id, OPERATOR, "too late")

        refunded = await _validated(container)
        await container.bridge.refund(refunded.transaction_id, OPERATOR, "cancelled")
        with pytest.raises(InvalidStatus):
            await container.bridge.complete(refunded.transaction_id, OPERATOR)


class TestEstimatesAndStatus:
    def test_fee_and_time(self, container):
        assert container.bridge.estimate_fee("1000") == Decimal("1")
        # polygon 20 x 2s + arbitrum 1 x 1s + 30s settlement
        assert container.bridge.estimate_time("polygon", "arbitrum") == 71

    async def test_yield_estimate_uses_destination_apy(self, container):
        estimate = await container.bridge.estimate_yield("1000", "polygon", "arbitrum", seconds_in_transit=86400)
        assert estimate.quantize(CENT) == Decimal("0.11")

    async def test_yield_estimate_falls_back_to_default_apy(self, container, bridge_settlement):
        bridge_settlement.healthy = False
        estimate = await container.bridge.estimate_yield("1000", "polygon", "arbitrum", seconds_in_transit=86400)
        # Default 5%: 1000 * 0.05 / 365
        assert estimate.quantize(CENT) == Decimal("0.14")

    async def test_status_progress(self, container, clock):
        transaction = await _initiate(container)

        status = container.bridge.get_status(transaction.transaction_id)
        assert status["progress"] == 25
        assert status["can_refund"] is True
        assert status["estimated_seconds"] == 71

        await container.bridge.validate(transaction.transaction_id, VALIDATOR)
        await container.bridge.complete(transaction.transaction_id, OPERATOR)
        status = container.bridge.get_status(transaction.transaction_id)
        assert status["progress"] == 100
        assert status["can_refund"] is False


class TestRegistry:
    async def test_added_chain_and_token_are_bridgeable(self, container):
        container.bridge.add_supported_chain("optimism", chain_id=10, confirmations=1, block_time_ms=2000)
        container.bridge.add_supported_token("USDC", decimals=6, chains=["optimism"])

        transaction = await _initiate(container, destination_chain="optimism")

        assert transaction.destination_chain == "optimism"

    def test_removed_chain_is_unsupported(self, container):
        container.bridge.remove_supported_chain("base")
        with pytest.raises(UnsupportedChainError):
            container.bridge.estimate_time("polygon", "base")
        with pytest.raises(UnsupportedChainError):
            container.bridge.remove_supported_chain("base")

    async def test_removed_token_is_unsupported(self, container):
        container.bridge.remove_supported_token("USDC")
        with pytest.raises(UnsupportedTokenError):
            await _initiate(container)

    def test_token_on_unknown_chain(self, container):
        with pytest.raises(UnsupportedChainError):
            container.bridge.add_supported_token("USDT", decimals=6, chains=["solana"])

    def test_fee_above_maximum(self, resilience, bridge_settlement, container, session_factory):
        with pytest.raises(ValueError):
            BridgeService(
                resilience, bridge_settlement, NotificationService(webhook_url=""),
                container.reconciliation, session_factory, fee_bp=1001,
            )
