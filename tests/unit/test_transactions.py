import asyncio
from unittest.mock import AsyncMock

import pytest

from fakes import ONE, SALE, USER, VAULT, FakeWallet, address_word, sale_config_data, settle, word
from mcp_evm_presale.errors import ChainCallError, error_message
from mcp_evm_presale.evm_utils import MAX_UINT256, selector
from mcp_evm_presale.sale_manager import parse_sale_config
from mcp_evm_presale.schemas import Capability, OperationKind, OperationStatus
from mcp_evm_presale.transactions import TransactionCoordinator
from mcp_evm_presale.wallet import ConnectionManager

BUY = selector("buy(uint256)")
APPROVE = selector("approve(address,uint256)")


async def connected_coordinator(sale_config, wallet):
    manager = ConnectionManager(sale_config, injected_factory=lambda: wallet)
    await manager.connect(Capability.injected)
    return TransactionCoordinator(sale_config, manager, on_confirmed=AsyncMock())


@pytest.mark.asyncio
async def test_buy_with_sufficient_allowance(sale_config, wallet):
    wallet.set_call("allowance(address,address)", word(100 * ONE))
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.buy("100")

    assert result.operation == OperationKind.buy
    assert result.status == OperationStatus.confirmed
    assert result.tx_hash is not None
    assert wallet.sent == [{"from": USER, "to": SALE, "data": "0x" + BUY + f"{100 * ONE:064x}"}]
    coordinator.on_confirmed.assert_awaited_once()
    log = coordinator.activity.entries()
    assert log[0].endswith("Buy confirmed.")
    assert log[1].endswith(f"Buy tx: {result.tx_hash}")


@pytest.mark.asyncio
async def test_buy_with_insufficient_allowance_is_refused_locally(sale_config, wallet):
    wallet.set_call("allowance(address,address)", word(99 * ONE))
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.buy("100")

    assert result.status == OperationStatus.rejected
    assert result.message == "Allowance too low. Click Approve first."
    assert wallet.sent == []
    coordinator.on_confirmed.assert_not_awaited()


@pytest.mark.asyncio
async def test_approve_skips_when_allowance_is_sufficient(sale_config, wallet):
    wallet.set_call("allowance(address,address)", word(MAX_UINT256))
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.approve("1,000")

    assert result.status == OperationStatus.skipped
    assert result.message == "Allowance already sufficient."
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_approve_exact_amount(sale_config, wallet):
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.approve("250.5")

    assert result.status == OperationStatus.confirmed
    expected = "0x" + APPROVE + address_word(SALE)[2:] + f"{2505 * ONE // 10:064x}"
    assert wallet.sent[0]["data"] == expected


@pytest.mark.asyncio
async def test_approve_unlimited_amount(wallet):
    config = parse_sale_config(sale_config_data(approve_unlimited=True))
    coordinator = await connected_coordinator(config, wallet)

    result = await coordinator.approve("1")

    assert result.status == OperationStatus.confirmed
    assert wallet.sent[0]["data"].endswith("f" * 64)


@pytest.mark.asyncio
async def test_second_operation_while_pending_is_answered_busy(sale_config, wallet):
    wallet.set_call("allowance(address,address)", word(100 * ONE))
    wallet.send_gate = asyncio.Event()
    coordinator = await connected_coordinator(sale_config, wallet)

    first = asyncio.create_task(coordinator.buy("100"))
    await settle()
    assert coordinator.busy
    assert coordinator.pending.kind == OperationKind.buy

    second = await coordinator.buy("100")
    third = await coordinator.claim()

    assert second.status == OperationStatus.busy
    assert third.status == OperationStatus.busy
    assert len(wallet.sent) == 1

    wallet.send_gate.set()
    result = await first
    assert result.status == OperationStatus.confirmed
    assert not coordinator.busy
    assert len(wallet.sent) == 1


@pytest.mark.asyncio
async def test_wrong_network_rejects_every_operation(sale_config):
    wallet = FakeWallet(chain_id=1)
    wallet.switch_error = ChainCallError("User rejected the request.", code=4001)
    coordinator = await connected_coordinator(sale_config, wallet)

    for result in (await coordinator.buy("1"), await coordinator.claim(), await coordinator.finalize()):
        assert result.status == OperationStatus.rejected
        assert result.message.startswith("Wrong network.")
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_operations_require_a_connected_wallet(sale_config):
    coordinator = TransactionCoordinator(sale_config, ConnectionManager(sale_config))

    result = await coordinator.claim()

    assert result.status == OperationStatus.rejected
    assert result.message == "Connect a wallet first."
    assert not coordinator.busy


@pytest.mark.asyncio
async def test_finalize_is_gated_by_the_contract(sale_config, wallet):
    wallet.set_call("canFinalizeNow()", word(0))
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.finalize()

    assert result.status == OperationStatus.rejected
    assert result.message == "Cannot finalize yet (time not ended / not sold out)."
    assert wallet.sent == []

    wallet.set_call("canFinalizeNow()", word(1))
    assert (await coordinator.finalize()).status == OperationStatus.confirmed
    assert wallet.sent_selectors() == [selector("finalize()")]


@pytest.mark.asyncio
async def test_reverted_transaction_fails_and_releases_busy_slot(sale_config, wallet):
    wallet.receipt_status = "0x0"
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.claim()

    assert result.status == OperationStatus.failed
    assert result.message == "transaction reverted"
    assert result.tx_hash is not None
    assert not coordinator.busy
    coordinator.on_confirmed.assert_not_awaited()
    assert coordinator.activity.entries()[0].endswith("Claim error: transaction reverted")


@pytest.mark.asyncio
async def test_wallet_rejection_is_reported(sale_config, wallet):
    wallet.send_error = ChainCallError("User rejected the request.", code=4001)
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.claim()

    assert result.status == OperationStatus.failed
    assert result.message == "User rejected the request."
    assert not coordinator.busy


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["", "abc", "-3", "0.0000000000000000001"])
async def test_invalid_amounts_are_rejected_without_a_call(sale_config, wallet, amount):
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.buy(amount)

    assert result.status == OperationStatus.rejected
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_release_vesting_as_beneficiary(sale_config, wallet):
    wallet.set_call("beneficiary()", address_word(USER), to=VAULT)
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.release_vesting("team")

    assert result.status == OperationStatus.confirmed
    assert wallet.sent[0]["to"] == VAULT
    assert wallet.sent_selectors() == [selector("release()")]


@pytest.mark.asyncio
async def test_release_vesting_refused_for_other_accounts(sale_config, wallet):
    wallet.set_call("beneficiary()", address_word("0x" + "cd" * 20), to=VAULT)
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.release_vesting("team")

    assert result.status == OperationStatus.rejected
    assert result.message.startswith("Only the beneficiary")
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_release_vesting_unknown_bucket(sale_config, wallet):
    coordinator = await connected_coordinator(sale_config, wallet)

    result = await coordinator.release_vesting("advisors")

    assert result.status == OperationStatus.rejected
    assert 'Vesting bucket "advisors" is not configured' in result.message


def test_error_message_fallback_order():
    assert error_message(ChainCallError("internal JSON-RPC error", short_message="execution reverted: paused")) \
        == "execution reverted: paused"
    assert error_message(ChainCallError("User rejected the request.")) == "User rejected the request."
    assert error_message(RuntimeError("boom")) == "boom"
    assert error_message(RuntimeError()) == "RuntimeError"
