from decimal import Decimal

import pytest
from eth_utils import to_checksum_address

from fakes import ONE, TOKEN, USER, VAULT, FakeWallet, address_word, string_result, word
from mcp_evm_presale.errors import ConfigurationError
from mcp_evm_presale.evm_utils import ChainReader
from mcp_evm_presale.vesting import fetch_vesting_snapshot, get_vault


def vault_chain():
    chain = FakeWallet()
    chain.set_call("token()", address_word(TOKEN), to=VAULT)
    chain.set_call("beneficiary()", address_word(USER), to=VAULT)
    chain.set_call("start()", word(1_700_000_000), to=VAULT)
    chain.set_call("cliffTime()", word(1_702_592_000), to=VAULT)
    chain.set_call("endTime()", word(1_731_536_000), to=VAULT)
    chain.set_call("duration()", word(365 * 86400), to=VAULT)
    chain.set_call("released()", word(100 * ONE), to=VAULT)
    chain.set_call("releasable()", word(50 * ONE), to=VAULT)
    chain.set_call("decimals()", word(18), to=TOKEN)
    chain.set_call("symbol()", string_result("PRE"), to=TOKEN)
    chain.set_call("balanceOf(address)", word(900 * ONE), to=TOKEN)
    return chain


@pytest.mark.asyncio
async def test_vesting_snapshot(sale_config):
    snapshot = await fetch_vesting_snapshot(ChainReader(vault_chain()), sale_config, "Team")

    assert snapshot.bucket == "team"
    assert snapshot.label == "Team vault"
    assert snapshot.token == TOKEN
    assert snapshot.beneficiary == to_checksum_address(USER)
    assert snapshot.symbol == "PRE"
    assert snapshot.duration_days == 365
    assert snapshot.released == Decimal(100)
    assert snapshot.releasable == Decimal(50)
    assert snapshot.vault_balance == Decimal(900)


@pytest.mark.asyncio
async def test_vesting_snapshot_tolerates_non_standard_token(sale_config):
    chain = vault_chain()
    del chain.calls[(TOKEN, "95d89b41")]
    del chain.calls[(TOKEN, "313ce567")]

    snapshot = await fetch_vesting_snapshot(ChainReader(chain), sale_config, "team")

    assert snapshot.symbol == "TOKEN"
    assert snapshot.decimals == 18


def test_unknown_bucket(sale_config):
    with pytest.raises(ConfigurationError, match='Vesting bucket "advisors" is not configured'):
        get_vault(sale_config, "advisors")
