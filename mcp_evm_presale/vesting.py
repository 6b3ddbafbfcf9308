"""
Vesting Vault Viewer

Reads the public state of a token vesting vault configured under
`vesting_vaults.<bucket>` in the sale config (team, advisors, ...). The vault
is read through the read-only RPC transport, so its schedule is visible
before any wallet is connected. Releasing vested tokens is a mutating
operation and goes through the TransactionCoordinator, which only lets the
vault's beneficiary submit it.
"""
from mcp_evm_presale.errors import ChainCallError, ConfigurationError
from mcp_evm_presale.evm_utils import ChainReader, from_base_units
from mcp_evm_presale.schemas import SaleConfig, VestingSnapshot, VestingVaultDef
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BUCKET = "team"
DEFAULT_DECIMALS = 18
DEFAULT_SYMBOL = "TOKEN"


def get_vault(config: SaleConfig, bucket: str) -> VestingVaultDef:
    """
    Looks up a vault definition by bucket name (case-insensitive).

    Raises:
        ConfigurationError: If the bucket is unknown or has no address.
    """
    key = (bucket or DEFAULT_BUCKET).lower()
    vault = config.vesting_vaults.get(key)
    if vault is None or not vault.address:
        raise ConfigurationError(f'Vesting bucket "{key}" is not configured. Set vesting_vaults.{key}.address.')
    return vault


async def fetch_vesting_snapshot(reader: ChainReader, config: SaleConfig, bucket: str) -> VestingSnapshot:
    """Reads the schedule and balances of a vesting vault."""
    key = (bucket or DEFAULT_BUCKET).lower()
    vault = get_vault(config, key)
    address = vault.address

    token = await reader.call_address(address, "token()")
    beneficiary = await reader.call_address(address, "beneficiary()")
    start = await reader.call_uint(address, "start()")
    cliff = await reader.call_uint(address, "cliffTime()")
    end = await reader.call_uint(address, "endTime()")
    duration = await reader.call_uint(address, "duration()")
    released = await reader.call_uint(address, "released()")
    releasable = await reader.call_uint(address, "releasable()")

    decimals = DEFAULT_DECIMALS
    symbol = DEFAULT_SYMBOL
    try:
        decimals = await reader.decimals(token)
    except (ChainCallError, ValueError) as e:
        logger.debug(f"decimals() unavailable on {token}: {e}")
    try:
        symbol = await reader.symbol(token)
    except (ChainCallError, ValueError) as e:
        logger.debug(f"symbol() unavailable on {token}: {e}")

    vault_balance = 0
    try:
        vault_balance = await reader.balance_of(token, address)
    except (ChainCallError, ValueError) as e:
        logger.warning(f"Vault balance unavailable for {address}: {e}")

    return VestingSnapshot(
        bucket=key,
        label=vault.label or f"Vault: {key}",
        vault=address,
        token=token,
        symbol=symbol,
        decimals=decimals,
        beneficiary=beneficiary,
        start=start,
        cliff=cliff,
        end=end,
        duration_days=duration / 86400,
        released=from_base_units(released, decimals),
        releasable=from_base_units(releasable, decimals),
        vault_balance=from_base_units(vault_balance, decimals),
    )
