"""
Sale Statistics

Computes the global sale figures (amount raised, amount sold, capacity) from
chain state using a read-only RPC transport, independent of any wallet
connection, and the personal figures (payment balance, claimable amount, sale
end time) of a connected account.

Sold Amount Resolution (tried in this order, first hit wins):
1. accessor: the sale contract's totalSold() / tokensSold() / sold()
2. capacity_minus_balance: capacity minus the sale contract's sale-token
   balance, when a token address and a positive capacity are configured
3. raised_times_base_rate: amount raised times the base rate, only when a
   base rate is configured

When no strategy resolves, the sold amount is reported as unknown (None),
never as zero.
"""
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple

from mcp_evm_presale.errors import ChainCallError
from mcp_evm_presale.evm_utils import ChainReader, from_base_units
from mcp_evm_presale.pricing import format_decimal
from mcp_evm_presale.schemas import AccountSnapshot, SaleConfig, StatsSnapshot
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

SOLD_ACCESSORS: Tuple[str, ...] = ("totalSold", "tokensSold", "sold")
UNKNOWN = "unknown"

SoldStrategy = Callable[[SaleConfig, ChainReader, Decimal], Awaitable[Optional[Decimal]]]


async def _sold_from_accessors(config: SaleConfig, reader: ChainReader, raised: Decimal) -> Optional[Decimal]:
    for accessor in SOLD_ACCESSORS:
        try:
            value = await reader.optional_sold(config.sale_address, accessor)
        except (ChainCallError, ValueError) as e:
            logger.debug(f"Sold accessor {accessor}() unavailable: {e}")
            continue
        return from_base_units(value, config.token_decimals)
    return None


async def _sold_from_remaining_balance(config: SaleConfig, reader: ChainReader, raised: Decimal) -> Optional[Decimal]:
    capacity = Decimal(str(config.capacity))
    if not config.token_address or capacity <= 0:
        return None
    try:
        balance = await reader.balance_of(config.token_address, config.sale_address)
    except (ChainCallError, ValueError) as e:
        logger.debug(f"Sale token balance unavailable: {e}")
        return None
    return max(Decimal(0), capacity - from_base_units(balance, config.token_decimals))


async def _sold_from_raised(config: SaleConfig, reader: ChainReader, raised: Decimal) -> Optional[Decimal]:
    if config.base_rate is None:
        return None
    return raised * Decimal(str(config.base_rate))


SOLD_STRATEGIES: Tuple[Tuple[str, SoldStrategy], ...] = (
    ("accessor", _sold_from_accessors),
    ("capacity_minus_balance", _sold_from_remaining_balance),
    ("raised_times_base_rate", _sold_from_raised),
)


async def compute_stats(config: SaleConfig, reader: ChainReader) -> StatsSnapshot:
    """
    Computes a complete StatsSnapshot.

    Raises:
        ChainCallError: If the amount raised cannot be read.
    """
    raised_units = await reader.balance_of(config.payment_token_address, config.sale_address)
    raised = from_base_units(raised_units, config.payment_decimals)

    sold: Optional[Decimal] = None
    source: Optional[str] = None
    for name, strategy in SOLD_STRATEGIES:
        sold = await strategy(config, reader, raised)
        if sold is not None:
            source = name
            break

    if sold is None:
        logger.info("Sold amount could not be resolved by any strategy; reporting unknown.")

    return StatsSnapshot(
        amount_raised=raised,
        amount_sold=sold,
        capacity=Decimal(str(config.capacity)),
        sold_source=source,
        refreshed_at=time.time(),
    )


def describe_stats(snapshot: StatsSnapshot, config: SaleConfig) -> dict:
    """Formats a snapshot for the presentation layer."""
    sold = UNKNOWN if snapshot.amount_sold is None else f"{format_decimal(snapshot.amount_sold)} {config.token_symbol}"
    return {
        "raised": f"{format_decimal(snapshot.amount_raised)} {config.payment_symbol}",
        "sold": sold,
        "capacity": f"{format_decimal(snapshot.capacity)} {config.token_symbol}",
        "percent_sold": f"{snapshot.percent_sold:.2f}%",
        "sold_source": snapshot.sold_source or UNKNOWN,
    }


class StatsRefresher:
    """Holds the latest StatsSnapshot and replaces it wholesale on refresh."""

    def __init__(self, sale_config: SaleConfig, reader: ChainReader):
        self.config = sale_config
        self.reader = reader
        self._snapshot: Optional[StatsSnapshot] = None

    @property
    def snapshot(self) -> Optional[StatsSnapshot]:
        return self._snapshot

    async def refresh(self) -> Optional[StatsSnapshot]:
        """Recomputes the stats; on failure the previous snapshot is kept."""
        try:
            self._snapshot = await compute_stats(self.config, self.reader)
        except (ChainCallError, ValueError) as e:
            logger.warning(f"Stats refresh failed, keeping previous snapshot: {e}")
        return self._snapshot


async def fetch_account_snapshot(reader: ChainReader, config: SaleConfig, account: str) -> AccountSnapshot:
    """Reads the personal figures of `account` (payment balance, claimable, end time)."""
    balance = await reader.balance_of(config.payment_token_address, account)
    claimable = await reader.claimable(config.sale_address, account)
    end_time = await reader.end_time(config.sale_address)
    return AccountSnapshot(
        account=account,
        payment_balance=from_base_units(balance, config.payment_decimals),
        claimable=from_base_units(claimable, config.token_decimals),
        end_time=end_time,
        refreshed_at=time.time(),
    )
