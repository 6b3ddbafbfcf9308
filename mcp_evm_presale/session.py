"""
Presale Session

A PresaleSession owns everything one user session needs: the immutable sale
config, the read-only RPC transport, the ConnectionManager, the
TransactionCoordinator, the StatsRefresher, the latest personal figures and
the activity log. Nothing here is shared between sessions.

Timers (asyncio tasks started by start()):
- phase tick (PHASE_TICK_SECONDS, ~1 Hz): renders the phase board and hands
  it to the registered phase listeners; pure local computation
- refresh tick (REFRESH_INTERVAL_SECONDS, ~0.1 Hz): refreshes the global
  stats and, when a wallet is connected, the personal figures

Exceptions escaping a timer or a fire-and-forget callback are captured by the
loop exception handler installed in start() and logged.
"""
import asyncio
import time
from typing import Any, Callable, List, Optional

from mcp_evm_presale import config
from mcp_evm_presale.errors import ChainCallError, NetworkMismatchError, WalletConnectionError, error_message
from mcp_evm_presale.evm_utils import ChainReader, RpcTransport
from mcp_evm_presale.phases import render_phase_board
from mcp_evm_presale.pricing import estimate_output
from mcp_evm_presale.schemas import AccountSnapshot, ConnectionState, PhaseBoard, SaleConfig, VestingSnapshot
from mcp_evm_presale.stats import StatsRefresher, fetch_account_snapshot
from mcp_evm_presale.transactions import TransactionCoordinator
from mcp_evm_presale.utils import ActivityLog
from mcp_evm_presale.vesting import fetch_vesting_snapshot
from mcp_evm_presale.wallet import ConnectionManager
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

PhaseListener = Callable[[PhaseBoard], Any]


class PresaleSession:
    def __init__(
        self,
        sale_config: SaleConfig,
        read_transport: Optional[Any] = None,
        connection: Optional[ConnectionManager] = None,
        clock: Callable[[], float] = time.time,
        phase_tick: float = config.PHASE_TICK_SECONDS,
        refresh_interval: float = config.REFRESH_INTERVAL_SECONDS,
    ):
        self.config = sale_config
        self.clock = clock
        self.phase_tick = phase_tick
        self.refresh_interval = refresh_interval
        self.activity = ActivityLog()

        if read_transport is None and sale_config.rpc_url:
            read_transport = RpcTransport(sale_config.rpc_url)
        self._read_transport = read_transport
        self.reader: Optional[ChainReader] = ChainReader(read_transport) if read_transport is not None else None
        self.stats: Optional[StatsRefresher] = StatsRefresher(sale_config, self.reader) if self.reader else None

        self.connection = connection or ConnectionManager(sale_config)
        self.connection.subscribe(self._on_connection_state)
        self.connection.on_pairing_uri(lambda uri: self.activity(f"Pairing URI: {uri}"))
        self.coordinator = TransactionCoordinator(
            sale_config, self.connection, on_confirmed=self.refresh_all, activity=self.activity
        )

        self.account: Optional[AccountSnapshot] = None
        self._phase_listeners: List[PhaseListener] = []
        self._tasks: List[asyncio.Task] = []

    # --- Presentation inputs ---

    def on_phase_tick(self, listener: PhaseListener) -> None:
        self._phase_listeners.append(listener)

    def phase_board(self) -> PhaseBoard:
        return render_phase_board(self.config, self.clock())

    def estimate(self, amount_text: str) -> str:
        return estimate_output(amount_text, self.config, self.clock())

    # --- Refresh ---

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state.account is None:
            self.account = None
        elif self.account is not None and self.account.account != state.account:
            self.account = None

    async def refresh_account(self) -> Optional[AccountSnapshot]:
        state = self.connection.state
        if not self.connection.is_connected or not state.account:
            self.account = None
            return None
        try:
            handle = self.connection.require_signer()
            self.account = await fetch_account_snapshot(handle.reader, self.config, handle.account)
        except (ChainCallError, ValueError) as e:
            self.activity(f"Refresh error: {error_message(e)}")
        except (NetworkMismatchError, WalletConnectionError) as e:
            # wrong network: personal figures are not meaningful
            logger.debug(f"Account refresh skipped: {e}")
        return self.account

    async def refresh_stats(self):
        if self.stats is None:
            logger.debug("No rpc_url configured; stats refresh skipped")
            return None
        return await self.stats.refresh()

    async def refresh_all(self) -> None:
        await self.refresh_account()
        await self.refresh_stats()

    async def vesting(self, bucket: str) -> VestingSnapshot:
        if self.reader is None:
            raise ChainCallError("rpc_url is not configured; vesting data is unavailable")
        return await fetch_vesting_snapshot(self.reader, self.config, bucket)

    # --- Timers ---

    async def _phase_loop(self) -> None:
        while True:
            board = self.phase_board()
            for listener in list(self._phase_listeners):
                try:
                    listener(board)
                except Exception:
                    logger.exception("Phase listener failed")
            await asyncio.sleep(self.phase_tick)

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh_all()
            except Exception:
                logger.exception("Refresh tick failed")
            await asyncio.sleep(self.refresh_interval)

    @staticmethod
    def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        error = context.get("exception")
        message = context.get("message", "Unhandled error")
        if error is not None:
            logger.error(f"{message}: {error_message(error)}", exc_info=error)
        else:
            logger.error(message)

    async def start(self) -> None:
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_exception)
        self._tasks = [
            asyncio.create_task(self._phase_loop(), name="phase-tick"),
            asyncio.create_task(self._refresh_loop(), name="stats-refresh"),
        ]
        self.activity("App loaded.")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.connection.aclose()
        if self._read_transport is not None and hasattr(self._read_transport, "aclose"):
            await self._read_transport.aclose()
