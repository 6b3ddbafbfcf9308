"""
Wallet Connection Management

This module owns the link between a presale session and exactly one signing
wallet. A session connects either through an injected capability (a local
wallet that speaks EIP-1193 methods over JSON-RPC/HTTP) or through a remote
capability (a pairing session created by a backend registered under the
`mcp_evm_presale.remote_sessions` entry-point group).

Connection Lifecycle:
- disconnected -> connecting -> connected on a successful handshake
- connected -> disconnected on explicit disconnect, a provider `disconnect`
  event or an `accountsChanged` event with no accounts
- connected -> connected (in place) on `accountsChanged` / `chainChanged`,
  which re-derive the account and re-check the network without asking the
  wallet for authorization again
- connecting -> error when acquisition fails

Network Policy:
- A chain id mismatch does not fail the connection. The state is marked
  `is_correct_network=False` and require_signer() refuses to hand out a
  signing handle, which gates every mutating operation.
- Injected wallets are asked to switch (and, when the chain is unknown to
  them, to add) the configured chain; failures are logged only.

Listeners registered with subscribe() receive every new ConnectionState;
listeners registered with on_pairing_uri() receive remote pairing URIs.
"""
import asyncio
import inspect
import time
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, List, Optional, Set

from mcp_evm_presale import config
from mcp_evm_presale.errors import (
    CapabilityUnavailableError,
    ChainCallError,
    NetworkMismatchError,
    WalletConnectionError,
    error_message,
)
from mcp_evm_presale.evm_utils import ChainReader, ChainWriter, RpcTransport, accounts_from, parse_quantity
from mcp_evm_presale.schemas import Capability, ConnectionState, ConnectionStatus, SaleConfig
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

REMOTE_SESSION_ENTRY_POINT_GROUP = "mcp_evm_presale.remote_sessions"
UNRECOGNIZED_CHAIN_ERROR_CODE = 4902
MAX_WATCH_FAILURES = 3

StateListener = Callable[[ConnectionState], Any]
UriListener = Callable[[str], Any]


class EventEmitter:
    """Minimal on/remove_listener/emit registry, mirroring EIP-1193 providers."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            _dispatch(handler, *args)


# strong references to running handler tasks until they finish
_handler_tasks: Set[asyncio.Future] = set()


def _dispatch(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _handler_tasks.add(task)
        task.add_done_callback(_handler_tasks.discard)


class InjectedProvider(RpcTransport, EventEmitter):
    """
    A local signing wallet reached over JSON-RPC/HTTP.

    HTTP has no push channel, so account and chain changes are detected by
    polling eth_accounts / eth_chainId and re-emitted as `accountsChanged`,
    `chainChanged` and `disconnect` events.
    """

    def __init__(self, endpoint: str = config.WALLET_RPC_URL, watch_interval: float = config.WALLET_WATCH_INTERVAL,
                 **kwargs: Any):
        RpcTransport.__init__(self, endpoint, **kwargs)
        EventEmitter.__init__(self)
        self.watch_interval = watch_interval
        self._watch_task: Optional[asyncio.Task] = None
        self._last_accounts: Optional[List[str]] = None
        self._last_chain: Optional[int] = None

    async def probe(self) -> None:
        """Checks that the wallet endpoint answers at all."""
        try:
            await self.request("eth_chainId")
        except ChainCallError as e:
            raise CapabilityUnavailableError(
                f"No injected wallet found at {self.endpoint}. Use a remote (QR) session instead. ({e})"
            )

    def start_watching(self) -> None:
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.ensure_future(self._watch())

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _watch(self) -> None:
        failures = 0
        while True:
            try:
                accounts = accounts_from(await self.request("eth_accounts"))
                chain_id = parse_quantity(await self.request("eth_chainId"))
            except (ChainCallError, ValueError) as e:
                failures += 1
                logger.debug(f"Injected wallet poll failed ({failures}): {e}")
                if failures >= MAX_WATCH_FAILURES:
                    self.emit("disconnect", {"message": str(e)})
                    return
            else:
                failures = 0
                if self._last_accounts is not None and accounts != self._last_accounts:
                    self.emit("accountsChanged", accounts)
                if self._last_chain is not None and chain_id != self._last_chain:
                    self.emit("chainChanged", hex(chain_id))
                self._last_accounts = accounts
                self._last_chain = chain_id
            await asyncio.sleep(self.watch_interval)


def find_remote_session_factory() -> Optional[Callable[..., Any]]:
    """Returns the first installed remote session backend, if any."""
    for entry_point in entry_points(group=REMOTE_SESSION_ENTRY_POINT_GROUP):
        try:
            return entry_point.load()
        except Exception as e:
            logger.warning(f"Failed to load remote session backend '{entry_point.name}': {e}")
    return None


async def wait_for_capability(lookup: Callable[[], Optional[Any]], timeout: float, interval: float = 0.25,
                              description: str = "capability") -> Any:
    """
    Polls `lookup` until it returns a value or `timeout` seconds have passed.

    Raises:
        CapabilityUnavailableError: If nothing was found before the deadline.
    """
    deadline = time.monotonic() + timeout
    while True:
        found = lookup()
        if found is not None:
            return found
        if time.monotonic() >= deadline:
            raise CapabilityUnavailableError(f"{description} not available after {timeout:g}s")
        await asyncio.sleep(interval)


@dataclass(frozen=True)
class SigningHandle:
    """The authenticated account of a connected, correctly networked wallet."""

    provider: Any
    account: str

    @property
    def reader(self) -> ChainReader:
        return ChainReader(self.provider)

    @property
    def writer(self) -> ChainWriter:
        return ChainWriter(self.provider, self.account)


class ConnectionManager:
    """Owns the ConnectionState of one session and the provider behind it."""

    def __init__(
        self,
        sale_config: SaleConfig,
        injected_factory: Optional[Callable[[], Any]] = None,
        remote_lookup: Callable[[], Optional[Callable[..., Any]]] = find_remote_session_factory,
        remote_timeout: float = config.REMOTE_CAPABILITY_TIMEOUT,
        walletconnect_project_id: Optional[str] = config.WALLETCONNECT_PROJECT_ID,
    ):
        self.config = sale_config
        self._injected_factory = injected_factory or InjectedProvider
        self._remote_lookup = remote_lookup
        self._remote_timeout = remote_timeout
        self._project_id = sale_config.walletconnect_project_id or walletconnect_project_id
        self._state = ConnectionState()
        self._provider: Any = None
        self._remote_session: Any = None
        self._state_listeners: List[StateListener] = []
        self._uri_listeners: List[UriListener] = []
        self._subscriptions: List[tuple] = []

    # --- State & notifications ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.status == ConnectionStatus.connected

    def subscribe(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_pairing_uri(self, listener: UriListener) -> None:
        self._uri_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        logger.debug(f"Connection state: {state.status.value} account={state.account} chain={state.chain_id}")
        for listener in list(self._state_listeners):
            try:
                _dispatch(listener, state)
            except Exception:
                logger.exception("Connection state listener failed")

    def require_signer(self) -> SigningHandle:
        """
        Returns the signing handle for mutating operations.

        Raises:
            WalletConnectionError: If no wallet is connected.
            NetworkMismatchError: If the wallet is on the wrong chain.
        """
        state = self._state
        if state.status != ConnectionStatus.connected or not state.account or self._provider is None:
            raise WalletConnectionError("Connect a wallet first.")
        if not state.is_correct_network:
            raise NetworkMismatchError(
                f"Wrong network. Switch your wallet to {self.config.chain_name} "
                f"(chainId {self.config.chain_id}); current chainId is {state.chain_id}."
            )
        return SigningHandle(self._provider, state.account)

    # --- Connect / disconnect ---

    async def connect(self, capability: Capability) -> ConnectionState:
        """
        Connects through the given capability.

        Raises:
            CapabilityUnavailableError: If the capability is not installed/reachable.
            WalletConnectionError: If the handshake fails or required settings are missing.
        """
        if self.is_connected:
            await self.disconnect()

        self._set_state(ConnectionState(status=ConnectionStatus.connecting, capability=capability))
        try:
            if capability == Capability.injected:
                provider = await self._acquire_injected()
            else:
                provider = await self._acquire_remote()
            try:
                await self._attach(provider, capability)
            except Exception:
                await self._discard(provider)
                raise
        except (CapabilityUnavailableError, WalletConnectionError) as e:
            self._set_state(ConnectionState(status=ConnectionStatus.error, capability=capability, error=error_message(e)))
            raise
        except Exception as e:
            logger.error(f"Wallet connection via {capability.value} failed: {e}")
            self._set_state(ConnectionState(status=ConnectionStatus.error, capability=capability, error=error_message(e)))
            raise WalletConnectionError(error_message(e)) from e
        return self._state

    async def connect_auto(self) -> ConnectionState:
        """Connects through the injected wallet, falling back to a remote session."""
        try:
            return await self.connect(Capability.injected)
        except CapabilityUnavailableError as e:
            logger.info(f"Injected wallet unavailable, falling back to remote session: {e}")
            return await self.connect(Capability.remote)

    async def disconnect(self) -> ConnectionState:
        await self._teardown()
        self._set_state(ConnectionState())
        return self._state

    async def _acquire_injected(self) -> Any:
        provider = self._injected_factory()
        probe = getattr(provider, "probe", None)
        if probe is not None:
            try:
                await probe()
            except Exception:
                await self._discard(provider)
                raise
        return provider

    async def _discard(self, provider: Any) -> None:
        """Closes a provider this manager created; the remote session is kept for reuse."""
        if provider is not self._remote_session and hasattr(provider, "aclose"):
            await provider.aclose()

    async def _acquire_remote(self) -> Any:
        missing = []
        if not self.config.rpc_url:
            missing.append("rpc_url")
        if not self._project_id:
            missing.append("walletconnect_project_id")
        if missing:
            raise WalletConnectionError(f"Remote session requires {', '.join(missing)} in the sale config.")

        if self._remote_session is None:
            factory = await wait_for_capability(
                self._remote_lookup, self._remote_timeout, description="Remote session backend"
            )
            self._remote_session = factory(
                rpc={self.config.chain_id: self.config.rpc_url},
                chain_id=self.config.chain_id,
                project_id=self._project_id,
            )
            self._remote_session.on("display_uri", self._forward_uri)
            logger.info("Remote session created")

        # waits for the wallet to approve the pairing and pick an account/chain
        await self._remote_session.enable()
        return self._remote_session

    def _forward_uri(self, uri: str) -> None:
        logger.info("Remote pairing URI received.")
        for listener in list(self._uri_listeners):
            try:
                _dispatch(listener, uri)
            except Exception:
                logger.exception("Pairing URI listener failed")

    async def _attach(self, provider: Any, capability: Capability) -> None:
        try:
            await provider.request("eth_requestAccounts")
        except ChainCallError as e:
            logger.debug(f"eth_requestAccounts failed, reading authorized accounts instead: {e}")

        accounts = accounts_from(await provider.request("eth_accounts"))
        if not accounts:
            raise WalletConnectionError("Wallet did not authorize any account.")

        chain_id = parse_quantity(await provider.request("eth_chainId"))
        if chain_id != self.config.chain_id and capability == Capability.injected:
            chain_id = await self._try_switch_chain(provider, chain_id)

        self._provider = provider
        self._subscribe(provider)
        self._set_state(
            ConnectionState(
                status=ConnectionStatus.connected,
                capability=capability,
                account=accounts[0],
                chain_id=chain_id,
                is_correct_network=chain_id == self.config.chain_id,
            )
        )
        if chain_id != self.config.chain_id:
            logger.warning(f"Network mismatch. Expected {self.config.chain_id}, got {chain_id}.")
        logger.info(f"Connected: {accounts[0]} via {capability.value}")

    async def _try_switch_chain(self, provider: Any, current_chain: int) -> int:
        wanted = hex(self.config.chain_id)
        try:
            await provider.request("wallet_switchEthereumChain", [{"chainId": wanted}])
        except ChainCallError as e:
            if e.code != UNRECOGNIZED_CHAIN_ERROR_CODE or not self.config.rpc_url:
                logger.warning(f"Chain switch to {self.config.chain_id} failed: {error_message(e)}")
                return current_chain
            try:
                await provider.request("wallet_addEthereumChain", [{
                    "chainId": wanted,
                    "chainName": self.config.chain_name,
                    "rpcUrls": [self.config.rpc_url],
                    "blockExplorerUrls": [self.config.explorer_base],
                }])
            except ChainCallError as add_error:
                logger.warning(f"Adding chain {self.config.chain_id} failed: {error_message(add_error)}")
                return current_chain
        try:
            return parse_quantity(await provider.request("eth_chainId"))
        except ChainCallError as e:
            logger.warning(f"Could not re-read chain id after switch: {e}")
            return current_chain

    # --- Provider events ---

    def _subscribe(self, provider: Any) -> None:
        handlers = (
            ("accountsChanged", self._on_accounts_changed),
            ("chainChanged", self._on_chain_changed),
            ("disconnect", self._on_disconnect),
        )
        for event, handler in handlers:
            provider.on(event, handler)
            self._subscriptions.append((event, handler))
        start_watching = getattr(provider, "start_watching", None)
        if start_watching is not None:
            start_watching()

    async def _teardown(self) -> None:
        provider, self._provider = self._provider, None
        if provider is None:
            return
        for event, handler in self._subscriptions:
            provider.remove_listener(event, handler)
        self._subscriptions = []
        stop_watching = getattr(provider, "stop_watching", None)
        if stop_watching is not None:
            await stop_watching()
        await self._discard(provider)

    async def _on_accounts_changed(self, accounts: Any) -> None:
        accounts = accounts_from(accounts)
        if not accounts:
            logger.info("Wallet reported no accounts, disconnecting.")
            await self.disconnect()
            return
        if self._provider is None:
            return
        await self._reconcile(account=accounts[0])

    async def _on_chain_changed(self, chain_id: Any) -> None:
        if self._provider is None:
            return
        await self._reconcile(account=self._state.account)

    async def _on_disconnect(self, *args: Any) -> None:
        logger.info("Wallet provider disconnected.")
        await self.disconnect()

    async def _reconcile(self, account: Optional[str]) -> None:
        try:
            chain_id = parse_quantity(await self._provider.request("eth_chainId"))
        except (ChainCallError, ValueError) as e:
            logger.warning(f"Network re-check failed: {e}")
            return
        if chain_id != self.config.chain_id:
            logger.warning(f"Network mismatch. Expected {self.config.chain_id}, got {chain_id}.")
        self._set_state(
            self._state.model_copy(
                update={"account": account, "chain_id": chain_id, "is_correct_network": chain_id == self.config.chain_id}
            )
        )

    async def aclose(self) -> None:
        await self.disconnect()
        if self._remote_session is not None and hasattr(self._remote_session, "aclose"):
            await self._remote_session.aclose()
