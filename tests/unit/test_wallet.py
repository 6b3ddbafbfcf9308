import asyncio
import json

import httpx
import pytest

from fakes import CHAIN_ID, OTHER_USER, USER, FakeRemoteSession, FakeWallet, sale_config_data, settle
from mcp_evm_presale import wallet as wallet_module
from mcp_evm_presale.errors import CapabilityUnavailableError, ChainCallError, NetworkMismatchError, WalletConnectionError
from mcp_evm_presale.sale_manager import parse_sale_config
from mcp_evm_presale.schemas import Capability, ConnectionStatus
from mcp_evm_presale.wallet import ConnectionManager, EventEmitter, InjectedProvider, wait_for_capability


def make_manager(sale_config, wallet=None, **kwargs):
    return ConnectionManager(sale_config, injected_factory=lambda: wallet, **kwargs)


@pytest.mark.asyncio
async def test_connect_injected(sale_config, wallet):
    manager = make_manager(sale_config, wallet)
    states = []
    manager.subscribe(states.append)

    state = await manager.connect(Capability.injected)

    assert state.status == ConnectionStatus.connected
    assert state.capability == Capability.injected
    assert state.account == USER
    assert state.chain_id == CHAIN_ID
    assert state.is_correct_network
    assert [s.status for s in states] == [ConnectionStatus.connecting, ConnectionStatus.connected]
    assert manager.require_signer().account == USER


@pytest.mark.asyncio
async def test_connect_switches_injected_wallet_to_configured_chain(sale_config):
    wallet = FakeWallet(chain_id=1)
    manager = make_manager(sale_config, wallet)

    state = await manager.connect(Capability.injected)

    assert "wallet_switchEthereumChain" in wallet.requests
    assert state.chain_id == CHAIN_ID
    assert state.is_correct_network


@pytest.mark.asyncio
async def test_unknown_chain_is_added_then_used(sale_config):
    wallet = FakeWallet(chain_id=1)
    wallet.switch_error = ChainCallError("Unrecognized chain ID", code=4902)
    manager = make_manager(sale_config, wallet)

    state = await manager.connect(Capability.injected)

    assert "wallet_addEthereumChain" in wallet.requests
    assert state.is_correct_network


@pytest.mark.asyncio
async def test_network_mismatch_keeps_connection_but_gates_signing(sale_config):
    wallet = FakeWallet(chain_id=1)
    wallet.switch_error = ChainCallError("User rejected the request.", code=4001)
    manager = make_manager(sale_config, wallet)

    state = await manager.connect(Capability.injected)

    assert state.status == ConnectionStatus.connected
    assert state.chain_id == 1
    assert not state.is_correct_network
    with pytest.raises(NetworkMismatchError, match="Wrong network"):
        manager.require_signer()


@pytest.mark.asyncio
async def test_wallet_without_accounts_fails_connection(sale_config):
    manager = make_manager(sale_config, FakeWallet(accounts=[]))

    with pytest.raises(WalletConnectionError):
        await manager.connect(Capability.injected)

    assert manager.state.status == ConnectionStatus.error
    assert manager.state.error == "Wallet did not authorize any account."


@pytest.mark.asyncio
async def test_require_signer_without_connection(sale_config):
    manager = make_manager(sale_config)

    with pytest.raises(WalletConnectionError, match="Connect a wallet first."):
        manager.require_signer()


@pytest.mark.asyncio
async def test_empty_accounts_changed_disconnects(sale_config, wallet):
    manager = make_manager(sale_config, wallet)
    await manager.connect(Capability.injected)

    wallet.emit("accountsChanged", [])
    await settle()

    assert manager.state.status == ConnectionStatus.disconnected
    assert manager.state.account is None
    assert wallet.listeners["accountsChanged"] == []


@pytest.mark.asyncio
async def test_accounts_changed_switches_account_in_place(sale_config, wallet):
    manager = make_manager(sale_config, wallet)
    await manager.connect(Capability.injected)

    wallet.emit("accountsChanged", [OTHER_USER])
    await settle()

    assert manager.state.status == ConnectionStatus.connected
    assert manager.state.account == OTHER_USER
    assert wallet.requests.count("eth_requestAccounts") == 1


@pytest.mark.asyncio
async def test_chain_changed_rechecks_network(sale_config, wallet):
    manager = make_manager(sale_config, wallet)
    await manager.connect(Capability.injected)

    wallet.chain_id = 1
    wallet.emit("chainChanged", "0x1")
    await settle()

    assert manager.state.chain_id == 1
    assert not manager.state.is_correct_network
    with pytest.raises(NetworkMismatchError):
        manager.require_signer()

    wallet.chain_id = CHAIN_ID
    wallet.emit("chainChanged", hex(CHAIN_ID))
    await settle()

    assert manager.state.is_correct_network


@pytest.mark.asyncio
async def test_provider_disconnect_event(sale_config, wallet):
    manager = make_manager(sale_config, wallet)
    await manager.connect(Capability.injected)

    wallet.emit("disconnect", {"message": "closed"})
    await settle()

    assert manager.state.status == ConnectionStatus.disconnected


@pytest.mark.asyncio
async def test_remote_session_requires_rpc_url_and_project_id():
    config = parse_sale_config(sale_config_data(rpc_url=None))
    manager = ConnectionManager(config, walletconnect_project_id=None, remote_lookup=lambda: None)

    with pytest.raises(WalletConnectionError) as exc_info:
        await manager.connect(Capability.remote)

    assert "rpc_url" in str(exc_info.value)
    assert "walletconnect_project_id" in str(exc_info.value)
    assert manager.state.status == ConnectionStatus.error


@pytest.mark.asyncio
async def test_remote_session_is_created_once_and_forwards_pairing_uri():
    config = parse_sale_config(sale_config_data(walletconnect_project_id="project-123"))
    sessions = []

    def factory(**kwargs):
        session = FakeRemoteSession(**kwargs)
        sessions.append(session)
        return session

    manager = ConnectionManager(config, remote_lookup=lambda: factory)
    uris = []
    manager.on_pairing_uri(uris.append)

    state = await manager.connect(Capability.remote)
    await manager.disconnect()
    await manager.connect(Capability.remote)

    assert state.capability == Capability.remote
    assert state.account == USER
    assert len(sessions) == 1
    assert sessions[0].enable_calls == 2
    assert sessions[0].factory_kwargs == {
        "rpc": {CHAIN_ID: "https://rpc.example.org"},
        "chain_id": CHAIN_ID,
        "project_id": "project-123",
    }
    assert uris == ["wc:pairing-uri@2", "wc:pairing-uri@2"]
    # remote sessions are never asked to switch chains
    assert "wallet_switchEthereumChain" not in sessions[0].requests


@pytest.mark.asyncio
async def test_connect_auto_falls_back_to_remote(sale_config):
    class MissingWallet(FakeWallet):
        async def probe(self):
            raise CapabilityUnavailableError("No injected wallet found.")

    config = parse_sale_config(sale_config_data(walletconnect_project_id="project-123"))
    manager = ConnectionManager(
        config,
        injected_factory=MissingWallet,
        remote_lookup=lambda: (lambda **kwargs: FakeRemoteSession(**kwargs)),
    )

    state = await manager.connect_auto()

    assert state.capability == Capability.remote
    assert state.status == ConnectionStatus.connected


@pytest.mark.asyncio
async def test_wait_for_capability_times_out():
    with pytest.raises(CapabilityUnavailableError, match="Remote session backend not available"):
        await wait_for_capability(lambda: None, timeout=0.05, interval=0.01, description="Remote session backend")


@pytest.mark.asyncio
async def test_wait_for_capability_returns_late_arrival():
    attempts = []

    def lookup():
        attempts.append(1)
        return "backend" if len(attempts) >= 3 else None

    assert await wait_for_capability(lookup, timeout=1.0, interval=0.01) == "backend"
    assert len(attempts) == 3


class ClosableWallet(FakeWallet):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.closed = False

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_unreachable_wallet_closes_the_injected_provider(sale_config):
    class UnreachableWallet(ClosableWallet):
        async def probe(self):
            raise CapabilityUnavailableError("No injected wallet found.")

    created = []

    def factory():
        created.append(UnreachableWallet())
        return created[-1]

    manager = ConnectionManager(sale_config, injected_factory=factory)

    with pytest.raises(CapabilityUnavailableError):
        await manager.connect(Capability.injected)

    assert created[0].closed


@pytest.mark.asyncio
async def test_failed_handshake_closes_the_injected_provider(sale_config):
    provider = ClosableWallet(accounts=[])
    manager = make_manager(sale_config, provider)

    with pytest.raises(WalletConnectionError):
        await manager.connect(Capability.injected)

    assert provider.closed
    assert manager.state.status == ConnectionStatus.error


def injected_provider(wallet_state):
    """An InjectedProvider whose HTTP endpoint answers from `wallet_state`."""

    def handler(request):
        body = json.loads(request.read())
        if wallet_state.get("failures", 0) > 0:
            wallet_state["failures"] -= 1
            return httpx.Response(503, text="wallet closed")
        results = {
            "eth_requestAccounts": wallet_state["accounts"],
            "eth_accounts": wallet_state["accounts"],
            "eth_chainId": hex(wallet_state["chain_id"]),
        }
        if body["method"] not in results:
            error = {"code": -32601, "message": f"Method {body['method']} not supported"}
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InjectedProvider("http://127.0.0.1:8545", watch_interval=0.01, client=client)


@pytest.mark.asyncio
async def test_injected_watcher_emits_account_and_chain_changes():
    wallet_state = {"accounts": [USER], "chain_id": CHAIN_ID}
    provider = injected_provider(wallet_state)
    events = []
    provider.on("accountsChanged", lambda accounts: events.append(("accountsChanged", accounts)))
    provider.on("chainChanged", lambda chain_id: events.append(("chainChanged", chain_id)))
    provider.on("disconnect", lambda error: events.append(("disconnect", error)))

    provider.start_watching()
    await asyncio.sleep(0.04)
    assert events == []

    wallet_state["accounts"] = [OTHER_USER]
    wallet_state["chain_id"] = 1
    await asyncio.sleep(0.05)
    await provider.stop_watching()

    assert sorted(events) == [("accountsChanged", [OTHER_USER]), ("chainChanged", "0x1")]


@pytest.mark.asyncio
async def test_injected_watcher_tolerates_transient_poll_failures():
    wallet_state = {"accounts": [USER], "chain_id": CHAIN_ID, "failures": 2}
    provider = injected_provider(wallet_state)
    events = []
    provider.on("disconnect", events.append)

    provider.start_watching()
    await asyncio.sleep(0.08)

    assert events == []
    assert not provider._watch_task.done()
    await provider.stop_watching()


@pytest.mark.asyncio
async def test_injected_watcher_disconnects_when_wallet_stops_answering():
    # failing from the very first poll still ends in a disconnect event
    wallet_state = {"accounts": [USER], "chain_id": CHAIN_ID, "failures": 100}
    provider = injected_provider(wallet_state)
    events = []
    provider.on("disconnect", events.append)

    provider.start_watching()
    await asyncio.sleep(0.1)

    assert len(events) == 1
    assert "503" in events[0]["message"]
    assert provider._watch_task.done()
    await provider.stop_watching()


@pytest.mark.asyncio
async def test_watcher_disconnect_tears_down_the_connection(sale_config):
    wallet_state = {"accounts": [USER], "chain_id": CHAIN_ID}
    provider = injected_provider(wallet_state)
    manager = make_manager(sale_config, provider)

    state = await manager.connect(Capability.injected)
    assert state.status == ConnectionStatus.connected

    wallet_state["accounts"] = []
    await asyncio.sleep(0.05)

    assert manager.state.status == ConnectionStatus.disconnected
    assert provider._watch_task is None


@pytest.mark.asyncio
async def test_async_handlers_are_kept_alive_until_done():
    emitter = EventEmitter()
    gate = asyncio.Event()
    seen = []

    async def handler(chain_id):
        await gate.wait()
        seen.append(chain_id)

    emitter.on("chainChanged", handler)
    before = set(wallet_module._handler_tasks)
    emitter.emit("chainChanged", "0x38")
    running = wallet_module._handler_tasks - before
    assert len(running) == 1

    gate.set()
    await settle()

    assert seen == ["0x38"]
    assert not running & wallet_module._handler_tasks
