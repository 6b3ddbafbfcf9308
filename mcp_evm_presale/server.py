"""
EVM Presale Client - MCP Server Implementation

This module exposes a presale session as MCP tools. The server is the
presentation layer of the client: it forwards user intents (connect, approve,
buy, claim, finalize, amount changes) into the session and returns the
rendered state (phase board, countdown, balances, stats, activity log) as
text. It never touches session internals beyond the public session API.

Key Features:
- Phase board with countdown and masked future rates
- Output estimation for a payment amount
- Wallet connection through an injected wallet or a remote pairing session
- Serialized approve / buy / claim / finalize operations
- Global sale stats and personal account figures
- Vesting vault viewer and release

Lifecycle:
- The sale config is loaded once at startup (PRESALE_CONFIG_PATH); a missing
  required address aborts startup with a ConfigurationError naming the fields.
- One PresaleSession lives for the lifetime of the server process and runs
  the phase tick and stats refresh timers in the background.
"""

import json
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from pydantic import Field

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_evm_presale import sale_manager
from mcp_evm_presale.errors import (
    CapabilityUnavailableError,
    ChainCallError,
    ConfigurationError,
    WalletConnectionError,
    error_message,
)
from mcp_evm_presale.schemas import Capability
from mcp_evm_presale.session import PresaleSession
from mcp_evm_presale.stats import describe_stats

logger = get_logger(__name__)

MAX_AMOUNT_TEXT_LENGTH = 64
MAX_BUCKET_LENGTH = 64


@asynccontextmanager
async def presale_lifespan(server: FastMCP) -> AsyncIterator[PresaleSession]:
    """Loads the sale config and runs one PresaleSession for the server's lifetime."""
    sale_config = sale_manager.load_sale_config()
    session = PresaleSession(sale_config)
    await session.start()
    try:
        yield session
    finally:
        await session.stop()


# --- Server Setup ---
mcp = FastMCP(name="EVM Presale Client", lifespan=presale_lifespan)


def _session(context: Context) -> PresaleSession:
    return context.request_context.lifespan_context


def _validate_amount_text(amount: str) -> None:
    if not isinstance(amount, str):
        raise ValueError("Amount must be a string")
    if len(amount) > MAX_AMOUNT_TEXT_LENGTH:
        raise ValueError("Amount is too long")


# --- Read-only Tools ---

@mcp.tool()
async def get_phase_status(context: Context) -> str:
    """Get the active phase, the countdown and the phase list."""
    try:
        board = _session(context).phase_board()
        return board.model_dump_json(indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error rendering phase board: {e}")
        return "An unexpected error occurred while rendering the phase board."


@mcp.tool()
async def estimate_output(
    context: Context,
    amount: str = Field(..., description="Payment amount as typed by the user, e.g. '1,000.5' or '10,5'."),
) -> str:
    """Estimate the sale-token output for a payment amount."""
    try:
        _validate_amount_text(amount)
        return _session(context).estimate(amount)
    except ValueError as e:
        logger.error(f"Invalid amount for estimate: {e}")
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error estimating output: {e}")
        return "An unexpected error occurred while estimating the output."


@mcp.tool()
async def get_sale_stats(context: Context) -> str:
    """Get the amount raised, the amount sold and the capacity of the sale."""
    session = _session(context)
    try:
        snapshot = await session.refresh_stats()
        if snapshot is None:
            return "Sale stats are unavailable (no rpc_url configured or the chain could not be read)."
        return json.dumps(describe_stats(snapshot, session.config), indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error getting sale stats: {e}")
        return "An unexpected error occurred while retrieving sale stats."


@mcp.tool()
async def get_sale_info(context: Context) -> str:
    """Get the sale configuration summary and explorer links."""
    try:
        return json.dumps(sale_manager.describe_config(_session(context).config), indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error describing sale config: {e}")
        return "An unexpected error occurred while retrieving sale information."


@mcp.tool()
async def get_activity_log(
    context: Context,
    limit: int = Field(20, description="Number of most recent entries to return."),
) -> str:
    """Get the most recent entries of the session activity log."""
    limit = max(1, min(int(limit), 200))
    entries = _session(context).activity.entries(limit)
    return "\n".join(entries) if entries else "No activity yet."


# --- Wallet Tools ---

@mcp.tool()
async def get_wallet_status(context: Context) -> str:
    """Get the wallet connection state."""
    return _session(context).connection.state.model_dump_json(indent=2)


@mcp.tool()
async def connect_wallet(
    context: Context,
    capability: str = Field(
        "auto", description="'injected' (local wallet), 'remote' (QR pairing) or 'auto' (injected, then remote)."
    ),
) -> str:
    """Connect a wallet."""
    session = _session(context)
    start_time = time.time()
    capability = (capability or "auto").strip().lower()
    if capability != "auto":
        try:
            requested = Capability(capability)
        except ValueError:
            return f"Error: unknown capability '{capability}'. Use 'injected', 'remote' or 'auto'."
    try:
        if capability == "auto":
            state = await session.connection.connect_auto()
        else:
            state = await session.connection.connect(requested)

        session.activity(f"Connected: {state.account}")
        if not state.is_correct_network:
            session.activity(
                f"Network mismatch. Expected {session.config.chain_id}, got {state.chain_id}. "
                "Transactions are disabled until you switch networks."
            )
        await session.refresh_account()
        logger.info(f"Wallet connected via {state.capability.value} in {time.time() - start_time:.3f}s")
        return state.model_dump_json(indent=2)
    except (WalletConnectionError, CapabilityUnavailableError) as e:
        session.activity(f"Connect error: {error_message(e)}")
        return f"Connect failed: {error_message(e)}"
    except Exception as e:
        logger.exception(f"Unexpected error connecting wallet: {e}")
        return "An unexpected error occurred while connecting the wallet."


@mcp.tool()
async def disconnect_wallet(context: Context) -> str:
    """Disconnect the wallet."""
    session = _session(context)
    state = await session.connection.disconnect()
    session.activity("Disconnected.")
    return state.model_dump_json(indent=2)


@mcp.tool()
async def get_account(context: Context) -> str:
    """Get the payment balance, claimable amount and sale end time of the connected wallet."""
    session = _session(context)
    try:
        snapshot = await session.refresh_account()
        if snapshot is None:
            return "No wallet connected on the sale network."
        return snapshot.model_dump_json(indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error getting account figures: {e}")
        return "An unexpected error occurred while retrieving account figures."


# --- Transaction Tools ---

@mcp.tool()
async def approve(
    context: Context,
    amount: str = Field(..., description="Payment amount to authorize for the sale contract."),
) -> str:
    """Authorize the sale contract to spend the payment token."""
    try:
        _validate_amount_text(amount)
    except ValueError as e:
        return f"Error: {e}"
    result = await _session(context).coordinator.approve(amount)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def buy(
    context: Context,
    amount: str = Field(..., description="Payment amount to spend on sale tokens."),
) -> str:
    """Buy sale tokens. Requires a sufficient allowance (see approve)."""
    try:
        _validate_amount_text(amount)
    except ValueError as e:
        return f"Error: {e}"
    result = await _session(context).coordinator.buy(amount)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def claim(context: Context) -> str:
    """Claim purchased sale tokens."""
    result = await _session(context).coordinator.claim()
    return result.model_dump_json(indent=2)


@mcp.tool()
async def finalize(context: Context) -> str:
    """Finalize the sale once it has ended or sold out."""
    result = await _session(context).coordinator.finalize()
    return result.model_dump_json(indent=2)


# --- Vesting Tools ---

@mcp.tool()
async def get_vesting_info(
    context: Context,
    bucket: str = Field("team", description="Vesting bucket name from the sale config, e.g. 'team'."),
) -> str:
    """Get the schedule and balances of a vesting vault."""
    try:
        if len(bucket or "") > MAX_BUCKET_LENGTH:
            raise ValueError("Bucket name is too long")
        snapshot = await _session(context).vesting(bucket)
        return snapshot.model_dump_json(indent=2)
    except (ValueError, ConfigurationError) as e:
        logger.error(f"Invalid vesting bucket '{bucket}': {e}")
        return f"Error: {e}"
    except ChainCallError as e:
        logger.error(f"Error reading vesting vault '{bucket}': {e}")
        return f"Error reading vesting vault: {error_message(e)}"
    except Exception as e:
        logger.exception(f"Unexpected error reading vesting vault '{bucket}': {e}")
        return "An unexpected error occurred while reading the vesting vault."


@mcp.tool()
async def release_vesting(
    context: Context,
    bucket: str = Field("team", description="Vesting bucket name from the sale config."),
) -> str:
    """Release vested tokens of a vault (beneficiary only)."""
    result = await _session(context).coordinator.release_vesting(bucket)
    return result.model_dump_json(indent=2)


def main() -> None:
    """Runs the MCP server over stdio."""
    logger.info("Starting EVM Presale MCP Server...")
    try:
        mcp.run(transport="stdio")
    except ConfigurationError as e:
        logger.error(f"Config error: {e}")
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")


# --- Main Execution ---
if __name__ == "__main__":
    main()
