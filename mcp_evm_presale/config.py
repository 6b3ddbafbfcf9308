import os
import logging
from typing import List, Optional
from dotenv import load_dotenv

# Import custom errors
from mcp_evm_presale.errors import ConfigurationError

"""
Configuration Management for the EVM Presale Client

This module loads the process-level settings of the presale client from
environment variables with sensible defaults. The sale itself (addresses,
phases, rates) lives in a JSON file whose path is configured here and which
is parsed by sale_manager.

Configuration Sources (in order of precedence):
1. Environment variables (a .env file is loaded first)
2. Default values defined in this module

Environment Variables:
    PRESALE_CONFIG_PATH: Path to the sale JSON configuration file
    WALLET_RPC_URL: JSON-RPC endpoint of the local (injected) signing wallet
    WALLETCONNECT_PROJECT_ID: Project id for remote pairing sessions
    PHASE_TICK_SECONDS: Interval of the phase board refresh
    REFRESH_INTERVAL_SECONDS: Interval of the balance/stats refresh
    REMOTE_CAPABILITY_TIMEOUT: Seconds to wait for a remote session backend
    RPC_TIMEOUT: Timeout of a single JSON-RPC request
    RECEIPT_TIMEOUT: Seconds to wait for a transaction receipt
    RECEIPT_POLL_INTERVAL: Seconds between receipt polls
    ACTIONS_PORT: Port of the Flask status API
    CORS_ALLOWED_ORIGINS: Comma-separated allowed CORS origins
"""

# Set up logger
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_optional_str(key: str) -> Optional[str]:
    """Get environment variable as string, treating an empty value as unset."""
    value = os.getenv(key, "").strip()
    return value or None


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_float(key: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    """Get environment variable as float with validation."""
    try:
        value = float(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid float")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_list(key: str, default: str) -> List[str]:
    """Get environment variable as a comma-separated list."""
    return [item.strip() for item in os.getenv(key, default).split(",") if item.strip()]


try:
    # --- Sale Configuration File ---
    PRESALE_CONFIG_PATH = _get_env_str("PRESALE_CONFIG_PATH", "config.json", required=True)

    # --- Wallet Capabilities ---
    WALLET_RPC_URL = _get_env_str("WALLET_RPC_URL", "http://127.0.0.1:1248")
    WALLETCONNECT_PROJECT_ID = _get_env_optional_str("WALLETCONNECT_PROJECT_ID")
    REMOTE_CAPABILITY_TIMEOUT = _get_env_float("REMOTE_CAPABILITY_TIMEOUT", 8.0, min_val=0.5, max_val=60.0)
    WALLET_WATCH_INTERVAL = _get_env_float("WALLET_WATCH_INTERVAL", 2.0, min_val=0.1)

    # --- Timers ---
    PHASE_TICK_SECONDS = _get_env_float("PHASE_TICK_SECONDS", 1.0, min_val=0.1)
    REFRESH_INTERVAL_SECONDS = _get_env_float("REFRESH_INTERVAL_SECONDS", 10.0, min_val=1.0)

    # --- JSON-RPC ---
    RPC_TIMEOUT = _get_env_float("RPC_TIMEOUT", 10.0, min_val=1.0)
    RECEIPT_TIMEOUT = _get_env_float("RECEIPT_TIMEOUT", 120.0, min_val=1.0)
    RECEIPT_POLL_INTERVAL = _get_env_float("RECEIPT_POLL_INTERVAL", 2.0, min_val=0.1)

    # --- Status API Configuration ---
    ACTIONS_PORT = _get_env_int("ACTIONS_PORT", 5000, min_val=1024, max_val=65535)
    CORS_ALLOWED_ORIGINS = _get_env_list("CORS_ALLOWED_ORIGINS", "*")

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
