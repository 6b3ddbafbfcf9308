import json
import time
from pathlib import Path
from typing import Dict, List, Tuple, Union

from pydantic import ValidationError

from mcp_evm_presale.schemas import SaleConfig
from mcp_evm_presale.config import PRESALE_CONFIG_PATH
from mcp_evm_presale.errors import ConfigurationError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

REQUIRED_ADDRESS_FIELDS = ("payment_token_address", "sale_address")

# Simple file-based caching to avoid repeated I/O operations
_config_cache: Dict[Path, Tuple[float, SaleConfig]] = {}


def missing_required_fields(sale_config: SaleConfig) -> List[str]:
    """Returns the names of required address fields that are not set."""
    return [name for name in REQUIRED_ADDRESS_FIELDS if not getattr(sale_config, name)]


def parse_sale_config(config_data: dict) -> SaleConfig:
    """
    Validates raw config data and checks that every required address is present.

    Raises:
        ConfigurationError: Listing every missing required field, or the schema errors.
    """
    try:
        sale_config = SaleConfig.model_validate(config_data)
    except ValidationError as e:
        logger.error(f"Invalid sale configuration: {e}")
        raise ConfigurationError(f"Invalid sale configuration: {e}")

    missing = missing_required_fields(sale_config)
    if missing:
        raise ConfigurationError(f"Missing required config field(s): {', '.join(missing)}")
    return sale_config


def load_sale_config(path: Union[str, Path] = PRESALE_CONFIG_PATH) -> SaleConfig:
    """
    Loads the sale configuration from a JSON file.

    The parsed config is cached and reused until the file's modification time
    changes.

    Raises:
        ConfigurationError: If the file is missing, is not valid JSON or fails validation.
    """
    config_path = Path(path).resolve()
    try:
        mtime = config_path.stat().st_mtime
    except FileNotFoundError:
        raise ConfigurationError(f"Sale configuration file not found: {config_path}")

    cached = _config_cache.get(config_path)
    if cached and cached[0] == mtime:
        logger.debug(f"Using cached sale config from {config_path}")
        return cached[1]

    logger.info(f"Loading sale configuration from: {config_path}")
    try:
        with open(config_path, "r") as f:
            config_data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON from file: {config_path}")
        raise ConfigurationError(f"Failed to parse {config_path.name}: {e}")

    sale_config = parse_sale_config(config_data)
    _config_cache[config_path] = (mtime, sale_config)
    logger.info(
        f"Loaded sale config: chain {sale_config.chain_id}, {len(sale_config.phases)} phase(s), "
        f"start {sale_config.sale_start or 'unscheduled'}"
    )
    return sale_config


def clear_config_cache():
    """Clears the config cache to force a reload on next access."""
    _config_cache.clear()
    logger.debug("Sale config cache cleared")


def describe_config(sale_config: SaleConfig) -> dict:
    """Summarizes the config for display, including explorer links."""
    return {
        "chain": f"{sale_config.chain_name} (chainId {sale_config.chain_id})",
        "sale_address": sale_config.sale_address,
        "sale_explorer_url": sale_config.sale_explorer_url,
        "token_address": sale_config.token_address,
        "token_explorer_url": sale_config.token_explorer_url,
        "payment_token_address": sale_config.payment_token_address,
        "sale_start": sale_config.sale_start or None,
        "phases": len(sale_config.phases),
        "capacity": sale_config.capacity,
        "estimate_mode": "phase" if sale_config.use_phase_rate_for_estimate else "base",
        "sale_start_utc": time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(sale_config.sale_start))
        if sale_config.sale_start else None,
    }
