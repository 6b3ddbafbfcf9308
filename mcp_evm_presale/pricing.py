"""
Conversion Rate Resolution and Output Estimation

This module resolves the conversion rate (sale tokens per unit of payment
currency) that applies at a given instant and estimates the sale-token output
for a user-entered payment amount.

Rate Policy:
- Inside a phase with a finite positive configured rate: that phase's rate
- Everywhere else (unscheduled, not started, ended, malformed phase rate):
  the configured base rate, or DEFAULT_BASE_RATE when none is configured

Amount Grammar:
- Surrounding whitespace is ignored
- "digits,digits" with no dot uses the comma as decimal separator ("10,5")
- Otherwise every comma is a thousands separator ("1,000.5")
- Empty, unparsable, non-finite and non-positive amounts are rejected, as are
  amounts whose magnitude lies outside 1e-36 .. 1e60 ("1e999999999")

The estimate is display-only; the sale contract decides the actual output.
"""
import math
import re
from decimal import Decimal, DecimalException, InvalidOperation

from mcp_evm_presale.errors import ValidationError
from mcp_evm_presale.phases import active_phase
from mcp_evm_presale.schemas import SaleConfig
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

ESTIMATE_UNAVAILABLE = "unavailable"
PHASE_RATE_TAG = "UI phase rate"
BASE_RATE_TAG = "Base rate"
DEFAULT_BASE_RATE = 15.0

# accepted amount magnitudes: 1e-36 .. 1e60
MAX_AMOUNT_EXPONENT = 60
MIN_AMOUNT_EXPONENT = -36

_DECIMAL_COMMA = re.compile(r"^\d+,\d+$")


def base_rate(config: SaleConfig) -> float:
    return config.base_rate if config.base_rate is not None else DEFAULT_BASE_RATE


def current_rate(config: SaleConfig, now: float) -> float:
    """
    Returns the tokens-per-unit rate applicable at `now`.

    Never returns zero, a negative or a non-finite value.
    """
    phase = active_phase(config, now)
    if phase is not None:
        rate = phase.tokens_per_unit
        if rate is not None and math.isfinite(rate) and rate > 0:
            return rate
        logger.debug(f"Phase '{phase.name}' has no usable rate ({rate!r}), using base rate {base_rate(config)}")
    return base_rate(config)


def parse_amount(text: str) -> Decimal:
    """
    Parses a user-entered amount.

    Raises:
        ValidationError: If the amount is empty, malformed or not positive.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Enter an amount first.")

    if _DECIMAL_COMMA.match(cleaned):
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {text!r}")

    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Amount must be a positive number, got {text!r}")
    if not MIN_AMOUNT_EXPONENT <= amount.adjusted() <= MAX_AMOUNT_EXPONENT:
        raise ValidationError(f"Amount is out of range: {text!r}")
    return amount


def format_decimal(value: Decimal) -> str:
    """Formats a Decimal with thousands separators and no exponent."""
    return f"{value.normalize():,f}"


def estimate_output(amount_text: str, config: SaleConfig, now: float) -> str:
    """Estimates the sale-token output for a payment amount, or returns 'unavailable'."""
    try:
        amount = parse_amount(amount_text)
    except ValidationError:
        return ESTIMATE_UNAVAILABLE

    if config.use_phase_rate_for_estimate:
        rate = current_rate(config, now)
        tag = PHASE_RATE_TAG
    else:
        rate = base_rate(config)
        tag = BASE_RATE_TAG

    try:
        output = amount * Decimal(str(rate))
    except DecimalException as e:
        logger.warning(f"Estimate for {amount_text!r} failed: {e}")
        return ESTIMATE_UNAVAILABLE
    return f"Estimated output ({tag}): {format_decimal(output)} {config.token_symbol}"
