"""
Custom Exception Classes for the EVM Presale Client

This module defines the exception classes raised by the presale client. They
separate failures the user can fix locally (bad amount, missing allowance,
wrong network) from failures reported by the chain or the wallet.

Exception Categories:
- Configuration Errors: fatal at startup, the sale config is unusable
- Connection Errors: wallet acquisition failed, the user may retry
- Network Errors: connected on the wrong chain, mutating calls are gated
- Capability Errors: an optional wallet backend is not installed/reachable
- Validation Errors: malformed amount input, no call is made
- Allowance Errors: spend authorization is missing, no call is made
- Chain Call Errors: an RPC call failed or a transaction reverted
- Busy Errors: another mutating operation is still in flight

Usage:
    Operation boundaries (TransactionCoordinator, MCP tools) catch these and
    turn them into user-facing strings with error_message(), which follows a
    fixed fallback order: short message, message, string form.
"""
from typing import Any, Callable, Optional, Tuple


class ConfigurationError(Exception):
    """Raised when the sale configuration or the environment is invalid."""


class WalletConnectionError(Exception):
    """Raised when a wallet connection cannot be established."""


class NetworkMismatchError(Exception):
    """Raised when a mutating operation is attempted on the wrong chain."""


class CapabilityUnavailableError(Exception):
    """Raised when a wallet capability (injected or remote) is not available."""


class ValidationError(Exception):
    """Raised when user input (an amount) fails validation."""


class AllowanceError(Exception):
    """Raised when the sale contract is not authorized to spend enough tokens."""


class ChainCallError(Exception):
    """Raised when an RPC call fails or a submitted transaction reverts."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        short_message: Optional[str] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.short_message = short_message
        self.data = data


class BusyError(Exception):
    """Raised when an operation is triggered while another one is pending."""


def _short_message(error: BaseException) -> Optional[str]:
    value = getattr(error, "short_message", None)
    return value if isinstance(value, str) and value else None


def _message(error: BaseException) -> Optional[str]:
    value = getattr(error, "message", None)
    if isinstance(value, str) and value:
        return value
    if error.args and isinstance(error.args[0], str) and error.args[0]:
        return error.args[0]
    return None


def _string_form(error: BaseException) -> Optional[str]:
    return str(error) or type(error).__name__


ERROR_MESSAGE_STRATEGIES: Tuple[Callable[[BaseException], Optional[str]], ...] = (
    _short_message,
    _message,
    _string_form,
)


def error_message(error: BaseException) -> str:
    """Returns the message shown to the user for an error."""
    for strategy in ERROR_MESSAGE_STRATEGIES:
        message = strategy(error)
        if message:
            return message
    return type(error).__name__
