import asyncio
import itertools
import time
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import decode_hex, function_signature_to_4byte_selector, is_hex, to_checksum_address

from mcp_evm_presale.errors import ChainCallError, ValidationError
from mcp_evm_presale.config import RPC_TIMEOUT, RECEIPT_TIMEOUT, RECEIPT_POLL_INTERVAL
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

MAX_UINT256 = 2**256 - 1

# Error(string) revert payload selector
REVERT_SELECTOR = "08c379a0"

AbiValue = Union[int, bool, str]


# --- Unit Conversion ---

def to_base_units(amount: Decimal, decimals: int) -> int:
    """
    Converts a human amount to integer base units.

    Raises:
        ValidationError: If the amount has more fractional digits than `decimals`.
    """
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Amount has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(value: int, decimals: int) -> Decimal:
    """Converts integer base units to a human Decimal amount."""
    return Decimal(value).scaleb(-decimals)


# --- ABI Encoding ---

@lru_cache(maxsize=None)
def selector(signature: str) -> str:
    """Returns the 4-byte function selector of `signature` as bare hex."""
    return function_signature_to_4byte_selector(signature).hex()


def _argument_types(signature: str) -> List[str]:
    if "(" not in signature or not signature.endswith(")"):
        raise ValueError(f"Malformed function signature: {signature}")
    inner = signature[signature.index("(") + 1:-1]
    return [abi_type for abi_type in inner.split(",") if abi_type]


def encode_call(signature: str, *args: AbiValue) -> str:
    """
    Encodes calldata for a function with static arguments.

    Raises:
        ValueError: If the arguments do not match the signature's types.
    """
    types = _argument_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} takes {len(types)} arguments, got {len(args)}")
    values = [
        to_checksum_address(arg) if abi_type == "address" and isinstance(arg, str) else arg
        for abi_type, arg in zip(types, args)
    ]
    try:
        encoded = encode(types, values)
    except EncodingError as e:
        raise ValueError(f"Cannot encode arguments for {signature}: {e}")
    return "0x" + selector(signature) + encoded.hex()


def _return_data(result: Optional[str]) -> bytes:
    if not isinstance(result, str) or not result.startswith("0x") or len(result) <= 2 or not is_hex(result):
        raise ChainCallError(f"Empty or malformed return data: {result!r}")
    try:
        return decode_hex(result)
    except ValueError as e:
        raise ChainCallError(f"Malformed return data {result!r}: {e}")


def decode_single(abi_type: str, result: Optional[str]) -> Any:
    """
    Decodes one ABI value from eth_call return data.

    Raises:
        ChainCallError: If the data is empty, not hex or not a valid `abi_type`.
    """
    data = _return_data(result)
    try:
        return decode([abi_type], data)[0]
    except (DecodingError, ValueError) as e:
        raise ChainCallError(f"Cannot decode {abi_type} from return data: {e}")


def decode_uint(result: Optional[str]) -> int:
    return decode_single("uint256", result)


def decode_bool(result: Optional[str]) -> bool:
    return decode_uint(result) != 0


def decode_address(result: Optional[str]) -> str:
    return decode_single("address", result)


def decode_string(result: Optional[str]) -> str:
    return decode_single("string", result)


def decode_revert_reason(data: Any) -> Optional[str]:
    """Extracts the reason string from an Error(string) revert payload."""
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, str) or not data.startswith("0x" + REVERT_SELECTOR):
        return None
    try:
        return decode_string("0x" + data[10:])
    except ChainCallError:
        return None


def parse_quantity(value: Any) -> int:
    """Parses a JSON-RPC quantity (hex string or int)."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    raise ValueError(f"Invalid quantity: {value!r}")


# --- JSON-RPC Transport ---

class RpcTransport:
    """
    Async JSON-RPC client over HTTP.

    Exposes the same `request(method, params)` shape as a wallet provider, so
    read-only chain access and wallet access share one calling convention.
    """

    def __init__(self, endpoint: str, client: Optional[httpx.AsyncClient] = None, timeout: float = RPC_TIMEOUT):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params or [])}
        try:
            response = await self._client.post(self.endpoint, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error calling {method} on {self.endpoint}: {e.response.status_code} - {e.response.text}")
            raise ChainCallError(f"HTTP error calling {method}: {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Network error calling {method} on {self.endpoint}: {e}")
            raise ChainCallError(f"Network error calling {method}: {e}")
        except ValueError as e:
            raise ChainCallError(f"Malformed JSON-RPC response to {method}: {e}")

        error = data.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            err_data = error.get("data") if isinstance(error, dict) else None
            reason = decode_revert_reason(err_data)
            short = f"execution reverted: {reason}" if reason else None
            raise ChainCallError(message, code=code, short_message=short, data=err_data)
        return data.get("result")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# --- Chain Reads ---

class ChainReader:
    """Read-only contract calls (eth_call) against any JSON-RPC provider."""

    def __init__(self, provider: Any):
        self.provider = provider

    async def call(self, to: str, signature: str, *args: AbiValue) -> str:
        return await self.provider.request("eth_call", [{"to": to, "data": encode_call(signature, *args)}, "latest"])

    async def call_uint(self, to: str, signature: str, *args: AbiValue) -> int:
        return decode_uint(await self.call(to, signature, *args))

    async def balance_of(self, token: str, owner: str) -> int:
        return await self.call_uint(token, "balanceOf(address)", owner)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return await self.call_uint(token, "allowance(address,address)", owner, spender)

    async def decimals(self, token: str) -> int:
        return await self.call_uint(token, "decimals()")

    async def symbol(self, token: str) -> str:
        return decode_string(await self.call(token, "symbol()"))

    async def claimable(self, sale: str, user: str) -> int:
        return await self.call_uint(sale, "claimable(address)", user)

    async def end_time(self, sale: str) -> int:
        return await self.call_uint(sale, "endTime()")

    async def can_finalize_now(self, sale: str) -> bool:
        return decode_bool(await self.call(sale, "canFinalizeNow()"))

    async def optional_sold(self, sale: str, accessor: str) -> int:
        """Calls a no-argument sold-amount accessor such as `totalSold`."""
        return await self.call_uint(sale, f"{accessor}()")

    async def call_address(self, to: str, signature: str) -> str:
        return decode_address(await self.call(to, signature))


# --- Transactions ---

class TxHandle:
    """A submitted transaction that can be awaited to confirmation."""

    def __init__(self, provider: Any, tx_hash: str, timeout: float = RECEIPT_TIMEOUT,
                 poll_interval: float = RECEIPT_POLL_INTERVAL):
        self.provider = provider
        self.hash = tx_hash
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def wait(self) -> Dict[str, Any]:
        """
        Polls eth_getTransactionReceipt until the transaction is mined.

        Raises:
            ChainCallError: If the transaction reverted or no receipt arrived in time.
        """
        deadline = time.monotonic() + self.timeout
        while True:
            receipt = await self.provider.request("eth_getTransactionReceipt", [self.hash])
            if receipt:
                if parse_quantity(receipt.get("status", "0x1")) != 1:
                    logger.error(f"Transaction {self.hash} reverted on-chain")
                    raise ChainCallError(f"Transaction {self.hash} reverted", short_message="transaction reverted")
                logger.info(f"Transaction {self.hash} confirmed in block {receipt.get('blockNumber')}")
                return receipt
            if time.monotonic() >= deadline:
                logger.warning(f"Transaction {self.hash} confirmation timed out after {self.timeout}s")
                raise ChainCallError(f"Transaction {self.hash} confirmation timed out")
            await asyncio.sleep(self.poll_interval)


class ChainWriter:
    """State-changing contract calls sent through a wallet (eth_sendTransaction)."""

    def __init__(self, provider: Any, account: str):
        self.provider = provider
        self.account = account

    async def send(self, to: str, signature: str, *args: AbiValue) -> TxHandle:
        tx = {"from": self.account, "to": to, "data": encode_call(signature, *args)}
        tx_hash = await self.provider.request("eth_sendTransaction", [tx])
        if not isinstance(tx_hash, str):
            raise ChainCallError(f"Wallet returned no transaction hash for {signature}")
        logger.info(f"Submitted {signature} to {to} from {self.account}: {tx_hash}")
        return TxHandle(self.provider, tx_hash)

    async def approve(self, token: str, spender: str, amount: int) -> TxHandle:
        return await self.send(token, "approve(address,uint256)", spender, amount)

    async def buy(self, sale: str, amount: int) -> TxHandle:
        return await self.send(sale, "buy(uint256)", amount)

    async def claim(self, sale: str) -> TxHandle:
        return await self.send(sale, "claim()")

    async def finalize(self, sale: str) -> TxHandle:
        return await self.send(sale, "finalize()")

    async def release(self, vault: str) -> TxHandle:
        return await self.send(vault, "release()")


def accounts_from(result: Any) -> List[str]:
    """Normalizes an eth_accounts style result to a list of addresses."""
    if not isinstance(result, list):
        return []
    return [account for account in result if isinstance(account, str) and account]
