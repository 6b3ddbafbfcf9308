"""
Transaction Coordinator

Serializes the mutating operations of a session (approve, buy, claim,
finalize and vesting release) against the wallet held by the
ConnectionManager.

Operation Rules:
- One busy slot is shared by every operation. A trigger that arrives while
  another operation is pending is answered with a `busy` result; it is
  neither queued nor treated as a failure. The slot is released when the
  operation finishes, whatever the outcome.
- Every operation requires a connected wallet on the configured chain.
- approve() skips the submission when the current allowance already covers
  the requested amount.
- buy() refuses locally, without submitting, when the allowance is too low.
- finalize() refuses locally when the sale contract says it cannot be
  finalized yet.
- On confirmation, the personal and global figures are refreshed.

Errors never escape an operation: each one is logged to the activity log and
returned as an OperationResult whose message follows error_message().
"""
import time
from typing import Any, Awaitable, Callable, Optional

from mcp_evm_presale.errors import (
    AllowanceError,
    BusyError,
    ChainCallError,
    ConfigurationError,
    NetworkMismatchError,
    ValidationError,
    WalletConnectionError,
    error_message,
)
from mcp_evm_presale.evm_utils import MAX_UINT256, TxHandle, to_base_units
from mcp_evm_presale.pricing import parse_amount
from mcp_evm_presale.schemas import OperationKind, OperationResult, OperationStatus, PendingOperation, SaleConfig
from mcp_evm_presale.utils import ActivityLog
from mcp_evm_presale.vesting import get_vault
from mcp_evm_presale.wallet import ConnectionManager, SigningHandle
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# Local refusals: no call was made
_REJECTIONS = (ValidationError, AllowanceError, NetworkMismatchError, WalletConnectionError, ConfigurationError)


class _Refusal(Exception):
    """A local precondition failed; the operation ends without submitting."""


class TransactionCoordinator:
    def __init__(
        self,
        sale_config: SaleConfig,
        connection: ConnectionManager,
        on_confirmed: Optional[Callable[[], Awaitable[Any]]] = None,
        activity: Optional[ActivityLog] = None,
    ):
        self.config = sale_config
        self.connection = connection
        self.on_confirmed = on_confirmed
        self.activity = activity or ActivityLog()
        self._pending: Optional[PendingOperation] = None

    @property
    def busy(self) -> bool:
        return self._pending is not None

    @property
    def pending(self) -> Optional[PendingOperation]:
        return self._pending

    async def _run(self, kind: OperationKind, body: Callable[[SigningHandle], Awaitable[OperationResult]]) -> OperationResult:
        if self._pending is not None:
            busy = BusyError(f"Another operation ({self._pending.kind.value}) is still pending.")
            self.activity(f"{kind.value.capitalize()} ignored: {error_message(busy)}")
            return OperationResult(operation=kind, status=OperationStatus.busy, message=error_message(busy))

        self._pending = PendingOperation(kind=kind, started_at=time.time())
        label = kind.value.capitalize()
        try:
            handle = self.connection.require_signer()
            result = await body(handle)
        except _Refusal as e:
            self.activity(f"{label}: {error_message(e)}")
            return OperationResult(operation=kind, status=OperationStatus.rejected, message=error_message(e))
        except _REJECTIONS as e:
            self.activity(f"{label} rejected: {error_message(e)}")
            return OperationResult(operation=kind, status=OperationStatus.rejected, message=error_message(e))
        except ChainCallError as e:
            self.activity(f"{label} error: {error_message(e)}")
            return OperationResult(
                operation=kind, status=OperationStatus.failed, message=error_message(e), tx_hash=self._pending.tx_hash
            )
        except Exception as e:
            logger.exception(f"Unexpected error during {kind.value}: {e}")
            self.activity(f"{label} error: {error_message(e)}")
            return OperationResult(
                operation=kind, status=OperationStatus.failed, message=error_message(e), tx_hash=self._pending.tx_hash
            )
        finally:
            self._pending = None

        if result.status == OperationStatus.confirmed and self.on_confirmed is not None:
            try:
                await self.on_confirmed()
            except Exception as e:
                logger.warning(f"Refresh after {kind.value} failed: {e}")
        return result

    async def _submit_and_wait(self, kind: OperationKind, tx: TxHandle) -> OperationResult:
        label = kind.value.capitalize()
        self._pending.tx_hash = tx.hash
        self.activity(f"{label} tx: {tx.hash}")
        await tx.wait()
        self.activity(f"{label} confirmed.")
        return OperationResult(operation=kind, status=OperationStatus.confirmed, message=f"{label} confirmed.",
                               tx_hash=tx.hash)

    def _payment_units(self, amount_text: str) -> int:
        return to_base_units(parse_amount(amount_text), self.config.payment_decimals)

    # --- Operations ---

    async def approve(self, amount_text: str) -> OperationResult:
        """Authorizes the sale contract to spend the requested payment amount."""
        async def body(handle: SigningHandle) -> OperationResult:
            amount = self._payment_units(amount_text)
            allowance = await handle.reader.allowance(
                self.config.payment_token_address, handle.account, self.config.sale_address
            )
            if allowance >= amount:
                self.activity("Allowance already sufficient.")
                return OperationResult(operation=OperationKind.approve, status=OperationStatus.skipped,
                                       message="Allowance already sufficient.")
            value = MAX_UINT256 if self.config.approve_unlimited else amount
            tx = await handle.writer.approve(self.config.payment_token_address, self.config.sale_address, value)
            return await self._submit_and_wait(OperationKind.approve, tx)

        return await self._run(OperationKind.approve, body)

    async def buy(self, amount_text: str) -> OperationResult:
        """Buys sale tokens for the requested payment amount."""
        async def body(handle: SigningHandle) -> OperationResult:
            amount = self._payment_units(amount_text)
            allowance = await handle.reader.allowance(
                self.config.payment_token_address, handle.account, self.config.sale_address
            )
            if allowance < amount:
                raise AllowanceError("Allowance too low. Click Approve first.")
            tx = await handle.writer.buy(self.config.sale_address, amount)
            return await self._submit_and_wait(OperationKind.buy, tx)

        return await self._run(OperationKind.buy, body)

    async def claim(self) -> OperationResult:
        """Claims purchased tokens; the contract decides what is claimable."""
        async def body(handle: SigningHandle) -> OperationResult:
            tx = await handle.writer.claim(self.config.sale_address)
            return await self._submit_and_wait(OperationKind.claim, tx)

        return await self._run(OperationKind.claim, body)

    async def finalize(self) -> OperationResult:
        """Finalizes the sale once the contract allows it."""
        async def body(handle: SigningHandle) -> OperationResult:
            if not await handle.reader.can_finalize_now(self.config.sale_address):
                raise _Refusal("Cannot finalize yet (time not ended / not sold out).")
            tx = await handle.writer.finalize(self.config.sale_address)
            return await self._submit_and_wait(OperationKind.finalize, tx)

        return await self._run(OperationKind.finalize, body)

    async def release_vesting(self, bucket: str) -> OperationResult:
        """Releases vested tokens of a vault; only its beneficiary may do so."""
        async def body(handle: SigningHandle) -> OperationResult:
            vault = get_vault(self.config, bucket)
            beneficiary = await handle.reader.call_address(vault.address, "beneficiary()")
            if beneficiary.lower() != handle.account.lower():
                raise _Refusal(f"Only the beneficiary {beneficiary} can release this vault.")
            tx = await handle.writer.release(vault.address)
            return await self._submit_and_wait(OperationKind.release_vesting, tx)

        return await self._run(OperationKind.release_vesting, body)
