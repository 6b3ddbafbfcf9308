"""
Pydantic Data Models and Validation Schemas

This module defines the data models of the presale client using Pydantic.
The sale configuration is validated once when it is loaded and is immutable
for the rest of the session; everything else (timeline segments, phase
resolutions, stats snapshots) is derived and recomputed on demand.

Key Components:
- PhaseDef / SaleConfig: the externally supplied sale description
- PhaseSegment / PhaseResolution: the derived phase timeline
- PhaseRow / PhaseBoard: what the presentation layer renders every tick
- ConnectionState: the single wallet connection state of a session
- PendingOperation / OperationResult: the mutating operation lifecycle
- StatsSnapshot / AccountSnapshot: global and personal chain figures
- VestingVaultDef / VestingSnapshot: vesting vault viewer data

Schema Structure:
- Phase rates are kept permissive (missing, zero, negative and NaN are
  accepted) because the rate resolver, not the loader, decides how to treat
  a malformed phase; the base rate is optional but, when given, must be a
  finite positive number.
- Address fields are optional at the schema level so that sale_manager can
  report every missing required field by name in one error.
"""
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from eth_utils import is_0x_prefixed, is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def _check_address(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if not is_0x_prefixed(value) or not is_address(value):
        raise ValueError(f"'{value}' is not a valid 0x-prefixed 20-byte address")
    return to_checksum_address(value)


class PhaseDef(BaseModel):
    name: str
    tokens_per_unit: Optional[float] = None
    units_per_token: Optional[float] = None
    duration_days: float = 7.0


class VestingVaultDef(BaseModel):
    address: Optional[str] = None
    label: Optional[str] = None

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: Optional[str]) -> Optional[str]:
        return _check_address(value)


class SaleConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain_id: int
    chain_name: str = "Network"
    rpc_url: Optional[str] = None
    explorer_base: str = "https://bscscan.com"
    payment_token_address: Optional[str] = None
    sale_address: Optional[str] = None
    token_address: Optional[str] = None
    payment_decimals: int = Field(18, ge=0, le=36)
    token_decimals: int = Field(18, ge=0, le=36)
    payment_symbol: str = "USDT"
    token_symbol: str = "TOKEN"
    sale_start: Optional[int] = None
    phases: List[PhaseDef] = []
    capacity: float = Field(0.0, ge=0)
    use_phase_rate_for_estimate: bool = False
    base_rate: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    approve_unlimited: bool = False
    walletconnect_project_id: Optional[str] = None
    vesting_vaults: Dict[str, VestingVaultDef] = {}

    @field_validator("payment_token_address", "sale_address", "token_address")
    @classmethod
    def _validate_addresses(cls, value: Optional[str]) -> Optional[str]:
        return _check_address(value)

    @field_validator("explorer_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return (value or "https://bscscan.com").rstrip("/")

    @property
    def sale_explorer_url(self) -> Optional[str]:
        if not self.sale_address:
            return None
        return f"{self.explorer_base}/address/{self.sale_address}"

    @property
    def token_explorer_url(self) -> Optional[str]:
        if not self.token_address:
            return None
        return f"{self.explorer_base}/address/{self.token_address}"


# --- Phase timeline ---

class PhaseSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    phase: PhaseDef
    start: int
    end: int

    @property
    def duration_seconds(self) -> int:
        return self.end - self.start


class ResolutionKind(str, Enum):
    unscheduled = "unscheduled"
    not_started = "not_started"
    in_phase = "in_phase"
    ended = "ended"


class PhaseResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ResolutionKind
    index: Optional[int] = None  # set only for in_phase
    boundary: int = 0

    def seconds_remaining(self, now: float) -> int:
        return max(0, int(self.boundary - now))


class SegmentStatus(str, Enum):
    past = "past"
    current = "current"
    future = "future"


class PhaseRow(BaseModel):
    name: str
    duration_days: float
    status: SegmentStatus
    tokens_per_unit: str
    units_per_token: str


class PhaseBoard(BaseModel):
    active_label: str
    countdown: str
    resolution: PhaseResolution
    rows: List[PhaseRow] = []


# --- Wallet connection ---

class Capability(str, Enum):
    injected = "injected"
    remote = "remote"


class ConnectionStatus(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    error = "error"


class ConnectionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ConnectionStatus = ConnectionStatus.disconnected
    capability: Optional[Capability] = None
    account: Optional[str] = None
    chain_id: Optional[int] = None
    is_correct_network: bool = False
    error: Optional[str] = None


# --- Mutating operations ---

class OperationKind(str, Enum):
    approve = "approve"
    buy = "buy"
    claim = "claim"
    finalize = "finalize"
    release_vesting = "release_vesting"


class OperationStatus(str, Enum):
    confirmed = "confirmed"
    skipped = "skipped"
    rejected = "rejected"
    busy = "busy"
    failed = "failed"


class PendingOperation(BaseModel):
    kind: OperationKind
    started_at: float
    tx_hash: Optional[str] = None


class OperationResult(BaseModel):
    operation: OperationKind
    status: OperationStatus
    message: str
    tx_hash: Optional[str] = None


# --- Chain figures ---

class StatsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount_raised: Decimal
    amount_sold: Optional[Decimal] = None  # None means unknown, never zero
    capacity: Decimal = Decimal(0)
    sold_source: Optional[str] = None
    refreshed_at: float = 0.0

    @computed_field
    @property
    def percent_sold(self) -> float:
        if self.capacity <= 0 or self.amount_sold is None:
            return 0.0
        return float(min(Decimal(100), self.amount_sold / self.capacity * 100))


class AccountSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str
    payment_balance: Decimal
    claimable: Decimal
    end_time: int
    refreshed_at: float = 0.0


class VestingSnapshot(BaseModel):
    bucket: str
    label: str
    vault: str
    token: str
    symbol: str = "TOKEN"
    decimals: int = 18
    beneficiary: str
    start: int
    cliff: int
    end: int
    duration_days: float
    released: Decimal
    releasable: Decimal
    vault_balance: Decimal
