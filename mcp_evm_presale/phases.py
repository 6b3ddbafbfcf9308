"""
Phase Timeline Engine

Maps wall-clock time onto the configured pricing phases of the sale. The
timeline is a pure function of the sale configuration: every phase consumes
its duration from a running cursor that starts at the sale start timestamp,
so segments are contiguous and ordered and recomputing them always yields
the same sequence.

Resolution Policy:
- unscheduled: no start timestamp or no phases
- not_started: before the sale start (countdown to the start)
- in_phase(i): start <= now < end of segment i (countdown to its end)
- ended: at or after the end of the last segment

Rendering:
- Segments are classified past/current/future relative to the resolution.
- Future segments never show their rates; the fixed placeholder MASKED_RATE
  is rendered instead.
"""
import math
from typing import List, Optional, Sequence

from mcp_evm_presale.schemas import (
    PhaseBoard,
    PhaseDef,
    PhaseResolution,
    PhaseRow,
    PhaseSegment,
    ResolutionKind,
    SaleConfig,
    SegmentStatus,
)
from mcp_evm_presale.utils import format_ddhhmmss
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400
MASKED_RATE = "X.XXXX"
UNSCHEDULED_COUNTDOWN = "--:--:--:--"


def phase_duration_seconds(duration_days: float) -> int:
    """Converts a duration in days to whole seconds, never less than one."""
    try:
        days = float(duration_days)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(days):
        return 1
    return max(1, math.floor(days * SECONDS_PER_DAY))


def build_timeline(config: SaleConfig) -> List[PhaseSegment]:
    """
    Builds the ordered, contiguous phase segments of the sale.

    Returns an empty list when the sale is unscheduled (no start timestamp or
    no phases).
    """
    start = int(config.sale_start or 0)
    if not start or not config.phases:
        return []

    timeline: List[PhaseSegment] = []
    cursor = start
    for index, phase in enumerate(config.phases):
        duration = phase_duration_seconds(phase.duration_days)
        timeline.append(PhaseSegment(index=index, phase=phase, start=cursor, end=cursor + duration))
        cursor += duration
    return timeline


def resolve(timeline: Sequence[PhaseSegment], sale_start: Optional[int], now: float) -> PhaseResolution:
    """Resolves an instant to exactly one of unscheduled, not_started, in_phase or ended."""
    if not sale_start or not timeline:
        return PhaseResolution(kind=ResolutionKind.unscheduled, boundary=int(sale_start or 0))

    if now < sale_start:
        return PhaseResolution(kind=ResolutionKind.not_started, boundary=int(sale_start))

    for segment in timeline:
        if segment.start <= now < segment.end:
            return PhaseResolution(kind=ResolutionKind.in_phase, index=segment.index, boundary=segment.end)

    return PhaseResolution(kind=ResolutionKind.ended, boundary=timeline[-1].end)


def resolve_at(config: SaleConfig, now: float) -> PhaseResolution:
    """Builds the timeline for a config and resolves it at `now`."""
    return resolve(build_timeline(config), config.sale_start, now)


def active_phase(config: SaleConfig, now: float) -> Optional[PhaseDef]:
    """Returns the phase active at `now`, or None outside of any phase."""
    timeline = build_timeline(config)
    resolution = resolve(timeline, config.sale_start, now)
    if resolution.kind != ResolutionKind.in_phase:
        return None
    return timeline[resolution.index].phase


def classify_segments(timeline: Sequence[PhaseSegment], resolution: PhaseResolution) -> List[SegmentStatus]:
    """Classifies every segment as past, current or future."""
    statuses: List[SegmentStatus] = []
    for segment in timeline:
        if resolution.kind in (ResolutionKind.unscheduled, ResolutionKind.not_started):
            statuses.append(SegmentStatus.future)
        elif resolution.kind == ResolutionKind.ended:
            statuses.append(SegmentStatus.past)
        elif segment.index < resolution.index:
            statuses.append(SegmentStatus.past)
        elif segment.index == resolution.index:
            statuses.append(SegmentStatus.current)
        else:
            statuses.append(SegmentStatus.future)
    return statuses


def _format_rate(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:g}"


def render_phase_board(config: SaleConfig, now: float) -> PhaseBoard:
    """Renders the active label, countdown and per-phase rows for one tick."""
    timeline = build_timeline(config)
    resolution = resolve(timeline, config.sale_start, now)

    if resolution.kind == ResolutionKind.unscheduled:
        return PhaseBoard(active_label="Not configured", countdown=UNSCHEDULED_COUNTDOWN, resolution=resolution)

    if resolution.kind == ResolutionKind.not_started:
        active_label = "Not started"
    elif resolution.kind == ResolutionKind.ended:
        active_label = "Ended (waiting for finalize)"
    else:
        phase = timeline[resolution.index].phase
        active_label = (
            f"{phase.name} • 1 {config.payment_symbol} = "
            f"{_format_rate(phase.tokens_per_unit)} {config.token_symbol}"
        )

    rows: List[PhaseRow] = []
    for segment, status in zip(timeline, classify_segments(timeline, resolution)):
        masked = status == SegmentStatus.future
        rows.append(
            PhaseRow(
                name=segment.phase.name,
                duration_days=segment.phase.duration_days,
                status=status,
                tokens_per_unit=MASKED_RATE if masked else _format_rate(segment.phase.tokens_per_unit),
                units_per_token=MASKED_RATE if masked else _format_rate(segment.phase.units_per_token),
            )
        )

    return PhaseBoard(
        active_label=active_label,
        countdown=format_ddhhmmss(resolution.seconds_remaining(now)),
        resolution=resolution,
        rows=rows,
    )
