"""
Demand/Supply Distribution Sampler

Samples snapshot values across a time range at a fixed step, flattens every
per-cell value into one population (keeping which cell and which instant
produced it), and bins the population into an equal-width histogram whose bins
retain their contributing samples for drill-down.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from hex_index import DEFAULT_INDEXER, H3Indexer
from processor import (
    RatioPolicy,
    SnapshotConfig,
    SnapshotContext,
    TimeBounds,
    ValueMode,
    compute_time_bounds,
)


logger = logging.getLogger(__name__)


MIN_BINS = 5
MAX_BINS = 60


@dataclass
class DistributionSettings:
    """User-facing sweep settings. Unset bounds default to the dataset's time span."""
    start: Optional[pd.Timestamp] = None
    end: Optional[pd.Timestamp] = None
    step_minutes: int = 15
    n_bins: int = 20


@dataclass(frozen=True)
class DistributionSample:
    """One contribution to the value population."""
    value: float
    cell_id: str
    instant: pd.Timestamp


@dataclass
class DistributionResult:
    """Value population of one sweep together with the range actually sampled."""
    samples: List[DistributionSample]
    mode: ValueMode
    effective_from: Optional[pd.Timestamp] = None
    effective_to: Optional[pd.Timestamp] = None
    instants_sampled: int = 0
    processing_time_seconds: float = 0.0

    @property
    def values(self) -> List[float]:
        return [sample.value for sample in self.samples]


@dataclass
class DistributionSummary:
    n: int
    min: float
    median: float
    mean: float
    max: float


@dataclass
class HistogramBin:
    """One histogram bar with the samples that fall in it."""
    label: str
    count: int
    low: float
    high: float
    samples: List[DistributionSample] = field(default_factory=list)

    @property
    def center(self) -> float:
        """Numeric position of the bar; labels can repeat when bins are narrower than 0.01."""
        return (self.low + self.high) / 2


def sample_instants(
    start: pd.Timestamp,
    end: pd.Timestamp,
    step_minutes: float
) -> List[pd.Timestamp]:
    """
    Build the instants a sweep samples.

    `start`, then every step strictly before `end`, then `end` itself, so both
    endpoints are present even when the step doesn't divide the span.

    Args:
        start: First instant
        end: Last instant
        step_minutes: Spacing in minutes (at least 1)

    Returns:
        List of instants; empty when start > end
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    if start > end:
        return []

    step = pd.Timedelta(minutes=max(1, step_minutes))
    instants = [start]
    current = start + step
    while current < end:
        instants.append(current)
        current += step
    if end != start:
        instants.append(end)
    return instants


def clamp_range(
    start: Optional[pd.Timestamp],
    end: Optional[pd.Timestamp],
    bounds: TimeBounds
) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Clamp a requested range to the dataset bounds, filling missing ends from them."""
    start = bounds.start if start is None else max(bounds.start, pd.Timestamp(start))
    end = bounds.end if end is None else min(bounds.end, pd.Timestamp(end))
    return start, end


def sample_distribution(
    demand: Optional[pd.DataFrame],
    supply: Optional[pd.DataFrame],
    config: Optional[SnapshotConfig] = None,
    start: Optional[pd.Timestamp] = None,
    end: Optional[pd.Timestamp] = None,
    step_minutes: float = 15,
    indexer: H3Indexer = DEFAULT_INDEXER,
    progress_callback: Optional[Callable[[str, float], None]] = None
) -> DistributionResult:
    """
    Sweep snapshots over a time range and collect every per-cell value.

    Args:
        demand: Demand events, or None
        supply: Supply records, or None
        config: SnapshotConfig shared by every sampled snapshot
        start: Requested range start (clamped to the dataset bounds)
        end: Requested range end (clamped to the dataset bounds)
        step_minutes: Sampling step in minutes
        indexer: Hex indexer
        progress_callback: Optional callback function(stage, progress)

    Returns:
        DistributionResult; empty when nothing is loaded or start > end after clamping
    """
    start_time = time.time()

    def update_progress(stage: str, progress: float):
        if progress_callback:
            progress_callback(stage, progress)

    update_progress("Indexing cells...", 0.0)
    context = SnapshotContext(demand, supply, config or SnapshotConfig(), indexer)

    bounds = compute_time_bounds(context.demand, context.supply)
    if bounds is None or context.mode is ValueMode.NONE:
        update_progress("No data loaded", 1.0)
        return DistributionResult(samples=[], mode=context.mode)

    effective_from, effective_to = clamp_range(start, end, bounds)
    if effective_from > effective_to:
        logger.debug("Empty sweep range %s > %s", effective_from, effective_to)
        update_progress("Empty time range", 1.0)
        return DistributionResult(
            samples=[],
            mode=context.mode,
            effective_from=effective_from,
            effective_to=effective_to,
        )

    instants = sample_instants(effective_from, effective_to, step_minutes)
    samples = []
    for i, instant in enumerate(instants):
        for cell_id, value in context.values_at(instant):
            value = float(value)
            if math.isfinite(value):
                samples.append(DistributionSample(value=value, cell_id=cell_id, instant=instant))
        update_progress(f"Sampled {instant:%Y-%m-%d %H:%M}", (i + 1) / len(instants))

    elapsed = time.time() - start_time
    logger.debug(
        "Sampled %d instants -> %d values in %.2fs", len(instants), len(samples), elapsed
    )

    return DistributionResult(
        samples=samples,
        mode=context.mode,
        effective_from=effective_from,
        effective_to=effective_to,
        instants_sampled=len(instants),
        processing_time_seconds=elapsed,
    )


def summarize(samples: Sequence[DistributionSample]) -> Optional[DistributionSummary]:
    """Count, min, median, mean and max of a population; None when empty."""
    if not samples:
        return None

    values = np.sort(np.array([sample.value for sample in samples], dtype=float))
    n = len(values)
    return DistributionSummary(
        n=n,
        min=float(values[0]),
        median=float(values[int(n * 0.5)]),
        mean=float(values.mean()),
        max=float(values[-1]),
    )


def clamp_bins(n_bins: float) -> int:
    return max(MIN_BINS, min(MAX_BINS, int(math.floor(n_bins + 0.5))))


def build_histogram(
    samples: Sequence[DistributionSample],
    n_bins: int = 20
) -> List[HistogramBin]:
    """
    Bin a value population into equal-width bins between its min and max.

    Bin index is floor((value - min) / width), clamped to the last bin so the
    maximum lands inside. When every value is equal a single bin holds them all.

    Args:
        samples: Population to bin; non-finite values are skipped
        n_bins: Requested bin count, clamped to [5, 60]

    Returns:
        List of HistogramBin ordered by ascending value range
    """
    finite = [sample for sample in samples if math.isfinite(sample.value)]
    if not finite:
        return []

    n_bins = clamp_bins(n_bins)

    low = math.inf
    high = -math.inf
    for sample in finite:
        if sample.value < low:
            low = sample.value
        if sample.value > high:
            high = sample.value

    if low == high:
        return [HistogramBin(label=f"{low:.2f}", count=len(finite), low=low, high=high, samples=finite)]

    width = (high - low) / n_bins
    members = [[] for _ in range(n_bins)]
    for sample in finite:
        index = int(math.floor((sample.value - low) / width))
        members[min(n_bins - 1, max(0, index))].append(sample)

    bins = []
    for i, bin_samples in enumerate(members):
        bin_low = low + i * width
        bin_high = low + (i + 1) * width
        bins.append(HistogramBin(
            label=f"{bin_low:.2f}–{bin_high:.2f}",
            count=len(bin_samples),
            low=bin_low,
            high=bin_high,
            samples=bin_samples,
        ))
    return bins


def histogram_frame(bins: Sequence[HistogramBin]) -> pd.DataFrame:
    """Histogram as (value, frequency) rows for CSV export."""
    return pd.DataFrame({
        "value": [b.label for b in bins],
        "frequency": [b.count for b in bins],
    })


def bin_entries_frame(histogram_bin: HistogramBin) -> pd.DataFrame:
    """Drill-down rows (cell_id, instant, value) of one bin."""
    return pd.DataFrame(
        [(s.cell_id, s.instant, s.value) for s in histogram_bin.samples],
        columns=["cell_id", "instant", "value"],
    )


def export_filename(
    mode: ValueMode,
    start: Optional[pd.Timestamp],
    end: Optional[pd.Timestamp]
) -> str:
    kind = "prices" if mode is ValueMode.PRICE else "ratios"
    from_tag = f"{start:%Y%m%d-%H%M}" if start is not None else "from"
    to_tag = f"{end:%Y%m%d-%H%M}" if end is not None else "to"
    return f"distribution-{kind}-{from_tag}-{to_tag}.csv"


def distribution_title(mode: ValueMode, policy: RatioPolicy) -> str:
    if mode is ValueMode.PRICE:
        return "Price distribution"
    if mode is ValueMode.COEFFICIENT:
        policy_label = {
            RatioPolicy.RAW: "raw ratio",
            RatioPolicy.LOG: "log ratio",
            RatioPolicy.ZSCORE: "z-score",
        }[RatioPolicy(policy)]
        return f"Coefficient distribution ({policy_label})"
    if mode is ValueMode.DEMAND:
        return "Demand distribution (events per hex)"
    if mode is ValueMode.SUPPLY:
        return "Supply distribution (vehicles per hex)"
    return "Distribution"


if __name__ == "__main__":
    # Simple CLI for sweeping uploaded files without the dashboard
    import argparse
    from pathlib import Path

    from ingest import load_demand, load_multipliers, load_supply

    parser = argparse.ArgumentParser(description="Sample the demand/supply value distribution over time")
    parser.add_argument("--demand", type=str, help="Demand events file (CSV or Excel)")
    parser.add_argument("--supply", type=str, help="Supply records file (CSV or Excel)")
    parser.add_argument("--multipliers", type=str, help="Multiplier table file (CSV or Excel)")
    parser.add_argument("--base-price", type=float, default=0.0, help="Base price (0 disables pricing)")
    parser.add_argument("--resolution", type=int, default=8, help="H3 resolution (0-15)")
    parser.add_argument("--lookback", type=float, default=60, help="Demand lookback window in minutes")
    parser.add_argument("--policy", type=str, default=RatioPolicy.ZSCORE.value,
                        choices=[p.value for p in RatioPolicy], help="Ratio policy")
    parser.add_argument("--from", dest="start", type=str, default=None, help="Range start")
    parser.add_argument("--to", dest="end", type=str, default=None, help="Range end")
    parser.add_argument("--step", type=int, default=15, help="Sampling step in minutes")
    parser.add_argument("--bins", type=int, default=20, help="Histogram bins (5-60)")
    parser.add_argument("--output", type=str, default=None, help="Histogram CSV output path")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    demand = load_demand(args.demand) if args.demand else None
    supply = load_supply(args.supply) if args.supply else None
    multipliers = tuple(load_multipliers(args.multipliers)) if args.multipliers else ()

    config = SnapshotConfig(
        resolution=args.resolution,
        lookback_minutes=args.lookback,
        policy=RatioPolicy(args.policy),
        base_price=args.base_price,
        multipliers=multipliers,
    )

    def progress_callback(stage, progress):
        print(f"[{progress*100:.1f}%] {stage}")

    result = sample_distribution(
        demand,
        supply,
        config,
        start=pd.Timestamp(args.start) if args.start else None,
        end=pd.Timestamp(args.end) if args.end else None,
        step_minutes=args.step,
        progress_callback=progress_callback,
    )

    print(f"\n{distribution_title(result.mode, config.policy)}")
    summary = summarize(result.samples)
    if summary is None:
        print("No values found for the selected time range.")
    else:
        print(f"  Range: {result.effective_from} -> {result.effective_to}")
        print(f"  Instants sampled: {result.instants_sampled:,}")
        print(f"  Samples: {summary.n:,}")
        print(f"  Min / Median / Mean / Max: "
              f"{summary.min:.2f} / {summary.median:.2f} / {summary.mean:.2f} / {summary.max:.2f}")
        print(f"  Processing time: {result.processing_time_seconds:.2f}s")

        bins = build_histogram(result.samples, args.bins)
        output_path = Path(args.output or export_filename(result.mode, result.effective_from, result.effective_to))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        histogram_frame(bins).to_csv(output_path, index=False)
        print(f"\nSaved histogram to {output_path}")
