"""
Demand/Supply Snapshot Processor

This module turns demand events (trip requests) and supply records (vehicle
availability windows) into per-cell values on an H3 hexagonal grid for a single
reference instant: demand/supply ratios, prices, or raw counts depending on
which datasets are loaded.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from hex_index import DEFAULT_INDEXER, H3Indexer, validate_resolution


logger = logging.getLogger(__name__)


DEMAND_COLUMNS = ("timestamp", "latitude", "longitude")
SUPPLY_COLUMNS = ("start_time", "end_time", "latitude", "longitude")


class RatioPolicy(str, Enum):
    """How a cell's demand/supply pair is turned into a ratio."""
    RAW = "raw"
    LOG = "log"
    ZSCORE = "zscore"


class ValueMode(str, Enum):
    """Which value a snapshot emits per cell, decided by the loaded datasets."""
    PRICE = "price"
    COEFFICIENT = "coefficient"
    DEMAND = "demand"
    SUPPLY = "supply"
    NONE = "none"


@dataclass(frozen=True)
class MultiplierRule:
    """One step of the ratio -> price multiplier table."""
    min_ratio: float
    multiplier: float


@dataclass(frozen=True)
class SnapshotConfig:
    """Configuration for snapshot computation."""
    resolution: int = 8            # H3 resolution (0-15)
    lookback_minutes: float = 60   # demand window ending at the snapshot instant
    policy: RatioPolicy = RatioPolicy.ZSCORE
    base_price: float = 0.0        # <= 0 disables pricing
    multipliers: Tuple[MultiplierRule, ...] = ()


@dataclass(frozen=True)
class TimeBounds:
    """Observed time span of the loaded datasets."""
    start: pd.Timestamp
    end: pd.Timestamp


@dataclass
class CellCounts:
    """Per-cell demand and supply counts for one snapshot."""
    demand: Dict[str, int]
    supply: Dict[str, int]
    cell_ids: List[str]

    @property
    def total_demand(self) -> int:
        return sum(self.demand.values())

    @property
    def total_supply(self) -> int:
        return sum(self.supply.values())


@dataclass(frozen=True)
class CellAggregate:
    """One rendered cell of a snapshot. Halo cells have active=False and zero values."""
    cell_id: str
    demand_count: int
    supply_count: int
    ratio: float
    final_price: float
    value: float
    latitude: float
    longitude: float
    active: bool = True


@dataclass
class Snapshot:
    """Aggregated state of all cells at one reference instant."""
    instant: pd.Timestamp
    mode: ValueMode
    active: List[CellAggregate] = field(default_factory=list)
    inactive: List[CellAggregate] = field(default_factory=list)
    total_demand: int = 0
    total_supply: int = 0

    @property
    def cells(self) -> List[CellAggregate]:
        return self.active + self.inactive

    def to_frame(self) -> pd.DataFrame:
        """Flatten active and halo cells into a DataFrame for map layers."""
        columns = [
            "cell_id", "demand_count", "supply_count", "ratio", "final_price",
            "value", "latitude", "longitude", "active",
        ]
        rows = [[getattr(cell, name) for name in columns] for cell in self.cells]
        df = pd.DataFrame(rows, columns=columns)
        df["label"] = [display_label(cell, self.mode) for cell in self.cells]
        return df


def empty_demand() -> pd.DataFrame:
    """Demand frame with the canonical schema and no rows."""
    return pd.DataFrame({
        "timestamp": pd.Series(dtype="datetime64[ns]"),
        "latitude": pd.Series(dtype=float),
        "longitude": pd.Series(dtype=float),
    })


def empty_supply() -> pd.DataFrame:
    """Supply frame with the canonical schema and no rows."""
    return pd.DataFrame({
        "start_time": pd.Series(dtype="datetime64[ns]"),
        "end_time": pd.Series(dtype="datetime64[ns]"),
        "latitude": pd.Series(dtype=float),
        "longitude": pd.Series(dtype=float),
    })


# =============================================================================
# Temporal filter
# =============================================================================

def demand_window_mask(
    timestamps: pd.Series,
    instant: pd.Timestamp,
    lookback_minutes: float
) -> pd.Series:
    """
    Select demand events inside the trailing window ending at `instant`.

    Both window ends are inclusive: instant - lookback <= timestamp <= instant.

    Args:
        timestamps: Series of event timestamps
        instant: Reference instant
        lookback_minutes: Window length in minutes

    Returns:
        Boolean Series aligned with `timestamps`
    """
    instant = pd.Timestamp(instant)
    window_start = instant - pd.Timedelta(minutes=lookback_minutes)
    return (timestamps >= window_start) & (timestamps <= instant)


def supply_active_mask(
    start_times: pd.Series,
    end_times: pd.Series,
    instant: pd.Timestamp
) -> pd.Series:
    """Select vehicles whose availability interval contains `instant` (inclusive)."""
    instant = pd.Timestamp(instant)
    return (start_times <= instant) & (end_times >= instant)


def filter_active_demand(
    demand: pd.DataFrame,
    instant: pd.Timestamp,
    lookback_minutes: float
) -> pd.DataFrame:
    return demand[demand_window_mask(demand["timestamp"], instant, lookback_minutes)]


def filter_active_supply(supply: pd.DataFrame, instant: pd.Timestamp) -> pd.DataFrame:
    return supply[supply_active_mask(supply["start_time"], supply["end_time"], instant)]


# =============================================================================
# Spatial aggregator
# =============================================================================

def index_cells(
    frame: pd.DataFrame,
    resolution: int,
    indexer: H3Indexer = DEFAULT_INDEXER
) -> pd.Series:
    """
    Map every row's (latitude, longitude) to its hex cell id.

    Args:
        frame: DataFrame with latitude and longitude columns
        resolution: H3 resolution
        indexer: Hex indexer providing cell_id_for

    Returns:
        Series of cell ids aligned with `frame.index`
    """
    resolution = validate_resolution(resolution)
    cells = [
        indexer.cell_id_for(lat, lng, resolution)
        for lat, lng in zip(frame["latitude"].to_numpy(), frame["longitude"].to_numpy())
    ]
    return pd.Series(cells, index=frame.index, dtype=object)


def count_by_cell(cells: pd.Series) -> Dict[str, int]:
    """Count occurrences of each cell id."""
    return {cell_id: int(count) for cell_id, count in cells.value_counts(sort=False).items()}


def merge_counts(demand: Dict[str, int], supply: Dict[str, int]) -> CellCounts:
    # Union of keys, demand cells first, in first-seen order
    cell_ids = list(dict.fromkeys([*demand, *supply]))
    return CellCounts(demand=demand, supply=supply, cell_ids=cell_ids)


def aggregate_cells(
    active_demand: pd.DataFrame,
    active_supply: pd.DataFrame,
    resolution: int,
    indexer: H3Indexer = DEFAULT_INDEXER,
    demand_cells: Optional[pd.Series] = None,
    supply_cells: Optional[pd.Series] = None
) -> CellCounts:
    """
    Bucket active demand events and supply vehicles into per-cell counts.

    Each record contributes exactly 1 to its cell's counter; nothing is dropped.

    Args:
        active_demand: Demand rows already filtered to the snapshot window
        active_supply: Supply rows already filtered to the snapshot instant
        resolution: H3 resolution
        indexer: Hex indexer
        demand_cells: Precomputed cell ids of the full demand frame (looked up
            by index); the active rows are indexed on the fly when omitted
        supply_cells: Same for the supply frame

    Returns:
        CellCounts with both count maps and the union of their cell ids
    """
    if demand_cells is None:
        demand_cells = index_cells(active_demand, resolution, indexer)
    else:
        demand_cells = demand_cells.loc[active_demand.index]

    if supply_cells is None:
        supply_cells = index_cells(active_supply, resolution, indexer)
    else:
        supply_cells = supply_cells.loc[active_supply.index]

    return merge_counts(count_by_cell(demand_cells), count_by_cell(supply_cells))


# =============================================================================
# Ratio engine
# =============================================================================

def raw_ratio(demand: int, supply: int) -> float:
    if supply > 0:
        return demand / supply
    return 1.0 if demand > 0 else 0.0


def log_ratio(demand: int, supply: int) -> float:
    """ln(d+1) / ln(s+1); cells without supply fall back like raw_ratio."""
    if supply > 0:
        return math.log(demand + 1) / math.log(supply + 1)
    return 1.0 if demand > 0 else 0.0


@dataclass
class RunningStats:
    """Welford single-pass accumulator for mean and sample variance."""
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def push(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def std(self) -> float:
        """Sample standard deviation (n-1 denominator), 0 with fewer than two values."""
        if self.count < 2:
            return 0.0
        return math.sqrt(max(self.m2, 0.0) / (self.count - 1))


_PAIR_POLICIES = {
    RatioPolicy.RAW: raw_ratio,
    RatioPolicy.LOG: log_ratio,
}


def zscore_ratios(counts: CellCounts) -> Dict[str, float]:
    """
    Z-score normalize raw ratios across every cell of the snapshot.

    First pass computes raw ratios and running statistics, second pass emits
    (raw - mean) / std. With zero spread the raw ratios are returned unchanged.
    """
    raw = {}
    stats = RunningStats()
    for cell_id in counts.cell_ids:
        value = raw_ratio(counts.demand.get(cell_id, 0), counts.supply.get(cell_id, 0))
        raw[cell_id] = value
        stats.push(value)

    std = stats.std
    if std <= 0:
        return raw
    return {cell_id: (value - stats.mean) / std for cell_id, value in raw.items()}


def compute_ratios(counts: CellCounts, policy: RatioPolicy = RatioPolicy.RAW) -> Dict[str, float]:
    """
    Compute the per-cell ratio for every cell under the selected policy.

    Args:
        counts: Per-cell demand/supply counts of one snapshot
        policy: RAW, LOG or ZSCORE

    Returns:
        Dictionary of cell id -> ratio
    """
    policy = RatioPolicy(policy)
    if policy is RatioPolicy.ZSCORE:
        return zscore_ratios(counts)

    ratio_fn = _PAIR_POLICIES[policy]
    return {
        cell_id: ratio_fn(counts.demand.get(cell_id, 0), counts.supply.get(cell_id, 0))
        for cell_id in counts.cell_ids
    }


# =============================================================================
# Pricing resolver
# =============================================================================

def resolve_multiplier(ratio: float, rules: Sequence[MultiplierRule]) -> float:
    """
    Look up the price multiplier for a ratio.

    Rules are sorted descending by min_ratio on every call; the first rule with
    min_ratio <= ratio wins. Ratios below every threshold get the multiplier of
    the lowest threshold. An empty table yields 1.
    """
    if not rules:
        return 1.0

    ordered = sorted(rules, key=lambda rule: rule.min_ratio, reverse=True)
    for rule in ordered:
        if ratio >= rule.min_ratio:
            return rule.multiplier
    return ordered[-1].multiplier


def pricing_enabled(rules: Sequence[MultiplierRule], base_price: float) -> bool:
    return len(rules) > 0 and base_price > 0


def resolve_price(ratio: float, rules: Sequence[MultiplierRule], base_price: float) -> float:
    """Final price = multiplier * base_price; 0 when base_price <= 0."""
    if base_price <= 0:
        return 0.0
    return resolve_multiplier(ratio, rules) * base_price


def select_mode(
    has_demand: bool,
    has_supply: bool,
    rules: Sequence[MultiplierRule],
    base_price: float
) -> ValueMode:
    """
    Decide which value snapshots emit.

    The decision uses the whole loaded datasets, not the per-instant subsets.
    """
    if has_demand and has_supply:
        if pricing_enabled(rules, base_price):
            return ValueMode.PRICE
        return ValueMode.COEFFICIENT
    if has_demand:
        return ValueMode.DEMAND
    if has_supply:
        return ValueMode.SUPPLY
    return ValueMode.NONE


# =============================================================================
# Snapshot composer
# =============================================================================

class SnapshotContext:
    """
    Inputs of one computation run with per-row cell ids precomputed.

    Cell ids depend only on coordinates and resolution, so a sweep over many
    instants indexes each row once and only re-applies the temporal masks.
    """

    def __init__(
        self,
        demand: Optional[pd.DataFrame],
        supply: Optional[pd.DataFrame],
        config: SnapshotConfig,
        indexer: H3Indexer = DEFAULT_INDEXER
    ):
        if config.lookback_minutes < 0:
            raise ValueError(f"lookback_minutes must be >= 0, got {config.lookback_minutes}")

        # Unique row labels so cell ids can be looked up by index
        self.demand = (demand if demand is not None else empty_demand()).reset_index(drop=True)
        self.supply = (supply if supply is not None else empty_supply()).reset_index(drop=True)
        self.config = config
        self.indexer = indexer
        self.mode = select_mode(
            len(self.demand) > 0,
            len(self.supply) > 0,
            config.multipliers,
            config.base_price,
        )
        self.demand_cells = index_cells(self.demand, config.resolution, indexer)
        self.supply_cells = index_cells(self.supply, config.resolution, indexer)

        logger.debug(
            "Snapshot context: %d demand rows, %d supply rows, res=%d, mode=%s",
            len(self.demand), len(self.supply), config.resolution, self.mode.value,
        )

    def counts_at(self, instant: pd.Timestamp) -> CellCounts:
        return aggregate_cells(
            filter_active_demand(self.demand, instant, self.config.lookback_minutes),
            filter_active_supply(self.supply, instant),
            self.config.resolution,
            self.indexer,
            demand_cells=self.demand_cells,
            supply_cells=self.supply_cells,
        )

    def cell_values(self, counts: CellCounts) -> Iterator[Tuple[str, int, int, float, float, float]]:
        """
        Yield (cell_id, demand, supply, ratio, final_price, value) per active cell.

        One-sided modes emit the raw count verbatim as both ratio and value.
        """
        mode = self.mode
        if mode is ValueMode.NONE:
            return

        ratios = {}
        if mode in (ValueMode.PRICE, ValueMode.COEFFICIENT):
            ratios = compute_ratios(counts, self.config.policy)

        for cell_id in counts.cell_ids:
            demand = counts.demand.get(cell_id, 0)
            supply = counts.supply.get(cell_id, 0)

            if mode is ValueMode.DEMAND:
                yield cell_id, demand, supply, float(demand), 0.0, float(demand)
            elif mode is ValueMode.SUPPLY:
                yield cell_id, demand, supply, float(supply), 0.0, float(supply)
            elif mode is ValueMode.PRICE:
                ratio = ratios[cell_id]
                price = resolve_price(ratio, self.config.multipliers, self.config.base_price)
                yield cell_id, demand, supply, ratio, price, price
            else:
                ratio = ratios[cell_id]
                yield cell_id, demand, supply, ratio, 0.0, ratio

    def values_at(self, instant: pd.Timestamp) -> List[Tuple[str, float]]:
        """Return (cell_id, value) for every active cell at `instant`."""
        return [
            (cell_id, value)
            for cell_id, _, _, _, _, value in self.cell_values(self.counts_at(instant))
        ]

    def halo(self, active_ids: Sequence[str]) -> List[str]:
        """Ring-1 neighbors of the active cells that are not active themselves."""
        active = set(active_ids)
        halo = {}
        for cell_id in active_ids:
            try:
                neighbors = self.indexer.ring_neighbors(cell_id, 1)
            except Exception as e:
                logger.debug("Neighbor lookup failed for %s: %s", cell_id, e)
                continue
            for neighbor in neighbors:
                if neighbor not in active:
                    halo.setdefault(neighbor, None)
        return list(halo)

    def snapshot(self, instant: pd.Timestamp, include_halo: bool = True) -> Snapshot:
        instant = pd.Timestamp(instant)
        counts = self.counts_at(instant)

        active = []
        for cell_id, demand, supply, ratio, price, value in self.cell_values(counts):
            lat, lng = self.indexer.center_of(cell_id)
            active.append(CellAggregate(
                cell_id=cell_id,
                demand_count=demand,
                supply_count=supply,
                ratio=ratio,
                final_price=price,
                value=value,
                latitude=lat,
                longitude=lng,
            ))

        inactive = []
        if include_halo:
            for cell_id in self.halo([cell.cell_id for cell in active]):
                lat, lng = self.indexer.center_of(cell_id)
                inactive.append(CellAggregate(
                    cell_id=cell_id,
                    demand_count=0,
                    supply_count=0,
                    ratio=0.0,
                    final_price=0.0,
                    value=0.0,
                    latitude=lat,
                    longitude=lng,
                    active=False,
                ))

        return Snapshot(
            instant=instant,
            mode=self.mode,
            active=active,
            inactive=inactive,
            total_demand=counts.total_demand,
            total_supply=counts.total_supply,
        )


def compose_snapshot(
    demand: Optional[pd.DataFrame],
    supply: Optional[pd.DataFrame],
    instant: pd.Timestamp,
    config: Optional[SnapshotConfig] = None,
    indexer: H3Indexer = DEFAULT_INDEXER,
    include_halo: bool = True
) -> Snapshot:
    """
    Compute the per-cell state of the grid at one instant.

    Args:
        demand: Demand events (timestamp, latitude, longitude), or None
        supply: Supply records (start_time, end_time, latitude, longitude), or None
        instant: Reference instant
        config: SnapshotConfig; defaults are used when omitted
        indexer: Hex indexer
        include_halo: Add ring-1 neighbors of active cells as inactive cells

    Returns:
        Snapshot with one CellAggregate per active cell plus the halo
    """
    context = SnapshotContext(demand, supply, config or SnapshotConfig(), indexer)
    return context.snapshot(instant, include_halo=include_halo)


# =============================================================================
# Dataset helpers
# =============================================================================

def compute_time_bounds(
    demand: Optional[pd.DataFrame],
    supply: Optional[pd.DataFrame]
) -> Optional[TimeBounds]:
    """
    Compute the overall observed time span of the loaded datasets.

    Uses demand timestamps and both ends of every supply interval.

    Returns:
        TimeBounds, or None when no timestamps are loaded
    """
    series = []
    if demand is not None and len(demand) > 0:
        series.append(demand["timestamp"])
    if supply is not None and len(supply) > 0:
        series.append(supply["start_time"])
        series.append(supply["end_time"])
    if not series:
        return None

    all_times = pd.concat(series, ignore_index=True).dropna()
    if all_times.empty:
        return None
    return TimeBounds(start=all_times.min(), end=all_times.max())


def default_snapshot_time(demand: Optional[pd.DataFrame]) -> Optional[pd.Timestamp]:
    """Mean demand timestamp, used as the initial map instant after an upload."""
    if demand is None or len(demand) == 0:
        return None
    return demand["timestamp"].mean()


def format_ratio(ratio: float) -> str:
    """Compact label for a ratio or count shown on the map."""
    if math.isinf(ratio):
        return "∞" if ratio > 0 else "-∞"
    if ratio == 0:
        return "0"
    if 0 < ratio < 0.01:
        return "<0.01"
    if -0.01 < ratio < 0:
        return ">-0.01"
    if abs(ratio) < 1:
        return f"{ratio:.2f}"
    if abs(ratio) < 10:
        return f"{ratio:.1f}"
    return str(int(math.floor(ratio + 0.5)))


def display_label(cell: CellAggregate, mode: ValueMode) -> str:
    if not cell.active:
        return ""
    if mode is ValueMode.PRICE:
        return f"${cell.final_price:.2f}"
    return format_ratio(cell.ratio)
