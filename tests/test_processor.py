"""
Processor Tests
===============

Temporal filter, spatial aggregation, ratio policies, pricing and snapshot
composition.
"""

import math
import random
import statistics

import h3
import pandas as pd
import pytest

from processor import (
    CellCounts,
    MultiplierRule,
    RatioPolicy,
    RunningStats,
    SnapshotConfig,
    SnapshotContext,
    ValueMode,
    aggregate_cells,
    compose_snapshot,
    compute_ratios,
    compute_time_bounds,
    default_snapshot_time,
    demand_window_mask,
    empty_demand,
    empty_supply,
    filter_active_demand,
    filter_active_supply,
    format_ratio,
    log_ratio,
    raw_ratio,
    resolve_multiplier,
    resolve_price,
    select_mode,
)


MIDTOWN = (40.7580, -73.9855)
DOWNTOWN = (40.7128, -74.0060)
BROOKLYN = (40.6782, -73.9442)

RES = 8

PRICING_TABLE = [
    MultiplierRule(min_ratio=0, multiplier=1),
    MultiplierRule(min_ratio=0.5, multiplier=1.5),
    MultiplierRule(min_ratio=1, multiplier=2),
]


def cell(point, resolution=RES):
    return h3.latlng_to_cell(point[0], point[1], resolution)


def values_by_cell(snapshot):
    return {c.cell_id: c.value for c in snapshot.active}


class TestTemporalFilter:
    """Active-set selection for one instant."""

    def test_demand_window_is_inclusive(self, t0, make_demand):
        demand = make_demand([
            (t0 - pd.Timedelta(minutes=60), *MIDTOWN),   # window start
            (t0, *MIDTOWN),                              # instant
            (t0 - pd.Timedelta(minutes=61), *MIDTOWN),   # too old
            (t0 + pd.Timedelta(seconds=1), *MIDTOWN),    # future
        ])
        active = filter_active_demand(demand, t0, 60)
        assert len(active) == 2
        assert list(active.index) == [0, 1]

    def test_supply_interval_is_inclusive(self, t0, make_supply):
        supply = make_supply([
            (t0, t0 + pd.Timedelta(hours=1), *MIDTOWN),
            (t0 - pd.Timedelta(hours=1), t0, *MIDTOWN),
            (t0 + pd.Timedelta(minutes=1), t0 + pd.Timedelta(hours=1), *MIDTOWN),
            (t0 - pd.Timedelta(hours=2), t0 - pd.Timedelta(hours=1), *MIDTOWN),
        ])
        active = filter_active_supply(supply, t0)
        assert list(active.index) == [0, 1]

    def test_empty_inputs_give_empty_outputs(self, t0):
        assert filter_active_demand(empty_demand(), t0, 60).empty
        assert filter_active_supply(empty_supply(), t0).empty

    def test_mask_is_aligned_with_input(self, t0, make_demand):
        demand = make_demand([(t0, *MIDTOWN), (t0 - pd.Timedelta(days=1), *MIDTOWN)])
        mask = demand_window_mask(demand["timestamp"], t0, 30)
        assert mask.tolist() == [True, False]


class TestSpatialAggregator:
    """Bucketing records into per-cell counts."""

    def test_counts_are_conserved(self, t0, make_demand, make_supply):
        rng = random.Random(7)
        demand_rows = [
            (t0 - pd.Timedelta(minutes=rng.randint(0, 120)),
             40.70 + rng.random() * 0.1, -74.02 + rng.random() * 0.1)
            for _ in range(300)
        ]
        supply_rows = [
            (t0 - pd.Timedelta(minutes=rng.randint(0, 90)),
             t0 + pd.Timedelta(minutes=rng.randint(-30, 90)),
             40.70 + rng.random() * 0.1, -74.02 + rng.random() * 0.1)
            for _ in range(200)
        ]
        demand = make_demand(demand_rows)
        supply = make_supply([r for r in supply_rows if r[0] <= r[1]])

        active_demand = filter_active_demand(demand, t0, 60)
        active_supply = filter_active_supply(supply, t0)
        counts = aggregate_cells(active_demand, active_supply, RES)

        assert sum(counts.demand.values()) == len(active_demand)
        assert sum(counts.supply.values()) == len(active_supply)
        assert counts.total_demand == len(active_demand)
        assert set(counts.cell_ids) == set(counts.demand) | set(counts.supply)
        assert len(counts.cell_ids) == len(set(counts.cell_ids))

    def test_snapshot_counts_are_conserved(self, t0, make_demand, make_supply):
        rng = random.Random(11)
        demand = make_demand([
            (t0 - pd.Timedelta(minutes=rng.randint(0, 120)),
             40.70 + rng.random() * 0.1, -74.02 + rng.random() * 0.1)
            for _ in range(200)
        ])
        supply = make_supply([
            (t0 - pd.Timedelta(minutes=rng.randint(0, 90)),
             t0 + pd.Timedelta(minutes=rng.randint(0, 90)),
             40.70 + rng.random() * 0.1, -74.02 + rng.random() * 0.1)
            for _ in range(100)
        ])
        # Non-unique labels as produced by concatenating uploads
        demand.index = [i % 7 for i in range(len(demand))]
        context = SnapshotContext(demand, supply, SnapshotConfig(resolution=RES, lookback_minutes=60))

        for instant in [t0 - pd.Timedelta(minutes=45), t0, t0 + pd.Timedelta(minutes=30)]:
            counts = context.counts_at(instant)
            assert counts.total_demand == len(filter_active_demand(demand, instant, 60))
            assert counts.total_supply == len(filter_active_supply(supply, instant))
            expected = aggregate_cells(
                filter_active_demand(demand.reset_index(drop=True), instant, 60),
                filter_active_supply(supply, instant),
                RES,
            )
            assert counts.demand == expected.demand
            assert counts.supply == expected.supply

    def test_same_point_counts_once_per_record(self, t0, make_demand, make_supply):
        demand = make_demand([(t0, *MIDTOWN), (t0, *MIDTOWN), (t0, *DOWNTOWN)])
        supply = make_supply([(t0, t0, *BROOKLYN)])

        counts = aggregate_cells(demand, supply, RES)

        assert counts.demand == {cell(MIDTOWN): 2, cell(DOWNTOWN): 1}
        assert counts.supply == {cell(BROOKLYN): 1}
        assert set(counts.cell_ids[:2]) == {cell(MIDTOWN), cell(DOWNTOWN)}
        assert counts.cell_ids[2] == cell(BROOKLYN)

    def test_invalid_resolution_rejected(self, make_demand, t0):
        demand = make_demand([(t0, *MIDTOWN)])
        with pytest.raises(ValueError):
            aggregate_cells(demand, empty_supply(), 16)


class TestRatioEngine:
    """Ratio policies and z-score normalization."""

    @pytest.mark.parametrize("demand,supply,expected", [
        (4, 2, 2.0),
        (1, 4, 0.25),
        (3, 0, 1.0),
        (0, 0, 0.0),
        (0, 5, 0.0),
    ])
    def test_raw_ratio(self, demand, supply, expected):
        assert raw_ratio(demand, supply) == expected

    def test_log_ratio(self):
        assert log_ratio(3, 1) == pytest.approx(math.log(4) / math.log(2))
        assert log_ratio(0, 3) == 0.0
        assert log_ratio(2, 0) == 1.0
        assert log_ratio(0, 0) == 0.0

    def test_policies_are_total(self):
        for d in range(0, 25):
            for s in range(0, 25):
                assert math.isfinite(raw_ratio(d, s))
                assert math.isfinite(log_ratio(d, s))

    def test_zscore_matches_direct_computation(self):
        cells = ["a", "b", "c", "d", "e"]
        counts = CellCounts(
            demand={c: i + 1 for i, c in enumerate(cells)},
            supply={c: 1 for c in cells},
            cell_ids=cells,
        )
        raw = [1.0, 2.0, 3.0, 4.0, 5.0]
        mean = statistics.mean(raw)
        std = statistics.stdev(raw)

        ratios = compute_ratios(counts, RatioPolicy.ZSCORE)

        for c, x in zip(cells, raw):
            assert abs(ratios[c] - (x - mean) / std) < 1e-9

    def test_zscore_without_spread_keeps_raw_ratio(self):
        counts = CellCounts(demand={"a": 2, "b": 4}, supply={"a": 1, "b": 2}, cell_ids=["a", "b"])
        assert compute_ratios(counts, RatioPolicy.ZSCORE) == {"a": 2.0, "b": 2.0}

    def test_policy_accepts_string_values(self):
        counts = CellCounts(demand={"a": 3}, supply={"a": 1}, cell_ids=["a"])
        assert compute_ratios(counts, "raw") == {"a": 3.0}
        assert compute_ratios(counts, "log") == {"a": pytest.approx(math.log(4) / math.log(2))}

    def test_running_stats(self):
        stats = RunningStats()
        for value in [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]:
            stats.push(value)
        assert stats.mean == pytest.approx(5.0)
        assert stats.std == pytest.approx(statistics.stdev([2, 4, 4, 4, 5, 5, 7, 9]))

    def test_running_stats_single_value_has_zero_std(self):
        stats = RunningStats()
        stats.push(3.0)
        assert stats.std == 0.0


class TestPricingResolver:
    """Threshold lookup and mode selection."""

    @pytest.mark.parametrize("order", [[0, 1, 2], [2, 1, 0], [1, 2, 0]])
    def test_threshold_lookup(self, order):
        table = [PRICING_TABLE[i] for i in order]
        assert resolve_multiplier(0.7, table) == 1.5
        assert resolve_multiplier(-5, table) == 1
        assert resolve_multiplier(10, table) == 2
        assert resolve_multiplier(1, table) == 2
        assert resolve_multiplier(0.5, table) == 1.5

    def test_below_every_threshold_uses_lowest_rule(self):
        table = [MultiplierRule(1.0, 1.2), MultiplierRule(2.0, 1.8)]
        assert resolve_multiplier(0.1, table) == 1.2

    def test_empty_table_is_identity(self):
        assert resolve_multiplier(3.0, []) == 1.0

    def test_resolve_price(self):
        assert resolve_price(0.7, PRICING_TABLE, 10.0) == pytest.approx(15.0)
        assert resolve_price(0.7, PRICING_TABLE, 0.0) == 0.0
        assert resolve_price(0.7, [], 8.0) == 8.0

    def test_select_mode(self):
        assert select_mode(True, True, PRICING_TABLE, 10.0) is ValueMode.PRICE
        assert select_mode(True, True, PRICING_TABLE, 0.0) is ValueMode.COEFFICIENT
        assert select_mode(True, True, [], 10.0) is ValueMode.COEFFICIENT
        assert select_mode(True, False, PRICING_TABLE, 10.0) is ValueMode.DEMAND
        assert select_mode(False, True, PRICING_TABLE, 10.0) is ValueMode.SUPPLY
        assert select_mode(False, False, [], 0.0) is ValueMode.NONE


class TestSnapshotComposer:
    """End-to-end snapshots for one instant."""

    @pytest.fixture
    def mixed_data(self, t0, make_demand, make_supply):
        demand = make_demand([
            (t0 - pd.Timedelta(minutes=10), *MIDTOWN),
            (t0 - pd.Timedelta(minutes=20), *MIDTOWN),
            (t0 - pd.Timedelta(minutes=5), *DOWNTOWN),
        ])
        supply = make_supply([
            (t0 - pd.Timedelta(hours=1), t0 + pd.Timedelta(hours=1), *MIDTOWN),
            (t0 - pd.Timedelta(hours=1), t0 + pd.Timedelta(hours=1), *BROOKLYN),
        ])
        return demand, supply

    def test_demand_only_emits_raw_counts(self, t0, make_demand):
        demand = make_demand([
            (t0, *MIDTOWN), (t0, *MIDTOWN), (t0, *MIDTOWN), (t0, *DOWNTOWN),
        ])
        config = SnapshotConfig(resolution=RES, policy=RatioPolicy.ZSCORE, base_price=10.0,
                                multipliers=tuple(PRICING_TABLE))

        snapshot = compose_snapshot(demand, None, t0, config, include_halo=False)

        assert snapshot.mode is ValueMode.DEMAND
        assert values_by_cell(snapshot) == {cell(MIDTOWN): 3.0, cell(DOWNTOWN): 1.0}
        for c in snapshot.active:
            assert c.ratio == c.demand_count
            assert c.final_price == 0.0

    def test_supply_only_emits_raw_counts(self, t0, make_supply):
        supply = make_supply([(t0, t0, *BROOKLYN), (t0, t0, *BROOKLYN)])
        snapshot = compose_snapshot(None, supply, t0, SnapshotConfig(resolution=RES), include_halo=False)
        assert snapshot.mode is ValueMode.SUPPLY
        assert values_by_cell(snapshot) == {cell(BROOKLYN): 2.0}

    def test_coefficient_mode_uses_raw_ratio(self, t0, mixed_data):
        demand, supply = mixed_data
        config = SnapshotConfig(resolution=RES, policy=RatioPolicy.RAW)

        snapshot = compose_snapshot(demand, supply, t0, config, include_halo=False)

        assert snapshot.mode is ValueMode.COEFFICIENT
        assert values_by_cell(snapshot) == {
            cell(MIDTOWN): 2.0,
            cell(DOWNTOWN): 1.0,
            cell(BROOKLYN): 0.0,
        }
        assert snapshot.total_demand == 3
        assert snapshot.total_supply == 2

    def test_price_mode(self, t0, mixed_data):
        demand, supply = mixed_data
        config = SnapshotConfig(resolution=RES, policy=RatioPolicy.RAW, base_price=10.0,
                                multipliers=tuple(PRICING_TABLE))

        snapshot = compose_snapshot(demand, supply, t0, config, include_halo=False)

        assert snapshot.mode is ValueMode.PRICE
        prices = {c.cell_id: c.final_price for c in snapshot.active}
        assert prices == {cell(MIDTOWN): 20.0, cell(DOWNTOWN): 20.0, cell(BROOKLYN): 10.0}
        assert values_by_cell(snapshot) == prices

        frame = snapshot.to_frame()
        labels = dict(zip(frame["cell_id"], frame["label"]))
        assert labels[cell(BROOKLYN)] == "$10.00"

    def test_zscore_is_global_to_snapshot(self, t0, mixed_data):
        demand, supply = mixed_data
        config = SnapshotConfig(resolution=RES, policy=RatioPolicy.ZSCORE)

        snapshot = compose_snapshot(demand, supply, t0, config, include_halo=False)

        raw = [2.0, 1.0, 0.0]
        mean, std = statistics.mean(raw), statistics.stdev(raw)
        values = values_by_cell(snapshot)
        assert values[cell(MIDTOWN)] == pytest.approx((2.0 - mean) / std)
        assert values[cell(BROOKLYN)] == pytest.approx((0.0 - mean) / std)

    def test_mode_follows_whole_dataset_not_instant(self, t0, make_demand, make_supply):
        demand = make_demand([(t0, *MIDTOWN)])
        # Vehicle exists in the upload but isn't available at t0
        supply = make_supply([(t0 + pd.Timedelta(days=1), t0 + pd.Timedelta(days=2), *BROOKLYN)])

        snapshot = compose_snapshot(demand, supply, t0, SnapshotConfig(resolution=RES, policy=RatioPolicy.RAW),
                                    include_halo=False)

        assert snapshot.mode is ValueMode.COEFFICIENT
        assert values_by_cell(snapshot) == {cell(MIDTOWN): 1.0}

    def test_no_data_gives_empty_snapshot(self, t0):
        snapshot = compose_snapshot(None, None, t0)
        assert snapshot.mode is ValueMode.NONE
        assert snapshot.active == []
        assert snapshot.inactive == []

    def test_halo_is_ring_minus_active(self, t0, make_demand):
        demand = make_demand([(t0, *MIDTOWN)])
        snapshot = compose_snapshot(demand, None, t0, SnapshotConfig(resolution=RES))

        origin = cell(MIDTOWN)
        expected = set(h3.grid_disk(origin, 1)) - {origin}
        assert [c.cell_id for c in snapshot.active] == [origin]
        assert {c.cell_id for c in snapshot.inactive} == expected
        assert len(snapshot.inactive) == len(expected)
        for c in snapshot.inactive:
            assert not c.active
            assert (c.demand_count, c.supply_count, c.ratio, c.final_price, c.value) == (0, 0, 0.0, 0.0, 0.0)

    def test_halo_skips_adjacent_active_cells(self, t0, make_demand):
        origin = cell(MIDTOWN)
        neighbor = next(c for c in h3.grid_disk(origin, 1) if c != origin)
        lat, lng = h3.cell_to_latlng(neighbor)
        demand = make_demand([(t0, *MIDTOWN), (t0, lat, lng)])

        snapshot = compose_snapshot(demand, None, t0, SnapshotConfig(resolution=RES))

        active_ids = {c.cell_id for c in snapshot.active}
        assert active_ids == {origin, neighbor}
        assert not active_ids & {c.cell_id for c in snapshot.inactive}

    def test_neighbor_lookup_failure_is_not_fatal(self, t0, make_demand, flaky_indexer):
        demand = make_demand([(t0, *MIDTOWN), (t0, *BROOKLYN)])
        indexer = flaky_indexer(failing={cell(MIDTOWN)})

        snapshot = compose_snapshot(demand, None, t0, SnapshotConfig(resolution=RES), indexer=indexer)

        assert len(snapshot.active) == 2
        expected = set(h3.grid_disk(cell(BROOKLYN), 1)) - {cell(BROOKLYN)}
        assert {c.cell_id for c in snapshot.inactive} == expected

    def test_negative_lookback_rejected(self, t0, make_demand):
        demand = make_demand([(t0, *MIDTOWN)])
        with pytest.raises(ValueError):
            compose_snapshot(demand, None, t0, SnapshotConfig(lookback_minutes=-1))


class TestDatasetHelpers:
    """Time bounds, default instant and labels."""

    def test_time_bounds_cover_demand_and_supply(self, t0, make_demand, make_supply):
        demand = make_demand([(t0, *MIDTOWN), (t0 + pd.Timedelta(hours=1), *MIDTOWN)])
        supply = make_supply([(t0 - pd.Timedelta(hours=2), t0 + pd.Timedelta(hours=3), *BROOKLYN)])

        bounds = compute_time_bounds(demand, supply)

        assert bounds.start == t0 - pd.Timedelta(hours=2)
        assert bounds.end == t0 + pd.Timedelta(hours=3)

    def test_time_bounds_empty(self):
        assert compute_time_bounds(None, None) is None
        assert compute_time_bounds(empty_demand(), empty_supply()) is None

    def test_default_snapshot_time_is_mean(self, t0, make_demand):
        demand = make_demand([(t0, *MIDTOWN), (t0 + pd.Timedelta(hours=2), *MIDTOWN)])
        assert default_snapshot_time(demand) == t0 + pd.Timedelta(hours=1)
        assert default_snapshot_time(None) is None

    @pytest.mark.parametrize("value,expected", [
        (0.0, "0"),
        (0.005, "<0.01"),
        (-0.005, ">-0.01"),
        (0.456, "0.46"),
        (-0.5, "-0.50"),
        (2.34, "2.3"),
        (12.5, "13"),
        (float("inf"), "∞"),
    ])
    def test_format_ratio(self, value, expected):
        assert format_ratio(value) == expected
