"""
Test Configuration
==================

Pytest fixtures shared by the processor, distribution and ingestion tests.
"""

import pandas as pd
import pytest

from hex_index import H3Indexer


@pytest.fixture
def t0():
    return pd.Timestamp("2024-01-15 08:00:00")


@pytest.fixture
def make_demand():
    """Build a demand frame from (timestamp, lat, lng) tuples."""
    def _make(rows):
        return pd.DataFrame(
            {
                "timestamp": pd.to_datetime([r[0] for r in rows]),
                "latitude": [float(r[1]) for r in rows],
                "longitude": [float(r[2]) for r in rows],
            }
        )
    return _make


@pytest.fixture
def make_supply():
    """Build a supply frame from (start, end, lat, lng) tuples."""
    def _make(rows):
        return pd.DataFrame(
            {
                "start_time": pd.to_datetime([r[0] for r in rows]),
                "end_time": pd.to_datetime([r[1] for r in rows]),
                "latitude": [float(r[2]) for r in rows],
                "longitude": [float(r[3]) for r in rows],
            }
        )
    return _make


class FlakyIndexer(H3Indexer):
    """H3 indexer whose neighbor lookup fails for selected cells."""

    def __init__(self, failing=()):
        self.failing = set(failing)

    def ring_neighbors(self, cell_id, radius=1):
        if cell_id in self.failing:
            raise ValueError(f"lookup failed for {cell_id}")
        return super().ring_neighbors(cell_id, radius)


@pytest.fixture
def flaky_indexer():
    return FlakyIndexer
