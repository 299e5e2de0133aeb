"""
H3 Hex Indexer

Thin wrapper around the h3 (v4) API used by the snapshot and distribution
pipelines. Kept as a class so the pipelines can be handed an alternative
indexer (e.g. in tests) without touching h3 directly.
"""

from typing import List, Tuple

import h3


MIN_RESOLUTION = 0
MAX_RESOLUTION = 15


def validate_resolution(resolution: int) -> int:
    """Return resolution as int, raising ValueError outside the H3 range."""
    resolution = int(resolution)
    if not MIN_RESOLUTION <= resolution <= MAX_RESOLUTION:
        raise ValueError(
            f"H3 resolution must be between {MIN_RESOLUTION} and {MAX_RESOLUTION}, got {resolution}"
        )
    return resolution


class H3Indexer:
    """Pure-function access to the hexagonal grid."""

    def cell_id_for(self, lat: float, lng: float, resolution: int) -> str:
        return h3.latlng_to_cell(lat, lng, resolution)

    def center_of(self, cell_id: str) -> Tuple[float, float]:
        """Return the (lat, lng) center of a cell."""
        return h3.cell_to_latlng(cell_id)

    def ring_neighbors(self, cell_id: str, radius: int = 1) -> List[str]:
        """
        Return all cells within `radius` grid steps, the origin included.

        May raise an h3 error near pentagons or for malformed ids; callers
        treat that as "no neighbors".
        """
        return list(h3.grid_disk(cell_id, radius))


DEFAULT_INDEXER = H3Indexer()
