"""Great-circle distance, coordinate parsing, and the grid-bucketed DistanceIndex."""

import logging
import math
from collections import defaultdict
from typing import Dict, Hashable, Iterable, List, Optional, Set, Tuple

from models.structure import Structure
from config.defaults import EARTH_RADIUS_M, GRID_MAX_ABS_LAT

logger = logging.getLogger(__name__)

# Floating-point slack so cell edges never cut off a pair sitting exactly on the threshold
_EDGE_SLACK = 1.0 + 1e-9


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def parse_coordinates(text) -> Optional[Tuple[float, float]]:
    """Parse a "lat, lng" string. Returns None for blank, placeholder or out-of-range values."""
    if text is None:
        return None
    text = str(text).strip()
    if not text or text.lower() in ("undefined", "null", "nan", "none"):
        return None
    parts = [p.strip() for p in text.split(",")]
    if len(parts) < 2:
        return None
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if math.isnan(lat) or math.isnan(lng):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def _lat_span_deg(meters: float) -> float:
    # Any two points closer than `meters` differ by at most this much latitude
    return math.degrees(meters / EARTH_RADIUS_M) * _EDGE_SLACK


def _lng_span_deg(meters: float, cos_floor: float) -> float:
    # haversine: sin(d / 2R) >= cos(lat_max) * sin(d_lng / 2), so d_lng is bounded below 180
    ratio = meters / (2 * EARTH_RADIUS_M * cos_floor) if cos_floor > 0 else 1.0
    if ratio >= 1.0:
        return 360.0
    return math.degrees(2 * math.asin(ratio)) * _EDGE_SLACK


class DistanceIndex:
    """Coarse lat/lng grid answering "who is within T meters of X" without pairwise scans.

    Cells are at least `cell_meters` tall and wide for every latitude present in the
    input, so a query at the same threshold only needs the home cell and its 8
    neighbours. Longitude columns wrap at the antimeridian. Structures without
    coordinates are not indexed and have no neighbours.
    """

    def __init__(self, cell_meters: float, cos_floor: float, n_cols: int):
        self.cell_meters = cell_meters
        self._cos_floor = cos_floor
        self._n_cols = n_cols
        self._col_width = 360.0 / n_cols
        self._row_height = _lat_span_deg(cell_meters)
        self._buckets: Dict[Tuple[int, int], List[Tuple[Hashable, float, float]]] = defaultdict(list)
        self._points: Dict[Hashable, Tuple[float, float]] = {}

    @classmethod
    def build(cls, structures: Iterable[Structure], cell_meters: float) -> "DistanceIndex":
        """Bucket all structures with coordinates into a grid sized to `cell_meters`."""
        if cell_meters <= 0:
            raise ValueError(f"cell_meters must be positive, got {cell_meters}")
        located = [s for s in structures if s.has_coordinates]

        max_abs_lat = max((abs(s.lat) for s in located), default=0.0)
        if max_abs_lat > GRID_MAX_ABS_LAT:
            cos_floor, n_cols = 0.0, 1
        else:
            cos_floor = math.cos(math.radians(max_abs_lat))
            n_cols = max(1, int(360.0 // _lng_span_deg(cell_meters, cos_floor)))

        index = cls(cell_meters, cos_floor, n_cols)
        for s in located:
            index._points[s.structure_id] = (s.lat, s.lng)
            index._buckets[index._cell(s.lat, s.lng)].append((s.structure_id, s.lat, s.lng))

        logger.debug(
            "DistanceIndex: %d points in %d buckets (cell=%.0fm, cols=%d)",
            len(index._points), len(index._buckets), cell_meters, n_cols,
        )
        return index

    def __len__(self) -> int:
        return len(self._points)

    def __contains__(self, structure_id) -> bool:
        return structure_id in self._points

    def _cell(self, lat: float, lng: float) -> Tuple[int, int]:
        row = int(math.floor((lat + 90.0) / self._row_height))
        col = int(math.floor((lng + 180.0) / self._col_width)) % self._n_cols
        return row, col

    def _candidate_cells(self, lat: float, lng: float, threshold_meters: float) -> Set[Tuple[int, int]]:
        row, col = self._cell(lat, lng)
        row_rings = max(1, math.ceil(_lat_span_deg(threshold_meters) / self._row_height))
        col_rings = max(1, math.ceil(_lng_span_deg(threshold_meters, self._cos_floor) / self._col_width))

        if 2 * col_rings + 1 >= self._n_cols:
            cols = range(self._n_cols)
        else:
            cols = [(col + dc) % self._n_cols for dc in range(-col_rings, col_rings + 1)]
        return {(row + dr, c) for dr in range(-row_rings, row_rings + 1) for c in cols}

    def neighbors(self, structure: Structure, threshold_meters: float) -> Set[Hashable]:
        """Ids of other indexed structures within `threshold_meters` of `structure`."""
        if not structure.has_coordinates:
            return set()
        found = set()
        for cell in self._candidate_cells(structure.lat, structure.lng, threshold_meters):
            for other_id, lat, lng in self._buckets.get(cell, ()):
                if other_id == structure.structure_id:
                    continue
                if haversine_m(structure.lat, structure.lng, lat, lng) <= threshold_meters:
                    found.add(other_id)
        return found

    def adjacency(self, structures: Iterable[Structure], threshold_meters: float) -> Dict[Hashable, Set[Hashable]]:
        """Neighbour sets for every given structure (empty for unlocated ones)."""
        return {s.structure_id: self.neighbors(s, threshold_meters) for s in structures}
