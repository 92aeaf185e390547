"""File upload parsing: CSV/XLSX catalog exports into Structure lists."""

import logging
from typing import List, Optional

import pandas as pd

from models.structure import Structure
from models.distribution import FilterSnapshot
from engine.geo import parse_coordinates
from config.defaults import REMOVED_STATUSES

logger = logging.getLogger(__name__)

# Catalog column names (as exported from the structures table)
ID_COLUMN = "ID"
CATEGORY_COLUMN = "Size"
REGION_COLUMN = "Municipality"
LOCALITY_COLUMN = "City"
TAG_COLUMN = "Ad_Type"
COORDINATES_COLUMN = "GPS_Coordinates"
LAT_COLUMN = "Latitude"
LNG_COLUMN = "Longitude"
STATUS_COLUMNS = ["Status", "maintenance_status", "maintenance_type"]


def _text(row, column: str) -> str:
    if column not in row.index:
        return ""
    value = row[column]
    if pd.isna(value):
        return ""
    return str(value).strip()


def _structure_id(value):
    """Keep integer ids as ints (Excel hands them back as floats)."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if hasattr(value, "item"):
        value = value.item()
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value
    return str(value).strip() if isinstance(value, str) else value


def row_coordinates(row):
    """Coordinates from the "lat, lng" column, falling back to Latitude/Longitude."""
    coords = parse_coordinates(_text(row, COORDINATES_COLUMN))
    if coords is None and LAT_COLUMN in row.index and LNG_COLUMN in row.index:
        coords = parse_coordinates(f"{_text(row, LAT_COLUMN)},{_text(row, LNG_COLUMN)}")
    return coords


def is_removed(row) -> bool:
    return any(_text(row, c).lower() in REMOVED_STATUSES for c in STATUS_COLUMNS)


def parse_structures(df: pd.DataFrame) -> List[Structure]:
    """Convert a catalog DataFrame into Structure objects, skipping removed structures."""
    structures = []
    skipped = 0
    for _, row in df.iterrows():
        if is_removed(row):
            skipped += 1
            continue
        coords = row_coordinates(row)
        structures.append(Structure(
            structure_id=_structure_id(row[ID_COLUMN]),
            category=_text(row, CATEGORY_COLUMN),
            region=_text(row, REGION_COLUMN),
            locality=_text(row, LOCALITY_COLUMN),
            tag=_text(row, TAG_COLUMN),
            lat=coords[0] if coords else None,
            lng=coords[1] if coords else None,
        ))
    if skipped:
        logger.info("Skipped %d removed structure(s)", skipped)
    return structures


def filter_structures(structures: List[Structure], snapshot: Optional[FilterSnapshot]) -> List[Structure]:
    """Apply the category/region/locality/tag selection; order is preserved."""
    if snapshot is None:
        return list(structures)
    return [s for s in structures if snapshot.matches(s)]


def load_file(uploaded_file) -> pd.DataFrame:
    """Load an uploaded file or path (CSV or XLSX) into a DataFrame."""
    name = str(getattr(uploaded_file, "name", uploaded_file)).lower()
    if name.endswith(".csv"):
        return pd.read_csv(uploaded_file)
    elif name.endswith(".xlsx") or name.endswith(".xls"):
        return pd.read_excel(uploaded_file, engine="openpyxl")
    else:
        raise ValueError(f"Unsupported file format: {name}. Use CSV or XLSX.")
