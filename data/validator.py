"""Schema validation for uploaded structure catalogs."""

from dataclasses import dataclass, field
from typing import List

import pandas as pd

from data.loader import (
    CATEGORY_COLUMN, COORDINATES_COLUMN, ID_COLUMN, LAT_COLUMN, LNG_COLUMN, row_coordinates,
)


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


STRUCTURE_REQUIRED_COLUMNS = [
    ID_COLUMN,
    CATEGORY_COLUMN,
]


def _check_required_columns(df: pd.DataFrame, required: List[str], file_label: str) -> ValidationResult:
    result = ValidationResult()
    missing = [col for col in required if col not in df.columns]
    if missing:
        result.is_valid = False
        result.errors.append(f"{file_label}: Missing required columns: {', '.join(missing)}")
    if df.empty:
        result.is_valid = False
        result.errors.append(f"{file_label}: File contains no data rows.")
    return result


def validate_structures(df: pd.DataFrame) -> ValidationResult:
    result = _check_required_columns(df, STRUCTURE_REQUIRED_COLUMNS, "Structures")
    if not result.is_valid:
        return result

    has_gps = COORDINATES_COLUMN in df.columns
    has_latlng = LAT_COLUMN in df.columns and LNG_COLUMN in df.columns
    if not has_gps and not has_latlng:
        result.is_valid = False
        result.errors.append(
            f"Structures: Need a '{COORDINATES_COLUMN}' column or both "
            f"'{LAT_COLUMN}' and '{LNG_COLUMN}'."
        )
        return result

    if df[ID_COLUMN].isna().any():
        result.is_valid = False
        result.errors.append("Structures: Some rows have no ID.")

    dupes = df.duplicated(subset=[ID_COLUMN], keep=False) & df[ID_COLUMN].notna()
    if dupes.any():
        result.is_valid = False
        result.errors.append(f"Structures: Duplicate IDs: {df[dupes][ID_COLUMN].unique().tolist()}")

    blank_size = df[CATEGORY_COLUMN].isna() | (df[CATEGORY_COLUMN].astype(str).str.strip() == "")
    if blank_size.any():
        result.warnings.append(
            f"Structures: {int(blank_size.sum())} row(s) without a size will be grouped as 'unknown'."
        )

    unlocated = sum(1 for _, row in df.iterrows() if row_coordinates(row) is None)
    if unlocated:
        result.warnings.append(
            f"Structures: {unlocated} row(s) have no usable coordinates. "
            "They are balanced but not spread by proximity."
        )
    return result
