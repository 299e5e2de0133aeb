"""
Upload Ingestion

Reads uploaded CSV/Excel files into the canonical demand, supply and
multiplier structures used by the processor. Column names are matched against
a list of common aliases; rows that can't be parsed are skipped.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from processor import DEMAND_COLUMNS, SUPPLY_COLUMNS, MultiplierRule


logger = logging.getLogger(__name__)


EXCEL_SUFFIXES = (".xlsx", ".xlsm", ".xls")
EXCEL_EPOCH = "1899-12-30"

TIMESTAMP_ALIASES = ("timestamp", "time", "datetime", "date", "ts")
LATITUDE_ALIASES = ("latitude", "lat", "y")
LONGITUDE_ALIASES = ("longitude", "lon", "lng", "x")
START_ALIASES = ("starttime", "start", "start_time", "begin")
END_ALIASES = ("endtime", "end", "end_time", "finish")
MIN_RATIO_ALIASES = ("minratio", "min_ratio", "ratio", "threshold")
MULTIPLIER_ALIASES = ("multiplier", "mult", "factor")

Source = Union[str, Path, BinaryIO]


class IngestError(ValueError):
    """Raised when an uploaded file can't be read or holds no usable rows."""


def read_table(source: Source, filename: Optional[str] = None) -> pd.DataFrame:
    """
    Read the first sheet of an Excel file, or a CSV file.

    Args:
        source: Path or file-like object
        filename: Name used to pick the format when `source` is file-like

    Returns:
        Raw DataFrame with the file's own column names

    Raises:
        IngestError: If the file can't be parsed
    """
    name = filename or getattr(source, "name", None) or str(source)
    try:
        if Path(name).suffix.lower() in EXCEL_SUFFIXES:
            return pd.read_excel(source, sheet_name=0)
        return pd.read_csv(source)
    except Exception as e:
        raise IngestError(f"Failed to read {name}: {e}")


def find_column(df: pd.DataFrame, aliases: Sequence[str]) -> Optional[str]:
    """Return the first column whose name matches an alias, ignoring case and padding."""
    lookup = {str(column).strip().lower(): column for column in df.columns}
    for alias in aliases:
        if alias in lookup:
            return lookup[alias]
    return None


def _require_columns(df: pd.DataFrame, wanted: Dict[str, Sequence[str]], kind: str) -> Dict[str, str]:
    found = {}
    for target, aliases in wanted.items():
        column = find_column(df, aliases)
        if column is None:
            raise IngestError(f"No {target} column found in {kind} file (tried: {', '.join(aliases)})")
        found[target] = column
    return found


def parse_timestamps(values: pd.Series) -> pd.Series:
    """
    Parse a column of timestamps into naive datetime64 values.

    Accepts datetime values, Excel serial day numbers and date strings;
    anything else becomes NaT.
    """
    if pd.api.types.is_datetime64_any_dtype(values):
        parsed = pd.to_datetime(values, errors="coerce", utc=True)
        return parsed.dt.tz_localize(None)

    numeric = pd.to_numeric(values, errors="coerce")
    serial = pd.to_datetime(numeric, unit="D", origin=EXCEL_EPOCH, errors="coerce")
    text = pd.to_datetime(
        values.astype(object).where(numeric.isna()), errors="coerce", utc=True, format="mixed"
    ).dt.tz_localize(None)
    return serial.fillna(text)


def parse_coordinates(values: pd.Series) -> pd.Series:
    return pd.to_numeric(values, errors="coerce").astype(float)


def _valid_location(lat: pd.Series, lng: pd.Series) -> pd.Series:
    # Rows sitting on a 0 axis are placeholder coordinates
    return np.isfinite(lat) & np.isfinite(lng) & (lat != 0) & (lng != 0)


def parse_demand(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Convert raw rows into demand events.

    Args:
        raw: DataFrame with timestamp/latitude/longitude columns under any alias

    Returns:
        DataFrame with columns timestamp, latitude, longitude

    Raises:
        IngestError: If a column is missing or no row is valid
    """
    columns = _require_columns(raw, {
        "timestamp": TIMESTAMP_ALIASES,
        "latitude": LATITUDE_ALIASES,
        "longitude": LONGITUDE_ALIASES,
    }, "demand")

    df = pd.DataFrame({
        "timestamp": parse_timestamps(raw[columns["timestamp"]]),
        "latitude": parse_coordinates(raw[columns["latitude"]]),
        "longitude": parse_coordinates(raw[columns["longitude"]]),
    })
    valid = df["timestamp"].notna() & _valid_location(df["latitude"], df["longitude"])
    df = df[valid].reset_index(drop=True)[list(DEMAND_COLUMNS)]

    if df.empty:
        raise IngestError("No valid demand events found in file")

    logger.info("Loaded %d demand events (%d rows skipped)", len(df), len(raw) - len(df))
    return df


def parse_supply(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Convert raw rows into supply records.

    Rows whose start is after their end are skipped.

    Returns:
        DataFrame with columns start_time, end_time, latitude, longitude

    Raises:
        IngestError: If a column is missing or no row is valid
    """
    columns = _require_columns(raw, {
        "start_time": START_ALIASES,
        "end_time": END_ALIASES,
        "latitude": LATITUDE_ALIASES,
        "longitude": LONGITUDE_ALIASES,
    }, "supply")

    df = pd.DataFrame({
        "start_time": parse_timestamps(raw[columns["start_time"]]),
        "end_time": parse_timestamps(raw[columns["end_time"]]),
        "latitude": parse_coordinates(raw[columns["latitude"]]),
        "longitude": parse_coordinates(raw[columns["longitude"]]),
    })
    valid = (
        df["start_time"].notna()
        & df["end_time"].notna()
        & (df["start_time"] <= df["end_time"])
        & _valid_location(df["latitude"], df["longitude"])
    )
    df = df[valid].reset_index(drop=True)[list(SUPPLY_COLUMNS)]

    if df.empty:
        raise IngestError("No valid supply rows found in file")

    logger.info("Loaded %d supply rows (%d rows skipped)", len(df), len(raw) - len(df))
    return df


def parse_multipliers(raw: pd.DataFrame) -> List[MultiplierRule]:
    """Convert raw rows into multiplier rules, keeping file order."""
    columns = _require_columns(raw, {
        "min_ratio": MIN_RATIO_ALIASES,
        "multiplier": MULTIPLIER_ALIASES,
    }, "multiplier")

    min_ratios = pd.to_numeric(raw[columns["min_ratio"]], errors="coerce")
    multipliers = pd.to_numeric(raw[columns["multiplier"]], errors="coerce")
    valid = np.isfinite(min_ratios) & np.isfinite(multipliers)

    rules = [
        MultiplierRule(min_ratio=float(r), multiplier=float(m))
        for r, m in zip(min_ratios[valid], multipliers[valid])
    ]
    if not rules:
        raise IngestError("No valid multiplier rows found in file")

    logger.info("Loaded %d multiplier rows", len(rules))
    return rules


def load_demand(source: Source, filename: Optional[str] = None) -> pd.DataFrame:
    return parse_demand(read_table(source, filename))


def load_supply(source: Source, filename: Optional[str] = None) -> pd.DataFrame:
    return parse_supply(read_table(source, filename))


def load_multipliers(source: Source, filename: Optional[str] = None) -> List[MultiplierRule]:
    return parse_multipliers(read_table(source, filename))
