"""
CSV readers and writers for price histories, universes and timelines.

**Conceptual**: This module is the only CSV boundary in the system. Price
histories read by the CSV price provider and equity timelines written by the
CLI runner both pass through here, so timestamp handling and sort order are
decided in one place:
  - Timestamps on disk: "YYYY-MM-DD HH:MM:SS" (space, not 'T'), treated as UTC.
  - Rows on disk: strictly descending by timestamp (newest first).

**Rule**: Never call pd.read_csv / df.to_csv for time series from strategies,
the portfolio or orchestration code. Go through these functions.
"""

from pathlib import Path

import pandas as pd

from flipper_lab.data.schemas import (
    RAW_PRICE_REQUIRED_COLUMNS,
    SchemaValidationError,
    validate_price_frame,
    validate_strictly_descending,
)


def normalize_timestamp_column(df: pd.DataFrame, col: str = "timestamp") -> pd.DataFrame:
    """
    Parse a timestamp column and sort the frame newest-first.

    Returns empty frames unchanged. The column stays datetime64 in memory.

    Raises:
        KeyError: If the column doesn't exist.
        ValueError: If the column can't be parsed as datetime.
    """
    if df.empty:
        return df.copy()

    df_normalized = df.copy()
    if col not in df_normalized.columns:
        raise KeyError(
            f"Timestamp column '{col}' not found in DataFrame. "
            f"Available columns: {list(df_normalized.columns)}"
        )

    if not pd.api.types.is_datetime64_any_dtype(df_normalized[col]):
        try:
            df_normalized[col] = pd.to_datetime(df_normalized[col], format='ISO8601')
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Failed to parse '{col}' column as datetime. "
                f"Expected ISO 8601 format (e.g., '2024-01-15 00:00:00'). Error: {e}"
            )

    return df_normalized.sort_values(col, ascending=False).reset_index(drop=True)


def write_normalized_csv(df: pd.DataFrame, path: Path | str, timestamp_col: str = "timestamp") -> None:
    """
    Write a time series to CSV in the canonical on-disk format.

    Creates the parent directory if needed. Used for equity timelines and any
    other result series produced by actions/ scripts.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    df_to_write = normalize_timestamp_column(df, col=timestamp_col)
    if not df_to_write.empty:
        df_to_write[timestamp_col] = df_to_write[timestamp_col].dt.strftime('%Y-%m-%d %H:%M:%S')

    df_to_write.to_csv(path, index=False)


def read_price_history_csv(path: Path | str, instrument_name: str | None = None) -> pd.DataFrame:
    """
    Read one instrument's price history CSV with schema validation.

    **Functionally**:
      - Parses `timestamp` to datetime (accepts both 'T' and space separators).
      - Validates the canonical columns and strictly descending order.

    Args:
        path: Path to the CSV (e.g., "data/prices/19002.csv").
        instrument_name: Optional label used in error messages.

    Returns:
        Canonical price frame, newest first.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        SchemaValidationError: If the CSV doesn't conform to the price schema.
    """
    path = Path(path)
    context = instrument_name or str(path)

    if not path.exists():
        raise FileNotFoundError(
            f"Price history CSV not found: {path}. "
            f"Ensure the file exists and the path is correct."
        )

    try:
        df = pd.read_csv(path)
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise SchemaValidationError(f"{context}: Failed to read CSV. Error: {e}")

    if 'timestamp' not in df.columns:
        raise SchemaValidationError(
            f"{context}: 'timestamp' column missing. Found columns: {list(df.columns)}."
        )
    try:
        df['timestamp'] = pd.to_datetime(df['timestamp'], format='ISO8601')
    except (ValueError, TypeError) as e:
        raise SchemaValidationError(
            f"{context}: Failed to parse 'timestamp' column as datetime. Error: {e}"
        )

    validate_price_frame(df, context=context)
    validate_strictly_descending(df['timestamp'], context=context)
    return df


def write_price_history_csv(df: pd.DataFrame, path: Path | str) -> None:
    """
    Write a canonical price frame to CSV, newest first.

    Raises:
        SchemaValidationError: If the frame is not a valid price frame.
    """
    path = Path(path)
    validate_price_frame(df, context=str(path))

    df_to_write = normalize_timestamp_column(df[RAW_PRICE_REQUIRED_COLUMNS])
    validate_strictly_descending(df_to_write['timestamp'], context=str(path))

    path.parent.mkdir(parents=True, exist_ok=True)
    df_to_write['timestamp'] = df_to_write['timestamp'].dt.strftime('%Y-%m-%d %H:%M:%S')
    df_to_write.to_csv(path, index=False)


def read_universe_csv(path: Path | str) -> pd.DataFrame:
    """
    Read an instrument universe file with columns id, name, list_name.

    `name` and `list_name` are optional; missing values become None.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        SchemaValidationError: If the `id` column is missing.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Universe CSV not found: {path}.")

    df = pd.read_csv(path, dtype={'id': str})
    if 'id' not in df.columns:
        raise SchemaValidationError(
            f"{path}: 'id' column missing. Found columns: {list(df.columns)}."
        )
    for column in ('name', 'list_name'):
        if column not in df.columns:
            df[column] = None
    df = df.astype(object).where(df.notna(), None)
    return df[['id', 'name', 'list_name']]


def write_universe_csv(df: pd.DataFrame, path: Path | str) -> None:
    """Write an instrument universe (id, name, list_name) to CSV."""
    path = Path(path)
    missing = {'id', 'name', 'list_name'} - set(df.columns)
    if missing:
        raise SchemaValidationError(f"{path}: Missing universe columns: {sorted(missing)}.")
    path.parent.mkdir(parents=True, exist_ok=True)
    df[['id', 'name', 'list_name']].to_csv(path, index=False)
