"""Input parsing utilities for plant, fuel-cost and load-profile tables."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

import numpy as np
import pandas as pd
from pandas.tseries.frequencies import to_offset

from services.errors import ConfigurationError
from services.plant_registry import (
    COST_COLUMN_ALIASES,
    PLANT_COLUMN_ALIASES,
    REQUIRED_COST_COLUMNS,
    REQUIRED_PLANT_COLUMNS,
    canonicalize_columns,
)

logger = logging.getLogger(__name__)

TIME_FEATURES: tuple[str, ...] = ("hour", "weekday", "quarter", "week", "month")
PARQUET_SUFFIXES = {".parquet", ".pq"}


def _read_table(candidate: Any) -> pd.DataFrame:
    """Read CSV or Parquet by suffix; file-like objects are parsed as CSV."""
    if isinstance(candidate, (str, Path)) and Path(candidate).suffix.lower() in PARQUET_SUFFIXES:
        return pd.read_parquet(candidate)
    return pd.read_csv(candidate)


def _read_first(path_candidates: List[Any], clean, label: str) -> pd.DataFrame:
    last_err: Optional[Exception] = None
    for candidate in path_candidates:
        try:
            return clean(_read_table(candidate))
        except (OSError, ValueError, ImportError) as e:
            # ConfigurationError is a ValueError, so validation failures also fall through.
            last_err = e
            logger.debug("Could not read %s from %r: %s", label, candidate, e)
    raise ConfigurationError(
        f"Failed to read {label}. Looked for: {path_candidates}. Last error: {last_err}"
    )


def read_plant_table(path_candidates: List[Any]) -> pd.DataFrame:
    """Read a raw plant table and canonicalize eGRID-style column names."""

    def _clean(df: pd.DataFrame) -> pd.DataFrame:
        df = canonicalize_columns(df, PLANT_COLUMN_ALIASES, REQUIRED_PLANT_COLUMNS, "Plant table")
        if df.empty:
            raise ConfigurationError("Plant table has no rows.")
        return df

    return _read_first(path_candidates, _clean, "plant table")


def read_cost_table(path_candidates: List[Any]) -> pd.DataFrame:
    """Read raw marginal cost observations with ['fuel_code','marginal_cost'] columns."""

    def _clean(df: pd.DataFrame) -> pd.DataFrame:
        df = canonicalize_columns(df, COST_COLUMN_ALIASES, REQUIRED_COST_COLUMNS, "Cost table")
        if df.empty:
            raise ConfigurationError("Cost table has no rows.")
        return df

    return _read_first(path_candidates, _clean, "cost table")


def add_time_features(df: pd.DataFrame, timestamp_col: str = "timestamp") -> pd.DataFrame:
    """Add hour, weekday (Monday=0), quarter, ISO week and month columns."""

    out = df.copy()
    ts = pd.to_datetime(out[timestamp_col])
    out["hour"] = ts.dt.hour.astype(int)
    out["weekday"] = ts.dt.weekday.astype(int)
    out["quarter"] = ts.dt.quarter.astype(int)
    out["week"] = ts.dt.isocalendar().week.astype(int).to_numpy()
    out["month"] = ts.dt.month.astype(int)
    return out


def clean_load_profile(df: pd.DataFrame) -> pd.DataFrame:
    """Validate a load profile with ['timestamp','load_mw'] columns in MW.

    ``load_kw`` is accepted in place of ``load_mw`` and scaled to MW. Rows with
    unparsable timestamps or loads are dropped, duplicate timestamps are
    averaged, and time features are appended.
    """

    if "load_mw" not in df.columns and "load_kw" in df.columns:
        df = df.assign(load_mw=pd.to_numeric(df["load_kw"], errors="coerce") / 1000.0)
    if not {"timestamp", "load_mw"}.issubset(df.columns):
        raise ConfigurationError("Load profile must contain columns: timestamp, load_mw")

    df = df[["timestamp", "load_mw"]].copy()
    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce")
    df["load_mw"] = pd.to_numeric(df["load_mw"], errors="coerce")

    invalid_rows = df["timestamp"].isna() | ~np.isfinite(df["load_mw"])
    if invalid_rows.any():
        logger.warning(
            "Load profile contains unparsable timestamp/load_mw entries; dropping %d rows.",
            int(invalid_rows.sum()),
        )
        df = df.loc[~invalid_rows].copy()

    if df.empty:
        raise ConfigurationError("No valid load rows after cleaning.")

    if df["timestamp"].duplicated(keep=False).any():
        logger.warning("Duplicate timestamps found; averaging load_mw for each timestamp.")
        df = df.groupby("timestamp", as_index=False)["load_mw"].mean()

    df = df.sort_values("timestamp").reset_index(drop=True)
    df["load_mw"] = df["load_mw"].astype(float)
    return add_time_features(df)


def read_load_profile(path_candidates: List[Any]) -> pd.DataFrame:
    """Read and validate a load profile from the first readable candidate."""
    return _read_first(path_candidates, clean_load_profile, "load profile")


def infer_step_hours(load_df: pd.DataFrame, timestamp_col: str = "timestamp") -> Optional[float]:
    """Infer the timestep (hours) from load timestamps when present."""

    if timestamp_col not in load_df.columns:
        return None

    timestamps = pd.to_datetime(load_df[timestamp_col], errors="coerce").dropna().sort_values()
    if len(timestamps) < 2:
        return None

    inferred = pd.infer_freq(timestamps) if len(timestamps) >= 3 else None
    freq_td = None
    if inferred is not None:
        try:
            freq_td = pd.Timedelta(to_offset(inferred).nanos)
        except ValueError:
            freq_td = None
    if freq_td is None:
        diffs = timestamps.diff().dropna()
        if diffs.empty:
            return None
        freq_td = diffs.median()

    if freq_td <= pd.Timedelta(0):
        return None

    return float(freq_td / pd.Timedelta(hours=1))
