"""Chart data prep helpers for the presentation layer.

Each helper reshapes computed registry, dispatch or MEF tables into the frame a
chart binds to. Nothing here renders; empty selections raise
:class:`EmptySelectionError` so callers can show a "no data" state.
"""

from typing import Iterable, Optional

import numpy as np
import pandas as pd

from services.dispatch_core import DispatchResult
from services.errors import ConfigurationError, EmptySelectionError
from services.marginal_emissions import convert_mef_units, summarize_mef_band
from services.plant_registry import FUEL_TYPES, PlantRegistry

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def prepare_mef_band_data(mef_df: pd.DataFrame, unit: str = "kg/MWh") -> pd.DataFrame:
    """Mean ± std-dev band per sample, with the display unit applied."""
    band = summarize_mef_band(mef_df)
    for col in ("mean", "std", "p05", "p95"):
        band[col] = convert_mef_units(band[col], unit)
    band["band_low"] = band["mean"] - band["std"]
    band["band_high"] = band["mean"] + band["std"]
    band["unit"] = unit
    return band


def prepare_mef_heatmap_data(mef_df: pd.DataFrame, unit: str = "kg/MWh") -> pd.DataFrame:
    """Return a weekday × hour-of-day pivot of mean MEF across runs and weeks."""
    if mef_df.empty:
        raise EmptySelectionError("No marginal emissions estimates for the heatmap.")
    if not {"weekday", "hour"}.issubset(mef_df.columns):
        raise ConfigurationError("Heatmap needs 'weekday' and 'hour' columns; load samples need timestamps.")

    pivot = (
        mef_df.pivot_table(index="weekday", columns="hour", values="mef_kg_per_mwh", aggfunc="mean")
        .reindex(index=pd.RangeIndex(0, 7, name="weekday"))
        .reindex(columns=pd.RangeIndex(0, 24, name="hour"), fill_value=np.nan)
    )
    pivot = convert_mef_units(pivot, unit)
    pivot.index = pd.Index(WEEKDAY_LABELS, name="weekday")
    return pivot


def prepare_dispatch_curve_data(
    result: DispatchResult,
    run_ids: Optional[Iterable[int]] = None,
) -> pd.DataFrame:
    """Step-curve rows (capacity start/end per plant) for the selected runs."""
    selected = result.select_runs(run_ids) if run_ids is not None else result
    df = selected.to_frame()
    if df.empty:
        raise EmptySelectionError("No dispatch runs to plot.")
    df["capacity_start_mw"] = df["cumulative_capacity_mw"] - df["capacity_mw"]
    return df[
        [
            "run_id",
            "order",
            "plant_id",
            "fuel_type",
            "drawn_cost",
            "capacity_start_mw",
            "cumulative_capacity_mw",
            "cumulative_ef_kg_per_mwh",
        ]
    ]


def prepare_cost_boxplot_data(result: DispatchResult) -> pd.DataFrame:
    """Five-number summary of drawn cost per fuel type across all runs."""
    df = result.to_frame()
    if df.empty:
        raise EmptySelectionError("No dispatch runs to summarize.")
    grouped = df.groupby("fuel_type")["drawn_cost"]
    summary = grouped.agg(
        min="min",
        q1=lambda s: s.quantile(0.25),
        median="median",
        q3=lambda s: s.quantile(0.75),
        max="max",
        draws="count",
    )
    order = [ft for ft in FUEL_TYPES if ft in summary.index]
    return summary.reindex(order).reset_index()


def prepare_registry_map_data(registry: PlantRegistry, territory: Optional[str] = None) -> pd.DataFrame:
    """Plant coordinates, capacity and fuel type for a scatter/map view."""
    selected = registry.for_territory(territory) if territory else registry
    df = selected.plants
    df = df.dropna(subset=["latitude", "longitude"])
    if df.empty:
        raise EmptySelectionError("No plants with coordinates for this selection.")
    return df[["plant_id", "territory", "latitude", "longitude", "fuel_type", "capacity_mw", "ef_kg_per_mwh"]]
