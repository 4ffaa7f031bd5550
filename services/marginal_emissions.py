"""Map load profiles onto dispatch curves to estimate marginal emissions factors.

For each dispatch run the cumulative-capacity / cumulative-EF curve is
interpolated at every load sample, giving one marginal emissions factor
(kg CO2eq/MWh) per (run, timestamp) pair. Loads outside a run's
cumulative-capacity range are handled by an explicit policy:

- ``"linear"``: extrapolate from the two nearest curve points (default).
- ``"error"``: raise :class:`OutOfRangeError`.
- ``"clip"``: hold the boundary value.

Extrapolated and clipped rows are flagged so estimates near the extremes can
be discounted downstream.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.interpolate import interp1d

from services.config import EXTRAPOLATION_POLICIES, ExtrapolationPolicy
from services.dispatch_core import DispatchResult, DispatchRun
from services.errors import ConfigurationError, EmptySelectionError, NumericError, OutOfRangeError
from utils.io import TIME_FEATURES, infer_step_hours

logger = logging.getLogger(__name__)

MEF_UNIT_FACTORS = {
    "kg/MWh": 1.0,
    "g/kWh": 1.0,
    "lb/MWh": 2.205,
    "t/MWh": 0.001,
}

RunsLike = Union[DispatchResult, Iterable[DispatchRun]]


def convert_mef_units(values, unit: str = "kg/MWh"):
    """Convert kg CO2eq/MWh values into a display unit."""

    try:
        factor = MEF_UNIT_FACTORS[unit]
    except KeyError:
        raise ConfigurationError(f"Unsupported unit '{unit}'. Use one of {sorted(MEF_UNIT_FACTORS)}.") from None
    return values * factor


def _validated_loads(load_samples: pd.DataFrame) -> np.ndarray:
    if "load_mw" not in load_samples.columns:
        raise ConfigurationError("Load profile must contain a 'load_mw' column.")
    loads = pd.to_numeric(load_samples["load_mw"], errors="coerce").to_numpy(dtype=float)
    if not np.isfinite(loads).all():
        raise ConfigurationError("Load profile contains missing or non-numeric load_mw values.")
    return loads


def interpolate_curve(
    capacity_mw: np.ndarray,
    ef_kg_per_mwh: np.ndarray,
    loads_mw: np.ndarray,
    policy: ExtrapolationPolicy = "linear",
    run_id: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Evaluate one dispatch curve at ``loads_mw``.

    Returns the estimated EF per load and a boolean mask of loads that fell
    outside ``[capacity_mw[0], capacity_mw[-1]]``.
    """

    if policy not in EXTRAPOLATION_POLICIES:
        raise ConfigurationError(f"extrapolation must be one of {EXTRAPOLATION_POLICIES}.")
    x = np.asarray(capacity_mw, dtype=float)
    y = np.asarray(ef_kg_per_mwh, dtype=float)
    loads = np.asarray(loads_mw, dtype=float)
    if x.size == 0:
        raise ConfigurationError("Dispatch curve has no points.")

    outside = (loads < x[0]) | (loads > x[-1])
    if policy == "error" and outside.any():
        offending = loads[outside]
        raise OutOfRangeError(
            f"{int(outside.sum())} load values fall outside the dispatch range "
            f"[{x[0]:.3f}, {x[-1]:.3f}] MW for run {run_id}.",
            run_id=run_id,
            loads_mw=offending,
        )

    steps = np.diff(x)
    if (steps < 0).any() or not np.isfinite(x).all():
        raise NumericError(
            f"Cumulative capacity must be finite and non-decreasing for run {run_id}.", run_id=run_id
        )
    # Plants too small to move the running total repeat an x value; keep the last EF at that capacity.
    distinct = np.append(steps > 0, True)
    x, y = x[distinct], y[distinct]

    if x.size == 1:
        # A single point has no slope; every load maps to that point's EF.
        return np.full(loads.shape, y[0], dtype=float), outside

    if policy == "linear":
        fn = interp1d(x, y, kind="linear", fill_value="extrapolate", assume_sorted=True)
    else:
        fn = interp1d(x, y, kind="linear", bounds_error=False, fill_value=(y[0], y[-1]), assume_sorted=True)
    return np.asarray(fn(loads), dtype=float), outside


def _as_runs(dispatch_runs: RunsLike) -> list[DispatchRun]:
    runs = list(dispatch_runs)
    if not runs:
        raise EmptySelectionError("No dispatch runs supplied.")
    return runs


def estimate_marginal_ef(
    load_samples: pd.DataFrame,
    dispatch_runs: RunsLike,
    *,
    extrapolation: ExtrapolationPolicy = "linear",
) -> pd.DataFrame:
    """Estimate a marginal EF for every (run, load sample) pair.

    The result carries ``run_id``, ``sample_index``, ``load_mw``,
    ``mef_kg_per_mwh`` and ``extrapolated`` plus ``timestamp`` and any time
    feature columns present on ``load_samples``.
    """

    if load_samples.empty:
        raise EmptySelectionError("Load profile has no samples.")
    loads = _validated_loads(load_samples)
    runs = _as_runs(dispatch_runs)

    carried = [col for col in ("timestamp",) + TIME_FEATURES if col in load_samples.columns]
    base = load_samples.loc[:, carried].reset_index(drop=True)
    base.insert(0, "sample_index", np.arange(len(base), dtype=int))
    base["load_mw"] = loads

    frames = []
    extrapolated_total = 0
    for run in runs:
        values, outside = interpolate_curve(
            run.capacity_points(), run.ef_points(), loads, extrapolation, run_id=run.run_id
        )
        extrapolated_total += int(outside.sum())
        frame = base.copy()
        frame.insert(0, "run_id", run.run_id)
        frame["mef_kg_per_mwh"] = values
        frame["extrapolated"] = outside
        frames.append(frame)

    if extrapolated_total:
        logger.warning(
            "%d of %d load samples fell outside the dispatch range and were %s.",
            extrapolated_total,
            len(loads) * len(runs),
            "extrapolated linearly" if extrapolation == "linear" else "clipped to the curve ends",
        )

    ordered = ["run_id", "sample_index"] + [c for c in carried if c == "timestamp"] + [
        "load_mw",
        "mef_kg_per_mwh",
        "extrapolated",
    ] + [c for c in carried if c != "timestamp"]
    return pd.concat(frames, ignore_index=True).loc[:, ordered]


def _band_aggregations(grouped) -> pd.DataFrame:
    return grouped["mef_kg_per_mwh"].agg(
        mean="mean",
        std="std",
        p05=lambda s: s.quantile(0.05),
        p95=lambda s: s.quantile(0.95),
        run_count="count",
    )


def summarize_mef_band(mef_df: pd.DataFrame) -> pd.DataFrame:
    """Mean, std-dev and 5th/95th percentile of MEF across runs per sample.

    A single run yields a std-dev of 0 rather than NaN.
    """

    if mef_df.empty:
        raise EmptySelectionError("No marginal emissions estimates to summarize.")
    keys = ["sample_index"] + [c for c in ("timestamp",) if c in mef_df.columns] + ["load_mw"]
    band = _band_aggregations(mef_df.groupby(keys, sort=True, dropna=False)).reset_index()
    band["std"] = band["std"].fillna(0.0)
    band["extrapolated_share"] = (
        mef_df.groupby("sample_index")["extrapolated"].mean().reindex(band["sample_index"]).to_numpy()
    )
    return band


def aggregate_mef_by(mef_df: pd.DataFrame, feature: str) -> pd.DataFrame:
    """Average MEF by a time feature (hour, weekday, quarter, week or month)."""

    if feature not in TIME_FEATURES:
        raise ConfigurationError(f"feature must be one of {TIME_FEATURES}, got '{feature}'.")
    if feature not in mef_df.columns:
        raise ConfigurationError(f"MEF table has no '{feature}' column; load samples need timestamps.")
    if mef_df.empty:
        raise EmptySelectionError("No marginal emissions estimates to aggregate.")
    out = _band_aggregations(mef_df.groupby(feature, sort=True)).reset_index()
    out["std"] = out["std"].fillna(0.0)
    return out


@dataclass(frozen=True, eq=False)
class EmissionsImpact:
    """Emissions change of a modified load profile, per run and summarized.

    Units: ``delta_energy_mwh`` in MWh, emissions in kg CO2eq.
    """

    per_run: pd.DataFrame
    mean_kg: float
    std_kg: float
    delta_energy_mwh: float
    step_hours: float


def estimate_emissions_impact(
    baseline_load: pd.DataFrame,
    scenario_load: pd.DataFrame,
    dispatch_runs: RunsLike,
    step_hours: Optional[float] = None,
    *,
    extrapolation: ExtrapolationPolicy = "linear",
) -> EmissionsImpact:
    """Estimate the emissions change when ``baseline_load`` becomes ``scenario_load``.

    The marginal EF is evaluated at the baseline load, and each run's change
    is ``sum((scenario - baseline) * mef * step_hours)``. Profiles are paired
    row by row, so they must be the same length and, when both carry
    timestamps, cover the same instants in the same order. ``step_hours`` is
    inferred from baseline timestamps when not given and defaults to 1 hour
    without timestamps.
    """

    baseline = _validated_loads(baseline_load)
    scenario = _validated_loads(scenario_load)
    if baseline.shape != scenario.shape:
        raise ConfigurationError(
            f"Baseline ({baseline.size}) and scenario ({scenario.size}) profiles must have the same length."
        )
    if "timestamp" in baseline_load.columns and "timestamp" in scenario_load.columns:
        baseline_ts = pd.to_datetime(baseline_load["timestamp"]).reset_index(drop=True)
        scenario_ts = pd.to_datetime(scenario_load["timestamp"]).reset_index(drop=True)
        mismatched = int((baseline_ts != scenario_ts).sum())
        if mismatched:
            raise ConfigurationError(
                f"Baseline and scenario timestamps differ at {mismatched} rows; profiles must cover the same instants."
            )
    if step_hours is None:
        step_hours = infer_step_hours(baseline_load) or 1.0
    if step_hours <= 0:
        raise ConfigurationError("step_hours must be positive.")

    mef_df = estimate_marginal_ef(baseline_load, dispatch_runs, extrapolation=extrapolation)
    delta = scenario - baseline
    mef_df["delta_mw"] = np.tile(delta, len(mef_df) // len(delta))
    mef_df["emissions_change_kg"] = mef_df["delta_mw"] * mef_df["mef_kg_per_mwh"] * step_hours

    per_run = (
        mef_df.groupby("run_id", sort=True)
        .agg(emissions_change_kg=("emissions_change_kg", "sum"))
        .reset_index()
    )
    per_run["delta_energy_mwh"] = float(delta.sum() * step_hours)
    std_kg = float(per_run["emissions_change_kg"].std()) if len(per_run) > 1 else 0.0
    return EmissionsImpact(
        per_run=per_run,
        mean_kg=float(per_run["emissions_change_kg"].mean()),
        std_kg=std_kg,
        delta_energy_mwh=float(delta.sum() * step_hours),
        step_hours=float(step_hours),
    )


def mef_for_run_ids(mef_df: pd.DataFrame, run_ids: Sequence[int]) -> pd.DataFrame:
    """Subset an MEF table to selected runs without re-estimating."""

    subset = mef_df[mef_df["run_id"].isin([int(r) for r in run_ids])]
    if subset.empty:
        raise EmptySelectionError(f"No marginal emissions estimates for runs {list(run_ids)}.")
    return subset.reset_index(drop=True)
