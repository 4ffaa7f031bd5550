"""Monte-Carlo merit-order dispatch over a plant registry.

Each run draws one marginal cost per plant from its fuel-type distribution,
stacks plants from cheapest to most expensive, and records the cumulative
capacity (MW) and capacity-weighted cumulative emissions factor
(kg CO2eq/MWh) along that merit order.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Iterable, Iterator, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from services.errors import ConfigurationError, EmptySelectionError, NumericError
from services.plant_registry import PlantRegistry

logger = logging.getLogger(__name__)

CURVE_COLUMNS: tuple[str, ...] = (
    "order",
    "plant_id",
    "territory",
    "fuel_type",
    "drawn_cost",
    "capacity_mw",
    "ef_kg_per_mwh",
    "cumulative_capacity_mw",
    "cumulative_ef_kg_per_mwh",
)

EXPORT_COLUMNS: tuple[str, ...] = ("run_id",) + CURVE_COLUMNS

OnError = Literal["raise", "skip"]


@dataclass(frozen=True, eq=False)
class DispatchRun:
    """One randomized merit order and its cumulative curve.

    ``curve`` is shared by every reader of the run and must be treated as
    read-only; :meth:`DispatchResult.run` hands out a copy.
    """

    run_id: int
    curve: pd.DataFrame

    @property
    def total_capacity_mw(self) -> float:
        if self.curve.empty:
            return 0.0
        return float(self.curve["cumulative_capacity_mw"].iloc[-1])

    def capacity_points(self) -> np.ndarray:
        return self.curve["cumulative_capacity_mw"].to_numpy(dtype=float)

    def ef_points(self) -> np.ndarray:
        return self.curve["cumulative_ef_kg_per_mwh"].to_numpy(dtype=float)


@dataclass(frozen=True, eq=False)
class DispatchResult:
    """All successful runs of one :func:`run_dispatch` call plus replay metadata."""

    runs: Tuple[DispatchRun, ...]
    seed: Optional[int]
    entropy: int
    run_count: int
    failures: Mapping[int, str] = field(default_factory=dict)

    def __iter__(self) -> Iterator[DispatchRun]:
        return iter(self.runs)

    def __len__(self) -> int:
        return len(self.runs)

    @property
    def run_ids(self) -> list[int]:
        return [run.run_id for run in self.runs]

    def run(self, run_id: int) -> DispatchRun:
        for candidate in self.runs:
            if candidate.run_id == run_id:
                return DispatchRun(run_id=candidate.run_id, curve=candidate.curve.copy())
        raise EmptySelectionError(f"Dispatch run {run_id} is not available.")

    def select_runs(self, run_ids: Iterable[int]) -> "DispatchResult":
        wanted = {int(r) for r in run_ids}
        selected = tuple(run for run in self.runs if run.run_id in wanted)
        if not selected:
            raise EmptySelectionError(f"No dispatch runs match {sorted(wanted)}.")
        return DispatchResult(
            runs=selected,
            seed=self.seed,
            entropy=self.entropy,
            run_count=self.run_count,
            failures=dict(self.failures),
        )

    def to_frame(self) -> pd.DataFrame:
        """Long export table: one row per (run, plant) in merit order."""

        if not self.runs:
            return pd.DataFrame(columns=EXPORT_COLUMNS)
        frames = [run.curve.assign(run_id=run.run_id) for run in self.runs]
        return pd.concat(frames, ignore_index=True).loc[:, list(EXPORT_COLUMNS)]


def accumulate_merit_order(
    capacity_mw: Sequence[float],
    ef_kg_per_mwh: Sequence[float],
    run_id: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return cumulative capacity and capacity-weighted cumulative EF.

    Inputs must already be in merit order. ``cumulative_ef[i]`` is
    ``sum(cap[:i+1] * ef[:i+1]) / sum(cap[:i+1])``.

    Raises:
        NumericError: when cumulative capacity is zero (or not finite) at any
            position, which would make the weighted average undefined.
    """

    cap = np.asarray(capacity_mw, dtype=float)
    ef = np.asarray(ef_kg_per_mwh, dtype=float)
    if cap.shape != ef.shape:
        raise ConfigurationError("capacity_mw and ef_kg_per_mwh must have the same length.")

    cumulative_capacity = np.cumsum(cap)
    degenerate = ~(np.isfinite(cumulative_capacity) & (cumulative_capacity > 0))
    if degenerate.any():
        position = int(np.argmax(degenerate))
        raise NumericError(
            f"Cumulative capacity is {cumulative_capacity[position]} at merit-order position {position}; "
            "weighted emissions factor is undefined.",
            run_id=run_id,
        )

    cumulative_ef = np.cumsum(cap * ef) / cumulative_capacity
    if not np.isfinite(cumulative_ef).all():
        raise NumericError("Cumulative emissions factor is not finite.", run_id=run_id)
    return cumulative_capacity, cumulative_ef


def draw_marginal_costs(
    cost_mean: np.ndarray,
    cost_std: np.ndarray,
    rng: np.random.Generator,
    run_id: Optional[int] = None,
) -> np.ndarray:
    """Draw one cost per plant from Normal(mean, std), clamped at zero."""

    draws = rng.normal(loc=cost_mean, scale=cost_std)
    if not np.isfinite(draws).all():
        raise NumericError("Non-finite marginal cost draw.", run_id=run_id)
    return np.maximum(draws, 0.0)


def dispatch_single_run(plants: pd.DataFrame, rng: np.random.Generator, run_id: int) -> DispatchRun:
    """Draw costs, stable-sort into merit order and accumulate the curve."""

    drawn = draw_marginal_costs(
        plants["cost_mean"].to_numpy(dtype=float),
        plants["cost_std"].to_numpy(dtype=float),
        rng,
        run_id=run_id,
    )
    order = np.argsort(drawn, kind="stable")
    ordered = plants.iloc[order].reset_index(drop=True)
    cumulative_capacity, cumulative_ef = accumulate_merit_order(
        ordered["capacity_mw"], ordered["ef_kg_per_mwh"], run_id=run_id
    )

    curve = pd.DataFrame(
        {
            "order": np.arange(1, len(ordered) + 1, dtype=int),
            "plant_id": ordered["plant_id"],
            "territory": ordered["territory"],
            "fuel_type": ordered["fuel_type"],
            "drawn_cost": drawn[order],
            "capacity_mw": ordered["capacity_mw"].to_numpy(dtype=float),
            "ef_kg_per_mwh": ordered["ef_kg_per_mwh"].to_numpy(dtype=float),
            "cumulative_capacity_mw": cumulative_capacity,
            "cumulative_ef_kg_per_mwh": cumulative_ef,
        }
    )
    return DispatchRun(run_id=run_id, curve=curve)


def _execute_run(
    job: Tuple[int, np.random.SeedSequence],
    plants: pd.DataFrame,
) -> Tuple[int, Optional[DispatchRun], Optional[NumericError]]:
    run_id, seed_seq = job
    try:
        return run_id, dispatch_single_run(plants, np.random.default_rng(seed_seq), run_id), None
    except NumericError as exc:
        return run_id, None, exc


def run_dispatch(
    registry: PlantRegistry,
    run_count: int,
    seed: Optional[int] = None,
    *,
    max_workers: Optional[int] = None,
    on_error: OnError = "raise",
) -> DispatchResult:
    """Run ``run_count`` independent merit-order draws over ``registry``.

    Every run gets its own child of ``SeedSequence(seed)``, so a fixed seed
    reproduces the same draws and orderings whether runs execute serially or
    on ``max_workers`` threads. A failing run never affects the others: with
    ``on_error="raise"`` the lowest failing run id is re-raised once all runs
    finish, with ``on_error="skip"`` failures are logged and listed in
    :attr:`DispatchResult.failures`.
    """

    if run_count < 1:
        raise ConfigurationError("run_count must be at least 1.")
    if on_error not in ("raise", "skip"):
        raise ConfigurationError("on_error must be 'raise' or 'skip'.")
    if len(registry) == 0:
        raise ConfigurationError("Cannot dispatch an empty registry.")

    seed_seq = np.random.SeedSequence(seed)
    jobs = list(zip(range(1, run_count + 1), seed_seq.spawn(run_count)))
    plants = registry.plants
    execute = partial(_execute_run, plants=plants)

    if max_workers is not None and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            outcomes = list(executor.map(execute, jobs))
    else:
        outcomes = [execute(job) for job in jobs]

    runs = []
    failures: Dict[int, str] = {}
    errors: Dict[int, NumericError] = {}
    for run_id, run, error in outcomes:
        if error is not None:
            failures[run_id] = str(error)
            errors[run_id] = error
        else:
            runs.append(run)

    if errors:
        if on_error == "raise":
            raise errors[min(errors)]
        for run_id, message in failures.items():
            logger.warning("Dispatch run %d skipped: %s", run_id, message)
        if not runs:
            raise NumericError(f"All {run_count} dispatch runs failed.")

    logger.info(
        "Completed %d of %d dispatch runs over %d plants (seed=%s).",
        len(runs),
        run_count,
        len(plants),
        seed,
    )
    return DispatchResult(
        runs=tuple(runs),
        seed=seed,
        entropy=int(seed_seq.entropy),
        run_count=run_count,
        failures=failures,
    )
