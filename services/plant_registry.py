"""Plant registry construction from raw plant and fuel-cost tables.

The registry is the read-only input to every dispatch run: one row per
generating plant with derated capacity (MW), emissions factor (kg CO2eq/MWh),
fuel-type category and the marginal-cost distribution for that fuel type.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from services.config import DEFAULT_CONFIG, DispatchConfig
from services.errors import ConfigurationError, EmptySelectionError

logger = logging.getLogger(__name__)

FUEL_TYPES: tuple[str, ...] = (
    "Coal-based",
    "Petroleum",
    "Biomass",
    "Hydro",
    "Solar(PV)",
    "Wind",
    "Natural Gas",
    "Nuclear",
    "Landfill Gas",
    "Other",
)

FUEL_CODE_GROUPS: Dict[str, tuple[str, ...]] = {
    "Coal-based": ("BIT", "SUB", "LIG", "RC", "WC", "SGC", "ANT", "COL", "SC", "CBL"),
    "Petroleum": ("DFO", "RFO", "JF", "KER", "PC", "WO", "OIL", "PG", "SGP"),
    "Biomass": ("AB", "BLQ", "OBL", "OBS", "WDL", "WDS", "MSB", "MSW", "OBG", "SLW", "BM", "BIO"),
    "Hydro": ("WAT", "HYC", "HPS"),
    "Solar(PV)": ("SUN", "SOL", "PV"),
    "Wind": ("WND", "WIND"),
    "Natural Gas": ("NG", "OG", "BFG", "GAS"),
    "Nuclear": ("NUC", "UR"),
    "Landfill Gas": ("LFG",),
    "Other": ("GEO", "OTH", "PUR", "WH", "TDF", "MWH", "MSN", "H2", "OTHF", "OFSL"),
}

_CODE_TO_FUEL_TYPE: Dict[str, str] = {
    code: fuel_type for fuel_type, codes in FUEL_CODE_GROUPS.items() for code in codes
}
_CODE_TO_FUEL_TYPE.update({fuel_type.upper(): fuel_type for fuel_type in FUEL_TYPES})

# eGRID plant-sheet headers and other common spellings.
PLANT_COLUMN_ALIASES: Dict[str, str] = {
    "ORISPL": "plant_id",
    "plant_code": "plant_id",
    "BACODE": "territory",
    "ba_code": "territory",
    "iso": "territory",
    "LAT": "latitude",
    "lat": "latitude",
    "LON": "longitude",
    "lon": "longitude",
    "PLPRMFL": "fuel_code",
    "primary_fuel": "fuel_code",
    "NAMEPCAP": "nameplate_mw",
    "capacity_mw": "nameplate_mw",
    "PLCO2RTA": "emissions_lb_per_mwh",
    "PLC2ERTA": "emissions_lb_per_mwh",
    "co2eq_lb_per_mwh": "emissions_lb_per_mwh",
    "CAPFAC": "capacity_factor",
}
COST_COLUMN_ALIASES: Dict[str, str] = {
    "PLPRMFL": "fuel_code",
    "primary_fuel": "fuel_code",
    "fuel_type": "fuel_code",
    "cost": "marginal_cost",
    "marginal_cost_usd_per_mwh": "marginal_cost",
}

REQUIRED_PLANT_COLUMNS: tuple[str, ...] = (
    "plant_id",
    "territory",
    "latitude",
    "longitude",
    "fuel_code",
    "nameplate_mw",
    "emissions_lb_per_mwh",
)
REQUIRED_COST_COLUMNS: tuple[str, ...] = ("fuel_code", "marginal_cost")

REGISTRY_COLUMNS: tuple[str, ...] = (
    "plant_id",
    "territory",
    "latitude",
    "longitude",
    "fuel_code",
    "fuel_type",
    "capacity_mw",
    "ef_kg_per_mwh",
    "capacity_factor",
    "cost_mean",
    "cost_std",
)


@dataclass(frozen=True)
class FuelCostStat:
    """Marginal cost distribution for one fuel type.

    Units: ``mean`` and ``std`` are USD/MWh.
    """

    fuel_type: str
    mean: float
    std: float
    observations: int


def lb_to_kg(value: Any, lb_per_kg: float = DEFAULT_CONFIG.lb_per_kg) -> Any:
    """Convert a rate in lb/MWh to kg/MWh (scalars, arrays or Series)."""
    return value / lb_per_kg


def kg_to_lb(value: Any, lb_per_kg: float = DEFAULT_CONFIG.lb_per_kg) -> Any:
    """Convert a rate in kg/MWh back to lb/MWh."""
    return value * lb_per_kg


def classify_fuel_code(code: Any) -> str:
    """Map a raw primary fuel code to its fuel-type category.

    Codes outside the table are returned stripped but otherwise unchanged; a
    missing code becomes an empty string.
    """

    if code is None or (pd.api.types.is_scalar(code) and pd.isna(code)):
        return ""
    text = str(code).strip()
    if not text:
        return ""
    return _CODE_TO_FUEL_TYPE.get(text.upper(), text)


def classify_fuel_codes(codes: pd.Series) -> pd.Series:
    """Vectorized :func:`classify_fuel_code` preserving the index."""
    return codes.map(classify_fuel_code).astype(str)


def is_known_fuel_type(label: str) -> bool:
    return label in FUEL_TYPES


def canonicalize_columns(
    df: pd.DataFrame,
    aliases: Mapping[str, str],
    required: Sequence[str],
    table_name: str,
) -> pd.DataFrame:
    if not isinstance(df, pd.DataFrame):
        raise ConfigurationError(f"{table_name} must be a pandas DataFrame.")
    renames = {col: aliases[col] for col in df.columns if col in aliases and aliases[col] not in df.columns}
    out = df.rename(columns=renames)
    missing = [col for col in required if col not in out.columns]
    if missing:
        raise ConfigurationError(f"{table_name} is missing required columns: {', '.join(missing)}")
    return out


def compute_fuel_cost_stats(
    raw_costs: pd.DataFrame,
    std_fallback_fraction: float = DEFAULT_CONFIG.std_fallback_fraction,
) -> pd.DataFrame:
    """Aggregate cost observations into mean/std-dev per fuel type.

    Raw codes are classified with the plant code table so observations keyed by
    ``BIT`` and ``Coal-based`` pool together. When a fuel type has one
    observation the sample std-dev is undefined and ``std_fallback_fraction``
    of the mean is used instead.
    """

    costs = canonicalize_columns(raw_costs, COST_COLUMN_ALIASES, REQUIRED_COST_COLUMNS, "Cost table")
    if costs.empty:
        raise ConfigurationError("Cost table is empty.")

    costs = costs.loc[:, ["fuel_code", "marginal_cost"]].copy()
    costs["marginal_cost"] = pd.to_numeric(costs["marginal_cost"], errors="coerce")
    costs["fuel_type"] = classify_fuel_codes(costs["fuel_code"])
    valid = np.isfinite(costs["marginal_cost"]) & (costs["fuel_type"] != "")
    if (~valid).any():
        logger.warning("Dropping %d cost rows with missing fuel code or non-numeric cost.", int((~valid).sum()))
    costs = costs.loc[valid]
    if costs.empty:
        raise ConfigurationError("Cost table has no usable observations.")

    stats = (
        costs.groupby("fuel_type", sort=True)["marginal_cost"]
        .agg(cost_mean="mean", cost_std="std", observations="count")
        .reset_index()
    )
    fallback = stats["cost_std"].isna()
    stats.loc[fallback, "cost_std"] = stats.loc[fallback, "cost_mean"].abs() * std_fallback_fraction
    stats["observations"] = stats["observations"].astype(int)
    return stats.loc[:, ["fuel_type", "cost_mean", "cost_std", "observations"]]


class PlantRegistry:
    """Read-only plant table joined with per-fuel-type cost distributions.

    Accessors return copies so callers cannot mutate the shared registry,
    which is read concurrently by dispatch runs.
    """

    def __init__(
        self,
        plants: pd.DataFrame,
        fuel_costs: pd.DataFrame,
        drop_counts: Optional[Mapping[str, int]] = None,
    ) -> None:
        self._plants = plants.loc[:, list(REGISTRY_COLUMNS)].reset_index(drop=True).copy()
        self._fuel_costs = fuel_costs.reset_index(drop=True).copy()
        self.drop_counts: Dict[str, int] = dict(drop_counts or {})

    def __len__(self) -> int:
        return len(self._plants)

    def __repr__(self) -> str:
        return f"PlantRegistry(plants={len(self)}, territories={self.territories()})"

    @property
    def plants(self) -> pd.DataFrame:
        return self._plants.copy()

    @property
    def fuel_costs(self) -> pd.DataFrame:
        return self._fuel_costs.copy()

    def territories(self) -> List[str]:
        return sorted(self._plants["territory"].unique().tolist())

    def fuel_types(self) -> List[str]:
        return [ft for ft in FUEL_TYPES if ft in set(self._plants["fuel_type"])]

    def fuel_cost_stats(self) -> Dict[str, FuelCostStat]:
        return {
            row.fuel_type: FuelCostStat(
                fuel_type=row.fuel_type,
                mean=float(row.cost_mean),
                std=float(row.cost_std),
                observations=int(row.observations),
            )
            for row in self._fuel_costs.itertuples(index=False)
        }

    def for_territory(self, territory: str) -> "PlantRegistry":
        return self.for_territories([territory])

    def for_territories(self, territories: Iterable[str]) -> "PlantRegistry":
        """Return the sub-registry for the given territories without rebuilding."""

        wanted = {str(t) for t in territories}
        subset = self._plants[self._plants["territory"].isin(wanted)]
        if subset.empty:
            raise EmptySelectionError(f"No plants found for territory selection {sorted(wanted)}.")
        return PlantRegistry(subset, self._fuel_costs, self.drop_counts)

    def summary_by_fuel_type(self) -> pd.DataFrame:
        """Plant count, derated capacity and capacity-weighted EF per territory and fuel type."""

        df = self._plants.assign(weighted_ef=self._plants["capacity_mw"] * self._plants["ef_kg_per_mwh"])
        summary = (
            df.groupby(["territory", "fuel_type"], as_index=False)
            .agg(
                plant_count=("plant_id", "count"),
                capacity_mw=("capacity_mw", "sum"),
                weighted_ef=("weighted_ef", "sum"),
                mean_capacity_factor=("capacity_factor", "mean"),
            )
        )
        summary["ef_kg_per_mwh"] = summary["weighted_ef"] / summary["capacity_mw"]
        return summary.drop(columns="weighted_ef")


def _normalize_plants(raw_plants: pd.DataFrame, config: DispatchConfig) -> pd.DataFrame:
    plants = canonicalize_columns(raw_plants, PLANT_COLUMN_ALIASES, REQUIRED_PLANT_COLUMNS, "Plant table")
    if plants.empty:
        raise ConfigurationError("Plant table is empty.")

    out = pd.DataFrame(
        {
            "plant_id": plants["plant_id"],
            "territory": plants["territory"].fillna("").astype(str).str.strip(),
            "latitude": pd.to_numeric(plants["latitude"], errors="coerce"),
            "longitude": pd.to_numeric(plants["longitude"], errors="coerce"),
            "fuel_code": plants["fuel_code"].fillna("").astype(str).str.strip(),
        }
    )
    nameplate = pd.to_numeric(plants["nameplate_mw"], errors="coerce")
    out["capacity_mw"] = nameplate * config.derate_factor
    emissions_lb = pd.to_numeric(plants["emissions_lb_per_mwh"], errors="coerce")
    out["ef_kg_per_mwh"] = lb_to_kg(emissions_lb, config.lb_per_kg)
    if "capacity_factor" in plants.columns:
        capacity_factor = pd.to_numeric(plants["capacity_factor"], errors="coerce").fillna(0.0)
    else:
        capacity_factor = pd.Series(0.0, index=plants.index)
    out["capacity_factor"] = capacity_factor.clip(lower=0.0)
    out["fuel_type"] = classify_fuel_codes(out["fuel_code"])
    return out


def build_registry(
    raw_plants: pd.DataFrame,
    raw_costs: pd.DataFrame,
    config: DispatchConfig = DEFAULT_CONFIG,
) -> PlantRegistry:
    """Build the plant registry used by every dispatch run.

    Plants are derated, converted to kg CO2eq/MWh, classified by fuel type and
    joined to their fuel-type cost distribution. Plants with an empty territory,
    an unclassified fuel type, no cost statistics, or a non-positive capacity are
    dropped.

    Raises:
        ConfigurationError: when either table is malformed, the cost table is
            empty, or no plant survives filtering.
    """

    fuel_costs = compute_fuel_cost_stats(raw_costs, config.std_fallback_fraction)
    plants = _normalize_plants(raw_plants, config)

    drop_masks = {
        "empty_territory": plants["territory"] == "",
        "unclassified_fuel_type": ~plants["fuel_type"].isin(FUEL_TYPES),
        "missing_cost_stats": ~plants["fuel_type"].isin(fuel_costs["fuel_type"]),
        "non_positive_capacity": ~(np.isfinite(plants["capacity_mw"]) & (plants["capacity_mw"] > 0)),
        "missing_emissions_rate": ~np.isfinite(plants["ef_kg_per_mwh"]),
    }
    keep = pd.Series(True, index=plants.index)
    drop_counts: Dict[str, int] = {}
    for reason, mask in drop_masks.items():
        newly_dropped = keep & mask
        if newly_dropped.any():
            drop_counts[reason] = int(newly_dropped.sum())
            logger.info("Dropping %d plants (%s).", drop_counts[reason], reason)
        keep &= ~mask

    survivors = plants.loc[keep]
    if survivors.empty:
        raise ConfigurationError("No plants survived registry filtering.")

    registry_df = survivors.merge(
        fuel_costs[["fuel_type", "cost_mean", "cost_std"]],
        on="fuel_type",
        how="left",
        validate="many_to_one",
    )
    logger.info(
        "Built plant registry with %d plants across %d territories.",
        len(registry_df),
        registry_df["territory"].nunique(),
    )
    return PlantRegistry(registry_df, fuel_costs, drop_counts)
