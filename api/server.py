from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

import pandas as pd
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator, model_validator

from services.config import EXTRAPOLATION_POLICIES, DispatchConfig
from services.dispatch_core import run_dispatch
from services.errors import ConfigurationError, EmptySelectionError, NumericError, OutOfRangeError
from services.marginal_emissions import (
    MEF_UNIT_FACTORS,
    aggregate_mef_by,
    convert_mef_units,
    estimate_emissions_impact,
    estimate_marginal_ef,
)
from services.plant_registry import PlantRegistry, build_registry
from frontend.ui.charts import prepare_mef_band_data
from utils import build_flag_insights, clean_load_profile, read_cost_table, read_load_profile, read_plant_table
from utils.export import build_dispatch_csv, build_dispatch_workbook

logger = logging.getLogger(__name__)

_DEFAULT_CFG = DispatchConfig()
_DATA_DIR = Path(
    os.getenv("MEFLAB_DATA_DIR", str(Path(__file__).resolve().parent.parent / "data"))
)

UploadKind = Literal["plants", "costs", "load"]
# Per-request ceilings; the registry build and every run happen inside the request.
MAX_RUN_COUNT = 1000
MAX_WORKERS = 16


class DispatchConfigPayload(BaseModel):
    """Pydantic mirror of :class:`DispatchConfig` for FastAPI requests."""

    derate_factor: float = _DEFAULT_CFG.derate_factor
    lb_per_kg: float = _DEFAULT_CFG.lb_per_kg
    std_fallback_fraction: float = _DEFAULT_CFG.std_fallback_fraction
    run_count: int = Field(default=20, le=MAX_RUN_COUNT)
    seed: Optional[int] = 42
    extrapolation: str = _DEFAULT_CFG.extrapolation
    max_workers: Optional[int] = Field(default=_DEFAULT_CFG.max_workers, le=MAX_WORKERS)

    @field_validator("extrapolation")
    @classmethod
    def _validate_extrapolation(cls, value: str) -> str:
        if value not in EXTRAPOLATION_POLICIES:
            raise ValueError(f"extrapolation must be one of {list(EXTRAPOLATION_POLICIES)}")
        return value

    def build(self) -> DispatchConfig:
        """Return a :class:`DispatchConfig`; invalid ranges surface as HTTP 400."""

        with _service_errors():
            return DispatchConfig.from_dict(self.model_dump())


class PlantRow(BaseModel):
    plant_id: str
    territory: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    fuel_code: str = ""
    nameplate_mw: float
    emissions_lb_per_mwh: float
    capacity_factor: Optional[float] = None


class CostRow(BaseModel):
    fuel_code: str
    marginal_cost: float


class LoadRow(BaseModel):
    timestamp: str
    load_mw: float


class DataSource(BaseModel):
    plant_upload_id: Optional[str] = None
    cost_upload_id: Optional[str] = None
    load_upload_id: Optional[str] = None
    use_sample_plants: bool = True
    use_sample_costs: bool = True
    use_sample_load: bool = True
    plant_rows: Optional[List[PlantRow]] = None
    cost_rows: Optional[List[CostRow]] = None
    load_rows: Optional[List[LoadRow]] = None

    @model_validator(mode="after")
    def _at_least_one_source(self) -> "DataSource":
        if not any(
            [
                self.plant_upload_id,
                self.plant_rows,
                self.use_sample_plants,
            ]
        ):
            raise ValueError("Provide plant data or enable sample inputs.")
        if not any([self.cost_upload_id, self.cost_rows, self.use_sample_costs]):
            raise ValueError("Provide cost data or enable sample inputs.")
        return self


class RegistryRequest(BaseModel):
    config: DispatchConfigPayload = Field(default_factory=DispatchConfigPayload)
    data: DataSource = Field(default_factory=DataSource)
    territories: Optional[List[str]] = None


class DispatchRequest(RegistryRequest):
    run_ids: Optional[List[int]] = None
    on_error: Literal["raise", "skip"] = "raise"


class MarginalEmissionsRequest(DispatchRequest):
    unit: str = "kg/MWh"
    include_runs: bool = False
    group_by: Optional[Literal["hour", "weekday", "quarter", "week", "month"]] = None

    @field_validator("unit")
    @classmethod
    def _validate_unit(cls, value: str) -> str:
        if value not in MEF_UNIT_FACTORS:
            raise ValueError(f"unit must be one of {sorted(MEF_UNIT_FACTORS)}")
        return value


class ExportRequest(DispatchRequest):
    format: Literal["xlsx", "csv"] = "xlsx"
    include_mef: bool = False


class EmissionsImpactRequest(DispatchRequest):
    scenario_load_rows: Optional[List[LoadRow]] = None
    scenario_load_upload_id: Optional[str] = None
    step_hours: Optional[float] = None

    @model_validator(mode="after")
    def _require_scenario(self) -> "EmissionsImpactRequest":
        if not (self.scenario_load_rows or self.scenario_load_upload_id):
            raise ValueError("Provide scenario_load_rows or scenario_load_upload_id.")
        return self


class UploadPayload(BaseModel):
    kind: UploadKind
    name: Optional[str] = None
    plant_rows: Optional[List[PlantRow]] = None
    cost_rows: Optional[List[CostRow]] = None
    load_rows: Optional[List[LoadRow]] = None

    @model_validator(mode="after")
    def _validate_rows(self) -> "UploadPayload":
        rows = {"plants": self.plant_rows, "costs": self.cost_rows, "load": self.load_rows}[self.kind]
        if not rows:
            raise ValueError(f"{self.kind} rows are required when kind='{self.kind}'.")
        return self


class UploadStore:
    """In-memory upload cache for plant, cost and load data frames."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, pd.DataFrame]] = {"plants": {}, "costs": {}, "load": {}}
        self._lock = Lock()

    def store(self, kind: str, df: pd.DataFrame, name: Optional[str] = None) -> str:
        upload_id = name or str(uuid.uuid4())
        with self._lock:
            self._tables[kind][upload_id] = df.copy()
        return upload_id

    def get(self, kind: str, upload_id: str) -> pd.DataFrame:
        with self._lock:
            if upload_id not in self._tables[kind]:
                raise HTTPException(status_code=404, detail=f"{kind} upload '{upload_id}' not found.")
            return self._tables[kind][upload_id].copy()


@contextmanager
def _service_errors() -> Iterator[None]:
    """Map service exceptions onto HTTP status codes."""
    try:
        yield
    except EmptySelectionError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except OutOfRangeError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NumericError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@lru_cache(maxsize=1)
def _sample_plants() -> pd.DataFrame:
    return read_plant_table([_DATA_DIR / "sample_plants.csv"])


@lru_cache(maxsize=1)
def _sample_costs() -> pd.DataFrame:
    return read_cost_table([_DATA_DIR / "sample_costs.csv"])


@lru_cache(maxsize=1)
def _sample_load() -> pd.DataFrame:
    return read_load_profile([_DATA_DIR / "sample_load.csv"])


def _rows_to_df(rows: List[BaseModel]) -> pd.DataFrame:
    return pd.DataFrame([row.model_dump() for row in rows])


def _load_rows_to_df(rows: List[LoadRow]) -> pd.DataFrame:
    with _service_errors():
        return clean_load_profile(_rows_to_df(rows))


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    out = df.copy()
    for col in out.columns:
        if pd.api.types.is_datetime64_any_dtype(out[col]):
            out[col] = out[col].dt.strftime("%Y-%m-%dT%H:%M:%S")
    return out.to_dict(orient="records")


def _resolve_tables(data: DataSource, store: UploadStore) -> Tuple[pd.DataFrame, pd.DataFrame, List[str]]:
    warnings: List[str] = []
    if data.plant_rows:
        plants_df = _rows_to_df(data.plant_rows)
    elif data.plant_upload_id:
        plants_df = store.get("plants", data.plant_upload_id)
    elif data.use_sample_plants:
        plants_df = _sample_plants().copy()
        warnings.append("Using bundled sample plant table (data/sample_plants.csv).")
    else:
        raise HTTPException(status_code=400, detail="Plant data not provided.")

    if data.cost_rows:
        costs_df = _rows_to_df(data.cost_rows)
    elif data.cost_upload_id:
        costs_df = store.get("costs", data.cost_upload_id)
    elif data.use_sample_costs:
        costs_df = _sample_costs().copy()
        warnings.append("Using bundled sample cost table (data/sample_costs.csv).")
    else:
        raise HTTPException(status_code=400, detail="Cost data not provided.")

    return plants_df, costs_df, warnings


def _resolve_load(data: DataSource, store: UploadStore) -> Tuple[pd.DataFrame, List[str]]:
    if data.load_rows:
        return _load_rows_to_df(data.load_rows), []
    if data.load_upload_id:
        return store.get("load", data.load_upload_id), []
    if data.use_sample_load:
        return _sample_load().copy(), ["Using bundled sample load profile (data/sample_load.csv)."]
    raise HTTPException(status_code=400, detail="Load profile not provided.")


def _build_registry(request: RegistryRequest) -> Tuple[PlantRegistry, DispatchConfig, List[str]]:
    cfg = request.config.build()
    plants_df, costs_df, warnings = _resolve_tables(request.data, uploads)
    with _service_errors():
        registry = build_registry(plants_df, costs_df, cfg)
        if request.territories:
            registry = registry.for_territories(request.territories)
    return registry, cfg, warnings


def _run_dispatch(request: DispatchRequest):
    registry, cfg, warnings = _build_registry(request)
    with _service_errors():
        result = run_dispatch(
            registry,
            cfg.run_count,
            cfg.seed,
            max_workers=cfg.max_workers,
            on_error=request.on_error,
        )
        if request.run_ids:
            result = result.select_runs(request.run_ids)
    if result.failures:
        warnings.append(f"{len(result.failures)} dispatch runs failed and were skipped.")
    return result, cfg, warnings


uploads = UploadStore()
app = FastAPI(
    title="MEFLab API",
    description="REST API for plant registries, merit-order dispatch and marginal emissions estimates.",
    version="0.1.0",
)


_default_cors_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
_allowed_origins_env = os.getenv("MEFLAB_CORS_ORIGINS", "")
_allowed_origins = [
    origin.strip()
    for origin in _allowed_origins_env.split(",")
    if origin.strip()
] or _default_cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, str]:
    """Simple liveness probe for container orchestrators."""
    return {"status": "ok"}


@app.post("/uploads")
def create_upload(payload: UploadPayload) -> Dict[str, str]:
    """Accept plant, cost or load tables as JSON and cache them for reuse."""

    if payload.kind == "plants":
        df = _rows_to_df(payload.plant_rows or [])
    elif payload.kind == "costs":
        df = _rows_to_df(payload.cost_rows or [])
    else:
        df = _load_rows_to_df(payload.load_rows or [])
    return {"upload_id": uploads.store(payload.kind, df, payload.name)}


@app.post("/registry")
def registry(request: RegistryRequest) -> Dict[str, Any]:
    """Build the plant registry and return per-fuel summaries and cost stats."""

    plant_registry, _, warnings = _build_registry(request)
    return {
        "warnings": warnings,
        "territories": plant_registry.territories(),
        "plant_count": len(plant_registry),
        "fuel_costs": _records(plant_registry.fuel_costs),
        "summary": _records(plant_registry.summary_by_fuel_type()),
        "drop_counts": plant_registry.drop_counts,
        "insights": build_flag_insights(plant_registry.drop_counts),
    }


@app.post("/dispatch")
def dispatch(request: DispatchRequest) -> Dict[str, Any]:
    """Run Monte-Carlo dispatch and return the long export table."""

    result, _, warnings = _run_dispatch(request)
    return {
        "warnings": warnings,
        "seed": result.seed,
        "entropy": str(result.entropy),
        "run_count": result.run_count,
        "run_ids": result.run_ids,
        "failures": {str(k): v for k, v in result.failures.items()},
        "rows": _records(result.to_frame()),
    }


@app.post("/dispatch/export")
def export_dispatch(request: ExportRequest) -> Response:
    """Download dispatch curves as CSV or as an xlsx workbook with one sheet per run."""

    result, cfg, _ = _run_dispatch(request)
    if request.format == "csv":
        with _service_errors():
            content = build_dispatch_csv(result)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="dispatch_runs.csv"'},
        )

    mef_df = band = None
    if request.include_mef:
        load_df, _ = _resolve_load(request.data, uploads)
        with _service_errors():
            mef_df = estimate_marginal_ef(load_df, result, extrapolation=cfg.extrapolation)
            band = prepare_mef_band_data(mef_df)
    with _service_errors():
        content = build_dispatch_workbook(result, mef_df=mef_df, band_df=band)
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="dispatch_runs.xlsx"'},
    )


@app.post("/marginal-emissions")
def marginal_emissions(request: MarginalEmissionsRequest) -> Dict[str, Any]:
    """Estimate marginal emissions factors for the load profile across runs."""

    result, cfg, warnings = _run_dispatch(request)
    load_df, load_warnings = _resolve_load(request.data, uploads)
    warnings.extend(load_warnings)

    with _service_errors():
        mef_df = estimate_marginal_ef(load_df, result, extrapolation=cfg.extrapolation)
        band = prepare_mef_band_data(mef_df, request.unit)
        profile = aggregate_mef_by(mef_df, request.group_by) if request.group_by else None

    extrapolated = int(mef_df["extrapolated"].sum())
    if extrapolated:
        warnings.append(
            f"{extrapolated} estimates fall outside the dispatch range ({cfg.extrapolation} policy)."
        )

    response: Dict[str, Any] = {
        "warnings": warnings,
        "unit": request.unit,
        "run_ids": result.run_ids,
        "band": _records(band),
    }
    if profile is not None:
        for col in ("mean", "std", "p05", "p95"):
            profile[col] = convert_mef_units(profile[col], request.unit)
        response["profile"] = _records(profile)
    if request.include_runs:
        runs_df = mef_df.copy()
        runs_df["mef"] = convert_mef_units(runs_df["mef_kg_per_mwh"], request.unit)
        response["runs"] = _records(runs_df)
    return response


@app.post("/emissions-impact")
def emissions_impact(request: EmissionsImpactRequest) -> Dict[str, Any]:
    """Compare a scenario load profile against the baseline across dispatch runs."""

    result, cfg, warnings = _run_dispatch(request)
    baseline_df, load_warnings = _resolve_load(request.data, uploads)
    warnings.extend(load_warnings)
    if request.scenario_load_rows:
        scenario_df = _load_rows_to_df(request.scenario_load_rows)
    else:
        scenario_df = uploads.get("load", request.scenario_load_upload_id or "")

    with _service_errors():
        impact = estimate_emissions_impact(
            baseline_df,
            scenario_df,
            result,
            request.step_hours,
            extrapolation=cfg.extrapolation,
        )

    return {
        "warnings": warnings,
        "step_hours": impact.step_hours,
        "delta_energy_mwh": impact.delta_energy_mwh,
        "mean_kg": impact.mean_kg,
        "std_kg": impact.std_kg,
        "per_run": _records(impact.per_run),
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=False)
