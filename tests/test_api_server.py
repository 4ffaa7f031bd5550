from __future__ import annotations

from io import BytesIO

import pandas as pd
import pytest
from fastapi import HTTPException
from openpyxl import load_workbook
from pydantic import ValidationError

from api import server
from api.server import (
    DataSource,
    DispatchConfigPayload,
    DispatchRequest,
    EmissionsImpactRequest,
    ExportRequest,
    LoadRow,
    MarginalEmissionsRequest,
    RegistryRequest,
    UploadPayload,
    create_upload,
    dispatch,
    emissions_impact,
    export_dispatch,
    marginal_emissions,
    registry,
)


def _small_config(**overrides) -> DispatchConfigPayload:
    return DispatchConfigPayload(run_count=3, seed=7, **overrides)


def test_registry_with_sample_inputs() -> None:
    response = registry(RegistryRequest())

    assert response["territories"] == ["CISO", "ERCO"]
    assert response["plant_count"] == 26
    assert response["drop_counts"] == {
        "empty_territory": 1,
        "unclassified_fuel_type": 1,
        "non_positive_capacity": 1,
    }
    assert any("sample" in msg for msg in response["warnings"])
    assert response["insights"], "Expected drop insights for the sample table"


def test_registry_unknown_territory_is_not_found() -> None:
    with pytest.raises(HTTPException) as excinfo:
        registry(RegistryRequest(territories=["PJM"]))
    assert excinfo.value.status_code == 404


def test_dispatch_filters_by_territory_and_run_ids() -> None:
    request = DispatchRequest(config=_small_config(), territories=["CISO"], run_ids=[2, 3])
    response = dispatch(request)

    assert response["run_ids"] == [2, 3]
    assert {row["territory"] for row in response["rows"]} == {"CISO"}
    assert {row["run_id"] for row in response["rows"]} == {2, 3}


def test_dispatch_is_reproducible_for_a_fixed_seed() -> None:
    first = dispatch(DispatchRequest(config=_small_config()))
    second = dispatch(DispatchRequest(config=_small_config()))

    assert first["rows"] == second["rows"]
    assert first["entropy"] == "7"


def test_invalid_config_maps_to_bad_request() -> None:
    with pytest.raises(HTTPException) as excinfo:
        dispatch(DispatchRequest(config=DispatchConfigPayload(run_count=0)))
    assert excinfo.value.status_code == 400


def test_marginal_emissions_band_and_profile() -> None:
    request = MarginalEmissionsRequest(
        config=_small_config(),
        unit="lb/MWh",
        include_runs=True,
        group_by="hour",
    )
    response = marginal_emissions(request)

    sample_count = len(server._sample_load())
    assert len(response["band"]) == sample_count
    assert len(response["runs"]) == 3 * sample_count
    assert len(response["profile"]) == 24
    assert response["unit"] == "lb/MWh"
    first = response["band"][0]
    assert first["band_low"] <= first["mean"] <= first["band_high"]


def test_marginal_emissions_error_policy_surfaces_out_of_range() -> None:
    # ERCO alone cannot cover the sample peak load.
    request = MarginalEmissionsRequest(
        config=_small_config(extrapolation="error"),
        territories=["ERCO"],
    )
    with pytest.raises(HTTPException) as excinfo:
        marginal_emissions(request)
    assert excinfo.value.status_code == 422


def test_marginal_emissions_flags_extrapolated_territory_estimates() -> None:
    response = marginal_emissions(MarginalEmissionsRequest(config=_small_config(), territories=["ERCO"]))

    assert any("outside the dispatch range" in msg for msg in response["warnings"])


def test_upload_and_reuse_cached_tables() -> None:
    plant_rows = server._sample_plants().head(12).astype({"plant_id": str}).to_dict("records")
    plant_upload_id = create_upload(UploadPayload(kind="plants", name="unit-test-plants", plant_rows=plant_rows))[
        "upload_id"
    ]

    request = RegistryRequest(data=DataSource(plant_upload_id=plant_upload_id, use_sample_plants=False))
    response = registry(request)

    assert plant_upload_id == "unit-test-plants"
    assert response["territories"] == ["ERCO"]
    assert response["plant_count"] == 12


def test_missing_upload_is_not_found() -> None:
    request = RegistryRequest(data=DataSource(plant_upload_id="missing", use_sample_plants=False))
    with pytest.raises(HTTPException) as excinfo:
        registry(request)
    assert excinfo.value.status_code == 404


def test_emissions_impact_of_peak_shaving() -> None:
    load = server._sample_load()
    shaved = load["load_mw"].clip(upper=load["load_mw"].quantile(0.9))
    scenario_rows = [
        LoadRow(timestamp=ts.strftime("%Y-%m-%d %H:%M:%S"), load_mw=float(mw))
        for ts, mw in zip(load["timestamp"], shaved)
    ]

    response = emissions_impact(
        EmissionsImpactRequest(config=_small_config(), scenario_load_rows=scenario_rows)
    )

    assert response["step_hours"] == pytest.approx(1.0)
    assert response["delta_energy_mwh"] < 0
    assert len(response["per_run"]) == 3


def test_export_workbook_has_one_sheet_per_run() -> None:
    response = export_dispatch(ExportRequest(config=_small_config(), include_mef=True))

    workbook = load_workbook(BytesIO(response.body))
    assert workbook.sheetnames == ["Run 1", "Run 2", "Run 3", "MEF band", "MEF runs"]


def test_export_csv() -> None:
    response = export_dispatch(ExportRequest(config=_small_config(), format="csv"))

    header = response.body.decode("utf-8").splitlines()[0]
    assert header.startswith("run_id,order,plant_id")


def test_config_payload_caps_runs_and_workers() -> None:
    with pytest.raises(ValidationError):
        DispatchConfigPayload(run_count=server.MAX_RUN_COUNT + 1)
    with pytest.raises(ValidationError):
        DispatchConfigPayload(max_workers=server.MAX_WORKERS + 1)

    cfg = DispatchConfigPayload(run_count=server.MAX_RUN_COUNT, max_workers=server.MAX_WORKERS).build()
    assert cfg.run_count == server.MAX_RUN_COUNT


def test_emissions_impact_rejects_scenario_for_other_instants() -> None:
    load = server._sample_load()
    scenario_rows = [
        LoadRow(timestamp=ts.strftime("%Y-%m-%d %H:%M:%S"), load_mw=float(mw))
        for ts, mw in zip(load["timestamp"] + pd.Timedelta(days=365), load["load_mw"])
    ]

    with pytest.raises(HTTPException) as excinfo:
        emissions_impact(EmissionsImpactRequest(config=_small_config(), scenario_load_rows=scenario_rows))
    assert excinfo.value.status_code == 400
