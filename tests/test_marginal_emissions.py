import numpy as np
import pandas as pd
import pytest

from services.dispatch_core import DispatchRun
from services.errors import ConfigurationError, EmptySelectionError, NumericError, OutOfRangeError
from services.marginal_emissions import (
    aggregate_mef_by,
    convert_mef_units,
    estimate_emissions_impact,
    estimate_marginal_ef,
    interpolate_curve,
    mef_for_run_ids,
    summarize_mef_band,
)
from utils.io import add_time_features

EXAMPLE_CAPACITY = [50.0, 150.0, 350.0]
EXAMPLE_EF = [0.1, 55.0 / 150.0, 215.0 / 350.0]


def _run(run_id: int, capacity, ef) -> DispatchRun:
    return DispatchRun(
        run_id=run_id,
        curve=pd.DataFrame(
            {
                "cumulative_capacity_mw": np.asarray(capacity, dtype=float),
                "cumulative_ef_kg_per_mwh": np.asarray(ef, dtype=float),
            }
        ),
    )


def _load(values, start: str = "2023-07-03 00:00", freq: str = "h") -> pd.DataFrame:
    timestamps = pd.date_range(start, periods=len(values), freq=freq)
    return add_time_features(pd.DataFrame({"timestamp": timestamps, "load_mw": values}))


def test_interior_loads_interpolate_linearly() -> None:
    values, outside = interpolate_curve(
        np.array(EXAMPLE_CAPACITY), np.array(EXAMPLE_EF), np.array([50.0, 100.0, 350.0])
    )

    assert values[0] == pytest.approx(0.1)
    assert values[1] == pytest.approx(0.1 + (55.0 / 150.0 - 0.1) * 0.5)
    assert values[2] == pytest.approx(215.0 / 350.0)
    assert not outside.any()


def test_linear_policy_extrapolates_from_nearest_points() -> None:
    values, outside = interpolate_curve(
        np.array(EXAMPLE_CAPACITY), np.array(EXAMPLE_EF), np.array([450.0, 0.0])
    )

    upper_slope = (EXAMPLE_EF[2] - EXAMPLE_EF[1]) / 200.0
    lower_slope = (EXAMPLE_EF[1] - EXAMPLE_EF[0]) / 100.0
    assert values[0] == pytest.approx(EXAMPLE_EF[2] + 100.0 * upper_slope)
    assert values[1] == pytest.approx(EXAMPLE_EF[0] - 50.0 * lower_slope)
    assert outside.all()


def test_error_policy_names_offending_loads() -> None:
    with pytest.raises(OutOfRangeError) as excinfo:
        interpolate_curve(
            np.array(EXAMPLE_CAPACITY),
            np.array(EXAMPLE_EF),
            np.array([100.0, 450.0]),
            policy="error",
            run_id=7,
        )

    assert excinfo.value.loads_mw == (450.0,)
    assert excinfo.value.run_id == 7


def test_clip_policy_holds_boundary_values() -> None:
    values, outside = interpolate_curve(
        np.array(EXAMPLE_CAPACITY), np.array(EXAMPLE_EF), np.array([10.0, 1000.0]), policy="clip"
    )

    np.testing.assert_allclose(values, [EXAMPLE_EF[0], EXAMPLE_EF[2]])
    assert outside.all()


def test_single_point_curve_returns_constant() -> None:
    values, outside = interpolate_curve(np.array([80.0]), np.array([0.4]), np.array([40.0, 80.0, 120.0]))

    np.testing.assert_allclose(values, [0.4, 0.4, 0.4])
    assert outside.tolist() == [True, False, True]


def test_estimate_marginal_ef_returns_one_row_per_run_and_sample() -> None:
    runs = [_run(1, EXAMPLE_CAPACITY, EXAMPLE_EF), _run(2, EXAMPLE_CAPACITY, [0.2, 0.3, 0.4])]
    load = _load([100.0, 150.0, 400.0])

    mef = estimate_marginal_ef(load, runs)

    assert len(mef) == 6
    assert mef["run_id"].tolist() == [1, 1, 1, 2, 2, 2]
    assert mef["sample_index"].tolist() == [0, 1, 2, 0, 1, 2]
    assert mef["extrapolated"].tolist() == [False, False, True, False, False, True]
    assert mef.loc[4, "mef_kg_per_mwh"] == pytest.approx(0.3)
    assert {"timestamp", "hour", "weekday", "quarter", "week"}.issubset(mef.columns)


def test_estimate_marginal_ef_error_policy_propagates() -> None:
    with pytest.raises(OutOfRangeError):
        estimate_marginal_ef(_load([1000.0]), [_run(1, EXAMPLE_CAPACITY, EXAMPLE_EF)], extrapolation="error")


def test_estimate_requires_runs_and_samples() -> None:
    with pytest.raises(EmptySelectionError):
        estimate_marginal_ef(_load([100.0]), [])
    with pytest.raises(EmptySelectionError):
        estimate_marginal_ef(_load([]), [_run(1, EXAMPLE_CAPACITY, EXAMPLE_EF)])
    with pytest.raises(ConfigurationError):
        estimate_marginal_ef(pd.DataFrame({"load": [1.0]}), [_run(1, EXAMPLE_CAPACITY, EXAMPLE_EF)])


def test_band_summary_across_runs() -> None:
    runs = [_run(1, [100.0, 200.0], [1.0, 1.0]), _run(2, [100.0, 200.0], [3.0, 3.0])]
    mef = estimate_marginal_ef(_load([120.0, 180.0]), runs)

    band = summarize_mef_band(mef)

    assert len(band) == 2
    np.testing.assert_allclose(band["mean"], [2.0, 2.0])
    np.testing.assert_allclose(band["std"], [np.sqrt(2.0), np.sqrt(2.0)])
    assert band["run_count"].tolist() == [2, 2]
    assert band["extrapolated_share"].tolist() == [0.0, 0.0]


def test_band_summary_single_run_has_zero_spread() -> None:
    mef = estimate_marginal_ef(_load([120.0]), [_run(1, [100.0, 200.0], [1.0, 2.0])])

    assert summarize_mef_band(mef)["std"].tolist() == [0.0]


def test_aggregate_by_hour_feature() -> None:
    load = _load([120.0, 180.0, 120.0, 180.0], freq="12h")
    mef = estimate_marginal_ef(load, [_run(1, [100.0, 200.0], [1.0, 2.0])])

    by_hour = aggregate_mef_by(mef, "hour").set_index("hour")

    assert by_hour.loc[0, "mean"] == pytest.approx(1.2)
    assert by_hour.loc[12, "mean"] == pytest.approx(1.8)
    with pytest.raises(ConfigurationError):
        aggregate_mef_by(mef, "minute")


def test_convert_mef_units() -> None:
    values = pd.Series([400.0, 500.0])

    pd.testing.assert_series_equal(convert_mef_units(values, "g/kWh"), values)
    assert convert_mef_units(1000.0, "lb/MWh") == pytest.approx(2205.0)
    assert convert_mef_units(1000.0, "t/MWh") == pytest.approx(1.0)
    with pytest.raises(ConfigurationError):
        convert_mef_units(values, "furlongs")


def test_emissions_impact_of_load_reduction() -> None:
    runs = [_run(1, [100.0, 200.0], [2.0, 2.0]), _run(2, [100.0, 200.0], [4.0, 4.0])]
    baseline = _load([120.0, 180.0])
    scenario = _load([110.0, 170.0])

    impact = estimate_emissions_impact(baseline, scenario, runs)

    assert impact.step_hours == pytest.approx(1.0)
    assert impact.delta_energy_mwh == pytest.approx(-20.0)
    assert impact.per_run["emissions_change_kg"].tolist() == pytest.approx([-40.0, -80.0])
    assert impact.mean_kg == pytest.approx(-60.0)
    assert impact.std_kg == pytest.approx(np.std([-40.0, -80.0], ddof=1))


def test_emissions_impact_uses_inferred_sub_hourly_step() -> None:
    runs = [_run(1, [100.0, 200.0], [2.0, 2.0])]
    baseline = _load([120.0, 180.0, 150.0], freq="30min")
    scenario = _load([110.0, 170.0, 150.0], freq="30min")

    impact = estimate_emissions_impact(baseline, scenario, runs)

    assert impact.step_hours == pytest.approx(0.5)
    assert impact.mean_kg == pytest.approx(-20.0)
    assert impact.std_kg == 0.0


def test_emissions_impact_requires_matching_lengths() -> None:
    with pytest.raises(ConfigurationError):
        estimate_emissions_impact(_load([1.0, 2.0]), _load([1.0]), [_run(1, [1.0, 2.0], [1.0, 1.0])])


def test_mef_subset_by_run_ids() -> None:
    runs = [_run(1, [100.0, 200.0], [1.0, 1.0]), _run(2, [100.0, 200.0], [3.0, 3.0])]
    mef = estimate_marginal_ef(_load([150.0]), runs)

    assert mef_for_run_ids(mef, [2])["mef_kg_per_mwh"].tolist() == [3.0]
    with pytest.raises(EmptySelectionError):
        mef_for_run_ids(mef, [5])


def test_emissions_impact_rejects_misaligned_timestamps() -> None:
    runs = [_run(1, [100.0, 200.0], [2.0, 2.0])]
    baseline = _load([120.0, 180.0, 150.0], start="2020-01-01", freq="h")
    scenario = _load([110.0, 170.0, 150.0], start="2021-06-01", freq="D")

    with pytest.raises(ConfigurationError, match="timestamps differ at 3 rows"):
        estimate_emissions_impact(baseline, scenario, runs)


def test_emissions_impact_pairs_profiles_without_timestamps() -> None:
    runs = [_run(1, [100.0, 200.0], [2.0, 2.0])]
    baseline = pd.DataFrame({"load_mw": [120.0, 180.0]})
    scenario = pd.DataFrame({"load_mw": [110.0, 170.0]})

    impact = estimate_emissions_impact(baseline, scenario, runs, step_hours=2.0)

    assert impact.mean_kg == pytest.approx(-80.0)


def test_repeated_cumulative_capacity_keeps_last_point() -> None:
    # The 1e-10 MW plant does not move a 1e7 MW running total.
    capacity = np.cumsum([1e7, 1e-10, 5.0])
    ef = np.array([100.0, 0.0, 100.0])

    values, outside = interpolate_curve(capacity, ef, np.array([1e7, 1e7 + 2.0]))

    assert np.isfinite(values).all()
    assert values[0] == pytest.approx(0.0)
    assert values[1] == pytest.approx(40.0)
    assert not outside.any()


def test_decreasing_cumulative_capacity_is_a_numeric_error() -> None:
    with pytest.raises(NumericError):
        interpolate_curve(np.array([100.0, 50.0]), np.array([1.0, 2.0]), np.array([75.0]))
