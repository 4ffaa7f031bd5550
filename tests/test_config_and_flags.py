import pytest

from services.config import DEFAULT_CONFIG, DispatchConfig
from services.errors import ConfigurationError
from utils.flags import FLAG_DEFINITIONS, build_flag_insights


def test_default_config_constants() -> None:
    assert DEFAULT_CONFIG.derate_factor == 0.87
    assert DEFAULT_CONFIG.lb_per_kg == 2.205
    assert DEFAULT_CONFIG.std_fallback_fraction == 0.05
    assert DEFAULT_CONFIG.extrapolation == "linear"


def test_from_dict_parses_payload_and_keeps_defaults() -> None:
    cfg = DispatchConfig.from_dict({"run_count": "25", "seed": 3, "extrapolation": "clip"})

    assert cfg.run_count == 25
    assert cfg.seed == 3
    assert cfg.extrapolation == "clip"
    assert cfg.derate_factor == DEFAULT_CONFIG.derate_factor
    assert DispatchConfig.from_dict(cfg.to_dict()) == cfg


@pytest.mark.parametrize(
    "payload",
    [
        {"run_count": 0},
        {"derate_factor": 1.5},
        {"extrapolation": "nearest"},
        {"max_workers": 0},
        {"seed": "abc"},
    ],
)
def test_from_dict_rejects_invalid_settings(payload) -> None:
    with pytest.raises(ConfigurationError):
        DispatchConfig.from_dict(payload)


def test_flag_insights_are_ordered_by_count() -> None:
    insights = build_flag_insights({"empty_territory": 1, "missing_cost_stats": 4, "unknown": 9})

    assert insights[0].startswith(FLAG_DEFINITIONS["missing_cost_stats"]["label"])
    assert "4 plants dropped" in insights[0]
    assert len(insights) == 2


def test_flag_insights_cross_check_fuel_codes() -> None:
    insights = build_flag_insights({"unclassified_fuel_type": 2, "missing_cost_stats": 1})

    assert "compare the fuel codes" in insights[-1]


def test_flag_insights_when_nothing_dropped() -> None:
    assert build_flag_insights({}) == ["All plants passed registry filtering."]
