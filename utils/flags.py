"""Registry filter flag metadata and insights helpers."""

from __future__ import annotations

from typing import Dict, List

FLAG_DEFINITIONS: Dict[str, Dict[str, str]] = {
    "empty_territory": {
        "label": "Plants without territory",
        "meaning": "Plant rows with a blank balancing-authority / territory code.",
        "knobs": "Fill territory codes in the plant table or drop unassigned plants upstream.",
        "insight": (
            "Unassigned plants cannot be filtered by territory and are left out of every"
            " dispatch stack; check the territory column of the source extract."
        ),
    },
    "unclassified_fuel_type": {
        "label": "Unclassified fuel codes",
        "meaning": "Primary fuel code is not in the fuel-type table.",
        "knobs": "Map the code to a fuel-type category or correct the source code.",
        "insight": (
            "Unrecognized fuel codes pass through as their own label and are excluded;"
            " large counts usually mean a new code set or a shifted column."
        ),
    },
    "missing_cost_stats": {
        "label": "Fuel types without cost data",
        "meaning": "No marginal cost observations exist for the plant's fuel type.",
        "knobs": "Add cost observations for the fuel type to the cost table.",
        "insight": (
            "Plants without a cost distribution cannot be placed in the merit order;"
            " missing renewables or nuclear costs remove low-emission capacity from the stack."
        ),
    },
    "non_positive_capacity": {
        "label": "Zero or missing capacity",
        "meaning": "Derated nameplate capacity is zero, negative or not numeric.",
        "knobs": "Check nameplate values for retired or placeholder plants.",
        "insight": (
            "Zero-capacity plants contribute nothing to cumulative capacity and would make"
            " the weighted emissions factor undefined at the bottom of the stack."
        ),
    },
    "missing_emissions_rate": {
        "label": "Missing emissions rate",
        "meaning": "Emissions rate (lb CO2eq/MWh) is blank or not numeric.",
        "knobs": "Fill emissions rates, using zero for non-emitting plants.",
        "insight": (
            "Plants without an emissions rate are dropped; confirm non-emitting fleets report"
            " an explicit zero rather than a blank."
        ),
    },
}


def build_flag_insights(flag_totals: Dict[str, int]) -> List[str]:
    """Translate registry drop counts into short, actionable insights."""

    insights: List[str] = []
    ordered_keys = sorted(flag_totals, key=flag_totals.get, reverse=True)

    for key in ordered_keys:
        count = flag_totals.get(key, 0)
        if count <= 0:
            continue

        meta = FLAG_DEFINITIONS.get(key)
        if not meta:
            continue

        insights.append(f"{meta['label']}: {count:,} plants dropped. {meta['insight']}")

    if flag_totals.get("unclassified_fuel_type", 0) > 0 and flag_totals.get("missing_cost_stats", 0) > 0:
        insights.append(
            "Both unclassified fuel codes and missing cost data were found; compare the fuel"
            " codes used by the plant table and the cost table."
        )

    if not insights:
        insights.append("All plants passed registry filtering.")

    return insights
