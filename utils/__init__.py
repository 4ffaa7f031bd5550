"""Utility helpers shared across services and the API."""

from utils.flags import FLAG_DEFINITIONS, build_flag_insights
from utils.io import (
    add_time_features,
    clean_load_profile,
    infer_step_hours,
    read_cost_table,
    read_load_profile,
    read_plant_table,
)

__all__ = [
    "FLAG_DEFINITIONS",
    "build_flag_insights",
    "add_time_features",
    "clean_load_profile",
    "infer_step_hours",
    "read_cost_table",
    "read_load_profile",
    "read_plant_table",
]
