"""Model constants and run settings for registry building and dispatch."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Literal, Optional

from services.errors import ConfigurationError

ExtrapolationPolicy = Literal["linear", "error", "clip"]
EXTRAPOLATION_POLICIES: tuple[str, ...] = ("linear", "error", "clip")


@dataclass(frozen=True)
class DispatchConfig:
    """Settings for the plant registry and Monte-Carlo dispatch.

    Units:
    - ``derate_factor``: unitless multiplier applied to nameplate MW.
    - ``lb_per_kg``: pounds per kilogram used to convert lb CO2eq/MWh.
    - ``std_fallback_fraction``: share of the mean cost used as std-dev when a
      fuel type has a single cost observation.
    """

    derate_factor: float = 0.87
    lb_per_kg: float = 2.205
    std_fallback_fraction: float = 0.05
    run_count: int = 100
    seed: Optional[int] = None
    extrapolation: ExtrapolationPolicy = "linear"
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0.0 < self.derate_factor <= 1.0:
            raise ConfigurationError("derate_factor must be in (0, 1].")
        if self.lb_per_kg <= 0:
            raise ConfigurationError("lb_per_kg must be positive.")
        if self.std_fallback_fraction < 0:
            raise ConfigurationError("std_fallback_fraction cannot be negative.")
        if self.run_count < 1:
            raise ConfigurationError("run_count must be at least 1.")
        if self.extrapolation not in EXTRAPOLATION_POLICIES:
            raise ConfigurationError(
                f"extrapolation must be one of {EXTRAPOLATION_POLICIES}, got '{self.extrapolation}'."
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be positive when provided.")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DispatchConfig":
        """Parse a JSON-style payload, falling back to defaults for missing keys."""

        defaults = cls()
        try:
            return cls(
                derate_factor=float(payload.get("derate_factor", defaults.derate_factor)),
                lb_per_kg=float(payload.get("lb_per_kg", defaults.lb_per_kg)),
                std_fallback_fraction=float(
                    payload.get("std_fallback_fraction", defaults.std_fallback_fraction)
                ),
                run_count=int(payload.get("run_count", defaults.run_count)),
                seed=(None if payload.get("seed") is None else int(payload["seed"])),
                extrapolation=str(payload.get("extrapolation", defaults.extrapolation)),  # type: ignore[arg-type]
                max_workers=(None if payload.get("max_workers") is None else int(payload["max_workers"])),
            )
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(f"Invalid dispatch configuration: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = DispatchConfig()
