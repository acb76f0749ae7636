"""
Layer 1 — Auto-Capture Configuration
Tunable thresholds for the frame-quality gate.

Every threshold the gate uses lives here with its default. Values can be
overridden per deployment through AUTOCAPTURE_<FIELD> environment variables.
"""
import logging
import os
from dataclasses import dataclass, asdict, fields
from typing import Dict, Mapping, Optional

from error_handlers import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOCAPTURE_"

EDGE_THRESHOLD_MODES = ("dynamic", "max_fraction")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class GateConfig:
    """Configuration for the auto-capture quality gate."""
    # Debounce
    consecutive_frames_required: int = 8   # Passing frames in a row before capture

    # Per-metric thresholds
    sharpness_min: float = 35.0            # Minimum Laplacian variance
    fill_min: float = 0.12                 # Minimum fraction of lit pixels
    motion_max: float = 8.0                # Max mean abs luma difference vs previous frame
    edge_band_fraction: float = 0.10       # Border strip thickness (fraction of shorter side)
    edge_ratio_min: float = 0.12           # Minimum edge pixel ratio in every border strip
    edge_threshold_mode: str = "dynamic"   # "dynamic" (mean + 1.2 std) or "max_fraction"

    # Startup settle time
    min_elapsed_seconds: float = 1.2

    # Document proportions (88:125 portrait passport page)
    aspect_target: float = 0.70
    aspect_tolerance: float = 0.08

    # Analysis and output
    analysis_width: int = 320
    jpeg_quality: float = 0.92
    repeat_capture: bool = True            # Keep streaming after a capture

    def __post_init__(self):
        self._validate()

    def _validate(self):
        if isinstance(self.consecutive_frames_required, bool) or \
                not isinstance(self.consecutive_frames_required, int) or \
                self.consecutive_frames_required <= 0:
            raise ConfigError("consecutive_frames_required", self.consecutive_frames_required,
                              "must be a positive integer")
        if not 0.0 < self.fill_min < 1.0:
            raise ConfigError("fill_min", self.fill_min, "must be in (0, 1)")
        if self.motion_max < 0:
            raise ConfigError("motion_max", self.motion_max, "must be >= 0")
        if not 0.0 < self.edge_band_fraction < 1.0:
            raise ConfigError("edge_band_fraction", self.edge_band_fraction, "must be in (0, 1)")
        if not 0.0 <= self.edge_ratio_min <= 1.0:
            raise ConfigError("edge_ratio_min", self.edge_ratio_min, "must be in [0, 1]")
        if self.edge_threshold_mode not in EDGE_THRESHOLD_MODES:
            raise ConfigError("edge_threshold_mode", self.edge_threshold_mode,
                              f"must be one of {', '.join(EDGE_THRESHOLD_MODES)}")
        if self.min_elapsed_seconds < 0:
            raise ConfigError("min_elapsed_seconds", self.min_elapsed_seconds, "must be >= 0")
        if self.aspect_target <= 0:
            raise ConfigError("aspect_target", self.aspect_target, "must be > 0")
        if self.aspect_tolerance < 0:
            raise ConfigError("aspect_tolerance", self.aspect_tolerance, "must be >= 0")
        if isinstance(self.analysis_width, bool) or \
                not isinstance(self.analysis_width, int) or self.analysis_width < 1:
            raise ConfigError("analysis_width", self.analysis_width, "must be a positive integer")
        if not 0.0 < self.jpeg_quality <= 1.0:
            raise ConfigError("jpeg_quality", self.jpeg_quality, "must be in (0, 1]")

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "GateConfig":
        """
        Build a config from a mapping, keeping defaults for missing keys.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise ConfigError(key, data[key], "unknown option")
        return cls(**dict(data))


def _parse_value(field_name: str, field_type, raw: str):
    """Parse an environment string into the field's type."""
    value = raw.strip()
    try:
        if field_type in (bool, "bool"):
            lowered = value.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {raw}")
        if field_type in (int, "int"):
            return int(value)
        if field_type in (float, "float"):
            return float(value)
    except ValueError as e:
        raise ConfigError(field_name, raw, str(e))
    return value


def load_gate_config(environ: Optional[Mapping[str, str]] = None) -> GateConfig:
    """
    Load gate configuration from AUTOCAPTURE_* environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        GateConfig: Defaults overridden by any variables present
    """
    environ = os.environ if environ is None else environ

    overrides = {}
    for f in fields(GateConfig):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            overrides[f.name] = _parse_value(f.name, f.type, environ[key])

    if overrides:
        logger.info(f"Gate config overrides from environment: {overrides}")

    return GateConfig(**overrides)
