"""
Tunable parameters shared by the pipeline stages.

Parameters is an immutable snapshot. Stages receive it at construction and
never modify it; reconfiguration builds a new snapshot and a new pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class ParameterKey(Enum):
    """
    Closed set of parameter keys.

    Each member carries (kind, default).
    """

    # Calibration pattern geometry and sampling
    CALIBRATION_ROWS = ("calibration_rows", int, 6)
    CALIBRATION_COLS = ("calibration_cols", int, 9)
    CALIBRATION_SIZE = ("calibration_size", float, 0.025)  # metres
    CALIBRATION_FRAMES = ("calibration_frames", int, 10)
    CALIBRATION_SKIP = ("calibration_skip", int, 5)
    CALIBRATION_DISTINCT = ("calibration_distinct", float, 10.0)  # pixels
    CALIBRATION_REFINE = ("calibration_refine", int, 1)

    # Tracking
    MARK_TYPE = ("mark_type", int, 0)  # 0 circle, 1 rectangle
    TRACKER = ("tracker", int, 0)  # 0 template, 1 histogram, 2 circle
    TEMPLATE_RADIUS = ("template_radius", int, 15)
    SEARCH_MARGIN = ("search_margin", int, 20)
    MATCH_THRESHOLD = ("match_threshold", float, 0.8)
    HISTOGRAM_BINS = ("histogram_bins", int, 32)
    HISTOGRAM_THRESHOLD = ("histogram_threshold", float, 0.3)
    CIRCLE_CANNY = ("circle_canny", float, 100.0)
    CIRCLE_ACCUMULATOR = ("circle_accumulator", float, 15.0)
    CIRCLE_TOLERANCE = ("circle_tolerance", float, 0.3)
    CIRCLE_THRESHOLD = ("circle_threshold", float, 0.5)
    EPIPOLAR_TOLERANCE = ("epipolar_tolerance", int, 5)

    # Sources
    SOURCE_TIMEOUT = ("source_timeout", float, 0.1)  # seconds
    SOURCE_BUFFER = ("source_buffer", int, 2)
    SYNC_TOLERANCE = ("sync_tolerance", int, 0)  # frames between cameras of one frameset

    def __init__(self, key: str, kind: type, default: int | float):
        self.key = key
        self.kind = kind
        self.default = default

    @classmethod
    def parse(cls, name: str | ParameterKey) -> ParameterKey:
        """Resolve a key given as member, member name or TOML key."""
        if isinstance(name, cls):
            return name
        try:
            return cls[name.upper()]
        except KeyError:
            raise KeyError(f"Unknown parameter: {name}") from None


@dataclass(frozen=True)
class Parameters:
    """
    Immutable mapping from ParameterKey to typed value.

    Missing keys take their defaults, values are coerced to the key's type.

    Usage:
        parameters = Parameters({ParameterKey.SEARCH_MARGIN: 30})
        margin = parameters[ParameterKey.SEARCH_MARGIN]
        wider = parameters.replace(search_margin=40)
    """

    values: Mapping[ParameterKey, int | float] = field(default_factory=dict)

    def __post_init__(self):
        resolved = {key: key.default for key in ParameterKey}
        for name, value in self.values.items():
            key = ParameterKey.parse(name)
            resolved[key] = key.kind(value)
        object.__setattr__(self, "values", MappingProxyType(resolved))

    def __getitem__(self, key: ParameterKey | str) -> int | float:
        return self.values[ParameterKey.parse(key)]

    def get(self, key: ParameterKey | str) -> int | float:
        return self[key]

    def __iter__(self):
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def replace(self, **values: int | float) -> Parameters:
        """Return a new snapshot with the given keys changed."""
        merged = dict(self.values)
        for name, value in values.items():
            merged[ParameterKey.parse(name)] = value
        return Parameters(merged)

    def to_dict(self) -> dict[str, int | float]:
        """Plain dict keyed by TOML key names."""
        return {key.key: value for key, value in self.values.items()}
