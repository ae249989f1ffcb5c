"""
Tracking module for marktrack.

Algorithms are interchangeable behind TrackerAlgorithm; one is selected per
mark type when the pipeline is set up.
"""

from ..errors import ConfigurationError
from ..parameters import ParameterKey, Parameters
from ..types import MarkType
from .base import TrackerAlgorithm, clip_rect, search_window
from .circle import CircleData, CircleTracker
from .histogram import HistogramData, HistogramTracker
from .template import TemplateData, TemplateTracker
from .tracker import CameraTrack, Tracker, TrackState, epipolar_mask

ALGORITHMS = {
    0: TemplateTracker,
    1: HistogramTracker,
    2: CircleTracker,
}

MARK_TYPES = {
    0: MarkType.CIRCLE,
    1: MarkType.RECTANGLE,
}


def create_algorithm(parameters: Parameters) -> TrackerAlgorithm:
    """
    Instantiate the tracker algorithm selected by the parameters.

    Raises:
        ConfigurationError: Unknown algorithm or mark type, or an algorithm
            that can't track the configured mark type
    """
    try:
        algorithm_cls = ALGORITHMS[parameters[ParameterKey.TRACKER]]
        mark_type = MARK_TYPES[parameters[ParameterKey.MARK_TYPE]]
    except KeyError as e:
        raise ConfigurationError(f"Unknown tracker configuration: {e}") from None

    if algorithm_cls.mark_type is not mark_type:
        raise ConfigurationError(
            f"{algorithm_cls.__name__} tracks {algorithm_cls.mark_type.name.lower()} "
            f"marks, configured mark type is {mark_type.name.lower()}"
        )
    return algorithm_cls(parameters)


__all__ = [
    # Interface
    "TrackerAlgorithm",
    "clip_rect",
    "search_window",
    "create_algorithm",
    # Algorithms
    "TemplateTracker",
    "TemplateData",
    "HistogramTracker",
    "HistogramData",
    "CircleTracker",
    "CircleData",
    # Multi-camera tracking
    "Tracker",
    "TrackState",
    "CameraTrack",
    "epipolar_mask",
]
