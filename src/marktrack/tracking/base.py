"""
Tracker algorithm interface and search-window helpers.

An algorithm is stateless: `initialize` builds the per-track data from a
seed mark, `search` uses that data to find the mark in a new image. The
caller owns the data and replaces it wholesale on re-initialization.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from ..parameters import Parameters
from ..types import Mark, MarkType

Rect = tuple[int, int, int, int]  # x, y, width, height


def clip_rect(rect: Rect, shape: tuple[int, ...]) -> Rect:
    """Intersect a rectangle with the image bounds."""
    x, y, w, h = rect
    x0 = max(x, 0)
    y0 = max(y, 0)
    x1 = min(x + w, shape[1])
    y1 = min(y + h, shape[0])
    return x0, y0, max(x1 - x0, 0), max(y1 - y0, 0)


def search_window(
    shape: tuple[int, ...],
    roi: Rect | None,
    half_width: int,
    half_height: int,
) -> Rect:
    """
    Region of the image scanned by a search.

    The prior ROI is grown by the template half-extent on each side so the
    whole template can slide over every offset within the ROI, then clipped
    to the image. Without a ROI the whole image is scanned.
    """
    if roi is None:
        return 0, 0, shape[1], shape[0]
    x, y, w, h = roi
    extended = (x - half_width, y - half_height, w + 2 * half_width, h + 2 * half_height)
    return clip_rect(extended, shape)


def crop(image: np.ndarray, rect: Rect) -> np.ndarray:
    x, y, w, h = rect
    return image[y:y + h, x:x + w]


def region_inside(image: np.ndarray, mark: Mark) -> bool:
    """True if the mark's extent lies completely inside the image."""
    hx, hy = mark.half_extent
    cx, cy = mark.center
    return (
        hx <= cx < image.shape[1] - hx
        and hy <= cy < image.shape[0] - hy
    )


class TrackerAlgorithm(ABC):
    """
    Search strategy shared by all per-camera tracks of one target.
    """

    mark_type: MarkType = MarkType.CIRCLE

    def __init__(self, parameters: Parameters):
        self.parameters = parameters

    @property
    @abstractmethod
    def threshold(self) -> float:
        """Default acceptance threshold (exclusive)."""

    @abstractmethod
    def initialize(self, image: np.ndarray, mark: Mark):
        """
        Build tracker data from the region described by a seed mark.

        Returns:
            Algorithm-specific tracker data, or None if the seed region
            does not fit inside the image
        """

    @abstractmethod
    def search(
        self,
        image: np.ndarray,
        data,
        roi: Rect | None = None,
        mask: np.ndarray | None = None,
        threshold: float | None = None,
    ) -> Mark:
        """
        Locate the mark in a new image.

        Args:
            image: Full frame
            data: Tracker data returned by initialize()
            roi: Prior region of interest (x, y, w, h), None for the whole image
            mask: Optional full-frame validity mask (nonzero = allowed)
            threshold: Acceptance threshold, algorithm default if None

        Returns:
            Found mark, or an invalid mark when the target is not found
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(threshold={self.threshold})"
