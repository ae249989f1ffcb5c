"""
Parametric circle tracker.

Searches for circles of (roughly) the seed radius with the Hough gradient
method and scores each candidate by the edge support along its circumference.
"""

from __future__ import annotations

from dataclasses import dataclass
import math

import cv2
import numpy as np

import marktrack.logger

from ..parameters import ParameterKey
from ..types import Mark, MarkType
from .base import Rect, TrackerAlgorithm, crop, region_inside, search_window

logger = marktrack.logger.get(__name__)

SUPPORT_SAMPLES = 64


@dataclass(frozen=True, slots=True)
class CircleData:
    radius: float


class CircleTracker(TrackerAlgorithm):
    mark_type = MarkType.CIRCLE

    @property
    def threshold(self) -> float:
        return self.parameters[ParameterKey.CIRCLE_THRESHOLD]

    def initialize(self, image: np.ndarray, mark: Mark) -> CircleData | None:
        if mark.type is not MarkType.CIRCLE:
            raise ValueError(f"{type(self).__name__} needs a circle mark, got {mark.type}")
        if mark.radius < 1 or not region_inside(image, mark):
            logger.debug(f"Seed {mark.center} r={mark.radius} outside image")
            return None
        return CircleData(radius=float(mark.radius))

    def _radius_range(self, radius: float) -> tuple[int, int]:
        tolerance = self.parameters[ParameterKey.CIRCLE_TOLERANCE]
        low = max(1, int(math.floor(radius * (1 - tolerance))))
        high = max(low + 1, int(math.ceil(radius * (1 + tolerance))))
        return low, high

    def search(
        self,
        image: np.ndarray,
        data: CircleData,
        roi: Rect | None = None,
        mask: np.ndarray | None = None,
        threshold: float | None = None,
    ) -> Mark:
        if threshold is None:
            threshold = self.threshold

        min_radius, max_radius = self._radius_range(data.radius)
        window = search_window(image.shape, roi, max_radius, max_radius)
        wx, wy, ww, wh = window

        if ww < 2 * min_radius or wh < 2 * min_radius:
            logger.debug(f"Window {window} smaller than circle")
            return Mark.invalid()

        gray = crop(image, window)
        if gray.ndim == 3:
            gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)
        gray = cv2.GaussianBlur(gray, (5, 5), 1.5)

        canny = self.parameters[ParameterKey.CIRCLE_CANNY]
        circles = cv2.HoughCircles(
            gray,
            cv2.HOUGH_GRADIENT,
            dp=1,
            minDist=max(1.0, data.radius),
            param1=canny,
            param2=self.parameters[ParameterKey.CIRCLE_ACCUMULATOR],
            minRadius=min_radius,
            maxRadius=max_radius,
        )
        if circles is None:
            logger.debug("No circle candidates")
            return Mark.invalid()

        edges = cv2.Canny(gray, canny / 2, canny)
        edges = cv2.dilate(edges, np.ones((3, 3), np.uint8))

        best = None
        best_score = -1.0
        for x, y, radius in circles[0]:
            if mask is not None:
                mx, my = int(round(x)) + wx, int(round(y)) + wy
                if not (0 <= my < mask.shape[0] and 0 <= mx < mask.shape[1]) or not mask[my, mx]:
                    continue
            score = _edge_support(edges, x, y, radius)
            if score > best_score:
                best, best_score = (x, y, radius), score

        if best is None or best_score <= threshold:
            logger.debug(f"Low score ({best_score:.3f}/{threshold:.3f})")
            return Mark.invalid()

        x, y, radius = best
        return Mark.circle(wx + float(x), wy + float(y), float(radius), score=best_score)


def _edge_support(edges: np.ndarray, x: float, y: float, radius: float) -> float:
    """Fraction of circumference samples that fall on an edge pixel."""
    angles = np.linspace(0, 2 * np.pi, SUPPORT_SAMPLES, endpoint=False)
    xs = np.round(x + radius * np.cos(angles)).astype(int)
    ys = np.round(y + radius * np.sin(angles)).astype(int)
    inside = (xs >= 0) & (xs < edges.shape[1]) & (ys >= 0) & (ys < edges.shape[0])
    hits = edges[ys[inside], xs[inside]] > 0
    return float(hits.sum()) / SUPPORT_SAMPLES
