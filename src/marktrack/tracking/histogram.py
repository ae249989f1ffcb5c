"""
Histogram back-projection tracker.

The track stores the hue histogram of the seed rectangle. A search back
projects the histogram onto the window, picks the densest box and refines
it with mean shift.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

import marktrack.logger

from ..parameters import ParameterKey
from ..types import Mark, MarkType
from .base import Rect, TrackerAlgorithm, crop, region_inside, search_window

logger = marktrack.logger.get(__name__)

HUE_RANGE = [0, 180]
GRAY_RANGE = [0, 256]

# Pixels too dark or too washed out carry no reliable hue
SATURATION_LOW = (0, 60, 32)
SATURATION_HIGH = (180, 255, 255)


@dataclass(frozen=True, slots=True)
class HistogramData:
    histogram: np.ndarray  # (bins, 1) float32 normalized to 0..255
    size: tuple[int, int]  # (width, height)
    color: bool  # Hue histogram if True, intensity histogram otherwise


def _channel(image: np.ndarray) -> tuple[np.ndarray, np.ndarray | None, list[int]]:
    """Single channel used for histograms, its validity mask and value range."""
    if image.ndim == 3:
        hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)
        valid = cv2.inRange(hsv, SATURATION_LOW, SATURATION_HIGH)
        return hsv[:, :, 0], valid, HUE_RANGE
    return image, None, GRAY_RANGE


class HistogramTracker(TrackerAlgorithm):
    mark_type = MarkType.RECTANGLE

    @property
    def threshold(self) -> float:
        return self.parameters[ParameterKey.HISTOGRAM_THRESHOLD]

    def initialize(self, image: np.ndarray, mark: Mark) -> HistogramData | None:
        if mark.type is not MarkType.RECTANGLE:
            raise ValueError(f"{type(self).__name__} needs a rectangle mark, got {mark.type}")

        x, y, w, h = mark.region()
        if w < 1 or h < 1 or not region_inside(image, mark):
            logger.debug(f"Seed {mark.center} {mark.size} outside image")
            return None

        channel, valid, value_range = _channel(crop(image, (x, y, w, h)))
        bins = self.parameters[ParameterKey.HISTOGRAM_BINS]
        histogram = cv2.calcHist([channel], [0], valid, [bins], value_range)
        cv2.normalize(histogram, histogram, 0, 255, cv2.NORM_MINMAX)

        return HistogramData(histogram=histogram, size=(w, h), color=image.ndim == 3)

    def search(
        self,
        image: np.ndarray,
        data: HistogramData,
        roi: Rect | None = None,
        mask: np.ndarray | None = None,
        threshold: float | None = None,
    ) -> Mark:
        if threshold is None:
            threshold = self.threshold

        if data.color != (image.ndim == 3):
            # hue and intensity histograms are not comparable
            logger.debug(f"Histogram of a {'color' if data.color else 'gray'} seed, frame differs")
            return Mark.invalid()

        w, h = data.size
        window = search_window(image.shape, roi, w // 2, h // 2)
        wx, wy, ww, wh = window

        if ww < w or wh < h:
            logger.debug(f"Window {window} smaller than {data.size}")
            return Mark.invalid()

        channel, valid, value_range = _channel(crop(image, window))
        back = cv2.calcBackProject([channel], [0], data.histogram, value_range, 1)
        if valid is not None:
            back[valid == 0] = 0
        if mask is not None:
            back[crop(mask, window) == 0] = 0

        # Densest box as the mean shift start
        density = cv2.boxFilter(back.astype(np.float32), -1, (w, h), normalize=True,
                                borderType=cv2.BORDER_CONSTANT)
        _, _, _, (mx, my) = cv2.minMaxLoc(density)
        start_x = min(max(mx - w // 2, 0), ww - w)
        start_y = min(max(my - h // 2, 0), wh - h)

        criteria = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 10, 1)
        _, (bx, by, _, _) = cv2.meanShift(back, (start_x, start_y, w, h), criteria)

        score = float(back[by:by + h, bx:bx + w].mean()) / 255.0
        if score <= threshold:
            logger.debug(f"Low score ({score:.3f}/{threshold:.3f})")
            return Mark.invalid()

        return Mark.rectangle(wx + bx + w / 2, wy + by + h / 2, w, h, score=score)
