"""
Template-patch correlation tracker.

The track stores the square patch around the seed circle and finds it again
with normalized correlation coefficient matching.
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


@dataclass(frozen=True, slots=True)
class TemplateData:
    """Stored image patch of side 2 * radius centered on the mark."""

    template: np.ndarray
    radius: int

    def top_left(self, point: tuple[int, int] = (0, 0)) -> tuple[int, int]:
        return point[0] - self.radius, point[1] - self.radius

    def bottom_right(self, point: tuple[int, int] = (0, 0)) -> tuple[int, int]:
        return point[0] + self.radius, point[1] + self.radius


class TemplateTracker(TrackerAlgorithm):
    mark_type = MarkType.CIRCLE

    @property
    def threshold(self) -> float:
        return self.parameters[ParameterKey.MATCH_THRESHOLD]

    def initialize(self, image: np.ndarray, mark: Mark) -> TemplateData | None:
        if mark.type is not MarkType.CIRCLE:
            raise ValueError(f"{type(self).__name__} needs a circle mark, got {mark.type}")

        radius = int(round(mark.radius))
        if radius < 1 or not region_inside(image, mark):
            logger.debug(f"Seed {mark.center} r={mark.radius} outside image")
            return None

        x = int(round(mark.center[0])) - radius
        y = int(round(mark.center[1])) - radius
        # Copy so later frames can't overwrite the template
        template = image[y:y + 2 * radius, x:x + 2 * radius].copy()
        if template.shape[0] != 2 * radius or template.shape[1] != 2 * radius:
            return None

        return TemplateData(template=template, radius=radius)

    def search(
        self,
        image: np.ndarray,
        data: TemplateData,
        roi: Rect | None = None,
        mask: np.ndarray | None = None,
        threshold: float | None = None,
    ) -> Mark:
        if threshold is None:
            threshold = self.threshold

        r = data.radius
        window = search_window(image.shape, roi, r, r)
        wx, wy, ww, wh = window

        if ww < data.template.shape[1] or wh < data.template.shape[0]:
            logger.debug(f"Window {window} smaller than template")
            return Mark.invalid()

        # Experimentally TM_CCOEFF_NORMED gave best results
        match_result = cv2.matchTemplate(crop(image, window), data.template, cv2.TM_CCOEFF_NORMED)
        np.nan_to_num(match_result, copy=False)

        if mask is not None:
            # Crop with the window, then drop the template border so that each
            # mask pixel lines up with the template center of one offset
            cropped_mask = crop(mask, window)
            shifted_mask = cropped_mask[r:wh - r + 1, r:ww - r + 1]
            shifted_mask = (shifted_mask > 0).astype(np.uint8)
            assert shifted_mask.shape == match_result.shape

            if not shifted_mask.any():
                return Mark.invalid()
            min_val, max_val, _, max_loc = cv2.minMaxLoc(match_result, shifted_mask)
        else:
            min_val, max_val, _, max_loc = cv2.minMaxLoc(match_result)

        # Score is the spread of the correlation surface
        score = max_val - min_val
        if score <= threshold:
            logger.debug(f"Low score ({score:.3f}/{threshold:.3f})")
            return Mark.invalid()

        # Transform the matched offset back into full-image coordinates
        offset_x, offset_y = data.bottom_right()
        center_x = max_loc[0] + offset_x + wx
        center_y = max_loc[1] + offset_y + wy

        return Mark.circle(center_x, center_y, data.radius, score=score)
