"""Document boundary detection and perspective rectification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from services.capture.errors import NoDocumentDetected
from services.capture.models import Capture, RectifiedImage
from services.capture.utils.quad_math import (
    opposite_side_ratio,
    order_corners,
    rectified_size,
    touches_border,
)

logger = logging.getLogger(__name__)

APPROX_EPSILON_RATIO = 0.02
BACKGROUND_RANGE = 25
DUPLICATE_CENTER_RATIO = 0.05

# BGR colour of the surface the document lies on
Color = Tuple[int, int, int]


@dataclass(frozen=True)
class QuadCandidate:
    corners: np.ndarray
    area: float
    source: str

    @property
    def center(self) -> np.ndarray:
        return self.corners.mean(axis=0)

    @property
    def radius(self) -> float:
        return float(np.linalg.norm(self.corners - self.center, axis=1).max())


class GeometryCorrector:
    """Find the largest plausible document quadrilateral and unwarp it.

    Detection is fully deterministic: fixed binarisations of the blurred
    frame (dilated Canny edges, an Otsu threshold and, when the caller knows
    the background colour, everything outside that colour range) feed a
    single contour filter. Nested or duplicate quads are dropped and the
    largest survivor wins.
    """

    def __init__(
        self,
        *,
        min_area_ratio: float = 0.1,
        min_side_ratio: float = 0.5,
        canonical_long_side: int = 800,
        canny_low: int = 50,
        canny_high: int = 150,
    ) -> None:
        if not 0.0 <= min_area_ratio <= 1.0:
            raise ValueError("min_area_ratio must be within [0, 1]")
        if canonical_long_side <= 0:
            raise ValueError("canonical_long_side must be positive")
        self.min_area_ratio = float(min_area_ratio)
        self.min_side_ratio = float(min_side_ratio)
        self.canonical_long_side = int(canonical_long_side)
        self.canny_low = int(canny_low)
        self.canny_high = int(canny_high)

    def rectify(self, capture: Capture, background: Optional[Color] = None) -> RectifiedImage:
        """Return the unwarped document or raise ``NoDocumentDetected``."""
        image = _as_bgr(capture.image)
        quad = self.detect(image, background=background)
        if quad is None:
            raise NoDocumentDetected(
                f"No document boundary covering at least {self.min_area_ratio:.0%} of the frame"
            )
        return self.warp(image, quad.corners)

    def detect(self, image: np.ndarray, background: Optional[Color] = None) -> Optional[QuadCandidate]:
        quads = self.detect_all(image, background=background)
        if not quads:
            return None
        best = quads[0]
        logger.debug("Selected %s quad with area %.0f (%d documents)", best.source, best.area, len(quads))
        return best

    def detect_all(self, image: np.ndarray, background: Optional[Color] = None) -> List[QuadCandidate]:
        """All distinct document quads in the frame, largest first."""
        bgr = _as_bgr(image)
        blurred_bgr = cv2.GaussianBlur(bgr, (5, 5), 0)
        blurred = cv2.cvtColor(blurred_bgr, cv2.COLOR_BGR2GRAY)
        height, width = blurred.shape[:2]
        min_area = self.min_area_ratio * float(width * height)

        masks = self._binarisations(blurred)
        if background is not None:
            masks.append(("background", background_mask(blurred_bgr, background)))

        candidates: List[QuadCandidate] = []
        for source, mask in masks:
            candidates.extend(self._quads_from_mask(mask, source, width, height, min_area))

        if not candidates:
            logger.debug("No quad candidate in %dx%d frame", width, height)
            return []
        # Stable sort keeps the Canny candidate first on equal area
        candidates.sort(key=lambda c: c.area, reverse=True)
        return _drop_nested(candidates, width, height)

    def warp(self, image: np.ndarray, corners: np.ndarray) -> RectifiedImage:
        quad = order_corners(corners)
        out_w, out_h = rectified_size(quad, self.canonical_long_side)
        target = np.array(
            [[0, 0], [out_w - 1, 0], [out_w - 1, out_h - 1], [0, out_h - 1]],
            dtype=np.float32,
        )
        transform = cv2.getPerspectiveTransform(quad, target)
        warped = cv2.warpPerspective(
            _as_bgr(image),
            transform,
            (out_w, out_h),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        corner_tuple = tuple((float(x), float(y)) for x, y in quad)
        return RectifiedImage(image=warped, corners=corner_tuple)  # type: ignore[arg-type]

    def _binarisations(self, blurred: np.ndarray) -> List[Tuple[str, np.ndarray]]:
        edges = cv2.Canny(blurred, self.canny_low, self.canny_high)
        edges = cv2.dilate(edges, np.ones((3, 3), dtype=np.uint8), iterations=1)
        _, otsu = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return [("canny", edges), ("otsu", otsu)]

    def _quads_from_mask(
        self,
        mask: np.ndarray,
        source: str,
        width: int,
        height: int,
        min_area: float,
    ) -> List[QuadCandidate]:
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        quads: List[QuadCandidate] = []
        for contour in contours:
            if cv2.contourArea(contour) < min_area:
                continue
            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, APPROX_EPSILON_RATIO * peri, True)
            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue
            area = float(cv2.contourArea(approx))
            if area < min_area:
                continue
            corners = order_corners(approx.reshape(4, 2))
            if touches_border(corners, width, height):
                continue
            if opposite_side_ratio(corners) < self.min_side_ratio:
                continue
            quads.append(QuadCandidate(corners=corners, area=area, source=source))
        return quads


def color_range(background: Sequence[int], spread: int = BACKGROUND_RANGE) -> Tuple[np.ndarray, np.ndarray]:
    """Lower/upper bounds around ``background``, shifted to stay inside [0, 255]."""
    spread = min(int(spread), 127)
    lower = np.zeros(3, dtype=np.uint8)
    upper = np.zeros(3, dtype=np.uint8)
    for i, value in enumerate(background[:3]):
        lo, hi = int(value) - spread, int(value) + spread
        if lo < 0:
            hi -= lo
            lo = 0
        if hi > 255:
            lo -= hi - 255
            hi = 255
        lower[i], upper[i] = lo, hi
    return lower, upper


def background_mask(image: np.ndarray, background: Sequence[int], spread: int = BACKGROUND_RANGE) -> np.ndarray:
    """Non-zero wherever ``image`` is outside the background colour range."""
    lower, upper = color_range(background, spread)
    return cv2.bitwise_not(cv2.inRange(image, lower, upper))


def _drop_nested(candidates: List[QuadCandidate], width: int, height: int) -> List[QuadCandidate]:
    # Candidates arrive largest first; a later one whose centre sits inside a
    # kept quad's circumcircle is the same document or a shape printed on it
    min_center_dist = DUPLICATE_CENTER_RATIO * float(np.hypot(width, height))
    kept: List[QuadCandidate] = []
    for candidate in candidates:
        duplicate = False
        for other in kept:
            dist = float(np.linalg.norm(candidate.center - other.center))
            if dist < min_center_dist or dist < other.radius:
                duplicate = True
                break
        if not duplicate:
            kept.append(candidate)
    return kept


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image
