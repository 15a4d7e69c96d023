from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

Point = Tuple[float, float]


def order_corners(points: np.ndarray) -> np.ndarray:
    """Order four points as top-left, top-right, bottom-right, bottom-left."""
    pts = np.asarray(points, dtype=np.float32).reshape(4, 2)
    center = pts.mean(axis=0)
    # Image y points down, so increasing angle walks clockwise on screen
    angles = np.arctan2(pts[:, 1] - center[1], pts[:, 0] - center[0])
    clockwise = pts[np.argsort(angles, kind="stable")]
    start = int(np.argmin(clockwise.sum(axis=1)))
    return np.roll(clockwise, -start, axis=0).astype(np.float32)


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(math.hypot(float(b[0]) - float(a[0]), float(b[1]) - float(a[1])))


def side_lengths(quad: np.ndarray) -> Tuple[float, float, float, float]:
    """Return (top, right, bottom, left) edge lengths of an ordered quad."""
    tl, tr, br, bl = quad
    return distance(tl, tr), distance(tr, br), distance(br, bl), distance(bl, tl)


def opposite_side_ratio(quad: np.ndarray) -> float:
    """Smallest shorter/longer ratio over the two pairs of opposite sides."""
    top, right, bottom, left = side_lengths(quad)
    ratios = []
    for a, b in ((top, bottom), (left, right)):
        longer = max(a, b)
        ratios.append(min(a, b) / longer if longer > 0 else 0.0)
    return float(min(ratios))


def rectified_size(quad: np.ndarray, long_side: int) -> Tuple[int, int]:
    """Output (width, height) keeping the quad's measured aspect ratio."""
    top, right, bottom, left = side_lengths(quad)
    width = max(top, bottom)
    height = max(left, right)
    if width <= 0 or height <= 0:
        raise ValueError("Degenerate quadrilateral")
    scale = float(long_side) / max(width, height)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def touches_border(quad: np.ndarray, width: int, height: int, margin: float = 1.0) -> bool:
    xs = quad[:, 0]
    ys = quad[:, 1]
    return bool(
        np.any(xs <= margin)
        or np.any(ys <= margin)
        or np.any(xs >= width - 1 - margin)
        or np.any(ys >= height - 1 - margin)
    )
