"""Utility helpers for capture service modules."""

from services.capture.utils.quad_math import order_corners, opposite_side_ratio, rectified_size, touches_border

__all__ = [
    "order_corners",
    "opposite_side_ratio",
    "rectified_size",
    "touches_border",
]
