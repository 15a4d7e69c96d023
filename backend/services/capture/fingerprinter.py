"""Compact, lighting-tolerant descriptors of rectified documents."""

from __future__ import annotations

import math

import cv2
import numpy as np

from services.capture.models import Fingerprint, RectifiedImage

CORRELATION_WEIGHT = 0.45
HASH_WEIGHT = 0.45
ASPECT_WEIGHT = 0.10


class DocumentFingerprinter:
    """Derive a `Fingerprint` from a rectified image.

    The descriptor pairs a histogram-equalised, zero-mean, unit-norm thumbnail
    (tolerant to exposure and scale) with a DCT perceptual hash. The
    computation is pure: no I/O and no shared state.
    """

    def __init__(self, thumb_size: int = 16, hash_size: int = 8, hash_source_size: int = 32) -> None:
        if hash_source_size < hash_size:
            raise ValueError("hash_source_size must be >= hash_size")
        self.thumb_size = int(thumb_size)
        self.hash_size = int(hash_size)
        self.hash_source_size = int(hash_source_size)

    def fingerprint(self, rectified: RectifiedImage) -> Fingerprint:
        gray = _grayscale(rectified.image)
        return Fingerprint(
            vector=self._thumbnail_vector(gray),
            hash_bits=self._perceptual_hash(gray),
            width=rectified.width,
            height=rectified.height,
        )

    def _thumbnail_vector(self, gray: np.ndarray) -> np.ndarray:
        equalised = cv2.equalizeHist(gray)
        thumb = cv2.resize(equalised, (self.thumb_size, self.thumb_size), interpolation=cv2.INTER_AREA)
        vec = thumb.astype(np.float32).ravel()
        vec -= float(vec.mean())
        norm = float(np.linalg.norm(vec))
        if norm > 1e-6:
            vec /= norm
        else:
            vec[:] = 0.0
        return vec

    def _perceptual_hash(self, gray: np.ndarray) -> np.ndarray:
        size = self.hash_source_size
        small = cv2.resize(gray, (size, size), interpolation=cv2.INTER_AREA).astype(np.float32)
        coeffs = cv2.dct(small)[: self.hash_size, : self.hash_size]
        # DC term only tracks overall brightness
        median = float(np.median(coeffs.ravel()[1:]))
        return (coeffs > median).ravel()


def fingerprint_distance(a: Fingerprint, b: Fingerprint) -> float:
    """Distance in [0, 1]; 0 for identical descriptors."""
    if a.vector.shape != b.vector.shape or a.hash_bits.shape != b.hash_bits.shape:
        raise ValueError("Fingerprints were computed with different settings")

    vec_a = a.vector.astype(np.float64)
    vec_b = b.vector.astype(np.float64)
    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a < 1e-6 or norm_b < 1e-6:
        ncc = 1.0 if norm_a < 1e-6 and norm_b < 1e-6 else 0.0
    else:
        ncc = float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
    ncc = max(-1.0, min(1.0, ncc))
    correlation_dist = (1.0 - ncc) / 2.0

    hash_dist = float(np.count_nonzero(a.hash_bits != b.hash_bits)) / float(max(a.hash_bits.size, 1))

    aspect_dist = abs(math.log(a.aspect_ratio / b.aspect_ratio)) / math.log(2.0)
    aspect_dist = min(1.0, aspect_dist)

    total = CORRELATION_WEIGHT * correlation_dist + HASH_WEIGHT * hash_dist + ASPECT_WEIGHT * aspect_dist
    return float(max(0.0, min(1.0, total)))


def _grayscale(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
