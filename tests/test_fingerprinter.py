"""Tests for services.capture.fingerprinter."""

from __future__ import annotations

import numpy as np
import pytest

from services.capture.config import MATCH_PRESETS
from services.capture.fingerprinter import DocumentFingerprinter, fingerprint_distance
from services.capture.geometry_corrector import GeometryCorrector
from services.capture.models import Fingerprint, RectifiedImage

THRESHOLD = MATCH_PRESETS["balanced"]["threshold"]


@pytest.fixture
def fingerprint_of(make_page, photograph):
    corrector = GeometryCorrector()
    fingerprinter = DocumentFingerprinter()

    def _fingerprint(seed: int, **photo_kwargs) -> Fingerprint:
        rectified = corrector.rectify(photograph(make_page(seed), **photo_kwargs))
        return fingerprinter.fingerprint(rectified)

    return _fingerprint


def test_descriptor_shape(fingerprint_of):
    fp = fingerprint_of(10)
    assert fp.vector.shape == (256,)
    assert fp.hash_bits.shape == (64,)
    assert fp.vector.dtype == np.float32
    assert float(np.linalg.norm(fp.vector)) == pytest.approx(1.0, abs=1e-4)


def test_fingerprint_is_immutable(fingerprint_of):
    fp = fingerprint_of(10)
    with pytest.raises(ValueError):
        fp.vector[0] = 1.0
    with pytest.raises(AttributeError):
        fp.width = 3  # type: ignore[misc]


def test_identical_image_has_zero_distance(make_page):
    image = RectifiedImage(image=make_page(11), corners=((0, 0), (299, 0), (299, 419), (0, 419)))
    fingerprinter = DocumentFingerprinter()
    a = fingerprinter.fingerprint(image)
    b = fingerprinter.fingerprint(image)
    assert fingerprint_distance(a, b) == pytest.approx(0.0, abs=1e-6)


def test_recapture_of_same_page_is_close(fingerprint_of):
    straight = fingerprint_of(12)
    rotated = fingerprint_of(12, angle_deg=7.0, keystone=0.05, brightness=0.85)
    assert fingerprint_distance(straight, rotated) < THRESHOLD


def test_scale_change_is_tolerated(fingerprint_of):
    near = fingerprint_of(13, scale=1.5)
    far = fingerprint_of(13, scale=1.0)
    assert fingerprint_distance(near, far) < THRESHOLD


def test_distinct_page_is_further_than_recapture(fingerprint_of):
    a = fingerprint_of(14)
    b = fingerprint_of(15)
    same = fingerprint_of(14, angle_deg=-6.0)
    assert fingerprint_distance(a, b) > fingerprint_distance(a, same)


def test_distinct_pages_stay_outside_lenient_threshold(fingerprint_of):
    lenient = MATCH_PRESETS["lenient"]["threshold"]
    prints = [fingerprint_of(seed) for seed in range(300, 340)]
    closest = min(
        fingerprint_distance(prints[i], prints[j])
        for i in range(len(prints))
        for j in range(i + 1, len(prints))
    )
    assert closest > lenient


@pytest.mark.parametrize(
    "photo_kwargs",
    [
        {"scale": 1.0},
        {"brightness": 0.7},
        {"angle_deg": 12.0, "keystone": 0.08},
        {"angle_deg": -9.0, "brightness": 0.85},
    ],
)
def test_recaptures_stay_inside_default_threshold(fingerprint_of, photo_kwargs):
    assert fingerprint_distance(fingerprint_of(40), fingerprint_of(40, **photo_kwargs)) < THRESHOLD


def test_distance_is_symmetric_and_bounded(fingerprint_of):
    a = fingerprint_of(16)
    b = fingerprint_of(17)
    d = fingerprint_distance(a, b)
    assert d == pytest.approx(fingerprint_distance(b, a))
    assert 0.0 <= d <= 1.0


def test_uniform_page_has_zero_vector():
    blank = RectifiedImage(
        image=np.full((100, 80, 3), 200, dtype=np.uint8),
        corners=((0, 0), (79, 0), (79, 99), (0, 99)),
    )
    fp = DocumentFingerprinter().fingerprint(blank)
    assert not np.any(fp.vector)
    assert fingerprint_distance(fp, fp) == pytest.approx(0.0, abs=1e-6)


def test_mismatched_settings_rejected(make_page):
    image = RectifiedImage(image=make_page(18), corners=((0, 0), (299, 0), (299, 419), (0, 419)))
    small = DocumentFingerprinter(thumb_size=8).fingerprint(image)
    large = DocumentFingerprinter(thumb_size=16).fingerprint(image)
    with pytest.raises(ValueError):
        fingerprint_distance(small, large)
