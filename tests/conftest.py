"""Shared test fixtures: synthetic document photos and wired services."""

from __future__ import annotations

import itertools
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Tuple

import cv2
import numpy as np
import pytest

from services.capture.config import CaptureSettings
from services.capture.ingestion import IngestionCoordinator
from services.capture.models import Capture

BACKGROUND = (40, 40, 40)


def _make_page(seed: int, width: int = 300, height: int = 420, blocks: int = 40) -> np.ndarray:
    """A bright page covered with dark blocks laid out from ``seed``."""
    rng = np.random.default_rng(seed)
    page = np.full((height, width, 3), 235, dtype=np.uint8)
    margin = 15
    for _ in range(blocks):
        w = int(rng.integers(20, 120))
        h = int(rng.integers(10, 70))
        x = int(rng.integers(margin, width - margin - w))
        y = int(rng.integers(margin, height - margin - h))
        shade = int(rng.integers(0, 120))
        cv2.rectangle(page, (x, y), (x + w, y + h), (shade, shade, shade), thickness=-1)
    return page


def _photograph(
    page: np.ndarray,
    *,
    angle_deg: float = 0.0,
    scale: float = 1.4,
    canvas: Tuple[int, int] = (800, 800),
    keystone: float = 0.0,
    brightness: float = 1.0,
    background: Tuple[int, int, int] = BACKGROUND,
) -> Capture:
    """Project ``page`` onto a dark canvas, rotated and optionally keystoned."""
    ph, pw = page.shape[:2]
    cw, ch = canvas
    half_w, half_h = pw * scale / 2.0, ph * scale / 2.0
    local = np.array(
        [
            [-half_w * (1.0 - keystone), -half_h],
            [half_w * (1.0 - keystone), -half_h],
            [half_w, half_h],
            [-half_w, half_h],
        ],
        dtype=np.float32,
    )
    rad = math.radians(angle_deg)
    rot = np.array([[math.cos(rad), -math.sin(rad)], [math.sin(rad), math.cos(rad)]], dtype=np.float32)
    dst = (local @ rot.T) + np.array([cw / 2.0, ch / 2.0], dtype=np.float32)
    src = np.array([[0, 0], [pw - 1, 0], [pw - 1, ph - 1], [0, ph - 1]], dtype=np.float32)
    transform = cv2.getPerspectiveTransform(src, dst.astype(np.float32))
    photo = cv2.warpPerspective(
        page,
        transform,
        (cw, ch),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=background,
    )
    if brightness != 1.0:
        photo = np.clip(photo.astype(np.float32) * brightness, 0, 255).astype(np.uint8)
    return Capture(image=photo)


@pytest.fixture
def make_page() -> Callable[..., np.ndarray]:
    return _make_page


@pytest.fixture
def photograph() -> Callable[..., Capture]:
    return _photograph


@pytest.fixture
def blank_capture() -> Capture:
    return Capture(image=np.full((480, 640, 3), 120, dtype=np.uint8))


@pytest.fixture
def small_square_capture() -> Capture:
    image = np.full((480, 640, 3), 60, dtype=np.uint8)
    cv2.rectangle(image, (300, 200), (360, 260), (240, 240, 240), thickness=-1)
    return Capture(image=image)


@pytest.fixture
def settings(tmp_path) -> CaptureSettings:
    return CaptureSettings(data_dir=tmp_path / "data")


@pytest.fixture
def coordinator(settings) -> IngestionCoordinator:
    return IngestionCoordinator(settings)


@pytest.fixture
def ticking_clock(monkeypatch):
    """Make record timestamps strictly increasing, one second per call."""
    start = datetime(2018, 3, 1, tzinfo=timezone.utc)
    ticks = itertools.count()

    def _now() -> datetime:
        return start + timedelta(seconds=next(ticks))

    monkeypatch.setattr("services.capture.document_store.utc_now", _now)
    return _now
