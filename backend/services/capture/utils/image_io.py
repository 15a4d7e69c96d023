"""Image decoding and encoding helpers for captures and stored documents."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from services.capture.models import Capture


def decode_image_bytes(data: bytes) -> np.ndarray:
    """Decode PNG/JPEG bytes into a BGR array."""
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is None or img.size == 0:
        raise ValueError("Failed to decode image data")
    return img


def decode_base64_image(image_base64: str) -> np.ndarray:
    # Remove data URL prefix if present
    payload = image_base64
    if "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        raw = base64.b64decode(payload, validate=False)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid base64 image: {e}") from e
    return decode_image_bytes(raw)


def capture_from_base64(image_base64: str) -> Capture:
    return Capture(image=decode_base64_image(image_base64))


def capture_from_rgba(buffer: bytes, width: int, height: int, *, bottom_up: bool = True) -> Capture:
    """Build a capture from a raw RGBA32 pixel buffer.

    Headset textures store rows bottom-up; ``bottom_up`` flips them so row 0
    is the top of the photo.
    """
    expected = int(width) * int(height) * 4
    if width <= 0 or height <= 0 or len(buffer) != expected:
        raise ValueError(f"RGBA buffer has {len(buffer)} bytes, expected {expected} for {width}x{height}")
    rgba = np.frombuffer(buffer, dtype=np.uint8).reshape(int(height), int(width), 4)
    bgr = cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGR)
    if bottom_up:
        bgr = cv2.flip(bgr, 0)
    return Capture(image=np.ascontiguousarray(bgr))


def encode_png(image: np.ndarray) -> bytes:
    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise ValueError("Failed to encode image as PNG")
    return encoded.tobytes()


def encode_png_base64(image: np.ndarray) -> str:
    return base64.b64encode(encode_png(image)).decode("utf-8")


def load_image(path: Path) -> Optional[np.ndarray]:
    """Load a BGR image, supporting unicode paths. Returns None if missing."""
    if not path.exists():
        return None
    data = np.fromfile(str(path), dtype=np.uint8)
    img = cv2.imdecode(data, cv2.IMREAD_COLOR)
    if img is None or img.size == 0:
        return None
    return img
