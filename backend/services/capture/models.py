"""Data model for captures, documents and links."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]
PROPERTY_FIELDS = ("label", "author", "date", "description")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Capture:
    """A raw photo as delivered by the headset (BGR, uint8)."""

    image: np.ndarray
    captured_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.image, np.ndarray) or self.image.size == 0:
            raise ValueError("Capture image is empty")
        if self.image.ndim not in (2, 3):
            raise ValueError(f"Unsupported capture shape: {self.image.shape}")

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def resolution(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True, eq=False)
class RectifiedImage:
    """Unwarped document image plus the source corners used to produce it.

    Corners are ordered top-left, top-right, bottom-right, bottom-left in
    capture pixel coordinates.
    """

    image: np.ndarray
    corners: Tuple[Point, Point, Point, Point]

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    def corners_list(self) -> List[List[float]]:
        return [[float(x), float(y)] for x, y in self.corners]


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """Comparable descriptor of a rectified document image."""

    vector: np.ndarray
    hash_bits: np.ndarray
    width: int
    height: int

    def __post_init__(self) -> None:
        vector = np.array(self.vector, dtype=np.float32).ravel()
        bits = np.array(self.hash_bits, dtype=bool).ravel()
        vector.setflags(write=False)
        bits.setflags(write=False)
        object.__setattr__(self, "vector", vector)
        object.__setattr__(self, "hash_bits", bits)

    @property
    def aspect_ratio(self) -> float:
        return float(self.width) / float(max(self.height, 1))

    def hash_hex(self) -> str:
        packed = np.packbits(self.hash_bits.astype(np.uint8))
        return packed.tobytes().hex()


@dataclass(frozen=True)
class DocProperties:
    """Free-text document metadata. ``None`` means "not provided"."""

    label: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

    def merged(self, partial: "DocProperties") -> "DocProperties":
        """Return a copy with only the fields set on ``partial`` replaced."""
        updates = {
            f.name: getattr(partial, f.name)
            for f in fields(partial)
            if getattr(partial, f.name) is not None
        }
        return replace(self, **updates)

    def provided_fields(self) -> List[str]:
        return [name for name in PROPERTY_FIELDS if getattr(self, name) is not None]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PROPERTY_FIELDS}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DocProperties":
        if not isinstance(data, dict):
            return cls()
        values: Dict[str, Optional[str]] = {}
        for name in PROPERTY_FIELDS:
            raw = data.get(name)
            values[name] = None if raw is None else str(raw)
        return cls(**values)


@dataclass(frozen=True, eq=False)
class DocumentRecord:
    """Stored document. Records are replaced, never mutated in place."""

    document_id: str
    image: RectifiedImage
    fingerprint: Fingerprint
    properties: DocProperties
    created_at: datetime
    modified_at: datetime


@dataclass(frozen=True)
class LinkEdge:
    source_id: str
    target_id: str
    created_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> Tuple[str, str]:
        return pair_key(self.source_id, self.target_id)

    def other(self, document_id: str) -> str:
        return self.target_id if document_id == self.source_id else self.source_id


def pair_key(a: str, b: str) -> Tuple[str, str]:
    """Order-independent key for an undirected link."""
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of comparing a fingerprint against the corpus."""

    matched: bool
    document_id: Optional[str] = None
    confidence: float = 0.0
    distance: Optional[float] = None

    @classmethod
    def no_match(cls, distance: Optional[float] = None) -> "MatchResult":
        return cls(matched=False, distance=distance)


class Verdict(str, Enum):
    MATCHED = "matched"
    CREATED = "created"


class LinkOutcome(str, Enum):
    NOT_REQUESTED = "not_requested"
    LINKED = "linked"
    ALREADY_LINKED = "already_linked"
    REJECTED = "rejected"


class IngestState(str, Enum):
    RECEIVED = "received"
    RECTIFYING = "rectifying"
    FINGERPRINTING = "fingerprinting"
    MATCHING = "matching"
    CREATING = "creating"
    UPDATING = "updating"
    LINK_CHECK = "link_check"
    DONE = "done"
    FAILED = "failed"


@dataclass
class IngestResult:
    document_id: str
    rectified: RectifiedImage
    verdict: Verdict
    match: MatchResult
    link_outcome: LinkOutcome = LinkOutcome.NOT_REQUESTED
    warnings: List[str] = field(default_factory=list)
    trace: List[IngestState] = field(default_factory=list)
