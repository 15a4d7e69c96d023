"""Nearest-document matching over the stored corpus."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from services.capture.document_store import DocumentStore
from services.capture.fingerprinter import fingerprint_distance
from services.capture.models import DocumentRecord, Fingerprint, MatchResult

logger = logging.getLogger(__name__)


class FingerprintIndex:
    """Pre-filter for match candidates.

    The default is a linear scan over the snapshot. An indexed
    nearest-neighbour structure can replace it by overriding ``candidates``;
    the engine still computes exact distances on whatever it returns.
    """

    def candidates(
        self,
        fingerprint: Fingerprint,
        records: Sequence[DocumentRecord],
    ) -> Iterable[DocumentRecord]:
        return records


class HashBandIndex(FingerprintIndex):
    """Keep only records sharing at least one hash band with the candidate.

    The 64 hash bits are split into ``bands`` equal slices; near-duplicates
    almost always agree on at least one slice.
    """

    def __init__(self, bands: int = 4) -> None:
        if bands <= 0:
            raise ValueError("bands must be positive")
        self.bands = int(bands)

    def _band_keys(self, fingerprint: Fingerprint) -> List[bytes]:
        bits = fingerprint.hash_bits
        size = max(1, bits.size // self.bands)
        return [bits[i * size:(i + 1) * size].tobytes() for i in range(self.bands)]

    def candidates(
        self,
        fingerprint: Fingerprint,
        records: Sequence[DocumentRecord],
    ) -> Iterable[DocumentRecord]:
        wanted = self._band_keys(fingerprint)
        for record in records:
            keys = self._band_keys(record.fingerprint)
            if any(a == b for a, b in zip(wanted, keys)):
                yield record


class MatchEngine:
    """Compare a fingerprint against every stored document.

    Reads a snapshot of the store, so a scan never holds a write lock.
    Equal distances go to the most recently modified record, then the
    smallest id.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        threshold: float = 0.08,
        tie_epsilon: float = 1e-6,
        index: Optional[FingerprintIndex] = None,
    ) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        self.store = store
        self.threshold = float(threshold)
        self.tie_epsilon = float(tie_epsilon)
        self.index = index or FingerprintIndex()

    def match(self, fingerprint: Fingerprint) -> MatchResult:
        ranked = self.rank(fingerprint, limit=1)
        if not ranked:
            return MatchResult.no_match()
        record, distance = ranked[0]
        if distance <= self.threshold:
            logger.info("Matched document %s (distance %.4f)", record.document_id, distance)
            return MatchResult(
                matched=True,
                document_id=record.document_id,
                confidence=float(1.0 - distance),
                distance=distance,
            )
        logger.debug("No match: closest %s at %.4f > %.4f", record.document_id, distance, self.threshold)
        return MatchResult.no_match(distance=distance)

    def rank(self, fingerprint: Fingerprint, limit: Optional[int] = None) -> List[Tuple[DocumentRecord, float]]:
        """Closest records first, with ties resolved as in ``match``."""
        snapshot = self.store.snapshot()
        scored: List[Tuple[DocumentRecord, float]] = []
        for record in self.index.candidates(fingerprint, snapshot):
            scored.append((record, fingerprint_distance(fingerprint, record.fingerprint)))
        if not scored:
            return []

        scored.sort(key=lambda item: item[1])
        # Bucket near-equal distances so the recency tie-break applies
        ordered: List[Tuple[DocumentRecord, float]] = []
        i = 0
        while i < len(scored):
            j = i + 1
            while j < len(scored) and scored[j][1] - scored[i][1] <= self.tie_epsilon:
                j += 1
            group = scored[i:j]
            group.sort(key=lambda item: item[0].document_id)
            group.sort(key=lambda item: item[0].modified_at, reverse=True)
            ordered.extend(group)
            i = j
        if limit is not None:
            ordered = ordered[: max(0, int(limit))]
        return ordered
