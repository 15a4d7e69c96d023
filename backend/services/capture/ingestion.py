"""End-to-end ingestion of document captures."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, List, Optional, Tuple

from services.capture.config import CaptureSettings
from services.capture.document_store import DocumentStore
from services.capture.errors import CaptureError, UnknownDocument
from services.capture.fingerprinter import DocumentFingerprinter
from services.capture.geometry_corrector import Color, GeometryCorrector
from services.capture.link_graph import LinkGraph
from services.capture.match_engine import FingerprintIndex, MatchEngine
from services.capture.models import (
    Capture,
    DocProperties,
    DocumentRecord,
    Fingerprint,
    IngestResult,
    IngestState,
    LinkEdge,
    LinkOutcome,
    MatchResult,
    RectifiedImage,
    Verdict,
)

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, IngestState, Optional[str]], None]


class _Run:
    """Per-capture state machine bookkeeping."""

    def __init__(self, listener: Optional[TransitionListener]) -> None:
        self.capture_id = uuid.uuid4().hex
        self.trace: List[IngestState] = []
        self._listener = listener

    def enter(self, state: IngestState, detail: Optional[str] = None) -> None:
        self.trace.append(state)
        if self._listener is None:
            return
        try:
            self._listener(self.capture_id, state, detail)
        except Exception:
            logger.exception("Transition listener failed for capture %s", self.capture_id)

    def fail(self, error: Exception) -> None:
        code = getattr(error, "code", type(error).__name__)
        if not isinstance(error, CaptureError):
            logger.exception("Capture %s failed unexpectedly", self.capture_id)
        self.enter(IngestState.FAILED, code)


class IngestionCoordinator:
    """Run captures through rectify -> fingerprint -> match -> store -> link.

    Each capture runs its own state machine; the only shared state lives in
    the store and the link graph, which serialise per document id.
    """

    def __init__(
        self,
        settings: Optional[CaptureSettings] = None,
        *,
        store: Optional[DocumentStore] = None,
        links: Optional[LinkGraph] = None,
        corrector: Optional[GeometryCorrector] = None,
        fingerprinter: Optional[DocumentFingerprinter] = None,
        index: Optional[FingerprintIndex] = None,
        listener: Optional[TransitionListener] = None,
    ) -> None:
        self.settings = settings or CaptureSettings()
        self.store = store or DocumentStore(self.settings.data_dir)
        self.links = links or LinkGraph(self.store, self.settings.data_dir)
        self.corrector = corrector or GeometryCorrector(
            min_area_ratio=self.settings.min_area_ratio,
            min_side_ratio=self.settings.min_side_ratio,
            canonical_long_side=self.settings.canonical_long_side,
            canny_low=self.settings.canny_low,
            canny_high=self.settings.canny_high,
        )
        self.fingerprinter = fingerprinter or DocumentFingerprinter()
        options = self.settings.match_options()
        self.matcher = MatchEngine(
            self.store,
            threshold=options["threshold"],
            tie_epsilon=options["tie_epsilon"],
            index=index,
        )
        self.listener = listener

    # ------------------------------------------------------------------ #
    # Ingestion
    # ------------------------------------------------------------------ #
    async def ingest(
        self,
        capture: Capture,
        link_hint: Optional[str] = None,
        properties: Optional[DocProperties] = None,
        background: Optional[Color] = None,
    ) -> IngestResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.ingest_sync, capture, link_hint, properties, background)

    def ingest_sync(
        self,
        capture: Capture,
        link_hint: Optional[str] = None,
        properties: Optional[DocProperties] = None,
        background: Optional[Color] = None,
    ) -> IngestResult:
        run = _Run(self.listener)
        run.enter(IngestState.RECEIVED)
        try:
            rectified, fingerprint, match = self._analyse(capture, run, background)

            if match.matched and match.document_id is not None:
                run.enter(IngestState.UPDATING, match.document_id)
                document_id = match.document_id
                self.store.update_image_and_fingerprint(document_id, rectified, fingerprint, properties)
                verdict = Verdict.MATCHED
            else:
                run.enter(IngestState.CREATING)
                document_id = self.store.create(rectified, fingerprint, self._initial_properties(properties))
                verdict = Verdict.CREATED

            run.enter(IngestState.LINK_CHECK, link_hint)
            link_outcome, warnings = self._link_check(document_id, link_hint)
        except Exception as e:
            run.fail(e)
            raise

        run.enter(IngestState.DONE, document_id)
        return IngestResult(
            document_id=document_id,
            rectified=rectified,
            verdict=verdict,
            match=match,
            link_outcome=link_outcome,
            warnings=warnings,
            trace=list(run.trace),
        )

    async def match(
        self,
        capture: Capture,
        background: Optional[Color] = None,
    ) -> Tuple[RectifiedImage, MatchResult]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.match_sync, capture, background)

    def match_sync(
        self,
        capture: Capture,
        background: Optional[Color] = None,
    ) -> Tuple[RectifiedImage, MatchResult]:
        """Rectify and match a capture without writing anything."""
        run = _Run(self.listener)
        run.enter(IngestState.RECEIVED)
        try:
            rectified, _fingerprint, match = self._analyse(capture, run, background)
        except Exception as e:
            run.fail(e)
            raise
        run.enter(IngestState.DONE)
        return rectified, match

    def _analyse(
        self,
        capture: Capture,
        run: _Run,
        background: Optional[Color] = None,
    ) -> Tuple[RectifiedImage, Fingerprint, MatchResult]:
        run.enter(IngestState.RECTIFYING)
        rectified = self.corrector.rectify(capture, background=background)
        run.enter(IngestState.FINGERPRINTING)
        fingerprint = self.fingerprinter.fingerprint(rectified)
        run.enter(IngestState.MATCHING)
        match = self.matcher.match(fingerprint)
        return rectified, fingerprint, match

    def _initial_properties(self, properties: Optional[DocProperties]) -> DocProperties:
        base = DocProperties(author=self.settings.default_author)
        return base.merged(properties) if properties is not None else base

    def _link_check(self, document_id: str, link_hint: Optional[str]) -> Tuple[LinkOutcome, List[str]]:
        if not link_hint:
            return LinkOutcome.NOT_REQUESTED, []
        try:
            created = self.links.add_link(link_hint, document_id)
        except CaptureError as e:
            logger.warning("Capture stored as %s but link to %s was rejected: %s", document_id, link_hint, e)
            return LinkOutcome.REJECTED, [f"{e.code}: {e}"]
        return (LinkOutcome.LINKED if created else LinkOutcome.ALREADY_LINKED), []

    # ------------------------------------------------------------------ #
    # Document and link operations
    # ------------------------------------------------------------------ #
    def get_document(self, document_id: str) -> DocumentRecord:
        return self.store.get(document_id)

    def list_documents(self) -> List[DocumentRecord]:
        return self.store.list_documents()

    def update_properties(self, document_id: str, partial: DocProperties) -> DocumentRecord:
        return self.store.update_properties(document_id, partial)

    def list_links(self, document_id: str) -> List[LinkEdge]:
        if not self.store.exists(document_id):
            raise UnknownDocument(document_id)
        return self.links.edges(document_id)

    def create_link(self, source_id: str, target_id: str) -> bool:
        return self.links.add_link(source_id, target_id)

    def remove_link(self, source_id: str, target_id: str) -> bool:
        return self.links.remove_link(source_id, target_id)


# Global instance
_coordinator: Optional[IngestionCoordinator] = None


def configure_coordinator(
    settings: Optional[CaptureSettings] = None,
    listener: Optional[TransitionListener] = None,
) -> IngestionCoordinator:
    """Create (or replace) the shared coordinator used by the HTTP routers."""
    global _coordinator
    _coordinator = IngestionCoordinator(settings, listener=listener)
    return _coordinator


def get_coordinator() -> IngestionCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = IngestionCoordinator()
    return _coordinator
