"""Document capture-and-match services."""

from services.capture.config import CaptureSettings
from services.capture.document_store import DocumentStore
from services.capture.fingerprinter import DocumentFingerprinter, fingerprint_distance
from services.capture.geometry_corrector import GeometryCorrector
from services.capture.ingestion import IngestionCoordinator, configure_coordinator, get_coordinator
from services.capture.link_graph import LinkGraph
from services.capture.match_engine import FingerprintIndex, HashBandIndex, MatchEngine

__all__ = [
    "CaptureSettings",
    "DocumentStore",
    "DocumentFingerprinter",
    "fingerprint_distance",
    "GeometryCorrector",
    "IngestionCoordinator",
    "configure_coordinator",
    "get_coordinator",
    "LinkGraph",
    "FingerprintIndex",
    "HashBandIndex",
    "MatchEngine",
]
