"""Error taxonomy for the capture-and-match pipeline."""

from __future__ import annotations


class CaptureError(Exception):
    """Base class for pipeline errors surfaced to callers."""

    code = "capture_error"


class NoDocumentDetected(CaptureError):
    """No document boundary large enough was found in the capture."""

    code = "no_document_detected"


class UnknownDocument(CaptureError, KeyError):
    """A document id does not reference an existing record."""

    code = "unknown_document"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id

    def __str__(self) -> str:
        return str(self.args[0])


class SelfLinkRejected(CaptureError):
    """A document cannot be linked to itself."""

    code = "self_link_rejected"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Cannot link document {document_id} to itself")
        self.document_id = document_id


class PersistenceFailure(CaptureError):
    """The backing store could not be written or read."""

    code = "persistence_failure"
