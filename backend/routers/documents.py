"""Document router: capture ingestion, matching, properties and links."""

import base64
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from services.capture import get_coordinator
from services.capture.errors import NoDocumentDetected, SelfLinkRejected, UnknownDocument
from services.capture.models import Capture, DocProperties, DocumentRecord, LinkEdge
from services.capture.utils.image_io import capture_from_base64, capture_from_rgba, encode_png_base64

router = APIRouter()


class DocPropertiesPayload(BaseModel):
    label: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None

    def to_properties(self) -> DocProperties:
        return DocProperties(
            label=self.label,
            author=self.author,
            date=self.date,
            description=self.description,
        )


class CapturePayload(BaseModel):
    """Either an encoded photo (PNG/JPEG) or a raw RGBA32 frame."""
    imageBase64: Optional[str] = None
    rgbaBase64: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bottomUp: bool = True
    # RGB colour of the surface under the document, when the client knows it
    backgroundRgb: Optional[List[int]] = Field(default=None, min_length=3, max_length=3)


class IngestRequest(CapturePayload):
    linkTo: Optional[str] = None
    properties: Optional[DocPropertiesPayload] = None


class DocumentData(BaseModel):
    documentId: str
    properties: Dict[str, Optional[str]]
    corners: List[List[float]]
    width: int
    height: int
    createdAt: str
    modifiedAt: str
    imageBase64: Optional[str] = None


class IngestResultData(BaseModel):
    documentId: str
    verdict: str
    confidence: Optional[float] = None
    linkOutcome: str
    warnings: List[str] = Field(default_factory=list)
    trace: List[str] = Field(default_factory=list)
    corners: List[List[float]]
    width: int
    height: int
    imageBase64: str


class IngestResponse(BaseModel):
    success: bool
    data: Optional[IngestResultData] = None
    error: Optional[str] = None
    errorCode: Optional[str] = None


class MatchResultData(BaseModel):
    matched: bool
    documentId: Optional[str] = None
    confidence: float = 0.0
    distance: Optional[float] = None
    corners: List[List[float]]
    imageBase64: str


class MatchResponse(BaseModel):
    success: bool
    data: Optional[MatchResultData] = None
    error: Optional[str] = None
    errorCode: Optional[str] = None


class DocumentResponse(BaseModel):
    success: bool
    data: Optional[DocumentData] = None
    error: Optional[str] = None


class UpdateRequest(BaseModel):
    documentId: str
    properties: DocPropertiesPayload


class LinkRequest(BaseModel):
    sourceId: str
    targetId: str


class LinkData(BaseModel):
    sourceId: str
    targetId: str
    createdAt: str


class LinkResponse(BaseModel):
    success: bool
    created: Optional[bool] = None
    removed: Optional[bool] = None
    error: Optional[str] = None


def _capture_from_payload(payload: CapturePayload) -> Capture:
    if payload.imageBase64:
        return capture_from_base64(payload.imageBase64)
    if payload.rgbaBase64:
        if not payload.width or not payload.height:
            raise ValueError("width and height are required with rgbaBase64")
        raw = base64.b64decode(payload.rgbaBase64)
        return capture_from_rgba(raw, payload.width, payload.height, bottom_up=payload.bottomUp)
    raise ValueError("Either imageBase64 or rgbaBase64 is required")


def _background_from_payload(payload: CapturePayload) -> Optional[Tuple[int, int, int]]:
    if payload.backgroundRgb is None:
        return None
    r, g, b = (max(0, min(255, int(v))) for v in payload.backgroundRgb)
    return (b, g, r)


def _document_data(record: DocumentRecord, include_image: bool) -> DocumentData:
    return DocumentData(
        documentId=record.document_id,
        properties=record.properties.to_dict(),
        corners=record.image.corners_list(),
        width=record.image.width,
        height=record.image.height,
        createdAt=record.created_at.isoformat(),
        modifiedAt=record.modified_at.isoformat(),
        imageBase64=encode_png_base64(record.image.image) if include_image else None,
    )


def _link_data(edge: LinkEdge) -> Dict[str, Any]:
    return LinkData(
        sourceId=edge.source_id,
        targetId=edge.target_id,
        createdAt=edge.created_at.isoformat(),
    ).dict()


@router.get("/")
async def list_documents(includeImages: bool = Query(False)):
    """Return all documents, most recently modified first."""
    coordinator = get_coordinator()
    records = coordinator.list_documents()
    return {
        "documents": [_document_data(r, include_image=includeImages) for r in records],
        "total": len(records),
    }


@router.post("/ingest", response_model=IngestResponse)
async def ingest_capture(request: IngestRequest):
    """Rectify a photo, match it against known documents and store it."""
    try:
        capture = _capture_from_payload(request)
        properties = request.properties.to_properties() if request.properties else None
        result = await get_coordinator().ingest(
            capture,
            link_hint=request.linkTo,
            properties=properties,
            background=_background_from_payload(request),
        )
        return IngestResponse(
            success=True,
            data=IngestResultData(
                documentId=result.document_id,
                verdict=result.verdict.value,
                confidence=result.match.confidence if result.match.matched else None,
                linkOutcome=result.link_outcome.value,
                warnings=result.warnings,
                trace=[state.value for state in result.trace],
                corners=result.rectified.corners_list(),
                width=result.rectified.width,
                height=result.rectified.height,
                imageBase64=encode_png_base64(result.rectified.image),
            ),
        )
    except NoDocumentDetected as e:
        return IngestResponse(success=False, error=str(e), errorCode=e.code)
    except Exception as e:
        return IngestResponse(success=False, error=str(e), errorCode=getattr(e, "code", None))


@router.post("/match", response_model=MatchResponse)
async def match_capture(request: CapturePayload):
    """Try to find a match for the given photo without storing it."""
    try:
        capture = _capture_from_payload(request)
        rectified, match = await get_coordinator().match(capture, background=_background_from_payload(request))
        return MatchResponse(
            success=True,
            data=MatchResultData(
                matched=match.matched,
                documentId=match.document_id,
                confidence=match.confidence,
                distance=match.distance,
                corners=rectified.corners_list(),
                imageBase64=encode_png_base64(rectified.image),
            ),
        )
    except NoDocumentDetected as e:
        return MatchResponse(success=False, error=str(e), errorCode=e.code)
    except Exception as e:
        return MatchResponse(success=False, error=str(e), errorCode=getattr(e, "code", None))


@router.post("/update", response_model=DocumentResponse)
async def update_document(request: UpdateRequest):
    """Update only the provided properties of a document."""
    try:
        record = get_coordinator().update_properties(request.documentId, request.properties.to_properties())
        return DocumentResponse(success=True, data=_document_data(record, include_image=False))
    except UnknownDocument as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        return DocumentResponse(success=False, error=str(e))


@router.get("/link")
async def get_links(documentId: str = Query(...)):
    """Get all the documents linked to a given document."""
    try:
        edges = get_coordinator().list_links(documentId)
    except UnknownDocument as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "documentId": documentId,
        "linked": [edge.other(documentId) for edge in edges],
        "links": [_link_data(edge) for edge in edges],
    }


@router.post("/link", response_model=LinkResponse)
async def add_link(request: LinkRequest):
    """Add a link between two documents. Re-adding an existing link is a no-op."""
    try:
        created = get_coordinator().create_link(request.sourceId, request.targetId)
        return LinkResponse(success=True, created=created)
    except UnknownDocument as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SelfLinkRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return LinkResponse(success=False, error=str(e))


@router.delete("/link", response_model=LinkResponse)
async def delete_link(sourceId: str = Query(...), targetId: str = Query(...)):
    """Remove a link. Removing a missing link reports removed=false."""
    try:
        removed = get_coordinator().remove_link(sourceId, targetId)
        return LinkResponse(success=True, removed=removed)
    except Exception as e:
        return LinkResponse(success=False, error=str(e))


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, includeImage: bool = Query(True)):
    """Get one document with its rectified image."""
    try:
        record = get_coordinator().get_document(document_id)
    except UnknownDocument as e:
        raise HTTPException(status_code=404, detail=str(e))
    return DocumentResponse(success=True, data=_document_data(record, include_image=includeImage))
