"""Document records keyed by id, optionally backed by a data directory."""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from services.capture.errors import PersistenceFailure, UnknownDocument
from services.capture.models import (
    DocProperties,
    DocumentRecord,
    Fingerprint,
    RectifiedImage,
    utc_now,
)
from services.capture.utils.image_io import encode_png, load_image

logger = logging.getLogger(__name__)

RECORD_FILE = "record.json"
IMAGE_FILE = "image.png"
FINGERPRINT_FILE = "fingerprint.npz"


class DocumentStore:
    """Single source of truth for document records.

    Records are immutable; every update swaps in a new record under a lock
    scoped to that document id, so readers (e.g. the match scan) never block
    and never see a half-written record. With ``data_dir`` set, files are
    written before the new record becomes visible.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None) -> None:
        self.documents_dir: Optional[Path] = Path(data_dir) / "documents" if data_dir else None
        self._records: Dict[str, DocumentRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        if self.documents_dir is not None:
            try:
                self.documents_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceFailure(f"Cannot create document directory {self.documents_dir}: {e}") from e
            self._load_existing()

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #
    def create(
        self,
        image: RectifiedImage,
        fingerprint: Fingerprint,
        properties: Optional[DocProperties] = None,
    ) -> str:
        document_id = self._new_id()
        now = utc_now()
        record = DocumentRecord(
            document_id=document_id,
            image=image,
            fingerprint=fingerprint,
            properties=properties or DocProperties(),
            created_at=now,
            modified_at=now,
        )
        with self._lock_for(document_id):
            self._write(record, image_changed=True)
            self._records[document_id] = record
        logger.info("Created document %s (%dx%d)", document_id, image.width, image.height)
        return document_id

    def get(self, document_id: str) -> DocumentRecord:
        record = self._records.get(document_id)
        if record is None:
            raise UnknownDocument(document_id)
        return record

    def exists(self, document_id: str) -> bool:
        return document_id in self._records

    def update_properties(self, document_id: str, partial: DocProperties) -> DocumentRecord:
        """Merge only the fields provided on ``partial``."""
        with self._lock_for(document_id):
            current = self.get(document_id)
            updated = DocumentRecord(
                document_id=current.document_id,
                image=current.image,
                fingerprint=current.fingerprint,
                properties=current.properties.merged(partial),
                created_at=current.created_at,
                modified_at=utc_now(),
            )
            self._write(updated, image_changed=False)
            self._records[document_id] = updated
        logger.info("Updated properties %s of document %s", partial.provided_fields(), document_id)
        return updated

    def update_image_and_fingerprint(
        self,
        document_id: str,
        image: RectifiedImage,
        fingerprint: Fingerprint,
        partial: Optional[DocProperties] = None,
    ) -> DocumentRecord:
        """Swap in a new image and fingerprint, merging ``partial`` in the same write."""
        with self._lock_for(document_id):
            current = self.get(document_id)
            properties = current.properties.merged(partial) if partial is not None else current.properties
            updated = DocumentRecord(
                document_id=current.document_id,
                image=image,
                fingerprint=fingerprint,
                properties=properties,
                created_at=current.created_at,
                modified_at=utc_now(),
            )
            self._write(updated, image_changed=True)
            self._records[document_id] = updated
        logger.info("Refreshed image of document %s", document_id)
        return updated

    def snapshot(self) -> Tuple[DocumentRecord, ...]:
        """Current records, read without taking any per-document lock."""
        return tuple(self._records.values())

    def list_documents(self) -> List[DocumentRecord]:
        return sorted(self.snapshot(), key=lambda r: (r.modified_at, r.document_id), reverse=True)

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _new_id(self) -> str:
        while True:
            candidate = uuid.uuid4().hex
            if candidate not in self._records:
                return candidate

    @contextmanager
    def _lock_for(self, document_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(document_id, threading.Lock())
        with lock:
            yield

    def _write(self, record: DocumentRecord, *, image_changed: bool) -> None:
        if self.documents_dir is None:
            return
        doc_dir = self.documents_dir / record.document_id
        try:
            doc_dir.mkdir(parents=True, exist_ok=True)
            if image_changed:
                _atomic_write_bytes(doc_dir / IMAGE_FILE, encode_png(record.image.image))
                _atomic_write_fingerprint(doc_dir / FINGERPRINT_FILE, record.fingerprint)
            payload = json.dumps(_record_to_json(record), indent=2).encode("utf-8")
            _atomic_write_bytes(doc_dir / RECORD_FILE, payload)
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"Failed to persist document {record.document_id}: {e}") from e

    def _load_existing(self) -> None:
        assert self.documents_dir is not None
        loaded = 0
        for doc_dir in sorted(self.documents_dir.iterdir()):
            if not doc_dir.is_dir():
                continue
            try:
                record = _read_record(doc_dir)
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable document folder %s: %s", doc_dir.name, e)
                continue
            if record is None:
                # Folder left behind by a create that never committed
                shutil.rmtree(doc_dir, ignore_errors=True)
                continue
            self._records[record.document_id] = record
            loaded += 1
        if loaded:
            logger.info("Loaded %d documents from %s", loaded, self.documents_dir)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
    os.replace(tmp, path)


def _atomic_write_fingerprint(path: Path, fingerprint: Fingerprint) -> None:
    tmp = path.with_name("fingerprint.tmp.npz")
    np.savez(
        str(tmp),
        vector=fingerprint.vector,
        hash_bits=fingerprint.hash_bits,
        size=np.array([fingerprint.width, fingerprint.height], dtype=np.int64),
    )
    os.replace(tmp, path)


def _record_to_json(record: DocumentRecord) -> Dict[str, Any]:
    return {
        "documentId": record.document_id,
        "properties": record.properties.to_dict(),
        "corners": record.image.corners_list(),
        "createdAt": record.created_at.isoformat(),
        "modifiedAt": record.modified_at.isoformat(),
    }


def _read_record(doc_dir: Path) -> Optional[DocumentRecord]:
    record_path = doc_dir / RECORD_FILE
    if not record_path.exists():
        return None
    with record_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object at {record_path}")

    image = load_image(doc_dir / IMAGE_FILE)
    if image is None:
        raise ValueError("image.png missing or unreadable")
    with np.load(str(doc_dir / FINGERPRINT_FILE)) as npz:
        size = npz["size"]
        fingerprint = Fingerprint(
            vector=npz["vector"],
            hash_bits=npz["hash_bits"],
            width=int(size[0]),
            height=int(size[1]),
        )
    corners = tuple((float(x), float(y)) for x, y in data["corners"])
    if len(corners) != 4:
        raise ValueError("record.json must hold four corners")
    return DocumentRecord(
        document_id=str(data["documentId"]),
        image=RectifiedImage(image=image, corners=corners),  # type: ignore[arg-type]
        fingerprint=fingerprint,
        properties=DocProperties.from_dict(data.get("properties")),
        created_at=datetime.fromisoformat(data["createdAt"]),
        modified_at=datetime.fromisoformat(data["modifiedAt"]),
    )
