"""Undirected links between stored documents."""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple, Union

from services.capture.document_store import DocumentStore
from services.capture.errors import PersistenceFailure, SelfLinkRejected, UnknownDocument
from services.capture.models import LinkEdge, pair_key

logger = logging.getLogger(__name__)


class NeighborView:
    """Restartable, finite view over a document's neighbours.

    Each iteration walks a copy of the neighbour set taken when iteration
    starts, so concurrent link changes never break an ongoing walk.
    """

    def __init__(self, graph: "LinkGraph", document_id: str) -> None:
        self._graph = graph
        self._document_id = document_id

    def __iter__(self) -> Iterator[str]:
        return iter(self._graph._neighbor_copy(self._document_id))

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._graph._neighbor_copy(self._document_id)

    def __len__(self) -> int:
        return len(self._graph._neighbor_copy(self._document_id))

    def __repr__(self) -> str:
        return f"NeighborView({self._document_id!r}, {sorted(self)!r})"


class LinkGraph:
    """Set of undirected document links, indexed by both endpoints.

    ``(a, b)`` and ``(b, a)`` are the same edge. Mutations lock both endpoint
    ids in sorted order; there is no graph-wide lock.
    """

    def __init__(self, store: DocumentStore, data_dir: Optional[Union[str, Path]] = None) -> None:
        self.store = store
        self.links_dir: Optional[Path] = Path(data_dir) / "links" if data_dir else None
        self._edges: Dict[Tuple[str, str], LinkEdge] = {}
        self._adjacency: Dict[str, Set[str]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        if self.links_dir is not None:
            try:
                self.links_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceFailure(f"Cannot create link directory {self.links_dir}: {e}") from e
            self._load_existing()

    def add_link(self, source_id: str, target_id: str) -> bool:
        """Link two documents. Returns False if the link already existed."""
        if source_id == target_id:
            raise SelfLinkRejected(source_id)
        for document_id in (source_id, target_id):
            if not self.store.exists(document_id):
                raise UnknownDocument(document_id)

        key = pair_key(source_id, target_id)
        with self._locked(*key):
            if key in self._edges:
                return False
            edge = LinkEdge(source_id=source_id, target_id=target_id)
            self._persist(edge)
            self._edges[key] = edge
            self._adjacency.setdefault(source_id, set()).add(target_id)
            self._adjacency.setdefault(target_id, set()).add(source_id)
        logger.info("Linked documents %s <-> %s", source_id, target_id)
        return True

    def remove_link(self, source_id: str, target_id: str) -> bool:
        """Remove a link. Returns False (not an error) if it did not exist."""
        key = pair_key(source_id, target_id)
        with self._locked(*key):
            if key not in self._edges:
                return False
            self._unpersist(key)
            del self._edges[key]
            self._adjacency.get(source_id, set()).discard(target_id)
            self._adjacency.get(target_id, set()).discard(source_id)
        logger.info("Unlinked documents %s <-> %s", source_id, target_id)
        return True

    def has_link(self, a: str, b: str) -> bool:
        return pair_key(a, b) in self._edges

    def neighbors(self, document_id: str) -> NeighborView:
        return NeighborView(self, document_id)

    def edges(self, document_id: str) -> List[LinkEdge]:
        edges = []
        for other in self._neighbor_copy(document_id):
            edge = self._edges.get(pair_key(document_id, other))
            if edge is not None:
                edges.append(edge)
        return sorted(edges, key=lambda e: (e.created_at, e.key))

    def edge_count(self) -> int:
        return len(self._edges)

    def _neighbor_copy(self, document_id: str) -> FrozenSet[str]:
        lock = self._lock(document_id)
        with lock:
            return frozenset(self._adjacency.get(document_id, ()))

    def _lock(self, document_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(document_id, threading.Lock())

    @contextmanager
    def _locked(self, *document_ids: str) -> Iterator[None]:
        with ExitStack() as stack:
            for document_id in sorted(set(document_ids)):
                stack.enter_context(self._lock(document_id))
            yield

    def _edge_path(self, key: Tuple[str, str]) -> Path:
        assert self.links_dir is not None
        return self.links_dir / f"{key[0]}__{key[1]}.json"

    def _persist(self, edge: LinkEdge) -> None:
        if self.links_dir is None:
            return
        path = self._edge_path(edge.key)
        tmp = path.with_name(path.name + ".tmp")
        payload = {
            "sourceId": edge.source_id,
            "targetId": edge.target_id,
            "createdAt": edge.created_at.isoformat(),
        }
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceFailure(f"Failed to persist link {edge.key}: {e}") from e

    def _unpersist(self, key: Tuple[str, str]) -> None:
        if self.links_dir is None:
            return
        try:
            self._edge_path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"Failed to remove link {key}: {e}") from e

    def _load_existing(self) -> None:
        assert self.links_dir is not None
        for path in sorted(self.links_dir.glob("*.json")):
            try:
                with path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                edge = LinkEdge(
                    source_id=str(data["sourceId"]),
                    target_id=str(data["targetId"]),
                    created_at=datetime.fromisoformat(data["createdAt"]),
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable link file %s: %s", path.name, e)
                continue
            if edge.source_id == edge.target_id:
                logger.warning("Skipping self link in %s", path.name)
                continue
            if not (self.store.exists(edge.source_id) and self.store.exists(edge.target_id)):
                logger.warning("Skipping link %s with a missing endpoint", path.name)
                continue
            self._edges[edge.key] = edge
            self._adjacency.setdefault(edge.source_id, set()).add(edge.target_id)
            self._adjacency.setdefault(edge.target_id, set()).add(edge.source_id)
