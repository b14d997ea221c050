"""Vector index management using USearch HNSW."""

import hashlib
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from usearch.index import Index as USearchIndex

from .errors import ValidationError
from .models import Chunk, SearchResult

logger = logging.getLogger(__name__)

_COLLECTION_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def vector_key(chunk_id: str) -> int:
    """Integer USearch key for a chunk id (60 bits of its SHA-256)."""
    return int(hashlib.sha256(chunk_id.encode("utf-8")).hexdigest()[:15], 16)


class VectorStore(ABC):
    """Named collections of chunk vectors."""

    @abstractmethod
    def create_collection(self, name: str, dimension: int) -> bool:
        """Create a collection. Returns False if it already existed."""

    @abstractmethod
    def has_collection(self, name: str) -> bool:
        pass

    @abstractmethod
    def insert_vectors(self, collection: str, chunks: Sequence[Chunk]) -> int:
        """Upsert the chunks' embeddings. Returns the number written."""

    @abstractmethod
    def search(self, collection: str, vector: Sequence[float], top_k: int) -> List[SearchResult]:
        """Nearest chunks by similarity, best first."""

    def search_with_threshold(
        self,
        collection: str,
        vector: Sequence[float],
        top_k: int,
        min_score: float,
    ) -> List[SearchResult]:
        """Top-k search, then drop everything scoring below ``min_score``."""
        return [r for r in self.search(collection, vector, top_k) if r.score >= min_score]

    @abstractmethod
    def delete_by_document(self, collection: str, document_id: str) -> int:
        pass

    @abstractmethod
    def drop_collection(self, name: str) -> bool:
        pass

    @abstractmethod
    def count(self, collection: str) -> int:
        pass

    def flush(self, collection: Optional[str] = None) -> None:
        """Persist pending changes."""

    def close(self) -> None:
        self.flush()


@dataclass
class _Collection:
    index: USearchIndex
    dimension: int
    payloads: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    dirty: bool = False


class USearchVectorStore(VectorStore):
    """
    One USearch HNSW index per collection, persisted under ``root_dir``.

    Each collection is ``<name>.usearch`` plus a ``<name>.json`` sidecar
    holding the dimension and the chunk payload stored with every key.
    """

    def __init__(
        self,
        root_dir: str,
        metric: str = "cos",
        dtype: str = "f16",
        connectivity: int = 32,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.metric = metric
        self.dtype = dtype
        self.connectivity = connectivity
        self.expansion_add = expansion_add
        self.expansion_search = expansion_search
        self._collections: Dict[str, _Collection] = {}
        self._lock = threading.RLock()

    def _paths(self, name: str):
        if not _COLLECTION_NAME.match(name or ""):
            raise ValidationError(f"Invalid collection name: {name!r}")
        return self.root_dir / f"{name}.usearch", self.root_dir / f"{name}.json"

    def _new_index(self, dimension: int) -> USearchIndex:
        return USearchIndex(
            ndim=dimension,
            metric=self.metric,
            dtype=self.dtype,
            connectivity=self.connectivity,
            expansion_add=self.expansion_add,
            expansion_search=self.expansion_search,
        )

    def _load(self, name: str) -> Optional[_Collection]:
        """Get a collection from memory or disk; None if it does not exist."""
        if name in self._collections:
            return self._collections[name]

        index_path, meta_path = self._paths(name)
        if not meta_path.exists():
            return None

        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        dimension = int(meta["dimension"])
        index = None
        if index_path.exists():
            index = USearchIndex.restore(str(index_path))
        if index is None:
            index = self._new_index(dimension)
        payloads = {int(key): value for key, value in meta.get("payloads", {}).items()}

        collection = _Collection(index=index, dimension=dimension, payloads=payloads)
        self._collections[name] = collection
        return collection

    def create_collection(self, name: str, dimension: int) -> bool:
        if dimension <= 0:
            raise ValidationError(f"Vector dimension must be positive, got {dimension}")
        with self._lock:
            existing = self._load(name)
            if existing is not None:
                if existing.dimension != dimension:
                    raise ValidationError(
                        f"Collection {name} has dimension {existing.dimension}, not {dimension}"
                    )
                return False

            collection = _Collection(index=self._new_index(dimension), dimension=dimension)
            self._collections[name] = collection
            self._save(name, collection)
            logger.info(f"Created vector collection {name} (dim={dimension})")
            return True

    def has_collection(self, name: str) -> bool:
        with self._lock:
            return self._load(name) is not None

    def insert_vectors(self, collection: str, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        with self._lock:
            coll = self._load(collection)
            if coll is None:
                raise ValidationError(f"Vector collection does not exist: {collection}")

            for chunk in chunks:
                if chunk.embedding is None or len(chunk.embedding) != coll.dimension:
                    raise ValidationError(
                        f"Chunk {chunk.id} embedding does not match dimension {coll.dimension}"
                    )

            keys = np.array([vector_key(c.id) for c in chunks], dtype=np.uint64)
            vectors = np.array([c.embedding for c in chunks], dtype=np.float32)

            # Upsert: drop keys that are already indexed
            stale = np.array([k for k in keys.tolist() if k in coll.payloads], dtype=np.uint64)
            if len(stale):
                coll.index.remove(stale)

            coll.index.add(keys, vectors)
            for key, chunk in zip(keys.tolist(), chunks):
                coll.payloads[key] = {
                    "chunk_id": chunk.id,
                    "document_id": chunk.document_id,
                    "knowledge_base_id": chunk.knowledge_base_id,
                    "position": chunk.position,
                    "content": chunk.content,
                }
            coll.dirty = True
            self.flush(collection)
            return len(chunks)

    def search(self, collection: str, vector: Sequence[float], top_k: int) -> List[SearchResult]:
        if top_k <= 0:
            return []
        with self._lock:
            coll = self._load(collection)
            if coll is None or not coll.payloads:
                return []
            if len(vector) != coll.dimension:
                raise ValidationError(
                    f"Query vector has dimension {len(vector)}, collection expects {coll.dimension}"
                )

            matches = coll.index.search(np.array(vector, dtype=np.float32), top_k)
            results = []
            for match in matches:
                payload = coll.payloads.get(int(match.key))
                if payload is None:
                    continue
                # Convert distance to similarity (0-1)
                similarity = max(0.0, 1.0 - float(match.distance))
                results.append(SearchResult(
                    chunk_id=payload["chunk_id"],
                    document_id=payload["document_id"],
                    content=payload["content"],
                    score=similarity,
                    metadata={"position": payload["position"]},
                ))
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def delete_by_document(self, collection: str, document_id: str) -> int:
        with self._lock:
            coll = self._load(collection)
            if coll is None:
                return 0
            keys = [k for k, p in coll.payloads.items() if p["document_id"] == document_id]
            if not keys:
                return 0
            coll.index.remove(np.array(keys, dtype=np.uint64))
            for key in keys:
                del coll.payloads[key]
            coll.dirty = True
            self.flush(collection)
            return len(keys)

    def drop_collection(self, name: str) -> bool:
        with self._lock:
            index_path, meta_path = self._paths(name)
            existed = self._collections.pop(name, None) is not None or meta_path.exists()
            for path in (index_path, meta_path):
                if path.exists():
                    path.unlink()
            if existed:
                logger.info(f"Dropped vector collection {name}")
            return existed

    def count(self, collection: str) -> int:
        with self._lock:
            coll = self._load(collection)
            return len(coll.payloads) if coll is not None else 0

    def list_collections(self) -> List[str]:
        with self._lock:
            names = set(self._collections)
            names.update(p.stem for p in self.root_dir.glob("*.json"))
            return sorted(names)

    def flush(self, collection: Optional[str] = None) -> None:
        """Persist dirty collections to disk."""
        with self._lock:
            names = [collection] if collection else list(self._collections)
            for name in names:
                coll = self._collections.get(name)
                if coll is not None and coll.dirty:
                    self._save(name, coll)

    def _save(self, name: str, coll: _Collection) -> None:
        index_path, meta_path = self._paths(name)
        if len(coll.payloads):
            coll.index.save(str(index_path))
        elif index_path.exists():
            index_path.unlink()
        tmp = meta_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps({
            "dimension": coll.dimension,
            "payloads": {str(k): v for k, v in coll.payloads.items()},
        }), encoding="utf-8")
        os.replace(tmp, meta_path)
        coll.dirty = False
