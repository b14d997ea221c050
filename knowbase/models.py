"""Data models for the knowbase engine."""

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, Flag, auto
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError

# Knowledge bases owned by this id are shared with every caller.
SYSTEM_OWNER_ID = "system"

MAX_TOP_K = 20
CHUNK_STRATEGIES = ("recursive", "token")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):
    """Processing status of a document."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "DocumentStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSING},
    DocumentStatus.PROCESSING: {DocumentStatus.COMPLETED, DocumentStatus.FAILED},
    # Back to pending only through reprocess or a worker retry.
    DocumentStatus.COMPLETED: {DocumentStatus.PENDING},
    DocumentStatus.FAILED: {DocumentStatus.PENDING},
}


class Capability(Flag):
    """What a model can be used for."""

    NONE = 0
    CHAT = auto()
    EMBEDDING = auto()
    RERANK = auto()
    VISION = auto()
    REASONING = auto()
    FUNCTION_CALLING = auto()
    WEB_SEARCH = auto()

    @classmethod
    def parse(cls, names: Iterable[str]) -> "Capability":
        """Build a flag set from names like ``["embedding", "chat"]``."""
        result = cls.NONE
        for name in names:
            key = name.strip().upper().replace("-", "_")
            try:
                result |= cls[key]
            except KeyError:
                raise ValidationError(f"Unknown model capability: {name}") from None
        return result


@dataclass
class EmbeddingModel:
    """Reference to an embedding model served by an embedding provider."""

    name: str
    dimension: int
    provider: str = "openai"
    max_context: int = 8191
    capabilities: Capability = Capability.EMBEDDING

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass
class KnowledgeBase:
    """A collection of documents sharing chunking and retrieval settings."""

    owner_id: str
    name: str
    embedding_model: str
    id: str = field(default_factory=new_id)
    chunk_size: int = 512
    chunk_overlap: int = 50
    chunk_strategy: str = "recursive"
    vector_collection: str = ""
    threshold: float = 0.5
    top_k: int = 5
    enable_hybrid_search: bool = False
    enable_rerank: bool = False
    document_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.vector_collection:
            self.vector_collection = "kb_" + self.id.replace("-", "")

    def validate(self) -> None:
        """Check chunking and retrieval invariants."""
        if not self.name or not self.name.strip():
            raise ValidationError("Knowledge base name is required")
        validate_chunking(self.chunk_size, self.chunk_overlap, self.chunk_strategy)
        validate_retrieval(self.threshold, self.top_k)

    def is_visible_to(self, owner_id: str) -> bool:
        return self.owner_id == owner_id or self.owner_id == SYSTEM_OWNER_ID

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


def validate_chunking(size: int, overlap: int, strategy: str) -> None:
    if size <= 0:
        raise ValidationError(f"Chunk size must be positive, got {size}")
    if overlap < 0:
        raise ValidationError(f"Chunk overlap cannot be negative, got {overlap}")
    if overlap >= size:
        raise ValidationError(f"Chunk overlap ({overlap}) must be less than chunk size ({size})")
    if strategy not in CHUNK_STRATEGIES:
        raise ValidationError(
            f"Unknown chunk strategy: {strategy}. Supported: {', '.join(CHUNK_STRATEGIES)}"
        )


def validate_retrieval(threshold: float, top_k: int) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"Similarity threshold must be within [0, 1], got {threshold}")
    validate_top_k(top_k)


def validate_top_k(top_k: int) -> None:
    if not 1 <= top_k <= MAX_TOP_K:
        raise ValidationError(f"top_k must be between 1 and {MAX_TOP_K}, got {top_k}")


@dataclass
class Document:
    """An uploaded file and its processing state."""

    knowledge_base_id: str
    file_name: str
    file_type: str
    file_size: int
    content_hash: str
    bucket: str
    object_key: str
    id: str = field(default_factory=new_id)
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: str = ""
    chunk_count: int = 0
    token_count: int = 0
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


def chunk_id_for(document_id: str, position: int) -> str:
    """Stable chunk id, so re-inserting a document's vectors overwrites them."""
    return str(uuid.uuid5(uuid.UUID(document_id), str(position)))


@dataclass
class Chunk:
    """A segment of a document's text, the unit of embedding and indexing."""

    document_id: str
    knowledge_base_id: str
    position: int
    content: str
    token_count: int
    id: str = ""
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.id:
            self.id = chunk_id_for(self.document_id, self.position)


@dataclass
class FileStorage:
    """Registry row of a deduplicated blob."""

    content_hash: str
    bucket: str
    object_key: str
    size: int
    content_type: str
    reference_count: int = 1
    first_uploaded_at: datetime = field(default_factory=utcnow)
    last_referenced_at: datetime = field(default_factory=utcnow)


@dataclass
class SearchResult:
    """A single search result."""
    chunk_id: str
    document_id: str
    content: str
    score: float  # Similarity, BM25 or RRF score depending on the search mode
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DocumentTask:
    """Unit of work on the processing queue."""

    document_id: str
    retry_count: int = 0

    def to_json(self) -> str:
        return json.dumps({"document_id": self.document_id, "retry_count": self.retry_count})

    @classmethod
    def from_json(cls, raw: str) -> "DocumentTask":
        data = json.loads(raw)
        return cls(document_id=data["document_id"], retry_count=int(data.get("retry_count", 0)))


@dataclass
class UploadFile:
    """A file submitted for upload."""

    file_name: str
    data: bytes
    file_type: Optional[str] = None


@dataclass
class FailedItem:
    key: str
    error: str


@dataclass
class BatchResult:
    """Per-item outcome of a batch operation."""

    total: int
    succeeded: List[Any] = field(default_factory=list)
    failed: List[FailedItem] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_count": self.total,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "succeeded": [
                item.to_dict() if hasattr(item, "to_dict") else item for item in self.succeeded
            ],
            "failed": [asdict(item) for item in self.failed],
        }
