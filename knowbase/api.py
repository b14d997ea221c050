"""FastAPI REST API for the knowbase engine."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import EngineConfig
from .engine import KnowledgeEngine, create_engine
from .errors import (
    InvalidTransitionError,
    KnowbaseError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from .models import MAX_TOP_K, UploadFile as UploadItem
from .notifier import Subscription, document_topic, knowledge_base_topic

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


# ============ Request/Response Models ============

class CreateKnowledgeBaseRequest(BaseModel):
    """Request body for knowledge base creation."""
    name: str = Field(..., description="Display name")
    embedding_model: Optional[str] = Field(default=None, description="Embedding model name")
    chunk_size: Optional[int] = Field(default=None, description="Maximum tokens per chunk")
    chunk_overlap: Optional[int] = Field(default=None, description="Tokens shared by neighbouring chunks")
    chunk_strategy: Optional[str] = Field(default=None, description="'recursive' or 'token'")
    threshold: Optional[float] = Field(default=None, description="Minimum vector similarity")
    top_k: Optional[int] = Field(default=None, description="Default number of results")
    enable_hybrid_search: Optional[bool] = None
    enable_rerank: bool = False


class RenameKnowledgeBaseRequest(BaseModel):
    name: str = Field(..., description="New display name")


class RetrievalConfigRequest(BaseModel):
    """Request body for retrieval settings; unset fields are unchanged."""
    threshold: Optional[float] = None
    top_k: Optional[int] = None
    enable_hybrid_search: Optional[bool] = None
    enable_rerank: Optional[bool] = None


class SearchRequest(BaseModel):
    """Request body for search."""
    query: str = Field(..., description="Search query")
    top_k: Optional[int] = Field(
        default=None, ge=1, le=MAX_TOP_K,
        description="Number of results (defaults to the knowledge base setting)",
    )


class SearchResultItem(BaseModel):
    """Single search result."""
    chunk_id: str
    document_id: str
    content: str
    score: float
    metadata: Dict[str, Any]


class SearchResponse(BaseModel):
    """Response from search."""
    results: List[SearchResultItem]
    query: str
    count: int


class BatchDeleteRequest(BaseModel):
    document_ids: List[str] = Field(..., min_length=1)


class QueueStatsResponse(BaseModel):
    queue_size: int
    processing: int


# ============ Error mapping ============

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    UpstreamError: 502,
}


def status_for(exc: KnowbaseError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


def owner_id(x_owner_id: str = Header(..., description="Caller identity")) -> str:
    if not x_owner_id.strip():
        raise HTTPException(status_code=400, detail="X-Owner-Id header is empty")
    return x_owner_id.strip()


def _sse_stream(subscription: Subscription) -> Iterator[str]:
    with subscription:
        yield ": connected\n\n"
        while True:
            event = subscription.get(timeout=KEEPALIVE_SECONDS)
            if event is None:
                if subscription.closed:
                    break
                yield ": keep-alive\n\n"
                continue
            yield event.to_sse()


# ============ App Factory ============

def create_app(
    engine: Optional[KnowledgeEngine] = None,
    config: Optional[EngineConfig] = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Create a FastAPI app wrapping a KnowledgeEngine.

    Args:
        engine: Engine to serve (created on startup from ``config`` if None)
        config: Engine configuration (read from KNOWBASE_* env vars if None)
        start_workers: Start the worker pool with the app

    Returns:
        FastAPI app instance
    """
    state: Dict[str, Optional[KnowledgeEngine]] = {"engine": engine}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = state["engine"] is None
        if owned:
            state["engine"] = create_engine(config=config)
        if start_workers:
            state["engine"].start_workers()
        yield
        if owned:
            state["engine"].close()
        else:
            state["engine"].stop_workers()

    app = FastAPI(
        title="Knowbase API",
        description="Document ingestion and hybrid (vector + BM25) retrieval over knowledge bases",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(KnowbaseError)
    async def handle_knowbase_error(request: Request, exc: KnowbaseError):
        status = status_for(exc)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    def get_engine() -> KnowledgeEngine:
        if state["engine"] is None:
            raise HTTPException(status_code=503, detail="Engine not initialized")
        return state["engine"]

    # ============ Knowledge bases ============

    @app.post("/knowledge-bases", status_code=201, tags=["Knowledge Bases"])
    def create_knowledge_base(request: CreateKnowledgeBaseRequest, owner: str = Depends(owner_id)):
        kb = get_engine().knowledge_bases.create_knowledge_base(owner, **request.model_dump())
        return kb.to_dict()

    @app.get("/knowledge-bases", tags=["Knowledge Bases"])
    def list_knowledge_bases(owner: str = Depends(owner_id)):
        return [kb.to_dict() for kb in get_engine().knowledge_bases.list_knowledge_bases(owner)]

    @app.get("/knowledge-bases/{kb_id}", tags=["Knowledge Bases"])
    def get_knowledge_base(kb_id: str, owner: str = Depends(owner_id)):
        return get_engine().knowledge_bases.get_knowledge_base(kb_id, owner).to_dict()

    @app.patch("/knowledge-bases/{kb_id}", tags=["Knowledge Bases"])
    def rename_knowledge_base(kb_id: str, request: RenameKnowledgeBaseRequest, owner: str = Depends(owner_id)):
        return get_engine().knowledge_bases.rename_knowledge_base(kb_id, owner, request.name).to_dict()

    @app.patch("/knowledge-bases/{kb_id}/retrieval", tags=["Knowledge Bases"])
    def update_retrieval_config(kb_id: str, request: RetrievalConfigRequest, owner: str = Depends(owner_id)):
        kb = get_engine().knowledge_bases.update_retrieval_config(kb_id, owner, **request.model_dump())
        return kb.to_dict()

    @app.delete("/knowledge-bases/{kb_id}", tags=["Knowledge Bases"])
    def delete_knowledge_base(kb_id: str, owner: str = Depends(owner_id)):
        get_engine().knowledge_bases.delete_knowledge_base(kb_id, owner)
        return {"deleted": True, "knowledge_base_id": kb_id}

    # ============ Documents ============

    @app.post("/knowledge-bases/{kb_id}/documents", status_code=201, tags=["Documents"])
    def upload_document(
        kb_id: str,
        file: UploadFile = File(...),
        file_type: Optional[str] = Form(default=None),
        owner: str = Depends(owner_id),
    ):
        """Upload a file; it is queued for processing."""
        data = file.file.read()
        doc = get_engine().documents.upload_document(
            kb_id, owner, file.filename or "", data, file_type
        )
        return doc.to_dict()

    @app.post("/knowledge-bases/{kb_id}/documents/batch", tags=["Documents"])
    def batch_upload_documents(
        kb_id: str,
        files: List[UploadFile] = File(...),
        owner: str = Depends(owner_id),
    ):
        uploads = [UploadItem(file_name=f.filename or "", data=f.file.read()) for f in files]
        return get_engine().documents.batch_upload_documents(kb_id, owner, uploads).to_dict()

    @app.get("/knowledge-bases/{kb_id}/documents", tags=["Documents"])
    def list_documents(kb_id: str, owner: str = Depends(owner_id)):
        return [doc.to_dict() for doc in get_engine().documents.list_documents(kb_id, owner)]

    @app.get("/documents/{document_id}", tags=["Documents"])
    def get_document(document_id: str, owner: str = Depends(owner_id)):
        return get_engine().documents.get_document(document_id, owner).to_dict()

    @app.delete("/documents/{document_id}", tags=["Documents"])
    def delete_document(document_id: str, owner: str = Depends(owner_id)):
        get_engine().documents.delete_document(document_id, owner)
        return {"deleted": True, "document_id": document_id}

    @app.post("/documents/batch-delete", tags=["Documents"])
    def batch_delete_documents(request: BatchDeleteRequest, owner: str = Depends(owner_id)):
        return get_engine().documents.batch_delete_documents(request.document_ids, owner).to_dict()

    @app.post("/documents/{document_id}/reprocess", status_code=202, tags=["Documents"])
    def reprocess_document(document_id: str, owner: str = Depends(owner_id)):
        """Reset the document and queue it for processing again."""
        doc = get_engine().documents.reprocess_document(document_id, owner, inline=False)
        return doc.to_dict()

    # ============ Search ============

    @app.post("/knowledge-bases/{kb_id}/search", response_model=SearchResponse, tags=["Search"])
    def search(kb_id: str, request: SearchRequest, owner: str = Depends(owner_id)):
        """
        Search a knowledge base with its retrieval settings.

        Hybrid knowledge bases fuse vector and BM25 results with RRF.
        """
        results = get_engine().documents.search_documents(kb_id, owner, request.query, request.top_k)
        return SearchResponse(
            results=[SearchResultItem(**r.to_dict()) for r in results],
            query=request.query,
            count=len(results),
        )

    # ============ Progress events ============

    @app.get("/events/documents/{document_id}", tags=["Events"])
    def document_events(document_id: str, owner: str = Depends(owner_id)):
        """Server-Sent Events stream of a document's processing status."""
        engine = get_engine()
        engine.documents.get_document(document_id, owner)
        subscription = engine.notifier.subscribe(document_topic(document_id))
        return StreamingResponse(_sse_stream(subscription), media_type="text/event-stream")

    @app.get("/events/knowledge-bases/{kb_id}", tags=["Events"])
    def knowledge_base_events(kb_id: str, owner: str = Depends(owner_id)):
        """Server-Sent Events stream of every document in a knowledge base."""
        engine = get_engine()
        engine.knowledge_bases.get_knowledge_base(kb_id, owner)
        subscription = engine.notifier.subscribe(knowledge_base_topic(kb_id))
        return StreamingResponse(_sse_stream(subscription), media_type="text/event-stream")

    # ============ Management ============

    @app.get("/queue/stats", response_model=QueueStatsResponse, tags=["Management"])
    def queue_stats():
        documents = get_engine().documents
        return QueueStatsResponse(
            queue_size=documents.get_queue_size(),
            processing=documents.get_processing_count(),
        )

    @app.get("/stats", tags=["Management"])
    def get_stats():
        """Get engine statistics including cache info."""
        return get_engine().get_stats()

    @app.get("/health", tags=["Health"])
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "knowbase"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
