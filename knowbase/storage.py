"""SQLite metadata storage and BM25 full-text search."""

import json
import logging
import re
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import (
    Chunk,
    Document,
    DocumentStatus,
    FileStorage,
    KnowledgeBase,
    utcnow,
)

logger = logging.getLogger(__name__)

_QUERY_TERM = re.compile(r"\w+", re.UNICODE)


def build_match_query(query: str) -> Optional[str]:
    """Turn free text into a safe FTS5 MATCH expression.

    FTS5 has its own query syntax, so user text is never passed through.
    Each word is quoted and the terms are OR-ed together; BM25 ranking
    rewards chunks that match more of them. Returns None when the query
    has no searchable words.
    """
    terms = _QUERY_TERM.findall(query or "")
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class MetadataStore:
    """Relational store for knowledge bases, documents, chunks and the blob registry.

    The ``chunks_fts`` FTS5 table is an external-content index over
    ``chunks.content`` maintained by triggers, so the lexical index follows
    every insert, update and delete of chunk rows without application code.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._lock, self.conn:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS knowledge_bases (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    embedding_model TEXT NOT NULL,
                    chunk_size INTEGER NOT NULL,
                    chunk_overlap INTEGER NOT NULL,
                    chunk_strategy TEXT NOT NULL,
                    vector_collection TEXT NOT NULL,
                    threshold REAL NOT NULL,
                    top_k INTEGER NOT NULL,
                    enable_hybrid_search INTEGER NOT NULL DEFAULT 0,
                    enable_rerank INTEGER NOT NULL DEFAULT 0,
                    document_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_kb_owner ON knowledge_bases(owner_id);

                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    knowledge_base_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    object_key TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_message TEXT NOT NULL DEFAULT '',
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    token_count INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_documents_kb ON documents(knowledge_base_id);
                CREATE INDEX IF NOT EXISTS idx_documents_hash ON documents(content_hash);

                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    knowledge_base_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    token_count INTEGER NOT NULL,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);
                CREATE INDEX IF NOT EXISTS idx_chunks_kb ON chunks(knowledge_base_id);

                CREATE TABLE IF NOT EXISTS file_storage (
                    content_hash TEXT PRIMARY KEY,
                    bucket TEXT NOT NULL,
                    object_key TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    reference_count INTEGER NOT NULL DEFAULT 1 CHECK (reference_count >= 0),
                    first_uploaded_at TEXT NOT NULL,
                    last_referenced_at TEXT NOT NULL
                );

                -- FTS5 index over chunk content; bm25() uses k1=1.2, b=0.75
                CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                    content,
                    content='chunks',
                    content_rowid='rowid'
                );

                CREATE TRIGGER IF NOT EXISTS chunks_fts_insert AFTER INSERT ON chunks BEGIN
                    INSERT INTO chunks_fts(rowid, content) VALUES (new.rowid, new.content);
                END;
                CREATE TRIGGER IF NOT EXISTS chunks_fts_delete AFTER DELETE ON chunks BEGIN
                    INSERT INTO chunks_fts(chunks_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                END;
                CREATE TRIGGER IF NOT EXISTS chunks_fts_update AFTER UPDATE OF content ON chunks BEGIN
                    INSERT INTO chunks_fts(chunks_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                    INSERT INTO chunks_fts(rowid, content) VALUES (new.rowid, new.content);
                END;
            """)

    # ============ Knowledge bases ============

    def create_knowledge_base(self, kb: KnowledgeBase) -> KnowledgeBase:
        with self._lock, self.conn:
            self.conn.execute("""
                INSERT INTO knowledge_bases (
                    id, owner_id, name, embedding_model, chunk_size, chunk_overlap,
                    chunk_strategy, vector_collection, threshold, top_k,
                    enable_hybrid_search, enable_rerank, document_count,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                kb.id, kb.owner_id, kb.name, kb.embedding_model, kb.chunk_size,
                kb.chunk_overlap, kb.chunk_strategy, kb.vector_collection,
                kb.threshold, kb.top_k, int(kb.enable_hybrid_search),
                int(kb.enable_rerank), kb.document_count,
                _ts(kb.created_at), _ts(kb.updated_at),
            ))
        return kb

    def get_knowledge_base(self, kb_id: str) -> Optional[KnowledgeBase]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)
            ).fetchone()
        return _row_to_knowledge_base(row) if row else None

    def list_knowledge_bases(self, owner_id: Optional[str] = None) -> List[KnowledgeBase]:
        sql = "SELECT * FROM knowledge_bases"
        params: List[Any] = []
        if owner_id is not None:
            sql += " WHERE owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY created_at"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_knowledge_base(row) for row in rows]

    def update_knowledge_base(self, kb: KnowledgeBase) -> None:
        kb.updated_at = utcnow()
        with self._lock, self.conn:
            self.conn.execute("""
                UPDATE knowledge_bases
                SET name = ?, chunk_size = ?, chunk_overlap = ?, chunk_strategy = ?,
                    threshold = ?, top_k = ?, enable_hybrid_search = ?, enable_rerank = ?,
                    updated_at = ?
                WHERE id = ?
            """, (
                kb.name, kb.chunk_size, kb.chunk_overlap, kb.chunk_strategy,
                kb.threshold, kb.top_k, int(kb.enable_hybrid_search),
                int(kb.enable_rerank), _ts(kb.updated_at), kb.id,
            ))

    def delete_knowledge_base(self, kb_id: str) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute("DELETE FROM knowledge_bases WHERE id = ?", (kb_id,))
        return cursor.rowcount > 0

    def increment_document_count(self, kb_id: str, delta: int) -> None:
        """Atomically adjust a knowledge base's document counter (never below zero)."""
        with self._lock, self.conn:
            self.conn.execute("""
                UPDATE knowledge_bases
                SET document_count = MAX(0, document_count + ?), updated_at = ?
                WHERE id = ?
            """, (delta, _ts(utcnow()), kb_id))

    # ============ Documents ============

    def create_document(self, doc: Document) -> Document:
        with self._lock, self.conn:
            self.conn.execute("""
                INSERT INTO documents (
                    id, knowledge_base_id, file_name, file_type, file_size, content_hash,
                    bucket, object_key, status, error_message, chunk_count, token_count,
                    retry_count, metadata_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                doc.id, doc.knowledge_base_id, doc.file_name, doc.file_type,
                doc.file_size, doc.content_hash, doc.bucket, doc.object_key,
                doc.status.value, doc.error_message, doc.chunk_count, doc.token_count,
                doc.retry_count, json.dumps(doc.metadata) if doc.metadata else None,
                _ts(doc.created_at), _ts(doc.updated_at),
            ))
        return doc

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _row_to_document(row) if row else None

    def get_documents(self, document_ids: Sequence[str]) -> Dict[str, Document]:
        """Fetch several documents in one query, keyed by id."""
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM documents WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: _row_to_document(row) for row in rows}

    def list_documents(self, kb_id: str) -> List[Document]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM documents WHERE knowledge_base_id = ? ORDER BY created_at",
                (kb_id,),
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    def list_documents_by_status(self, status: DocumentStatus) -> List[Document]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM documents WHERE status = ? ORDER BY created_at", (status.value,)
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    def update_document(self, doc: Document) -> None:
        doc.updated_at = utcnow()
        with self._lock, self.conn:
            cursor = self.conn.execute("""
                UPDATE documents
                SET status = ?, error_message = ?, chunk_count = ?, token_count = ?,
                    retry_count = ?, metadata_json = ?, updated_at = ?
                WHERE id = ?
            """, (
                doc.status.value, doc.error_message, doc.chunk_count, doc.token_count,
                doc.retry_count, json.dumps(doc.metadata) if doc.metadata else None,
                _ts(doc.updated_at), doc.id,
            ))
        if cursor.rowcount == 0:
            raise sqlite3.DatabaseError(f"document {doc.id} no longer exists")

    def update_status(self, document_id: str, status: DocumentStatus, error_message: str = "") -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE documents SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
                (status.value, error_message, _ts(utcnow()), document_id),
            )

    def set_retry_count(self, document_id: str, retry_count: int) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE documents SET retry_count = ?, updated_at = ? WHERE id = ?",
                (retry_count, _ts(utcnow()), document_id),
            )

    def delete_documents(self, document_ids: Sequence[str]) -> int:
        """Delete document rows. Returns count deleted."""
        ids = list(document_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"DELETE FROM documents WHERE id IN ({placeholders})", ids
            )
        return cursor.rowcount

    def delete_document(self, document_id: str) -> bool:
        return self.delete_documents([document_id]) > 0

    # ============ Chunks ============

    def batch_create_chunks(self, chunks: Sequence[Chunk]) -> int:
        """Insert chunks in one transaction, overwriting rows with the same id."""
        rows = [
            (
                c.id, c.document_id, c.knowledge_base_id, c.position, c.content,
                c.token_count, json.dumps(c.metadata) if c.metadata else None,
                _ts(c.created_at),
            )
            for c in chunks
        ]
        with self._lock, self.conn:
            self.conn.executemany("""
                INSERT INTO chunks (
                    id, document_id, knowledge_base_id, position, content,
                    token_count, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    position = excluded.position,
                    content = excluded.content,
                    token_count = excluded.token_count,
                    metadata_json = excluded.metadata_json
            """, rows)
        return len(rows)

    def get_chunks_by_document(self, document_id: str) -> List[Chunk]:
        """Get all chunks for a document."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY position", (document_id,)
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def count_chunks(self, document_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()
        return int(row[0])

    def delete_chunks_by_documents(self, document_ids: Sequence[str]) -> int:
        """Delete all chunks of the given documents. Returns count deleted."""
        ids = list(document_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"DELETE FROM chunks WHERE document_id IN ({placeholders})", ids
            )
        return cursor.rowcount

    def delete_chunks_by_document(self, document_id: str) -> int:
        return self.delete_chunks_by_documents([document_id])

    def update_chunk_content(self, chunk_id: str, content: str) -> bool:
        """Update chunk content; the FTS index follows through its trigger."""
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "UPDATE chunks SET content = ? WHERE id = ?", (content, chunk_id)
            )
        return cursor.rowcount > 0

    def keyword_search(self, kb_id: str, query: str, top_k: int = 10) -> List[Chunk]:
        """BM25 full-text search over one knowledge base.

        Each returned chunk carries ``metadata["bm25_score"]`` (higher is better).
        """
        match = build_match_query(query)
        if match is None:
            return []

        sql = """
            SELECT c.*, bm25(chunks_fts) AS bm25_rank
            FROM chunks_fts
            JOIN chunks c ON c.rowid = chunks_fts.rowid
            WHERE chunks_fts MATCH ? AND c.knowledge_base_id = ?
            ORDER BY bm25_rank
            LIMIT ?
        """
        with self._lock:
            rows = self.conn.execute(sql, (match, kb_id, top_k)).fetchall()

        chunks = []
        for row in rows:
            chunk = _row_to_chunk(row)
            # FTS5 bm25() is negative, more negative = more relevant
            chunk.metadata["bm25_score"] = -float(row["bm25_rank"])
            chunks.append(chunk)
        return chunks

    # ============ File storage registry ============

    def get_file_storage(self, content_hash: str) -> Optional[FileStorage]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM file_storage WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return _row_to_file_storage(row) if row else None

    def create_file_storage(self, record: FileStorage) -> FileStorage:
        """Insert a registry row. Raises sqlite3.IntegrityError if the hash exists."""
        with self._lock, self.conn:
            self.conn.execute("""
                INSERT INTO file_storage (
                    content_hash, bucket, object_key, size, content_type,
                    reference_count, first_uploaded_at, last_referenced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.content_hash, record.bucket, record.object_key, record.size,
                record.content_type, record.reference_count,
                _ts(record.first_uploaded_at), _ts(record.last_referenced_at),
            ))
        return record

    def increment_reference(self, content_hash: str) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute("""
                UPDATE file_storage
                SET reference_count = reference_count + 1, last_referenced_at = ?
                WHERE content_hash = ?
            """, (_ts(utcnow()), content_hash))
        return cursor.rowcount > 0

    def decrement_reference(self, content_hash: str) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute("""
                UPDATE file_storage SET reference_count = reference_count - 1
                WHERE content_hash = ? AND reference_count > 0
            """, (content_hash,))
        return cursor.rowcount > 0

    def delete_file_storage_if_unreferenced(self, content_hash: str) -> Optional[FileStorage]:
        """Delete the registry row if its count is zero. Returns the deleted row."""
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT * FROM file_storage WHERE content_hash = ? AND reference_count <= 0",
                (content_hash,),
            ).fetchone()
            if row is None:
                return None
            self.conn.execute("DELETE FROM file_storage WHERE content_hash = ?", (content_hash,))
        return _row_to_file_storage(row)

    # ============ Stats ============

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = {}
            for table in ("knowledge_bases", "documents", "chunks", "file_storage"):
                stats[table] = int(self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
            for status in DocumentStatus:
                stats[f"documents_{status.value}"] = int(self.conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE status = ?", (status.value,)
                ).fetchone()[0])
        return stats

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self.conn.close()


def _row_to_knowledge_base(row: sqlite3.Row) -> KnowledgeBase:
    return KnowledgeBase(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        embedding_model=row["embedding_model"],
        chunk_size=row["chunk_size"],
        chunk_overlap=row["chunk_overlap"],
        chunk_strategy=row["chunk_strategy"],
        vector_collection=row["vector_collection"],
        threshold=row["threshold"],
        top_k=row["top_k"],
        enable_hybrid_search=bool(row["enable_hybrid_search"]),
        enable_rerank=bool(row["enable_rerank"]),
        document_count=row["document_count"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        knowledge_base_id=row["knowledge_base_id"],
        file_name=row["file_name"],
        file_type=row["file_type"],
        file_size=row["file_size"],
        content_hash=row["content_hash"],
        bucket=row["bucket"],
        object_key=row["object_key"],
        status=DocumentStatus(row["status"]),
        error_message=row["error_message"],
        chunk_count=row["chunk_count"],
        token_count=row["token_count"],
        retry_count=row["retry_count"],
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        knowledge_base_id=row["knowledge_base_id"],
        position=row["position"],
        content=row["content"],
        token_count=row["token_count"],
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_file_storage(row: sqlite3.Row) -> FileStorage:
    return FileStorage(
        content_hash=row["content_hash"],
        bucket=row["bucket"],
        object_key=row["object_key"],
        size=row["size"],
        content_type=row["content_type"],
        reference_count=row["reference_count"],
        first_uploaded_at=_parse_ts(row["first_uploaded_at"]),
        last_referenced_at=_parse_ts(row["last_referenced_at"]),
    )
