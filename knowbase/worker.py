"""Background workers that drain the document queue."""

import logging
import threading
from typing import List, Optional

from .errors import InvalidTransitionError, NotFoundError
from .models import Document, DocumentStatus, DocumentTask
from .notifier import ProgressEvent, ProgressNotifier, document_topic, knowledge_base_topic
from .pipeline import IngestionPipeline
from .storage import MetadataStore
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Fixed pool of threads processing queued documents.

    Each thread polls the queue, runs the ingestion pipeline and publishes
    ``status`` events to ``doc:<id>`` and ``kb:<id>``. A failed document
    is retried until it has failed ``max_retries`` times in total; after
    that it stays failed.
    """

    def __init__(
        self,
        queue: TaskQueue,
        pipeline: IngestionPipeline,
        store: MetadataStore,
        notifier: ProgressNotifier,
        worker_count: int = 2,
        poll_timeout: float = 1.0,
        max_retries: int = 3,
        settle_delay: float = 0.5,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.store = store
        self.notifier = notifier
        self.worker_count = worker_count
        self.poll_timeout = poll_timeout
        self.max_retries = max_retries
        self.settle_delay = settle_delay

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    # ============ Lifecycle ============

    @property
    def running(self) -> bool:
        with self._lock:
            return bool(self._threads)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            self._stop.clear()
            for i in range(self.worker_count):
                thread = threading.Thread(
                    target=self._run, args=(i,), name=f"knowbase-worker-{i}", daemon=True
                )
                thread.start()
                self._threads.append(thread)
        logger.info(f"Started {self.worker_count} document workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal workers to stop and wait for in-flight tasks to finish."""
        self._stop.set()
        with self._lock:
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
        if threads:
            logger.info("Document workers stopped")

    def _run(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception(f"Worker {worker_id} failed while handling a task")
        logger.debug(f"Worker {worker_id} exiting")

    # ============ Queue ============

    def enqueue_document(self, document_id: str, retry_count: int = 0) -> None:
        self.queue.push(DocumentTask(document_id=document_id, retry_count=retry_count))
        logger.info(f"Enqueued document {document_id}")

    def queue_size(self) -> int:
        return self.queue.size()

    def processing_count(self) -> int:
        return self.queue.processing_count()

    def run_once(self, timeout: Optional[float] = None) -> bool:
        """Handle at most one task. Returns False if the queue stayed empty."""
        task = self.queue.pop(self.poll_timeout if timeout is None else timeout)
        if task is None:
            return False
        self._handle(task)
        return True

    # ============ Task handling ============

    def _publish(self, doc: Document, stage: str, message: str, **extra) -> None:
        data = {"document": doc.to_dict(), "stage": stage, "message": message, **extra}
        event = ProgressEvent(type="status", data=data)
        for topic in (document_topic(doc.id), knowledge_base_topic(doc.knowledge_base_id)):
            self.notifier.publish(topic, event)

    def _handle(self, task: DocumentTask) -> None:
        document_id = task.document_id
        doc = self.store.get_document(document_id)
        if doc is None:
            logger.warning(f"Skipping task for missing document {document_id}")
            return
        if doc.status != DocumentStatus.PENDING:
            logger.warning(f"Skipping document {document_id}: status is {doc.status.value}")
            return

        self.queue.mark_processing(document_id)
        try:
            doc.status = DocumentStatus.PROCESSING
            self._publish(doc, "started", "Document processing started")
            try:
                self.pipeline.process(document_id)
            except (NotFoundError, InvalidTransitionError) as exc:
                logger.warning(f"Skipping document {document_id}: {exc}")
                return
            except Exception as exc:
                self._on_failure(document_id, exc)
                return
        finally:
            self.queue.unmark_processing(document_id)

        self._on_success(document_id)

    def _on_failure(self, document_id: str, error: Exception) -> None:
        doc = self.store.get_document(document_id)
        if doc is None:
            return
        retry_count = doc.retry_count + 1
        self.store.set_retry_count(document_id, retry_count)
        doc.retry_count = retry_count

        if retry_count < self.max_retries:
            try:
                doc = self.pipeline.mark_for_retry(document_id)
            except InvalidTransitionError as exc:
                # Someone else moved the document on since the failure
                logger.warning(f"Not retrying document {document_id}: {exc}")
                return
            doc.retry_count = retry_count
            self.queue.push(DocumentTask(document_id=document_id, retry_count=retry_count))
            logger.info(f"Document {document_id} re-enqueued for retry ({retry_count}/{self.max_retries})")
            self._publish(
                doc, "retrying",
                f"Processing failed, retrying ({retry_count}/{self.max_retries}): {error}",
                retry_count=retry_count,
            )
        else:
            logger.error(f"Document {document_id} failed after {retry_count} attempts: {error}")
            self._publish(
                doc, "failed",
                f"Processing failed after max retries: {error}",
                retry_count=retry_count,
            )

    def _on_success(self, document_id: str) -> None:
        if self.settle_delay > 0:
            self._stop.wait(self.settle_delay)
        doc = self.store.get_document(document_id)
        if doc is None:
            return
        self._publish(
            doc, "completed",
            f"Document processing completed successfully. Generated {doc.chunk_count} chunks.",
            chunk_count=doc.chunk_count,
        )
