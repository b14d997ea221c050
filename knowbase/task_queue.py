"""Work queue feeding document ids to the worker pool."""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

from .models import DocumentTask

logger = logging.getLogger(__name__)

QUEUE_KEY = "queue:document:process"
PROCESSING_KEY = "set:document:processing"


class TaskQueue(ABC):
    """FIFO of document tasks plus the set of ids currently being processed."""

    @abstractmethod
    def push(self, task: DocumentTask) -> None:
        pass

    @abstractmethod
    def pop(self, timeout: float = 1.0) -> Optional[DocumentTask]:
        """Oldest task, waiting up to ``timeout`` seconds; None when empty."""

    @abstractmethod
    def size(self) -> int:
        pass

    @abstractmethod
    def mark_processing(self, document_id: str) -> None:
        pass

    @abstractmethod
    def unmark_processing(self, document_id: str) -> None:
        pass

    @abstractmethod
    def processing_count(self) -> int:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def close(self) -> None:
        pass


class InMemoryTaskQueue(TaskQueue):
    """Process-local queue."""

    def __init__(self):
        self._tasks = deque()
        self._processing = set()
        self._cond = threading.Condition()

    def push(self, task: DocumentTask) -> None:
        with self._cond:
            self._tasks.append(task)
            self._cond.notify()

    def pop(self, timeout: float = 1.0) -> Optional[DocumentTask]:
        with self._cond:
            if not self._tasks:
                self._cond.wait(timeout)
            if not self._tasks:
                return None
            return self._tasks.popleft()

    def size(self) -> int:
        with self._cond:
            return len(self._tasks)

    def mark_processing(self, document_id: str) -> None:
        with self._cond:
            self._processing.add(document_id)

    def unmark_processing(self, document_id: str) -> None:
        with self._cond:
            self._processing.discard(document_id)

    def processing_count(self) -> int:
        with self._cond:
            return len(self._processing)

    def clear(self) -> None:
        with self._cond:
            self._tasks.clear()
            self._processing.clear()


class RedisTaskQueue(TaskQueue):
    """Redis list as the queue (LPUSH / BRPOP) and a set for in-flight ids."""

    def __init__(self, client=None, url: Optional[str] = None,
                 queue_key: str = QUEUE_KEY, processing_key: str = PROCESSING_KEY):
        if client is None:
            from redis import Redis

            client = Redis.from_url(url or "redis://localhost:6379/0", decode_responses=True)
        self.client = client
        self.queue_key = queue_key
        self.processing_key = processing_key
        logger.info(f"Initialized Redis task queue {queue_key}")

    def push(self, task: DocumentTask) -> None:
        self.client.lpush(self.queue_key, task.to_json())

    def pop(self, timeout: float = 1.0) -> Optional[DocumentTask]:
        # BRPOP takes whole seconds; 0 would block forever
        item = self.client.brpop([self.queue_key], timeout=max(1, int(round(timeout))))
        if item is None:
            return None
        _, raw = item
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return DocumentTask.from_json(raw)

    def size(self) -> int:
        return int(self.client.llen(self.queue_key))

    def mark_processing(self, document_id: str) -> None:
        self.client.sadd(self.processing_key, document_id)

    def unmark_processing(self, document_id: str) -> None:
        self.client.srem(self.processing_key, document_id)

    def processing_count(self) -> int:
        return int(self.client.scard(self.processing_key))

    def clear(self) -> None:
        self.client.delete(self.queue_key, self.processing_key)

    def close(self) -> None:
        self.client.close()
