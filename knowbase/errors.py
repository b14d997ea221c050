"""Exception hierarchy for the knowbase engine."""

from typing import Optional


class KnowbaseError(Exception):
    """Base class for all knowbase errors."""


class ValidationError(KnowbaseError):
    """Invalid input rejected before any side effect."""


class NotFoundError(KnowbaseError):
    """A knowledge base or document does not exist or is not visible to the caller.

    Owner mismatches are reported with this error too, so callers cannot
    discover other owners' resources.
    """

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidTransitionError(KnowbaseError):
    """A document status change that the state machine does not allow."""

    def __init__(self, document_id: str, current: str, target: str):
        self.document_id = document_id
        self.current = current
        self.target = target
        super().__init__(
            f"document {document_id}: cannot move from '{current}' to '{target}'"
        )


class UpstreamError(KnowbaseError):
    """Failure of an external dependency (blob store, vector index, embeddings, database)."""

    def __init__(self, step: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.step = step
        self.cause = cause
        if message is None:
            message = f"failed to {step}: {cause}" if cause is not None else f"failed to {step}"
        super().__init__(message)


class IngestionError(UpstreamError):
    """A processing step of the ingestion pipeline failed.

    The message is what gets recorded on the document, so it stays
    human-readable: ``failed to generate embeddings: <cause>``.
    """
