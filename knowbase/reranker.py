"""Second-pass re-ranking of search results."""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional

import requests
from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import UpstreamError, ValidationError
from .models import SearchResult

logger = logging.getLogger(__name__)


def apply_scores(
    results: List[SearchResult],
    scores: Dict[int, float],
    drop_unscored: bool = False,
) -> List[SearchResult]:
    """
    Re-order results by new scores keyed by their input position.

    Scored results come first, by descending score; ties keep their input
    order. Results without a score follow in input order, unless
    ``drop_unscored`` is set. Inputs are not modified.
    """
    scored = []
    unscored = []
    for i, result in enumerate(results):
        metadata = dict(result.metadata)
        metadata["original_score"] = result.score
        if i in scores:
            metadata["reranked"] = True
            scored.append(replace(result, score=float(scores[i]), metadata=metadata))
        elif not drop_unscored:
            metadata["reranked"] = False
            unscored.append(replace(result, metadata=metadata))

    scored.sort(key=lambda r: r.score, reverse=True)
    return scored + unscored


class BaseReranker(ABC):
    """Re-scores candidates against the query."""

    name = "base"

    def __init__(self, drop_unscored: bool = False):
        self.drop_unscored = drop_unscored

    @abstractmethod
    def score(self, query: str, documents: List[str]) -> Dict[int, float]:
        """Relevance per document index. Indices may be missing."""

    def rerank(self, query: str, results: List[SearchResult]) -> List[SearchResult]:
        if not results:
            return results
        try:
            scores = self.score(query, [r.content for r in results])
        except UpstreamError:
            raise
        except Exception as exc:
            raise UpstreamError("rerank results", exc) from exc

        reranked = apply_scores(results, scores, self.drop_unscored)
        logger.info(
            f"Reranked {len(results)} results with {self.name} "
            f"({len(scores)} scored, {len(reranked)} returned)"
        )
        return reranked


class NoOpReranker(BaseReranker):
    """Keeps the original order and scores."""

    name = "none"

    def score(self, query: str, documents: List[str]) -> Dict[int, float]:
        return {}

    def rerank(self, query: str, results: List[SearchResult]) -> List[SearchResult]:
        return results


class HTTPReranker(BaseReranker):
    """Rerank endpoint taking ``{model, query, documents}`` and returning ``(index, relevance_score)`` pairs."""

    DEFAULT_BASE_URL = ""
    DEFAULT_MODEL = ""
    API_KEY_ENV = ""
    TOP_N_FIELD = "top_n"
    RESULTS_FIELD = "results"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        drop_unscored: bool = False,
    ):
        super().__init__(drop_unscored)
        self.api_key = api_key or os.environ.get(self.API_KEY_ENV)
        if not self.api_key:
            raise ValueError(
                f"{self.name} API key required. Set {self.API_KEY_ENV} environment variable "
                "or pass api_key parameter."
            )
        self.model = model or self.DEFAULT_MODEL
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def score(self, query: str, documents: List[str]) -> Dict[int, float]:
        payload = {
            "model": self.model,
            "query": query,
            "documents": documents,
            self.TOP_N_FIELD: len(documents),
        }
        response = requests.post(
            f"{self.base_url}/rerank",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()
        items = response.json().get(self.RESULTS_FIELD) or []
        return {
            int(item["index"]): float(item["relevance_score"])
            for item in items
            if 0 <= int(item["index"]) < len(documents)
        }


class JinaReranker(HTTPReranker):
    name = "jina"
    DEFAULT_BASE_URL = "https://api.jina.ai/v1"
    DEFAULT_MODEL = "jina-reranker-v2-base-multilingual"
    API_KEY_ENV = "JINA_API_KEY"


class SiliconFlowReranker(HTTPReranker):
    name = "siliconflow"
    DEFAULT_BASE_URL = "https://api.siliconflow.cn/v1"
    DEFAULT_MODEL = "BAAI/bge-reranker-v2-m3"
    API_KEY_ENV = "SILICONFLOW_API_KEY"


class VoyageReranker(HTTPReranker):
    name = "voyage"
    DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
    DEFAULT_MODEL = "rerank-2"
    API_KEY_ENV = "VOYAGE_API_KEY"
    TOP_N_FIELD = "top_k"
    RESULTS_FIELD = "data"


class LLMReranker(BaseReranker):
    """Re-rank search results using an LLM for improved relevance."""

    name = "llm"
    DEFAULT_MODEL = "gpt-4o-mini"

    BATCH_PROMPT = """You are a relevance scoring assistant. Given a query and multiple document chunks, rate each chunk's relevance to answering the query.

Query: {query}

Documents:
{documents}

For each document, provide a relevance score from 0.0 to 1.0.
Respond with ONLY a comma-separated list of {count} decimal numbers, one for each document in order.
Example for 3 documents: 0.8, 0.3, 0.9"""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
        drop_unscored: bool = False,
    ):
        super().__init__(drop_unscored)
        self.model = model
        self.client = client or OpenAI(api_key=api_key or os.environ.get("OPENAI_API_KEY"))

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.0,
            max_tokens=200,
        )
        return response.choices[0].message.content or ""

    def score(self, query: str, documents: List[str]) -> Dict[int, float]:
        docs_text = "\n\n".join(
            f"[Doc {i + 1}]: {content[:500]}" for i, content in enumerate(documents)
        )
        reply = self._complete(
            self.BATCH_PROMPT.format(query=query, documents=docs_text, count=len(documents))
        )
        scores = parse_scores(reply, len(documents))
        if len(scores) < len(documents):
            logger.warning(f"LLM reranker scored {len(scores)} of {len(documents)} documents")
        return scores


_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_scores(reply: str, count: int) -> Dict[int, float]:
    """Read up to ``count`` scores from a comma-separated reply, clamped to [0, 1]."""
    scores = {}
    for i, part in enumerate(reply.split(",")[:count]):
        match = _NUMBER.search(part)
        if match:
            scores[i] = max(0.0, min(1.0, float(match.group())))
    return scores


def create_reranker(
    provider: str = "none",
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    **kwargs
) -> BaseReranker:
    """
    Factory function to create rerankers.

    Args:
        provider: 'none', 'jina', 'siliconflow', 'voyage' or 'llm'
        model: Model name (uses provider default if not specified)
        api_key: Provider API key (falls back to the provider's env var)
    """
    provider = (provider or "none").lower()

    if provider in ("none", "noop", ""):
        return NoOpReranker()
    elif provider == "jina":
        return JinaReranker(api_key=api_key, model=model, **kwargs)
    elif provider == "siliconflow":
        return SiliconFlowReranker(api_key=api_key, model=model, **kwargs)
    elif provider == "voyage":
        return VoyageReranker(api_key=api_key, model=model, **kwargs)
    elif provider == "llm":
        return LLMReranker(model=model or LLMReranker.DEFAULT_MODEL, api_key=api_key, **kwargs)
    else:
        raise ValidationError(
            f"Unknown reranker: {provider}. Supported: 'none', 'jina', 'siliconflow', 'voyage', 'llm'"
        )
