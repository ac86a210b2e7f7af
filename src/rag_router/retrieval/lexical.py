"""BM25 keyword index over chunks."""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from collections.abc import Iterable, Sequence
from math import log
from typing import Any

from rank_bm25 import BM25Okapi

from rag_router.types import Chunk, metadata_matches

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"\W+", flags=re.UNICODE)


def tokenize(text: str) -> list[str]:
    """Lowercase `text` and split it on runs of non-word characters."""
    return [token for token in _NON_WORD.split(text.lower()) if token]


# idf for a term present in the scored content but unseen in the corpus
_UNSEEN_TERM_IDF = log(1.0 + 1.0 / 1.5)


class _PositiveIdfBM25(BM25Okapi):
    """BM25Okapi with the non-negative idf ln(1 + (N - n + 0.5) / (n + 0.5)).

    The stock Okapi idf goes negative for terms in more than half of the
    corpus, which makes small corpora score every match below zero.
    """

    def _calc_idf(self, nd: dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = log(1.0 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


class LexicalIndex:
    """Keyword index scoring chunks with BM25.

    The underlying `BM25Okapi` model is rebuilt lazily on the first query
    after the corpus changes. `retrieve` is safe to call from a worker
    thread while another coroutine adds chunks.
    """

    def __init__(
        self,
        *,
        k1: float = 1.5,
        b: float = 0.75,
        avg_doc_length: float | None = None,
    ) -> None:
        self.k1 = k1
        self.b = b
        self.avg_doc_length = avg_doc_length
        self._chunks: dict[str, Chunk] = {}
        self._tokens: dict[str, list[str]] = {}
        self._bm25: BM25Okapi | None = None
        self._order: list[str] = []
        self._dirty = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._chunks)

    def add(self, chunks: Iterable[Chunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.id] = chunk
                self._tokens[chunk.id] = tokenize(chunk.content)
            self._dirty = True

    def remove(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for chunk_id in chunk_ids:
                if self._chunks.pop(chunk_id, None) is not None:
                    self._tokens.pop(chunk_id, None)
                    removed += 1
            if removed:
                self._dirty = True
        return removed

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._tokens.clear()
            self._bm25 = None
            self._order = []
            self._dirty = False

    def retrieve(
        self,
        query: str,
        top_k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        """Return up to `top_k` chunks with a positive BM25 score, best first.

        Ties keep insertion order.
        """
        query_tokens = tokenize(query)
        if top_k <= 0 or not query_tokens:
            return []

        with self._lock:
            bm25 = self._fitted()
            if bm25 is None:
                return []
            order = list(self._order)
            chunks = dict(self._chunks)
            scores = bm25.get_scores(query_tokens)

        ranked: list[tuple[float, int]] = []
        for position, chunk_id in enumerate(order):
            score = float(scores[position])
            if score <= 0 or not metadata_matches(chunks[chunk_id].metadata, filters):
                continue
            ranked.append((score, position))
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [chunks[order[position]].with_score(score) for score, position in ranked[:top_k]]

    def score(self, query_tokens: Sequence[str], content: str) -> float:
        """BM25 of arbitrary `content` against the fitted corpus statistics."""
        doc_tokens = tokenize(content)
        if not doc_tokens or not query_tokens:
            return 0.0
        counts = Counter(doc_tokens)

        with self._lock:
            bm25 = self._fitted()
            idf = dict(bm25.idf) if bm25 is not None else {}
            avgdl = bm25.avgdl if bm25 is not None else (self.avg_doc_length or len(doc_tokens))

        total = 0.0
        norm = self.k1 * (1 - self.b + self.b * len(doc_tokens) / avgdl)
        for term in query_tokens:
            tf = counts.get(term, 0)
            if tf == 0:
                continue
            term_idf = idf.get(term, _UNSEEN_TERM_IDF)
            total += term_idf * (tf * (self.k1 + 1)) / (tf + norm)
        return total

    def _fitted(self) -> BM25Okapi | None:
        if not self._chunks:
            self._bm25 = None
            self._order = []
            self._dirty = False
            return None
        if self._bm25 is None or self._dirty:
            self._order = list(self._chunks)
            corpus = [self._tokens[chunk_id] for chunk_id in self._order]
            self._bm25 = _PositiveIdfBM25(corpus, k1=self.k1, b=self.b)
            if self.avg_doc_length is not None:
                self._bm25.avgdl = self.avg_doc_length
            elif self._bm25.avgdl <= 0:
                self._bm25.avgdl = 1.0
            self._dirty = False
            logger.debug("Refitted BM25 over %s chunks (avgdl=%.2f)", len(self._order), self._bm25.avgdl)
        return self._bm25
