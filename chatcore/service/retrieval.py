"""Lexical relevance ranking for memory and document snippets.

BM25 over word tokens; good enough to order a user's remembered facts and
uploaded chunks before the context assembler applies its token sub-budgets.
"""

from __future__ import annotations

import math
import re
from typing import Callable, List, Sequence, TypeVar

BM25_K1 = 1.5
BM25_B = 0.75

T = TypeVar("T")


def tokenize_text(text: str) -> List[str]:
    return re.findall(r"\w+", (text or "").lower())


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    """Score each tokenized document against the query tokens."""
    if not query_tokens or not documents:
        return [0.0 for _ in documents]

    n_docs = len(documents)
    avgdl = sum(len(doc) for doc in documents) / float(n_docs)

    doc_freq: dict[str, int] = {}
    for doc in documents:
        for tok in set(doc):
            doc_freq[tok] = doc_freq.get(tok, 0) + 1

    scores: List[float] = []
    for doc in documents:
        tf: dict[str, int] = {}
        for tok in doc:
            tf[tok] = tf.get(tok, 0) + 1

        score = 0.0
        for tok in query_tokens:
            df = doc_freq.get(tok, 0)
            if df == 0:
                continue
            idf = math.log(1 + (n_docs - df + 0.5) / (df + 0.5))
            freq = tf.get(tok, 0)
            denom = freq + k1 * (1 - b + b * (len(doc) / (avgdl or 1.0)))
            score += idf * (freq * (k1 + 1)) / denom if denom else 0.0
        scores.append(score)

    return scores


def rank_by_relevance(
    query: str,
    items: Sequence[T],
    text_of: Callable[[T], str],
    *,
    limit: int | None = None,
) -> List[T]:
    """Order ``items`` by BM25 relevance to ``query``.

    Items with zero overlap keep their original (recency) order after the
    scored ones, so a user's memories are never silently discarded here;
    trimming is the assembler's job.
    """
    if not items:
        return []
    scores = compute_bm25_scores(
        tokenize_text(query), [tokenize_text(text_of(item)) for item in items]
    )
    order = sorted(range(len(items)), key=lambda i: (-scores[i], i))
    ranked = [items[i] for i in order]
    return ranked[:limit] if limit is not None else ranked
