"""Cosine similarity scoring and semantic search over contract embeddings."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from contract_inbox.models import Contract, SearchResult, round_half_up


_LOGGER = logging.getLogger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    a = np.asarray(vec1, dtype=np.float32)
    b = np.asarray(vec2, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError("Vectors must have the same length.")
    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


def similarity_to_score(similarity: float) -> int:
    # Linear mapping: 0.0 -> 0, 1.0 -> 100. Negative similarity scores 0.
    return round_half_up(max(0.0, min(1.0, float(similarity))) * 100)


def cosine_scores(query: np.ndarray, embeddings: np.ndarray, norms: np.ndarray) -> np.ndarray:
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or embeddings.shape[0] == 0:
        return np.zeros(embeddings.shape[0], dtype=np.float32)
    denom = norms * query_norm
    dots = embeddings @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return sims.astype(np.float32)


def top_k_cosine(
    query: np.ndarray,
    embeddings: np.ndarray,
    norms: np.ndarray,
    k: int,
) -> tuple[np.ndarray, np.ndarray]:
    sims = cosine_scores(query, embeddings, norms)
    if sims.shape[0] == 0:
        return np.zeros(0, dtype=np.int64), sims
    k = max(1, min(int(k), sims.shape[0]))
    # Stable sort keeps catalog order for equal similarity.
    order = np.argsort(-sims, kind="stable")[:k]
    return order, sims[order]


def semantic_search(
    query_vector: Sequence[float],
    contracts: Sequence[Contract],
    *,
    min_score: int = 0,
    limit: int = 1000,
) -> list[SearchResult]:
    query = np.asarray(query_vector, dtype=np.float32)
    if query.ndim != 1 or query.shape[0] == 0:
        raise ValueError("Query embedding must be a non-empty vector.")

    scorable: list[Contract] = []
    missing = 0
    mismatched = 0
    for contract in contracts:
        if not contract.embedding:
            missing += 1
            continue
        if len(contract.embedding) != query.shape[0]:
            mismatched += 1
            continue
        scorable.append(contract)

    if missing:
        _LOGGER.debug("Skipped %d contracts without embeddings.", missing)
    if mismatched:
        _LOGGER.warning("Skipped %d contracts whose embedding dimension differs from the query.", mismatched)
    if not scorable:
        return []

    embeddings = np.asarray([contract.embedding for contract in scorable], dtype=np.float32)
    norms = np.linalg.norm(embeddings, axis=1).astype(np.float32)
    order, sims = top_k_cosine(query, embeddings, norms, len(scorable))

    results: list[SearchResult] = []
    for row_idx, similarity in zip(order, sims):
        score = similarity_to_score(float(similarity))
        if score < min_score:
            continue
        results.append(SearchResult(contract=scorable[int(row_idx)], match_score=score))

    # Rounding can tie neighbours that differed in raw similarity; keep that order.
    results.sort(key=lambda result: result.match_score, reverse=True)
    limited = results[: max(1, int(limit))]

    if results:
        scores = [result.match_score for result in results]
        _LOGGER.debug(
            "Semantic search: %d scored, %d above threshold %d (min=%d max=%d), returned %d.",
            len(scorable),
            len(results),
            min_score,
            min(scores),
            max(scores),
            len(limited),
        )
    return limited


def all_contracts_results(contracts: Sequence[Contract]) -> list[SearchResult]:
    return [SearchResult(contract=contract, match_score=100) for contract in contracts]
