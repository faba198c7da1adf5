"""Adaptive ranking pipeline: similarity search, learned boosts, learned band, re-sort."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import replace
import logging
from typing import Protocol, Sequence

from contract_inbox.errors import EmbeddingUnavailable
from contract_inbox.learning import boost_stage_enabled, threshold_stage_enabled
from contract_inbox.models import BOOTSTRAP_MIN_SCORE, Contract, LearningPolicy, SearchResult, round_half_up
from contract_inbox.retrieval import all_contracts_results, semantic_search


_LOGGER = logging.getLogger(__name__)
_EMBED_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="embed-call")


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


def apply_learned_boosts(
    results: Sequence[SearchResult],
    policy: LearningPolicy | None,
) -> list[SearchResult]:
    if policy is None or not boost_stage_enabled(policy):
        return list(results)

    adjusted: list[SearchResult] = []
    for result in results:
        authority_boost = policy.authority_boosts.get(result.contract.authority, 0)
        classification_boost = policy.classification_boosts.get(result.contract.buyer_classification, 0)
        if not authority_boost and not classification_boost:
            adjusted.append(result)
            continue

        score = result.match_score + authority_boost + classification_boost
        score = max(0, min(100, round_half_up(score)))
        _LOGGER.debug(
            "Boosted %s: %d -> %d (authority %+d, classification %+d).",
            result.contract.id,
            result.match_score,
            score,
            authority_boost,
            classification_boost,
        )
        adjusted.append(replace(result, match_score=score))
    return adjusted


def apply_learned_thresholds(
    results: Sequence[SearchResult],
    policy: LearningPolicy | None,
) -> list[SearchResult]:
    if policy is None or not threshold_stage_enabled(policy):
        return list(results)

    low = policy.min_relevance_score
    high = policy.max_irrelevance_score
    filtered = [result for result in results if low <= result.match_score <= high]
    dropped = len(results) - len(filtered)
    if dropped:
        _LOGGER.debug("Learned band [%d, %d] dropped %d results.", low, high, dropped)
    return filtered


def apply_learning(
    results: Sequence[SearchResult],
    policy: LearningPolicy | None,
) -> list[SearchResult]:
    improved = apply_learned_boosts(results, policy)
    improved = apply_learned_thresholds(improved, policy)
    # sorted() is stable: equal scores keep their similarity rank.
    return sorted(improved, key=lambda result: result.match_score, reverse=True)


class AdaptiveRankingPipeline:
    def __init__(
        self,
        embedder: Embedder | None,
        *,
        timeout_seconds: float = 20.0,
        limit: int = 1000,
        explanation_limit: int = 10,
    ) -> None:
        self.embedder = embedder
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.limit = max(1, int(limit))
        self.explanation_limit = max(0, int(explanation_limit))

    def embed_query(self, text: str) -> list[float]:
        if self.embedder is None:
            raise EmbeddingUnavailable("No embedding provider is configured.")

        future = _EMBED_EXECUTOR.submit(self.embedder.embed, text)
        try:
            vector = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise EmbeddingUnavailable(
                f"Query embedding timed out after {int(round(self.timeout_seconds))}s."
            ) from exc
        except EmbeddingUnavailable:
            raise
        except Exception as exc:
            raise EmbeddingUnavailable(f"Query embedding failed: {exc}") from exc

        if not vector:
            raise EmbeddingUnavailable("Embedding provider returned an empty vector.")
        return [float(value) for value in vector]

    def _mark_explanations(self, results: list[SearchResult]) -> list[SearchResult]:
        return [
            replace(result, explanation_deferred=True) if rank < self.explanation_limit else result
            for rank, result in enumerate(results)
        ]

    def rank(
        self,
        query_vector: Sequence[float],
        contracts: Sequence[Contract],
        policy: LearningPolicy | None,
    ) -> list[SearchResult]:
        # The live cutoff pre-filters retrieval; the learned band filters again downstream.
        min_score = policy.dynamic_min_score if policy is not None else BOOTSTRAP_MIN_SCORE
        matches = semantic_search(query_vector, contracts, min_score=min_score, limit=self.limit)
        ranked = apply_learning(matches, policy)
        _LOGGER.info(
            "Ranked %d matches above cutoff %d; %d survived learning.",
            len(matches),
            min_score,
            len(ranked),
        )
        return self._mark_explanations(ranked)

    def rank_all(self, contracts: Sequence[Contract]) -> list[SearchResult]:
        return all_contracts_results(contracts)[: self.limit]
