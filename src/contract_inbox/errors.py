"""Exceptions raised by the relevance engine."""

from __future__ import annotations


class EmbeddingUnavailable(RuntimeError):
    """The upstream embedding call failed or timed out."""


class MissingCollectionContext(ValueError):
    """Feedback arrived without a valid inbox id."""
