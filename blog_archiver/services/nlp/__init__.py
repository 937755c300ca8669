"""Text analysis over persisted article text."""

from .similarity import (
    SimilarArticle,
    TfIdfIndex,
    cosine_similarity,
    embedding_cosine_similarity,
    find_similar_by_embedding,
)
from .textrank import summarize

__all__ = [
    "SimilarArticle",
    "TfIdfIndex",
    "cosine_similarity",
    "embedding_cosine_similarity",
    "find_similar_by_embedding",
    "summarize",
]
