"""Article similarity.

Two sources of vectors share one ranking contract:

* TF-IDF sparse vectors built from article text (always available)
* Precomputed dense embeddings stored alongside the articles
"""

import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from blog_archiver.services.nlp.tokens import tokenize

SparseVector = Dict[str, float]

TFIDF_MIN_SCORE = 0.01
EMBEDDING_MIN_SCORE = 0.1
DEFAULT_TOP_N = 5


@dataclass
class SimilarArticle:
    id: str
    score: float


def term_frequencies(tokens: Sequence[str]) -> SparseVector:
    """Term counts normalized by document length."""
    if not tokens:
        return {}
    length = len(tokens)
    return {term: count / length for term, count in Counter(tokens).items()}


def inverse_document_frequencies(documents: Sequence[Sequence[str]]) -> SparseVector:
    """log(N / (1 + df)) for every term in the corpus."""
    doc_count = len(documents)
    df: Counter = Counter()
    for tokens in documents:
        df.update(set(tokens))
    return {term: math.log(doc_count / (1 + count)) for term, count in df.items()}


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine similarity of two sparse vectors; 0 if either has no magnitude."""
    if len(b) < len(a):
        a, b = b, a
    dot = sum(value * b[key] for key, value in a.items() if key in b)
    norm_a = math.sqrt(sum(value * value for value in a.values()))
    norm_b = math.sqrt(sum(value * value for value in b.values()))
    denom = norm_a * norm_b
    return dot / denom if denom else 0.0


def embedding_cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two dense vectors; 0 on length mismatch."""
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    denom = norm_a * norm_b
    return dot / denom if denom else 0.0


def _rank(
    target_id: str,
    candidates: Iterable[Tuple[str, float]],
    min_score: float,
    top_n: int,
) -> List[SimilarArticle]:
    results = [
        SimilarArticle(id=article_id, score=score)
        for article_id, score in candidates
        if article_id != target_id and score > min_score
    ]
    results.sort(key=lambda result: result.score, reverse=True)
    return results[:top_n]


class TfIdfIndex:
    """TF-IDF vectors for a fixed corpus of articles."""

    def __init__(self, vectors: Dict[str, SparseVector]):
        self.vectors = vectors

    @classmethod
    def build(cls, articles: Iterable[Tuple[str, str]]) -> "TfIdfIndex":
        """Build an index from (article_id, text) pairs."""
        ids = []
        tokenized = []
        for article_id, text in articles:
            ids.append(article_id)
            tokenized.append(tokenize(text or ""))

        idf = inverse_document_frequencies(tokenized)
        vectors = {}
        for article_id, tokens in zip(ids, tokenized):
            tf = term_frequencies(tokens)
            vectors[article_id] = {term: value * idf.get(term, 0.0) for term, value in tf.items()}
        return cls(vectors)

    def __len__(self) -> int:
        return len(self.vectors)

    def __contains__(self, article_id: str) -> bool:
        return article_id in self.vectors

    def find_similar(
        self,
        article_id: str,
        top_n: int = DEFAULT_TOP_N,
        min_score: float = TFIDF_MIN_SCORE,
    ) -> List[SimilarArticle]:
        """Most similar articles to article_id, best first, excluding itself."""
        source = self.vectors.get(article_id)
        if source is None:
            return []
        candidates = (
            (other_id, cosine_similarity(source, vector))
            for other_id, vector in self.vectors.items()
        )
        return _rank(article_id, candidates, min_score, top_n)


def find_similar_by_embedding(
    article_id: str,
    embeddings: Mapping[str, Sequence[float]],
    top_n: int = DEFAULT_TOP_N,
    min_score: float = EMBEDDING_MIN_SCORE,
    target: Optional[Sequence[float]] = None,
) -> List[SimilarArticle]:
    """Most similar articles by precomputed embedding, excluding article_id.

    target defaults to the stored embedding of article_id.
    """
    if target is None:
        target = embeddings.get(article_id)
    if target is None:
        return []
    candidates = (
        (other_id, embedding_cosine_similarity(target, vector))
        for other_id, vector in embeddings.items()
    )
    return _rank(article_id, candidates, min_score, top_n)
