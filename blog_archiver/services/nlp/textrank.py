"""TextRank extractive summarization.

1. Split the text into sentences
2. Build a similarity graph (Jaccard index between sentence word sets)
3. Run PageRank for a fixed number of iterations
4. Return the top K sentences in document order
"""

import re
from typing import List, Sequence, Set

from blog_archiver.services.nlp.tokens import tokenize

SENTENCE_PATTERN = re.compile(r"[^.!?\n]+[.!?\n]+")

MIN_SENTENCE_WORDS = 4
MAX_SENTENCE_WORDS = 100

DAMPING = 0.85
ITERATIONS = 20


def split_sentences(text: str) -> List[str]:
    """Split on sentence-ending punctuation and newlines.

    Candidates shorter than 4 or longer than 100 words are dropped. Text
    with no terminator at all is treated as one sentence.
    """
    matches = SENTENCE_PATTERN.findall(text)
    if not matches:
        return [text.strip()] if text.strip() else []

    sentences = []
    for match in matches:
        sentence = match.strip()
        words = len(sentence.split())
        if MIN_SENTENCE_WORDS <= words <= MAX_SENTENCE_WORDS:
            sentences.append(sentence)
    return sentences


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


def similarity_matrix(sentences: Sequence[str]) -> List[List[float]]:
    word_sets = [set(tokenize(sentence)) for sentence in sentences]
    n = len(sentences)
    matrix = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            weight = jaccard_similarity(word_sets[i], word_sets[j])
            matrix[i][j] = matrix[j][i] = weight
    return matrix


def pagerank(
    matrix: Sequence[Sequence[float]],
    damping: float = DAMPING,
    iterations: int = ITERATIONS,
) -> List[float]:
    """Power-iteration PageRank over a weighted adjacency matrix.

    Scores start uniform at 1/n. A node with no outgoing weight passes none
    of its score on, so on a fully connected graph the scores keep summing
    to 1 and an isolated node settles at (1 - damping) / n.
    """
    n = len(matrix)
    if n == 0:
        return []

    out_sums = [sum(row) for row in matrix]
    scores = [1.0 / n] * n

    for _ in range(iterations):
        new_scores = [(1.0 - damping) / n] * n
        for i, row in enumerate(matrix):
            if out_sums[i] <= 0:
                continue
            share = damping * scores[i] / out_sums[i]
            for j, weight in enumerate(row):
                if weight:
                    new_scores[j] += share * weight
        scores = new_scores

    return scores


def summarize(text: str, num_sentences: int = 3) -> str:
    """Generate an extractive summary.

    Args:
        text: Plain text content (no HTML)
        num_sentences: Number of sentences to extract

    Returns:
        The top-ranked sentences in document order, joined by spaces. Text
        with no more than num_sentences sentences comes back whole.
    """
    sentences = split_sentences(text)
    if len(sentences) <= num_sentences:
        return " ".join(sentences) or text.strip()

    scores = pagerank(similarity_matrix(sentences))

    # Stable sort keeps earlier sentences ahead on ties
    ranked = sorted(range(len(sentences)), key=lambda idx: scores[idx], reverse=True)
    chosen = sorted(ranked[:num_sentences])
    return " ".join(sentences[idx] for idx in chosen)
