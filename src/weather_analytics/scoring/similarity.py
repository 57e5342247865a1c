from __future__ import annotations
import math
from collections import Counter
from typing import Iterable, Iterator
from nltk.stem.porter import PorterStemmer

_stemmer = PorterStemmer()


def stem_tokens(content: str) -> list[str]:
    """Lower-case, split on whitespace and Porter-stem every token."""
    return [_stemmer.stem(word) for word in content.lower().split()]


def content_vector(content: str) -> dict[str, int]:
    return dict(Counter(stem_tokens(content)))


def cosine_similarity(vec_a: dict[str, int], vec_b: dict[str, int]) -> float:
    dot = sum(count * vec_b.get(word, 0) for word, count in vec_a.items())
    norm_a = math.sqrt(sum(c * c for c in vec_a.values()))
    norm_b = math.sqrt(sum(c * c for c in vec_b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def round2(value: float) -> float:
    # half away from zero, not banker's rounding
    return math.copysign(math.floor(abs(value) * 100 + 0.5) / 100, value)


def similarity_pairs(articles: Iterable[tuple[str, dict[str, int]]]) -> Iterator[tuple[str, str, float]]:
    """Yield ``(a, b, score)`` and ``(b, a, score)`` for every unordered pair."""
    items = list(articles)
    for i in range(len(items)):
        url_a, vec_a = items[i]
        for j in range(i + 1, len(items)):
            url_b, vec_b = items[j]
            score = round2(cosine_similarity(vec_a, vec_b))
            yield url_a, url_b, score
            yield url_b, url_a, score
