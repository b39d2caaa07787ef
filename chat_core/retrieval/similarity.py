"""向量相似度、排序与按行切片。"""

from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError("Vectors must have the same length.")
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def cosine_similarity_matrix(query: np.ndarray, corpus: np.ndarray) -> np.ndarray:
    """查询向量与语料矩阵每一行的余弦相似度，shape 为 [n_items]。

    零向量（查询或某一行）的相似度为 0。
    """
    if corpus.size == 0:
        return np.array([])
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(corpus, axis=1)
    denominator = row_norms * query_norm
    dots = corpus @ query
    similarities = np.zeros(len(corpus), dtype=float)
    np.divide(dots, denominator, out=similarities, where=denominator != 0)
    return similarities


def score(
    items: Sequence[T],
    query_embedding: Sequence[float],
    embedding_of: Callable[[T], Optional[Sequence[float]]] = lambda item: getattr(item, "embedding", None),
) -> List[Tuple[T, float]]:
    """计算每个条目与查询的相似度，按相似度降序返回；没有向量或维度不符的条目被忽略。"""
    query = np.asarray(query_embedding, dtype=float)
    kept: List[T] = []
    vectors: List[Sequence[float]] = []
    for item in items:
        vector = embedding_of(item)
        if vector is None or len(vector) == 0 or len(vector) != len(query):
            continue
        kept.append(item)
        vectors.append(vector)
    if not kept:
        return []

    similarities = cosine_similarity_matrix(query, np.asarray(vectors, dtype=float))
    scored = [(item, float(value)) for item, value in zip(kept, similarities)]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


def rank(
    items: Sequence[T],
    query_embedding: Sequence[float],
    threshold: float,
    limit: int,
    embedding_of: Callable[[T], Optional[Sequence[float]]] = lambda item: getattr(item, "embedding", None),
) -> List[Tuple[T, float]]:
    """保留相似度 >= threshold 的条目，降序，截断到 limit。"""
    if limit <= 0:
        return []
    eligible = [pair for pair in score(items, query_embedding, embedding_of) if pair[1] >= threshold]
    return eligible[:limit]


def chunk_text(text: str, chunk_size: int = 2048) -> List[str]:
    """按行切片：每行计 len(line) + 1，累计超出 chunk_size 时另起一片。

    每一行（包括最后一行）都以换行结尾，因此所有切片拼接后等于规范化了
    行尾的原文。单行超过 chunk_size 时独占一片。
    """
    chunks: List[str] = []
    current: List[str] = []
    current_size = 0
    for line in (text or "").splitlines():
        line_length = len(line) + 1
        if current and current_size + line_length > chunk_size:
            chunks.append("".join(current))
            current = []
            current_size = 0
        current.append(line + "\n")
        current_size += line_length
    if current:
        chunks.append("".join(current))
    return chunks
