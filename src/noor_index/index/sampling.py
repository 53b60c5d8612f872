"""
Document sampling for index builds.

Volume is capped globally, allocated to each corpus in proportion to its
size, then each corpus is down-sampled with a fixed stride so repeated
builds select exactly the same documents.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple, TypeVar

from ..models import CorpusRecord, Document

T = TypeVar("T")


def allocate_proportionally(sizes: Sequence[int], cap: int) -> List[int]:
    """
    Split ``cap`` across corpora proportionally to ``sizes``.

    Every corpus but the last receives ``floor(size / total * cap)``; the
    last receives the remainder. No allocation exceeds its corpus size.
    """
    total = sum(sizes)
    if total == 0 or cap <= 0:
        return [0 for _ in sizes]
    if cap >= total:
        return list(sizes)

    allocations: List[int] = []
    for size in sizes[:-1]:
        allocations.append(min(size, math.floor(size / total * cap)))
    allocations.append(min(sizes[-1], cap - sum(allocations)))
    return allocations


def sample_evenly(items: Sequence[T], sample_size: int) -> List[T]:
    """
    Pick ``sample_size`` evenly spaced items (index ``floor(i * step)``).
    """
    if sample_size >= len(items):
        return list(items)
    if sample_size <= 0:
        return []

    step = len(items) / sample_size
    return [items[math.floor(i * step)] for i in range(sample_size)]


def plan_documents(
    corpora: Sequence[Tuple[str, Sequence[CorpusRecord]]],
    max_documents: int,
) -> List[Document]:
    """
    Sample every corpus and assign contiguous ids starting at 0, in corpus
    order.
    """
    allocations = allocate_proportionally([len(records) for _, records in corpora], max_documents)

    documents: List[Document] = []
    for (_, records), size in zip(corpora, allocations):
        for record in sample_evenly(records, size):
            documents.append(Document.from_record(len(documents), record))
    return documents
