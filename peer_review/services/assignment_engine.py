"""Circulant assignment of reviewers to papers.

Authors are placed in a fixed order; the author at position ``i`` is reviewed
by the authors at positions ``i+1 .. i+k`` (mod n). Offsets are never 0, so
nobody reviews their own paper, and every author is an offset target from
exactly ``k`` positions, so every author reviews exactly ``k`` papers.
"""
from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Optional, Sequence

from peer_review.core.errors import ParameterError, PopulationError
from peer_review.schemas.data import Submission


@dataclass(frozen=True)
class PaperAssignment:
    paper_id: str
    author_id: str
    reviewer_ids: tuple[str, ...]


def effective_review_num(review_num: int, authors: int) -> int:
    """Clamp ``review_num`` to ``authors - 1`` (everybody reviews everybody else)."""
    return min(review_num, authors - 1)


def assign(
    papers: Sequence[Submission],
    review_num: int,
    *,
    rng: Optional[random.Random] = None,
) -> list[PaperAssignment]:
    """Compute the reviewers of every paper.

    ``papers`` is kept in the given order unless ``rng`` is supplied, in which
    case a shuffled copy decides the circulant positions. The result follows
    that order. Nothing is persisted here.
    """
    if isinstance(review_num, bool) or not isinstance(review_num, int):
        raise ParameterError(f"reviewNum must be an integer, got {review_num!r}")
    if review_num < 1:
        raise ParameterError(f"reviewNum must be at least 1, got {review_num}")

    seen: set[str] = set()
    for paper in papers:
        if paper.author_id in seen:
            raise ParameterError(f"Author {paper.author_id} has more than one paper")
        seen.add(paper.author_id)

    n = len(papers)
    if n < 2:
        raise PopulationError(f"At least 2 authors are needed for peer review, got {n}")

    ordered = list(papers)
    if rng is not None:
        rng.shuffle(ordered)

    k = effective_review_num(review_num, n)
    return [
        PaperAssignment(
            paper_id=paper.paper_id,
            author_id=paper.author_id,
            reviewer_ids=tuple(ordered[(i + offset) % n].author_id for offset in range(1, k + 1)),
        )
        for i, paper in enumerate(ordered)
    ]


def as_mapping(assignments: Sequence[PaperAssignment]) -> dict[str, set[str]]:
    return {a.paper_id: set(a.reviewer_ids) for a in assignments}


def reviewer_loads(assignments: Sequence[PaperAssignment]) -> dict[str, int]:
    """Number of papers each author has to review."""
    loads: dict[str, int] = {a.author_id: 0 for a in assignments}
    for a in assignments:
        for reviewer in a.reviewer_ids:
            loads[reviewer] = loads.get(reviewer, 0) + 1
    return loads
