"""
Additive-retry merge policies.

When a phase is retried without deleting existing results, the new worker
output is folded into what the session already holds. Each result type has
its own dedup key; order is first-seen throughout.
"""

from typing import Callable, Hashable, Iterable, TypeVar

from app.schemas.research import Analysis, Paper, Solution, TitledItem

T = TypeVar("T")


def _merge_keyed(
    existing: Iterable[T],
    new: Iterable[T],
    key: Callable[[T], Hashable],
) -> list[T]:
    """Union by key; a new item replaces the existing one in place."""
    merged: dict[Hashable, T] = {}
    for item in existing:
        merged[key(item)] = item
    for item in new:
        merged[key(item)] = item
    return list(merged.values())


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


# ── Papers ───────────────────────────────────────────────────────────────────

def is_duplicate_paper(a: Paper, b: Paper) -> bool:
    """Same non-empty pdf link, or same title ignoring case."""
    if a.pdf_link and b.pdf_link and a.pdf_link == b.pdf_link:
        return True
    return bool(a.title and b.title and a.title.lower() == b.title.lower())


def merge_papers(existing: list[Paper], new: list[Paper]) -> list[Paper]:
    """
    Phase 2: keep every existing paper and append new ones that are not
    duplicates. Existing wins so enrichment from an earlier phase 3 survives.
    """
    merged = list(existing)
    for paper in new:
        if not any(is_duplicate_paper(paper, kept) for kept in merged):
            merged.append(paper)
    return merged


def merge_enriched_papers(existing: list[Paper], new: list[Paper]) -> list[Paper]:
    """
    Phase 3: union of previously enriched papers and the new batch. A new
    analysis replaces the duplicate it matches, in place.
    """
    merged = [p for p in existing if p.is_enriched]
    for paper in new:
        index = next((i for i, kept in enumerate(merged) if is_duplicate_paper(paper, kept)), None)
        if index is None:
            merged.append(paper)
        else:
            merged[index] = paper
    return merged


# ── Phase 4 ──────────────────────────────────────────────────────────────────

def _titled_key(item: TitledItem) -> str:
    return item.title.lower()


def merge_analysis(existing: Analysis, new: Analysis) -> Analysis:
    return Analysis(
        most_common_methodologies=_merge_keyed(
            existing.most_common_methodologies, new.most_common_methodologies, _titled_key
        ),
        technology_or_algorithms=_unique(
            [*existing.technology_or_algorithms, *new.technology_or_algorithms]
        ),
        datasets_used=_unique([*existing.datasets_used, *new.datasets_used]),
        unique_or_less_common_approaches=_merge_keyed(
            existing.unique_or_less_common_approaches,
            new.unique_or_less_common_approaches,
            _titled_key,
        ),
    )


# ── Phase 5 ──────────────────────────────────────────────────────────────────

def solution_key(solution: Solution) -> tuple[str, str]:
    return (solution.title.lower(), solution.official_website)


def merge_solutions(existing: list[Solution], new: list[Solution]) -> list[Solution]:
    return _merge_keyed(existing, new, solution_key)
