"""
Worker response normalizers — one adapter per phase.

Workers answer in three shapes and every adapter accepts all of them:

  bare object       {"subtopics": [...], ...}
  array-wrapped     [{"subtopics": [...], ...}]        first element is the payload
  field-wrapped     {"cleanedOutput": {...}}           a named wrapper field

Precedence is the same everywhere: unwrap a list to its first element first,
then descend into the phase's wrapper field if present, else use the object
itself. Phases 2 and 3 return *lists* of papers, so for them a list whose
items look like papers is taken as the payload directly.

Worker keys are snake_case (and occasionally camelCase or display titles);
the adapters map them onto the canonical models in app.schemas.research.
"""

import logging
from typing import Any, Optional

from app.research.text_cleaner import clean_abstract
from app.schemas.research import (
    Analysis,
    FactorScore,
    FinalSolution,
    Paper,
    Solution,
    Subtopic,
    TechStackGroup,
    TitledItem,
    WorkflowStage,
)

logger = logging.getLogger(__name__)


# ── Shape helpers ─────────────────────────────────────────────────────────────

def unwrap(data: Any, *wrapper_keys: str) -> Any:
    """
    Reduce a worker response to its payload object.

    list  → first element (None when empty)
    dict with one of `wrapper_keys` → that field's value (first match wins)
    anything else → returned unchanged
    """
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        for key in wrapper_keys:
            if isinstance(data.get(key), (dict, list)):
                return data[key]
    return data


def _first(obj: dict, *keys: str, default: Any = None) -> Any:
    """First present, non-empty value among `keys`."""
    for key in keys:
        value = obj.get(key)
        if value not in (None, ""):
            return value
    return default


def _str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _str_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [_str(v).strip() for v in value if _str(v).strip()]
    return [_str(value).strip()]


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except (TypeError, ValueError):
        return 0.0


def _item_list(data: Any, *list_keys: str) -> list[dict]:
    """
    Pull a list of record dicts out of a list-valued phase response.

    [{paper}, {paper}]             → as-is
    [{"papers": [...]}]            → inner list
    {"papers": [...]} / {paper}    → inner list / single-item list
    """
    if isinstance(data, list):
        if len(data) == 1 and isinstance(data[0], dict):
            inner = unwrap(data[0], *list_keys)
            if isinstance(inner, list):
                return [d for d in inner if isinstance(d, dict)]
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        inner = unwrap(data, *list_keys)
        if isinstance(inner, list):
            return [d for d in inner if isinstance(d, dict)]
        if inner is data:
            return [data]
    return []


# ── Phase 1 ──────────────────────────────────────────────────────────────────

class Phase1Output:
    def __init__(
        self,
        refined_problem: Optional[str],
        enhanced_input: Optional[str],
        subtopics: list[Subtopic],
        embedding: Optional[list[float]],
    ) -> None:
        self.refined_problem = refined_problem
        self.enhanced_input = enhanced_input
        self.subtopics = subtopics
        self.embedding = embedding


def normalize_subtopics(raw: Any) -> list[Subtopic]:
    """
    Subtopics come either as plain strings or as objects whose title may be
    spelled `title`, `subtopic` or `name`.
    """
    if not isinstance(raw, list):
        return []

    subtopics: list[Subtopic] = []
    for index, item in enumerate(raw, start=1):
        if isinstance(item, str):
            if not item.strip():
                continue
            subtopics.append(Subtopic(
                id=index,
                title=item.strip(),
                description=item.strip(),
                keywords=[item.strip()],
            ))
        elif isinstance(item, dict):
            title = _str(_first(item, "title", "subtopic", "name", default="Untitled"))
            subtopics.append(Subtopic(
                id=_int_or_none(_first(item, "subtopic_id", "id")) or index,
                title=title,
                description=_str(_first(item, "description", default=title)),
                keywords=_str_list(item.get("keywords")) or [title],
                search_query=_str(_first(item, "arxiv_search_query", "search_query", "searchQuery")),
            ))
    return subtopics


def normalize_phase1(data: Any) -> Phase1Output:
    result = unwrap(data, "output", "data")
    if not isinstance(result, dict):
        result = {}

    refined = _first(result, "refine_problem", "refined_problem", "refinedProblem")
    enhanced = _first(result, "refine_problem", "refined_problem", "enhancedPrompt", "enhanced_prompt")
    embedding = _first(result, "refine_problem_embedding", "embedding")
    if not isinstance(embedding, list):
        embedding = None

    return Phase1Output(
        refined_problem=_str(refined).strip() or None,
        enhanced_input=_str(enhanced).strip() or None,
        subtopics=normalize_subtopics(result.get("subtopics")),
        embedding=[_float(v) for v in embedding] if embedding else None,
    )


# ── Phase 2 ──────────────────────────────────────────────────────────────────

def _authors(value: Any) -> list[str]:
    if isinstance(value, list):
        return _str_list(value)
    if isinstance(value, str):
        return [a.strip() for a in value.split(",") if a.strip()]
    return []


def normalize_paper(raw: dict) -> Paper:
    score = _float(_first(raw, "semantic_score", "semanticScore", "relevance_score", "relevanceScore"))
    return Paper(
        title=_str(_first(raw, "title", "paper_title", default="")).strip(),
        authors=_authors(raw.get("authors")),
        abstract=clean_abstract(_str(raw.get("abstract"))),
        pdf_link=_str(_first(raw, "pdf_url", "pdfLink", "pdf_link", default="")).strip(),
        relevance_score=score,
        relevance_score_percent=round(score * 100) if score else None,
        year=_int_or_none(raw.get("year")),
    )


def normalize_phase2(data: Any) -> list[Paper]:
    papers = [normalize_paper(raw) for raw in _item_list(data, "papers", "phase2Data", "data")]
    return [p for p in papers if p.title or p.pdf_link]


# ── Phase 3 ──────────────────────────────────────────────────────────────────

class AnalyzedPaper:
    """One phase-3 record before it is matched against the phase-2 paper list."""

    def __init__(self, raw: dict) -> None:
        self.pdf_link = _str(_first(raw, "pdf_link", "pdfLink", "pdf_url", default="")).strip()
        self.title = _str(raw.get("title")).strip()
        self.summary = _str(raw.get("summary")).strip()
        self.methodology = _str(raw.get("methodology")).strip()
        self.algorithms_used = _str_list(_first(raw, "algorithms_used", "algorithmsUsed"))
        self.result = _str(raw.get("result"))
        self.conclusion = _str(raw.get("conclusion"))
        self.limitations = _str(raw.get("limitations")) or "Not mentioned"
        self.future_scope = _str(_first(raw, "future_scope", "futureScope")) or "Not mentioned"

    @property
    def is_enriched(self) -> bool:
        return bool(self.summary) and bool(self.methodology)

    def link_matches(self, paper: Paper) -> bool:
        if not (self.pdf_link and paper.pdf_link):
            return False
        return (
            self.pdf_link == paper.pdf_link
            or paper.pdf_link in self.pdf_link
            or self.pdf_link in paper.pdf_link
        )

    def title_matches(self, paper: Paper) -> bool:
        return bool(self.title and paper.title and self.title.lower() == paper.title.lower())

    def enrich(self, base: Paper) -> Paper:
        # Identity (title, link, year) stays with the phase-2 paper
        return base.model_copy(update={
            "summary": self.summary,
            "methodology": self.methodology,
            "algorithms_used": self.algorithms_used,
            "result": self.result,
            "conclusion": self.conclusion,
            "limitations": self.limitations,
            "future_scope": self.future_scope,
        })


def normalize_phase3(data: Any) -> list[AnalyzedPaper]:
    return [AnalyzedPaper(raw) for raw in _item_list(data, "papers", "phase3Data", "data")]


def enrich_papers(base_papers: list[Paper], analyzed: list[AnalyzedPaper]) -> list[Paper]:
    """
    Join phase-3 analyses onto phase-2 papers.

    Only analyses carrying both a summary and a methodology survive, and only
    when they match a phase-2 paper. Enrichment is a filter: the result is
    the list of enriched papers, not the full phase-2 list.
    """
    enriched: list[Paper] = []
    for record in analyzed:
        if not record.is_enriched:
            continue
        # A link match anywhere in the list beats an earlier title match
        match = next((p for p in base_papers if record.link_matches(p)), None)
        if match is None:
            match = next((p for p in base_papers if record.title_matches(p)), None)
        if match is None:
            logger.debug(f"Phase 3 record {record.pdf_link or record.title!r} matched no paper; dropped")
            continue
        enriched.append(record.enrich(match))
    return enriched


# ── Phase 4 ──────────────────────────────────────────────────────────────────

def _titled_items(value: Any) -> list[TitledItem]:
    items: list[TitledItem] = []
    for entry in value if isinstance(value, list) else []:
        if isinstance(entry, str) and entry.strip():
            items.append(TitledItem(title=entry.strip()))
        elif isinstance(entry, dict):
            title = _str(_first(entry, "title", "name")).strip()
            if title:
                items.append(TitledItem(title=title, description=_str(entry.get("description"))))
    return items


def normalize_phase4(data: Any) -> Optional[Analysis]:
    """None when the response carries no recognizable analysis object."""
    output = unwrap(data, "cleanedOutput", "output")
    if not isinstance(output, dict):
        return None
    return Analysis(
        most_common_methodologies=_titled_items(
            _first(output, "most_common_methodologies", "mostCommonMethodologies")
        ),
        technology_or_algorithms=_str_list(
            _first(output, "technology_or_algorithms", "technologyOrAlgorithms")
        ),
        datasets_used=_str_list(_first(output, "datasets_used", "datasetsUsed")),
        unique_or_less_common_approaches=_titled_items(
            _first(output, "unique_or_less_common_approaches", "uniqueOrLessCommonApproaches")
        ),
    )


# ── Phase 5 ──────────────────────────────────────────────────────────────────

def normalize_solution(raw: dict) -> Solution:
    return Solution(
        title=_str(raw.get("title")).strip(),
        summary=_str(raw.get("summary")),
        features=_str_list(raw.get("features")),
        limitations=_str_list(raw.get("limitations")),
        target_users=_str(_first(raw, "target_users", "targetUsers")),
        platform_type=_str(_first(raw, "platform_type", "platformType")),
        official_website=_str(_first(raw, "official_website", "officialWebsite")).strip(),
        documentation_link=_str(_first(raw, "documentation_link", "documentationLink")),
        pricing_or_license=_str(_first(raw, "pricing_or_license", "pricingOrLicense")),
    )


def normalize_phase5(data: Any) -> tuple[list[Solution], str]:
    """(solutions, notes). A bare list of solution objects is also accepted."""
    if isinstance(data, list) and data and all(isinstance(s, dict) and "title" in s for s in data):
        return [normalize_solution(s) for s in data if isinstance(s, dict)], ""

    payload = unwrap(data, "output")
    if not isinstance(payload, dict):
        return [], ""
    raw_solutions = payload.get("solutions")
    if not isinstance(raw_solutions, list):
        raw_solutions = []
    solutions = [normalize_solution(s) for s in raw_solutions if isinstance(s, dict)]
    return solutions, _str(payload.get("notes"))


# ── Phase 6 ──────────────────────────────────────────────────────────────────

def normalize_phase6(data: Any) -> Optional[FinalSolution]:
    output = unwrap(data, "structuredOutput", "structured_output")
    if not isinstance(output, dict) or not output:
        return None

    workflow = _first(output, "Implementation Workflow", "implementation_workflow")
    tech_stack = _first(output, "Recommended Tech Stack", "recommended_tech_stack")
    scoring = _first(output, "Scoring by Factors", "scoring_by_factors")

    return FinalSolution(
        proposed_solution=_str(_first(output, "proposed_solution", "Proposed Solution")),
        problem_understanding=_str(_first(output, "Problem Understanding", "problem_understanding")),
        solution_architecture=_str_list(
            _first(output, "Solution Architecture & Approach", "solution_architecture")
        ),
        implementation_workflow=[
            WorkflowStage(
                phase_title=_str(_first(stage, "phase_title", "phaseTitle", "title")),
                steps=_str_list(stage.get("steps")),
            )
            for stage in (workflow if isinstance(workflow, list) else [])
            if isinstance(stage, dict)
        ],
        recommended_tech_stack=[
            TechStackGroup(title=_str(group.get("title")), items=_str_list(group.get("items")))
            for group in (tech_stack if isinstance(tech_stack, list) else [])
            if isinstance(group, dict)
        ],
        scoring_by_factors=[
            FactorScore(
                title=_str(score.get("title")),
                rating=score.get("rating"),
                description=_str(score.get("description")),
            )
            for score in (scoring if isinstance(scoring, list) else [])
            if isinstance(score, dict)
        ],
        limitations=_str_list(_first(output, "Limitations & Open Questions", "limitations")),
        additional_information=_str_list(
            _first(output, "Additional Information", "additional_information")
        ),
    )
