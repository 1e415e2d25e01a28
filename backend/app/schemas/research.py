"""
Pydantic domain types for research sessions.

A session owns everything a research run accumulates: the refined problem and
subtopics (phase 1), the paper list (phases 2–3), the methodology analysis
(phase 4), existing solutions (phase 5) and the final proposal (phase 6).
Phase bookkeeping lives in a fixed list of six PhaseRecords; phase N is at
index N-1 and should be reached through `ResearchSession.phase(N)`.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PHASE_COUNT = 6

PhaseStatus = Literal["pending", "processing", "completed", "failed"]
OverallStatus = Literal["initialized", "processing", "completed", "failed"]


# ── Phase 1 ──────────────────────────────────────────────────────────────────

class Subtopic(BaseModel):
    id: int
    title: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    search_query: str = ""


# ── Phases 2 + 3 ─────────────────────────────────────────────────────────────

class Paper(BaseModel):
    title: str = ""
    authors: list[str] = Field(default_factory=list)
    abstract: str = ""
    pdf_link: str = ""
    relevance_score: float = 0.0
    relevance_score_percent: Optional[int] = None
    year: Optional[int] = None

    # Filled in by phase 3
    summary: Optional[str] = None
    methodology: Optional[str] = None
    algorithms_used: list[str] = Field(default_factory=list)
    result: Optional[str] = None
    conclusion: Optional[str] = None
    limitations: Optional[str] = None
    future_scope: Optional[str] = None

    @property
    def is_enriched(self) -> bool:
        return bool(self.summary) and bool(self.methodology)

    def without_enrichment(self) -> "Paper":
        """Copy carrying only the fields phase 2 produced."""
        return Paper(
            title=self.title,
            authors=list(self.authors),
            abstract=self.abstract,
            pdf_link=self.pdf_link,
            relevance_score=self.relevance_score,
            relevance_score_percent=self.relevance_score_percent,
            year=self.year,
        )


# ── Phase 4 ──────────────────────────────────────────────────────────────────

class TitledItem(BaseModel):
    title: str
    description: str = ""


class Analysis(BaseModel):
    most_common_methodologies: list[TitledItem] = Field(default_factory=list)
    technology_or_algorithms: list[str] = Field(default_factory=list)
    datasets_used: list[str] = Field(default_factory=list)
    unique_or_less_common_approaches: list[TitledItem] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.most_common_methodologies
            or self.technology_or_algorithms
            or self.datasets_used
            or self.unique_or_less_common_approaches
        )


# ── Phase 5 ──────────────────────────────────────────────────────────────────

class Solution(BaseModel):
    title: str = ""
    summary: str = ""
    features: list[str] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)
    target_users: str = ""
    platform_type: str = ""
    official_website: str = ""
    documentation_link: str = ""
    pricing_or_license: str = ""


# ── Phase 6 ──────────────────────────────────────────────────────────────────

class WorkflowStage(BaseModel):
    phase_title: str = ""
    steps: list[str] = Field(default_factory=list)


class TechStackGroup(BaseModel):
    title: str = ""
    items: list[str] = Field(default_factory=list)


class FactorScore(BaseModel):
    title: str = ""
    rating: float = Field(default=0.0, ge=0.0, le=10.0)
    description: str = ""

    @field_validator("rating", mode="before")
    @classmethod
    def clamp_rating(cls, v: Any) -> float:
        try:
            value = float(v or 0)
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 10.0)


class FinalSolution(BaseModel):
    proposed_solution: str = ""
    problem_understanding: str = ""
    solution_architecture: list[str] = Field(default_factory=list)
    implementation_workflow: list[WorkflowStage] = Field(default_factory=list)
    recommended_tech_stack: list[TechStackGroup] = Field(default_factory=list)
    scoring_by_factors: list[FactorScore] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)
    additional_information: list[str] = Field(default_factory=list)


# ── Session ──────────────────────────────────────────────────────────────────

class PhaseRecord(BaseModel):
    status: PhaseStatus = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    worker_call_sent: bool = False
    raw_response: Any = None
    payload: Any = None
    # Bumped on every entry into `processing`; a continuation only applies
    # its result while the attempt it was dispatched under is still current.
    attempt: int = 0


def _fresh_phases() -> list[PhaseRecord]:
    return [PhaseRecord() for _ in range(PHASE_COUNT)]


class SessionMetadata(BaseModel):
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    additional_info: dict[str, Any] = Field(default_factory=dict)


class ResearchSession(BaseModel):
    chat_id: str
    user_email: Optional[str] = None
    original_input: str
    enhanced_input: Optional[str] = None
    refined_problem: Optional[str] = None
    subtopics: list[Subtopic] = Field(default_factory=list)
    embedding: Optional[list[float]] = None
    papers: list[Paper] = Field(default_factory=list)
    analysis: Analysis = Field(default_factory=Analysis)
    solutions: list[Solution] = Field(default_factory=list)
    solution_notes: str = ""
    final_solution: Optional[FinalSolution] = None

    phases: list[PhaseRecord] = Field(default_factory=_fresh_phases)
    current_phase: int = Field(default=1, ge=1, le=PHASE_COUNT)
    overall_status: OverallStatus = "initialized"
    progress: int = Field(default=0, ge=0, le=100)

    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("phases")
    @classmethod
    def validate_phase_count(cls, v: list[PhaseRecord]) -> list[PhaseRecord]:
        if len(v) != PHASE_COUNT:
            raise ValueError(f"a session carries exactly {PHASE_COUNT} phase records")
        return v

    def phase(self, number: int) -> PhaseRecord:
        if not 1 <= number <= PHASE_COUNT:
            raise IndexError(f"phase must be between 1 and {PHASE_COUNT}, got {number}")
        return self.phases[number - 1]

    def set_phase(self, number: int, record: PhaseRecord) -> None:
        if not 1 <= number <= PHASE_COUNT:
            raise IndexError(f"phase must be between 1 and {PHASE_COUNT}, got {number}")
        self.phases[number - 1] = record

    def pdf_links(self) -> list[str]:
        return [p.pdf_link for p in self.papers if p.pdf_link and p.pdf_link.strip()]
