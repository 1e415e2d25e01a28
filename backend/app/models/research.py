"""
ResearchSession ORM model.

One row per research run. Scalar fields the API filters or sorts on are real
columns; everything the phases accumulate is JSONB. `version` backs the
optimistic-concurrency check in SessionStore.save.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.database import Base


class ResearchSessionRow(Base):
    __tablename__ = "research_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, index=True)

    # The user's problem statement, verbatim (trimmed). Never rewritten.
    original_input: Mapped[str] = mapped_column(Text, nullable=False)
    enhanced_input: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refined_problem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Phase 1: list of Subtopic dicts + embedding vector
    subtopics: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    embedding: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    # Phases 2–3: list of Paper dicts
    papers: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    # Phase 4: Analysis dict
    analysis: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # Phase 5: list of Solution dicts + notes
    solutions: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    solution_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Phase 6: FinalSolution dict
    final_solution: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    # Six PhaseRecord dicts, phase N at index N-1
    phases: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    current_phase: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # initialized | processing | completed | failed
    overall_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="initialized", index=True
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # user agent, ip address, free-form extras from the client
    session_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ResearchSessionRow chat_id={self.chat_id} phase={self.current_phase} "
            f"status={self.overall_status} v{self.version}>"
        )
