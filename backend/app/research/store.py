"""
Session store — durable research session documents.

Each operation opens its own short unit of work, so the store can be shared by
request handlers and background phase continuations alike. Saves are full
document replaces guarded by the row's `version`: a writer that loaded an
older version gets ConcurrentModificationError instead of silently
overwriting someone else's update.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import AsyncSessionLocal, session_scope
from app.models.research import ResearchSessionRow
from app.research.errors import ConcurrentModificationError, SessionNotFoundError
from app.research.state_machine import MIN_PROBLEM_WORDS, utcnow, validate_problem_statement
from app.schemas.research import ResearchSession, SessionMetadata

logger = logging.getLogger(__name__)


# ── Row ↔ document mapping ───────────────────────────────────────────────────

def row_to_session(row: ResearchSessionRow) -> ResearchSession:
    data: dict[str, Any] = {
        "chat_id": row.chat_id,
        "user_email": row.user_email,
        "original_input": row.original_input,
        "enhanced_input": row.enhanced_input,
        "refined_problem": row.refined_problem,
        "subtopics": row.subtopics or [],
        "embedding": row.embedding,
        "papers": row.papers or [],
        "analysis": row.analysis or {},
        "solutions": row.solutions or [],
        "solution_notes": row.solution_notes or "",
        "final_solution": row.final_solution,
        "current_phase": row.current_phase,
        "overall_status": row.overall_status,
        "progress": row.progress,
        "metadata": row.session_metadata or {},
        "version": row.version,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }
    if row.phases:
        data["phases"] = row.phases
    return ResearchSession.model_validate(data)


def session_to_values(session: ResearchSession) -> dict[str, Any]:
    """Column values for everything except identity, version and created_at."""
    doc = session.model_dump(mode="json")
    return {
        "user_email": session.user_email,
        "enhanced_input": session.enhanced_input,
        "refined_problem": session.refined_problem,
        "subtopics": doc["subtopics"],
        "embedding": doc["embedding"],
        "papers": doc["papers"],
        "analysis": doc["analysis"],
        "solutions": doc["solutions"],
        "solution_notes": session.solution_notes,
        "final_solution": doc["final_solution"],
        "phases": doc["phases"],
        "current_phase": session.current_phase,
        "overall_status": session.overall_status,
        "progress": session.progress,
        "session_metadata": doc["metadata"],
    }


# ── Store ────────────────────────────────────────────────────────────────────

class SessionStore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        min_words: int = MIN_PROBLEM_WORDS,
    ) -> None:
        self._factory = session_factory or AsyncSessionLocal
        self._min_words = min_words

    def new_session(
        self,
        original_input: Any,
        user_email: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ResearchSession:
        """Validated, unsaved session with a fresh chat id."""
        text = validate_problem_statement(original_input, self._min_words)
        return ResearchSession(
            chat_id=str(uuid.uuid4()),
            user_email=user_email or None,
            original_input=text,
            metadata=SessionMetadata.model_validate(metadata or {}),
        )

    async def create(
        self,
        original_input: Any,
        user_email: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ResearchSession:
        """Validate and persist a new session. Raises ValidationError."""
        return await self.insert(self.new_session(original_input, user_email, metadata))

    async def insert(self, session: ResearchSession) -> ResearchSession:
        now = utcnow()
        row = ResearchSessionRow(
            chat_id=session.chat_id,
            original_input=session.original_input,
            version=1,
            created_at=now,
            updated_at=now,
            **session_to_values(session),
        )
        async with session_scope(self._factory) as db:
            db.add(row)
            await db.flush()

        logger.info(f"[{session.chat_id}] Research session created")
        return session.model_copy(update={"version": 1, "created_at": now, "updated_at": now})

    async def get(self, chat_id: str) -> ResearchSession:
        async with session_scope(self._factory) as db:
            row = (await db.execute(
                select(ResearchSessionRow).where(ResearchSessionRow.chat_id == chat_id)
            )).scalars().first()
            if row is None:
                raise SessionNotFoundError(chat_id)
            return row_to_session(row)

    async def save(self, session: ResearchSession) -> ResearchSession:
        """
        Replace the stored document if nobody saved since `session` was loaded.
        Returns the session with its new version and updated_at.
        """
        now = utcnow()
        expected = session.version
        async with session_scope(self._factory) as db:
            result = await db.execute(
                update(ResearchSessionRow)
                .where(
                    ResearchSessionRow.chat_id == session.chat_id,
                    ResearchSessionRow.version == expected,
                )
                .values(**session_to_values(session), version=expected + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = (await db.execute(
                    select(ResearchSessionRow.id).where(ResearchSessionRow.chat_id == session.chat_id)
                )).scalars().first()
                if exists is None:
                    raise SessionNotFoundError(session.chat_id)
                raise ConcurrentModificationError(session.chat_id, expected)

        return session.model_copy(update={"version": expected + 1, "updated_at": now})

    async def list_sessions(
        self,
        user_email: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[ResearchSession], int]:
        """Newest first. Returns (page of sessions, total matching)."""
        page = max(page, 1)
        page_size = max(page_size, 1)

        query = select(ResearchSessionRow)
        count_query = select(func.count()).select_from(ResearchSessionRow)
        if user_email:
            query = query.where(ResearchSessionRow.user_email == user_email)
            count_query = count_query.where(ResearchSessionRow.user_email == user_email)

        async with session_scope(self._factory) as db:
            total = (await db.execute(count_query)).scalar_one()
            rows = (await db.execute(
                query.order_by(ResearchSessionRow.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
            return [row_to_session(r) for r in rows], total

    async def list_processing(self) -> list[ResearchSession]:
        """Sessions with a phase possibly in flight."""
        async with session_scope(self._factory) as db:
            rows = (await db.execute(
                select(ResearchSessionRow).where(ResearchSessionRow.overall_status == "processing")
            )).scalars().all()
            return [row_to_session(r) for r in rows]

    async def delete(self, chat_id: str) -> None:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                delete(ResearchSessionRow).where(ResearchSessionRow.chat_id == chat_id)
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(chat_id)
        logger.info(f"[{chat_id}] Research session deleted")
