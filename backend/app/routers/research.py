"""
Research session API — initiate, inspect, retry, stop and delete sessions.

Every command returns as soon as the state change is saved; phase work
continues in the background and is observed by polling /status.
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.dependencies import get_orchestrator
from app.research.errors import (
    ConcurrentModificationError,
    ResearchError,
    SessionNotFoundError,
)
from app.research.orchestrator import PhaseOrchestrator
from app.schemas.api import InitiateRequest, RetryPhaseRequest, StopPhaseRequest
from app.schemas.research import PHASE_COUNT, PhaseRecord, ResearchSession

router = APIRouter()


# ── Serialization ────────────────────────────────────────────────────────────

def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camelize(value: Any) -> Any:
    """Recursively rename dict keys from snake_case to camelCase."""
    if isinstance(value, dict):
        return {_camel(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


def _phase_state(record: PhaseRecord, include_raw: bool = False) -> dict:
    state = {
        "status": record.status,
        "startedAt": iso(record.started_at),
        "completedAt": iso(record.completed_at),
        "error": record.error,
    }
    if include_raw:
        # Worker output is returned verbatim, keys untouched.
        state["workerCallSent"] = record.worker_call_sent
        state["attempt"] = record.attempt
        state["rawResponse"] = record.raw_response
        state["payload"] = record.payload
    return state


def _phases(session: ResearchSession, include_raw: bool = False) -> dict:
    return {
        f"phase{n}": _phase_state(session.phase(n), include_raw)
        for n in range(1, PHASE_COUNT + 1)
    }


def status_view(session: ResearchSession) -> dict:
    """A pure function of the stored document."""
    return {
        "chatId": session.chat_id,
        "currentPhase": session.current_phase,
        "overallStatus": session.overall_status,
        "progress": session.progress,
        "phases": _phases(session),
        "refinedProblem": session.refined_problem,
        "subtopicCount": len(session.subtopics),
        "paperCount": len(session.papers),
        "solutionCount": len(session.solutions),
        "hasFinalSolution": session.final_solution is not None,
        "createdAt": iso(session.created_at),
        "updatedAt": iso(session.updated_at),
    }


def session_view(session: ResearchSession, include_raw: bool = True) -> dict:
    doc = session.model_dump(mode="json", exclude={"phases", "version", "created_at", "updated_at"})
    view = camelize(doc)
    view["phases"] = _phases(session, include_raw)
    view["version"] = session.version
    view["createdAt"] = iso(session.created_at)
    view["updatedAt"] = iso(session.updated_at)
    return view


def to_http_error(e: ResearchError) -> HTTPException:
    if isinstance(e, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConcurrentModificationError):
        return HTTPException(
            status_code=409,
            detail="Session was modified by another request. Reload and try again.",
        )
    return HTTPException(status_code=400, detail=str(e))


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/initiate", status_code=201)
async def initiate(
    body: InitiateRequest,
    request: Request,
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
):
    """Create a session and start phase 1 in the background."""
    metadata = {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
        "additional_info": body.metadata,
    }
    try:
        session = await orchestrator.initiate(body.problem_statement, body.user_email, metadata)
    except ResearchError as e:
        raise to_http_error(e) from e
    return {
        "chatId": session.chat_id,
        "status": "processing",
        "progress": session.progress,
        "currentPhase": session.current_phase,
        "message": "Research initiated. Phase 1 is processing.",
    }


@router.get("/status/{chat_id}")
async def get_status(chat_id: str, orchestrator: PhaseOrchestrator = Depends(get_orchestrator)):
    try:
        session = await orchestrator.get_session(chat_id)
    except ResearchError as e:
        raise to_http_error(e) from e
    return status_view(session)


@router.get("/session/{chat_id}")
async def get_session(chat_id: str, orchestrator: PhaseOrchestrator = Depends(get_orchestrator)):
    """Full session document, raw worker responses included."""
    try:
        session = await orchestrator.get_session(chat_id)
    except ResearchError as e:
        raise to_http_error(e) from e
    return session_view(session)


@router.get("/sessions")
async def list_sessions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_email: str | None = Query(default=None, alias="userEmail"),
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
):
    sessions, total = await orchestrator.list_sessions(user_email=user_email, page=page, page_size=limit)
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "sessions": [session_view(s, include_raw=False) for s in sessions],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalSessions": total,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


@router.post("/{chat_id}/retry-phase")
async def retry_phase(
    chat_id: str,
    body: RetryPhaseRequest,
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
):
    """Re-run a phase. deleteExisting=true clears its results first; otherwise new results are merged in."""
    try:
        session = await orchestrator.retry_phase(chat_id, body.phase, body.delete_existing)
    except ResearchError as e:
        raise to_http_error(e) from e
    return {
        "chatId": chat_id,
        "phase": body.phase,
        "status": session.phase(body.phase).status,
        "deleteExisting": body.delete_existing,
        "progress": session.progress,
        "message": f"Phase {body.phase} retry started",
    }


@router.post("/{chat_id}/stop-phase")
async def stop_phase(
    chat_id: str,
    body: StopPhaseRequest,
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
):
    try:
        session = await orchestrator.stop_phase(chat_id, body.phase, body.reason)
    except ResearchError as e:
        raise to_http_error(e) from e
    record = session.phase(body.phase)
    return {
        "chatId": chat_id,
        "phase": body.phase,
        "status": record.status,
        "error": record.error,
        "message": f"Phase {body.phase} stopped",
    }


@router.delete("/{chat_id}")
async def delete_session(chat_id: str, orchestrator: PhaseOrchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.delete_session(chat_id)
    except ResearchError as e:
        raise to_http_error(e) from e
    return {
        "chatId": chat_id,
        "deletedAt": datetime.now(timezone.utc).isoformat(),
        "message": "Research session deleted",
    }
