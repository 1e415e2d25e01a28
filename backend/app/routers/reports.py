"""
Report API — the final research report as JSON, for a renderer to lay out.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_orchestrator
from app.research.errors import ResearchError
from app.research.orchestrator import PhaseOrchestrator
from app.routers.research import to_http_error, iso, camelize

router = APIRouter()


@router.get("/{chat_id}")
async def get_report(chat_id: str, orchestrator: PhaseOrchestrator = Depends(get_orchestrator)):
    try:
        session = await orchestrator.get_session(chat_id)
    except ResearchError as e:
        raise to_http_error(e) from e

    final_phase = session.phase(6)
    if final_phase.status != "completed":
        raise HTTPException(
            status_code=400,
            detail="Phase 6 must be completed before generating report",
        )

    doc = session.model_dump(mode="json")
    return {
        "chatId": session.chat_id,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "problemStatement": session.original_input,
        "refinedProblem": session.refined_problem,
        "subtopics": camelize(doc["subtopics"]),
        "papers": camelize(doc["papers"]),
        "analysis": camelize(doc["analysis"]),
        "solutions": camelize(doc["solutions"]),
        "solutionNotes": session.solution_notes,
        "finalSolution": camelize(doc["final_solution"]),
        "createdAt": iso(session.created_at),
        "completedAt": iso(final_phase.completed_at),
    }
