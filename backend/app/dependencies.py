"""
FastAPI dependencies.

The orchestrator is built once in the app lifespan and parked on app.state;
tests swap it by assigning a different object there.
"""

from fastapi import Request

from app.research.orchestrator import PhaseOrchestrator


def get_orchestrator(request: Request) -> PhaseOrchestrator:
    return request.app.state.orchestrator
