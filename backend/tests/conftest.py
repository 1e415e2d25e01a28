"""
Shared pytest fixtures for research orchestrator backend tests.

Two fakes stand in for the I/O edges:
  InMemorySessionStore — SessionStore contract on a dict, version check included
  ScriptedGateway      — WorkerGateway stand-in; replies are scripted per phase,
                         and a phase can be held open until the test releases it
"""
import asyncio
from collections import defaultdict
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.gateway.errors import GatewayConfigError
from app.gateway.worker_gateway import WorkerResponse
from app.research.errors import ConcurrentModificationError, SessionNotFoundError
from app.research.orchestrator import PhaseOrchestrator
from app.research.state_machine import MIN_PROBLEM_WORDS, utcnow
from app.research.store import SessionStore
from app.schemas.research import ResearchSession

PROBLEM = (
    "Small clinics in rural regions struggle to triage patients quickly because "
    "they lack specialists and reliable connectivity, so we want an offline "
    "decision support tool that runs on cheap hardware and helps nurses decide "
    "which cases need urgent referral to a city hospital."
)


# ── Sample worker replies ─────────────────────────────────────────────────────

def phase1_reply(subtopics: Optional[list] = None) -> list:
    if subtopics is None:
        subtopics = [
            {
                'subtopic_id': 1,
                'title': 'Offline clinical triage models',
                'description': 'Lightweight models for triage without connectivity',
                'keywords': ['triage', 'edge ml'],
                'arxiv_search_query': 'offline triage machine learning',
            },
            'Low-cost medical hardware',
        ]
    return [{
        'output': {
            'refine_problem': 'Offline triage decision support for rural clinics.',
            'subtopics': subtopics,
            'refine_problem_embedding': [0.1, 0.2, 0.3],
        }
    }]


def phase2_reply(papers: Optional[list] = None) -> list:
    if papers is None:
        papers = [
            {
                'title': 'Edge Triage Networks',
                'authors': 'A. Rao, B. Chen',
                'abstract': 'We study $O(n)$ triage on \\textbf{edge} devices.',
                'pdf_url': 'http://arxiv.org/pdf/2401.00001',
                'semantic_score': 0.91,
                'year': 2024,
            },
            {
                'title': 'Nurse-Led Referral Protocols',
                'authors': ['C. Diaz'],
                'abstract': 'A protocol study.',
                'pdf_url': 'http://arxiv.org/pdf/2401.00002',
                'semantic_score': 0.75,
                'year': 2023,
            },
        ]
    return [{'papers': papers}]


def phase3_reply(records: Optional[list] = None) -> list:
    if records is None:
        records = [
            {
                'pdf_link': 'http://arxiv.org/pdf/2401.00001',
                'title': 'Edge Triage Networks',
                'summary': 'Compact triage network.',
                'methodology': 'Distilled gradient boosting.',
                'algorithms_used': ['XGBoost'],
                'result': '92% recall',
                'conclusion': 'Feasible on phones.',
            },
            {
                'pdf_link': 'http://arxiv.org/pdf/2401.00002',
                'title': 'Nurse-Led Referral Protocols',
                'summary': '',
                'methodology': '',
            },
        ]
    return records


def phase4_reply() -> dict:
    return {
        'output': {
            'most_common_methodologies': [{'title': 'Gradient boosting', 'description': 'Tabular vitals'}],
            'technology_or_algorithms': ['XGBoost', 'TFLite'],
            'datasets_used': ['MIMIC-III'],
            'unique_or_less_common_approaches': [{'title': 'Federated triage', 'description': ''}],
        }
    }


def phase5_reply(solutions: Optional[list] = None, notes: str = 'Market is thin.') -> dict:
    if solutions is None:
        solutions = [{
            'title': 'TriageKit',
            'summary': 'Offline triage app',
            'features': ['offline'],
            'limitations': ['english only'],
            'official_website': 'https://triagekit.example',
        }]
    return {'output': {'solutions': solutions, 'notes': notes}}


def phase6_reply() -> dict:
    return {
        'structuredOutput': {
            'proposed_solution': 'Pocket Triage',
            'Problem Understanding': 'Rural clinics need offline triage.',
            'Solution Architecture & Approach': ['On-device model', 'Sync when online'],
            'Implementation Workflow': [{'phase_title': 'Pilot', 'steps': ['Collect data']}],
            'Recommended Tech Stack': [{'title': 'Mobile', 'items': ['Kotlin']}],
            'Scoring by Factors': [{'title': 'Feasibility', 'rating': 8, 'description': 'Cheap'}],
            'Limitations & Open Questions': ['Regulatory approval'],
            'Additional Information': ['Partner with NGOs'],
        }
    }


def full_script() -> dict[int, Any]:
    return {
        1: phase1_reply(),
        2: phase2_reply(),
        3: phase3_reply(),
        4: phase4_reply(),
        5: phase5_reply(),
        6: phase6_reply(),
    }


# ── Fakes ─────────────────────────────────────────────────────────────────────

class InMemorySessionStore(SessionStore):
    """SessionStore backed by a dict. Same errors, same version semantics."""

    def __init__(self, min_words: int = MIN_PROBLEM_WORDS) -> None:
        super().__init__(session_factory=MagicMock(), min_words=min_words)
        self.rows: dict[str, ResearchSession] = {}
        self.save_count = 0

    async def insert(self, session: ResearchSession) -> ResearchSession:
        now = utcnow()
        stored = session.model_copy(deep=True, update={'version': 1, 'created_at': now, 'updated_at': now})
        self.rows[session.chat_id] = stored
        return stored.model_copy(deep=True)

    async def get(self, chat_id: str) -> ResearchSession:
        if chat_id not in self.rows:
            raise SessionNotFoundError(chat_id)
        return self.rows[chat_id].model_copy(deep=True)

    async def save(self, session: ResearchSession) -> ResearchSession:
        current = self.rows.get(session.chat_id)
        if current is None:
            raise SessionNotFoundError(session.chat_id)
        if current.version != session.version:
            raise ConcurrentModificationError(session.chat_id, session.version)
        stored = session.model_copy(deep=True, update={'version': session.version + 1, 'updated_at': utcnow()})
        self.rows[session.chat_id] = stored
        self.save_count += 1
        return stored.model_copy(deep=True)

    async def list_sessions(self, user_email=None, page=1, page_size=10):
        matching = [
            s for s in self.rows.values()
            if not user_email or s.user_email == user_email
        ]
        matching.sort(key=lambda s: s.created_at, reverse=True)
        start = (page - 1) * page_size
        return [s.model_copy(deep=True) for s in matching[start:start + page_size]], len(matching)

    async def list_processing(self) -> list[ResearchSession]:
        return [s.model_copy(deep=True) for s in self.rows.values() if s.overall_status == 'processing']

    async def delete(self, chat_id: str) -> None:
        if self.rows.pop(chat_id, None) is None:
            raise SessionNotFoundError(chat_id)


class ScriptedGateway:
    """
    Replies come from `script[phase]`: a reply body, or an exception to raise.
    An unscripted phase fails like an unconfigured endpoint. `hold(phase)`
    makes the next call to that phase wait until `release(phase, reply)`.
    """

    def __init__(self, script: Optional[dict[int, Any]] = None) -> None:
        self.script: dict[int, Any] = dict(script or {})
        self.calls: list[tuple[int, str, dict]] = []
        self._held: dict[int, asyncio.Future] = {}
        self._called: dict[int, asyncio.Event] = defaultdict(asyncio.Event)

    def hold(self, phase: int) -> None:
        self._held[phase] = asyncio.get_running_loop().create_future()

    def release(self, phase: int, reply: Any) -> None:
        self._held.pop(phase).set_result(reply)

    async def wait_for_call(self, phase: int, timeout: float = 1.0) -> None:
        await asyncio.wait_for(self._called[phase].wait(), timeout)

    def calls_for(self, phase: int) -> list[dict]:
        return [fields for p, _, fields in self.calls if p == phase]

    async def _call(self, phase: int, chat_id: str, fields: dict) -> WorkerResponse:
        self.calls.append((phase, chat_id, fields))
        self._called[phase].set()
        if phase in self._held:
            reply = await self._held[phase]
        elif phase in self.script:
            reply = self.script[phase]
        else:
            reply = GatewayConfigError(phase, f'N8N_WEBHOOK_PHASE{phase}_URL is not configured')
        if isinstance(reply, BaseException):
            raise reply
        return WorkerResponse(phase, reply, 200)

    async def call_phase1(self, chat_id, original_input):
        return await self._call(1, chat_id, {'originalInput': original_input})

    async def call_phase2(self, chat_id, refined_problem, subtopics, embedding):
        return await self._call(2, chat_id, {
            'refined_problem': refined_problem,
            'subtopics': subtopics,
            'refine_problem_embedding': embedding,
        })

    async def call_phase3(self, chat_id, pdf_links):
        return await self._call(3, chat_id, {'pdfLinks': pdf_links})

    async def call_phase4(self, chat_id, refined_problem):
        return await self._call(4, chat_id, {'refinedProblem': refined_problem})

    async def call_phase5(self, chat_id, refined_problem):
        return await self._call(5, chat_id, {'refinedProblem': refined_problem})

    async def call_phase6(self, chat_id, refined_problem):
        return await self._call(6, chat_id, {'refinedProblem': refined_problem})


def mock_settings(**overrides):
    """
    Return a MagicMock configured with default research parameters.
    Pass keyword args to override specific settings.
    """
    s = MagicMock()
    s.stale_phase_minutes = overrides.get('stale_phase_minutes', 20)
    s.stale_sweep_interval_minutes = overrides.get('stale_sweep_interval_minutes', 5)
    s.min_problem_words = overrides.get('min_problem_words', MIN_PROBLEM_WORDS)
    return s


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def gateway():
    return ScriptedGateway(full_script())


@pytest.fixture
def notifier():
    """Every notifier method is an AsyncMock, so calls can be asserted."""
    return AsyncMock()


@pytest.fixture
def orchestrator(store, gateway, notifier):
    return PhaseOrchestrator(store, gateway, notifier, settings=mock_settings())
