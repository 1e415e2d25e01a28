"""
External worker gateway — one webhook POST per research phase.

Every phase talks to its own independently configured endpoint with its own
timeout budget. The HTTP client is blocking (requests) and runs in a worker
thread so the event loop stays free while a phase is held for minutes.

Phase 3 gets a dedicated requests.Session with a large keep-alive pool: PDF
batches can hold a socket for up to twenty minutes.

No retries here. A failed call surfaces as a GatewayError subclass and the
user decides whether to retry the phase.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter

from app.config import Settings, get_settings
from app.gateway.errors import (
    GatewayConfigError,
    GatewayHttpError,
    GatewayNoResponse,
    GatewayTimeout,
)

logger = logging.getLogger(__name__)

PHASE_ACTIONS = {
    1: "enhance_prompt",
    2: "process_research",
    3: "process_pdfs",
    4: "process_phase4",
    5: "process_phase5",
    6: "process_phase6",
}


class WorkerResponse:
    """Decoded worker reply. `data` keeps whatever shape the worker sent."""

    def __init__(self, phase: int, data: Any, status_code: int) -> None:
        self.phase = phase
        self.data = data
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"<WorkerResponse phase={self.phase} status={self.status_code}>"


class WorkerGateway:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

        self._pdf_session = requests.Session()
        self._pdf_session.headers.update({
            "Content-Type": "application/json",
            "Connection": "keep-alive",
        })
        adapter = HTTPAdapter(
            pool_connections=self._settings.phase3_pool_connections,
            pool_maxsize=self._settings.phase3_pool_maxsize,
        )
        self._pdf_session.mount("http://", adapter)
        self._pdf_session.mount("https://", adapter)

    # ── Core call ─────────────────────────────────────────────────────────

    def _post(self, phase: int, payload: dict) -> WorkerResponse:
        url = self._settings.webhook_url_for(phase)
        if not url:
            raise GatewayConfigError(
                phase, f"N8N_WEBHOOK_PHASE{phase}_URL is not configured"
            )

        read_timeout = self._settings.timeout_for(phase)
        http = self._pdf_session if phase == 3 else self._session

        try:
            resp = http.post(
                url,
                json=payload,
                timeout=(self._settings.worker_connect_timeout, read_timeout),
            )
        except requests.exceptions.Timeout as e:
            raise GatewayTimeout(
                phase,
                f"Phase {phase} webhook request timed out after {read_timeout:.0f}s",
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise GatewayNoResponse(
                phase,
                f"Phase {phase} webhook request failed - no response received ({e.__class__.__name__})",
            ) from e
        except requests.exceptions.RequestException as e:
            raise GatewayNoResponse(phase, f"Phase {phase} webhook error: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise GatewayHttpError(
                phase,
                f"Phase {phase} webhook failed with status {resp.status_code}: {resp.reason}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayHttpError(
                phase,
                f"Phase {phase} webhook returned a non-JSON body",
                status_code=resp.status_code,
            ) from e

        return WorkerResponse(phase, data, resp.status_code)

    async def call_phase(self, phase: int, chat_id: str, fields: dict) -> WorkerResponse:
        """POST `{chatId, phase, action, timestamp, **fields}` to the phase endpoint."""
        payload = {
            "chatId": chat_id,
            "phase": phase,
            "action": PHASE_ACTIONS[phase],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        logger.info(f"[{chat_id}] Phase {phase} → worker ({PHASE_ACTIONS[phase]})")
        response = await asyncio.to_thread(self._post, phase, payload)
        logger.info(f"[{chat_id}] Phase {phase} ← worker HTTP {response.status_code}")
        return response

    # ── Per-phase helpers ──────────────────────────────────────────────────

    async def call_phase1(self, chat_id: str, original_input: str) -> WorkerResponse:
        return await self.call_phase(1, chat_id, {"originalInput": original_input})

    async def call_phase2(
        self,
        chat_id: str,
        refined_problem: Optional[str],
        subtopics: list[dict],
        embedding: Optional[list[float]],
    ) -> WorkerResponse:
        return await self.call_phase(2, chat_id, {
            "refined_problem": refined_problem,
            "subtopics": subtopics,
            "refine_problem_embedding": embedding,
        })

    async def call_phase3(self, chat_id: str, pdf_links: list[str]) -> WorkerResponse:
        return await self.call_phase(3, chat_id, {"pdfLinks": pdf_links})

    async def call_phase4(self, chat_id: str, refined_problem: str) -> WorkerResponse:
        return await self.call_phase(4, chat_id, {"refinedProblem": refined_problem})

    async def call_phase5(self, chat_id: str, refined_problem: str) -> WorkerResponse:
        return await self.call_phase(5, chat_id, {"refinedProblem": refined_problem})

    async def call_phase6(self, chat_id: str, refined_problem: str) -> WorkerResponse:
        return await self.call_phase(6, chat_id, {"refinedProblem": refined_problem})

    # ── Lifecycle / health ─────────────────────────────────────────────────

    def ping(self) -> dict[str, bool]:
        """Which phase endpoints are configured. Does not call the worker."""
        return self._settings.configured_webhooks()

    def close(self) -> None:
        self._session.close()
        self._pdf_session.close()
