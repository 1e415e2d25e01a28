"""
Phase orchestrator — drives a research session through phases 1 → 6.

Flow per phase:
  1. Caller (initiate / retry / previous phase) puts the phase in processing
     and saves.
  2. A background task builds the phase request from the saved session and
     calls the worker gateway. The caller has already returned.
  3. The continuation reloads the session, checks that the phase is still
     running the same attempt, folds the normalized response in, marks the
     phase completed and, in the same write, starts the next phase (or
     records why it cannot start).
  4. Gateway errors and anything unexpected become the phase's `error`.
     Nothing escapes the background task.

Stopping a phase does not cancel the outbound call; its late result is
dropped by the attempt check in step 3.
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

from app.config import Settings, get_settings
from app.gateway.errors import GatewayError
from app.research.errors import (
    ConcurrentModificationError,
    MalformedResponseError,
    SessionNotFoundError,
)
from app.research.merge import (
    merge_analysis,
    merge_enriched_papers,
    merge_papers,
    merge_solutions,
)
from app.research.normalizers import (
    enrich_papers,
    normalize_phase1,
    normalize_phase2,
    normalize_phase3,
    normalize_phase4,
    normalize_phase5,
    normalize_phase6,
)
from app.research.state_machine import (
    FINAL_PHASE,
    STOPPED_ERROR,
    expire_stale,
    is_current_attempt,
    mark_completed,
    mark_failed,
    mark_processing,
    prepare_retry,
    stop,
    validate_phase_number,
)
from app.schemas.research import ResearchSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_SUBTOPICS_ERROR = "Phase 1 did not generate any subtopics"
NO_PDF_LINKS_ERROR = "Phase 2 returned no papers with PDF links"
MISSING_PROBLEM_ERROR = "Refined problem statement is missing"


# ── Pure helpers ─────────────────────────────────────────────────────────────

def missing_input(session: ResearchSession, phase: int) -> Optional[str]:
    """Why `phase` cannot be sent to the worker, or None when its inputs exist."""
    if phase == 2 and not session.subtopics:
        return NO_SUBTOPICS_ERROR
    if phase == 3 and not session.pdf_links():
        return NO_PDF_LINKS_ERROR
    if phase >= 4 and not session.refined_problem:
        return MISSING_PROBLEM_ERROR
    return None


def apply_phase_result(session: ResearchSession, phase: int, data: Any, merge: bool = False) -> None:
    """
    Normalize a worker reply into the session and mark `phase` completed.

    merge=True folds the result into what the session already holds (additive
    retry); otherwise the phase's output replaces it. Phases 1 and 6 always
    replace. Raises MalformedResponseError when the reply has nothing usable.
    """
    if phase == 1:
        out = normalize_phase1(data)
        session.refined_problem = out.refined_problem
        session.enhanced_input = out.enhanced_input
        session.subtopics = out.subtopics
        session.embedding = out.embedding
        payload = {
            "refined_problem": out.refined_problem,
            "subtopics": [s.model_dump(mode="json") for s in out.subtopics],
            "embedding_dimensions": len(out.embedding or []),
        }

    elif phase == 2:
        papers = normalize_phase2(data)
        session.papers = merge_papers(session.papers, papers) if merge else papers
        payload = {"papers": [p.model_dump(mode="json") for p in papers]}

    elif phase == 3:
        analyzed = normalize_phase3(data)
        enriched = enrich_papers(session.papers, analyzed)
        logger.info(
            f"[{session.chat_id}] Phase 3: {len(enriched)}/{len(analyzed)} analyses matched an enriched paper"
        )
        session.papers = merge_enriched_papers(session.papers, enriched) if merge else enriched
        payload = {"papers": [p.model_dump(mode="json") for p in enriched]}

    elif phase == 4:
        analysis = normalize_phase4(data)
        if analysis is None:
            raise MalformedResponseError("Phase 4 response did not contain an analysis")
        session.analysis = merge_analysis(session.analysis, analysis) if merge else analysis
        payload = analysis.model_dump(mode="json")

    elif phase == 5:
        solutions, notes = normalize_phase5(data)
        session.solutions = merge_solutions(session.solutions, solutions) if merge else solutions
        session.solution_notes = notes or (session.solution_notes if merge else "")
        payload = {
            "solutions": [s.model_dump(mode="json") for s in solutions],
            "notes": notes,
        }

    else:
        final = normalize_phase6(data)
        if final is None:
            raise MalformedResponseError("Phase 6 response did not contain a structured solution")
        session.final_solution = final
        payload = final.model_dump(mode="json")

    mark_completed(session, phase, raw_response=data, payload=payload)


# ── Orchestrator ─────────────────────────────────────────────────────────────

class PhaseOrchestrator:
    def __init__(
        self,
        store,
        gateway,
        notifier=None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._stale_after = timedelta(minutes=settings.stale_phase_minutes)
        # One lock per session serializes read-modify-write inside this process.
        # Entries live only while someone holds or waits on them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._tasks: dict[asyncio.Task, tuple[str, int]] = {}

    # ── Commands ──────────────────────────────────────────────────────────

    async def initiate(
        self,
        problem_statement: Any,
        user_email: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ResearchSession:
        """Create a session, start phase 1 and return without waiting for it."""
        session = self._store.new_session(problem_statement, user_email, metadata)
        record = mark_processing(session, 1)
        session = await self._store.insert(session)
        logger.info(f"[{session.chat_id}] Research initiated, phase 1 dispatched")
        self._dispatch(session, 1, record.attempt, merge=False)
        return session

    async def retry_phase(self, chat_id: str, phase: int, delete_existing: bool = False) -> ResearchSession:
        validate_phase_number(phase)
        async with self._session_lock(chat_id):
            session = await self._store.get(chat_id)
            record = prepare_retry(session, phase, delete_existing, threshold=self._stale_after)
            session = await self._store.save(session)

        mode = "destructive" if delete_existing else "additive"
        logger.info(f"[{chat_id}] Phase {phase} retry ({mode}), attempt {record.attempt}")
        self._dispatch(session, phase, record.attempt, merge=not delete_existing)
        return session

    async def stop_phase(self, chat_id: str, phase: int, reason: Optional[str] = None) -> ResearchSession:
        validate_phase_number(phase)
        async with self._session_lock(chat_id):
            session = await self._store.get(chat_id)
            stop(session, phase, reason or STOPPED_ERROR)
            session = await self._store.save(session)
        logger.info(f"[{chat_id}] Phase {phase} stopped: {reason or STOPPED_ERROR}")
        return session

    async def delete_session(self, chat_id: str) -> None:
        async with self._session_lock(chat_id):
            await self._store.delete(chat_id)

    async def expire_stale_phases(self, now: Optional[datetime] = None) -> int:
        """
        Force-fail processing phases past the staleness threshold. Phases this
        process is still waiting on a worker for are left alone; the gateway
        timeout ends those. Returns how many phases were expired.
        """
        expired_total = 0
        live = self.in_flight()
        for candidate in await self._store.list_processing():
            chat_id = candidate.chat_id
            async with self._session_lock(chat_id):
                try:
                    session = await self._store.get(chat_id)
                except SessionNotFoundError:
                    continue
                expired = expire_stale(session, now, self._stale_after, skip=live.get(chat_id, ()))
                if not expired:
                    continue
                try:
                    await self._store.save(session)
                except (ConcurrentModificationError, SessionNotFoundError) as e:
                    logger.warning(f"[{chat_id}] Stale-phase expiry skipped: {e}")
                    continue

            expired_total += len(expired)
            for phase in expired:
                logger.warning(f"[{chat_id}] Phase {phase} expired as stale")
                await self._notify_failure(chat_id, phase, session.phase(phase).error or "")
            if session.overall_status == "completed":
                await self._notify_completed(session)
        return expired_total

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_session(self, chat_id: str) -> ResearchSession:
        return await self._store.get(chat_id)

    async def list_sessions(
        self,
        user_email: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[ResearchSession], int]:
        return await self._store.list_sessions(user_email=user_email, page=page, page_size=page_size)

    # ── Continuations ─────────────────────────────────────────────────────

    async def complete_phase(
        self,
        chat_id: str,
        phase: int,
        attempt: int,
        data: Any,
        merge: bool = False,
    ) -> Optional[ResearchSession]:
        """
        Apply a worker result and chain into the next phase.
        Returns the saved session, or None when the result was discarded.
        """
        def apply(session: ResearchSession) -> Optional[int]:
            apply_phase_result(session, phase, data, merge)
            return self._advance(session, phase)

        outcome = await self._apply(chat_id, phase, attempt, apply)
        if outcome is None:
            return None
        session, next_attempt = outcome
        logger.info(f"[{chat_id}] Phase {phase} completed (progress {session.progress}%)")

        next_phase = phase + 1
        if next_attempt is not None:
            self._dispatch(session, next_phase, next_attempt, merge=False)
        elif next_phase <= FINAL_PHASE and session.phase(next_phase).status == "failed":
            await self._notify_failure(chat_id, next_phase, session.phase(next_phase).error or "")

        if session.overall_status == "completed":
            await self._notify_completed(session)
        return session

    async def fail_phase(self, chat_id: str, phase: int, attempt: int, error: str) -> Optional[ResearchSession]:
        outcome = await self._apply(chat_id, phase, attempt, lambda s: mark_failed(s, phase, error))
        if outcome is None:
            return None
        session, _ = outcome
        logger.warning(f"[{chat_id}] Phase {phase} failed: {error}")
        await self._notify_failure(chat_id, phase, error)
        if session.overall_status == "completed":
            await self._notify_completed(session)
        return session

    # ── Diagnostics ───────────────────────────────────────────────────────

    def in_flight(self) -> dict[str, list[int]]:
        """chat_id → phases with a live background task in this process."""
        running: dict[str, list[int]] = {}
        for task, (chat_id, phase) in self._tasks.items():
            if not task.done():
                running.setdefault(chat_id, []).append(phase)
        return {chat_id: sorted(phases) for chat_id, phases in running.items()}

    async def drain(self) -> None:
        """Wait for every background phase, including ones chained meanwhile."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """
        Give in-flight phases `timeout` seconds, then cancel the rest. Phases
        cut off here stay processing and are expired later by the sweeper.
        """
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        logger.info(f"Waiting up to {timeout:.0f}s for {len(pending)} in-flight phase(s)")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} in-flight phase(s) at shutdown")

    # ── Internals ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _session_lock(self, chat_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        self._lock_users[chat_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                del self._lock_users[chat_id]
                del self._locks[chat_id]

    def _advance(self, session: ResearchSession, phase: int) -> Optional[int]:
        """
        Start the phase after `phase`, or mark it failed when its inputs are
        missing. Returns the new attempt to dispatch, if any.
        """
        next_phase = phase + 1
        if next_phase > FINAL_PHASE:
            return None
        reason = missing_input(session, next_phase)
        if reason:
            session.current_phase = next_phase
            mark_failed(session, next_phase, reason)
            logger.warning(f"[{session.chat_id}] Phase {next_phase} not started: {reason}")
            return None
        return mark_processing(session, next_phase).attempt

    async def _apply(
        self,
        chat_id: str,
        phase: int,
        attempt: int,
        mutate: Callable[[ResearchSession], T],
    ) -> Optional[tuple[ResearchSession, T]]:
        """
        Reload, check the attempt is still live, mutate and save. A version
        conflict triggers one reload-and-reapply before the write is given up.
        """
        async with self._session_lock(chat_id):
            for try_number in (1, 2):
                try:
                    session = await self._store.get(chat_id)
                except SessionNotFoundError:
                    logger.info(f"[{chat_id}] Phase {phase} result discarded: session was deleted")
                    return None

                if not is_current_attempt(session, phase, attempt):
                    record = session.phase(phase)
                    logger.info(
                        f"[{chat_id}] Phase {phase} attempt {attempt} superseded "
                        f"(now {record.status}, attempt {record.attempt}); result discarded"
                    )
                    return None

                value = mutate(session)
                try:
                    return await self._store.save(session), value
                except SessionNotFoundError:
                    logger.info(f"[{chat_id}] Phase {phase} result discarded: session was deleted")
                    return None
                except ConcurrentModificationError:
                    if try_number == 1:
                        logger.warning(f"[{chat_id}] Phase {phase} save conflicted, reloading")
                        continue
                    logger.error(f"[{chat_id}] Phase {phase} save conflicted twice; update dropped")
        return None

    def _dispatch(self, session: ResearchSession, phase: int, attempt: int, merge: bool) -> None:
        task = asyncio.create_task(
            self._run_phase(session, phase, attempt, merge),
            name=f"research-{session.chat_id}-phase{phase}",
        )
        self._tasks[task] = (session.chat_id, phase)
        task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)

    async def _run_phase(self, session: ResearchSession, phase: int, attempt: int, merge: bool) -> None:
        """Background boundary: logs whatever escapes, never raises."""
        chat_id = session.chat_id
        try:
            await self._execute_phase(session, phase, attempt, merge)
        except Exception as e:
            logger.error(f"[{chat_id}] Phase {phase} background task crashed: {e}", exc_info=True)
            if self._notifier:
                await self._notifier.system_error(
                    f"Phase {phase} background task crashed: {e}", context=f"chat_id={chat_id}"
                )

    async def _execute_phase(self, session: ResearchSession, phase: int, attempt: int, merge: bool) -> None:
        chat_id = session.chat_id

        reason = missing_input(session, phase)
        if reason:
            await self.fail_phase(chat_id, phase, attempt, reason)
            return

        try:
            response = await self._call_worker(session, phase)
        except GatewayError as e:
            await self.fail_phase(chat_id, phase, attempt, str(e))
            return
        except Exception as e:
            logger.error(f"[{chat_id}] Phase {phase} worker call raised unexpectedly: {e}", exc_info=True)
            await self.fail_phase(chat_id, phase, attempt, f"Unexpected error calling worker: {e}")
            return

        try:
            await self.complete_phase(chat_id, phase, attempt, response.data, merge)
        except MalformedResponseError as e:
            await self.fail_phase(chat_id, phase, attempt, str(e))
        except Exception as e:
            logger.error(f"[{chat_id}] Phase {phase} response could not be applied: {e}", exc_info=True)
            await self.fail_phase(chat_id, phase, attempt, f"Failed to process phase {phase} response: {e}")

    async def _call_worker(self, session: ResearchSession, phase: int):
        chat_id = session.chat_id
        if phase == 1:
            return await self._gateway.call_phase1(chat_id, session.original_input)
        if phase == 2:
            return await self._gateway.call_phase2(
                chat_id,
                session.refined_problem,
                [s.model_dump(mode="json") for s in session.subtopics],
                session.embedding,
            )
        if phase == 3:
            return await self._gateway.call_phase3(chat_id, session.pdf_links())
        call = {
            4: self._gateway.call_phase4,
            5: self._gateway.call_phase5,
            6: self._gateway.call_phase6,
        }[phase]
        return await call(chat_id, session.refined_problem)

    async def _notify_failure(self, chat_id: str, phase: int, error: str) -> None:
        if self._notifier:
            await self._notifier.phase_failed(chat_id, phase, error)

    async def _notify_completed(self, session: ResearchSession) -> None:
        if self._notifier:
            await self._notifier.session_completed(
                session.chat_id,
                paper_count=len(session.papers),
                solution_count=len(session.solutions),
                final_solution_ready=session.final_solution is not None,
            )
