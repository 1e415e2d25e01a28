"""
Phase state machine — the only code that changes phase statuses.

Per phase:  pending → processing → completed | failed

Neither completed nor failed is terminal: a retry can move either back to
processing. The rules enforced here:

  - a phase may enter processing only if it is phase 1 or its predecessor is
    completed (retries included — no phase runs ahead of an incomplete one)
  - a processing phase older than the staleness threshold is treated as dead
    and is force-failed before it can be retried
  - re-running a phase sends every later phase back to pending, so a
    completed phase always sits on a completed predecessor
  - progress only moves forward, through fixed checkpoints

All functions mutate the ResearchSession passed in; persistence is the
caller's job.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from app.research.errors import PhasePreconditionError, ValidationError
from app.research.text_cleaner import count_words
from app.schemas.research import PHASE_COUNT, Analysis, PhaseRecord, ResearchSession

logger = logging.getLogger(__name__)

MIN_PROBLEM_WORDS = 30
STALE_AFTER = timedelta(minutes=20)
STALE_ERROR = "Process was interrupted or timed out"
STOPPED_ERROR = "Phase manually stopped by user"

# Progress when a phase starts / completes. Phases may skip values.
START_PROGRESS = {1: 10, 2: 15, 3: 40, 4: 60, 5: 75, 6: 90}
COMPLETE_PROGRESS = {1: 10, 2: 25, 3: 55, 4: 70, 5: 85, 6: 100}

# Phase 6 is best-effort: once it resolves either way the session is done.
FINAL_PHASE = PHASE_COUNT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Validation ───────────────────────────────────────────────────────────────

def validate_problem_statement(text: Any, min_words: int = MIN_PROBLEM_WORDS) -> str:
    """Return the trimmed statement or raise ValidationError."""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Problem statement is required and must be a string")
    words = count_words(text)
    if words < min_words:
        raise ValidationError(
            f"Problem statement must be at least {min_words} words. Current word count: {words}"
        )
    return text.strip()


def validate_phase_number(phase: Any) -> int:
    if isinstance(phase, bool) or not isinstance(phase, int) or not 1 <= phase <= PHASE_COUNT:
        raise ValidationError(f"Valid phase number (1-{PHASE_COUNT}) is required")
    return phase


# ── Queries ──────────────────────────────────────────────────────────────────

def can_start(session: ResearchSession, phase: int) -> bool:
    return phase == 1 or session.phase(phase - 1).status == "completed"


def is_stale(record: PhaseRecord, now: Optional[datetime] = None, threshold: timedelta = STALE_AFTER) -> bool:
    """A processing phase whose start is older than `threshold`."""
    if record.status != "processing":
        return False
    if record.started_at is None:
        return True
    now = now or utcnow()
    started = record.started_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return now - started > threshold


def stale_phases(
    session: ResearchSession,
    now: Optional[datetime] = None,
    threshold: timedelta = STALE_AFTER,
) -> list[int]:
    return [
        n for n in range(1, PHASE_COUNT + 1)
        if is_stale(session.phase(n), now, threshold)
    ]


def is_current_attempt(session: ResearchSession, phase: int, attempt: int) -> bool:
    """True while `attempt` is the live processing run of `phase`."""
    record = session.phase(phase)
    return record.status == "processing" and record.attempt == attempt


# ── Transitions ──────────────────────────────────────────────────────────────

def _raise_progress(session: ResearchSession, value: int) -> None:
    session.progress = max(session.progress, value)


def mark_processing(session: ResearchSession, phase: int, now: Optional[datetime] = None) -> PhaseRecord:
    """pending/failed/completed → processing. Returns the updated record."""
    if not can_start(session, phase):
        raise PhasePreconditionError(
            f"Phase {phase} cannot be started. Previous phase not completed."
        )
    record = session.phase(phase)
    if record.status == "processing":
        raise PhasePreconditionError(f"Phase {phase} is already processing")

    record.status = "processing"
    record.started_at = now or utcnow()
    record.completed_at = None
    record.error = None
    record.worker_call_sent = False
    record.attempt += 1

    session.current_phase = phase
    session.overall_status = "processing"
    _raise_progress(session, START_PROGRESS[phase])
    return record


def mark_completed(
    session: ResearchSession,
    phase: int,
    raw_response: Any = None,
    payload: Any = None,
    now: Optional[datetime] = None,
) -> PhaseRecord:
    record = session.phase(phase)
    record.status = "completed"
    record.completed_at = now or utcnow()
    record.error = None
    record.worker_call_sent = True
    record.raw_response = raw_response
    record.payload = payload

    _raise_progress(session, COMPLETE_PROGRESS[phase])
    if phase == FINAL_PHASE:
        session.overall_status = "completed"
    return record


def mark_failed(
    session: ResearchSession,
    phase: int,
    error: str,
    now: Optional[datetime] = None,
) -> PhaseRecord:
    record = session.phase(phase)
    record.status = "failed"
    record.completed_at = now or utcnow()
    record.error = error or "Unknown error"

    if phase == FINAL_PHASE:
        # Phases 1–5 succeeded; the final proposal is best-effort.
        session.overall_status = "completed"
        _raise_progress(session, COMPLETE_PROGRESS[FINAL_PHASE])
    else:
        session.overall_status = "failed"
    return record


def stop(session: ResearchSession, phase: int, reason: Optional[str] = None, now: Optional[datetime] = None) -> PhaseRecord:
    """Force a processing phase to failed. The in-flight worker call is not cancelled."""
    status = session.phase(phase).status
    if status != "processing":
        raise PhasePreconditionError(
            f"Phase {phase} is not currently processing (status: {status})"
        )
    return mark_failed(session, phase, reason or STOPPED_ERROR, now)


def expire_stale(
    session: ResearchSession,
    now: Optional[datetime] = None,
    threshold: timedelta = STALE_AFTER,
    skip: Iterable[int] = (),
) -> list[int]:
    """
    Force-fail every stale processing phase except those in `skip` (phases a
    live worker call is still serving). Returns the phases expired.
    """
    now = now or utcnow()
    expired = [n for n in stale_phases(session, now, threshold) if n not in skip]
    for phase in expired:
        mark_failed(session, phase, STALE_ERROR, now)
    return expired


# ── Retry support ────────────────────────────────────────────────────────────

def _fresh_record(previous: PhaseRecord) -> PhaseRecord:
    # The attempt counter survives so late continuations of the old run stay stale.
    return PhaseRecord(attempt=previous.attempt)


def reset_phase_data(session: ResearchSession, phase: int) -> None:
    """
    Destructive retry: drop everything `phase` produced (and what depends on
    it), then give the phase a fresh pending record.
    """
    if phase == 1:
        session.enhanced_input = None
        session.refined_problem = None
        session.subtopics = []
        session.embedding = None
    elif phase == 2:
        # Phase 3 enriches this list, so its results go with it.
        session.papers = []
    elif phase == 3:
        session.papers = [p.without_enrichment() for p in session.papers]
    elif phase == 4:
        session.analysis = Analysis()
    elif phase == 5:
        session.solutions = []
        session.solution_notes = ""
    elif phase == 6:
        session.final_solution = None

    session.set_phase(phase, _fresh_record(session.phase(phase)))


def invalidate_downstream(session: ResearchSession, phase: int) -> list[int]:
    """Send every phase after `phase` back to pending. Accumulated data is kept."""
    reset = []
    for n in range(phase + 1, PHASE_COUNT + 1):
        if session.phase(n).status != "pending":
            session.set_phase(n, _fresh_record(session.phase(n)))
            reset.append(n)
    return reset


def prepare_retry(
    session: ResearchSession,
    phase: int,
    delete_existing: bool,
    now: Optional[datetime] = None,
    threshold: timedelta = STALE_AFTER,
) -> PhaseRecord:
    """
    Apply the retry policy and leave `phase` in processing.

    Raises PhasePreconditionError when the predecessor is not completed or
    the phase is still legitimately in flight.
    """
    validate_phase_number(phase)
    now = now or utcnow()

    if not can_start(session, phase):
        raise PhasePreconditionError(
            f"Phase {phase} cannot be started. Previous phase not completed."
        )

    record = session.phase(phase)
    if record.status == "processing":
        if not is_stale(record, now, threshold):
            raise PhasePreconditionError(
                f"Phase {phase} is still processing. Stop it before retrying."
            )
        mark_failed(session, phase, STALE_ERROR, now)
        logger.info(f"[{session.chat_id}] Phase {phase} was stale; marked failed before retry")

    if delete_existing:
        reset_phase_data(session, phase)

    invalidated = invalidate_downstream(session, phase)
    if invalidated:
        logger.info(f"[{session.chat_id}] Phases {invalidated} reset to pending by retry of phase {phase}")

    return mark_processing(session, phase, now)
