"""
reinforcement_sessions.py - Lifecycle of remediation sessions

Provides:
- on_evidence_recorded(event) - post-commit ledger hook: cancels stale pending
  sessions and auto-creates a new one for any weakness found by gameplay
- create_automatic_session(student_id, difficulty_id, grade)
- assign_session(...) - manual teacher assignment with explicit questions
- submit_answers(session_id, answers, finish) - Pendiente -> Completada
- cancel_session(session_id) - Pendiente -> Cancelada
- sweep_overdue_sessions(now) - Pendiente -> No_realizada | Incompleta
- sweep_forever(interval) - background loop started by the app lifespan

State machine: every session starts Pendiente; the other four states are
terminal. Each transition holds the per-session lock and only moves a row
still in Pendiente, so the loser of a race gets SessionAlreadyTerminal.
Completion also holds the (student, difficulty) lock and writes the session
result and its ledger event in one transaction. Overdue sessions cannot be
cancelled.

The gameplay hook runs under the (student, difficulty) lock alone and acts
only while its event is still the latest for the key; an older event that
reaches the hook late is ignored.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config import settings
from app.db import reinforcement_store as store
from app.db.database import open_db, close_standalone_db
from app.models.enums import (
    EvidenceSource,
    Grade,
    GRADE_ORDINAL,
    SessionOrigin,
    SessionState,
    TERMINAL_STATES,
    WEAKNESS_GRADES,
)
from app.services import difficulty_ledger as ledger
from app.services import notifications
from app.services.content_selector import cascade_for, select_questions
from app.services.effectiveness import classify
from app.services.errors import (
    ConcurrencyConflict,
    InvalidAssignment,
    NotFound,
    PendingSessionExists,
    SessionAlreadyTerminal,
    SessionOverdue,
)

logger = logging.getLogger(__name__)

_session_locks = ledger.KeyedLock()


def session_lock(session_id: int):
    return _session_locks.hold(session_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════════════
# CREATION
# ══════════════════════════════════════════════════════════════════════════════

async def on_evidence_recorded(db, event: ledger.EvidenceRecorded) -> None:
    """Ledger listener. Only gameplay evidence schedules sessions."""
    if event.source != EvidenceSource.GAMEPLAY:
        return

    # Held for the whole reaction; the session lock is never taken inside it
    async with ledger.difficulty_lock(event.student_id, event.difficulty_id):
        record = await store.get_record(db, event.student_id, event.difficulty_id)
        if record is None or record["last_event_id"] != event.event_id:
            logger.debug(
                "Ledger event %s superseded before scheduling; skipping", event.event_id
            )
            return

        await _retire_stale_pending(db, event)

        if event.new_grade not in WEAKNESS_GRADES:
            await _resolve_followups(db, event.student_id, event.difficulty_id)
            return

        await create_automatic_session(db, event.student_id, event.difficulty_id, event.new_grade)


async def _retire_stale_pending(db, event: ledger.EvidenceRecorded) -> None:
    """Close a pending session whose assigned grade no longer fits the student.

    A pending session is stale when gameplay shows the student improved past
    its grade, or newly regressed to High. A stale session already past its
    due date is expired as the sweep would, not cancelled.
    """
    pending = await store.get_pending_session(db, event.student_id, event.difficulty_id)
    if not pending:
        return

    assigned = Grade(pending["assigned_grade"])
    improved = GRADE_ORDINAL[event.new_grade] < GRADE_ORDINAL[assigned]
    regressed_to_high = event.new_grade == Grade.HIGH and assigned != Grade.HIGH
    if not (improved or regressed_to_high):
        return

    if store.parse_ts(pending["due_at"]) <= _utcnow():
        try:
            state = await _expire_pending(db, pending["id"])
        except SessionAlreadyTerminal:
            return
        logger.info("Stale session %s was overdue; expired as %s", pending["id"], state.value)
        return

    # Compare-and-set on the Pendiente state; a concurrent close wins
    try:
        moved = await store.close_pending_session(
            db, pending["id"], SessionState.CANCELADA.value, store.now_iso()
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if moved:
        logger.info(
            "Cancelled stale session %s (assigned %s, student now %s)",
            pending["id"], assigned.value, event.new_grade.value,
        )


async def _resolve_followups(db, student_id: int, difficulty_id: int) -> None:
    try:
        await store.resolve_followups(db, student_id, difficulty_id, store.now_iso())
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def _raise_followup(db, student_id: int, difficulty_id: int, grade: Grade) -> None:
    if await store.get_open_followup(db, student_id, difficulty_id):
        return
    reason = f"No active system questions for grade {grade.value} or below"
    try:
        await store.insert_followup(
            db, student_id, difficulty_id, grade.value, reason, store.now_iso()
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.warning(
        "No session created for student %s / difficulty %s: %s; flagged for teacher follow-up",
        student_id, difficulty_id, reason,
    )


async def create_automatic_session(
    db,
    student_id: int,
    difficulty_id: int,
    grade: Grade,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Create a System session from the cascade for `grade`.

    Returns None without creating anything when a session is already pending
    for the key, or when no question is eligible (a follow-up is raised).
    """
    grade = Grade(grade)
    cascade_for(grade)

    if await store.get_pending_session(db, student_id, difficulty_id):
        logger.debug(
            "Session already pending for student %s / difficulty %s; skipping",
            student_id, difficulty_id,
        )
        return None

    questions = await select_questions(db, difficulty_id, grade)
    if not questions:
        await _raise_followup(db, student_id, difficulty_id, grade)
        return None

    now = now or _utcnow()
    try:
        session_id = await store.insert_session(
            db,
            student_id=student_id,
            difficulty_id=difficulty_id,
            assigned_grade=grade.value,
            origin=SessionOrigin.SYSTEM.value,
            teacher_id=None,
            due_at=store.now_iso(now + timedelta(days=settings.session_due_days)),
            time_limit_min=settings.session_time_limit_min,
            created_at=store.now_iso(now),
        )
        if session_id is None:
            await db.rollback()
            logger.debug(
                "Lost pending-session race for student %s / difficulty %s",
                student_id, difficulty_id,
            )
            return None
        await store.insert_session_questions(db, session_id, [q["id"] for q in questions])
        await store.resolve_followups(db, student_id, difficulty_id, store.now_iso(now))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Auto-created session %s for student %s / difficulty %s at grade %s (%d questions)",
        session_id, student_id, difficulty_id, grade.value, len(questions),
    )
    session = await store.get_session(db, session_id)
    await _notify_created(db, session)
    return session


async def assign_session(
    db,
    teacher_id: int,
    student_id: int,
    difficulty_id: int,
    question_ids: Sequence[int],
    due_at: datetime,
    time_limit_min: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create a Teacher session from explicitly chosen questions.

    Manual sessions skip the cascade: any active question of the difficulty
    may be used, with at most max_teacher_questions teacher-authored ones.
    """
    student = await store.get_user(db, student_id)
    if not student or student["role"] != "student":
        raise NotFound(f"Student {student_id} not found")
    if not await store.get_difficulty(db, difficulty_id):
        raise NotFound(f"Difficulty {difficulty_id} not found")

    ordered_ids = list(dict.fromkeys(question_ids))
    if not ordered_ids:
        raise InvalidAssignment("A session needs at least one question")

    questions = await store.get_active_questions_by_ids(db, ordered_ids)
    found = {q["id"]: q for q in questions}
    missing = [qid for qid in ordered_ids if qid not in found]
    if missing:
        raise InvalidAssignment(f"Questions not found or deleted: {missing}")
    foreign = [qid for qid in ordered_ids if found[qid]["difficulty_id"] != difficulty_id]
    if foreign:
        raise InvalidAssignment(f"Questions {foreign} belong to another difficulty")
    authored = sum(1 for q in questions if q["author_id"] is not None)
    if authored > settings.max_teacher_questions:
        raise InvalidAssignment(
            f"At most {settings.max_teacher_questions} teacher-authored questions per session"
        )

    now = now or _utcnow()
    due = store.parse_ts(due_at)
    if due <= now:
        raise InvalidAssignment("Due date must be in the future")
    if due > now + timedelta(days=settings.manual_session_max_days):
        raise InvalidAssignment(
            f"Due date cannot be more than {settings.manual_session_max_days} days ahead"
        )

    if await store.get_pending_session(db, student_id, difficulty_id):
        raise PendingSessionExists(
            f"Student {student_id} already has a pending session for difficulty {difficulty_id}"
        )

    grade = await ledger.get_current_grade(db, student_id, difficulty_id) or Grade.NONE
    try:
        session_id = await store.insert_session(
            db,
            student_id=student_id,
            difficulty_id=difficulty_id,
            assigned_grade=grade.value,
            origin=SessionOrigin.TEACHER.value,
            teacher_id=teacher_id,
            due_at=store.now_iso(due),
            time_limit_min=time_limit_min or settings.session_time_limit_min,
            created_at=store.now_iso(now),
        )
        if session_id is None:
            raise PendingSessionExists(
                f"Student {student_id} already has a pending session for difficulty {difficulty_id}"
            )
        await store.insert_session_questions(db, session_id, ordered_ids)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Teacher %s assigned session %s to student %s / difficulty %s (%d questions)",
        teacher_id, session_id, student_id, difficulty_id, len(ordered_ids),
    )
    session = await store.get_session(db, session_id)
    await _notify_created(db, session, student)
    return session


async def _notify_created(db, session: Dict[str, Any], student: Optional[Dict[str, Any]] = None) -> None:
    student = student or await store.get_user(db, session["student_id"])
    if not student:
        logger.warning("Session %s has no student row; notification skipped", session["id"])
        return
    await notifications.get_notifier().session_created(
        notifications.build_notice(session, student)
    )


# ══════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ══════════════════════════════════════════════════════════════════════════════

async def _load_pending(db, session_id: int) -> Dict[str, Any]:
    session = await store.get_session(db, session_id)
    if not session:
        raise NotFound(f"Session {session_id} not found")
    if SessionState(session["state"]) in TERMINAL_STATES:
        raise SessionAlreadyTerminal(f"Session {session_id} is already {session['state']}")
    return session


async def _close(db, session_id: int, state: SessionState, cancelled_by: Optional[int] = None) -> None:
    moved = await store.close_pending_session(
        db, session_id, state.value, store.now_iso(), cancelled_by
    )
    if moved == 0:
        raise SessionAlreadyTerminal(f"Session {session_id} is no longer pending")


def _score(questions: List[Dict[str, Any]], answers: List[Dict[str, Any]]) -> tuple[Dict[str, Any], float]:
    """Counts, stored percentage and tier, plus the exact percentage for grading.

    The tier comes from the exact value; only the stored percentage is rounded.
    """
    by_question = {a["question_id"]: a for a in answers}
    total = len(questions)
    answered = sum(1 for q in questions if q["id"] in by_question)
    correct = sum(1 for q in questions if by_question.get(q["id"], {}).get("is_correct"))
    exact = correct * 100 / total if total else 0.0
    score = {
        "total_questions": total,
        "answered_count": answered,
        "correct_count": correct,
        "incorrect_count": total - correct,
        "percentage": round(exact, 2),
        "tier": classify(exact).value,
    }
    return score, exact


@retry(
    stop=stop_after_attempt(settings.concurrency_retry_attempts),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(ConcurrencyConflict),
    before_sleep=lambda retry_state: logger.warning(
        "Session submission conflict (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)
async def _apply_submission(db, session_id: int, answers: Sequence[Dict[str, Any]], finish: bool):
    """Write answers and, when the session is done, its result and ledger event."""
    try:
        session = await _load_pending(db, session_id)
        questions = await store.get_session_questions(db, session_id)
        options_by_question = {
            q["id"]: {o["id"]: bool(o["is_correct"]) for o in q["options"]} for q in questions
        }

        now = store.now_iso()
        for answer in answers:
            question_id = answer["question_id"]
            if question_id not in options_by_question:
                continue
            options = options_by_question[question_id]
            option_id = answer.get("option_id")
            # Unknown ids and options of other questions are stored as a miss
            if option_id not in options:
                option_id = None
            await store.upsert_answer(
                db, session_id, question_id, option_id,
                options.get(option_id, False), now,
            )
        await store.increment_attempts(db, session_id)

        stored = await store.get_answers(db, session_id)
        if len(stored) < len(questions) and not finish:
            await db.commit()
            return session, None, None

        score, exact = _score(questions, stored)
        await _close(db, session_id, SessionState.COMPLETADA)
        event = await ledger.append_evidence(
            db,
            session["student_id"],
            session["difficulty_id"],
            EvidenceSource.REINFORCEMENT_SESSION,
            exact,
            session_id=session_id,
        )
        result = {
            **score,
            "previous_grade": event.previous_grade.value,
            "new_grade": event.new_grade.value,
            "attempts": session["attempts"] + 1,
            "completed_at": now,
        }
        await store.insert_result(db, session_id, result)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return session, result, event


async def submit_answers(
    db,
    session_id: int,
    answers: Sequence[Dict[str, Any]],
    finish: bool = False,
) -> Dict[str, Any]:
    """Record a student's answers; completes the session when all are in or on finish.

    Each answer is {"question_id", "option_id"}. Re-answering a question
    overwrites the earlier choice. With finish=True unanswered questions
    count as incorrect.
    """
    async with session_lock(session_id):
        session = await store.get_session(db, session_id)
        if not session:
            raise NotFound(f"Session {session_id} not found")
        async with ledger.difficulty_lock(session["student_id"], session["difficulty_id"]):
            session, result, event = await _apply_submission(db, session_id, answers, finish)

    if result is None:
        logger.debug("Session %s: partial submission stored", session_id)
    else:
        logger.info(
            "Session %s completed: %.2f%% (%s), grade %s -> %s",
            session_id, result["percentage"], result["tier"],
            result["previous_grade"], result["new_grade"],
        )
        await ledger.publish(db, event)

    return await get_session_detail(db, session_id, reveal_answers=result is not None)


async def cancel_session(
    db,
    session_id: int,
    cancelled_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Withdraw a pending session. No ledger event is written.

    A session past its due date can no longer be cancelled; the sweep
    records it as not done or incomplete.
    """
    now = now or _utcnow()
    async with session_lock(session_id):
        try:
            session = await _load_pending(db, session_id)
            if store.parse_ts(session["due_at"]) <= store.parse_ts(store.now_iso(now)):
                raise SessionOverdue(
                    f"Session {session_id} is past its due date and cannot be cancelled"
                )
            await _close(db, session_id, SessionState.CANCELADA, cancelled_by)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("Session %s cancelled by %s", session_id, cancelled_by)
    return await store.get_session(db, session_id)


async def _expire_pending(db, session_id: int) -> SessionState:
    try:
        await _load_pending(db, session_id)
        answered = await store.count_answers(db, session_id)
        state = SessionState.INCOMPLETA if answered else SessionState.NO_REALIZADA
        await _close(db, session_id, state)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return state


async def _expire(db, session_id: int) -> SessionState:
    async with session_lock(session_id):
        return await _expire_pending(db, session_id)


async def sweep_overdue_sessions(db, now: Optional[datetime] = None) -> Dict[str, int]:
    """Close every pending session whose due date has passed.

    Rescans from scratch on each call. Sessions closed concurrently by a
    submission or a cancel are skipped.
    """
    overdue = await store.list_overdue_pending(db, store.now_iso(now or _utcnow()))
    counts = {SessionState.NO_REALIZADA.value: 0, SessionState.INCOMPLETA.value: 0}

    for session in overdue:
        try:
            state = await _expire(db, session["id"])
        except SessionAlreadyTerminal:
            logger.debug("Sweep skipped session %s: closed concurrently", session["id"])
            continue
        counts[state.value] += 1
        logger.info("Session %s expired as %s", session["id"], state.value)

    if overdue:
        logger.info("Due-date sweep: %s", counts)
    return counts


async def sweep_forever(interval_seconds: int) -> None:
    """Run the due-date sweep every `interval_seconds` until cancelled."""
    logger.info("Due-date sweep running every %ss", interval_seconds)
    while True:
        try:
            db = await open_db()
            try:
                await sweep_overdue_sessions(db)
            finally:
                await close_standalone_db(db)
        except Exception:
            logger.exception("Due-date sweep tick failed")
        await asyncio.sleep(interval_seconds)


# ══════════════════════════════════════════════════════════════════════════════
# READS
# ══════════════════════════════════════════════════════════════════════════════

async def get_session_detail(db, session_id: int, reveal_answers: bool = True) -> Dict[str, Any]:
    """Session with questions, stored answers and result.

    With reveal_answers=False the correctness flags of options are removed.
    """
    session = await store.get_session(db, session_id)
    if not session:
        raise NotFound(f"Session {session_id} not found")

    questions = await store.get_session_questions(db, session_id)
    if not reveal_answers:
        for question in questions:
            for option in question["options"]:
                option.pop("is_correct", None)

    answers = await store.get_answers(db, session_id)
    if not reveal_answers:
        for answer in answers:
            answer.pop("is_correct", None)

    session["questions"] = questions
    session["answers"] = answers
    session["result"] = await store.get_result(db, session_id)
    return session


async def list_pending_for_student(db, student_id: int) -> List[Dict[str, Any]]:
    sessions = await store.list_sessions(
        db, student_id=student_id, state=SessionState.PENDIENTE.value, limit=100
    )
    for session in sessions:
        session["question_count"] = len(await store.get_session_questions(db, session["id"]))
    return sessions


async def list_sessions(db, **filters) -> List[Dict[str, Any]]:
    return await store.list_sessions(db, **filters)


async def list_followups(db, difficulty_id: Optional[int] = None) -> List[Dict[str, Any]]:
    return await store.list_open_followups(db, difficulty_id)


def install() -> None:
    """Register the auto-scheduling hook with the ledger."""
    ledger.subscribe(on_evidence_recorded)


def uninstall() -> None:
    ledger.unsubscribe(on_evidence_recorded)
