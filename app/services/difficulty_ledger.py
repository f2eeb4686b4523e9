"""
difficulty_ledger.py - Append-only grade history and the current-grade projection

Provides:
- record_evidence(student_id, difficulty_id, source, outcome) - append one
  ledger event and move the difficulty_records projection to its grade
- get_current_grade(student_id, difficulty_id) - read model used everywhere else
- get_history / get_records_as_of - reporting read models
- subscribe(listener) - post-commit hook receiving EvidenceRecorded

The ledger is the source of truth. The previous grade of every new event is
the new grade of the latest event for the same key, and the projection row is
always overwritten with the grade of the event just appended. Writers for one
(student, difficulty) are serialized by an in-process keyed lock; across
processes the projection's version column turns lost races into
ConcurrencyConflict, retried a bounded number of times.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Union

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config import settings
from app.db import reinforcement_store as store
from app.models.enums import EvidenceSource, Grade, GRADE_ORDINAL
from app.services.effectiveness import resulting_grade
from app.services.errors import ConcurrencyConflict, InvalidGrade

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self):
        return len(self._locks)


_key_locks = KeyedLock()


def difficulty_lock(student_id: int, difficulty_id: int):
    """Serialize every grade write for one (student, difficulty)."""
    return _key_locks.hold((student_id, difficulty_id))


# ── Grade arithmetic ──────────────────────────────────────────────────

def ordinal(grade: Union[Grade, str]) -> int:
    return GRADE_ORDINAL[Grade(grade)]


def is_improvement(previous: Union[Grade, str], new: Union[Grade, str]) -> bool:
    return ordinal(new) < ordinal(previous)


def trend(previous: Union[Grade, str], new: Union[Grade, str]) -> str:
    if ordinal(new) < ordinal(previous):
        return "improved"
    if ordinal(new) > ordinal(previous):
        return "worsened"
    return "unchanged"


def compute_grade(source: EvidenceSource, outcome, current: Grade) -> Grade:
    """New grade from one piece of evidence.

    Gameplay supplies its grade directly; a reinforcement session supplies
    its percentage-correct score, mapped through the effectiveness tiers.
    """
    source = EvidenceSource(source)
    if source == EvidenceSource.GAMEPLAY:
        try:
            return Grade(outcome)
        except ValueError:
            raise InvalidGrade(f"Unknown gameplay grade {outcome!r}")
    return resulting_grade(float(outcome), current)


def fold_history(events: List[Dict[str, Any]]) -> Grade:
    """Grade implied by an ordered event history (None when empty)."""
    grade = Grade.NONE
    for event in events:
        grade = Grade(event["new_grade"])
    return grade


# ── Post-commit listeners ─────────────────────────────────────────────

@dataclass(frozen=True)
class EvidenceRecorded:
    event_id: int
    student_id: int
    difficulty_id: int
    source: EvidenceSource
    previous_grade: Grade
    new_grade: Grade
    recorded_at: str
    session_id: Optional[int] = None


Listener = Callable[[Any, EvidenceRecorded], Awaitable[None]]

_listeners: List[Listener] = []


def subscribe(listener: Listener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unsubscribe(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


async def publish(db, event: EvidenceRecorded) -> None:
    """Run listeners after the event is committed. Listener errors propagate."""
    for listener in list(_listeners):
        try:
            await listener(db, event)
        except Exception:
            logger.exception(
                "Listener %s failed for ledger event %s",
                getattr(listener, "__name__", listener), event.event_id,
            )
            raise


# ── Writes ────────────────────────────────────────────────────────────

async def append_evidence(
    db,
    student_id: int,
    difficulty_id: int,
    source: EvidenceSource,
    outcome,
    session_id: Optional[int] = None,
    recorded_at: Optional[datetime] = None,
) -> EvidenceRecorded:
    """Append one event and move the projection, without committing.

    The caller must hold difficulty_lock() for the key and owns the
    transaction. Raises ConcurrencyConflict when another process moved the
    projection first.
    """
    source = EvidenceSource(source)
    latest = await store.get_latest_event(db, student_id, difficulty_id)
    previous = Grade(latest["new_grade"]) if latest else Grade.NONE
    new = compute_grade(source, outcome, previous)

    when = store.now_iso(recorded_at)
    # A backdated event may not reorder the existing history
    if latest and store.parse_ts(when) < store.parse_ts(latest["recorded_at"]):
        when = store.now_iso(store.parse_ts(latest["recorded_at"]))

    event_id = await store.insert_event(
        db, student_id, difficulty_id, previous.value, new.value, source.value, when, session_id
    )

    record = await store.get_record(db, student_id, difficulty_id)
    if record is None:
        moved = await store.insert_record(db, student_id, difficulty_id, new.value, event_id, when)
    else:
        moved = await store.update_record(
            db, record["id"], new.value, record["version"], event_id, when
        )
    if moved == 0:
        raise ConcurrencyConflict(
            f"Difficulty record for student {student_id} / difficulty {difficulty_id} changed concurrently"
        )

    return EvidenceRecorded(
        event_id=event_id,
        student_id=student_id,
        difficulty_id=difficulty_id,
        source=source,
        previous_grade=previous,
        new_grade=new,
        recorded_at=when,
        session_id=session_id,
    )


@retry(
    stop=stop_after_attempt(settings.concurrency_retry_attempts),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(ConcurrencyConflict),
    before_sleep=lambda retry_state: logger.warning(
        "Grade write conflict (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)
async def _append_and_commit(db, student_id, difficulty_id, source, outcome, session_id, recorded_at):
    try:
        event = await append_evidence(
            db, student_id, difficulty_id, source, outcome, session_id, recorded_at
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return event


async def record_evidence(
    db,
    student_id: int,
    difficulty_id: int,
    source: EvidenceSource,
    outcome,
    session_id: Optional[int] = None,
    recorded_at: Optional[datetime] = None,
) -> EvidenceRecorded:
    """Record one grade-affecting evaluation and notify listeners after commit."""
    async with difficulty_lock(student_id, difficulty_id):
        event = await _append_and_commit(
            db, student_id, difficulty_id, source, outcome, session_id, recorded_at
        )

    logger.info(
        "Ledger event %s: student=%s difficulty=%s %s -> %s (%s)",
        event.event_id, student_id, difficulty_id,
        event.previous_grade.value, event.new_grade.value, event.source.value,
    )
    await publish(db, event)
    return event


# ── Reads ─────────────────────────────────────────────────────────────

async def get_current_grade(db, student_id: int, difficulty_id: int) -> Optional[Grade]:
    """Current grade, or None when the student has no record for the difficulty."""
    record = await store.get_record(db, student_id, difficulty_id)
    return Grade(record["grade"]) if record else None


async def get_history(
    db,
    student_id: Optional[int] = None,
    difficulty_id: Optional[int] = None,
    source: Optional[EvidenceSource] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Ledger entries in order, each annotated with its trend."""
    events = await store.list_events(
        db,
        student_id=student_id,
        difficulty_id=difficulty_id,
        source=EvidenceSource(source).value if source else None,
        date_from=store.now_iso(date_from) if date_from else None,
        date_to=store.now_iso(date_to) if date_to else None,
    )
    for event in events:
        event["trend"] = trend(event["previous_grade"], event["new_grade"])
    return events


async def get_records_as_of(
    db,
    cutoff: datetime,
    student_id: Optional[int] = None,
    difficulty_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Snapshot of every (student, difficulty) grade as it stood at `cutoff`."""
    events = await store.list_events(
        db,
        student_id=student_id,
        difficulty_id=difficulty_id,
        date_to=store.now_iso(cutoff),
    )
    by_key: Dict[tuple, List[Dict[str, Any]]] = {}
    for event in events:
        by_key.setdefault((event["student_id"], event["difficulty_id"]), []).append(event)

    return [
        {
            "student_id": key[0],
            "difficulty_id": key[1],
            "grade": fold_history(key_events).value,
            "updated_at": key_events[-1]["recorded_at"],
        }
        for key, key_events in sorted(by_key.items())
    ]
