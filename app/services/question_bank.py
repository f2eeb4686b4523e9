"""
question_bank.py - Authoring rules for reinforcement questions

Provides:
- create_question(...) - validate and persist a question with its options
- update_question(question_id, patch) - edit a question never used by a session
- soft_delete_question(question_id) - hide a question, keeping its options
- get_question / list_questions - active-only reads

Option invariants: 2-4 options, pairwise distinct texts, exactly one correct.
Questions that were ever attached to a session (in any state) are frozen so
that completed sessions keep showing what the student actually answered.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from app.db import reinforcement_store as store
from app.models.enums import Grade
from app.services.errors import (
    DuplicateStatement,
    InvalidGrade,
    InvalidOptionSet,
    Locked,
    NotFound,
)

logger = logging.getLogger(__name__)

MIN_OPTIONS = 2
MAX_OPTIONS = 4

_PATCHABLE = ("statement", "grade", "difficulty_id", "options")


def validate_options(options: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Check the option invariants and return normalized option dicts."""
    if options is None or not (MIN_OPTIONS <= len(options) <= MAX_OPTIONS):
        count = 0 if options is None else len(options)
        raise InvalidOptionSet(
            f"A question needs between {MIN_OPTIONS} and {MAX_OPTIONS} options, got {count}"
        )

    normalized = []
    for option in options:
        text = (option.get("text") or "").strip()
        if not text:
            raise InvalidOptionSet("Option text cannot be empty")
        normalized.append({"text": text, "is_correct": bool(option.get("is_correct"))})

    texts = [o["text"] for o in normalized]
    if len(set(texts)) != len(texts):
        raise InvalidOptionSet("Option texts must be distinct within a question")

    correct = sum(1 for o in normalized if o["is_correct"])
    if correct != 1:
        raise InvalidOptionSet(f"Exactly one option must be correct, got {correct}")

    return normalized


def _question_grade(grade) -> Grade:
    try:
        grade = Grade(grade)
    except ValueError:
        raise InvalidGrade(f"Unknown question grade {grade!r}")
    if grade == Grade.NONE:
        raise InvalidGrade("Questions must be graded Low, Medium or High")
    return grade


def _clean_statement(statement: Optional[str]) -> str:
    statement = (statement or "").strip()
    if not statement:
        raise InvalidOptionSet("Question statement cannot be empty")
    return statement


async def _require_difficulty(db, difficulty_id: int) -> Dict[str, Any]:
    difficulty = await store.get_difficulty(db, difficulty_id)
    if not difficulty:
        raise NotFound(f"Difficulty {difficulty_id} not found")
    return difficulty


async def create_question(
    db,
    difficulty_id: int,
    grade: Grade,
    statement: str,
    options: Sequence[Dict[str, Any]],
    author_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a question. author_id=None marks it as a system question."""
    statement = _clean_statement(statement)
    grade = _question_grade(grade)
    await _require_difficulty(db, difficulty_id)

    if await store.find_active_question_by_statement(db, statement):
        raise DuplicateStatement("An active question with this statement already exists")

    normalized = validate_options(options)

    try:
        question_id = await store.insert_question(
            db, difficulty_id, grade.value, statement, author_id, store.now_iso()
        )
        await store.insert_answer_options(db, question_id, normalized)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Created %s question %s (difficulty=%s grade=%s)",
        "system" if author_id is None else "teacher",
        question_id, difficulty_id, grade.value,
    )
    return await store.get_question(db, question_id)


async def update_question(db, question_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial update. Options, when given, replace the whole set."""
    question = await store.get_question(db, question_id)
    if not question:
        raise NotFound(f"Question {question_id} not found")

    if await store.count_question_usage(db, question_id) > 0:
        raise Locked("Question was already used in a reinforcement session and cannot be edited")

    patch = {k: v for k, v in patch.items() if k in _PATCHABLE and v is not None}

    fields: Dict[str, Any] = {}
    if "statement" in patch:
        statement = _clean_statement(patch["statement"])
        if await store.find_active_question_by_statement(db, statement, exclude_id=question_id):
            raise DuplicateStatement("An active question with this statement already exists")
        fields["statement"] = statement
    if "grade" in patch:
        fields["grade"] = _question_grade(patch["grade"]).value
    if "difficulty_id" in patch:
        await _require_difficulty(db, patch["difficulty_id"])
        fields["difficulty_id"] = patch["difficulty_id"]

    new_options = validate_options(patch["options"]) if "options" in patch else None

    if not fields and new_options is None:
        return question

    try:
        await store.update_question_fields(db, question_id, fields, store.now_iso())
        if new_options is not None:
            await store.delete_answer_options(db, question_id)
            await store.insert_answer_options(db, question_id, new_options)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Updated question %s (%s)", question_id, ", ".join(sorted(patch)))
    return await store.get_question(db, question_id)


async def soft_delete_question(db, question_id: int) -> None:
    """Mark a question deleted. Options and session links are kept."""
    if await store.mark_question_deleted(db, question_id, store.now_iso()) == 0:
        await db.rollback()
        raise NotFound(f"Question {question_id} not found or already deleted")
    await db.commit()
    logger.info("Soft-deleted question %s", question_id)


async def get_question(db, question_id: int) -> Dict[str, Any]:
    question = await store.get_question(db, question_id)
    if not question:
        raise NotFound(f"Question {question_id} not found")
    return question


async def list_questions(db, **filters) -> List[Dict[str, Any]]:
    return await store.list_questions(db, **filters)
