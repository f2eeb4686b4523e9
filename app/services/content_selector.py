"""Cascading selection of system questions for a reinforcement session.

A student at grade G gets every active system question of the difficulty
whose grade is at or below G. Lower-grade material is always safe
reinforcement; higher-grade material is withheld until mastered.
"""

import logging
from typing import Any, Dict, List

from app.db import reinforcement_store as store
from app.models.enums import Grade
from app.services.errors import InvalidGrade

logger = logging.getLogger(__name__)

CASCADE = {
    Grade.HIGH: (Grade.HIGH, Grade.MEDIUM, Grade.LOW),
    Grade.MEDIUM: (Grade.MEDIUM, Grade.LOW),
    Grade.LOW: (Grade.LOW,),
}


def cascade_for(grade: Grade) -> tuple:
    """Question grades included for a student grade. None has no cascade."""
    try:
        return CASCADE[Grade(grade)]
    except (KeyError, ValueError):
        raise InvalidGrade(f"No question cascade applies to grade {grade!r}")


async def select_questions(db, difficulty_id: int, grade: Grade) -> List[Dict[str, Any]]:
    """Eligible system questions for `grade`, oldest first. May be empty."""
    grades = [g.value for g in cascade_for(grade)]
    questions = await store.fetch_system_questions(db, difficulty_id, grades)
    logger.debug(
        "Selected %d question(s) for difficulty %s at grade %s",
        len(questions), difficulty_id, Grade(grade).value,
    )
    return questions
