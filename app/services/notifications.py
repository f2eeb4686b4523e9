"""Outbound notices about reinforcement sessions.

The e-mail side lives outside this service; it plugs in by replacing the
module-level notifier with set_notifier(). The default only logs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.config import settings
from app.models.enums import Topic, TOPIC_LABELS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCreatedNotice:
    session_id: int
    student_id: int
    student_name: str
    student_email: Optional[str]
    topic_label: str
    difficulty_name: str
    due_at: str
    origin: str
    link: str


class SessionNotifier:
    async def session_created(self, notice: SessionCreatedNotice) -> None:
        raise NotImplementedError


class LoggingNotifier(SessionNotifier):
    async def session_created(self, notice: SessionCreatedNotice) -> None:
        logger.info(
            "Session %s assigned to %s (%s / %s), due %s: %s",
            notice.session_id, notice.student_name, notice.topic_label,
            notice.difficulty_name, notice.due_at, notice.link,
        )


_notifier: SessionNotifier = LoggingNotifier()


def get_notifier() -> SessionNotifier:
    return _notifier


def set_notifier(notifier: SessionNotifier) -> SessionNotifier:
    """Swap the active notifier. Returns the previous one."""
    global _notifier
    previous, _notifier = _notifier, notifier
    return previous


def session_link(session_id: int) -> str:
    return f"{settings.app_base_url.rstrip('/')}/sessions/{session_id}"


def build_notice(session: Dict[str, Any], student: Dict[str, Any]) -> SessionCreatedNotice:
    topic = session.get("topic")
    try:
        topic_label = TOPIC_LABELS[Topic(topic)]
    except ValueError:
        topic_label = topic or ""
    return SessionCreatedNotice(
        session_id=session["id"],
        student_id=student["id"],
        student_name=student["name"],
        student_email=student.get("email"),
        topic_label=topic_label,
        difficulty_name=session["difficulty_name"],
        due_at=session["due_at"],
        origin=session["origin"],
        link=session_link(session["id"]),
    )
