"""
reinforcement_store.py - Database helper queries for the reinforcement engine

Provides insert/fetch functions for:
- questions / answer_options
- difficulties / users (read only)
- difficulty_records / difficulty_change_events
- reinforcement_sessions / session_questions / session_answers / session_results
- reinforcement_followups

Callers own the transaction: nothing here commits.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Sequence


def now_iso(dt: Optional[datetime] = None) -> str:
    """Timestamp as a fixed-width naive-UTC ISO string (sortable as text)."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_ts(value) -> Optional[datetime]:
    """Parse a stored timestamp back into a naive-UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo is None else value.astimezone(timezone.utc).replace(tzinfo=None)
    parsed = datetime.fromisoformat(str(value).replace(" ", "T"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


# ══════════════════════════════════════════════════════════════════════════════
# USERS & DIFFICULTIES
# ══════════════════════════════════════════════════════════════════════════════

async def get_user(db, user_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT id, name, email, role FROM users WHERE id = ?",
        (user_id,)
    )
    return _row_to_dict(await cursor.fetchone())


async def get_difficulty(db, difficulty_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT id, name, description, topic FROM difficulties WHERE id = ?",
        (difficulty_id,)
    )
    return _row_to_dict(await cursor.fetchone())


async def list_difficulties(db) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT id, name, description, topic FROM difficulties ORDER BY name"
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


async def insert_difficulty(db, name: str, topic: str, description: Optional[str] = None) -> int:
    cursor = await db.execute(
        "INSERT INTO difficulties (name, description, topic) VALUES (?, ?, ?)",
        (name, description, topic)
    )
    return cursor.lastrowid


# ══════════════════════════════════════════════════════════════════════════════
# QUESTIONS
# ══════════════════════════════════════════════════════════════════════════════

_QUESTION_COLUMNS = """q.id, q.difficulty_id, q.grade, q.statement, q.author_id,
                      q.created_at, q.updated_at, q.deleted_at, d.topic"""


async def insert_question(
    db,
    difficulty_id: int,
    grade: str,
    statement: str,
    author_id: Optional[int],
    created_at: str
) -> int:
    """Create a question row. Returns the new question ID."""
    cursor = await db.execute(
        """INSERT INTO questions (difficulty_id, grade, statement, author_id, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (difficulty_id, grade, statement, author_id, created_at)
    )
    return cursor.lastrowid


async def insert_answer_options(db, question_id: int, options: List[Dict[str, Any]]) -> List[int]:
    """Create the answer options of a question in the given order."""
    option_ids = []
    for position, option in enumerate(options):
        cursor = await db.execute(
            """INSERT INTO answer_options (question_id, text, is_correct, position)
               VALUES (?, ?, ?, ?)""",
            (question_id, option["text"], 1 if option["is_correct"] else 0, position)
        )
        option_ids.append(cursor.lastrowid)
    return option_ids


async def delete_answer_options(db, question_id: int) -> None:
    await db.execute("DELETE FROM answer_options WHERE question_id = ?", (question_id,))


async def get_answer_options(db, question_id: int) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT id, text, is_correct, position FROM answer_options
           WHERE question_id = ? ORDER BY position, id""",
        (question_id,)
    )
    return [_option_to_dict(r) for r in await cursor.fetchall()]


async def get_question(db, question_id: int, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
    """Get a question with its options. Soft-deleted questions are hidden by default."""
    sql = f"""SELECT {_QUESTION_COLUMNS}
              FROM questions q JOIN difficulties d ON d.id = q.difficulty_id
              WHERE q.id = ?"""
    if not include_deleted:
        sql += " AND q.deleted_at IS NULL"
    cursor = await db.execute(sql, (question_id,))
    question = _row_to_dict(await cursor.fetchone())
    if question is None:
        return None
    question["options"] = await get_answer_options(db, question_id)
    return question


async def find_active_question_by_statement(
    db,
    statement: str,
    exclude_id: Optional[int] = None
) -> Optional[int]:
    """Return the ID of an active question with exactly this statement, if any."""
    sql = "SELECT id FROM questions WHERE statement = ? AND deleted_at IS NULL"
    params: list = [statement]
    if exclude_id is not None:
        sql += " AND id != ?"
        params.append(exclude_id)
    cursor = await db.execute(sql, tuple(params))
    row = await cursor.fetchone()
    return row["id"] if row else None


async def count_question_usage(db, question_id: int) -> int:
    """Number of sessions (in any state) that ever included the question."""
    cursor = await db.execute(
        "SELECT COUNT(*) AS n FROM session_questions WHERE question_id = ?",
        (question_id,)
    )
    row = await cursor.fetchone()
    return row["n"] if row else 0


async def update_question_fields(db, question_id: int, fields: Dict[str, Any], updated_at: str) -> None:
    assignments = [f"{column} = ?" for column in fields]
    assignments.append("updated_at = ?")
    await db.execute(
        f"UPDATE questions SET {', '.join(assignments)} WHERE id = ?",
        (*fields.values(), updated_at, question_id)
    )


async def mark_question_deleted(db, question_id: int, deleted_at: str) -> int:
    cursor = await db.execute(
        "UPDATE questions SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
        (deleted_at, question_id)
    )
    return cursor.rowcount


async def list_questions(
    db,
    difficulty_id: Optional[int] = None,
    grade: Optional[str] = None,
    system_only: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> List[Dict[str, Any]]:
    """List active questions, newest first."""
    where = ["q.deleted_at IS NULL"]
    params: list = []
    if difficulty_id is not None:
        where.append("q.difficulty_id = ?")
        params.append(difficulty_id)
    if grade is not None:
        where.append("q.grade = ?")
        params.append(grade)
    if system_only is True:
        where.append("q.author_id IS NULL")
    elif system_only is False:
        where.append("q.author_id IS NOT NULL")
    if search:
        where.append("LOWER(q.statement) LIKE ?")
        params.append(f"%{search.lower()}%")

    cursor = await db.execute(
        f"""SELECT {_QUESTION_COLUMNS}
            FROM questions q JOIN difficulties d ON d.id = q.difficulty_id
            WHERE {' AND '.join(where)}
            ORDER BY q.created_at DESC, q.id DESC
            LIMIT ? OFFSET ?""",
        (*params, limit, offset)
    )
    questions = [_row_to_dict(r) for r in await cursor.fetchall()]
    for question in questions:
        question["options"] = await get_answer_options(db, question["id"])
    return questions


async def fetch_system_questions(db, difficulty_id: int, grades: Sequence[str]) -> List[Dict[str, Any]]:
    """Active system questions of a difficulty in the given grades, oldest first."""
    cursor = await db.execute(
        f"""SELECT {_QUESTION_COLUMNS}
            FROM questions q JOIN difficulties d ON d.id = q.difficulty_id
            WHERE q.difficulty_id = ?
              AND q.grade IN ({_placeholders(grades)})
              AND q.author_id IS NULL
              AND q.deleted_at IS NULL
            ORDER BY q.created_at ASC, q.id ASC""",
        (difficulty_id, *grades)
    )
    questions = [_row_to_dict(r) for r in await cursor.fetchall()]
    for question in questions:
        question["options"] = await get_answer_options(db, question["id"])
    return questions


async def get_active_questions_by_ids(db, question_ids: Sequence[int]) -> List[Dict[str, Any]]:
    if not question_ids:
        return []
    cursor = await db.execute(
        f"""SELECT {_QUESTION_COLUMNS}
            FROM questions q JOIN difficulties d ON d.id = q.difficulty_id
            WHERE q.id IN ({_placeholders(question_ids)}) AND q.deleted_at IS NULL""",
        tuple(question_ids)
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


# ══════════════════════════════════════════════════════════════════════════════
# DIFFICULTY LEDGER & RECORDS
# ══════════════════════════════════════════════════════════════════════════════

_EVENT_COLUMNS = """id, student_id, difficulty_id, previous_grade, new_grade,
                    source, session_id, recorded_at"""


async def get_latest_event(db, student_id: int, difficulty_id: int) -> Optional[Dict[str, Any]]:
    """Most recent ledger entry for a key (ties on timestamp broken by id)."""
    cursor = await db.execute(
        f"""SELECT {_EVENT_COLUMNS} FROM difficulty_change_events
            WHERE student_id = ? AND difficulty_id = ?
            ORDER BY recorded_at DESC, id DESC
            LIMIT 1""",
        (student_id, difficulty_id)
    )
    return _row_to_dict(await cursor.fetchone())


async def insert_event(
    db,
    student_id: int,
    difficulty_id: int,
    previous_grade: str,
    new_grade: str,
    source: str,
    recorded_at: str,
    session_id: Optional[int] = None
) -> int:
    cursor = await db.execute(
        """INSERT INTO difficulty_change_events
           (student_id, difficulty_id, previous_grade, new_grade, source, session_id, recorded_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (student_id, difficulty_id, previous_grade, new_grade, source, session_id, recorded_at)
    )
    return cursor.lastrowid


async def list_events(
    db,
    student_id: Optional[int] = None,
    difficulty_id: Optional[int] = None,
    source: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Ledger entries in total order (recorded_at, id)."""
    where = []
    params: list = []
    if student_id is not None:
        where.append("student_id = ?")
        params.append(student_id)
    if difficulty_id is not None:
        where.append("difficulty_id = ?")
        params.append(difficulty_id)
    if source is not None:
        where.append("source = ?")
        params.append(source)
    if date_from is not None:
        where.append("recorded_at >= ?")
        params.append(date_from)
    if date_to is not None:
        where.append("recorded_at <= ?")
        params.append(date_to)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    cursor = await db.execute(
        f"""SELECT {_EVENT_COLUMNS} FROM difficulty_change_events
            {clause}
            ORDER BY recorded_at ASC, id ASC""",
        tuple(params)
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


async def get_record(db, student_id: int, difficulty_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT id, student_id, difficulty_id, grade, version, last_event_id, updated_at
           FROM difficulty_records
           WHERE student_id = ? AND difficulty_id = ?""",
        (student_id, difficulty_id)
    )
    return _row_to_dict(await cursor.fetchone())


async def insert_record(
    db,
    student_id: int,
    difficulty_id: int,
    grade: str,
    last_event_id: int,
    updated_at: str
) -> int:
    """Create the projection row. Returns 0 when another writer created it first."""
    cursor = await db.execute(
        """INSERT INTO difficulty_records
           (student_id, difficulty_id, grade, version, last_event_id, updated_at)
           VALUES (?, ?, ?, 1, ?, ?)
           ON CONFLICT DO NOTHING""",
        (student_id, difficulty_id, grade, last_event_id, updated_at)
    )
    return cursor.rowcount


async def update_record(
    db,
    record_id: int,
    grade: str,
    expected_version: int,
    last_event_id: int,
    updated_at: str
) -> int:
    """Compare-and-set on the version column. Returns the number of rows updated."""
    cursor = await db.execute(
        """UPDATE difficulty_records
           SET grade = ?, version = version + 1, last_event_id = ?, updated_at = ?
           WHERE id = ? AND version = ?""",
        (grade, last_event_id, updated_at, record_id, expected_version)
    )
    return cursor.rowcount


async def list_records(
    db,
    student_id: Optional[int] = None,
    difficulty_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    where = []
    params: list = []
    if student_id is not None:
        where.append("r.student_id = ?")
        params.append(student_id)
    if difficulty_id is not None:
        where.append("r.difficulty_id = ?")
        params.append(difficulty_id)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    cursor = await db.execute(
        f"""SELECT r.student_id, r.difficulty_id, r.grade, r.updated_at,
                   d.name AS difficulty_name, d.topic
            FROM difficulty_records r
            JOIN difficulties d ON d.id = r.difficulty_id
            {clause}
            ORDER BY d.topic, d.name""",
        tuple(params)
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


# ══════════════════════════════════════════════════════════════════════════════
# REINFORCEMENT SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

_SESSION_COLUMNS = """s.id, s.student_id, s.difficulty_id, s.assigned_grade, s.state,
                      s.origin, s.teacher_id, s.due_at, s.time_limit_min, s.attempts,
                      s.created_at, s.closed_at, s.cancelled_by"""


async def insert_session(
    db,
    student_id: int,
    difficulty_id: int,
    assigned_grade: str,
    origin: str,
    teacher_id: Optional[int],
    due_at: str,
    time_limit_min: int,
    created_at: str,
    state: str = "Pendiente"
) -> Optional[int]:
    """Create a session. Returns None when a pending session already holds the key."""
    cursor = await db.execute(
        """INSERT INTO reinforcement_sessions
           (student_id, difficulty_id, assigned_grade, state, origin, teacher_id,
            due_at, time_limit_min, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT DO NOTHING""",
        (student_id, difficulty_id, assigned_grade, state, origin, teacher_id,
         due_at, time_limit_min, created_at)
    )
    if cursor.rowcount == 0:
        return None
    return cursor.lastrowid


async def insert_session_questions(db, session_id: int, question_ids: Sequence[int]) -> None:
    for position, question_id in enumerate(question_ids):
        await db.execute(
            """INSERT INTO session_questions (session_id, question_id, position)
               VALUES (?, ?, ?)""",
            (session_id, question_id, position)
        )


async def get_session(db, session_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        f"""SELECT {_SESSION_COLUMNS}, d.name AS difficulty_name, d.topic
            FROM reinforcement_sessions s
            JOIN difficulties d ON d.id = s.difficulty_id
            WHERE s.id = ?""",
        (session_id,)
    )
    return _row_to_dict(await cursor.fetchone())


async def get_pending_session(db, student_id: int, difficulty_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        f"""SELECT {_SESSION_COLUMNS}
            FROM reinforcement_sessions s
            WHERE s.student_id = ? AND s.difficulty_id = ? AND s.state = 'Pendiente'""",
        (student_id, difficulty_id)
    )
    return _row_to_dict(await cursor.fetchone())


async def get_session_questions(db, session_id: int) -> List[Dict[str, Any]]:
    """Questions of a session in presentation order, with options (deleted ones included)."""
    cursor = await db.execute(
        """SELECT q.id, q.difficulty_id, q.grade, q.statement, q.author_id
           FROM session_questions sq
           JOIN questions q ON q.id = sq.question_id
           WHERE sq.session_id = ?
           ORDER BY sq.position, sq.id""",
        (session_id,)
    )
    questions = [_row_to_dict(r) for r in await cursor.fetchall()]
    for question in questions:
        question["options"] = await get_answer_options(db, question["id"])
    return questions


async def upsert_answer(
    db,
    session_id: int,
    question_id: int,
    option_id: Optional[int],
    is_correct: bool,
    answered_at: str
) -> None:
    await db.execute(
        """INSERT INTO session_answers (session_id, question_id, option_id, is_correct, answered_at)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT (session_id, question_id) DO UPDATE SET
               option_id = excluded.option_id,
               is_correct = excluded.is_correct,
               answered_at = excluded.answered_at""",
        (session_id, question_id, option_id, 1 if is_correct else 0, answered_at)
    )


async def get_answers(db, session_id: int) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT question_id, option_id, is_correct, answered_at
           FROM session_answers WHERE session_id = ?
           ORDER BY question_id""",
        (session_id,)
    )
    answers = []
    for row in await cursor.fetchall():
        answer = _row_to_dict(row)
        answer["is_correct"] = bool(answer["is_correct"])
        answers.append(answer)
    return answers


async def count_answers(db, session_id: int) -> int:
    cursor = await db.execute(
        "SELECT COUNT(*) AS n FROM session_answers WHERE session_id = ?",
        (session_id,)
    )
    row = await cursor.fetchone()
    return row["n"] if row else 0


async def increment_attempts(db, session_id: int) -> None:
    await db.execute(
        "UPDATE reinforcement_sessions SET attempts = attempts + 1 WHERE id = ?",
        (session_id,)
    )


async def close_pending_session(
    db,
    session_id: int,
    new_state: str,
    closed_at: str,
    cancelled_by: Optional[int] = None
) -> int:
    """Move a session out of Pendiente. Returns 0 if it was no longer pending."""
    cursor = await db.execute(
        """UPDATE reinforcement_sessions
           SET state = ?, closed_at = ?, cancelled_by = ?
           WHERE id = ? AND state = 'Pendiente'""",
        (new_state, closed_at, cancelled_by, session_id)
    )
    return cursor.rowcount


async def insert_result(db, session_id: int, result: Dict[str, Any]) -> int:
    cursor = await db.execute(
        """INSERT INTO session_results
           (session_id, correct_count, incorrect_count, answered_count, total_questions,
            percentage, tier, previous_grade, new_grade, attempts, completed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session_id,
            result["correct_count"],
            result["incorrect_count"],
            result["answered_count"],
            result["total_questions"],
            result["percentage"],
            result["tier"],
            result["previous_grade"],
            result["new_grade"],
            result["attempts"],
            result["completed_at"],
        )
    )
    return cursor.lastrowid


async def get_result(db, session_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT correct_count, incorrect_count, answered_count, total_questions,
                  percentage, tier, previous_grade, new_grade, attempts, completed_at
           FROM session_results WHERE session_id = ?""",
        (session_id,)
    )
    return _row_to_dict(await cursor.fetchone())


async def list_sessions(
    db,
    student_id: Optional[int] = None,
    difficulty_id: Optional[int] = None,
    state: Optional[str] = None,
    origin: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> List[Dict[str, Any]]:
    """Sessions with their result (if completed), newest first."""
    where = []
    params: list = []
    if student_id is not None:
        where.append("s.student_id = ?")
        params.append(student_id)
    if difficulty_id is not None:
        where.append("s.difficulty_id = ?")
        params.append(difficulty_id)
    if state is not None:
        where.append("s.state = ?")
        params.append(state)
    if origin is not None:
        where.append("s.origin = ?")
        params.append(origin)
    if date_from is not None:
        where.append("s.created_at >= ?")
        params.append(date_from)
    if date_to is not None:
        where.append("s.created_at <= ?")
        params.append(date_to)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    cursor = await db.execute(
        f"""SELECT {_SESSION_COLUMNS}, d.name AS difficulty_name, d.topic,
                   r.percentage, r.tier, r.new_grade
            FROM reinforcement_sessions s
            JOIN difficulties d ON d.id = s.difficulty_id
            LEFT JOIN session_results r ON r.session_id = s.id
            {clause}
            ORDER BY s.created_at DESC, s.id DESC
            LIMIT ? OFFSET ?""",
        (*params, limit, offset)
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


async def list_overdue_pending(db, now: str) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT id, student_id, difficulty_id, due_at
           FROM reinforcement_sessions
           WHERE state = 'Pendiente' AND due_at < ?
           ORDER BY due_at ASC, id ASC""",
        (now,)
    )
    return [_row_to_dict(r) for r in await cursor.fetchall()]


# ══════════════════════════════════════════════════════════════════════════════
# FOLLOW-UP ALERTS
# ══════════════════════════════════════════════════════════════════════════════

async def get_open_followup(db, student_id: int, difficulty_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT id, student_id, difficulty_id, grade, reason, created_at
           FROM reinforcement_followups
           WHERE student_id = ? AND difficulty_id = ? AND resolved_at IS NULL""",
        (student_id, difficulty_id)
    )
    return _row_to_dict(await cursor.fetchone())


async def insert_followup(
    db,
    student_id: int,
    difficulty_id: int,
    grade: str,
    reason: str,
    created_at: str
) -> int:
    cursor = await db.execute(
        """INSERT INTO reinforcement_followups (student_id, difficulty_id, grade, reason, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (student_id, difficulty_id, grade, reason, created_at)
    )
    return cursor.lastrowid


async def resolve_followups(db, student_id: int, difficulty_id: int, resolved_at: str) -> None:
    await db.execute(
        """UPDATE reinforcement_followups SET resolved_at = ?
           WHERE student_id = ? AND difficulty_id = ? AND resolved_at IS NULL""",
        (resolved_at, student_id, difficulty_id)
    )


async def list_open_followups(db, difficulty_id: Optional[int] = None) -> List[Dict[str, Any]]:
    sql = """SELECT f.id, f.student_id, f.difficulty_id, f.grade, f.reason, f.created_at,
                    u.name AS student_name, d.name AS difficulty_name
             FROM reinforcement_followups f
             JOIN users u ON u.id = f.student_id
             JOIN difficulties d ON d.id = f.difficulty_id
             WHERE f.resolved_at IS NULL"""
    params: tuple = ()
    if difficulty_id is not None:
        sql += " AND f.difficulty_id = ?"
        params = (difficulty_id,)
    cursor = await db.execute(sql + " ORDER BY f.created_at ASC", params)
    return [_row_to_dict(r) for r in await cursor.fetchall()]


# ══════════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_dict(row) -> Optional[Dict[str, Any]]:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _option_to_dict(row) -> Dict[str, Any]:
    option = dict(row)
    option["is_correct"] = bool(option["is_correct"])
    return option
