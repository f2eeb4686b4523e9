"""Reinforcement session endpoints: taking, assigning, cancelling, sweeping."""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from app.db.database import get_db
from app.db import reinforcement_store as store
from app.models.enums import SessionOrigin, SessionState
from app.models.reinforcement import AnswerSubmission, SessionAssign
from app.routes.auth import get_current_user, require_role
from app.services import reinforcement_sessions as sessions

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])

_require_staff = require_role("teacher", "admin")


# -- Helpers --------------------------------------------------------------

async def _require_student(request: Request, db) -> dict:
    user = await get_current_user(request, db)
    if user["role"] != "student":
        raise HTTPException(status_code=403, detail="Students only")
    return user


async def _load_visible_session(request: Request, session_id: int, db) -> tuple[dict, dict]:
    user = await get_current_user(request, db)
    session = await store.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if user["role"] == "student" and session["student_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Session not found")
    return user, session


# -- Student endpoints ----------------------------------------------------

@router.get("/api/student/sessions/pending")
async def my_pending_sessions(request: Request, db=Depends(get_db)):
    user = await _require_student(request, db)
    return {"sessions": await sessions.list_pending_for_student(db, user["id"])}


@router.post("/api/sessions/{session_id}/answers")
async def submit_answers(
    session_id: int, body: AnswerSubmission, request: Request, db=Depends(get_db)
):
    user = await _require_student(request, db)
    session = await store.get_session(db, session_id)
    if not session or session["student_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Session not found")
    return await sessions.submit_answers(
        db,
        session_id,
        [a.model_dump() for a in body.answers],
        finish=body.finish,
    )


# -- Shared ---------------------------------------------------------------

@router.get("/api/sessions/{session_id}")
async def get_session(session_id: int, request: Request, db=Depends(get_db)):
    """Session detail. Students see correct answers only once it is completed."""
    user, session = await _load_visible_session(request, session_id, db)
    reveal = user["role"] != "student" or session["state"] == SessionState.COMPLETADA.value
    return await sessions.get_session_detail(db, session_id, reveal_answers=reveal)


# -- Teacher / admin endpoints --------------------------------------------

@router.get("/api/sessions")
async def list_sessions(
    request: Request,
    student_id: int | None = None,
    difficulty_id: int | None = None,
    state: SessionState | None = None,
    origin: SessionOrigin | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db=Depends(get_db),
):
    await _require_staff(request, db)
    rows = await sessions.list_sessions(
        db,
        student_id=student_id,
        difficulty_id=difficulty_id,
        state=state.value if state else None,
        origin=origin.value if origin else None,
        date_from=store.now_iso(date_from) if date_from else None,
        date_to=store.now_iso(date_to) if date_to else None,
        limit=limit,
        offset=offset,
    )
    return {"sessions": rows, "limit": limit, "offset": offset}


@router.post("/api/sessions", status_code=201)
async def assign_session(body: SessionAssign, request: Request, db=Depends(get_db)):
    user = await _require_staff(request, db)
    return await sessions.assign_session(
        db,
        teacher_id=user["id"],
        student_id=body.student_id,
        difficulty_id=body.difficulty_id,
        question_ids=body.question_ids,
        due_at=body.due_at,
        time_limit_min=body.time_limit_min,
    )


@router.post("/api/sessions/{session_id}/cancel")
async def cancel_session(session_id: int, request: Request, db=Depends(get_db)):
    user = await _require_staff(request, db)
    return await sessions.cancel_session(db, session_id, cancelled_by=user["id"])


@router.post("/api/sessions/sweep")
async def run_sweep(request: Request, db=Depends(get_db)):
    await require_role("admin")(request, db)
    return {"closed": await sessions.sweep_overdue_sessions(db)}


@router.get("/api/followups")
async def open_followups(
    request: Request, difficulty_id: int | None = None, db=Depends(get_db)
):
    await _require_staff(request, db)
    return {"followups": await sessions.list_followups(db, difficulty_id)}
