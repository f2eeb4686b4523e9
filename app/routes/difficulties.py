"""Difficulty catalog, gameplay evidence intake and grade read models."""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Request
from app.db.database import get_db
from app.db import reinforcement_store as store
from app.models.enums import EvidenceSource
from app.models.reinforcement import GameplayBatch
from app.routes.auth import get_current_user, require_role, require_student_owner
from app.services import difficulty_ledger as ledger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["difficulties"])

_require_staff = require_role("teacher", "admin")


@router.get("/api/difficulties")
async def list_difficulties(request: Request, db=Depends(get_db)):
    await get_current_user(request, db)
    return {"difficulties": await store.list_difficulties(db)}


@router.post("/api/difficulties/evidence")
async def record_gameplay(body: GameplayBatch, request: Request, db=Depends(get_db)):
    """Record one gameplay evaluation per entry for a single student."""
    user = await get_current_user(request, db)
    if user["role"] == "student" and user["id"] != body.student_id:
        raise HTTPException(status_code=403, detail="Access denied")

    foreign = [e.student_id for e in body.entries if e.student_id != body.student_id]
    if foreign:
        raise HTTPException(
            status_code=400,
            detail=f"All entries must belong to student {body.student_id}",
        )

    student = await store.get_user(db, body.student_id)
    if not student or student["role"] != "student":
        raise HTTPException(status_code=404, detail="Student not found")

    for entry in body.entries:
        if not await store.get_difficulty(db, entry.difficulty_id):
            raise HTTPException(status_code=404, detail=f"Difficulty {entry.difficulty_id} not found")

    recorded = []
    for entry in body.entries:
        event = await ledger.record_evidence(
            db, body.student_id, entry.difficulty_id, EvidenceSource.GAMEPLAY, entry.grade
        )
        recorded.append({
            "event_id": event.event_id,
            "difficulty_id": event.difficulty_id,
            "previous_grade": event.previous_grade.value,
            "new_grade": event.new_grade.value,
            "trend": ledger.trend(event.previous_grade, event.new_grade),
        })

    logger.info("Recorded %d gameplay evaluation(s) for student %s", len(recorded), body.student_id)
    return {"student_id": body.student_id, "events": recorded}


@router.get("/api/difficulties/history")
async def ledger_history(
    request: Request,
    student_id: int | None = None,
    difficulty_id: int | None = None,
    source: EvidenceSource | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db=Depends(get_db),
):
    await _require_staff(request, db)
    events = await ledger.get_history(
        db,
        student_id=student_id,
        difficulty_id=difficulty_id,
        source=source,
        date_from=date_from,
        date_to=date_to,
    )
    return {"events": events}


@router.get("/api/difficulties/records")
async def records_snapshot(
    request: Request,
    as_of: datetime | None = None,
    student_id: int | None = None,
    difficulty_id: int | None = None,
    db=Depends(get_db),
):
    """Current grades, or the grades as they stood at `as_of`."""
    await _require_staff(request, db)
    if as_of is None:
        records = await store.list_records(db, student_id=student_id, difficulty_id=difficulty_id)
    else:
        records = await ledger.get_records_as_of(
            db, as_of, student_id=student_id, difficulty_id=difficulty_id
        )
    return {"as_of": as_of.isoformat() if as_of else None, "records": records}


@router.get("/api/students/{student_id}/difficulties")
async def student_difficulties(student_id: int, request: Request, db=Depends(get_db)):
    await require_student_owner(request, student_id, db)
    return {"student_id": student_id, "records": await store.list_records(db, student_id=student_id)}


@router.get("/api/students/{student_id}/difficulties/{difficulty_id}/history")
async def student_difficulty_history(
    student_id: int, difficulty_id: int, request: Request, db=Depends(get_db)
):
    await require_student_owner(request, student_id, db)
    if not await store.get_difficulty(db, difficulty_id):
        raise HTTPException(status_code=404, detail="Difficulty not found")
    current = await ledger.get_current_grade(db, student_id, difficulty_id)
    return {
        "student_id": student_id,
        "difficulty_id": difficulty_id,
        "current_grade": current.value if current else None,
        "events": await ledger.get_history(db, student_id=student_id, difficulty_id=difficulty_id),
    }
