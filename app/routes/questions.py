"""Question bank endpoints (teachers and admins author, everyone reads)."""

import logging
from fastapi import APIRouter, Depends, Query, Request
from app.db.database import get_db
from app.models.enums import Grade
from app.models.reinforcement import QuestionCreate, QuestionUpdate
from app.routes.auth import get_current_user, require_role
from app.services import question_bank

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/questions", tags=["questions"])

_require_author = require_role("teacher", "admin")


def _strip_answers(question: dict) -> dict:
    for option in question.get("options", []):
        option.pop("is_correct", None)
    return question


@router.post("", status_code=201)
async def create_question(body: QuestionCreate, request: Request, db=Depends(get_db)):
    user = await _require_author(request, db)
    # Admin-authored questions join the system pool fed to automatic sessions
    author_id = None if user["role"] == "admin" else user["id"]
    return await question_bank.create_question(
        db,
        difficulty_id=body.difficulty_id,
        grade=body.grade,
        statement=body.statement,
        options=[o.model_dump() for o in body.options],
        author_id=author_id,
    )


@router.get("")
async def list_questions(
    request: Request,
    difficulty_id: int | None = None,
    grade: Grade | None = None,
    source: str | None = Query(None, pattern="^(system|teacher)$"),
    search: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db=Depends(get_db),
):
    user = await get_current_user(request, db)
    questions = await question_bank.list_questions(
        db,
        difficulty_id=difficulty_id,
        grade=grade.value if grade else None,
        system_only=None if source is None else source == "system",
        search=search,
        limit=limit,
        offset=offset,
    )
    if user["role"] == "student":
        questions = [_strip_answers(q) for q in questions]
    return {"questions": questions, "limit": limit, "offset": offset}


@router.get("/{question_id}")
async def get_question(question_id: int, request: Request, db=Depends(get_db)):
    user = await get_current_user(request, db)
    question = await question_bank.get_question(db, question_id)
    if user["role"] == "student":
        question = _strip_answers(question)
    return question


@router.patch("/{question_id}")
async def update_question(question_id: int, body: QuestionUpdate, request: Request, db=Depends(get_db)):
    await _require_author(request, db)
    patch = body.model_dump(exclude_none=True)
    if body.options is not None:
        patch["options"] = [o.model_dump() for o in body.options]
    return await question_bank.update_question(db, question_id, patch)


@router.delete("/{question_id}", status_code=204)
async def delete_question(question_id: int, request: Request, db=Depends(get_db)):
    user = await _require_author(request, db)
    await question_bank.soft_delete_question(db, question_id)
    logger.info("Question %s deleted by user %s", question_id, user["id"])
