from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from app.models.enums import Grade


class AnswerOptionIn(BaseModel):
    text: str
    is_correct: bool = False


class QuestionCreate(BaseModel):
    difficulty_id: int
    grade: Grade
    statement: str
    options: list[AnswerOptionIn]


class QuestionUpdate(BaseModel):
    difficulty_id: Optional[int] = None
    grade: Optional[Grade] = None
    statement: Optional[str] = None
    options: Optional[list[AnswerOptionIn]] = None


class GameplayEvidence(BaseModel):
    student_id: int
    difficulty_id: int
    grade: Grade


class GameplayBatch(BaseModel):
    student_id: int
    entries: list[GameplayEvidence] = Field(min_length=1)


class SessionAssign(BaseModel):
    student_id: int
    difficulty_id: int
    question_ids: list[int] = Field(min_length=1)
    due_at: datetime
    time_limit_min: Optional[int] = Field(default=None, ge=1, le=240)


class AnswerIn(BaseModel):
    question_id: int
    option_id: Optional[int] = None


class AnswerSubmission(BaseModel):
    answers: list[AnswerIn] = []
    finish: bool = False
