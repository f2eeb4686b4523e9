"""Shared async helpers for the service tests (in-memory SQLite)."""

from app.db import reinforcement_store as store
from app.models.enums import Topic


async def setup_test_db():
    """Initialize an in-memory database loaded from schema.sql."""
    import aiosqlite
    from app.db.database import apply_schema

    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await apply_schema(db)
    return db


async def create_user(db, name: str, role: str = "student") -> int:
    cursor = await db.execute(
        "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
        (name, f"{name.lower().replace(' ', '.')}@example.com", role),
    )
    await db.commit()
    return cursor.lastrowid


async def create_world(db) -> dict:
    """Two students, a teacher and one difficulty with no questions yet."""
    world = {
        "student_id": await create_user(db, "Ana Student"),
        "other_student_id": await create_user(db, "Beto Student"),
        "teacher_id": await create_user(db, "Carla Teacher", role="teacher"),
    }
    world["difficulty_id"] = await store.insert_difficulty(
        db, "Orden de instrucciones", Topic.SECUENCIA.value, "Pasos fuera de orden"
    )
    world["other_difficulty_id"] = await store.insert_difficulty(
        db, "Condiciones compuestas", Topic.LOGICA.value
    )
    await db.commit()
    return world


def two_options(correct_first: bool = True) -> list:
    return [
        {"text": "Right", "is_correct": correct_first},
        {"text": "Wrong", "is_correct": not correct_first},
    ]


async def add_question(db, difficulty_id: int, grade: str, statement: str, author_id=None) -> dict:
    from app.services import question_bank

    return await question_bank.create_question(
        db,
        difficulty_id=difficulty_id,
        grade=grade,
        statement=statement,
        options=two_options(),
        author_id=author_id,
    )


def correct_option(question: dict) -> int:
    return next(o["id"] for o in question["options"] if o["is_correct"])


def wrong_option(question: dict) -> int:
    return next(o["id"] for o in question["options"] if not o["is_correct"])
