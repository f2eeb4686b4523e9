"""reinforcement_schema_baseline

Question bank, difficulty ledger and reinforcement session tables.
For databases created from schema.sql by hand, stamp this revision:
    alembic stamp 3b9d2c41a7e0

Revision ID: 3b9d2c41a7e0
Revises:
Create Date: 2026-10-19 09:12:40.118305

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "3b9d2c41a7e0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _adapt_sql(sql: str, dialect_name: str) -> str:
    """Adapt DDL for the target database dialect."""
    if dialect_name == "postgresql":
        sql = sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    return sql


def upgrade() -> None:
    """Create the schema from app/db/schema.sql (idempotent: IF NOT EXISTS)."""
    dialect_name = op.get_bind().dialect.name

    schema_path = Path(__file__).resolve().parents[2] / "app" / "db" / "schema.sql"
    for statement in schema_statements(schema_path.read_text()):
        op.execute(sa.text(_adapt_sql(statement, dialect_name)))


def schema_statements(schema_sql: str) -> list[str]:
    """Split schema.sql into single statements for op.execute.

    Comment lines are dropped before splitting so a ';' inside a comment
    cannot cut a statement in two.
    """
    code = "\n".join(
        line for line in schema_sql.splitlines()
        if line.strip() and not line.strip().startswith("--")
    )
    return [s.strip() for s in code.split(";") if s.strip()]


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    tables = [
        "reinforcement_followups",
        "session_results",
        "session_answers",
        "session_questions",
        "difficulty_change_events",
        "reinforcement_sessions",
        "difficulty_records",
        "answer_options",
        "questions",
        "difficulties",
        "users",
    ]
    for table in tables:
        op.execute(sa.text(f"DROP TABLE IF EXISTS {table}"))
