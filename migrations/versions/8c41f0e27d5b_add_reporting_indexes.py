"""add_reporting_indexes

Indexes behind the ledger and session read models (filters by source,
date range, origin) and the follow-up alert list.

Revision ID: 8c41f0e27d5b
Revises: 3b9d2c41a7e0
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "8c41f0e27d5b"
down_revision: Union[str, Sequence[str], None] = "3b9d2c41a7e0"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ledger history by source and date range
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_difficulty_events_source "
        "ON difficulty_change_events(source, recorded_at)"
    ))

    # session reporting by origin and creation date
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_sessions_origin "
        "ON reinforcement_sessions(origin, created_at)"
    ))
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_sessions_student "
        "ON reinforcement_sessions(student_id, state)"
    ))

    # open follow-up alerts
    op.execute(sa.text(
        "CREATE INDEX IF NOT EXISTS idx_followups_open "
        "ON reinforcement_followups(student_id, difficulty_id, resolved_at)"
    ))


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS idx_followups_open"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_sessions_student"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_sessions_origin"))
    op.execute(sa.text("DROP INDEX IF EXISTS idx_difficulty_events_source"))
