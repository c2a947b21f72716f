"""baseline schema

Revision ID: 4e1c9a7b2d10
Revises: 
Create Date: 2026-10-18 09:12:40.511207

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from neurobridge.database import Base
from neurobridge import models  # noqa: F401  registers every table on Base

# revision identifiers, used by Alembic.
revision: str = "4e1c9a7b2d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, materials, paths, chat, jobs, sagas and gaze tables."""
    bind: Connection = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    """Drop all database objects managed by the metadata."""
    bind: Connection = op.get_bind()
    Base.metadata.drop_all(bind)
