"""Initial schema for the CBT platform.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op

from db import SCHEMA_STATEMENTS, SCHEMA_TABLES


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create every table and index the application uses."""
    for statement in SCHEMA_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    """Drop all tables, dependants first."""
    for table in SCHEMA_TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table}')
