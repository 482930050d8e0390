"""state store: delta sync hashes and execution records

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00
"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

EXECUTION_STATUS = sa.Enum(
    "RUNNING", "SUCCESS", "PARTIAL_SUCCESS", "FAILED", "CANCELLED",
    name="executionstatus"
)


def _pk():
    return sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True)


def upgrade():
    op.create_table(
        "delta_sync_state",
        _pk(),
        sa.Column("profile_id", sa.String(100), nullable=False),
        sa.Column("reef_id", sa.String(450), nullable=False),
        sa.Column("row_hash", sa.String(128), nullable=False),
        sa.Column("last_seen_execution_id", sa.String(36), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index("idx_delta_sync_profile_reef", "delta_sync_state", ["profile_id", "reef_id"], unique=True)
    op.create_index("idx_delta_sync_profile_deleted", "delta_sync_state", ["profile_id", "is_deleted"])

    op.create_table(
        "delta_sync_schema",
        sa.Column("profile_id", sa.String(100), primary_key=True),
        sa.Column("fingerprint", sa.String(128), nullable=False),
        sa.Column("columns", sa.String(4000), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "import_executions",
        _pk(),
        sa.Column("execution_id", sa.String(36), nullable=False),
        sa.Column("profile_id", sa.String(100), nullable=False),
        sa.Column("status", EXECUTION_STATUS, nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("rows_read", sa.Integer(), nullable=True),
        sa.Column("rows_inserted", sa.Integer(), nullable=True),
        sa.Column("rows_updated", sa.Integer(), nullable=True),
        sa.Column("rows_skipped", sa.Integer(), nullable=True),
        sa.Column("rows_deleted", sa.Integer(), nullable=True),
        sa.Column("rows_failed", sa.Integer(), nullable=True),
        sa.Column("files_processed", sa.Integer(), nullable=True),
        sa.Column("bytes_processed", sa.BigInteger(), nullable=True),
        sa.Column("delta_new", sa.Integer(), nullable=True),
        sa.Column("delta_changed", sa.Integer(), nullable=True),
        sa.Column("delta_unchanged", sa.Integer(), nullable=True),
        sa.Column("delta_deleted", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("phase_timings", sa.JSON(), nullable=True),
    )
    op.create_index("ix_import_executions_execution_id", "import_executions", ["execution_id"], unique=True)
    op.create_index("ix_import_executions_profile_id", "import_executions", ["profile_id"])
    op.create_index("ix_import_executions_status", "import_executions", ["status"])
    op.create_index("ix_import_executions_started_at", "import_executions", ["started_at"])
    op.create_index("idx_import_execution_profile_started", "import_executions", ["profile_id", "started_at"])

    op.create_table(
        "import_execution_errors",
        _pk(),
        sa.Column(
            "execution_pk",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            sa.ForeignKey("import_executions.id", ondelete="CASCADE"),
            nullable=False
        ),
        sa.Column("row_number", sa.Integer(), nullable=True),
        sa.Column("reef_id", sa.String(450), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("file_identifier", sa.String(1000), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_import_execution_errors_execution_pk", "import_execution_errors", ["execution_pk"])


def downgrade():
    op.drop_table("import_execution_errors")
    op.drop_table("import_executions")
    op.drop_table("delta_sync_schema")
    op.drop_table("delta_sync_state")
    EXECUTION_STATUS.drop(op.get_bind(), checkfirst=True)
