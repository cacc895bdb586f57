"""settlement_cascades

Revision ID: 0002_settlement_cascades
Revises: 0001_job_runs
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_settlement_cascades"
down_revision = "0001_job_runs"
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS settlement_cascades (
          group_id UUID PRIMARY KEY REFERENCES jackpot_groups(id) ON DELETE CASCADE,
          status VARCHAR(20) NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          cycles_updated INTEGER,
          cycles_won_now INTEGER,
          last_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          CONSTRAINT settlement_cascades_status_chk CHECK (status IN ('ok', 'failed'))
        )
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_settlement_cascades_failed
        ON settlement_cascades(last_attempt_at)
        WHERE status = 'failed'
        """
    )


def downgrade():
    op.execute("DROP INDEX IF EXISTS idx_settlement_cascades_failed")
    op.execute("DROP TABLE IF EXISTS settlement_cascades")
