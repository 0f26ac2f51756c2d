"""Create privacy workflow tables.

consent_records, privacy_requests, privacy_audit_log, breach_records.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'consent_records',
        sa.Column('sequence', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('id', sa.String(32), nullable=False, unique=True),
        sa.Column('subject_id', sa.String(128), nullable=False),
        sa.Column('purpose', sa.String(50), nullable=False),
        sa.Column('legal_basis', sa.String(30), nullable=False),
        sa.Column('given', sa.Boolean, nullable=False),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.String(10), nullable=False, server_default='1.0'),
        sa.Column('metadata', postgresql.JSONB, nullable=False, server_default='{}'),
    )
    op.create_index(
        'ix_consent_records_subject_purpose',
        'consent_records',
        ['subject_id', 'purpose', 'recorded_at'],
    )

    op.create_table(
        'privacy_requests',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('kind', sa.String(20), nullable=False,
                  comment='access | rectification | erasure | portability'),
        sa.Column('subject_id', sa.String(128), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending',
                  comment='pending | in_progress | completed | failed | rejected'),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('deadline_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason_code', sa.String(64), nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('result', postgresql.JSONB, nullable=True),
        sa.Column('actor', sa.String(128), nullable=True),
    )
    op.create_index('ix_privacy_requests_subject_id', 'privacy_requests', ['subject_id'])
    op.create_index('ix_privacy_requests_status', 'privacy_requests', ['status'])

    op.create_table(
        'privacy_audit_log',
        sa.Column('sequence', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('event', sa.String(128), nullable=False),
        sa.Column('actor', sa.String(128), nullable=False),
        sa.Column('subject_id', sa.String(128), nullable=True),
        sa.Column('request_id', sa.String(32), nullable=True),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('payload_hash', sa.String(64), nullable=False),
    )
    op.create_index('ix_privacy_audit_log_event', 'privacy_audit_log', ['event'])
    op.create_index(
        'ix_privacy_audit_log_subject_time',
        'privacy_audit_log',
        ['subject_id', 'recorded_at'],
    )

    # Append-only: reject UPDATE and DELETE at the database level too.
    op.execute("""
        CREATE OR REPLACE FUNCTION privacy_audit_log_immutable()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'privacy_audit_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER privacy_audit_log_no_update
        BEFORE UPDATE OR DELETE ON privacy_audit_log
        FOR EACH ROW EXECUTE FUNCTION privacy_audit_log_immutable();
    """)

    op.create_table(
        'breach_records',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('breach_type', sa.String(40), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notify_by', sa.DateTime(timezone=True), nullable=False),
        sa.Column('affected_subjects', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('regulator_notification', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('user_notification', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('event', postgresql.JSONB, nullable=False, server_default='{}'),
    )
    op.create_index('ix_breach_records_detected_at', 'breach_records', ['detected_at'])


def downgrade() -> None:
    op.drop_index('ix_breach_records_detected_at', table_name='breach_records')
    op.drop_table('breach_records')

    op.execute("DROP TRIGGER IF EXISTS privacy_audit_log_no_update ON privacy_audit_log")
    op.execute("DROP FUNCTION IF EXISTS privacy_audit_log_immutable()")
    op.drop_index('ix_privacy_audit_log_subject_time', table_name='privacy_audit_log')
    op.drop_index('ix_privacy_audit_log_event', table_name='privacy_audit_log')
    op.drop_table('privacy_audit_log')

    op.drop_index('ix_privacy_requests_status', table_name='privacy_requests')
    op.drop_index('ix_privacy_requests_subject_id', table_name='privacy_requests')
    op.drop_table('privacy_requests')

    op.drop_index('ix_consent_records_subject_purpose', table_name='consent_records')
    op.drop_table('consent_records')
