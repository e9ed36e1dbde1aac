"""add security settings and account lockouts

Revision ID: 0002_add_security_settings
Revises: 0001_initial
Create Date: 2025-03-11 10:15:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = '0002_add_security_settings'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'security_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        # 0 disables the auto-logout watcher / the lockout
        sa.Column('auto_logout_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('require_two_factor', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('failed_login_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('lockout_duration_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'account_lockouts',
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(), nullable=True),
        sa.Column('last_failed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    )


def downgrade():
    op.drop_table('account_lockouts')
    op.drop_table('security_settings')
