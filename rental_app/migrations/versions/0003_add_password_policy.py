"""add password policy settings and password history

Revision ID: 0003_add_password_policy
Revises: 0002_add_security_settings
Create Date: 2025-04-02 09:40:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = '0003_add_password_policy'
down_revision = '0002_add_security_settings'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('security_settings') as batch_op:
        batch_op.add_column(sa.Column('password_expiry_days', sa.Integer(), nullable=False, server_default='90'))
        batch_op.add_column(sa.Column('password_history_count', sa.Integer(), nullable=False, server_default='5'))
        batch_op.add_column(sa.Column('min_password_length', sa.Integer(), nullable=False, server_default='8'))
        batch_op.add_column(sa.Column('require_uppercase', sa.Boolean(), nullable=False, server_default=sa.true()))
        batch_op.add_column(sa.Column('require_lowercase', sa.Boolean(), nullable=False, server_default=sa.true()))
        batch_op.add_column(sa.Column('require_number', sa.Boolean(), nullable=False, server_default=sa.true()))
        batch_op.add_column(sa.Column('require_special_char', sa.Boolean(), nullable=False, server_default=sa.true()))

    op.create_table(
        'password_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    )
    op.create_index('ix_password_history_user_id', 'password_history', ['user_id'])


def downgrade():
    op.drop_index('ix_password_history_user_id', table_name='password_history')
    op.drop_table('password_history')
    with op.batch_alter_table('security_settings') as batch_op:
        for column in (
            'require_special_char', 'require_number', 'require_lowercase', 'require_uppercase',
            'min_password_length', 'password_history_count', 'password_expiry_days',
        ):
            batch_op.drop_column(column)
