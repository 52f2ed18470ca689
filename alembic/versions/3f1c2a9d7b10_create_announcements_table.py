"""create announcements table

Revision ID: 3f1c2a9d7b10
Revises: 
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a9d7b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'announcements',
        sa.Column('seq', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=100), nullable=False),
        sa.Column('target', sa.Enum('students', 'teachers', 'both', name='announcement_target'), nullable=False),
        sa.Column('audience_type', sa.Enum('class', 'student', name='announcement_audience_type'), nullable=True),
        sa.Column('audience_value', sa.String(length=100), nullable=True),
        sa.Column('created_by', sa.String(length=100), nullable=False),
        sa.Column('creator_name', sa.String(length=255), nullable=True),
        sa.Column(
            'creator_role',
            sa.Enum('Owner', 'Principal', 'Teacher', 'Class Teacher', 'Subject Teacher', name='announcement_creator_role'),
            nullable=False,
        ),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attachment_url', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('seq'),
        sqlite_autoincrement=True,
    )
    op.create_index(op.f('ix_announcements_id'), 'announcements', ['id'], unique=True)
    op.create_index('ix_announcements_audience', 'announcements', ['audience_type', 'audience_value'], unique=False)
    op.create_index('ix_announcements_order', 'announcements', ['created_at', 'seq'], unique=False)


def downgrade():
    op.drop_index('ix_announcements_order', table_name='announcements')
    op.drop_index('ix_announcements_audience', table_name='announcements')
    op.drop_index(op.f('ix_announcements_id'), table_name='announcements')
    op.drop_table('announcements')
    sa.Enum(name='announcement_creator_role').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='announcement_audience_type').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='announcement_target').drop(op.get_bind(), checkfirst=True)
