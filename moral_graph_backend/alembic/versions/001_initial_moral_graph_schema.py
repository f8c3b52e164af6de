"""Initial moral graph schema

Revision ID: 001_initial_moral_graph
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_moral_graph'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'deliberations',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('topic', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'questions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('question', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_questions_deliberation', 'questions', ['deliberation_id'])

    op.create_table(
        'canonical_values',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('policies', postgresql.ARRAY(sa.Text), nullable=False),

        # OpenAI text-embedding-3-small produces 1536 dimensions
        sa.Column('embedding', postgresql.ARRAY(sa.Float), nullable=True),

        sa.Column('is_excluded', sa.Boolean, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_canonical_values_deliberation', 'canonical_values', ['deliberation_id'])
    op.create_index('idx_canonical_values_created', 'canonical_values', ['deliberation_id', 'created_at'])

    op.create_table(
        'value_submissions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('question_id', sa.Integer, sa.ForeignKey('questions.id', ondelete='SET NULL')),
        sa.Column('user_id', sa.Integer),
        sa.Column('chat_id', sa.Text),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('policies', postgresql.ARRAY(sa.Text), nullable=False),
        sa.Column('embedding', postgresql.ARRAY(sa.Float), nullable=True),
        sa.Column('canonical_value_id', sa.Integer, sa.ForeignKey('canonical_values.id', ondelete='RESTRICT')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_value_submissions_deliberation', 'value_submissions', ['deliberation_id'])
    op.create_index('idx_value_submissions_canonical', 'value_submissions', ['canonical_value_id'])
    op.create_index('idx_value_submissions_question', 'value_submissions', ['question_id'])

    op.create_table(
        'contexts',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('created_in_chat_id', sa.Text),
        sa.Column('embedding', postgresql.ARRAY(sa.Float), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'contexts_for_questions',
        sa.Column('context_id', sa.Text, primary_key=True),
        sa.Column('question_id', sa.Integer, sa.ForeignKey('questions.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('deliberation_id', sa.Integer, primary_key=True),
        sa.ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
            ondelete='CASCADE',
        ),
    )

    op.create_table(
        'edges',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('from_value_id', sa.Integer, sa.ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_value_id', sa.Integer, sa.ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False),
        sa.Column('context_id', sa.Text, nullable=False),
        sa.Column('type', sa.String(16), nullable=False, server_default='upgrade'),
        sa.Column('comment', sa.Text),
        sa.Column('story', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),

        sa.ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
        ),
        sa.UniqueConstraint('user_id', 'from_value_id', 'to_value_id', name='uq_edges_user_pair'),
        sa.CheckConstraint("type IN ('upgrade', 'no_upgrade', 'not_sure')", name='valid_edge_type'),
        sa.CheckConstraint('from_value_id <> to_value_id', name='edge_not_self_loop'),
    )
    op.create_index('idx_edges_deliberation', 'edges', ['deliberation_id'])
    op.create_index('idx_edges_pair', 'edges', ['from_value_id', 'to_value_id'])

    op.create_table(
        'edge_hypotheses',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deliberation_id', sa.Integer, sa.ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_value_id', sa.Integer, sa.ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_value_id', sa.Integer, sa.ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False),
        sa.Column('context_id', sa.Text, nullable=False),
        sa.Column('story', sa.Text),
        sa.Column('hypothesis_run_id', sa.Text, nullable=False),
        sa.Column('archived_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),

        sa.ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
        ),
        sa.UniqueConstraint(
            'from_value_id', 'to_value_id', 'context_id', 'deliberation_id',
            name='uq_edge_hypotheses_pair_context',
        ),
        sa.CheckConstraint('from_value_id <> to_value_id', name='hypothesis_not_self_loop'),
    )
    op.create_index('idx_edge_hypotheses_active', 'edge_hypotheses', ['deliberation_id', 'archived_at'])
    op.create_index('idx_edge_hypotheses_run', 'edge_hypotheses', ['hypothesis_run_id'])


def downgrade():
    op.drop_table('edge_hypotheses')
    op.drop_table('edges')
    op.drop_table('contexts_for_questions')
    op.drop_table('contexts')
    op.drop_table('value_submissions')
    op.drop_table('canonical_values')
    op.drop_table('questions')
    op.drop_table('deliberations')
