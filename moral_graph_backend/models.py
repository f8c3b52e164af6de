"""
SQLAlchemy models for the moral graph backend.

Canonical values are the deduplicated nodes of the graph; value submissions are
the raw articulations collected from participants; edges are participant votes
and edge hypotheses are generated candidate edges awaiting votes.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime, Boolean,
    ForeignKey, ForeignKeyConstraint, Index, CheckConstraint, UniqueConstraint, ARRAY,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class VoteType(str, enum.Enum):
    """Participant judgment on a proposed upgrade."""

    UPGRADE = "upgrade"
    NO_UPGRADE = "no_upgrade"
    NOT_SURE = "not_sure"


VOTE_TYPE_VALUES = tuple(vote_type.value for vote_type in VoteType)


class Deliberation(Base):
    """Top-level container; every other row is scoped to one deliberation"""
    __tablename__ = "deliberations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    topic = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Question(Base):
    """A moral/political question participants respond to"""
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False)
    title = Column(Text, nullable=False)
    question = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_questions_deliberation', 'deliberation_id'),
    )


class CanonicalValue(Base):
    """Deduplicated value; the node type of the moral graph"""
    __tablename__ = "canonical_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False)

    # Content
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    policies = Column(ARRAY(Text), nullable=False)  # Ordered attention policies

    # OpenAI text-embedding-3-small produces 1536 dimensions
    embedding = Column(ARRAY(Float))

    is_excluded = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_canonical_values_deliberation', 'deliberation_id'),
        Index('idx_canonical_values_created', 'deliberation_id', 'created_at'),
    )


class ValueSubmission(Base):
    """Raw value articulated by one participant, linked to a canonical value by deduplication"""
    __tablename__ = "value_submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False)
    question_id = Column(Integer, ForeignKey('questions.id', ondelete='SET NULL'))
    user_id = Column(Integer)
    chat_id = Column(Text)

    # Content
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    policies = Column(ARRAY(Text), nullable=False)

    embedding = Column(ARRAY(Float))

    # Set once by deduplication, never unset
    canonical_value_id = Column(Integer, ForeignKey('canonical_values.id', ondelete='RESTRICT'))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_value_submissions_deliberation', 'deliberation_id'),
        Index('idx_value_submissions_canonical', 'canonical_value_id'),
        Index('idx_value_submissions_question', 'question_id'),
    )


class Context(Base):
    """Situational qualifier; the text doubles as the natural key"""
    __tablename__ = "contexts"

    id = Column(Text, primary_key=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), primary_key=True)
    created_in_chat_id = Column(Text)

    embedding = Column(ARRAY(Float))

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ContextForQuestion(Base):
    """Which contexts apply to which questions"""
    __tablename__ = "contexts_for_questions"

    context_id = Column(Text, primary_key=True)
    question_id = Column(Integer, ForeignKey('questions.id', ondelete='CASCADE'), primary_key=True)
    deliberation_id = Column(Integer, primary_key=True)

    __table_args__ = (
        ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
            ondelete='CASCADE',
        ),
    )


class Edge(Base):
    """One participant's vote on whether `to` is wiser than `from` in a context"""
    __tablename__ = "edges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(Integer, nullable=False)

    from_value_id = Column(Integer, ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False)
    to_value_id = Column(Integer, ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False)
    context_id = Column(Text, nullable=False)

    type = Column(String(16), nullable=False, default=VoteType.UPGRADE.value)
    comment = Column(Text)
    story = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
        ),
        UniqueConstraint('user_id', 'from_value_id', 'to_value_id', name='uq_edges_user_pair'),
        CheckConstraint("type IN ('upgrade', 'no_upgrade', 'not_sure')", name='valid_edge_type'),
        CheckConstraint('from_value_id <> to_value_id', name='edge_not_self_loop'),
        Index('idx_edges_deliberation', 'deliberation_id'),
        Index('idx_edges_pair', 'from_value_id', 'to_value_id'),
    )


class EdgeHypothesis(Base):
    """Generated candidate upgrade, shown to participants for a vote"""
    __tablename__ = "edge_hypotheses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliberation_id = Column(Integer, ForeignKey('deliberations.id', ondelete='CASCADE'), nullable=False)

    from_value_id = Column(Integer, ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False)
    to_value_id = Column(Integer, ForeignKey('canonical_values.id', ondelete='CASCADE'), nullable=False)
    context_id = Column(Text, nullable=False)

    story = Column(Text)
    hypothesis_run_id = Column(Text, nullable=False)
    archived_at = Column(DateTime(timezone=True))  # Superseded by a later run, kept for audit

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        ForeignKeyConstraint(
            ['context_id', 'deliberation_id'],
            ['contexts.id', 'contexts.deliberation_id'],
        ),
        UniqueConstraint(
            'from_value_id', 'to_value_id', 'context_id', 'deliberation_id',
            name='uq_edge_hypotheses_pair_context',
        ),
        CheckConstraint('from_value_id <> to_value_id', name='hypothesis_not_self_loop'),
        Index('idx_edge_hypotheses_active', 'deliberation_id', 'archived_at'),
        Index('idx_edge_hypotheses_run', 'hypothesis_run_id'),
    )
