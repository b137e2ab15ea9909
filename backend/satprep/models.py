"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Questions are versioned: grading and display always go through the
current `QuestionVersion`, its `AnswerOption`s and its `CorrectAnswer`.
Per-user progress lives in the append-only `Attempt` table and the
`QuestionStatus` rollup.
"""

import uuid
from typing import Any, List, Optional
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    __tablename__ = "users"
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=_now)


class Question(SQLModel, table=True):
    """Stable question identity; content lives on its versions."""
    __tablename__ = "questions"
    id: str = Field(default_factory=_new_id, primary_key=True)
    program: str = Field(default="SAT", index=True)
    created_at: datetime = Field(default_factory=_now)
    versions: List['QuestionVersion'] = Relationship(back_populates='question')


class QuestionVersion(SQLModel, table=True):
    """One authored revision of a question.

    `question_type` is `mcq` (single choice) or `spr` (student produced
    response). Exactly one version per question is expected to carry
    `is_current`.
    """
    __tablename__ = "question_versions"
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: str = Field(foreign_key='questions.id', index=True)
    is_current: bool = Field(default=True, index=True)
    question_type: str
    stimulus_html: Optional[str] = None
    stem_html: Optional[str] = None
    rationale_html: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    question: Optional[Question] = Relationship(back_populates='versions')
    options: List['AnswerOption'] = Relationship(back_populates='version')


class AnswerOption(SQLModel, table=True):
    """A selectable choice of an `mcq` version."""
    __tablename__ = "answer_options"
    id: str = Field(default_factory=_new_id, primary_key=True)
    question_version_id: int = Field(foreign_key='question_versions.id', index=True)
    ordinal: int = 0
    label: Optional[str] = None
    content_html: Optional[str] = None
    version: Optional[QuestionVersion] = Relationship(back_populates='options')


class CorrectAnswer(SQLModel, table=True):
    """Answer key of a version.

    `correct_text` is stored as JSON so it may hold a plain string, a
    string that itself encodes a JSON array, or a list of strings.
    """
    __tablename__ = "correct_answers"
    id: Optional[int] = Field(default=None, primary_key=True)
    question_version_id: int = Field(foreign_key='question_versions.id', index=True)
    answer_type: Optional[str] = None
    correct_option_id: Optional[str] = None
    correct_option_ids: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    correct_text: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_now)


class QuestionTaxonomy(SQLModel, table=True):
    """Read-only classification used for filtering, sorting and reports."""
    __tablename__ = "question_taxonomy"
    question_id: str = Field(foreign_key='questions.id', primary_key=True)
    program: str = Field(default="SAT", index=True)
    domain_code: Optional[str] = None
    domain_name: Optional[str] = Field(default=None, index=True)
    skill_code: Optional[str] = None
    skill_name: Optional[str] = Field(default=None, index=True)
    difficulty: Optional[int] = Field(default=None, index=True)
    score_band: Optional[int] = Field(default=None, index=True)


class Attempt(SQLModel, table=True):
    """An immutable graded submission. Rows are never updated."""
    __tablename__ = "attempts"
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='users.id', index=True)
    question_id: str = Field(foreign_key='questions.id', index=True)
    selected_option_id: Optional[str] = None
    response_text: Optional[str] = None
    is_correct: bool = False
    time_spent_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=_now)


class QuestionStatus(SQLModel, table=True):
    """Mutable per-(user, question) rollup of attempts and review flags."""
    __tablename__ = "question_status"
    __table_args__ = (UniqueConstraint('user_id', 'question_id', name='uq_question_status_user_question'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='users.id', index=True)
    question_id: str = Field(foreign_key='questions.id', index=True)
    is_done: bool = False
    marked_for_review: bool = False
    is_broken: bool = False
    notes: Optional[str] = None
    attempts_count: int = 0
    correct_attempts_count: int = 0
    last_is_correct: Optional[bool] = None
    last_selected_option_id: Optional[str] = None
    last_response_text: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
