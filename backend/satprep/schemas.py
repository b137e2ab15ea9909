"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class AttemptIn(BaseModel):
    """A single submitted answer.

    `time_spent_ms` is accepted loosely (number or numeric string) and
    coerced by the recorder; unparseable values are stored as null.
    """
    question_id: str = Field(min_length=1)
    selected_option_id: Optional[str] = None
    response_text: Optional[str] = None
    time_spent_ms: Optional[Union[float, str]] = None


class AttemptOut(BaseModel):
    ok: bool = True
    is_correct: bool
    attempts_count: int
    correct_attempts_count: int
    correct_option_id: Optional[str] = None
    correct_option_ids: Optional[List[str]] = None
    correct_text: Optional[List[str]] = None


class StatusIn(BaseModel):
    """Status patch request.

    `patch` is kept as a raw mapping: unknown keys and wrongly typed
    values are dropped by the service instead of failing validation.
    """
    question_id: str = Field(min_length=1)
    patch: Dict[str, Any] = Field(default_factory=dict)


class QuestionFilters(BaseModel):
    """Query parameters shared by the question list and neighbor lookups."""
    program: Optional[str] = None
    domain_name: Optional[str] = None
    skill_name: Optional[str] = None
    difficulty: Optional[int] = None
    score_band: Optional[int] = None
    score_bands: Optional[str] = None
    question_type: Optional[str] = None
    status: Optional[str] = None
    search: Optional[str] = None
    sort: str = "difficulty"


class ImportSummary(BaseModel):
    created: int
    skipped: int
    errors: List[Dict[str, Any]]
    warnings: List[str]
