"""Deterministic grading of a submission against a typed answer key."""

from dataclasses import dataclass
from typing import Optional

from ..errors import MissingResponse, MissingSelection, UnsupportedType
from .answer_keys import FreeTextKey, MultiChoiceKey, SingleChoiceKey, MCQ, SPR
from .normalize import normalize


@dataclass(frozen=True)
class Submission:
    selected_option_id: Optional[str] = None
    response_text: Optional[str] = None


def grade(question_type: str, submission: Submission, key) -> bool:
    """Return whether `submission` answers a question of `question_type`.

    Single choice compares option ids exactly (string form, case
    sensitive). Multiple choice accepts any id of the key set. Free text
    is correct when its normalized form equals the normalized form of any
    accepted answer. Unsupported types raise `UnsupportedType`.
    """
    if question_type == MCQ:
        selected = submission.selected_option_id
        if selected is None or str(selected) == '':
            raise MissingSelection('selected_option_id required for mcq')
        if isinstance(key, SingleChoiceKey):
            return str(selected) == key.option_id
        if isinstance(key, MultiChoiceKey):
            return str(selected) in key.option_ids
        raise UnsupportedType('mcq question has a free-text answer key')
    if question_type == SPR:
        text = submission.response_text
        if not isinstance(text, str) or not text.strip():
            raise MissingResponse('response_text required for spr')
        if not isinstance(key, FreeTextKey):
            raise UnsupportedType('spr question has an option answer key')
        given = normalize(text)
        return any(given == normalize(a) for a in key.accepted)
    raise UnsupportedType(f'unsupported question type: {question_type}')
