"""Answer key shapes and the coercion of stored key rows into them.

A stored `CorrectAnswer` row can describe a single option, a set of
options or one-or-many accepted texts (possibly JSON-encoded). It is
turned into exactly one of the key classes below at the resolver
boundary so grading never has to look at raw rows.
"""

import json
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple, Union

from ..errors import MissingAnswerKey, UnsupportedType

MCQ = "mcq"
SPR = "spr"
QUESTION_TYPES = (MCQ, SPR)


@dataclass(frozen=True)
class SingleChoiceKey:
    option_id: str


@dataclass(frozen=True)
class MultiChoiceKey:
    option_ids: FrozenSet[str]


@dataclass(frozen=True)
class FreeTextKey:
    accepted: Tuple[str, ...]


AnswerKey = Union[SingleChoiceKey, MultiChoiceKey, FreeTextKey]


def coerce_accepted_answers(raw) -> List[str]:
    """Turn a stored `correct_text` value into an ordered list of answers.

    - list: used as-is (entries stringified)
    - string shaped like a JSON array: parsed; kept literal if parsing fails
    - any other string: a single accepted answer
    - None: no accepted answers
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(a) for a in raw if a is not None]
    s = str(raw)
    stripped = s.strip()
    if stripped.startswith('[') and stripped.endswith(']'):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            return [s]
        if isinstance(parsed, list):
            return [str(a) for a in parsed if a is not None]
    return [s]


def build_answer_key(question_type: Optional[str], row) -> AnswerKey:
    """Build the typed key for a version from its `CorrectAnswer` row.

    `row` may be None when the version has no key at all. Raises
    `MissingAnswerKey` when the row cannot grade the question type and
    `UnsupportedType` for unknown question types.
    """
    if question_type == MCQ:
        if row is not None and row.answer_type == 'multiple_choice' and row.correct_option_ids:
            return MultiChoiceKey(option_ids=frozenset(str(i) for i in row.correct_option_ids))
        if row is None or row.correct_option_id in (None, ''):
            raise MissingAnswerKey('missing answer key: no correct_option_id for mcq question')
        return SingleChoiceKey(option_id=str(row.correct_option_id))
    if question_type == SPR:
        if row is None:
            raise MissingAnswerKey('missing answer key: no correct_text for spr question')
        return FreeTextKey(accepted=tuple(coerce_accepted_answers(row.correct_text)))
    raise UnsupportedType(f'unsupported question type: {question_type}')


def key_feedback(key: AnswerKey) -> dict:
    """Return the key fields shown to a user after answering."""
    if isinstance(key, SingleChoiceKey):
        return {'correct_option_id': key.option_id}
    if isinstance(key, MultiChoiceKey):
        return {'correct_option_ids': sorted(key.option_ids)}
    return {'correct_text': list(key.accepted)}
