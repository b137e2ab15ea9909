"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
grading helpers and aggregation. Services validate input, execute domain
logic and own the transaction boundary; persistence errors are turned
into `UpstreamFailure` after rolling back.
"""

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .auth import CurrentUser
from .config import settings
from .errors import InvalidInput, MissingAnswerKey, NotFound, UnsupportedType, UpstreamFailure
from .schemas import QuestionFilters
from .utils import aggregation
from .utils.answer_keys import QUESTION_TYPES, MCQ, SPR, AnswerKey, build_answer_key, key_feedback
from .utils.grading import Submission, grade
from .utils.parsers import parse_bank_file

logger = logging.getLogger("satprep.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
TIME_SPENT_MAX_MS = 2**31 - 1
STATUS_PATCH_FIELDS = {
    'marked_for_review': bool,
    'is_done': bool,
    'is_broken': bool,
    'notes': str,
}


@contextmanager
def upstream(session: Session):
    """Roll back and re-raise persistence errors as `UpstreamFailure`."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise UpstreamFailure(str(getattr(exc, 'orig', None) or exc)) from exc


def coerce_time_spent(value) -> Optional[int]:
    """Milliseconds as a non-negative int, or None when not a finite number
    in range."""
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or f < 0 or f > TIME_SPENT_MAX_MS:
        return None
    return int(round(f))


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@dataclass(frozen=True)
class ResolvedQuestion:
    version: models.QuestionVersion
    key: AnswerKey


class AttemptService:
    """Resolve the answer key, grade a submission and record the attempt."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)
        self.status_repo = repositories.StatusRepository(session)

    def resolve(self, question_id: str) -> ResolvedQuestion:
        """Load the served version of `question_id` and its typed key.

        Raises `NotFound` when the question has no version at all,
        `MissingAnswerKey` when the key cannot grade the version and
        `UnsupportedType` for unknown question types.
        """
        with upstream(self.session):
            version = self.q_repo.get_current_version(question_id)
            if version is None:
                raise NotFound('No current version found')
            row = self.q_repo.get_answer_key(version.id)
        return ResolvedQuestion(version=version, key=build_answer_key(version.question_type, row))

    def record(self, user_id: int, question_id: str, question_type: str, submission: Submission,
               is_correct: bool, time_spent_ms) -> Dict[str, int]:
        """Persist the attempt and roll it into the status row atomically.

        The attempt insert and status upsert share one transaction: either
        both are committed or neither is.
        """
        selected = str(submission.selected_option_id) if question_type == MCQ else None
        response = submission.response_text if question_type == SPR else None
        with upstream(self.session):
            self.attempt_repo.add(models.Attempt(
                user_id=user_id,
                question_id=question_id,
                selected_option_id=selected,
                response_text=response,
                is_correct=is_correct,
                time_spent_ms=coerce_time_spent(time_spent_ms),
            ))
            status = self.status_repo.record_attempt(user_id, question_id, is_correct, selected, response)
            counts = {
                'attempts_count': status.attempts_count,
                'correct_attempts_count': status.correct_attempts_count,
            }
            self.session.commit()
        return counts

    def submit(self, user: CurrentUser, question_id: str, selected_option_id: Optional[str] = None,
               response_text: Optional[str] = None, time_spent_ms=None) -> Dict[str, Any]:
        """Grade and record one submission, returning verdict and feedback."""
        resolved = self.resolve(question_id)
        qtype = resolved.version.question_type
        submission = Submission(selected_option_id=selected_option_id, response_text=response_text)
        is_correct = grade(qtype, submission, resolved.key)
        counts = self.record(user.user_id, question_id, qtype, submission, is_correct, time_spent_ms)
        logger.info("attempt_recorded user=%s question=%s correct=%s attempts=%s",
                    user.user_id, question_id, is_correct, counts['attempts_count'])
        return {'ok': True, 'is_correct': is_correct, **counts, **key_feedback(resolved.key)}


class StatusService:
    """Whitelisted patches of a user's status row."""
    def __init__(self, session: Session):
        self.session = session
        self.status_repo = repositories.StatusRepository(session)
        self.q_repo = repositories.QuestionRepository(session)

    @staticmethod
    def sanitize_patch(patch) -> Dict[str, Any]:
        """Keep only whitelisted fields with the expected type.

        Anything else is dropped silently.
        """
        safe = {}
        if not isinstance(patch, dict):
            return safe
        for name, typ in STATUS_PATCH_FIELDS.items():
            value = patch.get(name)
            if isinstance(value, typ):
                safe[name] = value
        return safe

    def apply(self, user: CurrentUser, question_id: str, patch) -> Dict[str, Any]:
        fields = self.sanitize_patch(patch)
        with upstream(self.session):
            if self.q_repo.get(question_id) is None:
                raise NotFound(f'question not found: {question_id}')
            self.status_repo.patch(user.user_id, question_id, fields)
            self.session.commit()
        return {'ok': True}


def _taxonomy_dict(t: Optional[models.QuestionTaxonomy]) -> Optional[dict]:
    if t is None:
        return None
    return {
        'question_id': t.question_id,
        'program': t.program,
        'domain_code': t.domain_code,
        'domain_name': t.domain_name,
        'skill_code': t.skill_code,
        'skill_name': t.skill_name,
        'difficulty': t.difficulty,
        'score_band': t.score_band,
    }


def _status_dict(s: Optional[models.QuestionStatus]) -> Optional[dict]:
    if s is None:
        return None
    return {
        'question_id': s.question_id,
        'is_done': s.is_done,
        'marked_for_review': s.marked_for_review,
        'is_broken': s.is_broken,
        'notes': s.notes,
        'attempts_count': s.attempts_count,
        'correct_attempts_count': s.correct_attempts_count,
        'last_is_correct': s.last_is_correct,
        'last_selected_option_id': s.last_selected_option_id,
        'last_response_text': s.last_response_text,
        'last_attempt_at': s.last_attempt_at,
    }


class QuestionBankService:
    """Question bank list, detail and neighbor navigation."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)
        self.status_repo = repositories.StatusRepository(session)
        self.tax_repo = repositories.TaxonomyRepository(session)

    @staticmethod
    def build_filter(filters: QuestionFilters) -> repositories.BankFilter:
        """Validate query parameters into a `BankFilter`."""
        bands: List[int] = []
        if filters.score_band is not None:
            bands.append(filters.score_band)
        if filters.score_bands:
            for part in filters.score_bands.split(','):
                if not part.strip():
                    continue
                try:
                    bands.append(int(part))
                except ValueError:
                    raise InvalidInput(f'invalid score_bands: {filters.score_bands}')
        if filters.question_type and filters.question_type not in QUESTION_TYPES:
            raise InvalidInput(f'invalid question_type: {filters.question_type}')
        return repositories.BankFilter(
            program=filters.program or settings.DEFAULT_PROGRAM,
            domain_name=filters.domain_name or None,
            skill_name=filters.skill_name or None,
            difficulty=filters.difficulty,
            score_bands=bands or None,
            question_type=filters.question_type or None,
            status=filters.status or None,
            search=filters.search or None,
            sort=filters.sort or 'difficulty',
        )

    def list_questions(self, filters: QuestionFilters, user: Optional[CurrentUser],
                       page: int = 1, page_size: int = repositories.PAGE_SIZE_DEFAULT) -> Dict[str, Any]:
        """Return one page of the filtered, sorted question bank."""
        if page < 1 or page_size < 1:
            raise InvalidInput('page and page_size must be >= 1')
        if page > repositories.PAGE_MAX:
            raise InvalidInput(f'page must be <= {repositories.PAGE_MAX}')
        page_size = min(page_size, repositories.PAGE_SIZE_MAX)
        flt = self.build_filter(filters)
        user_id = user.user_id if user else None
        with upstream(self.session):
            total, rows = self.tax_repo.page(flt, user_id, page, page_size)
        items = []
        for t, qtype, is_done, marked, last_is_correct in rows:
            item = _taxonomy_dict(t)
            item.update({
                'question_type': qtype,
                'is_done': bool(is_done),
                'marked_for_review': bool(marked),
                'last_is_correct': last_is_correct,
            })
            items.append(item)
        return {
            'page': page,
            'page_size': page_size,
            'total': total,
            'items': items,
            'first_question_id': items[0]['question_id'] if items else None,
        }

    def neighbors(self, question_id: str, filters: QuestionFilters, user: Optional[CurrentUser]) -> Dict[str, Any]:
        flt = self.build_filter(filters)
        with upstream(self.session):
            prev_id, next_id = self.tax_repo.neighbors(flt, user.user_id if user else None, question_id)
        return {'prev_id': prev_id, 'next_id': next_id}

    def detail(self, question_id: str, user: Optional[CurrentUser]) -> Dict[str, Any]:
        """Question content, options, taxonomy and the caller's status.

        Answer key fields are only included once the caller has completed
        the question.
        """
        with upstream(self.session):
            version = self.q_repo.get_current_version(question_id)
            if version is None:
                raise NotFound('No current version found for question.')
            options = self.q_repo.list_options(version.id)
            taxonomy = self.q_repo.get_taxonomy(question_id)
            status = self.status_repo.get(user.user_id, question_id) if user else None
            key_row = self.q_repo.get_answer_key(version.id) if status is not None and status.is_done else None
        out = {
            'question_id': question_id,
            'version': {
                'id': version.id,
                'question_id': version.question_id,
                'is_current': version.is_current,
                'question_type': version.question_type,
                'stimulus_html': version.stimulus_html,
                'stem_html': version.stem_html,
                'rationale_html': version.rationale_html,
            },
            'options': [
                {'id': o.id, 'ordinal': o.ordinal, 'label': o.label, 'content_html': o.content_html}
                for o in options
            ],
            'taxonomy': _taxonomy_dict(taxonomy),
            'status': _status_dict(status),
        }
        if status is not None and status.is_done:
            try:
                out.update(key_feedback(build_answer_key(version.question_type, key_row)))
            except (MissingAnswerKey, UnsupportedType) as exc:
                logger.warning("answer key unavailable question=%s: %s", question_id, exc)
        return out

    def filters(self, domain: Optional[str] = None, program: Optional[str] = None) -> Dict[str, Any]:
        """Distinct domains, or distinct skills of `domain`."""
        with upstream(self.session):
            if not domain:
                return {'domains': self.tax_repo.distinct_domains(program)}
            return {'topics': self.tax_repo.distinct_skills(domain, program)}


class ProgressService:
    """Per-user dashboard and review queue."""
    def __init__(self, session: Session):
        self.session = session
        self.status_repo = repositories.StatusRepository(session)
        self.tax_repo = repositories.TaxonomyRepository(session)

    def dashboard(self, user: CurrentUser) -> Dict[str, Any]:
        with upstream(self.session):
            statuses = self.status_repo.list_done(user.user_id)
            taxonomy = self.tax_repo.by_question_ids(list({s.question_id for s in statuses}))
        rows = [
            {'question_id': s.question_id, 'last_is_correct': s.last_is_correct, 'last_attempt_at': s.last_attempt_at}
            for s in statuses
        ]
        tax = {qid: _taxonomy_dict(t) for qid, t in taxonomy.items()}
        return aggregation.summarize(rows, tax)

    def review(self, user: CurrentUser) -> Dict[str, Any]:
        with upstream(self.session):
            rows = self.status_repo.list_marked_with_taxonomy(user.user_id)
        items = []
        for s, t in rows:
            items.append({
                'question_id': s.question_id,
                'attempts_count': s.attempts_count,
                'correct_attempts_count': s.correct_attempts_count,
                'last_is_correct': s.last_is_correct,
                'domain_code': t.domain_code,
                'domain_name': t.domain_name,
                'skill_code': t.skill_code,
                'skill_name': t.skill_name,
                'difficulty': t.difficulty,
                'score_band': t.score_band,
            })
        return {'items': items}


class ImportService:
    """Import a question bank file and persist it to the DB."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)

    def import_bank(self, file_bytes: bytes, filename: str, deduplicate: bool = True, dry_run: bool = False):
        """Parse `filename` contents and create questions with a current version.

        Returns a dictionary with the number of created questions, skipped
        duplicates and any validation `errors` encountered per item. When
        `deduplicate` is False an existing question receives a new current
        version instead of being skipped.
        """
        parsed = parse_bank_file(file_bytes, filename)
        created = 0
        skipped = 0
        errors = []
        warnings = []
        with upstream(self.session):
            for idx, p in enumerate(parsed):
                try:
                    self._validate_item(p)
                except ValueError as e:
                    errors.append({'index': idx, 'error': str(e), 'item': p})
                    continue
                qid = str(p['question_id'])
                if deduplicate and self.q_repo.get(qid) is not None:
                    skipped += 1
                    continue
                try:
                    self._check_option_ids(p)
                except ValueError as e:
                    errors.append({'index': idx, 'error': str(e), 'item': p})
                    continue
                if 'taxonomy' not in p:
                    warnings.append(f'{qid}: no taxonomy, question will not appear in the bank')
                if not dry_run:
                    self._stage(p)
                created += 1
            if not dry_run:
                self.session.commit()
        return {'created': created, 'skipped': skipped, 'errors': errors, 'warnings': warnings}

    def _validate_item(self, p: dict):
        """Validate a parsed bank item and raise ValueError on error."""
        if not isinstance(p, dict):
            raise ValueError('question item must be an object')
        if not p.get('question_id'):
            raise ValueError('missing question_id')
        qtype = p.get('question_type')
        if qtype not in QUESTION_TYPES:
            raise ValueError(f'invalid question_type: {qtype}')
        options = p.get('options') or []
        if not isinstance(options, list):
            raise ValueError('options must be a list')
        if any(not isinstance(o, dict) for o in options):
            raise ValueError('option must be an object')
        ids = [str(o['id']) for o in options if o.get('id')]
        if len(ids) != len(set(ids)):
            raise ValueError('duplicate option id')
        if qtype == MCQ:
            if not options:
                raise ValueError('mcq question requires options')
            labels = {o.get('label') for o in options}
            if p.get('correct_label') is not None and p['correct_label'] not in labels:
                raise ValueError(f"correct_label not among options: {p['correct_label']}")
            if not (p.get('correct_option_id') or p.get('correct_option_ids') or p.get('correct_label')):
                raise ValueError('mcq question requires correct_option_id, correct_option_ids or correct_label')
            if p.get('correct_option_ids') is not None and not isinstance(p['correct_option_ids'], list):
                raise ValueError('correct_option_ids must be a list')
            named = [p['correct_option_id']] if p.get('correct_option_id') is not None else []
            named += p.get('correct_option_ids') or []
            unknown = [str(oid) for oid in named if str(oid) not in ids]
            if unknown:
                raise ValueError(f"correct option ids not among options: {', '.join(unknown)}")
        elif p.get('correct_text') is None:
            raise ValueError('spr question requires correct_text')
        tax = p.get('taxonomy')
        if tax is not None and not isinstance(tax, dict):
            raise ValueError('taxonomy must be an object')

    def _check_option_ids(self, p: dict):
        """Raise ValueError when an option id of `p` is already stored."""
        for o in p.get('options') or []:
            if o.get('id') and self.session.get(models.AnswerOption, str(o['id'])) is not None:
                raise ValueError(f"option id already exists: {o['id']}")

    def _stage(self, p: dict):
        qid = str(p['question_id'])
        program = p.get('program') or settings.DEFAULT_PROGRAM
        options = []
        for i, o in enumerate(p.get('options') or []):
            opt = models.AnswerOption(
                ordinal=o.get('ordinal', i + 1),
                label=o.get('label'),
                content_html=o.get('content_html'),
            )
            if o.get('id'):
                opt.id = str(o['id'])
            options.append(opt)
        key = models.CorrectAnswer(correct_text=p.get('correct_text'))
        if p['question_type'] == MCQ:
            correct_id = p.get('correct_option_id')
            if p.get('correct_label') is not None:
                correct_id = next(o.id for o in options if o.label == p['correct_label'])
            key.correct_option_id = str(correct_id) if correct_id is not None else None
            if p.get('correct_option_ids'):
                key.answer_type = 'multiple_choice'
                key.correct_option_ids = [str(i) for i in p['correct_option_ids']]
            else:
                key.answer_type = 'single_choice'
        taxonomy = None
        tax = p.get('taxonomy')
        if tax is not None:
            taxonomy = models.QuestionTaxonomy(
                question_id=qid,
                program=program,
                domain_code=tax.get('domain_code'),
                domain_name=tax.get('domain_name'),
                skill_code=tax.get('skill_code'),
                skill_name=tax.get('skill_name'),
                difficulty=tax.get('difficulty'),
                score_band=tax.get('score_band'),
            )
        version = models.QuestionVersion(
            question_id=qid,
            question_type=p['question_type'],
            stimulus_html=p.get('stimulus_html'),
            stem_html=p.get('stem_html'),
            rationale_html=p.get('rationale_html'),
        )
        self.q_repo.add_version(models.Question(id=qid, program=program), version, options, key, taxonomy)
