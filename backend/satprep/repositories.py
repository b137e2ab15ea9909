"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
questions, attempts, status rows, taxonomy). Repositories never commit
on behalf of multi-step operations; services own the transaction
boundary so an attempt and its status update land together.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlmodel import Session, select
from sqlalchemy import and_, func, or_
from sqlalchemy.dialects import postgresql, sqlite

from . import models
from .errors import InvalidInput

PAGE_SIZE_DEFAULT = 25
PAGE_SIZE_MAX = 100
PAGE_MAX = 1_000_000
STATUS_BUCKETS = ('unattempted', 'done', 'marked', 'correct', 'incorrect')
SORT_MODES = ('difficulty', 'score_band', 'topic')


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_insert(session: Session):
    """Return the `insert` construct that supports ON CONFLICT for this engine."""
    if session.get_bind().dialect.name == 'postgresql':
        return postgresql.insert
    return sqlite.insert


@dataclass
class BankFilter:
    """Resolved, validated list-view filter."""
    program: str
    domain_name: Optional[str] = None
    skill_name: Optional[str] = None
    difficulty: Optional[int] = None
    score_bands: Optional[List[int]] = None
    question_type: Optional[str] = None
    status: Optional[str] = None
    search: Optional[str] = None
    sort: str = 'difficulty'

    def __post_init__(self):
        if self.sort not in SORT_MODES:
            raise InvalidInput(f"invalid sort: {self.sort}")
        if self.status is not None and self.status not in STATUS_BUCKETS:
            raise InvalidInput(f"invalid status: {self.status}")


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class QuestionRepository:
    """Read access to questions, their versions, options and keys."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, question_id: str) -> Optional[models.Question]:
        return self.session.get(models.Question, question_id)

    def get_current_version(self, question_id: str) -> Optional[models.QuestionVersion]:
        """Return the version to serve for `question_id`.

        The newest version flagged current wins; when none is flagged the
        most recently created version is used instead.
        """
        V = models.QuestionVersion
        stmt = (
            select(V)
            .where(V.question_id == question_id)
            .order_by(V.is_current.desc(), V.created_at.desc(), V.id.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()

    def list_options(self, version_id: int) -> List[models.AnswerOption]:
        stmt = (
            select(models.AnswerOption)
            .where(models.AnswerOption.question_version_id == version_id)
            .order_by(models.AnswerOption.ordinal, models.AnswerOption.id)
        )
        return self.session.exec(stmt).all()

    def get_answer_key(self, version_id: int) -> Optional[models.CorrectAnswer]:
        """Newest `CorrectAnswer` row of a version, if any."""
        C = models.CorrectAnswer
        stmt = (
            select(C)
            .where(C.question_version_id == version_id)
            .order_by(C.created_at.desc(), C.id.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()

    def get_taxonomy(self, question_id: str) -> Optional[models.QuestionTaxonomy]:
        return self.session.get(models.QuestionTaxonomy, question_id)

    def add_version(self, question: models.Question, version: models.QuestionVersion,
                    options: Sequence[models.AnswerOption], key: Optional[models.CorrectAnswer],
                    taxonomy: Optional[models.QuestionTaxonomy]) -> models.QuestionVersion:
        """Stage a question with a new current version (no commit).

        Earlier current versions of the question are demoted so the
        one-current-version invariant holds.
        """
        if self.session.get(models.Question, question.id) is None:
            self.session.add(question)
        V = models.QuestionVersion
        for old in self.session.exec(select(V).where(V.question_id == question.id, V.is_current == True)).all():  # noqa: E712
            old.is_current = False
            self.session.add(old)
        version.question_id = question.id
        version.is_current = True
        self.session.add(version)
        self.session.flush()
        for o in options:
            o.question_version_id = version.id
            self.session.add(o)
        if key is not None:
            key.question_version_id = version.id
            self.session.add(key)
        if taxonomy is not None:
            taxonomy.question_id = question.id
            self.session.merge(taxonomy)
        self.session.flush()
        return version


class AttemptRepository:
    """Append-only storage of graded attempts."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, attempt: models.Attempt) -> models.Attempt:
        """Stage an attempt row; the caller commits."""
        self.session.add(attempt)
        self.session.flush()
        return attempt


class StatusRepository:
    """Per-(user, question) status rows, always written through upserts."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int, question_id: str) -> Optional[models.QuestionStatus]:
        S = models.QuestionStatus
        stmt = select(S).where(S.user_id == user_id, S.question_id == question_id)
        return self.session.exec(stmt).first()

    def record_attempt(self, user_id: int, question_id: str, is_correct: bool,
                       selected_option_id: Optional[str], response_text: Optional[str]) -> models.QuestionStatus:
        """Upsert the status row for a newly recorded attempt.

        Counters are incremented by the database inside the conflict
        update, so concurrent submissions for the same pair cannot lose
        an increment. `marked_for_review`, `is_broken` and `notes` are
        left untouched on existing rows.
        """
        table = models.QuestionStatus.__table__
        now = _now()
        insert = _dialect_insert(self.session)
        stmt = insert(table).values(
            user_id=user_id,
            question_id=question_id,
            is_done=True,
            marked_for_review=False,
            is_broken=False,
            attempts_count=1,
            correct_attempts_count=1 if is_correct else 0,
            last_is_correct=is_correct,
            last_selected_option_id=selected_option_id,
            last_response_text=response_text,
            last_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['user_id', 'question_id'],
            set_={
                'is_done': True,
                'attempts_count': table.c.attempts_count + 1,
                'correct_attempts_count': table.c.correct_attempts_count + (1 if is_correct else 0),
                'last_is_correct': stmt.excluded.last_is_correct,
                'last_selected_option_id': stmt.excluded.last_selected_option_id,
                'last_response_text': stmt.excluded.last_response_text,
                'last_attempt_at': stmt.excluded.last_attempt_at,
                'updated_at': stmt.excluded.updated_at,
            },
        )
        self.session.connection().execute(stmt)
        row = self.get(user_id, question_id)
        self.session.refresh(row)
        return row

    def patch(self, user_id: int, question_id: str, fields: Dict[str, object]) -> None:
        """Upsert only `fields` (plus `updated_at`) on the status row."""
        table = models.QuestionStatus.__table__
        now = _now()
        insert = _dialect_insert(self.session)
        values = {
            'user_id': user_id,
            'question_id': question_id,
            'is_done': False,
            'marked_for_review': False,
            'is_broken': False,
            'attempts_count': 0,
            'correct_attempts_count': 0,
            'created_at': now,
            'updated_at': now,
        }
        values.update(fields)
        stmt = insert(table).values(**values)
        update = {name: getattr(stmt.excluded, name) for name in fields}
        update['updated_at'] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=['user_id', 'question_id'], set_=update)
        self.session.connection().execute(stmt)

    def list_done(self, user_id: int, limit: int = 5000) -> List[models.QuestionStatus]:
        S = models.QuestionStatus
        stmt = (
            select(S)
            .where(S.user_id == user_id, S.is_done == True)  # noqa: E712
            .order_by(S.last_attempt_at.desc().nulls_last(), S.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def list_marked_with_taxonomy(self, user_id: int, limit: int = 200):
        """Marked rows of `user_id` joined (inner) with taxonomy, newest first."""
        S = models.QuestionStatus
        T = models.QuestionTaxonomy
        stmt = (
            select(S, T)
            .join(T, T.question_id == S.question_id)
            .where(S.user_id == user_id, S.marked_for_review == True)  # noqa: E712
            .order_by(S.updated_at.desc(), S.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()


class TaxonomyRepository:
    """Filtered, sorted projections over taxonomy, versions and status."""
    def __init__(self, session: Session):
        self.session = session

    def by_question_ids(self, question_ids: Sequence[str]) -> Dict[str, models.QuestionTaxonomy]:
        if not question_ids:
            return {}
        T = models.QuestionTaxonomy
        rows = self.session.exec(select(T).where(T.question_id.in_(list(question_ids)))).all()
        return {t.question_id: t for t in rows}

    def distinct_domains(self, program: Optional[str] = None) -> List[dict]:
        T = models.QuestionTaxonomy
        stmt = select(T.domain_name, T.domain_code).where(T.domain_name.is_not(None)).distinct()
        if program:
            stmt = stmt.where(T.program == program)
        rows = self.session.exec(stmt).all()
        out = [{'domain_name': name, 'domain_code': code} for name, code in rows]
        return sorted(out, key=lambda d: (str(d['domain_name']).casefold(), d['domain_code'] or ''))

    def distinct_skills(self, domain_name: str, program: Optional[str] = None) -> List[dict]:
        T = models.QuestionTaxonomy
        stmt = (
            select(T.skill_name, T.skill_code)
            .where(T.domain_name == domain_name, T.skill_name.is_not(None))
            .distinct()
        )
        if program:
            stmt = stmt.where(T.program == program)
        rows = self.session.exec(stmt).all()
        out = [{'skill_name': name, 'skill_code': code} for name, code in rows]
        return sorted(out, key=lambda d: (str(d['skill_name']).casefold(), d['skill_code'] or ''))

    def _served_versions(self):
        """One row per question: its current version, or newest as fallback."""
        V = models.QuestionVersion
        rank = func.row_number().over(
            partition_by=V.question_id,
            order_by=(V.is_current.desc(), V.created_at.desc(), V.id.desc()),
        )
        return select(
            V.question_id.label('question_id'),
            V.question_type.label('question_type'),
            V.stem_html.label('stem_html'),
            rank.label('rn'),
        ).subquery('served_versions')

    def _order_by(self, sort: str):
        T = models.QuestionTaxonomy
        difficulty = T.difficulty.asc().nulls_last()
        score_band = T.score_band.asc().nulls_last()
        skill = T.skill_name.asc().nulls_last()
        if sort == 'score_band':
            keys = [score_band, difficulty, skill]
        elif sort == 'topic':
            keys = [skill, difficulty, score_band]
        else:
            keys = [difficulty, score_band, skill]
        return keys + [T.question_id.asc()]

    def _filtered(self, flt: BankFilter, user_id: Optional[int], columns):
        """Select `columns` over the filtered taxonomy/version/status join."""
        T = models.QuestionTaxonomy
        S = models.QuestionStatus
        V = self._served_versions()
        stmt = (
            select(*columns(T, V, S))
            .join(V, and_(V.c.question_id == T.question_id, V.c.rn == 1))
            .where(T.program == flt.program)
        )
        if user_id is not None:
            stmt = stmt.outerjoin(S, and_(S.question_id == T.question_id, S.user_id == user_id))
        if flt.domain_name:
            stmt = stmt.where(T.domain_name == flt.domain_name)
        if flt.skill_name:
            stmt = stmt.where(T.skill_name == flt.skill_name)
        if flt.difficulty is not None:
            stmt = stmt.where(T.difficulty == flt.difficulty)
        if flt.score_bands:
            stmt = stmt.where(T.score_band.in_(flt.score_bands))
        if flt.question_type:
            stmt = stmt.where(V.c.question_type == flt.question_type)
        if flt.search:
            pattern = f"%{flt.search.strip()}%"
            stmt = stmt.where(or_(
                T.domain_name.ilike(pattern),
                T.skill_name.ilike(pattern),
                V.c.stem_html.ilike(pattern),
            ))
        if flt.status and user_id is not None:
            if flt.status == 'unattempted':
                stmt = stmt.where(or_(S.id.is_(None), S.is_done == False))  # noqa: E712
            elif flt.status == 'done':
                stmt = stmt.where(S.is_done == True)  # noqa: E712
            elif flt.status == 'marked':
                stmt = stmt.where(S.marked_for_review == True)  # noqa: E712
            elif flt.status == 'correct':
                stmt = stmt.where(S.last_is_correct == True)  # noqa: E712
            elif flt.status == 'incorrect':
                stmt = stmt.where(S.last_is_correct == False)  # noqa: E712
        return stmt

    def page(self, flt: BankFilter, user_id: Optional[int], page: int, page_size: int):
        """Return `(total, rows)` for one page of the filtered, sorted set.

        Each row is `(taxonomy, question_type, is_done, marked_for_review,
        last_is_correct)`; status columns are None for anonymous callers.
        """
        def columns(T, V, S):
            cols = [T, V.c.question_type]
            if user_id is None:
                return cols
            return cols + [S.is_done, S.marked_for_review, S.last_is_correct]

        count_stmt = select(func.count()).select_from(
            self._filtered(flt, user_id, lambda T, V, S: [T.question_id]).subquery()
        )
        total = self.session.exec(count_stmt).one()
        offset = (page - 1) * page_size
        stmt = self._filtered(flt, user_id, columns).order_by(*self._order_by(flt.sort)).offset(offset).limit(page_size)
        rows = []
        for r in self.session.exec(stmt).all():
            if user_id is None:
                rows.append((r[0], r[1], None, None, None))
            else:
                rows.append(tuple(r))
        return total, rows

    def neighbors(self, flt: BankFilter, user_id: Optional[int], question_id: str):
        """Return `(prev_id, next_id)` of `question_id` in the ordered set.

        The ordering is computed by one window query so prev/next are
        consistent with `page()` for the same filter and sort.
        """
        order = self._order_by(flt.sort)

        def columns(T, V, S):
            return [
                T.question_id.label('question_id'),
                func.lag(T.question_id).over(order_by=order).label('prev_id'),
                func.lead(T.question_id).over(order_by=order).label('next_id'),
            ]

        ordered = self._filtered(flt, user_id, columns).subquery('ordered')
        stmt = select(ordered.c.prev_id, ordered.c.next_id).where(ordered.c.question_id == question_id)
        row = self.session.exec(stmt).first()
        if row is None:
            return None, None
        return row[0], row[1]
