import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Point the app at a throwaway SQLite file before anything imports satprep.
_DB_PATH = Path(tempfile.gettempdir()) / f"satprep-test-{os.getpid()}.db"
if _DB_PATH.exists():
    _DB_PATH.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from satprep import models  # noqa: E402
from satprep.database import engine, create_db_and_tables  # noqa: E402
from satprep.main import app  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Ensure a fresh SQLite database for tests."""
    create_db_and_tables()
    yield
    engine.dispose()
    try:
        _DB_PATH.unlink()
    except OSError:
        pass


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def program():
    """A unique program name so bank queries only see this test's rows."""
    return f"T-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(client):
    def _make(username=None, password="pw"):
        username = username or f"user-{uuid.uuid4().hex[:8]}"
        client.post('/auth/register', json={'username': username, 'password': password})
        r = client.post('/auth/login', json={'username': username, 'password': password})
        assert r.status_code == 200
        return {'Authorization': f"Bearer {r.json()['access_token']}"}
    return _make


@pytest.fixture
def seed(db):
    """Factory creating a question with one version, options, key and taxonomy.

    Returns `{'question_id', 'version_id', 'options': {label: option_id}}`.
    Pass `key=None` to leave the version without an answer key.
    """
    def _seed(question_type='mcq', program='SAT', labels=('A', 'B', 'C', 'D'), correct_label='B',
              key='default', taxonomy=None, is_current=True, question_id=None, stem_html='<p>stem</p>'):
        qid = question_id or f"q-{uuid.uuid4().hex[:10]}"
        if db.get(models.Question, qid) is None:
            db.add(models.Question(id=qid, program=program))
        version = models.QuestionVersion(question_id=qid, question_type=question_type,
                                         is_current=is_current, stem_html=stem_html)
        db.add(version)
        db.flush()
        options = {}
        if question_type == 'mcq':
            for i, label in enumerate(labels, start=1):
                oid = f"{qid}-{version.id}-{label}"
                db.add(models.AnswerOption(id=oid, question_version_id=version.id, ordinal=i,
                                           label=label, content_html=f"<p>{label}</p>"))
                options[label] = oid
        if key == 'default':
            if question_type == 'mcq':
                key = models.CorrectAnswer(answer_type='single_choice', correct_option_id=options.get(correct_label))
            else:
                key = models.CorrectAnswer(correct_text='42')
        if key is not None:
            key.question_version_id = version.id
            db.add(key)
        if taxonomy is not False:
            tax = {'domain_name': 'Algebra', 'skill_name': 'Linear equations', 'difficulty': 1, 'score_band': 1}
            tax.update(taxonomy or {})
            db.merge(models.QuestionTaxonomy(question_id=qid, program=program, **tax))
        db.commit()
        return {'question_id': qid, 'version_id': version.id, 'options': options}
    return _seed
