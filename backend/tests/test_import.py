import json

import pytest
from sqlmodel import select

from satprep import models
from satprep.services import ImportService
from satprep.utils.parsers import parse_bank_file


def _bank(program, prefix):
    return [
        {
            'question_id': f'{prefix}-mcq',
            'program': program,
            'type': 'MCQ',
            'stem': '<p>Which value of x satisfies 2x = 4?</p>',
            'options': [
                {'id': f'{prefix}-o1', 'label': 'A', 'content_html': '1'},
                {'id': f'{prefix}-o2', 'label': 'B', 'content_html': '2'},
            ],
            'correct_label': 'B',
            'taxonomy': {'domain_name': 'Algebra', 'skill_name': 'Linear equations', 'difficulty': 1, 'score_band': 2},
        },
        {
            'question_id': f'{prefix}-spr',
            'program': program,
            'question_type': 'spr',
            'stem_html': '<p>Solve (x - 2)^2 = 81</p>',
            'correct_text': '["11", "-7"]',
            'taxonomy': {'domain_name': 'Algebra', 'skill_name': 'Quadratics', 'difficulty': 3, 'score_band': 6},
        },
        {'question_id': f'{prefix}-bad', 'question_type': 'mcq', 'options': []},
    ]


def test_parse_json_and_jsonl():
    items = [{'id': 'a', 'type': 'SPR'}, {'question_id': 'b', 'question_type': 'mcq'}]
    parsed = parse_bank_file(json.dumps({'questions': items}).encode(), 'bank.json')
    assert parsed[0]['question_id'] == 'a'
    assert parsed[0]['question_type'] == 'spr'
    lines = '\n'.join(json.dumps(i) for i in items) + '\n\n'
    assert len(parse_bank_file(lines.encode(), 'bank.jsonl')) == 2


def test_parse_rejects_unknown_types():
    with pytest.raises(ValueError):
        parse_bank_file(b'question', 'bank.csv')
    with pytest.raises(ValueError):
        parse_bank_file(b'{"questions": 3}', 'bank.json')


def test_import_creates_questions_and_reports_errors(db, program):
    payload = json.dumps(_bank(program, program)).encode()
    res = ImportService(db).import_bank(payload, 'bank.json')
    assert res['created'] == 2
    assert res['skipped'] == 0
    assert [e['index'] for e in res['errors']] == [2]

    key = db.exec(select(models.CorrectAnswer).join(
        models.QuestionVersion, models.QuestionVersion.id == models.CorrectAnswer.question_version_id
    ).where(models.QuestionVersion.question_id == f'{program}-mcq')).one()
    assert key.correct_option_id == f'{program}-o2'
    assert db.get(models.QuestionTaxonomy, f'{program}-spr').score_band == 6

    again = ImportService(db).import_bank(payload, 'bank.json')
    assert again['created'] == 0
    assert again['skipped'] == 2


def test_reimport_without_dedupe_adds_current_version(db, program):
    item = _bank(program, program)[1]
    ImportService(db).import_bank(json.dumps([item]).encode(), 'bank.json')
    item = dict(item, correct_text='12')
    res = ImportService(db).import_bank(json.dumps([item]).encode(), 'bank.json', deduplicate=False)
    assert res['created'] == 1
    versions = db.exec(select(models.QuestionVersion).where(
        models.QuestionVersion.question_id == f'{program}-spr')).all()
    assert len(versions) == 2
    assert sum(1 for v in versions if v.is_current) == 1


def test_dry_run_writes_nothing(db, program):
    res = ImportService(db).import_bank(json.dumps(_bank(program, program)).encode(), 'bank.json', dry_run=True)
    assert res['created'] == 2
    assert db.get(models.Question, f'{program}-mcq') is None


def test_imported_questions_are_gradable(client, auth_headers, program):
    headers = auth_headers()
    files = {'file': ('bank.json', json.dumps(_bank(program, program)).encode(), 'application/json')}
    r = client.post('/admin/import', files=files, headers=headers)
    assert r.status_code == 200
    assert r.json()['created'] == 2

    listed = client.get('/questions', params={'program': program, 'sort': 'score_band'}).json()
    assert [i['question_id'] for i in listed['items']] == [f'{program}-mcq', f'{program}-spr']
    g = client.post('/attempts', json={'question_id': f'{program}-spr', 'response_text': ' −7 '}, headers=headers)
    assert g.json()['is_correct'] is True


def test_import_endpoint_requires_auth_and_known_format(client, auth_headers):
    files = {'file': ('bank.json', b'[]', 'application/json')}
    assert client.post('/admin/import', files=files).status_code == 401
    bad = {'file': ('bank.txt', b'hello', 'text/plain')}
    assert client.post('/admin/import', files=bad, headers=auth_headers()).status_code == 400


def test_reimport_skips_existing_questions_before_option_checks(db, program):
    item = _bank(program, program)[0]
    ImportService(db).import_bank(json.dumps([item]).encode(), 'bank.json')
    again = ImportService(db).import_bank(json.dumps([item]).encode(), 'bank.json')
    assert again['skipped'] == 1
    assert again['errors'] == []

    clash = dict(item, question_id=f'{program}-clash')
    res = ImportService(db).import_bank(json.dumps([clash]).encode(), 'bank.json')
    assert res['created'] == 0
    assert 'option id already exists' in res['errors'][0]['error']


@pytest.mark.parametrize('item,message', [
    ({'question_type': 'mcq', 'options': ['A', {'id': 'PFX-o1', 'label': 'B'}], 'correct_option_id': 'PFX-o1'},
     'option must be an object'),
    ({'question_type': 'mcq', 'options': [{'id': 'PFX-o1', 'label': 'A'}], 'correct_option_id': 'PFX-o9'},
     'correct option ids not among options'),
    ({'question_type': 'mcq', 'options': [{'id': 'PFX-o1', 'label': 'A'}], 'correct_option_ids': ['PFX-o1', 'PFX-o9']},
     'correct option ids not among options'),
])
def test_malformed_mcq_items_are_reported_per_item(db, program, item, message):
    bad = json.loads(json.dumps(dict(item, question_id='PFX-bad', program=program)).replace('PFX', program))
    good = _bank(program, program)[1]
    res = ImportService(db).import_bank(json.dumps([bad, good]).encode(), 'bank.json')
    assert res['created'] == 1
    assert [e['index'] for e in res['errors']] == [0]
    assert message in res['errors'][0]['error']
    assert db.get(models.Question, f'{program}-bad') is None
