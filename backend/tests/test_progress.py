def test_dashboard_aggregates_completed_questions(client, seed, program, auth_headers):
    headers = auth_headers()
    alg1 = seed(program=program, taxonomy={'domain_name': 'Algebra', 'skill_name': 'Systems', 'difficulty': 2})
    alg2 = seed(program=program, taxonomy={'domain_name': 'Algebra', 'skill_name': 'Linear equations'})
    geo = seed(program=program, taxonomy={'domain_name': 'Geometry', 'skill_name': 'Circles'})
    seed(program=program)  # never attempted
    for q, label in ((alg1, 'B'), (alg2, 'A'), (geo, 'B')):
        r = client.post('/attempts', json={'question_id': q['question_id'], 'selected_option_id': q['options'][label]},
                        headers=headers)
        assert r.status_code == 200

    r = client.get('/dashboard', headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body['total_attempted'] == 3
    assert body['total_correct'] == 2
    assert body['domain_stats'] == [
        {'domain_name': 'Algebra', 'attempted': 2, 'correct': 1, 'accuracy': 50.0},
        {'domain_name': 'Geometry', 'attempted': 1, 'correct': 1, 'accuracy': 100.0},
    ]
    assert [t['skill_name'] for t in body['topic_stats']] == ['Circles', 'Linear equations', 'Systems']
    assert {a['question_id'] for a in body['recent_activity']} == {alg1['question_id'], alg2['question_id'], geo['question_id']}


def test_dashboard_counts_last_result_not_every_attempt(client, seed, auth_headers):
    headers = auth_headers()
    q = seed(correct_label='A')
    for label in ('B', 'A'):
        client.post('/attempts', json={'question_id': q['question_id'], 'selected_option_id': q['options'][label]},
                    headers=headers)
    body = client.get('/dashboard', headers=headers).json()
    assert body['total_attempted'] == 1
    assert body['total_correct'] == 1


def test_dashboard_recent_activity_is_capped(client, seed, auth_headers):
    headers = auth_headers()
    for _ in range(12):
        q = seed()
        client.post('/attempts', json={'question_id': q['question_id'], 'selected_option_id': q['options']['B']},
                    headers=headers)
    body = client.get('/dashboard', headers=headers).json()
    assert body['total_attempted'] == 12
    assert len(body['recent_activity']) == 10


def test_dashboard_and_review_require_auth(client):
    assert client.get('/dashboard').status_code == 401
    assert client.get('/review').status_code == 401


def test_review_lists_marked_questions(client, seed, auth_headers):
    headers = auth_headers()
    marked = seed(taxonomy={'domain_name': 'Geometry', 'skill_name': 'Circles', 'score_band': 5})
    other = seed()
    client.post('/attempts', json={'question_id': marked['question_id'], 'selected_option_id': marked['options']['B']},
                headers=headers)
    client.post('/status', json={'question_id': marked['question_id'], 'patch': {'marked_for_review': True}},
                headers=headers)
    client.post('/status', json={'question_id': other['question_id'], 'patch': {'notes': 'later'}}, headers=headers)

    items = client.get('/review', headers=headers).json()['items']
    assert [i['question_id'] for i in items] == [marked['question_id']]
    item = items[0]
    assert item['attempts_count'] == 1
    assert item['correct_attempts_count'] == 1
    assert item['skill_name'] == 'Circles'
    assert item['score_band'] == 5

    client.post('/status', json={'question_id': marked['question_id'], 'patch': {'marked_for_review': False}},
                headers=headers)
    assert client.get('/review', headers=headers).json()['items'] == []
