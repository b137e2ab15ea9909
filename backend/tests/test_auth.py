from fastapi.testclient import TestClient

from satprep.main import app

client = TestClient(app)


def test_register_is_idempotent_and_login_returns_token():
    r = client.post('/auth/register', json={'username': 'testuser', 'password': 'pass123'})
    assert r.status_code == 200
    again = client.post('/auth/register', json={'username': 'testuser', 'password': 'other'})
    assert again.json()['id'] == r.json()['id']
    r2 = client.post('/auth/login', json={'username': 'testuser', 'password': 'pass123'})
    assert r2.status_code == 200
    assert 'access_token' in r2.json()


def test_login_rejects_bad_password():
    client.post('/auth/register', json={'username': 'badpw', 'password': 'right'})
    r = client.post('/auth/login', json={'username': 'badpw', 'password': 'wrong'})
    assert r.status_code == 401


def test_public_endpoints_work_anonymously():
    assert client.get('/questions').status_code == 200
    assert client.get('/filters').status_code == 200


def test_invalid_token_rejected_on_optional_auth_endpoints():
    headers = {'Authorization': 'Bearer invalid.token.here'}
    assert client.get('/questions', headers=headers).status_code == 401


def test_request_id_header_exists():
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json() == {'status': 'ok'}
    assert 'X-Request-ID' in r.headers
    echoed = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert echoed.headers['X-Request-ID'] == 'abc123'
