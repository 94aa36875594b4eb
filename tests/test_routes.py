import json
import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock
from urllib.parse import urlsplit

from api.routes import ANONYMOUS_ID_COOKIE, CLIENT_SESSION_COOKIE, create_app
from api.services.quota import ANONYMOUS_CHECKS_KEY
from lib.config import Settings
from lib.local_storage import LocalStorage
from conftest import make_auth_response, make_auth_user

def completion(level, details):
    content = json.dumps({'stressLevel': level, 'analysisDetails': details})
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create.return_value = completion(55, 'Some tension in the voice.')
    return client

@pytest.fixture
def app(storage_path, fake_supabase, openai_client):
    settings = Settings(_env_file=None, local_storage_path=str(storage_path), secret_key='test')
    app = create_app(settings=settings, supabase_factory=lambda: fake_supabase, openai_client=openai_client)
    app.config['TESTING'] = True
    return app

@pytest.fixture
def client(app):
    return app.test_client()

def set_cookies(response):
    return response.headers.getlist('Set-Cookie')

def log_in(client, fake_supabase, **user_kwargs):
    user = make_auth_user(**user_kwargs)
    fake_supabase.auth.sign_in_with_password.return_value = make_auth_response(user)
    fake_supabase.auth.get_user.return_value = SimpleNamespace(user=user)
    return client.post('/login', json={'email': user.email, 'password': 'secret1'})

def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'healthy'}

def test_protected_route_redirects_to_login(client):
    response = client.get('/profile')
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/login?redirectedFrom=%2Fprofile')

def test_anonymous_check_then_history(client, openai_client):
    response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})

    assert response.status_code == 200
    body = response.get_json()
    assert body['report']['stressAnalysis']['stressLevel'] == 55
    assert body['report']['contactName'] == 'On-Demand Stress Check'
    assert body['quota']['used'] == 1
    assert body['quota']['remaining'] == 4
    assert any(c.startswith(f'{ANONYMOUS_ID_COOKIE}=') for c in set_cookies(response))

    history = client.get('/reports').get_json()
    assert history['scope'] == 'anonymous'
    assert [r['id'] for r in history['reports']] == [body['report']['id']]

def test_missing_audio_is_rejected(client, openai_client):
    response = client.post('/stress-check', json={'audio': 'UklGRg=='})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Base64 audio data and MIME type are required.'
    openai_client.chat.completions.create.assert_not_called()

def test_anonymous_quota_exhausted_asks_to_sign_up(client, storage_path, openai_client):
    LocalStorage(storage_path, 'browser-1').set_item(ANONYMOUS_CHECKS_KEY, '5')
    client.set_cookie(ANONYMOUS_ID_COOKIE, 'browser-1')

    status = client.get('/stress-check').get_json()
    assert status['quota']['can_check'] is False
    assert status['quota']['remaining'] == 0

    response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})
    assert response.status_code == 403
    body = response.get_json()
    assert body['action'] == 'signup'
    assert body['quotaScope'] == 'anonymous'
    openai_client.chat.completions.create.assert_not_called()

def test_analysis_failure_is_reported(client, openai_client):
    openai_client.chat.completions.create.side_effect = Exception("upstream timeout")
    response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})
    assert response.status_code == 502
    assert response.get_json()['message'] == 'AI analysis failed: upstream timeout'
    assert client.get('/reports').get_json()['reports'] == []

def test_login_sets_session_cookie_and_profile_is_reachable(client, fake_supabase):
    response = log_in(client, fake_supabase, display_name='Sam')

    assert response.status_code == 200
    assert response.get_json()['user']['display_name'] == 'Sam'
    assert any(c.startswith(f'{CLIENT_SESSION_COOKIE}=true') for c in set_cookies(response))

    profile = client.get('/profile')
    assert profile.status_code == 200
    assert profile.get_json()['user']['uid'] == 'user-1'
    fake_supabase.auth.get_user.assert_called_with('access-1')

def test_bad_credentials(client, fake_supabase):
    error = Exception("Invalid login credentials")
    error.code = 'invalid_credentials'
    fake_supabase.auth.sign_in_with_password.side_effect = error
    response = client.post('/login', json={'email': 'sam@example.com', 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid email or password.'

def test_account_check_is_stored_remotely(client, fake_supabase):
    log_in(client, fake_supabase)

    response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})

    assert response.status_code == 200
    assert response.get_json()['quota']['limit'] == 30
    assert fake_supabase.tables['profiles'].rows[0]['monthly_checks_used'] == 1
    history = client.get('/reports').get_json()
    assert history['scope'] == 'authenticated'
    assert len(history['reports']) == 1

def test_profile_update(client, fake_supabase):
    log_in(client, fake_supabase, display_name='Sam')
    response = client.patch('/profile', json={'displayName': 'Sam Lee', 'phoneNumber': '+15550100'})
    assert response.status_code == 200
    user = response.get_json()['user']
    assert user['display_name'] == 'Sam Lee'
    assert user['phone_number'] == '+15550100'

def test_logout_clears_session_cookie(client, fake_supabase):
    log_in(client, fake_supabase)
    response = client.post('/logout')
    assert response.status_code == 200
    assert any(c.startswith(f'{CLIENT_SESSION_COOKIE}=;') for c in set_cookies(response))
    assert client.get('/profile').status_code == 302

def test_federated_sign_in_and_password_change_rejected(client, fake_supabase):
    user = make_auth_user(uid='google-1', email='sam@gmail.com', display_name='Sam G', provider='google')
    fake_supabase.auth.exchange_code_for_session.return_value = make_auth_response(user)
    fake_supabase.auth.get_user.return_value = SimpleNamespace(user=user)

    response = client.get('/auth/callback?code=abc123')
    assert response.status_code == 302
    assert fake_supabase.tables['profiles'].rows[0]['provider_id'] == 'google'

    response = client.post('/change-password', json={'newPassword': 'secret12', 'confirmPassword': 'secret12'})
    assert response.status_code == 400
    assert 'Google' in response.get_json()['message']
    fake_supabase.auth.update_user.assert_not_called()

def test_signup_creates_profile_with_phone(client, fake_supabase):
    user = make_auth_user(uid='user-2', email='new@example.com', display_name='Newbie')
    fake_supabase.auth.sign_up.return_value = make_auth_response(user)

    response = client.post('/signup', json={
        'email': 'new@example.com',
        'password': 'secret1',
        'confirmPassword': 'secret1',
        'displayName': 'Newbie',
        'phoneNumber': '+15550199',
    })

    assert response.status_code == 201
    body = response.get_json()
    assert body['signedIn'] is True
    assert body['user']['phone_number'] == '+15550199'

def test_signup_password_mismatch(client, fake_supabase):
    response = client.post('/signup', json={
        'email': 'new@example.com', 'password': 'secret1', 'confirmPassword': 'secret2', 'displayName': 'N',
    })
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Passwords do not match.'
    fake_supabase.auth.sign_up.assert_not_called()

def test_model_returning_nan_is_a_failed_analysis(client, openai_client):
    openai_client.chat.completions.create.return_value = SimpleNamespace(choices=[SimpleNamespace(
        message=SimpleNamespace(content='{"stressLevel": NaN, "analysisDetails": "Unclear."}')
    )])
    response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})
    assert response.status_code == 502
    assert 'malformed' in response.get_json()['message']

@pytest.mark.parametrize('target,expected', [
    ('/reports', '/reports'),
    ('https://evil.example/phish', '/'),
    ('//evil.example/phish', '/'),
    ('', '/'),
])
def test_auth_callback_only_follows_local_paths(client, fake_supabase, target, expected):
    user = make_auth_user(uid='google-1', email='sam@gmail.com', provider='google')
    fake_supabase.auth.exchange_code_for_session.return_value = make_auth_response(user)

    response = client.get('/auth/callback', query_string={'code': 'abc123', 'next': target})

    assert response.status_code == 302
    assert urlsplit(response.headers['Location']).netloc in ('', 'localhost')
    assert urlsplit(response.headers['Location']).path == expected

def test_check_services_forget_finished_callers(app, openai_client):
    for _ in range(5):
        app.test_client().post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})
    assert app.extensions['stress_check']._in_flight == set()

def test_quota_rejection_is_logged_once_under_its_own_name(client, storage_path, caplog):
    LocalStorage(storage_path, 'browser-1').set_item(ANONYMOUS_CHECKS_KEY, '5')
    client.set_cookie(ANONYMOUS_ID_COOKIE, 'browser-1')

    with caplog.at_level('INFO'):
        response = client.post('/stress-check', json={'audio': 'UklGRg==', 'mimeType': 'audio/wav'})

    assert response.status_code == 403
    messages = [r.getMessage() for r in caplog.records if r.name == 'api.routes']
    assert messages == ['QuotaExceededError: Quota exhausted for anonymous scope (5/5)']
    assert not any('Analysis error' in r.getMessage() for r in caplog.records)
