from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.auth0 import Auth0Error, BLOCKED_ACCOUNT_MESSAGE
from utils.timezone_utils import utc_now

IDENTITY = {
    'user_id': 'auth0|customer', 'email': 'customer@example.com', 'name': 'Casey',
    'email_verified': True, 'blocked': False, 'app_metadata': {},
}


@pytest.fixture
def auth0():
    service = MagicMock()
    service.is_available.return_value = True
    service.authenticate_user = AsyncMock(return_value=dict(IDENTITY))
    service.get_user = AsyncMock(return_value=dict(IDENTITY, app_metadata={'virtfusion_user_id': 42}))
    service.create_user = AsyncMock(return_value=dict(IDENTITY))
    with patch('api.routes.auth.auth0_service', service):
        yield service


@pytest.fixture
def sessions():
    with patch('api.routes.auth.get_user_flags', AsyncMock(return_value=None)) as flags, \
            patch('api.routes.auth.revoke_user_sessions', AsyncMock(return_value=1)) as revoke, \
            patch('api.routes.auth.link_virtfusion_account', AsyncMock(return_value=42)), \
            patch('api.routes.auth.create_session', AsyncMock(return_value={
                'id': 'sess-new', 'email': 'customer@example.com', 'name': 'Casey'})) as create:
        yield {'flags': flags, 'revoke': revoke, 'create': create}


def test_login_sets_session_cookie(anonymous_client, auth0, sessions):
    response = anonymous_client.post('/api/auth/login', json={'email': ' Customer@Example.com ', 'password': 'pw'})

    assert response.status_code == 200
    assert response.json()['user'] == {
        'id': 'auth0|customer', 'email': 'customer@example.com', 'name': 'Casey',
        'isAdmin': False, 'virtFusionUserId': 42,
    }
    assert response.cookies.get('ozvps_session') == 'sess-new'
    auth0.authenticate_user.assert_awaited_once_with('customer@example.com', 'pw')
    assert sessions['revoke'].await_args.args == ('auth0|customer', 'CONCURRENT_LOGIN')


def test_admin_flag_comes_from_app_metadata(anonymous_client, auth0, sessions):
    auth0.get_user.return_value = dict(IDENTITY, app_metadata={'is_admin': True})
    response = anonymous_client.post('/api/auth/login', json={'email': 'customer@example.com', 'password': 'pw'})
    assert response.json()['user']['isAdmin'] is True
    assert sessions['create'].await_args.args[3] is True


def test_invalid_credentials(anonymous_client, auth0, sessions):
    auth0.authenticate_user.side_effect = Auth0Error("Invalid email or password", 401)
    response = anonymous_client.post('/api/auth/login', json={'email': 'customer@example.com', 'password': 'bad'})
    assert response.status_code == 401
    assert response.json()['code'] == 'INVALID_CREDENTIALS'


def test_locally_blocked_user_cannot_log_in(anonymous_client, auth0, sessions):
    sessions['flags'].return_value = {'blocked': True}
    response = anonymous_client.post('/api/auth/login', json={'email': 'customer@example.com', 'password': 'pw'})
    assert response.status_code == 403
    assert response.json()['error'] == BLOCKED_ACCOUNT_MESSAGE
    assert response.json()['code'] == 'USER_BLOCKED'
    sessions['create'].assert_not_awaited()


def test_register_then_login(anonymous_client, auth0, sessions):
    response = anonymous_client.post('/api/auth/register', json={
        'email': 'New@Example.com', 'password': 'longenough', 'name': 'New User',
    })
    assert response.status_code == 201
    auth0.create_user.assert_awaited_once_with('new@example.com', 'longenough', 'New User')


def test_register_existing_email(anonymous_client, auth0, sessions):
    auth0.create_user.side_effect = Auth0Error("An account with this email already exists", 409)
    response = anonymous_client.post('/api/auth/register', json={'email': 'a@example.com', 'password': 'longenough'})
    assert response.status_code == 409


def test_register_invalid_email(anonymous_client, auth0):
    response = anonymous_client.post('/api/auth/register', json={'email': 'not-an-email', 'password': 'longenough'})
    assert response.status_code == 400
    assert response.json()['error'] == 'Invalid email address'


def test_logout_deletes_session(anonymous_client):
    with patch('api.routes.auth.delete_session', AsyncMock()) as delete:
        response = anonymous_client.post('/api/auth/logout', headers={'Authorization': 'Bearer sess-1'})
    assert response.json() == {'success': True}
    delete.assert_awaited_once_with('sess-1')


def test_me(client):
    with patch('api.routes.auth.get_wallet', AsyncMock(return_value={'balance_cents': 1234})):
        response = client.get('/api/auth/me')
    assert response.json()['balanceCents'] == 1234
    assert response.json()['user']['virtFusionUserId'] == 42


def stored_session(**overrides):
    session = {
        'id': 'sess-1', 'auth0_user_id': 'auth0|customer', 'email': 'customer@example.com', 'name': 'Casey',
        'is_admin': False, 'virtfusion_user_id': 42,
        'expires_at': utc_now() + timedelta(days=1), 'last_activity_at': utc_now(),
        'revoked_at': None, 'revoked_reason': None,
    }
    session.update(overrides)
    return session


@pytest.fixture
def session_store():
    with patch('api.middleware.authentication.get_session', AsyncMock(return_value=stored_session())) as get_session, \
            patch('api.middleware.authentication.touch_session', AsyncMock()) as touch, \
            patch('api.middleware.authentication.delete_session', AsyncMock()) as delete, \
            patch('api.middleware.authentication.revoke_session', AsyncMock()) as revoke, \
            patch('api.middleware.authentication.revoke_user_sessions', AsyncMock()) as revoke_all, \
            patch('api.middleware.authentication.get_user_flags', AsyncMock(return_value=None)) as flags, \
            patch('api.routes.auth.get_wallet', AsyncMock(return_value=None)):
        yield {'get': get_session, 'touch': touch, 'delete': delete, 'revoke': revoke,
               'revoke_all': revoke_all, 'flags': flags}


BEARER = {'Authorization': 'Bearer sess-1'}


def test_valid_session_is_touched(anonymous_client, session_store):
    response = anonymous_client.get('/api/me', headers=BEARER)
    assert response.status_code == 200
    assert response.json()['balanceCents'] == 0
    session_store['touch'].assert_awaited_once_with('sess-1')


def test_expired_session(anonymous_client, session_store):
    session_store['get'].return_value = stored_session(expires_at=utc_now() - timedelta(seconds=1))
    response = anonymous_client.get('/api/me', headers=BEARER)
    assert response.status_code == 401
    assert response.json()['code'] == 'SESSION_EXPIRED'
    session_store['delete'].assert_awaited_once_with('sess-1')


def test_idle_session_is_revoked(anonymous_client, session_store):
    session_store['get'].return_value = stored_session(last_activity_at=utc_now() - timedelta(minutes=16))
    response = anonymous_client.get('/api/me', headers=BEARER)
    assert response.json()['code'] == 'SESSION_IDLE_TIMEOUT'
    session_store['revoke'].assert_awaited_once_with('sess-1', 'IDLE_TIMEOUT')


@pytest.mark.parametrize("reason,code", [
    ('USER_BLOCKED', 'SESSION_REVOKED_BLOCKED'),
    ('IDLE_TIMEOUT', 'SESSION_IDLE_TIMEOUT'),
    ('CONCURRENT_LOGIN', 'SESSION_REVOKED'),
])
def test_revoked_sessions(anonymous_client, session_store, reason, code):
    session_store['get'].return_value = stored_session(revoked_at=utc_now(), revoked_reason=reason)
    response = anonymous_client.get('/api/me', headers=BEARER)
    assert response.status_code == 401
    assert response.json()['code'] == code


def test_blocked_user_sessions_are_revoked(anonymous_client, session_store):
    session_store['flags'].return_value = {'blocked': True}
    response = anonymous_client.get('/api/me', headers=BEARER)
    assert response.json()['code'] == 'SESSION_REVOKED_BLOCKED'
    session_store['revoke_all'].assert_awaited_once_with('auth0|customer', 'USER_BLOCKED')
