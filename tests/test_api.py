# tests/test_api.py
from __future__ import annotations

import io

import pytest
from flask import Flask
from flask.testing import FlaskClient

from passport_scan import create_app
from passport_scan.errors import ConfigurationError, Result
from passport_scan.models import AuditLog
from passport_scan.services.rate_limit import Policy

from .conftest import ADMIN_ID, OTHER_ID, USER_ID, FakeClock

TEST_BITS = '011101000110010101110011011101000000000000010110'


def _scan(client: FlaskClient, payload, identity: str = USER_ID):
    return client.post('/api/scan', json={'payload': payload, 'context': {'device': 'kiosk'}},
                       headers={'X-User-Id': identity})


def test_health(client: FlaskClient) -> None:
    """Health endpoint answers without auth."""
    r = client.get('/health')
    assert r.status_code == 200
    assert r.get_json() == {'ok': True}


def test_missing_secret_fails_at_startup(app_overrides: dict) -> None:
    """The app refuses to start without a token secret."""
    with pytest.raises(ConfigurationError):
        create_app({**app_overrides, 'SCAN_TOKEN_SECRET': ''})


def test_scan_accepts_and_grants(client: FlaskClient) -> None:
    """An accepted scan is handed to the reward service."""
    r = _scan(client, 'PRD01')
    assert r.status_code == 200
    body = r.get_json()
    assert body['success'] is True
    assert body['data']['product_code'] == 'PRD01'
    assert body['reward'] == 'Reward recorded locally'


def test_scan_requires_identity(client: FlaskClient) -> None:
    """Scans without a valid caller id are refused."""
    r = client.post('/api/scan', json={'payload': 'PRD01'})
    assert r.status_code == 401
    r = _scan(client, 'PRD01', identity='bob')
    assert r.status_code == 401


def test_scan_duplicate_is_409(client: FlaskClient) -> None:
    """Re-scanning inside the window is a conflict."""
    assert _scan(client, 'PRD01').status_code == 200
    r = _scan(client, 'PRD01')
    assert r.status_code == 409
    assert r.get_json()['error'] == 'DuplicateScan'


def test_scan_malicious_is_400(client: FlaskClient) -> None:
    """Injection attempts are validation failures with their category."""
    r = _scan(client, '../../etc/passwd')
    assert r.status_code == 400
    body = r.get_json()
    assert body['error'] == 'ValidationError'
    assert body['category'] == 'path_traversal'
    assert body['state'] == 'REJECTED'


def test_reward_failure_can_be_retried(client, app, monkeypatch):
    """A failed grant is a retryable 503 and the retry is not a duplicate."""
    ctx = app.extensions['passport_scan']
    outcomes = [Result.fail('RewardUnavailable', 'retry', retryable=True), Result.ok(message='granted')]
    monkeypatch.setattr(ctx.rewards, 'grant', lambda scan: outcomes.pop(0))
    r = _scan(client, 'PRD01')
    assert r.status_code == 503
    assert r.get_json()['retryable'] is True

    r = _scan(client, 'PRD01')
    assert r.status_code == 200
    assert r.get_json()['reward'] == 'granted'
    assert _scan(client, 'PRD01').status_code == 409


def test_reward_claims_are_rate_limited(client, app):
    ctx = app.extensions['passport_scan']
    ctx.limiter.policies['reward_claim'] = Policy(60, 1)
    assert _scan(client, 'PRD01').status_code == 200
    r = _scan(client, 'PRD02')
    assert r.status_code == 429
    ctx.limiter.reset(USER_ID, 'reward_claim')
    assert _scan(client, 'PRD02').status_code == 200


@pytest.mark.parametrize('app_overrides', [{
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'SCAN_TOKEN_SECRET': 'k' * 40,
    'ADMIN_API_KEY': 'test-admin-key',
    'USE_REDIS': False,
    'ROLE_PROVIDER': 'static',
    'RATE_LIMIT_SCANS': 2,
    'REWARD_SERVICE_URL': None,
}])
def test_scan_rate_limit_and_reset(client: FlaskClient, admin_headers: dict, clock: FakeClock) -> None:
    """The scan limit comes from config and an admin can reset it."""
    assert _scan(client, 'PRD01').status_code == 200
    assert _scan(client, 'PRD02').status_code == 200
    r = _scan(client, 'PRD03')
    assert r.status_code == 429
    assert r.get_json()['reset_at'] == clock.now + 60

    r = client.post('/admin/rate-limits/reset', json={'identity': USER_ID, 'action': 'scan'}, headers=admin_headers)
    assert r.status_code == 200
    assert _scan(client, 'PRD03').status_code == 200


def test_admin_requires_key(client: FlaskClient) -> None:
    """Admin routes reject missing or wrong keys."""
    assert client.post('/admin/issue-token', json={'product_code': 'AB123'}).status_code == 401
    r = client.post('/admin/issue-token', json={'product_code': 'AB123'}, headers={'X-Admin-Key': 'wrong'})
    assert r.status_code == 401


def test_issue_token_then_scan(client: FlaskClient, admin_headers: dict, clock: FakeClock) -> None:
    """Issued tokens scan back to their product code."""
    r = client.post('/admin/issue-token', json={'product_code': 'AB123', 'ttl': 600}, headers=admin_headers)
    assert r.status_code == 200
    body = r.get_json()
    assert body['token'].startswith('st1.')
    assert body['expiry'] == int(clock.now) + 600
    assert body['qr_png_b64']

    r = _scan(client, body['token'])
    assert r.status_code == 200
    assert r.get_json()['data']['product_code'] == 'AB123'
    assert r.get_json()['data']['source'] == 'token'

    clock.advance(601)
    r = _scan(client, body['token'], identity=OTHER_ID)
    assert r.status_code == 410


def test_issue_token_png(client: FlaskClient, admin_headers: dict) -> None:
    """Asking for image/png returns the QR image itself."""
    r = client.post('/admin/issue-token', json={'product_code': 'AB123'},
                    headers={**admin_headers, 'Accept': 'image/png'})
    assert r.status_code == 200
    assert r.mimetype == 'image/png'
    assert r.data.startswith(b'\x89PNG')


def test_issue_token_bad_code(client: FlaskClient, admin_headers: dict) -> None:
    """An empty product code is a bad request."""
    r = client.post('/admin/issue-token', json={'product_code': ''}, headers=admin_headers)
    assert r.status_code == 400


@pytest.mark.parametrize('ttl', ['abc', [60]])
def test_issue_token_bad_ttl(client, admin_headers, ttl):
    r = client.post('/admin/issue-token', json={'product_code': 'AB123', 'ttl': ttl}, headers=admin_headers)
    assert r.status_code == 400
    assert r.get_json()['error'] == 'bad_request'


def test_encode_and_decode(client: FlaskClient, admin_headers: dict) -> None:
    """Codes map to ring bits and back."""
    r = client.post('/admin/encode', json={'code': 'test', 'png': True}, headers=admin_headers)
    assert r.status_code == 200
    body = r.get_json()
    assert body['bits'] == TEST_BITS
    assert body['rings'] == {'inner': TEST_BITS[:8], 'middle': TEST_BITS[8:24], 'outer': TEST_BITS[24:]}
    assert len(body['segments']) == 48
    assert body['rings_png_b64']

    r = client.post('/admin/decode', json={'bits': TEST_BITS}, headers=admin_headers)
    assert r.get_json()['code'] == 'test'
    r = client.post('/admin/decode', json={'rings': body['rings']}, headers=admin_headers)
    assert r.get_json()['code'] == 'test'


def test_encode_png(client: FlaskClient, admin_headers: dict) -> None:
    """The ring pattern can be fetched as an image."""
    r = client.post('/admin/encode', json={'code': 'AB'}, headers={**admin_headers, 'Accept': 'image/png'})
    assert r.mimetype == 'image/png'
    assert r.data.startswith(b'\x89PNG')


def test_decode_errors(client: FlaskClient, admin_headers: dict) -> None:
    """Corrupted or malformed bits are refused."""
    flipped = ('1' if TEST_BITS[0] == '0' else '0') + TEST_BITS[1:]
    r = client.post('/admin/decode', json={'bits': flipped}, headers=admin_headers)
    assert r.status_code == 400
    assert r.get_json()['error'] == 'ChecksumMismatch'
    r = client.post('/admin/decode', json={'bits': '0101'}, headers=admin_headers)
    assert r.status_code == 400


def test_block_and_unblock(client: FlaskClient, app: Flask, admin_headers: dict) -> None:
    """Blocked payloads are refused and the change is audited."""
    r = client.post('/admin/block', json={'payload': 'PRD01', 'reason': 'counterfeit'}, headers=admin_headers)
    assert r.status_code == 200
    r = _scan(client, 'PRD01')
    assert r.status_code == 403
    assert r.get_json()['error'] == 'BlockedCode'

    assert client.delete('/admin/block', json={'payload': 'PRD01'}, headers=admin_headers).status_code == 200
    assert client.delete('/admin/block', json={'payload': 'PRD01'}, headers=admin_headers).status_code == 404
    assert _scan(client, 'PRD01').status_code == 200

    with app.app_context():
        events = [row.event_type for row in AuditLog.query.order_by(AuditLog.id).all()]
    assert sorted(events) == ['code_blocked', 'code_unblocked']


def test_role_change_needs_permission(client: FlaskClient, app: Flask, admin_headers: dict) -> None:
    """Only callers holding the role-management permission may change roles."""
    body = {'identity': OTHER_ID, 'role': 'moderator'}
    r = client.post('/admin/roles', json=body, headers={**admin_headers, 'X-User-Id': USER_ID})
    assert r.status_code == 403

    r = client.post('/admin/roles', json=body, headers={**admin_headers, 'X-User-Id': ADMIN_ID})
    assert r.status_code == 200

    r = client.get('/api/routes/check', query_string={'route': '/moderator'}, headers={'X-User-Id': OTHER_ID})
    assert r.get_json() == {'route': '/moderator', 'role': 'moderator', 'allowed': True}

    r = client.post('/admin/roles', json={'identity': OTHER_ID, 'role': 'wizard'},
                    headers={**admin_headers, 'X-User-Id': ADMIN_ID})
    assert r.status_code == 400

    with app.app_context():
        row = AuditLog.query.filter_by(event_type='role_change').one()
    assert row.actor_id == ADMIN_ID


def test_route_check_denied(client: FlaskClient) -> None:
    """Plain users cannot reach admin pages."""
    r = client.get('/api/routes/check', query_string={'route': '/admin'}, headers={'X-User-Id': USER_ID})
    assert r.get_json()['allowed'] is False


def test_status_and_alert_ack(client: FlaskClient, admin_headers: dict) -> None:
    """Alerts show up in the status report and can be acknowledged."""
    _scan(client, '; rm -rf /')
    status = client.get('/admin/status', headers=admin_headers).get_json()
    assert status['security_status']['threat_level'] == 'HIGH'
    alert_id = status['security_status']['alerts'][0]['id']
    assert set(status) == {'rate_limits', 'rbac', 'qr_statistics', 'session_statistics', 'security_status'}

    r = client.post(f'/admin/alerts/{alert_id}/ack', headers=admin_headers)
    assert r.get_json() == {'ok': True, 'threat_level': 'LOW'}
    assert client.post('/admin/alerts/unknown/ack', headers=admin_headers).status_code == 404


def test_cleanup(client: FlaskClient, admin_headers: dict, clock: FakeClock) -> None:
    """Cleanup sweeps expired scans, sessions and alerts."""
    _scan(client, 'PRD01')
    clock.advance(25 * 60 * 60)
    r = client.post('/admin/cleanup', headers=admin_headers)
    assert r.get_json() == {'ok': True, 'alerts_removed': 0, 'scans_removed': 1, 'sessions_removed': 0,
                            'activity_keys_removed': 0, 'roles_uncached': 1}


def test_session_lifecycle(client: FlaskClient) -> None:
    """Sessions can be opened, checked and closed over HTTP."""
    r = client.post('/api/sessions', json={'data': {'device': 'phone'}}, headers={'X-User-Id': USER_ID})
    assert r.status_code == 201
    sid = r.get_json()['session_id']

    r = client.get(f'/api/sessions/{sid}')
    assert r.status_code == 200
    assert r.get_json()['identity'] == USER_ID

    assert client.delete(f'/api/sessions/{sid}').status_code == 200
    r = client.get(f'/api/sessions/{sid}')
    assert r.status_code == 401
    assert r.get_json()['message'] == 'Session not found'


def test_login_rate_limit(client: FlaskClient) -> None:
    """Session creation shares the login limit."""
    for _ in range(5):
        assert client.post('/api/sessions', headers={'X-User-Id': USER_ID}).status_code == 201
    assert client.post('/api/sessions', headers={'X-User-Id': USER_ID}).status_code == 429


def test_upload_validation(client: FlaskClient) -> None:
    """Avatar uploads are checked for size, type and name."""
    r = client.post('/api/uploads/validate', headers={'X-User-Id': USER_ID},
                    data={'file': (io.BytesIO(b'\x89PNG' + b'0' * 100), 'avatar.png', 'image/png')},
                    content_type='multipart/form-data')
    assert r.status_code == 200
    assert r.get_json()['data']['file_size'] == 104

    r = client.post('/api/uploads/validate', headers={'X-User-Id': USER_ID},
                    data={'file': (io.BytesIO(b'MZ'), 'avatar.exe', 'image/png')},
                    content_type='multipart/form-data')
    assert r.status_code == 400

    r = client.post('/api/uploads/validate', headers={'X-User-Id': USER_ID})
    assert r.status_code == 400
    assert 'No file provided' in r.get_json()['message']


def test_upload_rate_limit(client: FlaskClient) -> None:
    """Uploads are limited to five a minute."""
    for _ in range(5):
        client.post('/api/uploads/validate', headers={'X-User-Id': USER_ID})
    r = client.post('/api/uploads/validate', headers={'X-User-Id': USER_ID})
    assert r.status_code == 429


def test_profile_validation(client: FlaskClient) -> None:
    """Profile fields are validated together."""
    r = client.post('/api/profile/validate', json={'email': 'Jane@Example.com', 'username': 'jane_d'},
                    headers={'X-User-Id': USER_ID})
    assert r.status_code == 200
    assert r.get_json()['data'] == {'email': 'jane@example.com', 'username': 'jane_d'}

    r = client.post('/api/profile/validate', json={'username': 'root'}, headers={'X-User-Id': USER_ID})
    assert r.status_code == 400
