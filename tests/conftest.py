# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from passport_scan import create_app
from passport_scan.services.monitor import SecurityMonitor
from passport_scan.services.rate_limit import Policy, RateLimiter
from passport_scan.services.rbac import AccessController, StaticRoleProvider
from passport_scan.services.scan_guard import ScanGuard
from passport_scan.services.tokens import SecureTokenCodec

TEST_SECRET = 'k' * 40
ADMIN_KEY = 'test-admin-key'

USER_ID = '11111111-1111-4111-8111-111111111111'
OTHER_ID = '22222222-2222-4222-8222-222222222222'
MOD_ID = '33333333-3333-4333-8333-333333333333'
ADMIN_ID = 'aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa'
SUPER_ID = 'bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb'

ROLES = {MOD_ID: 'moderator', ADMIN_ID: 'admin', SUPER_ID: 'super_admin'}


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def codec(clock: FakeClock) -> SecureTokenCodec:
    return SecureTokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture()
def access(clock: FakeClock) -> AccessController:
    return AccessController(StaticRoleProvider(ROLES), clock=clock)


@pytest.fixture()
def monitor(clock: FakeClock) -> SecurityMonitor:
    return SecurityMonitor(clock=clock)


@pytest.fixture()
def guard(codec: SecureTokenCodec, access: AccessController, monitor: SecurityMonitor,
          clock: FakeClock) -> ScanGuard:
    limiter = RateLimiter({'scan': Policy(60, 10)}, clock=clock)
    return ScanGuard(codec, limiter, access, monitor, dedup_window=60, clock=clock)


@pytest.fixture()
def app_overrides() -> dict:
    return {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SCAN_TOKEN_SECRET': TEST_SECRET,
        'ADMIN_API_KEY': ADMIN_KEY,
        'USE_REDIS': False,
        'ROLE_PROVIDER': 'static',
        'STATIC_ROLES': dict(ROLES),
        'REWARD_SERVICE_URL': None,
        'RATE_LIMIT_SCANS': 10,
    }


@pytest.fixture()
def app(app_overrides: dict, clock: FakeClock) -> Iterator[Flask]:
    application = create_app(app_overrides, clock=clock)
    yield application


@pytest.fixture()
def client(app: Flask) -> FlaskClient:
    return app.test_client()


@pytest.fixture()
def admin_headers() -> dict:
    return {'X-Admin-Key': ADMIN_KEY}
