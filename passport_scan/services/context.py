"""Per-process security services.

One SecurityContext is built by the app factory and stored on the Flask
app; handlers reach it through ``get_context()``. Tests build their own.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable

from flask import current_app

from ..errors import ConfigurationError
from .monitor import SecurityMonitor
from .rate_limit import Policy, RateLimiter, make_store
from .rbac import AccessController, HttpRoleProvider, SqlRoleProvider, StaticRoleProvider
from .rewards import RewardClient
from .sanitizer import UploadConstraints
from .scan_guard import ScanGuard
from .sessions import SessionManager
from .tokens import SecureTokenCodec

log = logging.getLogger(__name__)

EXTENSION_KEY = 'passport_scan'


@dataclass
class SecurityContext:
    codec: SecureTokenCodec
    limiter: RateLimiter
    access: AccessController
    monitor: SecurityMonitor
    guard: ScanGuard
    sessions: SessionManager
    rewards: RewardClient
    upload_constraints: UploadConstraints

    def cleanup(self) -> dict:
        return {
            'alerts_removed': self.monitor.clear_old_alerts(),
            'scans_removed': self.guard.clear_old_scans(),
            'sessions_removed': self.sessions.cleanup_expired(),
            'activity_keys_removed': self.monitor.prune_activity(),
            'roles_uncached': self.access.prune_cache(),
        }

    def audit(self) -> dict:
        return {
            'rate_limits': self.limiter.stats(),
            'rbac': self.access.audit(),
            'qr_statistics': self.guard.get_statistics(),
            'session_statistics': self.sessions.statistics(),
            'security_status': self.monitor.status(),
        }


def _role_provider(config):
    kind = (config.get('ROLE_PROVIDER') or 'static').lower()
    if kind == 'sql':
        return SqlRoleProvider()
    if kind == 'http':
        url = config.get('ROLE_SERVICE_URL')
        if not url:
            raise ConfigurationError('ROLE_PROVIDER=http needs ROLE_SERVICE_URL')
        return HttpRoleProvider(url, config.get('ROLE_SERVICE_KEY'), timeout=config.get('SERVICE_TIMEOUT', 2.5))
    if kind == 'static':
        return StaticRoleProvider(config.get('STATIC_ROLES') or {})
    raise ConfigurationError(f'Unknown ROLE_PROVIDER: {kind}')


def build_context(config, clock: Callable[[], float] = time.time) -> SecurityContext:
    """Build every service from a Flask-style config mapping; raises ConfigurationError early."""
    codec = SecureTokenCodec(config.get('SCAN_TOKEN_SECRET'), clock=clock)
    policies = {
        'scan': Policy(60, int(config.get('RATE_LIMIT_SCANS', 10))),
        'login': Policy(15 * 60, int(config.get('RATE_LIMIT_LOGINS', 5))),
    }
    store = make_store(config.get('REDIS_URL'), bool(config.get('USE_REDIS', False)),
                       timeout=config.get('SERVICE_TIMEOUT', 2.5), clock=clock)
    limiter = RateLimiter(policies, store=store, clock=clock)
    access = AccessController(_role_provider(config), clock=clock)
    monitor = SecurityMonitor(clock=clock)
    guard = ScanGuard(codec, limiter, access, monitor,
                      dedup_window=config.get('DEDUP_WINDOW', 60), clock=clock, store=store)
    sessions = SessionManager(idle_timeout=config.get('SESSION_TIMEOUT', 3600), clock=clock, store=store)
    rewards = RewardClient(config.get('REWARD_SERVICE_URL'), config.get('REWARD_SERVICE_KEY'),
                           timeout=config.get('SERVICE_TIMEOUT', 2.5))
    constraints = UploadConstraints(
        max_size=config.get('MAX_FILE_SIZE', UploadConstraints.max_size),
        allowed_types=tuple(config.get('ALLOWED_FILE_TYPES') or UploadConstraints.allowed_types),
    )
    log.info('security context ready (roles=%s)', type(access.provider).__name__)
    return SecurityContext(codec, limiter, access, monitor, guard, sessions, rewards, constraints)


def get_context() -> SecurityContext:
    return current_app.extensions[EXTENSION_KEY]
