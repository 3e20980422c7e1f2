"""Role-based access control.

Roles nest user < moderator < admin < super_admin; each role carries its
own permissions plus everything below it. Role lookup goes through an
injected provider so the resolution logic stays pure.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Protocol

import requests

from ..errors import RoleLookupError

log = logging.getLogger(__name__)

USER, MODERATOR, ADMIN, SUPER_ADMIN = 'user', 'moderator', 'admin', 'super_admin'
ROLE_ORDER = (USER, MODERATOR, ADMIN, SUPER_ADMIN)

SCAN_QR = 'user:qr:scan'
UPLOAD_AVATAR = 'user:avatar:upload'
EDIT_OWN_PROFILE = 'user:profile:edit'
MANAGE_ROLES = 'admin:roles:manage'
ALL_PERMISSIONS = 'super_admin:all'

PERMISSIONS = {
    USER: (
        'user:profile:view',
        EDIT_OWN_PROFILE,
        SCAN_QR,
        'user:rewards:view',
        'user:stamps:view',
        UPLOAD_AVATAR,
        'user:activity:view',
    ),
    MODERATOR: (
        'moderator:profiles:view',
        'moderator:content:moderate',
        'moderator:reports:view',
        'moderator:rewards:manage',
        'moderator:analytics:view',
    ),
    ADMIN: (
        'admin:users:manage',
        MANAGE_ROLES,
        'admin:data:view',
        'admin:system:manage',
        'admin:security:view',
        'admin:rewards:manage',
        'admin:content:manage',
        'admin:panel:view',
    ),
    SUPER_ADMIN: (
        ALL_PERMISSIONS,
        'super_admin:admins:manage',
        'super_admin:config:manage',
        'super_admin:security:audit',
        'super_admin:data:export',
    ),
}

# empty tuple = public
ROUTE_PERMISSIONS = {
    '/': (),
    '/login': (),
    '/register': (),
    '/forgot-password': (),
    '/home': ('user:profile:view',),
    '/passport': ('user:stamps:view',),
    '/closet': ('user:rewards:view',),
    '/profile': ('user:profile:view',),
    '/scan': (SCAN_QR,),
    '/settings': (EDIT_OWN_PROFILE,),
    '/moderator': ('moderator:reports:view',),
    '/moderator/profiles': ('moderator:profiles:view',),
    '/moderator/content': ('moderator:content:moderate',),
    '/moderator/analytics': ('moderator:analytics:view',),
    '/admin': ('admin:panel:view',),
    '/admin/users': ('admin:users:manage',),
    '/admin/roles': (MANAGE_ROLES,),
    '/admin/security': ('admin:security:view',),
    '/admin/system': ('admin:system:manage',),
    '/admin/rewards': ('admin:rewards:manage',),
    '/admin/content': ('admin:content:manage',),
    '/super-admin': (ALL_PERMISSIONS,),
    '/super-admin/admins': ('super_admin:admins:manage',),
    '/super-admin/config': ('super_admin:config:manage',),
    '/super-admin/audit': ('super_admin:security:audit',),
    '/super-admin/export': ('super_admin:data:export',),
}

ACCESS_LOG_LIMIT = 1000
# last known role per identity, used only while the role store is unreachable
ROLE_CACHE_TTL = 5 * 60
ROLE_CACHE_LIMIT = 10_000


def role_permissions(role: str) -> frozenset:
    if role not in ROLE_ORDER:
        raise ValueError(f'Invalid role: {role}')
    granted = set()
    for r in ROLE_ORDER[:ROLE_ORDER.index(role) + 1]:
        granted.update(PERMISSIONS[r])
    return frozenset(granted)


class RoleProvider(Protocol):
    def get_role(self, identity: str) -> str | None: ...

    def set_role(self, identity: str, role: str) -> None: ...


class StaticRoleProvider:
    def __init__(self, roles: dict[str, str] | None = None):
        self._roles = dict(roles or {})

    def get_role(self, identity):
        return self._roles.get(identity)

    def set_role(self, identity, role):
        self._roles[identity] = role


class SqlRoleProvider:
    """Roles persisted in the user_role table; needs an application context."""

    def get_role(self, identity):
        from ..models import db, UserRole
        row = db.session.get(UserRole, identity)
        return row.role if row else None

    def set_role(self, identity, role):
        from ..models import db, UserRole
        row = db.session.get(UserRole, identity)
        if row is None:
            db.session.add(UserRole(identity=identity, role=role))
        else:
            row.role = role
        db.session.commit()


class HttpRoleProvider:
    """Reads roles from the remote profile store (PostgREST-style profiles table)."""

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 2.5):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {'Accept': 'application/json'}
        if api_key:
            self.headers.update({'apikey': api_key, 'Authorization': f'Bearer {api_key}'})

    def get_role(self, identity):
        try:
            r = requests.get(f'{self.base_url}/profiles', params={'id': f'eq.{identity}', 'select': 'role'},
                             headers=self.headers, timeout=self.timeout)
            r.raise_for_status()
            rows = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise RoleLookupError(str(exc)) from exc
        if not rows:
            return None
        return rows[0].get('role')

    def set_role(self, identity, role):
        try:
            r = requests.patch(f'{self.base_url}/profiles', params={'id': f'eq.{identity}'},
                               json={'role': role}, headers=self.headers, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise RoleLookupError(str(exc)) from exc


class AccessController:
    def __init__(self, provider: RoleProvider | None = None, clock: Callable[[], float] = time.time):
        self.provider = provider if provider is not None else StaticRoleProvider()
        self._cache: dict[str, tuple[str, float]] = {}
        self._log: list[dict] = []
        self._lock = threading.Lock()
        self._clock = clock

    def _stamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()

    def _append_log(self, entry: dict) -> None:
        with self._lock:
            self._log.append(entry)
            if len(self._log) > ACCESS_LOG_LIMIT:
                del self._log[:len(self._log) - ACCESS_LOG_LIMIT]

    def _remember(self, identity, role):
        with self._lock:
            self._cache.pop(identity, None)
            self._cache[identity] = (role, self._clock())
            while len(self._cache) > ROLE_CACHE_LIMIT:
                del self._cache[next(iter(self._cache))]

    def get_role(self, identity: str) -> str:
        try:
            role = self.provider.get_role(identity)
        except RoleLookupError as exc:
            with self._lock:
                cached = self._cache.get(identity)
            if cached and self._clock() - cached[1] < ROLE_CACHE_TTL:
                log.warning('role lookup failed for %s (%s); using cached role', identity, exc)
                return cached[0]
            log.warning('role lookup failed for %s (%s); using least privilege', identity, exc)
            return USER
        if role not in ROLE_ORDER:
            role = USER
        self._remember(identity, role)
        return role

    def has_permission(self, identity: str, permission: str) -> bool:
        granted = role_permissions(self.get_role(identity))
        allowed = permission in granted or ALL_PERMISSIONS in granted
        self._append_log({'timestamp': self._stamp(), 'identity': identity,
                          'permission': permission, 'granted': allowed})
        return allowed

    def has_any_permission(self, identity: str, permissions) -> bool:
        return any(self.has_permission(identity, p) for p in permissions)

    def has_all_permissions(self, identity: str, permissions) -> bool:
        return all(self.has_permission(identity, p) for p in permissions)

    def can_access_route(self, identity: str, route: str) -> bool:
        required = ROUTE_PERMISSIONS.get(route, ())
        if not required:
            return True
        return self.has_any_permission(identity, required)

    def set_role(self, identity: str, role: str, actor: str | None = None) -> None:
        if role not in ROLE_ORDER:
            raise ValueError(f'Invalid role: {role}')
        self.provider.set_role(identity, role)
        self._remember(identity, role)
        self._append_log({'timestamp': self._stamp(), 'identity': identity,
                          'action': 'role_change', 'new_role': role, 'actor': actor})
        log.info('role of %s set to %s by %s', identity, role, actor or 'system')

    def is_moderator(self, identity: str) -> bool:
        return ROLE_ORDER.index(self.get_role(identity)) >= ROLE_ORDER.index(MODERATOR)

    def is_admin(self, identity: str) -> bool:
        return self.get_role(identity) in (ADMIN, SUPER_ADMIN)

    def is_super_admin(self, identity: str) -> bool:
        return self.get_role(identity) == SUPER_ADMIN

    def users_by_role(self, role: str) -> list[str]:
        if role not in ROLE_ORDER:
            raise ValueError(f'Invalid role: {role}')
        with self._lock:
            return [ident for ident, (r, _) in self._cache.items() if r == role]

    def access_log(self, limit: int = 100) -> list[dict]:
        with self._lock:
            return list(self._log[-limit:])

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def prune_cache(self):
        cutoff = self._clock() - ROLE_CACHE_TTL
        with self._lock:
            stale = [k for k, (_, ts) in self._cache.items() if ts < cutoff]
            for k in stale:
                del self._cache[k]
        return len(stale)

    def audit(self) -> dict:
        with self._lock:
            cached = {k: r for k, (r, _) in self._cache.items()}
            entries = len(self._log)
        return {
            'total_users': len(cached),
            'roles': {r: sum(1 for v in cached.values() if v == r) for r in ROLE_ORDER},
            'access_log_entries': entries,
            'routes': len(ROUTE_PERMISSIONS),
        }
