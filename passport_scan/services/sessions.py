import json
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Callable

from .rate_limit import make_store

MAX_SESSION_AGE = 24 * 60 * 60
# expired sessions linger this long so validation can say why they ended
EXPIRED_GRACE = 60 * 60
SESSION_PREFIX = 'sess:'


@dataclass
class Session:
    id: str
    identity: str
    created_at: float
    last_activity: float
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SessionStatus:
    valid: bool
    reason: str = ''
    session: Session | None = None


class SessionManager:
    """Session table kept in the shared store under ``sess:<id>``."""

    def __init__(self, idle_timeout=3600, max_age=MAX_SESSION_AGE,
                 clock: Callable[[], float] = time.time, store=None):
        self.idle_timeout = idle_timeout
        self.max_age = max_age
        self._clock = clock
        self.store = store if store is not None else make_store(None, clock=clock)

    def _save(self, session):
        deadline = min(session.last_activity + self.idle_timeout, session.created_at + self.max_age)
        ttl = max(1, deadline - self._clock() + EXPIRED_GRACE)
        self.store.setex(SESSION_PREFIX + session.id, ttl, json.dumps(asdict(session)))

    def _load(self, session_id):
        raw = self.store.get(SESSION_PREFIX + session_id)
        return Session(**json.loads(raw)) if raw else None

    def _all(self):
        for key in self.store.scan(SESSION_PREFIX):
            session = self._load(key[len(SESSION_PREFIX):])
            if session is not None:
                yield session

    def _expired(self, session, now):
        if now - session.last_activity > self.idle_timeout:
            return 'Session expired'
        if now - session.created_at > self.max_age:
            return 'Session too old'
        return None

    def create_session(self, identity: str, data: dict | None = None) -> str:
        now = self._clock()
        session = Session(secrets.token_hex(32), identity, now, now, dict(data or {}))
        self._save(session)
        return session.id

    def validate_session(self, session_id: str) -> SessionStatus:
        now = self._clock()
        session = self._load(session_id)
        if session is None:
            return SessionStatus(False, 'Session not found')
        reason = self._expired(session, now)
        if reason:
            self.invalidate_session(session_id)
            return SessionStatus(False, reason)
        session.last_activity = now
        self._save(session)
        return SessionStatus(True, session=session)

    def invalidate_session(self, session_id):
        return self.store.delete(SESSION_PREFIX + session_id) > 0

    def invalidate_identity_sessions(self, identity):
        doomed = [SESSION_PREFIX + s.id for s in self._all() if s.identity == identity]
        return self.store.delete(*doomed)

    def cleanup_expired(self):
        now = self._clock()
        doomed = [SESSION_PREFIX + s.id for s in self._all() if self._expired(s, now)]
        return self.store.delete(*doomed)

    def statistics(self):
        now = self._clock()
        sessions = list(self._all())
        return {
            'active_sessions': len(sessions),
            'unique_identities': len({s.identity for s in sessions}),
            'average_session_age': (sum(now - s.created_at for s in sessions) / len(sessions)) if sessions else 0,
        }
