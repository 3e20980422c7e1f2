import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable

import redis

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Policy:
    window: float
    limit: int


DEFAULT_POLICIES = {
    'scan': Policy(60, 10),
    'login': Policy(15 * 60, 5),
    'file_upload': Policy(60, 5),
    'profile_update': Policy(60, 10),
    'reward_claim': Policy(60, 20),
    'api': Policy(60, 100),
}


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    @property
    def message(self) -> str:
        if self.allowed:
            return 'Rate limit check passed'
        return f'Rate limit exceeded. Try again in {self.retry_after} seconds.'


class _MemStore:
    """Process-memory stand-in for Redis.

    Holds TTL keys (dedup slots, block list, sessions) and the sliding
    windows of the rate limiter. Every read-modify-write happens under one lock.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._data = {}
        self._exp = {}
        self._windows = {}
        self._lock = threading.Lock()

    def _cleanup(self):
        now = self._clock()
        expired = [k for k, ts in self._exp.items() if ts <= now]
        for k in expired:
            self._data.pop(k, None)
            self._exp.pop(k, None)

    def _put(self, key, value, ttl):
        self._data[key] = value
        if ttl is None:
            self._exp.pop(key, None)
        else:
            self._exp[key] = self._clock() + ttl

    def setex(self, key, ttl, value):
        with self._lock:
            self._cleanup()
            self._put(key, value, ttl)

    def set(self, key, value):
        self.setex(key, None, value)

    def set_nx(self, key, ttl, value):
        with self._lock:
            self._cleanup()
            if key in self._data:
                return False
            self._put(key, value, ttl)
            return True

    def get(self, key):
        with self._lock:
            self._cleanup()
            return self._data.get(key)

    def exists(self, key):
        with self._lock:
            self._cleanup()
            return 1 if key in self._data else 0

    def delete(self, *keys):
        with self._lock:
            removed = 0
            for key in keys:
                self._exp.pop(key, None)
                if self._data.pop(key, None) is not None:
                    removed += 1
            return removed

    def scan(self, prefix):
        with self._lock:
            self._cleanup()
            return [k for k in self._data if k.startswith(prefix)]

    def _live(self, key, now, window):
        return [ts for ts in self._windows.get(key, []) if now - ts < window]

    def hit(self, key, now, window, limit):
        with self._lock:
            entries = self._live(key, now, window)
            if len(entries) >= limit:
                self._windows[key] = entries
                return False, len(entries), entries[0]
            entries.append(now)
            self._windows[key] = entries
            return True, len(entries), entries[0]

    def peek(self, key, now, window):
        with self._lock:
            return self._live(key, now, window)

    def drop_window(self, key):
        with self._lock:
            self._windows.pop(key, None)

    def clear_windows(self):
        with self._lock:
            self._windows.clear()

    def window_keys(self):
        with self._lock:
            return list(self._windows)


# prune, count and append in one round trip so workers cannot both see "under limit"
_HIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, count, oldest[2]}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, oldest[2]}
"""


class _RedisStore:
    def __init__(self, client, prefix='rl:'):
        self._r = client
        self._prefix = prefix
        self._hit = client.register_script(_HIT_SCRIPT)

    def setex(self, key, ttl, value):
        self._r.set(key, value, px=max(1, int(ttl * 1000)))

    def set(self, key, value):
        self._r.set(key, value)

    def set_nx(self, key, ttl, value):
        return bool(self._r.set(key, value, nx=True, px=max(1, int(ttl * 1000))))

    def get(self, key):
        return self._r.get(key)

    def exists(self, key):
        return self._r.exists(key)

    def delete(self, *keys):
        return self._r.delete(*keys) if keys else 0

    def scan(self, prefix):
        return list(self._r.scan_iter(match=prefix + '*'))

    def hit(self, key, now, window, limit):
        allowed, count, oldest = self._hit(
            keys=[self._prefix + key], args=[repr(now), repr(window), limit, f'{now}:{uuid.uuid4().hex}'])
        return bool(int(allowed)), int(count), float(oldest)

    def peek(self, key, now, window):
        k = self._prefix + key
        return [score for _, score in self._r.zrangebyscore(k, f'({now - window}', '+inf', withscores=True)]

    def drop_window(self, key):
        self._r.delete(self._prefix + key)

    def clear_windows(self):
        for k in self._r.scan_iter(match=self._prefix + '*'):
            self._r.delete(k)

    def window_keys(self):
        return [k[len(self._prefix):] for k in self._r.scan_iter(match=self._prefix + '*')]


def make_store(redis_url, use_redis=True, timeout=2.5, clock=time.time):
    """Use Redis when configured and reachable, else fall back to process memory."""
    if use_redis and redis_url:
        try:
            client = redis.from_url(redis_url, decode_responses=True,
                                    socket_connect_timeout=timeout, socket_timeout=timeout)
            client.ping()
            log.info('shared store using redis at %s', redis_url)
            return _RedisStore(client)
        except redis.RedisError as exc:
            log.warning('redis unavailable (%s); shared store falling back to memory', exc)
    return _MemStore(clock=clock)


class RateLimiter:
    def __init__(self, policies: dict[str, Policy] | None = None, store=None,
                 clock: Callable[[], float] = time.time):
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.store = store if store is not None else _MemStore(clock=clock)
        self._clock = clock

    def _policy(self, action: str) -> Policy:
        try:
            return self.policies[action]
        except KeyError:
            raise ValueError(f'Unknown rate limit type: {action}') from None

    @staticmethod
    def _key(identity: str, action: str) -> str:
        return f'{action}:{identity}'

    def check_and_consume(self, identity: str, action: str) -> RateLimitStatus:
        policy = self._policy(action)
        now = self._clock()
        allowed, count, oldest = self.store.hit(self._key(identity, action), now, policy.window, policy.limit)
        if not allowed:
            reset_at = oldest + policy.window
            log.info('rate limit hit action=%s identity=%s', action, identity)
            return RateLimitStatus(False, policy.limit, 0, reset_at, max(1, math.ceil(reset_at - now)))
        return RateLimitStatus(True, policy.limit, policy.limit - count, now + policy.window, 0)

    def info(self, identity: str, action: str) -> dict:
        policy = self._policy(action)
        now = self._clock()
        entries = self.store.peek(self._key(identity, action), now, policy.window)
        return {
            'identity': identity,
            'action': action,
            'limit': policy.limit,
            'used': len(entries),
            'remaining': policy.limit - len(entries),
            'window': policy.window,
            'reset_at': (max(entries) + policy.window) if entries else now,
        }

    def reset(self, identity: str, action: str) -> None:
        self._policy(action)
        self.store.drop_window(self._key(identity, action))

    def clear(self) -> None:
        self.store.clear_windows()

    def stats(self) -> dict:
        active: dict[str, int] = {}
        for key in self.store.window_keys():
            action = key.split(':', 1)[0]
            active[action] = active.get(action, 0) + 1
        return {
            'total_entries': sum(active.values()),
            'active_limits': active,
            'policies': {name: {'window': p.window, 'limit': p.limit} for name, p in self.policies.items()},
        }
