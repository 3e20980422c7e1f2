"""Scan decision pipeline.

RECEIVED -> SANITIZED -> RATE_OK -> PERMITTED -> NOT_DUPLICATE ->
NOT_BLOCKED -> VERIFIED -> ACCEPTED, or REJECTED at the first failing
stage. Every outcome is reported to the security monitor.
"""
import hashlib
import json
import logging
import time
from typing import Callable

from ..errors import (BlockedCode, DuplicateScan, PermissionDenied, RateLimitExceeded,
                      Result, ScanError, ValidationError)
from .monitor import SecurityMonitor
from .rate_limit import RateLimiter
from .rbac import SCAN_QR, AccessController
from .sanitizer import INJECTION_CATEGORIES, sanitize
from .tokens import SecureTokenCodec, looks_like_token

log = logging.getLogger(__name__)

RECEIVED = 'RECEIVED'
SANITIZED = 'SANITIZED'
RATE_OK = 'RATE_OK'
PERMITTED = 'PERMITTED'
NOT_DUPLICATE = 'NOT_DUPLICATE'
NOT_BLOCKED = 'NOT_BLOCKED'
VERIFIED = 'VERIFIED'
ACCEPTED = 'ACCEPTED'
REJECTED = 'REJECTED'

MAX_PAYLOAD_LENGTH = 10_000
LEGACY_MAX_LENGTH = 1000
DEDUP_WINDOW = 60
SCAN_RETENTION = 60 * 60
CODE_FIELDS = ('productCode', 'product_code', 'shortId', 'code')

# shared store keys; history and verifications stay until clear_old_scans
DEDUP_PREFIX = 'dedup:'
HISTORY_PREFIX = 'scan:'
VERIFIED_PREFIX = 'verified:'
BLOCK_PREFIX = 'block:'


def _preview(raw) -> str:
    if isinstance(raw, str):
        return raw[:20] + ('...' if len(raw) > 20 else '')
    return f'<{type(raw).__name__}>'


def _digest(raw):
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


class ScanGuard:
    def __init__(self, codec: SecureTokenCodec, limiter: RateLimiter, access: AccessController,
                 monitor: SecurityMonitor | None = None, dedup_window: float = DEDUP_WINDOW,
                 clock: Callable[[], float] = time.time, store=None):
        self.codec = codec
        self.limiter = limiter
        self.access = access
        self.monitor = monitor if monitor is not None else SecurityMonitor(clock=clock)
        self.dedup_window = dedup_window
        self.store = store if store is not None else limiter.store
        self._clock = clock

    def process(self, identity: str, raw_payload, context: dict | None = None) -> Result:
        try:
            return self._process(identity, raw_payload, context or {})
        except Exception:
            log.exception('unexpected error while processing scan for %s', identity)
            self.monitor.record_event('QR_SCAN_ERROR', identity, 'error', payload=_preview(raw_payload))
            self.monitor.create_alert('SYSTEM_ERROR', {'identity': identity, 'stage': 'process'})
            return Result.fail('InternalError', 'An unexpected error occurred', state=REJECTED)

    def _process(self, identity, raw, context) -> Result:
        state = RECEIVED
        slot = None
        try:
            cleaned = sanitize(raw, MAX_PAYLOAD_LENGTH)
            state = SANITIZED

            status = self.limiter.check_and_consume(identity, 'scan')
            if not status.allowed:
                raise RateLimitExceeded(status.message, reset_at=status.reset_at)
            state = RATE_OK

            if not self.access.has_permission(identity, SCAN_QR):
                raise PermissionDenied('You do not have permission to scan QR codes')
            state = PERMITTED

            # check and reserve in one step; released again if a later stage rejects
            now = self._clock()
            digest = _digest(raw)
            key = DEDUP_PREFIX + f'{identity}:{digest}'
            if not self.store.set_nx(key, self.dedup_window, repr(now)):
                raise DuplicateScan()
            slot = key
            state = NOT_DUPLICATE

            if self.is_blocked(raw):
                raise BlockedCode()
            state = NOT_BLOCKED

            verified = self._verify(cleaned)
            state = VERIFIED
        except ScanError as exc:
            self._free(slot)
            return self._reject(identity, raw, state, exc)
        except Exception:
            self._free(slot)
            raise

        record = {'timestamp': now, 'identity': identity, 'context': dict(context)}
        self.store.set(HISTORY_PREFIX + f'{identity}:{digest}', json.dumps(record, default=str))
        self.store.set(VERIFIED_PREFIX + digest, json.dumps({'timestamp': now, 'result': verified}))

        data = {
            'product_code': verified['product_code'],
            'scan_timestamp': now,
            'identity': identity,
            'source': verified['source'],
            'state': ACCEPTED,
        }
        if 'expiry' in verified:
            data['expiry'] = verified['expiry']
        self.monitor.count('total_scans')
        self.monitor.record_event('QR_SCAN_SUCCESS', identity, 'accepted',
                                  product_code=data['product_code'], source=data['source'])
        log.info('scan accepted identity=%s code=%s source=%s', identity, data['product_code'], data['source'])
        return Result.ok(data, 'QR code scanned successfully')

    def _free(self, slot):
        if slot is not None:
            self.store.delete(slot)

    def release(self, identity, raw):
        """Forget an accepted scan so the same payload may be scanned again at once."""
        digest = _digest(raw)
        removed = self.store.delete(DEDUP_PREFIX + f'{identity}:{digest}', HISTORY_PREFIX + f'{identity}:{digest}')
        log.info('scan released identity=%s payload=%s', identity, _preview(raw))
        return removed > 0

    def _verify(self, cleaned: str) -> dict:
        if looks_like_token(cleaned):
            token = self.codec.verify_transport(cleaned)
            return {'product_code': token.product_code, 'source': 'token', 'expiry': token.expiry}
        try:
            parsed = json.loads(cleaned)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            for name in CODE_FIELDS:
                value = parsed.get(name)
                if isinstance(value, str) and value.strip():
                    return {'product_code': value.strip(), 'source': 'json'}
            raise ValidationError('QR JSON data carries no product code')
        if not cleaned or len(cleaned) > LEGACY_MAX_LENGTH:
            raise ValidationError('Invalid QR data format')
        return {'product_code': cleaned, 'source': 'legacy'}

    def _reject(self, identity, raw, state, exc: ScanError) -> Result:
        self.monitor.count('failed_scans')
        self.monitor.record_event('QR_SCAN_REJECTED', identity, 'rejected',
                                  error=exc.code, stage=state, payload=_preview(raw))
        self.monitor.track_activity(identity, 'failed_qr_scan', {'error': exc.code})
        if isinstance(exc, ValidationError) and exc.category in INJECTION_CATEGORIES:
            self.monitor.create_alert('MALICIOUS_INPUT', {'identity': identity, 'category': exc.category})
        elif isinstance(exc, PermissionDenied):
            self.monitor.create_alert('PERMISSION_VIOLATION', {'identity': identity, 'permission': SCAN_QR})
        log.info('scan rejected identity=%s stage=%s error=%s', identity, state, exc.code)
        result = Result.from_error(exc)
        result.extra.update(state=REJECTED, stage=state)
        return result

    def block_code(self, payload, reason=''):
        self.store.set(BLOCK_PREFIX + _digest(payload), reason or '')
        log.warning('QR code blocked: %s - %s', _preview(payload), reason)

    def unblock_code(self, payload):
        return self.store.delete(BLOCK_PREFIX + _digest(payload)) > 0

    def is_blocked(self, payload):
        return bool(self.store.exists(BLOCK_PREFIX + _digest(payload)))

    def _records(self, prefix):
        for key in self.store.scan(prefix):
            raw = self.store.get(key)
            if raw is not None:
                yield key, json.loads(raw)

    def get_statistics(self) -> dict:
        history = [rec for _, rec in self._records(HISTORY_PREFIX)]
        return {
            'total_scans': len(history),
            'blocked_codes': len(self.store.scan(BLOCK_PREFIX)),
            'unique_identities': len({rec['identity'] for rec in history}),
            'cached_verifications': len(self.store.scan(VERIFIED_PREFIX)),
        }

    def clear_old_scans(self, max_age: float = SCAN_RETENTION) -> int:
        cutoff = self._clock() - max_age
        stale = [k for k, rec in self._records(HISTORY_PREFIX) if rec['timestamp'] < cutoff]
        self.store.delete(*stale)
        self.store.delete(*[k for k, rec in self._records(VERIFIED_PREFIX) if rec['timestamp'] < cutoff])
        return len(stale)
