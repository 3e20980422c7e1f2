from dataclasses import dataclass, field
from typing import Any


class ScanError(Exception):
    """Base class for every rejection the scan pipeline can produce."""
    code = 'ScanError'
    message = 'Request rejected'

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(ScanError):
    code = 'ValidationError'
    message = 'Invalid input'

    def __init__(self, message: str | None = None, category: str = 'format'):
        self.category = category
        super().__init__(message)


class ChecksumMismatch(ScanError):
    code = 'ChecksumMismatch'
    message = 'Checksum does not match data bits'


class TokenError(ScanError):
    code = 'TokenError'


class MalformedToken(TokenError):
    code = 'MalformedToken'
    message = 'Scan token is malformed'


class ExpiredToken(TokenError):
    code = 'ExpiredToken'
    message = 'Scan token has expired'


class RateLimitExceeded(ScanError):
    code = 'RateLimitExceeded'
    message = 'Rate limit exceeded'

    def __init__(self, message: str | None = None, reset_at: float | None = None):
        self.reset_at = reset_at
        super().__init__(message)


class PermissionDenied(ScanError):
    code = 'PermissionDenied'
    message = 'Permission denied'


class DuplicateScan(ScanError):
    code = 'DuplicateScan'
    message = 'This QR code was recently scanned. Please wait before scanning again.'


class BlockedCode(ScanError):
    code = 'BlockedCode'
    message = 'This QR code has been blocked due to suspicious activity.'


class RoleLookupError(Exception):
    """The role store could not be reached or answered garbage."""


class ConfigurationError(Exception):
    """Fatal startup error; never raised per request."""


# error code -> HTTP status used by the blueprints
HTTP_STATUS = {
    'ValidationError': 400,
    'ChecksumMismatch': 400,
    'MalformedToken': 400,
    'ExpiredToken': 410,
    'RateLimitExceeded': 429,
    'PermissionDenied': 403,
    'DuplicateScan': 409,
    'BlockedCode': 403,
    'RewardUnavailable': 503,
    'InternalError': 500,
}


@dataclass
class Result:
    """Discriminated outcome returned across component boundaries."""
    success: bool
    data: Any = None
    error: str | None = None
    message: str = ''
    extra: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, data=None, message: str = ''):
        return cls(True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str, **extra):
        return cls(False, error=error, message=message, extra=extra)

    @classmethod
    def from_error(cls, exc: ScanError):
        extra = {}
        if isinstance(exc, ValidationError):
            extra['category'] = exc.category
        if isinstance(exc, RateLimitExceeded) and exc.reset_at is not None:
            extra['reset_at'] = exc.reset_at
        return cls(False, error=exc.code, message=exc.message, extra=extra)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return HTTP_STATUS.get(self.error, 400)

    def to_dict(self) -> dict:
        if self.success:
            return {'success': True, 'data': self.data, 'message': self.message}
        return {'success': False, 'error': self.error, 'message': self.message, **self.extra}
