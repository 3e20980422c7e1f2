"""Input sanitization and per-field validation.

The denylists are a defense-in-depth layer and are knowingly incomplete;
every field validator pairs them with an allowlist regex.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlparse

from ..errors import Result, ValidationError

PATTERNS = {
    'identity': re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.I),
    'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
    'username': re.compile(r'^[a-zA-Z0-9_-]{3,20}$'),
    'display_name': re.compile(r'^[a-zA-Z0-9\s\-_.]{2,50}$'),
    'resource_id': re.compile(r'^[a-zA-Z0-9_-]+$'),
    'url': re.compile(r'^https?://[^\s/$.?#].[^\s]*$', re.I),
    'phone': re.compile(r'^\+?[\d\s\-()]{10,15}$'),
    'date': re.compile(r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?$'),
}

# checked in this order; first hit wins
DENYLIST = {
    'sql_injection': [
        re.compile(r'\b(union|select|insert|update|delete|drop|create|alter)\b', re.I),
        re.compile(r'\b(or|and)\b\s+\d+\s*=\s*\d+', re.I),
        re.compile(r'\b(exec|execute|sp_|xp_)\b', re.I),
        re.compile(r'\b(script|javascript|vbscript|expression)\b', re.I),
    ],
    'xss': [
        re.compile(r'<script[^>]*>', re.I),
        re.compile(r'javascript:', re.I),
        re.compile(r'on\w+\s*=', re.I),
        re.compile(r'<(iframe|object|embed|link|meta|style|form|input|textarea|select|button|a|img|video|audio|canvas|svg)\b[^>]*>', re.I),
    ],
    'path_traversal': [
        re.compile(r'\.\./'),
        re.compile(r'\.\.\\'),
        re.compile(r'%2e%2e%2f', re.I),
        re.compile(r'%2e%2e%5c', re.I),
        re.compile(r'\.\.%2f', re.I),
        re.compile(r'\.\.%5c', re.I),
    ],
    'command_injection': [
        re.compile(r'\b(cat|ls|pwd|whoami|id|uname|ps|netstat|ifconfig|ipconfig)\b', re.I),
        re.compile(r'\b(rm|del|erase|format|fdisk|mkfs)\b', re.I),
        re.compile(r'\b(wget|curl|nc|telnet|ssh|ftp)\b', re.I),
        re.compile(r'\b(ping|traceroute|nslookup|dig)\b', re.I),
        re.compile(r'\b(sudo|su|chmod|chown)\b', re.I),
    ],
    'nosql_injection': [
        re.compile(r'\$(where|ne|gt|lt|gte|lte|in|nin|exists|regex)', re.I),
        re.compile(r'\$(or|and|not|nor)', re.I),
        re.compile(r'\$(set|unset|inc|push|pull)', re.I),
    ],
}

INJECTION_CATEGORIES = frozenset(DENYLIST)
RESERVED_USERNAMES = frozenset({'admin', 'root', 'system', 'support', 'help', 'info', 'test', 'demo'})

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_ALLOWED_TYPES = ('image/jpeg', 'image/png', 'image/webp')
DEFAULT_ALLOWED_EXTENSIONS = ('jpg', 'jpeg', 'png', 'webp', 'gif')


def sanitize(raw, max_length: int = 1000) -> str:
    if not isinstance(raw, str):
        raise ValidationError('Input must be a string', category='type')
    if len(raw) > max_length:
        raise ValidationError(f'Input too long. Maximum length is {max_length} characters.', category='length')
    cleaned = raw.replace('\x00', '').strip()
    for category, patterns in DENYLIST.items():
        for pattern in patterns:
            if pattern.search(cleaned):
                raise ValidationError(f'Malicious input detected: {category}', category=category)
    return cleaned


def _field(name: str, raw, max_length: int, pattern: str, error: str) -> Result:
    try:
        cleaned = sanitize(raw, max_length)
        if not PATTERNS[pattern].match(cleaned):
            raise ValidationError(error)
    except ValidationError as exc:
        return Result.fail(exc.code, f'{name} validation failed: {exc.message}', category=exc.category)
    return Result.ok(cleaned, f'{name} validated successfully')


def validate_identity(value) -> Result:
    return _field('User ID', value, 36, 'identity', 'Invalid user ID format')


def validate_email(value) -> Result:
    res = _field('Email', value, 254, 'email', 'Invalid email format')
    if not res.success:
        return res
    local, _, domain = res.data.partition('@')
    if len(local) > 64 or len(domain) > 253:
        return Result.fail('ValidationError', 'Email validation failed: Email address too long', category='format')
    res.data = res.data.lower()
    return res


def validate_username(value) -> Result:
    res = _field('Username', value, 20, 'username',
                 'Username must be 3-20 characters, alphanumeric with hyphens and underscores only')
    if res.success and res.data.lower() in RESERVED_USERNAMES:
        return Result.fail('ValidationError', 'Username validation failed: Username is reserved', category='reserved')
    return res


def validate_display_name(value) -> Result:
    return _field('Display name', value, 50, 'display_name',
                  'Display name must be 2-50 characters, letters, numbers, spaces, hyphens, underscores, and periods only')


def validate_resource_id(value) -> Result:
    return _field('Resource ID', value, 100, 'resource_id', 'Invalid resource ID format')


def validate_url(value) -> Result:
    res = _field('URL', value, 2048, 'url', 'Invalid URL format')
    if res.success and urlparse(res.data).scheme.lower() not in ('http', 'https'):
        return Result.fail('ValidationError', 'URL validation failed: Only HTTP and HTTPS protocols are allowed',
                           category='format')
    return res


def validate_phone(value) -> Result:
    res = _field('Phone', value, 20, 'phone', 'Invalid phone number format')
    if res.success:
        digits = re.sub(r'\D', '', res.data)
        if not 10 <= len(digits) <= 15:
            return Result.fail('ValidationError', 'Phone validation failed: Phone number must be 10-15 digits',
                               category='format')
    return res


def validate_date(value) -> Result:
    res = _field('Date', value, 30, 'date', 'Invalid date format. Use ISO 8601 format')
    if res.success:
        try:
            datetime.fromisoformat(res.data.rstrip('Z'))
        except ValueError:
            return Result.fail('ValidationError', 'Date validation failed: Invalid date', category='format')
    return res


PROFILE_FIELDS = {
    'email': validate_email,
    'username': validate_username,
    'display_name': validate_display_name,
    'phone': validate_phone,
}


def validate_profile(fields: dict) -> Result:
    validated, errors = {}, []
    for name, validator in PROFILE_FIELDS.items():
        if fields.get(name):
            res = validator(fields[name])
            if res.success:
                validated[name] = res.data
            else:
                errors.append(res.message)
    if fields.get('bio'):
        try:
            validated['bio'] = sanitize(fields['bio'], 500)
        except ValidationError as exc:
            errors.append(f'Bio validation failed: {exc.message}')
    if errors:
        return Result.fail('ValidationError', 'Validation errors: ' + '; '.join(errors), category='profile')
    return Result.ok(validated, 'User profile validated successfully')


@dataclass(frozen=True)
class FileDescriptor:
    name: str
    size: int
    mime_type: str

    @classmethod
    def from_storage(cls, storage) -> 'FileDescriptor':
        """Build a descriptor from a werkzeug FileStorage."""
        stream = storage.stream
        pos = stream.tell()
        stream.seek(0, 2)
        size = stream.tell()
        stream.seek(pos)
        return cls(storage.filename or '', size, storage.mimetype or '')


@dataclass(frozen=True)
class UploadConstraints:
    max_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_types: tuple = DEFAULT_ALLOWED_TYPES
    allowed_extensions: tuple = DEFAULT_ALLOWED_EXTENSIONS


def validate_file_upload(descriptor: FileDescriptor | None, constraints: UploadConstraints = UploadConstraints()) -> Result:
    def reject(message, category='file'):
        return Result.fail('ValidationError', f'File upload validation failed: {message}', category=category)

    if descriptor is None:
        return reject('No file provided')
    if descriptor.size > constraints.max_size:
        return reject(f'File too large. Maximum size is {round(constraints.max_size / 1024 / 1024)}MB')
    if descriptor.mime_type not in constraints.allowed_types:
        return reject(f'File type not allowed. Allowed types: {", ".join(constraints.allowed_types)}')
    ext = descriptor.name.rsplit('.', 1)[-1].lower() if '.' in descriptor.name else ''
    if ext not in constraints.allowed_extensions:
        return reject('File extension not allowed. Only image files are permitted')
    try:
        name = sanitize(descriptor.name, 255)
    except ValidationError as exc:
        return reject(exc.message, exc.category)
    if any(p.search(name) for p in DENYLIST['path_traversal']):
        return reject('Malicious filename detected', 'path_traversal')
    return Result.ok({'file_name': name, 'file_size': descriptor.size, 'file_type': descriptor.mime_type},
                     'File upload validated successfully')
