"""Time-boxed scan tokens.

Plaintext layout (20 chars): product code null-padded to 5, expiry in
base-36 epoch seconds zero-padded to 7, then an 8-char base-36 nonce.
The plaintext is XORed byte for byte with the repeating secret. This is
obfuscation only: there is no MAC, and a wrong secret just produces
garbage that the field checks below usually reject. New token formats
should use authenticated encryption instead.
"""
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable

from ..errors import ConfigurationError, ExpiredToken, MalformedToken
from .encoder import MAX_CODE_LENGTH

log = logging.getLogger(__name__)

CODE_WIDTH = MAX_CODE_LENGTH
EXPIRY_WIDTH = 7
NONCE_WIDTH = 8
TOKEN_LENGTH = CODE_WIDTH + EXPIRY_WIDTH + NONCE_WIDTH
TRANSPORT_PREFIX = 'st1.'
MIN_SECRET_LENGTH = 32

BASE36 = string.digits + string.ascii_lowercase
_BASE36_RE = re.compile(r'^[0-9a-z]+$')
_TRANSPORT_RE = re.compile(r'^st1\.[0-9a-f]{%d}$' % (TOKEN_LENGTH * 2))


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError('base-36 values must be non-negative')
    out = ''
    while True:
        value, rem = divmod(value, 36)
        out = BASE36[rem] + out
        if not value:
            return out


def xor_transform(data: bytes, key: bytes) -> bytes:
    """Repeating-key XOR; applying it twice restores the input."""
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


@dataclass(frozen=True)
class VerifiedToken:
    product_code: str
    expiry: int
    nonce: str
    valid: bool = True


class SecureTokenCodec:
    def __init__(self, secret: str | None, clock: Callable[[], float] = time.time):
        if not secret:
            raise ConfigurationError('SCAN_TOKEN_SECRET is not configured')
        if len(secret) < MIN_SECRET_LENGTH:
            log.warning('scan token secret is shorter than %d characters', MIN_SECRET_LENGTH)
        self._key = secret.encode('utf-8')
        self._clock = clock

    def build(self, product_code: str, ttl_seconds: int) -> bytes:
        code = product_code.strip()[:CODE_WIDTH]
        if not code or any(not ' ' <= ch <= '~' for ch in code):
            raise ValueError('product code must be 1-5 printable ASCII characters')
        expiry = int(self._clock()) + int(ttl_seconds)
        expiry_field = to_base36(expiry).rjust(EXPIRY_WIDTH, '0')
        if len(expiry_field) != EXPIRY_WIDTH:
            raise ValueError('expiry does not fit the token layout')
        nonce = ''.join(secrets.choice(BASE36) for _ in range(NONCE_WIDTH))
        plaintext = code.ljust(CODE_WIDTH, '\x00') + expiry_field + nonce
        return xor_transform(plaintext.encode('ascii'), self._key)

    def verify(self, token: bytes) -> VerifiedToken:
        if len(token) != TOKEN_LENGTH:
            raise MalformedToken(f'token must be {TOKEN_LENGTH} bytes')
        plain = xor_transform(token, self._key)
        code_field = plain[:CODE_WIDTH]
        expiry_field = plain[CODE_WIDTH:CODE_WIDTH + EXPIRY_WIDTH]
        nonce_field = plain[CODE_WIDTH + EXPIRY_WIDTH:]

        code = code_field.rstrip(b'\x00')
        if not code or any(b < 0x20 or b > 0x7e for b in code):
            raise MalformedToken('product code field is not printable')
        try:
            expiry_text = expiry_field.decode('ascii')
            nonce = nonce_field.decode('ascii')
        except UnicodeDecodeError:
            raise MalformedToken('token fields are not ASCII') from None
        if not _BASE36_RE.match(expiry_text):
            raise MalformedToken('expiry is not numeric')
        if not _BASE36_RE.match(nonce):
            raise MalformedToken('nonce is malformed')

        expiry = int(expiry_text, 36)
        if self._clock() > expiry:
            raise ExpiredToken()
        return VerifiedToken(code.decode('ascii'), expiry, nonce)

    def issue(self, product_code: str, ttl_seconds: int) -> str:
        return to_transport(self.build(product_code, ttl_seconds))

    def verify_transport(self, text: str) -> VerifiedToken:
        return self.verify(from_transport(text))


def to_transport(token: bytes) -> str:
    return TRANSPORT_PREFIX + token.hex()


def looks_like_token(text: str) -> bool:
    return text.startswith(TRANSPORT_PREFIX)


def from_transport(text: str) -> bytes:
    if not _TRANSPORT_RE.match(text):
        raise MalformedToken('token has the wrong shape')
    return bytes.fromhex(text[len(TRANSPORT_PREFIX):])
