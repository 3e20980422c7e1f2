import os


def _flag(name, default):
    return os.environ.get(name, default).lower() not in ('0', 'false', 'no')


def _read_secret(*paths):
    for p in paths:
        try:
            with open(p, 'r') as f:
                return f.read().strip()
        except OSError:
            continue
    return None


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///local.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    USE_REDIS = _flag('USE_REDIS', '1')
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # scan tokens
    SCAN_TOKEN_SECRET = os.environ.get('SCAN_TOKEN_SECRET')
    SCAN_TOKEN_TTL = int(os.environ.get('SCAN_TOKEN_TTL', str(24 * 60 * 60)))
    DEDUP_WINDOW = int(os.environ.get('DEDUP_WINDOW', '60'))

    # limits
    RATE_LIMIT_SCANS = int(os.environ.get('RATE_LIMIT_SCANS', '10'))
    RATE_LIMIT_LOGINS = int(os.environ.get('RATE_LIMIT_LOGINS', '5'))
    SESSION_TIMEOUT = int(os.environ.get('SESSION_TIMEOUT', '3600'))
    MAX_FILE_SIZE = int(os.environ.get('MAX_FILE_SIZE', str(5 * 1024 * 1024)))
    ALLOWED_FILE_TYPES = os.environ.get('ALLOWED_FILE_TYPES', 'image/jpeg,image/png,image/webp').split(',')

    # collaborators
    ROLE_PROVIDER = os.environ.get('ROLE_PROVIDER', 'sql')
    ROLE_SERVICE_URL = os.environ.get('ROLE_SERVICE_URL')
    ROLE_SERVICE_KEY = os.environ.get('ROLE_SERVICE_KEY')
    REWARD_SERVICE_URL = os.environ.get('REWARD_SERVICE_URL')
    REWARD_SERVICE_KEY = os.environ.get('REWARD_SERVICE_KEY')
    SERVICE_TIMEOUT = float(os.environ.get('SERVICE_TIMEOUT', '2.5'))

    def __init__(self):
        # Optional fallbacks to support Secret Files on Render (/etc/secrets)
        if not self.SCAN_TOKEN_SECRET:
            self.SCAN_TOKEN_SECRET = _read_secret('/etc/secrets/scan_token_secret', 'scan_token_secret')
        if (not self.SECRET_KEY) or self.SECRET_KEY == 'dev':
            self.SECRET_KEY = _read_secret('/etc/secrets/secret_key') or self.SECRET_KEY
        if not self.ADMIN_API_KEY:
            self.ADMIN_API_KEY = _read_secret('/etc/secrets/admin_api_key')
