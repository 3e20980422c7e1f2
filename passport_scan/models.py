from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func
import time, os


def _gen_bigint_id():
    """Generate a sortable 64-bit int: millis timestamp << 16 | 16 bits randomness."""
    return (int(time.time() * 1000) << 16) | int.from_bytes(os.urandom(2), 'big')

db = SQLAlchemy()

class UserRole(db.Model):
    __tablename__ = 'user_role'
    identity = db.Column(db.String(64), primary_key=True)
    role = db.Column(db.String(32), nullable=False, default='user')
    updated_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class AuditLog(db.Model):
    __tablename__ = 'audit_log'
    id = db.Column(db.BigInteger, primary_key=True, default=_gen_bigint_id)
    ts = db.Column(db.DateTime(timezone=True), server_default=func.now())
    actor_type = db.Column(db.String(32))  # admin|system
    actor_id = db.Column(db.String(64))
    event_type = db.Column(db.String(64))  # role_change|code_blocked|code_unblocked
    payload_json = db.Column(db.JSON)
