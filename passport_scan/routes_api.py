import logging

from flask import Blueprint, jsonify, request

from .errors import Result
from .services.context import get_context
from .services.rbac import UPLOAD_AVATAR
from .services.sanitizer import FileDescriptor, validate_file_upload, validate_identity, validate_profile

log = logging.getLogger(__name__)

bp = Blueprint('api', __name__)


def _respond(result: Result):
    return jsonify(result.to_dict()), result.status_code


def _caller():
    """Validated X-User-Id header, or an error response."""
    res = validate_identity(request.headers.get('X-User-Id', ''))
    if not res.success:
        return None, (jsonify({'error': 'missing_identity', 'message': res.message}), 401)
    return res.data, None


def _rate_limited(identity, action):
    status = get_context().limiter.check_and_consume(identity, action)
    if status.allowed:
        return None
    return _respond(Result.fail('RateLimitExceeded', status.message, reset_at=status.reset_at))


@bp.post('/scan')
def scan():
    identity, err = _caller()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    context = data.get('context') if isinstance(data.get('context'), dict) else {}
    ctx = get_context()
    result = ctx.guard.process(identity, data.get('payload'), context)
    if not result.success:
        return _respond(result)

    denied = _rate_limited(identity, 'reward_claim')
    if denied:
        ctx.guard.release(identity, data['payload'])
        return denied
    grant = ctx.rewards.grant(result.data)
    if not grant.success:
        # no reward, no scan: the client retries the whole scan
        ctx.guard.release(identity, data['payload'])
        log.warning('reward grant failed for %s: %s', identity, grant.message)
        return _respond(grant)
    body = result.to_dict()
    body['reward'] = grant.message
    return jsonify(body)


@bp.post('/sessions')
def create_session():
    identity, err = _caller()
    if err:
        return err
    denied = _rate_limited(identity, 'login')
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    session_id = get_context().sessions.create_session(identity, data.get('data') or {})
    return jsonify({'ok': True, 'session_id': session_id}), 201


@bp.get('/sessions/<session_id>')
def check_session(session_id):
    status = get_context().sessions.validate_session(session_id)
    if not status.valid:
        return jsonify({'ok': False, 'error': 'invalid_session', 'message': status.reason}), 401
    s = status.session
    return jsonify({'ok': True, 'identity': s.identity, 'created_at': s.created_at,
                    'last_activity': s.last_activity, 'data': s.data})


@bp.delete('/sessions/<session_id>')
def end_session(session_id):
    if not get_context().sessions.invalidate_session(session_id):
        return jsonify({'ok': False, 'error': 'not_found'}), 404
    return jsonify({'ok': True})


@bp.post('/uploads/validate')
def validate_upload():
    identity, err = _caller()
    if err:
        return err
    ctx = get_context()
    denied = _rate_limited(identity, 'file_upload')
    if denied:
        return denied
    if not ctx.access.has_permission(identity, UPLOAD_AVATAR):
        ctx.monitor.create_alert('PERMISSION_VIOLATION', {'identity': identity, 'permission': UPLOAD_AVATAR})
        return _respond(Result.fail('PermissionDenied', 'You do not have permission to upload files'))

    storage = request.files.get('file')
    descriptor = FileDescriptor.from_storage(storage) if storage else None
    result = validate_file_upload(descriptor, ctx.upload_constraints)
    if not result.success:
        ctx.monitor.track_activity(identity, 'invalid_upload', {'error': result.message})
    return _respond(result)


@bp.post('/profile/validate')
def validate_profile_update():
    identity, err = _caller()
    if err:
        return err
    denied = _rate_limited(identity, 'profile_update')
    if denied:
        return denied
    return _respond(validate_profile(request.get_json(silent=True) or {}))


@bp.get('/routes/check')
def check_route():
    identity, err = _caller()
    if err:
        return err
    route = request.args.get('route', '')
    ctx = get_context()
    allowed = ctx.access.can_access_route(identity, route)
    if not allowed:
        ctx.monitor.track_activity(identity, 'route_denied', {'route': route})
    return jsonify({'route': route, 'role': ctx.access.get_role(identity), 'allowed': allowed})
