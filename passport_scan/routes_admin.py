from flask import Blueprint, jsonify, request, current_app, send_file
import base64
import io
import logging
from .errors import ChecksumMismatch, Result, ValidationError
from .models import db, AuditLog
from .services.context import get_context
from .services.encoder import BitSequence, decode, encode, from_rings, rings
from .services.qr import make_qr_bytes, render_rings_png, ring_segments
from .services.rbac import MANAGE_ROLES

log = logging.getLogger(__name__)

bp = Blueprint('admin', __name__)


@bp.before_request
def require_admin_key():
    # Simple API-key auth
    api_key = request.headers.get('X-Admin-Key') or request.args.get('key')
    if not api_key or api_key != (current_app.config.get('ADMIN_API_KEY') or ''):
        return jsonify({'error': 'unauthorized'}), 401


def _audit(event_type, payload, actor=None):
    db.session.add(AuditLog(actor_type='admin', actor_id=actor or 'admin-key',
                            event_type=event_type, payload_json=payload))
    db.session.commit()


def _wants_png():
    return 'image/png' in request.headers.get('Accept', '')


def _bad_request(message):
    return jsonify({'error': 'bad_request', 'message': message}), 400


@bp.post('/issue-token')
def issue_token():
    data = request.get_json(silent=True) or {}
    product_code = str(data.get('product_code') or '')
    codec = get_context().codec
    try:
        ttl = int(data.get('ttl') or current_app.config.get('SCAN_TOKEN_TTL', 86400))
        token = codec.issue(product_code, ttl)
    except (TypeError, ValueError) as exc:
        return _bad_request(str(exc))
    verified = codec.verify_transport(token)
    png = make_qr_bytes(token)
    log.info('issued scan token for %s (ttl=%ss)', verified.product_code, ttl)

    if _wants_png():
        return send_file(
            io.BytesIO(png), mimetype='image/png', as_attachment=False,
            download_name=f'token_{verified.product_code}.png', etag=False,
        )
    return jsonify({
        'ok': True,
        'product_code': verified.product_code,
        'token': token,
        'expiry': verified.expiry,
        'qr_png_b64': base64.b64encode(png).decode('ascii'),
    })


@bp.post('/encode')
def encode_code():
    data = request.get_json(silent=True) or {}
    try:
        bits = encode(str(data.get('code') or ''))
    except ValidationError as exc:
        return jsonify(Result.from_error(exc).to_dict()), 400
    if _wants_png():
        return send_file(io.BytesIO(render_rings_png(bits)), mimetype='image/png',
                         as_attachment=False, download_name='rings.png', etag=False)
    inner, middle, outer = rings(bits)
    body = {
        'ok': True,
        'bits': bits.bits,
        'checksum': bits.checksum,
        'rings': {'inner': inner, 'middle': middle, 'outer': outer},
        'segments': ring_segments(bits),
    }
    if data.get('png'):
        body['rings_png_b64'] = base64.b64encode(render_rings_png(bits)).decode('ascii')
    return jsonify(body)


@bp.post('/decode')
def decode_bits():
    data = request.get_json(silent=True) or {}
    try:
        if data.get('rings'):
            r = data['rings']
            bits = from_rings(str(r.get('inner', '')), str(r.get('middle', '')), str(r.get('outer', '')))
        else:
            bits = BitSequence(str(data.get('bits') or ''))
        decoded = decode(bits)
    except ChecksumMismatch as exc:
        return jsonify(Result.from_error(exc).to_dict()), 400
    except (ValueError, AttributeError) as exc:
        return _bad_request(str(exc))
    return jsonify({'ok': True, 'code': decoded.code, 'valid': decoded.valid})


@bp.post('/block')
def block():
    data = request.get_json(silent=True) or {}
    payload = data.get('payload')
    if not isinstance(payload, str) or not payload:
        return _bad_request('payload is required')
    reason = str(data.get('reason') or '')
    get_context().guard.block_code(payload, reason)
    _audit('code_blocked', {'payload': payload[:20], 'reason': reason})
    return jsonify({'ok': True, 'blocked': True})


@bp.delete('/block')
def unblock():
    data = request.get_json(silent=True) or {}
    payload = data.get('payload')
    if not isinstance(payload, str) or not payload:
        return _bad_request('payload is required')
    if not get_context().guard.unblock_code(payload):
        return jsonify({'ok': False, 'error': 'not_blocked'}), 404
    _audit('code_unblocked', {'payload': payload[:20]})
    return jsonify({'ok': True, 'blocked': False})


@bp.post('/roles')
def set_role():
    ctx = get_context()
    actor = request.headers.get('X-User-Id', '')
    if not actor or not ctx.access.has_permission(actor, MANAGE_ROLES):
        ctx.monitor.create_alert('PERMISSION_VIOLATION', {'identity': actor, 'permission': MANAGE_ROLES})
        return jsonify(Result.fail('PermissionDenied', 'You do not have permission to manage roles').to_dict()), 403
    data = request.get_json(silent=True) or {}
    identity = data.get('identity')
    role = data.get('role')
    if not identity:
        return _bad_request('identity is required')
    try:
        ctx.access.set_role(identity, role, actor=actor)
    except ValueError as exc:
        return _bad_request(str(exc))
    _audit('role_change', {'identity': identity, 'role': role}, actor=actor)
    return jsonify({'ok': True, 'identity': identity, 'role': role})


@bp.get('/status')
def status():
    return jsonify(get_context().audit())


@bp.post('/alerts/<alert_id>/ack')
def ack_alert(alert_id):
    monitor = get_context().monitor
    if not monitor.acknowledge_alert(alert_id):
        return jsonify({'ok': False, 'error': 'not_found'}), 404
    return jsonify({'ok': True, 'threat_level': monitor.threat_level})


@bp.post('/rate-limits/reset')
def reset_rate_limits():
    data = request.get_json(silent=True) or {}
    limiter = get_context().limiter
    identity, action = data.get('identity'), data.get('action')
    if not identity and not action:
        limiter.clear()
        return jsonify({'ok': True, 'cleared': 'all'})
    if not identity or not action:
        return _bad_request('identity and action are both required')
    try:
        limiter.reset(identity, action)
    except ValueError as exc:
        return _bad_request(str(exc))
    return jsonify({'ok': True, 'cleared': f'{action}:{identity}'})


@bp.post('/cleanup')
def cleanup():
    return jsonify({'ok': True, **get_context().cleanup()})
