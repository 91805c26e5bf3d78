import base64
import functools
import json
import logging
import secrets
from dataclasses import dataclass
from io import BytesIO
from urllib.parse import urlencode

import qrcode
from flask import (Blueprint, Flask, Response, current_app, g, jsonify, request,
                   send_file, send_from_directory)
from flask_socketio import SocketIO

from .auth import Authorizer, Role
from .errors import AuthError, UploadError, ValidationError, WheelError
from .hub import RealtimeHub, config_event, leaderboard_event, preview_flash_event
from .profiles import DEFAULT_UPLOAD_MAX_BYTES, ProfileStore, sanitize_profile
from .spin import SpinEngine, SpinRequest

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'PROFILES_DIR': 'profiles',
    'ADMIN_PASS': 'changeme_full_admin',
    'ADMIN_VIEW_PASS': 'changeme_view_admin',
    'API_KEY': 'changeme_api_key',
    'UPLOAD_MAX_BYTES': DEFAULT_UPLOAD_MAX_BYTES,
    'PING_INTERVAL': 30,
    'PING_TIMEOUT': 20,
    'PUBLIC_BASE_URL': '',
    'SOCKETIO_ASYNC_MODE': None,
    'HOST': '0.0.0.0',
    'PORT': 3000,
    'LOG_FILE': 'stream_wheel.log',
    'LOG_LEVEL': 'INFO',
}

# multipart framing on top of the raw image
MULTIPART_OVERHEAD = 64 * 1024


@dataclass
class Wheel:
    """Everything a request handler needs, stored in app.extensions"""
    store: ProfileStore
    authorizer: Authorizer
    hub: RealtimeHub
    engine: SpinEngine
    socketio: SocketIO


def _wheel():
    return current_app.extensions['streamwheel']


bp = Blueprint('wheel', __name__)


# ==============================================================================
# AUTH HELPERS
# ==============================================================================

def admin_role():
    return _wheel().authorizer.classify(request.headers.get('x-admin-pass', ''))


def require_admin(full=False):
    """Reject the request unless x-admin-pass grants an admin role (full if asked)"""
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            role = admin_role()
            if not role.is_admin or (full and role is not Role.ADMIN_FULL):
                logger.warning(f"🚫 {request.method} {request.path} forbidden ({role.value})")
                raise AuthError()
            g.role = role
            return view(*args, **kwargs)
        return wrapper
    return decorator


def require_token(profile, token):
    """403 unless ``token`` is the profile's viewer token; same answer for unknown profiles"""
    wheel = _wheel()
    if wheel.authorizer.classify_token(wheel.store.get_token(profile), token) is not Role.TOKEN:
        raise AuthError()


def json_body(required=False):
    body = request.get_json(silent=True)
    if body is None:
        if required:
            raise ValidationError('Request body must be valid JSON')
        return {}
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    return body


# ==============================================================================
# PUBLIC ENDPOINTS
# ==============================================================================

@bp.route('/health')
def health():
    return jsonify({'status': 'healthy'})


@bp.route('/public/config')
def public_config():
    profile = sanitize_profile(request.args.get('profile', ''))
    require_token(profile, request.args.get('token', ''))
    return jsonify(_wheel().store.get_config(profile))


@bp.route('/public/leaderboard/data/<profile>')
def public_leaderboard(profile):
    profile = sanitize_profile(profile)
    require_token(profile, request.args.get('token', ''))
    return jsonify(_wheel().store.get_leaderboard(profile))


@bp.route('/public/logs/<profile>')
def public_logs(profile):
    """Live log lines for the matching viewer token or any admin"""
    profile = sanitize_profile(profile)
    if not admin_role().is_admin:
        require_token(profile, request.args.get('token', ''))
    return jsonify(_wheel().store.read_log(profile))


@bp.route('/public/uploads/<profile>/<path:filename>')
def public_upload(profile, filename):
    store = _wheel().store
    profile = sanitize_profile(profile)
    if not store.exists(profile):
        return jsonify({'error': 'Not found', 'message': 'Upload not found'}), 404
    return send_from_directory(store.uploads_dir(profile), filename)


@bp.route('/api/spin', methods=['POST'])
def trigger_spin():
    """Spin a profile's wheel. Needs x-api-key or an admin x-admin-pass."""
    wheel = _wheel()
    role = admin_role()
    if not role.is_admin and not wheel.authorizer.check_api_key(request.headers.get('x-api-key', '')):
        raise AuthError()

    body = json_body()
    profile = sanitize_profile(body.get('profile'))
    payload = wheel.engine.spin(profile, SpinRequest.from_json(body, role))
    return jsonify({'ok': True, 'payload': payload})


@bp.route('/api/preview-flash', methods=['POST'])
@require_admin()
def preview_flash():
    wheel = _wheel()
    profile = wheel.store.ensure(json_body().get('profile'))
    wheel.hub.broadcast(preview_flash_event(profile))
    return jsonify({'ok': True})


@bp.route('/api/status')
@require_admin()
def status():
    wheel = _wheel()
    return jsonify({
        'hub': wheel.hub.stats(),
        'profiles': len(wheel.store.list_profiles()),
        'role': g.role.value,
    })


# ==============================================================================
# ADMIN ENDPOINTS
# ==============================================================================

@bp.route('/admin/list-profiles')
@require_admin()
def list_profiles():
    return jsonify(_wheel().store.list_profiles())


@bp.route('/admin/create-profile', methods=['POST'])
@require_admin(full=True)
def create_profile():
    name = json_body(required=True).get('name')
    if not isinstance(name, str) or not name.strip():
        raise ValidationError('Profile name is required')
    store = _wheel().store
    profile = store.ensure(name)
    store.append_log(profile, f"{g.role.value} created profile")
    return jsonify({'ok': True, 'profile': profile})


@bp.route('/admin/config/<profile>', methods=['GET'])
@require_admin()
def get_config(profile):
    config = _wheel().store.get_config(profile)
    return jsonify({'config': config, 'role': g.role.value})


@bp.route('/admin/config/<profile>', methods=['POST'])
@require_admin()
def save_config(profile):
    wheel = _wheel()
    profile = wheel.store.ensure(profile)
    config = wheel.store.save_config(profile, json_body(required=True))
    wheel.store.append_log(profile, f"{g.role.value} saved config")
    wheel.hub.broadcast(config_event(profile, config))
    return jsonify({'ok': True, 'config': config})


@bp.route('/admin/regenerate-token/<profile>', methods=['POST'])
@require_admin(full=True)
def regenerate_token(profile):
    wheel = _wheel()
    profile = wheel.store.ensure(profile)
    token = wheel.store.regenerate_token(profile)
    wheel.hub.evict(profile, Role.TOKEN)
    wheel.store.append_log(profile, f"{g.role.value} regenerated viewer token")
    wheel.hub.broadcast(config_event(profile, wheel.store.get_config(profile)))
    return jsonify({'ok': True, 'token': token})


@bp.route('/admin/upload-logo/<profile>', methods=['POST'])
@require_admin()
def upload_logo(profile):
    """Accepts multipart field ``logo`` or a raw image body with its Content-Type"""
    wheel = _wheel()
    profile = wheel.store.ensure(profile)

    if request.mimetype.startswith('multipart/'):
        upload = request.files.get('logo')
        if upload is None or upload.filename == '':
            raise UploadError('No file provided')
        raw, mimetype = upload.read(), upload.mimetype
    else:
        raw, mimetype = request.get_data(), request.mimetype

    filename = wheel.store.store_uploaded_image(profile, raw, mimetype)
    url = wheel.store.upload_url(profile, filename)
    wheel.store.append_log(profile, f"{g.role.value} uploaded {filename}")
    wheel.hub.broadcast(config_event(profile, wheel.store.get_config(profile)))
    return jsonify({'ok': True, 'filename': filename, 'url': url})


@bp.route('/admin/upload/<profile>/<filename>', methods=['DELETE'])
@require_admin(full=True)
def delete_upload(profile, filename):
    wheel = _wheel()
    profile = wheel.store.ensure(profile)
    deleted = wheel.store.delete_upload(profile, filename)
    if deleted:
        wheel.store.append_log(profile, f"{g.role.value} deleted {filename}")
        wheel.hub.broadcast(config_event(profile, wheel.store.get_config(profile)))
    return jsonify({'ok': True, 'deleted': deleted})


@bp.route('/admin/clear-logs/<profile>', methods=['POST'])
@require_admin(full=True)
def clear_logs(profile):
    archive_id = _wheel().store.clear_log(profile, g.role.value)
    return jsonify({'ok': True, 'archive': archive_id})


@bp.route('/admin/reset-leaderboard/<profile>', methods=['POST'])
@require_admin(full=True)
def reset_leaderboard(profile):
    wheel = _wheel()
    profile = wheel.store.ensure(profile)
    stats = wheel.store.reset_leaderboard(profile)
    wheel.store.append_log(profile, f"{g.role.value} reset leaderboard")
    wheel.hub.broadcast(leaderboard_event(profile, stats))
    return jsonify({'ok': True})


@bp.route('/admin/logs/<profile>')
@require_admin()
def admin_logs(profile):
    return jsonify({'logs': _wheel().store.read_log_text(profile)})


@bp.route('/admin/logs-archive/<profile>')
@require_admin(full=True)
def list_archives(profile):
    return jsonify(_wheel().store.list_archives(profile))


@bp.route('/admin/logs-archive-view/<profile>/<archive_id>')
@require_admin(full=True)
def view_archive(profile, archive_id):
    return Response(_wheel().store.read_archive(profile, archive_id), mimetype='text/plain')


@bp.route('/admin/logs-archive-download/<profile>/<archive_id>')
@require_admin(full=True)
def download_archive(profile, archive_id):
    path = _wheel().store.archive_path(profile, archive_id)
    return send_file(path, mimetype='text/plain', as_attachment=True, download_name=archive_id)


@bp.route('/admin/qr/<profile>')
@require_admin()
def viewer_qr_code(profile):
    """QR code of the overlay link for this profile, as a PNG data URL"""
    wheel = _wheel()
    profile = wheel.store.ensure(profile)
    token = wheel.store.get_config(profile).get('token', '')
    base = (current_app.config['PUBLIC_BASE_URL'] or request.host_url).rstrip('/')
    url = f"{base}/public/?{urlencode({'profile': profile, 'token': token})}"

    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format='PNG')
    img_str = base64.b64encode(buffer.getvalue()).decode()
    return jsonify({'qr_code': f"data:image/png;base64,{img_str}", 'url': url})


# ==============================================================================
# ERROR HANDLERS
# ==============================================================================

@bp.app_errorhandler(WheelError)
def wheel_error(error):
    if error.status_code >= 500:
        logger.error(f"💥 {request.method} {request.path}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


@bp.app_errorhandler(404)
def not_found(error):
    return jsonify({'error': 'Not found', 'message': 'Endpoint not found'}), 404


@bp.app_errorhandler(405)
def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed', 'message': str(error)}), 405


@bp.app_errorhandler(413)
def file_too_large(error):
    limit = current_app.config['UPLOAD_MAX_BYTES']
    return jsonify({'error': 'File too large', 'message': f'Upload exceeds {limit} bytes'}), 413


@bp.app_errorhandler(500)
def internal_error(error):
    original = getattr(error, 'original_exception', None) or error
    logger.error(f"💥 Internal server error on {request.path}: {original}", exc_info=original)
    return jsonify({'error': 'Internal server error', 'message': str(original)}), 500


# ==============================================================================
# SOCKET.IO EVENT HANDLERS
# ==============================================================================

def parse_message(data):
    """Decode a client message; raw JSON text and already-decoded objects both work"""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def register_socket_handlers(socketio, wheel):
    @socketio.on('connect')
    def handle_connect(auth=None):
        logger.info(f"🔌 Client connected: {request.sid}")

    @socketio.on('disconnect')
    def handle_disconnect(reason=None):
        wheel.hub.unsubscribe(request.sid)
        logger.info(f"🔌 Client disconnected: {request.sid}")

    @socketio.on('message')
    def handle_message(data):
        message = parse_message(data)
        if not message or message.get('type') != 'subscribe':
            logger.debug(f"Ignoring message from {request.sid}: {data!r}")
            return
        try:
            wheel.hub.subscribe(
                request.sid,
                message.get('profile'),
                token=message.get('token'),
                admin_pass=message.get('adminPass'),
            )
        except WheelError as e:
            logger.error(f"💥 Subscribe failed for {request.sid}: {e.message}")
            socketio.emit('message', {'error': e.error}, to=request.sid)

    @socketio.on_error_default
    def handle_socket_error(e):
        logger.error(f"💥 Socket handler error for {request.sid}: {e}", exc_info=e)


def socket_alive(socketio):
    """sid -> bool, answered by the Socket.IO server's own session table"""
    return lambda sid: socketio.server.manager.is_connected(sid, '/')


def start_liveness_monitor(socketio, hub, interval):
    """Every ``interval`` seconds drop hub registrations whose socket is gone"""
    is_alive = socket_alive(socketio)

    def monitor():
        while True:
            socketio.sleep(interval)
            hub.reap(is_alive)

    return socketio.start_background_task(monitor)


# ==============================================================================
# APP FACTORY AND STARTUP
# ==============================================================================

def create_app(config=None):
    """Build the Flask app and its SocketIO server.

    Configuration comes from DEFAULT_CONFIG, then WHEEL_* environment
    variables, then ``config``. Returns ``(app, socketio)``.
    """
    app = Flask(__name__)
    app.config.update(DEFAULT_CONFIG, SECRET_KEY=secrets.token_hex(16))
    app.config.from_prefixed_env('WHEEL')
    if config:
        app.config.update(config)
    if not app.config.get('MAX_CONTENT_LENGTH'):
        app.config['MAX_CONTENT_LENGTH'] = app.config['UPLOAD_MAX_BYTES'] + MULTIPART_OVERHEAD

    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        ping_interval=app.config['PING_INTERVAL'],
        ping_timeout=app.config['PING_TIMEOUT'],
        async_mode=app.config['SOCKETIO_ASYNC_MODE'],
    )

    store = ProfileStore(app.config['PROFILES_DIR'], app.config['UPLOAD_MAX_BYTES'])
    authorizer = Authorizer(
        app.config['ADMIN_PASS'], app.config['ADMIN_VIEW_PASS'], app.config['API_KEY']
    )
    hub = RealtimeHub(
        store,
        authorizer,
        send=lambda sid, message: socketio.emit('message', message, to=sid),
        close=lambda sid: socketio.server.disconnect(sid, namespace='/'),
    )
    wheel = Wheel(store, authorizer, hub, SpinEngine(store, hub), socketio)
    app.extensions['streamwheel'] = wheel

    app.register_blueprint(bp)
    register_socket_handlers(socketio, wheel)

    store.ensure('default')
    return app, socketio


def configure_logging(app):
    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
        handlers=[
            logging.FileHandler(app.config['LOG_FILE']),
            logging.StreamHandler()
        ]
    )


def main():
    app, socketio = create_app()
    configure_logging(app)
    wheel = app.extensions['streamwheel']
    start_liveness_monitor(socketio, wheel.hub, app.config['PING_INTERVAL'])

    host, port = app.config['HOST'], app.config['PORT']
    logger.info("🎡 STREAM WHEEL 🎡")
    logger.info("=" * 60)
    logger.info(f"📁 Profiles:     {wheel.store.root} ({len(wheel.store.list_profiles())} known)")
    logger.info(f"🔌 Realtime:     socket.io on http://{host}:{port}/ (ping every {app.config['PING_INTERVAL']}s)")
    logger.info(f"🎲 Remote Spin:  http://{host}:{port}/api/spin")
    logger.info(f"🛠️ Admin API:    http://{host}:{port}/admin/list-profiles")
    logger.info("=" * 60)

    try:
        socketio.run(app, host=host, port=port, debug=False, allow_unsafe_werkzeug=True)
    except KeyboardInterrupt:
        logger.info("🛑 Server shutdown requested")
    logger.info("✅ Clean shutdown complete")
