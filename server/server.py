"""
BioSync HTTP API Server
Exposes the sync engine, settings and device management as JSON routes and
streams sync results to dashboards over Server-Sent Events.
"""

import threading
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from waitress import create_server

import shared
from client.sync_service import SyncService
from server.events import ResultBroadcaster
from shared.errors import ConfigError
from shared.logging_config import get_server_logger
from shared.models import ApiResponse

logger = get_server_logger()

# Server configuration constants
DEFAULT_SERVER_HOST: str = '127.0.0.1'
DEFAULT_SERVER_PORT: int = 4000
WAITRESS_THREADS: int = 8
WAITRESS_CHANNEL_TIMEOUT: int = 60
WAITRESS_CLEANUP_INTERVAL: int = 30

# Global reference to Waitress server for graceful shutdown
_waitress_server = None
_waitress_lock = threading.Lock()

api = Blueprint('api', __name__)


def _sync() -> SyncService:
    return current_app.extensions['biosync.sync']


def _events() -> ResultBroadcaster:
    return current_app.extensions['biosync.events']


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _respond(result: ApiResponse, error_status: int = 400):
    """Render an ApiResponse, using error_status when it failed"""
    return jsonify(result.to_dict()), (200 if result.success else error_status)


def _missing(message: str):
    return _respond(ApiResponse.failure(ConfigError(message)))


def create_app(sync_service: SyncService, broadcaster: Optional[ResultBroadcaster] = None) -> Flask:
    """Build the Flask application around an already wired sync service"""
    app = Flask(__name__)
    CORS(app)  # dashboards are served from the desktop shell

    # leave worker threads free for the other routes and /admin/shutdown
    broadcaster = broadcaster or ResultBroadcaster(max_subscribers=WAITRESS_THREADS - 2)
    sync_service.add_result_listener(broadcaster)

    app.extensions['biosync.sync'] = sync_service
    app.extensions['biosync.events'] = broadcaster
    app.register_blueprint(api)

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify(ApiResponse(False, error="Bad request").to_dict()), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify(ApiResponse(False, error="Not found").to_dict()), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify(ApiResponse(False, error="Method not allowed").to_dict()), 405

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}")
        return jsonify(ApiResponse(False, error="Internal server error").to_dict()), 500

    return app


@api.route('/health', methods=['GET'])
def health_check():
    return jsonify({'status': 'ok', 'version': shared.__VERSION__})


# Sync control

@api.route('/api/sync/start', methods=['POST'])
def start_sync():
    """Start syncing with the saved period and credentials (body values override)"""
    service = _sync()
    body = _body()
    config = service.store.get_config()
    auth = service.store.get_auth_info()

    period = body.get('sync_period') or config.sync_period
    username = body.get('username') or auth.username
    password = body.get('password') or auth.password

    if not (period and username and password and config.server_url):
        return _missing('Missing required configuration or credentials')

    result = service.start_sync(period, {'username': username, 'password': password})
    return _respond(result)


@api.route('/api/sync/stop', methods=['POST'])
def stop_sync():
    return _respond(_sync().stop_sync())


@api.route('/api/sync/status', methods=['GET'])
def sync_status():
    service = _sync()
    is_running = service.is_running()
    config = service.store.get_config()
    return jsonify({
        'success': True,
        'is_running': is_running,
        'last_sync_time': config.last_sync_time,
        'sync_period': config.sync_period,
    })


@api.route('/api/sync/run', methods=['POST'])
def run_sync_now():
    return _respond(_sync().run_once(), error_status=502)


@api.route('/api/sync/logs', methods=['GET'])
def recent_results():
    limit = request.args.get('limit', type=int)
    return jsonify({'success': True, 'logs': _events().recent(limit)})


@api.route('/api/sync/events', methods=['GET'])
def result_events():
    broadcaster = _events()
    subscriber = broadcaster.subscribe()
    if subscriber is None:
        return jsonify(ApiResponse(False, error='Too many open event streams').to_dict()), 503

    response = Response(
        broadcaster.stream(subscriber),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
    # the generator never runs its cleanup if the client leaves before the first frame
    response.call_on_close(lambda: broadcaster.unsubscribe(subscriber))
    return response


@api.route('/api/sync-all-logs', methods=['POST'])
def sync_all_logs():
    return _respond(_sync().sync_all_logs(), error_status=502)


# Settings

@api.route('/api/settings/credentials', methods=['GET'])
def get_credentials():
    return jsonify({'success': True, **_sync().get_saved_credentials()})


@api.route('/api/settings/credentials', methods=['POST'])
def save_credentials():
    body = _body()
    return _respond(_sync().save_credentials(body.get('username'), body.get('password')))


@api.route('/api/settings/syncperiod', methods=['GET'])
def get_sync_period():
    return jsonify({'success': True, 'sync_period': _sync().store.get_config().sync_period})


@api.route('/api/settings/syncperiod', methods=['POST'])
def save_sync_period():
    return _respond(_sync().save_sync_period(_body().get('sync_period')))


@api.route('/api/settings/server', methods=['GET'])
def get_server_url():
    return jsonify({'success': True, 'url': _sync().store.get_server_url()})


@api.route('/api/settings/server', methods=['POST'])
def save_server_url():
    url = _body().get('url')
    if not url:
        return _missing('Server URL is required')
    return _respond(_sync().save_server_url(url))


@api.route('/api/settings/external', methods=['POST'])
def save_external_api():
    body = _body()
    return _respond(_sync().save_external_api(body.get('url'), body.get('key')))


@api.route('/api/settings/config', methods=['GET'])
def get_config():
    service = _sync()
    return jsonify({
        'success': True,
        'username': service.store.get_auth_info().username,
        **service.get_config(),
    })


# Devices

@api.route('/api/devices', methods=['GET'])
def get_devices():
    """Fetch and merge terminals; ``?cached=1`` returns the stored list only"""
    service = _sync()
    if request.args.get('cached', '').lower() in ('1', 'true', 'yes'):
        return jsonify(ApiResponse.ok(data=service.get_stored_devices()).to_dict())
    return _respond(service.get_devices(), error_status=502)


@api.route('/api/devices/<device_id>/company', methods=['GET'])
def get_device_company(device_id):
    company_id = _sync().store.get_device_company_id(device_id)
    return jsonify(ApiResponse.ok(data={'device_id': device_id, 'company_id': company_id}).to_dict())


@api.route('/api/devices/<device_id>/company', methods=['POST'])
def update_device_company(device_id):
    body = _body()
    if 'company_id' not in body:
        return _missing('Device ID and Company ID are required')
    return _respond(_sync().update_device_company_id(device_id, body['company_id']))


# Server lifecycle

def run_server(app: Flask, host: str = DEFAULT_SERVER_HOST, port: int = DEFAULT_SERVER_PORT):
    """Run the app with Waitress; blocks until /admin/shutdown or interrupt"""
    global _waitress_server

    logger.info(f"Starting BioSync Server v{shared.__VERSION__} on {host}:{port}")

    server = create_server(
        app,
        host=host,
        port=port,
        threads=WAITRESS_THREADS,
        channel_timeout=WAITRESS_CHANNEL_TIMEOUT,
        cleanup_interval=WAITRESS_CLEANUP_INTERVAL,
    )

    with _waitress_lock:
        _waitress_server = server

    try:
        server.run()
    finally:
        with _waitress_lock:
            _waitress_server = None
        logger.info("BioSync Server stopped")


@api.route('/admin/shutdown', methods=['POST'])
def admin_shutdown():
    """Shutdown the waitress server. Restricted to local requests only."""
    if request.remote_addr not in (None, '127.0.0.1', '::1', 'localhost'):
        return jsonify(ApiResponse(False, error="Forbidden").to_dict()), 403

    with _waitress_lock:
        server = _waitress_server
    if server is None:
        return jsonify(ApiResponse(False, error="Server not running").to_dict()), 400

    try:
        server.close()
    except OSError as e:
        logger.error(f"Error shutting down server: {e}")
        return jsonify(ApiResponse(False, error=str(e)).to_dict()), 500

    return jsonify(ApiResponse.ok(message="Shutdown initiated").to_dict())
