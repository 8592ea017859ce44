#!/usr/bin/env python3
"""
Kiosk API gateway.
Flask server exposing the kiosk operations over HTTP, with a Socket.IO
channel that announces every change so dashboards can refresh.

Every request carries the shared `api_key` as a query parameter. Responses
use one envelope: success, exit_code, output, error, execution_time and
command, plus operation-specific fields.
"""

import hmac
import os
import time

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_socketio import SocketIO

from common import DEFAULT_API_PORT, FALLBACK_API_PORT, log
from controller import KioskController
from errors import KioskError, StepFailedError, ValidationError

HOST = '0.0.0.0'

bp = Blueprint('kiosk_api', __name__)
socketio = SocketIO()

ENDPOINTS = {
    'GET /status': 'Service, browser and playlist status',
    'GET /health': 'Detailed health report',
    'GET /get-url': 'Current kiosk URL',
    'GET /get-rotation': 'Current display orientation',
    'GET /get-api-key': 'Current API key',
    'POST /set-url': 'Show a single URL (url)',
    'POST /set-display-orientation': 'Rotate the display (orientation)',
    'GET /playlist': 'Show the playlist',
    'POST /playlist-add': 'Append a URL (url, display_time, title)',
    'POST /playlist-remove': 'Remove an entry (index)',
    'POST /playlist-replace': 'Replace the playlist (url, display_time, title | urls)',
    'POST /playlist-enable': 'Start cycling',
    'POST /playlist-disable': 'Stop cycling',
    'POST /playlist-clear': 'Empty the playlist',
    'POST /start': 'Start the kiosk service',
    'POST /stop': 'Stop the kiosk service',
    'POST /restart': 'Restart the kiosk service',
    'GET /logs': 'Recent journal lines (service, lines)',
    'GET /api-info': 'This list',
}


def create_app(controller=None, async_mode='gevent'):
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.urandom(24)
    app.extensions['kiosk_controller'] = controller or KioskController.create()
    app.register_blueprint(bp)
    socketio.init_app(app, cors_allowed_origins='*', async_mode=async_mode)
    return app


def get_controller():
    return current_app.extensions['kiosk_controller']


def key_matches(candidate):
    expected = get_controller().get_api_key()
    if not candidate or not expected:
        return False
    return hmac.compare_digest(str(candidate), str(expected))


def get_params():
    """Query-string parameters overlaid with the JSON body, if any."""
    data = request.args.to_dict()
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        data.update(body)
    data.pop('api_key', None)
    return data


def run_operation(name, operation, *args, mutates=False):
    start = time.time()
    status = 200
    envelope = {'success': True, 'exit_code': 0, 'output': '', 'error': '', 'command': name}
    try:
        data = operation(*args)
    except StepFailedError as e:
        status = 400 if isinstance(e.cause, ValidationError) else 500
        envelope.update(success=False, exit_code=1, error=str(e),
                        failed_step=e.failed_step, operations=e.completed)
    except ValidationError as e:
        status = 400
        envelope.update(success=False, exit_code=1, error=str(e))
    except KioskError as e:
        status = 500
        envelope.update(success=False, exit_code=1, error=str(e))
    except Exception as e:
        log(f'{name} raised {type(e).__name__}: {e}', 'error')
        status = 500
        envelope.update(success=False, exit_code=1, error=f'Internal error: {e}')
    else:
        envelope.update(data)
        if not envelope['success']:
            status = 500
    envelope['execution_time'] = round(time.time() - start, 3)

    if not envelope['success']:
        log(f'{name} failed: {envelope["error"]}', 'warn')
    if mutates:
        socketio.emit('kiosk_updated', {'action': name, 'success': envelope['success']})
    return jsonify(envelope), status


@bp.before_app_request
def require_api_key():
    if not key_matches(request.args.get('api_key')):
        return jsonify({'success': False, 'error': 'Invalid API key'}), 401


@bp.app_errorhandler(404)
def not_found(e):
    return jsonify({'success': False, 'error': 'Endpoint not found', 'endpoints': ENDPOINTS}), 404


@bp.app_errorhandler(500)
def internal_error(e):
    original = getattr(e, 'original_exception', None) or e
    log(f'Unhandled error on {request.path}: {original}', 'error')
    return jsonify({'success': False, 'error': f'Internal error: {original}'}), 500


@bp.app_errorhandler(405)
def method_not_allowed(e):
    return jsonify({'success': False, 'error': f'Method {request.method} not allowed'}), 405


# Reads

@bp.route('/status', methods=['GET'])
def status():
    return run_operation('status', get_controller().status)


@bp.route('/health', methods=['GET'])
def health():
    return run_operation('health', get_controller().health_report)


@bp.route('/get-url', methods=['GET'])
def get_url():
    return run_operation('get-url', get_controller().get_url)


@bp.route('/get-rotation', methods=['GET'])
def get_rotation():
    return run_operation('get-rotation', get_controller().get_orientation)


@bp.route('/get-api-key', methods=['GET'])
def get_api_key():
    return run_operation('get-api-key', lambda: {'api_key': get_controller().get_api_key()})


@bp.route('/playlist', methods=['GET'])
def playlist():
    return run_operation('playlist', get_controller().playlist_show)


@bp.route('/logs', methods=['GET'])
def logs():
    params = get_params()
    return run_operation('logs', get_controller().logs,
                         params.get('service', 'kiosk'), params.get('lines', 50))


@bp.route('/api-info', methods=['GET'])
def api_info():
    return run_operation('api-info', lambda: {'endpoints': ENDPOINTS})


# Single URL and display

@bp.route('/set-url', methods=['POST'])
def set_url():
    params = get_params()
    if 'urls' in params:
        return jsonify({
            'success': False,
            'error': 'Multiple URLs not allowed in set-url endpoint',
            'message': 'Use playlist endpoints for multiple URLs',
            'endpoints': {
                'replace': '/playlist-replace',
                'add': '/playlist-add',
                'enable': '/playlist-enable',
            },
        }), 400
    return run_operation('set-url', get_controller().set_url, params.get('url'), mutates=True)


@bp.route('/set-display-orientation', methods=['POST'])
def set_display_orientation():
    params = get_params()
    orientation = params.get('orientation', params.get('rotation'))
    return run_operation('set-display-orientation', get_controller().set_orientation,
                         orientation, mutates=True)


# Playlist

@bp.route('/playlist-add', methods=['POST'])
def playlist_add():
    params = get_params()
    return run_operation('playlist-add', get_controller().playlist_add,
                         params.get('url'), params.get('display_time'), params.get('title'),
                         mutates=True)


@bp.route('/playlist-remove', methods=['POST'])
def playlist_remove():
    params = get_params()
    return run_operation('playlist-remove', get_controller().playlist_remove,
                         params.get('index'), mutates=True)


@bp.route('/playlist-replace', methods=['POST'])
def playlist_replace():
    params = get_params()
    controller = get_controller()
    if 'urls' in params:
        return run_operation('playlist-replace', controller.replace_playlist,
                             params['urls'], mutates=True)
    return run_operation('playlist-replace', controller.playlist_replace,
                         params.get('url'), params.get('display_time'), params.get('title'),
                         mutates=True)


@bp.route('/playlist-enable', methods=['POST'])
def playlist_enable():
    return run_operation('playlist-enable', get_controller().playlist_enable, mutates=True)


@bp.route('/playlist-disable', methods=['POST'])
def playlist_disable():
    return run_operation('playlist-disable', get_controller().playlist_disable, mutates=True)


@bp.route('/playlist-clear', methods=['POST'])
def playlist_clear():
    return run_operation('playlist-clear', get_controller().playlist_clear, mutates=True)


# Services

@bp.route('/start', methods=['POST'])
def start():
    return run_operation('start', get_controller().start_services, mutates=True)


@bp.route('/stop', methods=['POST'])
def stop():
    return run_operation('stop', get_controller().stop_services, mutates=True)


@bp.route('/restart', methods=['POST'])
def restart():
    return run_operation('restart', get_controller().restart_services, mutates=True)


# WebSocket Events

@socketio.on('connect')
def handle_connect(auth=None):
    """Only clients presenting the API key may listen for updates."""
    candidate = auth.get('api_key') if isinstance(auth, dict) else None
    if not key_matches(candidate or request.args.get('api_key')):
        log(f'Rejected Socket.IO client: {request.sid}', 'warn')
        return False
    log(f'Client connected: {request.sid}', 'debug')


@socketio.on('disconnect')
def handle_disconnect(*args):
    log(f'Client disconnected: {request.sid}', 'debug')


def serve(controller=None, host=HOST, port=None):
    controller = controller or KioskController.create()
    app = create_app(controller)
    port = port or controller.store.get('api.port', DEFAULT_API_PORT)
    log(f'Starting Kiosk API server on {host}:{port}')
    try:
        socketio.run(app, host=host, port=port)
    except PermissionError:
        log(f'Permission denied for port {port}, trying {FALLBACK_API_PORT}', 'warn')
        socketio.run(app, host=host, port=FALLBACK_API_PORT)


if __name__ == '__main__':
    serve()
