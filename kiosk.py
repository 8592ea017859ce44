#!/usr/bin/env python3
"""
Kiosk Display Manager - command line

Management commands (status, URL, orientation, playlist, services, config)
print the operation result as JSON. The long-running actors run in the
foreground and are started by systemd or by each other:

- service   main process of kiosk.service (browser lifecycle)
- monitor   browser health monitor
- cycle     playlist cycling scheduler
- api       HTTP gateway
- watch     print live change events from a gateway
"""

import argparse
import json
import os
import signal
import sys
import time

import socketio

from common import DEFAULT_API_PORT, log
from controller import KioskController
from cycler import CyclingScheduler
from errors import KioskError
from playlist import render_playlist
from supervisor import HealthMonitor, KioskService
import server

CYCLER_STARTUP_DELAY = 8


def print_result(result):
    print(json.dumps(result, indent=2))
    return 0 if result.get('success', True) else 1


def run_service(controller):
    KioskService(
        controller.store,
        controller.registry,
        controller.supervisor,
        controller.playlist,
        controller.scheduler
    ).run()


def run_monitor(controller):
    HealthMonitor(controller.supervisor).run()


def run_cycler(controller, startup_delay=CYCLER_STARTUP_DELAY):
    """Scheduler worker; its pid record is removed on the way out."""
    pid = os.getpid()
    controller.registry.record('cycler', pid)
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
    try:
        log(f'Playlist cycling service starting (PID: {pid})')
        # Give the browser time to come up before the first interval
        time.sleep(startup_delay)
        scheduler = CyclingScheduler(controller.store, controller.cursor, controller.navigator)
        scheduler.run()
        log(f'Playlist cycling stopped ({scheduler.state})')
    finally:
        controller.registry.clear_if('cycler', pid)


def run_watch(controller, server_url=None, api_key=None):
    """Print kiosk_updated events from a running gateway until interrupted."""
    server_url = server_url or f'http://localhost:{controller.store.get("api.port", DEFAULT_API_PORT)}'
    api_key = api_key or controller.get_api_key()
    sio = socketio.Client(reconnection=True, reconnection_attempts=0, reconnection_delay=1)

    @sio.event
    def connect():
        log(f'Watching {server_url}')

    @sio.event
    def disconnect(*args):
        log('Disconnected, waiting to reconnect...', 'warn')

    @sio.on('kiosk_updated')
    def on_kiosk_updated(data):
        outcome = 'ok' if data.get('success') else 'failed'
        log(f'{data.get("action")}: {outcome}')

    sio.connect(server_url, auth={'api_key': api_key}, wait_timeout=10)
    sio.wait()


def build_parser():
    parser = argparse.ArgumentParser(prog='kiosk', description='Kiosk display manager')
    sub = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (
        ('status', 'Show service, browser and playlist status'),
        ('health', 'Detailed health report'),
        ('get-url', 'Show the configured URL'),
        ('get-rotation', 'Show the display orientation'),
        ('get-api-key', 'Show the API key'),
        ('regenerate-api-key', 'Generate a new API key'),
        ('start', 'Start the kiosk service'),
        ('stop', 'Stop the kiosk service'),
        ('restart', 'Restart the kiosk service'),
        ('playlist', 'Show the playlist'),
        ('playlist-enable', 'Start cycling through the playlist'),
        ('playlist-disable', 'Stop cycling'),
        ('playlist-clear', 'Empty the playlist'),
        ('backup-config', 'Back up the configuration'),
        ('validate-config', 'Check the configuration'),
        ('debug', 'Save a diagnostic snapshot'),
        ('service', 'Run the kiosk service (browser lifecycle)'),
        ('monitor', 'Run the browser health monitor'),
        ('cycle', 'Run the playlist cycling scheduler'),
    ):
        sub.add_parser(name, help=help_text)

    p = sub.add_parser('set-url', help='Show a single URL (disables the playlist)')
    p.add_argument('url')

    p = sub.add_parser('set-display-orientation', help='Rotate the display')
    p.add_argument('orientation', help='normal, left, right or inverted')

    p = sub.add_parser('logs', help='Show recent journal lines')
    p.add_argument('--service', '-s', default='kiosk', choices=('kiosk', 'api'))
    p.add_argument('--lines', '-n', type=int, default=50)

    for name, help_text in (('playlist-add', 'Append a URL to the playlist'),
                            ('playlist-replace', 'Replace the playlist with one URL')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('url')
        p.add_argument('display_time', nargs='?', default=None, help='Seconds on screen (5-86400)')
        p.add_argument('title', nargs='?', default=None)

    p = sub.add_parser('playlist-remove', help='Remove a playlist entry')
    p.add_argument('index')

    p = sub.add_parser('restore-config', help='Restore a configuration backup')
    p.add_argument('name', nargs='?', default=None, help='Backup name (default: latest)')

    p = sub.add_parser('api', help='Run the HTTP gateway')
    p.add_argument('--host', default='0.0.0.0')
    p.add_argument('--port', '-p', type=int, default=None)

    p = sub.add_parser('watch', help='Print live change events from a gateway')
    p.add_argument('--server', default=None, help='Gateway URL (default: http://localhost:<api.port>)')
    p.add_argument('--api-key', default=None)

    return parser


def dispatch(controller, args):
    """Run one management command; returns its result dict."""
    c = controller
    commands = {
        'status': c.status,
        'health': c.health_report,
        'get-url': c.get_url,
        'set-url': lambda: c.set_url(args.url),
        'get-rotation': c.get_orientation,
        'set-display-orientation': lambda: c.set_orientation(args.orientation),
        'get-api-key': lambda: {'api_key': c.get_api_key()},
        'regenerate-api-key': c.regenerate_api_key,
        'start': c.start_services,
        'stop': c.stop_services,
        'restart': c.restart_services,
        'logs': lambda: c.logs(args.service, args.lines),
        'playlist-add': lambda: c.playlist_add(args.url, args.display_time, args.title),
        'playlist-replace': lambda: c.playlist_replace(args.url, args.display_time, args.title),
        'playlist-remove': lambda: c.playlist_remove(args.index),
        'playlist-enable': c.playlist_enable,
        'playlist-disable': c.playlist_disable,
        'playlist-clear': c.playlist_clear,
        'backup-config': c.backup_config,
        'restore-config': lambda: c.restore_config(args.name),
        'validate-config': c.validate_config,
        'debug': c.debug_snapshot,
    }
    return commands[args.command]()


def main(argv=None):
    args = build_parser().parse_args(argv)
    controller = KioskController.create()

    if args.command == 'service':
        run_service(controller)
        return 0
    if args.command == 'monitor':
        run_monitor(controller)
        return 0
    if args.command == 'cycle':
        run_cycler(controller)
        return 0
    if args.command == 'api':
        server.serve(controller, host=args.host, port=args.port)
        return 0
    if args.command == 'watch':
        run_watch(controller, args.server, args.api_key)
        return 0
    if args.command == 'playlist':
        print(render_playlist(controller.playlist_show()))
        return 0

    try:
        result = dispatch(controller, args)
    except KioskError as e:
        log(str(e), 'error')
        return 1
    return print_result(result)


if __name__ == '__main__':
    sys.exit(main())
