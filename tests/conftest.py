# tests/conftest.py
import json
import sys
from pathlib import Path

import pytest

# Make the top-level modules importable without installing
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import common
from config_store import ConfigStore
from errors import BrowserControlError
from navigation import Outcome
from playlist import Playlist, PlaylistCursor

API_KEY = 'test-key-0123456789abcdef'


def make_document(urls=None, enabled=False):
    return {
        'kiosk': {'url': 'http://home.example'},
        'display': {'orientation': 'normal'},
        'api': {'api_key': API_KEY, 'port': 8080},
        'playlist': {
            'enabled': enabled,
            'default_display_time': 30,
            'urls': list(urls or []),
        },
    }


def ok_result(output='', command='fake'):
    return {'success': True, 'exit_code': 0, 'output': output, 'error': '',
            'execution_time': 0.0, 'command': command}


def failed_result(error='failed', command='fake'):
    return {'success': False, 'exit_code': 1, 'output': '', 'error': error,
            'execution_time': 0.0, 'command': command}


class MemoryRegistry:
    """ProcessRegistry stand-in; `alive` holds the pids that look running."""

    def __init__(self):
        self.pids = {}
        self.alive = set()
        self.signals = []

    def record(self, role, pid):
        self.pids[role] = pid

    def lookup(self, role):
        return self.pids.get(role)

    def is_alive(self, role):
        return self.pids.get(role) in self.alive

    def clear(self, role):
        self.pids.pop(role, None)

    def clear_if(self, role, pid):
        if self.pids.get(role) == pid:
            self.clear(role)

    def send_signal(self, role, sig):
        if not self.is_alive(role):
            return False
        self.signals.append((role, sig))
        return True

    def terminate(self, role, grace=2.0):
        found = self.is_alive(role)
        self.alive.discard(self.pids.get(role))
        self.clear(role)
        return found


class FakeScheduler:
    def __init__(self, running=False):
        self.running = running
        self.starts = 0
        self.stops = 0

    def is_running(self):
        return self.running

    def start(self):
        self.starts += 1
        self.running = True
        return True

    def stop(self):
        self.stops += 1
        was_running = self.running
        self.running = False
        return was_running


class FakePageSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.commands = []
        self.closed = False

    def command(self, method, params=None):
        if self.fail:
            raise BrowserControlError(f'{method} failed')
        self.commands.append((method, params))
        return {}

    def close(self):
        self.closed = True


class FakeBrowserClient:
    """DevToolsClient stand-in that records every call."""

    def __init__(self, tabs=None, reachable=True):
        self.tabs = tabs if tabs is not None else [{'id': 'old', 'type': 'page', 'url': 'http://old.example'}]
        self.reachable = reachable
        self.fail_open = set()
        self.fail_activate = False
        self.fail_evaluate = False
        self.socket = FakePageSocket()
        self.socket_available = True
        self.calls = []
        self._next = 0

    def list_tabs(self):
        self.calls.append(('list_tabs',))
        if not self.reachable:
            raise BrowserControlError('connection refused')
        return list(self.tabs)

    def is_responsive(self):
        return self.reachable

    def open_tab(self, url='about:blank'):
        self.calls.append(('open_tab', url))
        if url in self.fail_open or '*' in self.fail_open:
            raise BrowserControlError('new tab rejected')
        self._next += 1
        return {'id': f'new{self._next}', 'type': 'page', 'url': url}

    def close_tab(self, tab_id):
        self.calls.append(('close_tab', tab_id))

    def activate_tab(self, tab_id):
        self.calls.append(('activate_tab', tab_id))
        if self.fail_activate:
            raise BrowserControlError('activate failed')

    def evaluate_script(self, expression):
        self.calls.append(('evaluate_script', expression))
        if self.fail_evaluate:
            raise BrowserControlError('evaluate failed')
        return '{}'

    def open_socket(self, tab):
        self.calls.append(('open_socket', tab.get('id')))
        if not self.socket_available:
            raise BrowserControlError('socket refused')
        return self.socket

    def call_names(self):
        return [c[0] for c in self.calls]


class FakeSupervisor:
    def __init__(self, launch_ok=True):
        self.launch_ok = launch_ok
        self.launched = []
        self.running = True
        self.memory = 100000
        self.display_ok = True
        self.restart_requests = 0
        self.display_recoveries = 0
        self.rotations = []
        self.killed = 0
        self.stop_ok = False
        self.stop_requests = 0

    def launch(self, url):
        self.launched.append(url)
        return self.launch_ok

    def is_running(self):
        return self.running

    def memory_kb(self):
        return self.memory

    def display_responsive(self):
        return self.display_ok

    def recover_display(self):
        self.display_recoveries += 1
        return True

    def request_restart(self):
        self.restart_requests += 1
        return True

    def apply_orientation(self, orientation):
        self.rotations.append(orientation)
        return True

    def kill_browser(self):
        self.killed += 1

    def request_stop(self):
        self.stop_requests += 1
        return self.stop_ok


class FakeNavigator:
    def __init__(self, success=True):
        self.success = success
        self.visited = []

    def navigate(self, url):
        self.visited.append(url)
        if self.success:
            return Outcome(True, 'new-tab', 'new1')
        return Outcome(False, None, 'all navigation methods failed')

    def __call__(self, url):
        return self.navigate(url).success


class FakeRunner:
    """Stand-in for run_command/retry_command keyed on the command's first words."""

    def __init__(self):
        self.responses = {}
        self.commands = []

    def set(self, prefix, result):
        self.responses[prefix] = result

    def __call__(self, cmd, *args, **kwargs):
        self.commands.append(list(cmd))
        joined = ' '.join(cmd)
        for prefix, result in sorted(self.responses.items(), key=lambda kv: -len(kv[0])):
            if joined.startswith(prefix):
                return dict(result, command=joined)
        return ok_result(command=joined)


@pytest.fixture(autouse=True)
def quiet_error_log(tmp_path, monkeypatch):
    monkeypatch.setattr(common, 'ERROR_LOG', str(tmp_path / 'kiosk-errors.log'))


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / 'kiosk.json'
    path.write_text(json.dumps(make_document(), indent=2))
    return path


@pytest.fixture
def store(config_path, tmp_path):
    return ConfigStore(str(config_path), str(tmp_path / 'backups'))


@pytest.fixture
def cursor(tmp_path):
    return PlaylistCursor(str(tmp_path / 'kiosk-playlist-index'))


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def playlist(store, cursor, scheduler):
    return Playlist(store, cursor, scheduler)


@pytest.fixture
def registry():
    return MemoryRegistry()


@pytest.fixture
def browser():
    return FakeBrowserClient()


@pytest.fixture
def runner():
    return FakeRunner()
