"""
Kiosk operations shared by the HTTP gateway and the command line.

Each method validates its input (raising ValidationError before anything is
written), backs up the config before mutating it, and returns a dict of
operation-specific fields. Service commands return the structured
run_command result as-is.
"""

from common import API_SERVICE, DEFAULT_URL, KIOSK_SERVICE, log, retry_command, run_command
from config_store import ConfigStore
from errors import ConfigWriteError, KioskError, StepFailedError, ValidationError
from browser_control import DevToolsClient
from cycler import SchedulerProcess
from navigation import Navigator
from playlist import Playlist, PlaylistCursor
from process_registry import ProcessRegistry
from supervisor import BrowserSupervisor, memory_limit_kb, save_debug_state, total_memory_kb
from validation import check_orientation, check_url, generate_api_key

SERVICES = {'kiosk': KIOSK_SERVICE, 'api': API_SERVICE}
MAX_LOG_LINES = 1000


class KioskController:
    def __init__(self, store, cursor, registry, supervisor, client, navigator, scheduler,
                 runner=run_command, retry=retry_command, snapshot=save_debug_state):
        self.store = store
        self.cursor = cursor
        self.registry = registry
        self.supervisor = supervisor
        self.client = client
        self.navigator = navigator
        self.scheduler = scheduler
        self.playlist = Playlist(store, cursor, scheduler)
        self.runner = runner
        self.retry = retry
        self.snapshot = snapshot

    @classmethod
    def create(cls):
        """Controller wired to the real config file, pid files and browser."""
        store = ConfigStore()
        registry = ProcessRegistry()
        supervisor = BrowserSupervisor(registry)
        client = DevToolsClient()
        return cls(
            store=store,
            cursor=PlaylistCursor(),
            registry=registry,
            supervisor=supervisor,
            client=client,
            navigator=Navigator.default(client, supervisor),
            scheduler=SchedulerProcess(registry),
        )

    # -- status -------------------------------------------------------------

    def _service_state(self, unit):
        return self.runner(['systemctl', 'is-active', unit], timeout=5)['output'] or 'unknown'

    def status(self):
        view = self.playlist.show()
        return {
            'kiosk_service': self._service_state(KIOSK_SERVICE),
            'api_service': self._service_state(API_SERVICE),
            'browser_running': self.supervisor.is_running(),
            'url': self.store.get('kiosk.url', DEFAULT_URL),
            'orientation': self.store.get('display.orientation', 'normal'),
            'target_url': self.playlist.target_url(),
            'playlist_enabled': view['enabled'],
            'playlist_count': len(view['urls']),
            'current_index': view['current_index'],
            'scheduler_running': view['scheduler_running'],
        }

    def health_report(self):
        report = self.status()
        problems = self.store.problems()
        report.update({
            'browser_memory_kb': self.supervisor.memory_kb(),
            'memory_limit_kb': memory_limit_kb(total_memory_kb()),
            'display_responsive': self.supervisor.display_responsive(),
            'devtools_responsive': self.client.is_responsive(),
            'monitor_running': self.registry.is_alive('monitor'),
            'config_valid': not problems,
            'config_problems': problems,
        })
        return report

    # -- single URL / display ----------------------------------------------

    def get_url(self):
        return {'url': self.store.get('kiosk.url', DEFAULT_URL)}

    def _restart_kiosk(self):
        return self.retry(['systemctl', 'restart', KIOSK_SERVICE])['success']

    def _show(self, url):
        """Put `url` on screen; navigation first, service restart as fallback."""
        outcome = self.navigator.navigate(url)
        if outcome.success:
            return outcome.method
        log('Navigation failed, restarting kiosk service', 'warn')
        if self._restart_kiosk():
            return 'service-restart'
        return None

    def set_url(self, url):
        """Show a single URL; cycling is switched off."""
        check_url(url)
        self.store.backup()

        def _apply(document):
            document.setdefault('kiosk', {})['url'] = url
            playlist = document.get('playlist')
            if isinstance(playlist, dict):
                playlist['enabled'] = False

        self.store.update(_apply)
        self.scheduler.stop()
        self.cursor.clear()
        log(f'Kiosk URL set to: {url}')

        method = self._show(url)
        if method is None:
            self.store.restore()
            raise KioskError(f'Failed to display {url}; previous configuration restored')
        return {'url': url, 'method': method}

    def get_orientation(self):
        return {'orientation': self.store.get('display.orientation', 'normal')}

    def set_orientation(self, value):
        orientation = check_orientation(value)
        self.store.backup()
        if not self.store.set('display.orientation', orientation):
            raise ConfigWriteError('Failed to save display orientation')
        log(f'Display orientation set to: {orientation}')
        if not self._restart_kiosk():
            self.store.restore()
            raise KioskError('Failed to restart kiosk service; previous orientation restored')
        return {'orientation': orientation}

    # -- API key ------------------------------------------------------------

    def get_api_key(self):
        return self.store.get('api.api_key')

    def regenerate_api_key(self):
        api_key = generate_api_key()
        self.store.backup()
        if not self.store.set('api.api_key', api_key):
            raise ConfigWriteError('Failed to save new API key')
        log('API key regenerated')
        return {'api_key': api_key}

    # -- playlist -----------------------------------------------------------

    def playlist_show(self):
        return self.playlist.show()

    def playlist_add(self, url, display_time=None, title=None):
        return self.playlist.add_url(url, display_time, title, mode='append')

    def playlist_replace(self, url, display_time=None, title=None):
        return self.playlist.add_url(url, display_time, title, mode='replace')

    def playlist_remove(self, index):
        return self.playlist.remove_url(index)

    def playlist_enable(self):
        result = self.playlist.enable()
        result['method'] = self._show(self.playlist.target_url())
        return result

    def playlist_disable(self):
        result = self.playlist.disable()
        result['method'] = self._show(self.playlist.target_url())
        return result

    def playlist_clear(self):
        return self.playlist.clear()

    def replace_playlist(self, items):
        """Replace the playlist with `items` and enable cycling.

        The first item replaces, the rest append. The first failing step
        stops the sequence; StepFailedError reports which one and what was
        already applied.
        """
        if not isinstance(items, list) or not items:
            raise ValidationError('At least one URL is required')
        operations = []
        for i, item in enumerate(items):
            if isinstance(item, dict):
                url, display_time, title = item.get('url'), item.get('display_time'), item.get('title')
            else:
                url, display_time, title = item, None, None
            step = 'replace' if i == 0 else f'add[{i}]'
            try:
                if i == 0:
                    self.playlist_replace(url, display_time, title)
                else:
                    self.playlist_add(url, display_time, title)
            except KioskError as e:
                raise StepFailedError(f'{step} failed: {e}', step, operations, e) from e
            operations.append({'step': step, 'url': url})
        try:
            enabled = self.playlist_enable()
        except KioskError as e:
            raise StepFailedError(f'enable failed: {e}', 'enable', operations, e) from e
        operations.append({'step': 'enable'})
        return {'operations': operations, 'total': enabled['total'], 'method': enabled['method']}

    # -- services -----------------------------------------------------------

    def _systemctl(self, action, units=(KIOSK_SERVICE,)):
        return self.runner(['systemctl', action, *units], timeout=60)

    def start_services(self):
        return self._systemctl('start')

    def stop_services(self):
        self.scheduler.stop()
        result = self._systemctl('stop')
        if not result['success']:
            log(f'systemctl stop failed, stopping kiosk processes directly: {result["error"]}', 'warn')
            if self.supervisor.request_stop():
                result = dict(result, success=True, exit_code=0, error='', stopped='direct')
        return result

    def restart_services(self):
        return self.retry(['systemctl', 'restart', KIOSK_SERVICE])

    def logs(self, service='kiosk', lines=50):
        if service not in SERVICES:
            raise ValidationError(f'Unknown service: {service} (valid: {", ".join(SERVICES)})')
        try:
            lines = int(lines)
        except (TypeError, ValueError):
            raise ValidationError('Line count must be a number')
        if not 1 <= lines <= MAX_LOG_LINES:
            raise ValidationError(f'Line count must be between 1 and {MAX_LOG_LINES}')
        return self.runner(['journalctl', '-u', SERVICES[service], '-n', str(lines), '--no-pager'], timeout=15)

    # -- config maintenance -------------------------------------------------

    def backup_config(self):
        name = self.store.backup()
        if not name:
            raise KioskError('Configuration backup failed')
        return {'backup': name}

    def restore_config(self, name=None):
        if not self.store.restore(name):
            raise KioskError(f'No usable backup found for: {name or "latest"}')
        return {'restored': name or 'latest'}

    def validate_config(self):
        problems = self.store.problems()
        return {'valid': not problems, 'problems': problems}

    def debug_snapshot(self):
        return {'path': self.snapshot()}
