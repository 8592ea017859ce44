"""
Playlist cycling scheduler.

Runs as its own process (`kiosk cycle`). Each iteration shows the current
entry for its display time, then re-reads the config, advances the cursor
and navigates the browser to the next entry. The sleep is the only
suspension point; stopping early means killing the process, which is what
`SchedulerProcess.stop()` does.
"""

import threading
import time

from common import log, spawn_subcommand
from config_store import playlist_section
from playlist import resolve_display_time

IDLE = 'idle'
RUNNING = 'running'
STOPPED = 'stopped'
DISABLED = 'disabled'

NAVIGATE_TIMEOUT = 15


class CyclingScheduler:
    def __init__(self, store, cursor, navigate, sleep=time.sleep, navigate_timeout=NAVIGATE_TIMEOUT):
        self.store = store
        self.cursor = cursor
        self.navigate = navigate
        self.sleep = sleep
        self.navigate_timeout = navigate_timeout
        self.state = IDLE

    def _snapshot(self):
        """Fresh (enabled, entries, playlist) from the config store."""
        playlist = playlist_section(self.store.read())
        entries = [e for e in playlist['urls'] if isinstance(e, dict)]
        return playlist.get('enabled') is True, entries, playlist

    def can_start(self):
        enabled, entries, _ = self._snapshot()
        return enabled and len(entries) > 1

    def run(self):
        """Cycle until the playlist is disabled or drops to one entry.

        Returns False without looping when the playlist is not set up for
        cycling.
        """
        enabled, entries, _ = self._snapshot()
        log(f'Initial check: enabled={enabled}, urls={len(entries)}')
        if not enabled or len(entries) <= 1:
            log('Playlist not properly configured for cycling. Exiting.', 'error')
            self.state = STOPPED if enabled else DISABLED
            return False

        log('Starting playlist cycling...')
        self.state = RUNNING
        while self.step():
            pass
        return True

    def step(self):
        """One display interval. Returns False once the loop should stop."""
        _, entries, playlist = self._snapshot()
        index = self.cursor.position(len(entries))
        entry = entries[index] if entries else None
        duration = resolve_display_time(entry, playlist)
        log(f'Waiting {duration}s for current URL (index {index})...')
        self.sleep(duration)

        enabled, entries, _ = self._snapshot()
        log(f'Playlist status: enabled={enabled}, urls={len(entries)}', 'debug')
        if not enabled:
            log('Playlist disabled, stopping rotation')
            self.state = DISABLED
            return False
        if len(entries) <= 1:
            log('Single URL mode, stopping rotation')
            self.state = STOPPED
            return False

        index = (self.cursor.position(len(entries)) + 1) % len(entries)
        self.cursor.write(index)
        next_url = entries[index].get('url', '')
        log(f'[{index}] Navigating to: {next_url}')
        self._navigate_bounded(next_url)
        return True

    def _navigate_bounded(self, url):
        """Navigate in a daemon thread so a hung browser cannot stall cycling."""
        outcome = {}

        def _target():
            try:
                outcome['result'] = self.navigate(url)
            except Exception as e:
                log(f'Navigation error: {e}', 'error')
                outcome['result'] = False

        worker = threading.Thread(target=_target, daemon=True)
        worker.start()
        worker.join(self.navigate_timeout)
        if worker.is_alive():
            log(f'Navigation to {url} timed out after {self.navigate_timeout}s', 'warn')
            return False
        if outcome.get('result'):
            log(f'Successfully navigated to: {url}')
            return True
        log(f'Navigation failed: {url}', 'warn')
        return False


def spawn_cycler():
    return spawn_subcommand('cycle')


class SchedulerProcess:
    """Start/stop control for the single scheduler process."""

    def __init__(self, registry, spawn=spawn_cycler):
        self.registry = registry
        self.spawn = spawn

    def is_running(self):
        return self.registry.is_alive('cycler')

    def start(self):
        if self.registry.terminate('cycler', grace=1.0):
            log('Stopped existing playlist cycling service', 'debug')
        try:
            pid = self.spawn()
        except OSError as e:
            log(f'Failed to start playlist cycling service: {e}', 'error')
            return False
        self.registry.record('cycler', pid)
        log(f'Playlist cycling service started (PID: {pid})')
        return True

    def stop(self):
        pid = self.registry.lookup('cycler')
        stopped = self.registry.terminate('cycler', grace=1.0)
        if stopped:
            log(f'Stopped playlist cycling service (PID: {pid})')
        return stopped
