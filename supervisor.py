#!/usr/bin/env python3
"""
Browser supervisor and health monitor.

BrowserSupervisor owns the browser process: finding the binary, building the
architecture-specific command line, launching with a fresh profile, killing
strays and asking the kiosk service for a fast restart. HealthMonitor polls
it on a fixed interval and restarts the browser on crash or when memory use
crosses a ceiling chosen from the machine's total RAM.
"""

import os
import platform
import shutil
import signal
import subprocess
import time

from common import (
    BROWSER_RESTART_THRESHOLD,
    DEBUG_PORT,
    DISPLAY,
    HEALTH_CHECK_INTERVAL,
    KIOSK_SERVICE,
    API_SERVICE,
    PROFILE_DIR,
    STATE_DIR,
    display_env,
    log,
    retry_command,
    run_command,
    spawn_subcommand,
)
from errors import BrowserNotFoundError

BROWSER_PATHS = ('/usr/bin/chromium-browser', '/usr/bin/chromium', '/snap/bin/chromium')
BROWSER_NAMES = ('chromium', 'chromium-browser')

BASE_FLAGS = [
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-default-apps',
    '--disable-popup-blocking',
    '--disable-translate',
    '--disable-background-timer-throttling',
    '--disable-renderer-backgrounding',
    '--disable-device-discovery-notifications',
    '--disable-infobars',
    '--disable-session-crashed-bubble',
    '--disable-restore-session-state',
    '--noerrdialogs',
    '--kiosk',
    '--start-maximized',
]

ARM_FLAGS = [
    '--disable-gpu-sandbox',
    '--use-gl=egl',
    '--enable-gpu-rasterization',
    '--disable-web-security',
    '--disable-features=TranslateUI',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
]

X86_FLAGS = [
    '--disable-gpu',
    '--disable-software-rasterizer',
    '--disable-web-security',
    '--disable-features=TranslateUI,VizDisplayCompositor',
    '--disable-ipc-flooding-protection',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--force-device-scale-factor=1',
]

MEMORY_FLAGS = [
    '--memory-pressure-off',
    '--max_old_space_size=1024',
    '--js-flags=--max-old-space-size=1024',
    '--aggressive-cache-discard',
    '--disable-background-networking',
    '--site-per-process',
    '--disable-site-isolation-trials',
]

RPI_FLAGS = [
    '--disable-features=VizDisplayCompositor',
    '--disable-smooth-scrolling',
    '--disable-2d-canvas-clip-aa',
    '--disable-canvas-aa',
    '--disable-accelerated-2d-canvas',
]

# Memory ceilings in KB, keyed by total RAM in KB
MEMORY_TIERS = (
    (8 * 1024 * 1024, 6291456),
    (4 * 1024 * 1024, 4194304),
    (2 * 1024 * 1024, 2621440),
    (1024 * 1024, 1228800),
)
MIN_MEMORY_LIMIT = 716800
# Anything above this is a pgrep/ps mismatch, not real usage
MEMORY_SANITY_LIMIT = 10 * 1024 * 1024

RESTART_WAIT = 10
LAUNCH_SETTLE = 5
X_RESTART_WAIT = 10


def detect_platform():
    """Return (is_arm, is_rpi) for the running machine."""
    machine = platform.machine().lower()
    is_arm = machine.startswith('arm') or machine.startswith('aarch64')
    is_rpi = False
    if is_arm:
        try:
            with open('/proc/device-tree/model', 'r', errors='ignore') as f:
                is_rpi = 'raspberry pi' in f.read().lower()
        except OSError:
            pass
    return is_arm, is_rpi


def x_server_command(display):
    return ['X', display, '-nolisten', 'tcp', '-noreset', '+extension', 'GLX', 'vt1']


def total_memory_kb(meminfo='/proc/meminfo'):
    try:
        with open(meminfo, 'r') as f:
            for line in f:
                if line.startswith('MemTotal:'):
                    return int(line.split()[1])
    except (OSError, ValueError, IndexError):
        pass
    return 0


def memory_limit_kb(total_kb):
    """Browser memory ceiling for a machine with `total_kb` of RAM."""
    for threshold, limit in MEMORY_TIERS:
        if total_kb > threshold:
            return limit
    return MIN_MEMORY_LIMIT


class BrowserSupervisor:
    def __init__(self, registry, display=DISPLAY, profile_dir=PROFILE_DIR, debug_port=DEBUG_PORT,
                 platform_info=None, runner=run_command, popen=subprocess.Popen, sleep=time.sleep):
        self.registry = registry
        self.display = display
        self.profile_dir = profile_dir
        self.debug_port = debug_port
        self.is_arm, self.is_rpi = platform_info or detect_platform()
        self.runner = runner
        self.popen = popen
        self.sleep = sleep
        self.process = None
        self.x_process = None

    @property
    def process_pattern(self):
        return f'chromium.*user-data-dir={self.profile_dir}'

    def find_browser(self):
        for path in BROWSER_PATHS:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return path
        for name in BROWSER_NAMES:
            found = shutil.which(name)
            if found:
                return found
        raise BrowserNotFoundError('Chromium not found in standard locations')

    def build_command(self, url, browser=None):
        cmd = [browser or self.find_browser()] + BASE_FLAGS
        cmd += ARM_FLAGS if self.is_arm else X86_FLAGS
        cmd += MEMORY_FLAGS
        cmd += [
            f'--display={self.display}',
            f'--remote-debugging-port={self.debug_port}',
            '--remote-allow-origins=*',
            f'--user-data-dir={self.profile_dir}',
        ]
        if self.is_arm and self.is_rpi:
            cmd += RPI_FLAGS
        return cmd + [url]

    def kill_browser(self):
        self.registry.terminate('browser')
        if self.process is not None:
            try:
                self.process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass
            self.process = None
        if self.runner(['pkill', '-f', 'chromium'], timeout=5)['success']:
            self.sleep(2)
            self.runner(['pkill', '-9', '-f', 'chromium'], timeout=5)

    def clear_profile(self):
        shutil.rmtree(self.profile_dir, ignore_errors=True)

    def display_responsive(self):
        return self.runner(['xdpyinfo', '-display', self.display], timeout=3)['success']

    def wait_for_display(self, attempts=30):
        for attempt in range(1, attempts + 1):
            if self.display_responsive():
                return True
            log(f'Waiting for X server... ({attempt}/{attempts})', 'debug')
            self.sleep(1)
        return False

    def launch(self, url):
        """Start a fresh browser showing `url`; True once it is still alive after settling."""
        try:
            cmd = self.build_command(url)
        except BrowserNotFoundError as e:
            log(str(e), 'error')
            return False

        log('Starting browser process...')
        self.kill_browser()
        self.clear_profile()

        if not self.wait_for_display():
            log('X server not ready after 30 seconds', 'error')
            return False

        log(f'Browser command: {" ".join(cmd[:4])}... {url}', 'debug')
        try:
            self.process = self.popen(
                cmd,
                env=display_env(),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True
            )
        except OSError as e:
            log(f'Error launching browser: {e}', 'error')
            return False

        self.registry.record('browser', self.process.pid)
        self.sleep(LAUNCH_SETTLE)
        if self.process.poll() is not None:
            log(f'Browser process died immediately (exit code {self.process.returncode})', 'error')
            self.registry.clear_if('browser', self.process.pid)
            return False
        log(f'Browser started successfully (PID: {self.process.pid})')
        return True

    def browser_pids(self, pattern='chromium'):
        result = self.runner(['pgrep', '-f', pattern], timeout=5)
        if not result['success']:
            return []
        return [int(p) for p in result['output'].split() if p.isdigit()]

    def is_running(self):
        return bool(self.browser_pids())

    def memory_kb(self):
        """Resident memory of all browser processes, in KB."""
        pids = self.browser_pids()
        if not pids:
            return 0
        result = self.runner(['ps', '-o', 'rss=', '-p', ','.join(str(p) for p in pids)], timeout=5)
        total = sum(int(v) for v in result['output'].split() if v.isdigit())
        if total > MEMORY_SANITY_LIMIT:
            log(f'Memory calculation error: {total}KB seems too high, ignoring', 'warn')
            return 0
        return total

    def recover_display(self):
        """Kill the X server and, while kiosk.service is active, start a fresh one."""
        log('Display server issues detected, attempting recovery', 'warn')
        result = self.runner(['pkill', '-f', f'X {self.display}'], timeout=5)
        # pkill exits 1 when nothing matched
        if not result['success'] and result['exit_code'] != 1:
            log(f'Failed to stop X server: {result["error"]}', 'warn')
        self.sleep(2)

        if not self.runner(['systemctl', 'is-active', '--quiet', KIOSK_SERVICE], timeout=5)['success']:
            log('Kiosk service not active, leaving X server down', 'debug')
            return False
        log('Restarting X server...')
        try:
            self.x_process = self.popen(
                x_server_command(self.display),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True
            )
        except OSError as e:
            log(f'Error starting X server: {e}', 'error')
            return False
        if not self.wait_for_display(X_RESTART_WAIT):
            log(f'X server not ready after {X_RESTART_WAIT} seconds', 'error')
            return False
        log('Display recovered')
        return True

    def apply_orientation(self, orientation):
        """Rotate the primary connected output with xrandr."""
        env = display_env()
        query = self.runner(['xrandr', '--query'], timeout=5, env=env)
        if not query['success']:
            log(f'Could not query display outputs: {query["error"]}', 'warn')
            return False
        output = None
        for line in query['output'].splitlines():
            if ' connected' in line:
                output = line.split()[0]
                break
        if not output:
            log('No connected display output found', 'warn')
            return False
        result = self.runner(['xrandr', '--output', output, '--rotate', orientation], timeout=5, env=env)
        if result['success']:
            log(f'Display {output} rotated to {orientation}')
        else:
            log(f'Failed to rotate display {output}: {result["error"]}', 'warn')
        return result['success']

    def request_restart(self):
        """Ask the kiosk service for a fast browser restart, else restart the unit.

        The fast path counts only once a browser with a new pid is recorded and alive.
        """
        previous = self.registry.lookup('browser')
        if self.registry.send_signal('service', signal.SIGUSR1):
            log('Sent fast-restart signal to kiosk service', 'debug')
            for _ in range(RESTART_WAIT):
                self.sleep(1)
                current = self.registry.lookup('browser')
                if current is not None and current != previous and self.registry.is_alive('browser'):
                    log(f'Browser restarted via service signal (PID: {current})')
                    return True
            log('Fast restart did not bring the browser back, restarting service', 'warn')
        result = retry_command(['systemctl', 'restart', KIOSK_SERVICE], sleep=self.sleep)
        return result['success']

    def request_stop(self):
        """Stop the kiosk service process if it is running, else just the browser."""
        if self.registry.terminate('service', grace=5.0):
            return True
        self.kill_browser()
        return False


class HealthMonitor:
    def __init__(self, supervisor, interval=HEALTH_CHECK_INTERVAL, threshold=BROWSER_RESTART_THRESHOLD,
                 memory_limit=None, sleep=time.sleep, snapshot=None):
        self.supervisor = supervisor
        self.interval = interval
        self.threshold = threshold
        if memory_limit is None:
            memory_limit = memory_limit_kb(total_memory_kb())
        self.memory_limit = memory_limit
        self.sleep = sleep
        self.snapshot = snapshot or save_debug_state
        self.restarts = 0

    def _restart(self, reason):
        self.restarts += 1
        log(f'{reason}, restarting browser (restart #{self.restarts})', 'warn')
        self.supervisor.request_restart()
        if self.restarts >= self.threshold:
            log(f'Browser restarted {self.restarts} times, saving diagnostics', 'critical')
            self.snapshot()
            self.restarts = 0

    def check_once(self):
        action = 'ok'
        if not self.supervisor.is_running():
            self._restart('Browser not running')
            action = 'crash-restart'
        else:
            used = self.supervisor.memory_kb()
            if used > self.memory_limit:
                self._restart(f'High memory usage: {used // 1024}MB (limit {self.memory_limit // 1024}MB)')
                action = 'memory-restart'

        if not self.supervisor.display_responsive():
            self.supervisor.recover_display()
        return action

    def run(self):
        log(f'Health monitor started (interval {self.interval}s, '
            f'memory limit {self.memory_limit // 1024}MB)')
        while True:
            try:
                self.check_once()
            except Exception as e:
                log(f'Health check failed: {e}', 'error')
            self.sleep(self.interval)


DEBUG_SECTIONS = (
    ('SYSTEM INFO', ['uname', '-a']),
    ('PROCESSES', ['ps', 'aux']),
    ('MEMORY', ['free', '-h']),
    ('DISK SPACE', ['df', '-h', '/']),
    ('SERVICES', ['systemctl', 'status', '--no-pager', KIOSK_SERVICE, API_SERVICE]),
    ('DISPLAY', ['xrandr', '--query']),
    ('NETWORK', ['ip', 'addr', 'show']),
    ('LOGS', ['tail', '-20', '/var/log/syslog']),
)


def save_debug_state(base_dir=STATE_DIR, runner=run_command):
    """Write a system snapshot to <base_dir>/kiosk-debug-<stamp>/system-state.txt."""
    debug_dir = os.path.join(base_dir, f'kiosk-debug-{time.strftime("%Y%m%d-%H%M%S")}')
    os.makedirs(debug_dir, exist_ok=True)
    lines = []
    for title, cmd in DEBUG_SECTIONS:
        result = runner(cmd, timeout=10, env=display_env())
        lines.append(f'=== {title} ===')
        if title == 'PROCESSES':
            keep = ('chromium', 'Xorg', 'openbox', 'kiosk')
            lines.extend(l for l in result['output'].splitlines() if any(k in l for k in keep))
        else:
            lines.append(result['output'] or result['error'] or 'unavailable')
        lines.append('')
    with open(os.path.join(debug_dir, 'system-state.txt'), 'w') as f:
        f.write('\n'.join(lines))
    log(f'Debug state saved to: {debug_dir}')
    return debug_dir


def spawn_monitor():
    return spawn_subcommand('monitor')


class KioskService:
    """Main process of kiosk.service: browser, monitor and scheduler lifecycle."""

    def __init__(self, store, registry, supervisor, playlist, scheduler, spawn_monitor=spawn_monitor,
                 sleep=time.sleep):
        self.store = store
        self.registry = registry
        self.supervisor = supervisor
        self.playlist = playlist
        self.scheduler = scheduler
        self.spawn_monitor = spawn_monitor
        self.sleep = sleep
        self.running = False
        self.restart_requested = False

    def _on_restart(self, signum, frame):
        self.restart_requested = True

    def _on_stop(self, signum, frame):
        self.running = False

    def start(self):
        self.registry.record('service', os.getpid())
        self.supervisor.apply_orientation(self.store.get('display.orientation', 'normal'))

        target = self.playlist.target_url()
        log(f'Starting kiosk at: {target}')
        if not self.supervisor.launch(target):
            log('Initial browser launch failed; health monitor will retry', 'error')

        self.registry.terminate('monitor')
        try:
            self.registry.record('monitor', self.spawn_monitor())
        except OSError as e:
            log(f'Failed to start health monitor: {e}', 'error')

        if self.playlist.is_enabled() and len(self.playlist.entries()) > 1:
            self.scheduler.start()

    def relaunch(self):
        self.restart_requested = False
        log('Fast restart requested')
        self.supervisor.launch(self.playlist.target_url())

    def shutdown(self):
        log('Shutting down kiosk service...')
        self.scheduler.stop()
        self.registry.terminate('monitor')
        self.supervisor.kill_browser()
        self.registry.clear_if('service', os.getpid())

    def run(self):
        signal.signal(signal.SIGUSR1, self._on_restart)
        signal.signal(signal.SIGTERM, self._on_stop)
        signal.signal(signal.SIGINT, self._on_stop)
        self.running = True
        self.start()
        try:
            while self.running:
                if self.restart_requested:
                    self.relaunch()
                self.sleep(1)
        finally:
            self.shutdown()
