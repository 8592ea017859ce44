#!/usr/bin/env python3
"""
Shared settings and helpers for the kiosk controller.

Paths and tunables are module-level constants with environment overrides so
the same code runs on the appliance (/opt/kiosk) and in a scratch directory.
"""

import os
import re
import subprocess
import sys
import time

# Configuration
INSTALL_DIR = os.environ.get('KIOSK_INSTALL_DIR', '/opt/kiosk')
CONFIG_FILE = os.environ.get('KIOSK_CONFIG_FILE', os.path.join(INSTALL_DIR, 'kiosk.json'))
BACKUP_DIR = os.environ.get('KIOSK_BACKUP_DIR', os.path.join(INSTALL_DIR, 'backups'))
STATE_DIR = os.environ.get('KIOSK_STATE_DIR', '/tmp')
ERROR_LOG = os.environ.get('KIOSK_ERROR_LOG', '/var/log/kiosk-errors.log')
DISPLAY = os.environ.get('DISPLAY', ':0')
DEBUG_PORT = int(os.environ.get('KIOSK_DEBUG_PORT', '9222'))
PROFILE_DIR = os.environ.get('KIOSK_PROFILE_DIR', '/tmp/chromium-kiosk')
CURSOR_FILE = os.path.join(STATE_DIR, 'kiosk-playlist-index')

KIOSK_SERVICE = 'kiosk.service'
API_SERVICE = 'kiosk-api.service'

DEFAULT_URL = 'http://example.com'
DEFAULT_DISPLAY_TIME = 30  # seconds per playlist entry
DEFAULT_API_PORT = 80
FALLBACK_API_PORT = 8080
HEALTH_CHECK_INTERVAL = int(os.environ.get('KIOSK_HEALTH_INTERVAL', '30'))
BROWSER_RESTART_THRESHOLD = 5
RETRY_COUNT = 3
RETRY_DELAY = 5

LOG_LEVELS = ('debug', 'info', 'warn', 'error', 'critical')

ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def log(message, level='info'):
    """Log with timestamp and level; mirrored to the error log when writable."""
    if level not in LOG_LEVELS:
        level = 'info'
    timestamp = time.strftime('%Y-%m-%d %H:%M:%S')
    line = f'[{timestamp}] [{level.upper()}] {message}'
    print(line, flush=True)
    try:
        with open(ERROR_LOG, 'a') as f:
            f.write(line + '\n')
    except OSError:
        pass


def display_env():
    """Environment for commands that talk to the X display."""
    return {**os.environ, 'DISPLAY': DISPLAY}


def run_command(cmd, timeout=30, env=None):
    """Run a command and return a structured result dict.

    The shape matches what the API gateway returns to callers: success flag,
    exit code, captured output/error (ANSI colour codes stripped) and the
    elapsed time in seconds.
    """
    start = time.time()
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env
        )
    except subprocess.TimeoutExpired:
        return {
            'success': False,
            'exit_code': -1,
            'output': '',
            'error': f'Command timed out after {timeout} seconds',
            'execution_time': round(time.time() - start, 3),
            'command': ' '.join(cmd)
        }
    except OSError as e:
        return {
            'success': False,
            'exit_code': -1,
            'output': '',
            'error': str(e),
            'execution_time': round(time.time() - start, 3),
            'command': ' '.join(cmd)
        }

    return {
        'success': result.returncode == 0,
        'exit_code': result.returncode,
        'output': ANSI_ESCAPE.sub('', result.stdout or '').strip(),
        'error': ANSI_ESCAPE.sub('', result.stderr or '').strip(),
        'execution_time': round(time.time() - start, 3),
        'command': ' '.join(cmd)
    }


def retry_command(cmd, attempts=RETRY_COUNT, delay=RETRY_DELAY, timeout=30, sleep=time.sleep):
    """Run an idempotent command up to `attempts` times with a fixed delay."""
    result = None
    for attempt in range(1, attempts + 1):
        log(f'Attempt {attempt}/{attempts}: {" ".join(cmd)}', 'debug')
        result = run_command(cmd, timeout=timeout)
        if result['success']:
            return result
        log(f'Command failed on attempt {attempt} with exit code {result["exit_code"]}', 'warn')
        if attempt < attempts:
            log(f'Waiting {delay}s before retry...')
            sleep(delay)
    log(f'Command failed after {attempts} attempts: {" ".join(cmd)}', 'error')
    return result


def atomic_write_text(path, text, verify=None):
    """Write `text` to `path` via a temp file in the same directory.

    `verify` (optional) is called with the re-read temp content before the
    rename; if it raises, the temp file is discarded and the target is left
    untouched.
    """
    dirpath = os.path.dirname(path) or '.'
    os.makedirs(dirpath, exist_ok=True)
    tmp = f'{path}.tmp.{os.getpid()}'
    try:
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if verify is not None:
            with open(tmp, 'r', encoding='utf-8') as f:
                verify(f.read())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.unlink(tmp)
            except OSError:
                pass


def spawn_subcommand(name, *args):
    """Start `python -m kiosk <name>` detached from the caller; returns the pid."""
    process = subprocess.Popen(
        [sys.executable, '-m', 'kiosk', name, *args],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True
    )
    return process.pid
