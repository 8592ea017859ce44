"""
Process handles for the long-running kiosk actors.

Each role (browser, cycler, monitor, service) maps to the pid of its last
known process, persisted as /tmp/kiosk-<role>.pid so separate processes can
find and signal each other.
"""

import os
import signal
import time

from common import STATE_DIR, log

ROLES = ('browser', 'cycler', 'monitor', 'service')


def pid_alive(pid):
    """Check whether a pid exists (signal 0)."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessRegistry:
    """Role -> pid map backed by pid files."""

    def __init__(self, state_dir=STATE_DIR):
        self.state_dir = state_dir

    def path(self, role):
        return os.path.join(self.state_dir, f'kiosk-{role}.pid')

    def record(self, role, pid):
        os.makedirs(self.state_dir, exist_ok=True)
        with open(self.path(role), 'w') as f:
            f.write(str(pid))

    def lookup(self, role):
        try:
            with open(self.path(role), 'r') as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def is_alive(self, role):
        pid = self.lookup(role)
        return pid is not None and pid_alive(pid)

    def clear(self, role):
        try:
            os.remove(self.path(role))
        except FileNotFoundError:
            pass

    def clear_if(self, role, pid):
        """Remove the record only if it still points at `pid`."""
        if self.lookup(role) == pid:
            self.clear(role)

    def send_signal(self, role, sig):
        pid = self.lookup(role)
        if pid is None or not pid_alive(pid):
            return False
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True

    def terminate(self, role, grace=2.0):
        """SIGTERM the recorded process, SIGKILL after `grace` seconds.

        Returns True if a live process was found. A dead or unknown process is
        a no-op; the record is removed either way.
        """
        pid = self.lookup(role)
        found = pid is not None and pid_alive(pid)
        if found:
            log(f'Stopping {role} (PID: {pid})...', 'debug')
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            deadline = time.monotonic() + grace
            while time.monotonic() < deadline and pid_alive(pid):
                _reap(pid)
                time.sleep(0.1)
            if pid_alive(pid) and not _reap(pid):
                try:
                    os.kill(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                _reap(pid)
        self.clear(role)
        return found


def _reap(pid):
    """Collect `pid` if it is our exited child so it stops looking alive."""
    try:
        done, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return False
    return done == pid
