# tests/test_process_registry.py
import os
import subprocess

from process_registry import ProcessRegistry, pid_alive


def test_record_lookup_and_conditional_clear(tmp_path):
    registry = ProcessRegistry(str(tmp_path))
    assert registry.lookup('cycler') is None
    registry.record('cycler', 1234)
    assert (tmp_path / 'kiosk-cycler.pid').read_text() == '1234'
    registry.clear_if('cycler', 999)
    assert registry.lookup('cycler') == 1234
    registry.clear_if('cycler', 1234)
    assert registry.lookup('cycler') is None


def test_liveness_uses_signal_zero(tmp_path):
    registry = ProcessRegistry(str(tmp_path))
    registry.record('service', os.getpid())
    assert registry.is_alive('service')
    assert not pid_alive(0)
    (tmp_path / 'kiosk-monitor.pid').write_text('not a pid')
    assert registry.lookup('monitor') is None
    assert not registry.is_alive('monitor')


def test_terminate_stops_a_live_process(tmp_path):
    registry = ProcessRegistry(str(tmp_path))
    child = subprocess.Popen(['sleep', '30'])
    registry.record('cycler', child.pid)
    assert registry.terminate('cycler', grace=2.0) is True
    assert not pid_alive(child.pid)
    assert registry.lookup('cycler') is None
    assert registry.terminate('cycler') is False
