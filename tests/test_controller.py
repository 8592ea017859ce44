# tests/test_controller.py
import pytest

from conftest import (
    FakeBrowserClient,
    FakeNavigator,
    FakeRunner,
    FakeSupervisor,
    MemoryRegistry,
    failed_result,
)
from controller import KioskController
from errors import KioskError, StepFailedError, ValidationError


@pytest.fixture
def retry():
    return FakeRunner()


@pytest.fixture
def navigator():
    return FakeNavigator()


@pytest.fixture
def controller(store, cursor, scheduler, navigator, runner, retry):
    return KioskController(
        store=store,
        cursor=cursor,
        registry=MemoryRegistry(),
        supervisor=FakeSupervisor(),
        client=FakeBrowserClient(),
        navigator=navigator,
        scheduler=scheduler,
        runner=runner,
        retry=retry,
        snapshot=lambda: '/tmp/kiosk-debug-test',
    )


def test_set_url_rejects_invalid_input_before_writing(controller, config_path, navigator):
    before = config_path.read_text()
    with pytest.raises(ValidationError):
        controller.set_url('not-a-url')
    assert config_path.read_text() == before
    assert navigator.visited == []


def test_set_url_switches_off_cycling(controller, store, scheduler, navigator):
    controller.playlist_add('http://a.example', 30)
    controller.playlist_add('http://b.example', 30)
    controller.playlist_enable()
    result = controller.set_url('http://single.example')
    assert result == {'url': 'http://single.example', 'method': 'new-tab'}
    assert store.get('kiosk.url') == 'http://single.example'
    assert store.get('playlist.enabled') is False
    assert not scheduler.is_running()
    assert navigator.visited[-1] == 'http://single.example'


def test_set_url_falls_back_to_service_restart(controller, navigator, retry):
    navigator.success = False
    result = controller.set_url('http://single.example')
    assert result['method'] == 'service-restart'
    assert retry.commands == [['systemctl', 'restart', 'kiosk.service']]


def test_set_url_rolls_back_when_nothing_works(controller, store, navigator, retry):
    navigator.success = False
    retry.set('systemctl', failed_result())
    with pytest.raises(KioskError):
        controller.set_url('http://single.example')
    assert store.get('kiosk.url') == 'http://home.example'


def test_set_orientation_persists_and_restarts(controller, store, retry):
    assert controller.set_orientation('Right') == {'orientation': 'right'}
    assert store.get('display.orientation') == 'right'
    assert retry.commands == [['systemctl', 'restart', 'kiosk.service']]


def test_set_orientation_rolls_back_on_restart_failure(controller, store, retry):
    retry.set('systemctl', failed_result())
    with pytest.raises(KioskError):
        controller.set_orientation('left')
    assert store.get('display.orientation') == 'normal'


def test_regenerate_api_key(controller, store):
    old = controller.get_api_key()
    new = controller.regenerate_api_key()['api_key']
    assert new != old
    assert store.get('api.api_key') == new


def test_replace_playlist_applies_all_steps(controller, store, scheduler, navigator):
    result = controller.replace_playlist([
        {'url': 'http://a.example', 'display_time': 20, 'title': 'A'},
        'http://b.example',
        {'url': 'http://c.example'},
    ])
    assert [op['step'] for op in result['operations']] == ['replace', 'add[1]', 'add[2]', 'enable']
    assert result['total'] == 3
    assert [e['url'] for e in store.get('playlist.urls')] == [
        'http://a.example', 'http://b.example', 'http://c.example']
    assert store.get('playlist.enabled') is True
    assert scheduler.starts == 1
    assert navigator.visited == ['http://a.example']


def test_replace_playlist_stops_at_first_failure(controller, store, scheduler):
    with pytest.raises(StepFailedError) as info:
        controller.replace_playlist(['http://a.example', 'bad url', 'http://c.example'])
    assert info.value.failed_step == 'add[1]'
    assert info.value.completed == [{'step': 'replace', 'url': 'http://a.example'}]
    assert isinstance(info.value.cause, ValidationError)
    assert [e['url'] for e in store.get('playlist.urls')] == ['http://a.example']
    assert store.get('playlist.enabled') is False
    assert scheduler.starts == 0


def test_replace_playlist_requires_items(controller):
    with pytest.raises(ValidationError):
        controller.replace_playlist([])


def test_playlist_disable_shows_kiosk_url(controller, navigator):
    controller.playlist_add('http://a.example', 30)
    controller.playlist_add('http://b.example', 30)
    controller.playlist_enable()
    result = controller.playlist_disable()
    assert result['method'] == 'new-tab'
    assert navigator.visited[-1] == 'http://home.example'


def test_logs_validates_arguments(controller, runner):
    with pytest.raises(ValidationError):
        controller.logs('browser')
    with pytest.raises(ValidationError):
        controller.logs('kiosk', 0)
    controller.logs('api', '20')
    assert runner.commands[-1] == ['journalctl', '-u', 'kiosk-api.service', '-n', '20', '--no-pager']


def test_status_reports_playlist_state(controller, runner):
    runner.set('systemctl is-active', {'success': True, 'exit_code': 0, 'output': 'active',
                                       'error': '', 'execution_time': 0.0, 'command': ''})
    controller.playlist_add('http://a.example', 30)
    status = controller.status()
    assert status['kiosk_service'] == 'active'
    assert status['playlist_count'] == 1
    assert status['playlist_enabled'] is False
    assert status['target_url'] == 'http://home.example'
    assert status['browser_running'] is True


def test_config_maintenance(controller, store):
    backup = controller.backup_config()['backup']
    store.set('kiosk.url', 'http://changed.example')
    assert controller.restore_config(backup) == {'restored': backup}
    assert store.get('kiosk.url') == 'http://home.example'
    assert controller.validate_config() == {'valid': True, 'problems': []}
    assert controller.debug_snapshot() == {'path': '/tmp/kiosk-debug-test'}
    with pytest.raises(KioskError):
        controller.restore_config('kiosk.json.19990101-000000-000000')


def test_stop_falls_back_to_stopping_processes(controller, runner, scheduler):
    scheduler.running = True
    runner.set('systemctl stop', failed_result('System has not been booted with systemd'))
    controller.supervisor.stop_ok = True
    result = controller.stop_services()
    assert result['success'] is True
    assert result['stopped'] == 'direct'
    assert controller.supervisor.stop_requests == 1
    assert scheduler.running is False


def test_stop_reports_failure_when_nothing_was_stopped(controller, runner):
    runner.set('systemctl stop', failed_result())
    assert controller.stop_services()['success'] is False
    assert controller.supervisor.stop_requests == 1


def test_validate_config_with_wrongly_shaped_sections(controller, config_path):
    config_path.write_text('{"kiosk": "oops", "playlist": ["x"]}')
    assert controller.validate_config()['valid'] is True
    assert controller.health_report()['config_valid'] is True
