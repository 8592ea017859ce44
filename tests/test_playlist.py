# tests/test_playlist.py
import pytest

from errors import PlaylistIndexError, ValidationError
from playlist import render_playlist, resolve_display_time, title_from_url


def test_cursor_clamps_stale_values(cursor):
    assert cursor.read() == 0
    cursor.write(4)
    assert cursor.position(10) == 4
    assert cursor.position(3) == 0
    with open(cursor.path, 'w') as f:
        f.write('garbage')
    assert cursor.read() == 0
    with open(cursor.path, 'w') as f:
        f.write('-3')
    assert cursor.read() == 0
    cursor.clear()
    cursor.clear()
    assert cursor.read() == 0


def test_append_then_enable(playlist, cursor, scheduler, store):
    playlist.add_url('http://a.example', 60, 'A')
    playlist.add_url('http://b.example', 45, 'B')
    assert store.get('playlist.urls') == [
        {'url': 'http://a.example', 'display_time': 60, 'title': 'A'},
        {'url': 'http://b.example', 'display_time': 45, 'title': 'B'},
    ]
    cursor.write(1)
    result = playlist.enable()
    assert result['scheduler_started'] is True
    assert scheduler.starts == 1
    assert cursor.read() == 0
    assert store.get('playlist.enabled') is True


def test_replace_defaults_title_from_host(playlist, store):
    playlist.add_url('http://a.example', 60, 'A')
    playlist.add_url('http://b.example', 45, 'B')
    result = playlist.add_url('http://x.example', 30, '', 'replace')
    assert result['total'] == 1
    assert store.get('playlist.urls') == [
        {'url': 'http://x.example', 'display_time': 30, 'title': 'x.example'},
    ]


def test_add_uses_playlist_default_display_time(playlist, store):
    store.set('playlist.default_display_time', 90)
    result = playlist.add_url('http://a.example')
    assert result['entry']['display_time'] == 90


def test_invalid_input_is_not_persisted(playlist, store, config_path):
    before = config_path.read_text()
    with pytest.raises(ValidationError):
        playlist.add_url('not-a-url', 30)
    with pytest.raises(ValidationError):
        playlist.add_url('http://a.example', 3)
    with pytest.raises(ValidationError):
        playlist.add_url('http://a.example', 30, mode='prepend')
    assert config_path.read_text() == before
    assert store.list_backups() == []


def test_remove_out_of_range_leaves_playlist_unchanged(playlist, store):
    for name in ('a', 'b', 'c'):
        playlist.add_url(f'http://{name}.example', 30)
    before = store.get('playlist.urls')
    with pytest.raises(PlaylistIndexError):
        playlist.remove_url(5)
    assert store.get('playlist.urls') == before


def test_remove_by_index(playlist, store):
    for name in ('a', 'b', 'c'):
        playlist.add_url(f'http://{name}.example', 30)
    result = playlist.remove_url('1')
    assert result['removed']['url'] == 'http://b.example'
    assert [e['url'] for e in store.get('playlist.urls')] == ['http://a.example', 'http://c.example']


def test_enable_single_entry_does_not_start_scheduler(playlist, scheduler):
    playlist.add_url('http://a.example', 30)
    result = playlist.enable()
    assert result['enabled'] is True
    assert result['scheduler_started'] is False
    assert scheduler.starts == 0


def test_disable_is_idempotent(playlist, scheduler, cursor, store):
    playlist.add_url('http://a.example', 30)
    playlist.add_url('http://b.example', 30)
    playlist.enable()
    cursor.write(1)
    first = playlist.disable()
    second = playlist.disable()
    assert first['scheduler_stopped'] is True
    assert second['scheduler_stopped'] is False
    assert store.get('playlist.enabled') is False
    assert not scheduler.is_running()
    assert cursor.read() == 0


def test_clear_keeps_default_display_time(playlist, store, scheduler):
    store.set('playlist.default_display_time', 45)
    playlist.add_url('http://a.example')
    playlist.clear()
    assert store.get('playlist') == {'enabled': False, 'default_display_time': 45, 'urls': []}
    assert scheduler.stops == 1


def test_target_url_follows_mode(playlist, store, cursor):
    playlist.add_url('http://a.example', 30)
    playlist.add_url('http://b.example', 30)
    assert playlist.target_url() == 'http://home.example'
    playlist.enable()
    cursor.write(1)
    assert playlist.target_url() == 'http://b.example'
    playlist.clear()
    store.set('playlist.enabled', True)
    assert playlist.current_url() == 'http://home.example'


def test_show_marks_current_entry(playlist, cursor):
    playlist.add_url('http://a.example', 60, 'A')
    playlist.add_url('http://b.example', 45, 'B')
    playlist.enable()
    cursor.write(1)
    view = playlist.show()
    assert view['current_index'] == 1
    assert [e['current'] for e in view['urls']] == [False, True]
    text = render_playlist(view)
    assert 'ENABLED' in text
    assert '[1] B [CURRENT]' in text


def test_resolve_display_time_fallbacks():
    assert resolve_display_time({'display_time': 12}, {'default_display_time': 40}) == 12
    assert resolve_display_time({}, {'default_display_time': 40}) == 40
    assert resolve_display_time(None, {}) == 30
    assert title_from_url('http://host.example:8080/x') == 'host.example:8080'
