"""
Playlist model: the cursor file and the add/remove/enable/disable operations.

Entries live in the config document under playlist.urls, in cycling order.
Indices are positional. The cursor (which entry is showing) is kept in its
own file and is clamped against the current length on every read.
"""

import os
from urllib.parse import urlparse

from common import CURSOR_FILE, DEFAULT_DISPLAY_TIME, DEFAULT_URL, atomic_write_text, log
from config_store import playlist_section
from errors import ValidationError
from validation import check_display_time, check_index, check_url

MODES = ('append', 'replace')


class PlaylistCursor:
    """Index of the entry currently shown, persisted across scheduler restarts."""

    def __init__(self, path=CURSOR_FILE):
        self.path = path

    def read(self):
        try:
            with open(self.path, 'r') as f:
                value = int(f.read().strip())
        except (OSError, ValueError):
            return 0
        return max(value, 0)

    def write(self, index):
        atomic_write_text(self.path, str(int(index)))

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def position(self, length):
        """Cursor clamped to [0, length); a stale index falls back to 0."""
        index = self.read()
        if length <= 0 or index >= length:
            return 0
        return index


def title_from_url(url):
    """Default entry title: the host[:port] part of the URL."""
    return urlparse(url).netloc or url


def resolve_display_time(entry, playlist):
    """Entry duration, else the playlist default, else 30 seconds."""
    for candidate in (entry.get('display_time') if entry else None,
                      playlist.get('default_display_time')):
        try:
            value = int(candidate)
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return DEFAULT_DISPLAY_TIME


class Playlist:
    def __init__(self, store, cursor, scheduler):
        self.store = store
        self.cursor = cursor
        self.scheduler = scheduler

    # -- reads --------------------------------------------------------------

    def section(self):
        return playlist_section(self.store.read())

    def entries(self):
        return [e for e in self.section()['urls'] if isinstance(e, dict)]

    def is_enabled(self):
        return self.section().get('enabled') is True

    def current_index(self):
        return self.cursor.position(len(self.entries()))

    def current_entry(self):
        entries = self.entries()
        if not entries:
            return None
        return entries[self.cursor.position(len(entries))]

    def current_url(self):
        entry = self.current_entry()
        if entry and entry.get('url'):
            return entry['url']
        return self.store.get('kiosk.url', DEFAULT_URL)

    def current_display_time(self):
        return resolve_display_time(self.current_entry(), self.section())

    def target_url(self):
        """What the browser should show: the current entry while cycling, else kiosk.url."""
        if self.is_enabled():
            return self.current_url()
        return self.store.get('kiosk.url', DEFAULT_URL)

    def show(self):
        """Read-only view of the playlist with the active entry marked."""
        playlist = self.section()
        enabled = playlist.get('enabled') is True
        entries = [e for e in playlist['urls'] if isinstance(e, dict)]
        current = self.cursor.position(len(entries)) if enabled else None
        return {
            'enabled': enabled,
            'default_display_time': playlist.get('default_display_time', DEFAULT_DISPLAY_TIME),
            'current_index': current,
            'scheduler_running': self.scheduler.is_running(),
            'urls': [
                {
                    'index': i,
                    'url': entry.get('url', ''),
                    'display_time': resolve_display_time(entry, playlist),
                    'title': entry.get('title') or f'URL {i + 1}',
                    'current': i == current,
                }
                for i, entry in enumerate(entries)
            ],
        }

    # -- mutations ----------------------------------------------------------

    def add_url(self, url, display_time=None, title=None, mode='append'):
        if mode == 'add':
            mode = 'append'
        if mode not in MODES:
            raise ValidationError(f'Invalid mode: {mode} (valid: {", ".join(MODES)})')
        check_url(url)
        if display_time is None or display_time == '':
            display_time = self.section().get('default_display_time', DEFAULT_DISPLAY_TIME)
        display_time = check_display_time(display_time)
        if not title:
            title = title_from_url(url)

        entry = {'url': url, 'display_time': display_time, 'title': title}
        self.store.backup()

        def _apply(document):
            playlist = playlist_section(document)
            if mode == 'replace':
                playlist['urls'] = [entry]
            else:
                playlist['urls'].append(entry)

        document = self.store.update(_apply)
        total = len(playlist_section(document)['urls'])
        if mode == 'replace':
            log(f'Replaced playlist with new URL: {url} ({display_time}s)')
        else:
            log(f'Added URL to playlist: {url} ({display_time}s)')
        return {'entry': entry, 'total': total}

    def remove_url(self, index):
        self.store.backup()
        removed = {}

        def _apply(document):
            playlist = playlist_section(document)
            position = check_index(index, len(playlist['urls']))
            removed.update(playlist['urls'].pop(position))

        document = self.store.update(_apply)
        log(f"Removed: {removed.get('title', 'Unknown')} - {removed.get('url', '')}")
        return {'removed': removed, 'total': len(playlist_section(document)['urls'])}

    def enable(self):
        """Turn cycling on, reset the cursor and make sure the scheduler runs."""
        self.store.backup()
        document = self.store.update(lambda doc: playlist_section(doc).update(enabled=True))
        self.cursor.write(0)
        log('Playlist mode enabled')

        count = len(playlist_section(document)['urls'])
        started = False
        if self.scheduler.is_running():
            log('Playlist cycling service already running')
        elif count > 1:
            log('Starting playlist cycling service...')
            started = self.scheduler.start()
        else:
            log(f'Playlist has {count} URL(s); nothing to cycle', 'warn')
        return {'enabled': True, 'total': count, 'scheduler_started': started}

    def disable(self):
        self.store.backup()
        self.store.update(lambda doc: playlist_section(doc).update(enabled=False))
        stopped = self.scheduler.stop()
        self.cursor.clear()
        log('Playlist mode disabled')
        return {'enabled': False, 'scheduler_stopped': stopped}

    def clear(self):
        """Stop cycling and reset the playlist section to an empty list."""
        self.store.backup()
        self.scheduler.stop()

        def _apply(document):
            default_time = playlist_section(document).get('default_display_time', DEFAULT_DISPLAY_TIME)
            document['playlist'] = {
                'enabled': False,
                'default_display_time': default_time,
                'urls': [],
            }

        self.store.update(_apply)
        self.cursor.clear()
        log('Playlist cleared to default state')
        return {'enabled': False, 'total': 0}


def render_playlist(view):
    """Human-readable listing used by `kiosk playlist`."""
    lines = [
        '=' * 40,
        '         PLAYLIST CONFIGURATION',
        '=' * 40,
        f"Status: {'ENABLED' if view['enabled'] else 'DISABLED'}",
        '',
    ]
    if not view['urls']:
        lines += ['No URLs in playlist', '',
                  'Add URLs with: kiosk playlist-add <URL> [display_time] [title]']
    else:
        lines += ['URLs in playlist:', '']
        for entry in view['urls']:
            marker = ' [CURRENT]' if entry['current'] else ''
            lines.append(f"  [{entry['index']}] {entry['title']}{marker}")
            lines.append(f"       URL: {entry['url']}")
            lines.append(f"       Display Time: {entry['display_time']}s")
            lines.append('')
    lines.append('=' * 40)
    return '\n'.join(lines)
