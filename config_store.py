"""
Persistent kiosk configuration: a single JSON document on disk.

All writers go through `write()`, which never exposes a partially written
file: content is written to a temp file next to the target, re-parsed, then
renamed into place. There is no lock; concurrent writers race and the last
rename wins.
"""

import json
import os
import re
from datetime import datetime

from werkzeug.utils import secure_filename

from common import BACKUP_DIR, CONFIG_FILE, DEFAULT_API_PORT, DEFAULT_DISPLAY_TIME, DEFAULT_URL
from common import atomic_write_text, log
from errors import ConfigWriteError, ValidationError
from validation import (
    check_api_key,
    check_display_time,
    check_orientation,
    check_url,
    generate_api_key,
    validate_api_key,
    validate_display_time,
    validate_orientation,
    validate_url,
)

MAX_BACKUPS = 10
SECTIONS = ('kiosk', 'display', 'api', 'playlist')

_API_KEY_IN_TEXT = re.compile(r'"api_key"\s*:\s*"([A-Za-z0-9_-]{16,128})"')


def default_document(api_key=None):
    return {
        'kiosk': {
            'url': DEFAULT_URL,
        },
        'display': {
            'orientation': 'normal',
        },
        'api': {
            'api_key': api_key or generate_api_key(),
            'port': DEFAULT_API_PORT,
        },
        'playlist': {
            'enabled': False,
            'default_display_time': DEFAULT_DISPLAY_TIME,
            'urls': [
                {
                    'url': DEFAULT_URL,
                    'display_time': DEFAULT_DISPLAY_TIME,
                    'title': 'Example Site',
                }
            ],
        },
    }


def coerce_value(value):
    """Coerce CLI/query-string input: 'true'/'false' -> bool, digits -> int."""
    if not isinstance(value, str):
        return value
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    if value.isdigit():
        return int(value)
    return value


def _misshapen_sections(document):
    return [name for name in SECTIONS if name in document and not isinstance(document[name], dict)]


def _salvage_object(text):
    """Recover a JSON object from the start of damaged content, if any."""
    start = text.find('{')
    if start < 0:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(text[start:])
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _merge_salvaged(document, salvaged):
    """Copy fields from `salvaged` into `document` where they still validate."""
    merged = []
    for key, value in salvaged.items():
        if key not in SECTIONS:
            document[key] = value
            merged.append(key)
    kiosk = salvaged.get('kiosk')
    if isinstance(kiosk, dict):
        if validate_url(kiosk.get('url')):
            document['kiosk']['url'] = kiosk['url']
            merged.append('kiosk.url')
        for subkey, subvalue in kiosk.items():
            if subkey not in document['kiosk']:
                document['kiosk'][subkey] = subvalue
    display = salvaged.get('display')
    if isinstance(display, dict) and validate_orientation(display.get('orientation')):
        document['display']['orientation'] = display['orientation'].strip().lower()
        merged.append('display.orientation')
    api = salvaged.get('api')
    if isinstance(api, dict) and isinstance(api.get('port'), int) and not isinstance(api.get('port'), bool):
        document['api']['port'] = api['port']
        merged.append('api.port')
    playlist = salvaged.get('playlist')
    if isinstance(playlist, dict):
        if isinstance(playlist.get('enabled'), bool):
            document['playlist']['enabled'] = playlist['enabled']
            merged.append('playlist.enabled')
        if validate_display_time(playlist.get('default_display_time')):
            document['playlist']['default_display_time'] = int(playlist['default_display_time'])
            merged.append('playlist.default_display_time')
        if isinstance(playlist.get('urls'), list):
            entries = [e for e in playlist['urls'] if isinstance(e, dict) and validate_url(e.get('url'))]
            document['playlist']['urls'] = entries
            merged.append('playlist.urls')
    return merged


class ConfigStore:
    """File-backed configuration repository.

    `get`/`set` address nested fields with dotted paths such as
    'display.orientation'. `read` repairs a missing or corrupt file before
    returning, so callers always see a complete document.
    """

    def __init__(self, path=CONFIG_FILE, backup_dir=BACKUP_DIR):
        self.path = path
        self.backup_dir = backup_dir

    # -- raw document IO --------------------------------------------------

    def _read_text(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write(self, document):
        text = json.dumps(document, indent=2) + '\n'
        try:
            atomic_write_text(self.path, text, verify=json.loads)
        except (OSError, ValueError) as e:
            raise ConfigWriteError(f'Failed to update config {self.path}: {e}') from e

    def read(self):
        text = self._read_text()
        if text is not None and text.strip():
            try:
                data = json.loads(text)
                if isinstance(data, dict) and not _misshapen_sections(data):
                    return data
            except ValueError:
                pass
            log('Invalid config detected, attempting to repair', 'warn')
            return self._repair(text)
        return self._repair(None)

    def _repair(self, damaged):
        api_key = None
        if damaged:
            match = _API_KEY_IN_TEXT.search(damaged)
            if match:
                api_key = match.group(1)
        document = default_document(api_key)
        if damaged:
            salvaged = _salvage_object(damaged)
            if salvaged:
                merged = _merge_salvaged(document, salvaged)
                if merged:
                    log(f'Merged settings from damaged config: {", ".join(merged)}', 'debug')
            else:
                log('Damaged config not recoverable, using defaults', 'debug')
        else:
            log('Creating default configuration...')
        try:
            self.write(document)
        except ConfigWriteError as e:
            log(str(e), 'error')
        return document

    # -- field access -----------------------------------------------------

    def get(self, key_path, default=None):
        value = self.read()
        for key in key_path.split('.'):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def set(self, key_path, value):
        try:
            self.update(lambda doc: _assign(doc, key_path, coerce_value(value)))
        except ConfigWriteError as e:
            log(str(e), 'error')
            return False
        log(f'Configuration updated: {key_path}', 'debug')
        return True

    def update(self, mutator):
        """Read the document, apply `mutator` in place, and write it back."""
        document = self.read()
        mutator(document)
        self.write(document)
        return document

    # -- validation -------------------------------------------------------

    def problems(self):
        document = self.read()
        issues = []

        def _check(label, fn, value):
            try:
                fn(value)
            except ValidationError as e:
                issues.append(f'{label}: {e}')

        for name in _misshapen_sections(document):
            issues.append(f'{name}: must be an object')
        sections = {name: document.get(name) if isinstance(document.get(name), dict) else {} for name in SECTIONS}

        _check('kiosk.url', check_url, sections['kiosk'].get('url'))
        _check('display.orientation', check_orientation, sections['display'].get('orientation', 'normal'))
        _check('api.api_key', check_api_key, sections['api'].get('api_key'))

        playlist = sections['playlist']
        if not isinstance(playlist.get('enabled', False), bool):
            issues.append('playlist.enabled: must be true or false')
        if 'default_display_time' in playlist:
            _check('playlist.default_display_time', check_display_time, playlist['default_display_time'])
        entries = playlist.get('urls', [])
        if not isinstance(entries, list):
            issues.append('playlist.urls: must be a list')
            entries = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                issues.append(f'playlist.urls[{i}]: must be an object')
                continue
            _check(f'playlist.urls[{i}].url', check_url, entry.get('url'))
            if 'display_time' in entry:
                _check(f'playlist.urls[{i}].display_time', check_display_time, entry['display_time'])
        return issues

    def validate(self):
        return not self.problems()

    # -- backups ----------------------------------------------------------

    def _backup_prefix(self):
        return os.path.basename(self.path) + '.'

    def list_backups(self):
        """Backup names, newest first."""
        try:
            names = os.listdir(self.backup_dir)
        except FileNotFoundError:
            return []
        prefix = self._backup_prefix()
        return sorted((n for n in names if n.startswith(prefix + '20')), reverse=True)

    def backup(self):
        if not os.path.exists(self.path):
            return None
        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            name = self._backup_prefix() + datetime.now().strftime('%Y%m%d-%H%M%S-%f')
            with open(self.path, 'r', encoding='utf-8') as src:
                content = src.read()
            atomic_write_text(os.path.join(self.backup_dir, name), content)
        except OSError as e:
            log(f'Failed to backup {self.path}: {e}', 'warn')
            return None

        for stale in self.list_backups()[MAX_BACKUPS:]:
            try:
                os.remove(os.path.join(self.backup_dir, stale))
            except OSError:
                pass
        log(f'Configuration backed up to: {self.backup_dir}')
        return name

    def restore(self, name=None):
        """Restore the named backup, or the newest one when no name is given."""
        backups = self.list_backups()
        candidates = backups
        if name:
            safe = secure_filename(name)
            if safe != os.path.basename(self.path):
                candidates = [b for b in backups if b == safe]
        if not candidates:
            log(f'No backup found for: {name or os.path.basename(self.path)}', 'error')
            return False

        source = os.path.join(self.backup_dir, candidates[0])
        try:
            with open(source, 'r', encoding='utf-8') as f:
                document = json.load(f)
            if not isinstance(document, dict):
                raise ValueError('backup is not a JSON object')
            self.write(document)
        except (OSError, ValueError, ConfigWriteError) as e:
            log(f'Failed to restore from {source}: {e}', 'error')
            return False
        log(f'Restored configuration from: {source}')
        return True


def _assign(document, key_path, value):
    keys = key_path.split('.')
    current = document
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def playlist_section(document):
    """Return the playlist section of `document`, creating it when absent."""
    playlist = document.get('playlist')
    if not isinstance(playlist, dict):
        playlist = {'enabled': False, 'default_display_time': DEFAULT_DISPLAY_TIME, 'urls': []}
        document['playlist'] = playlist
    if not isinstance(playlist.get('urls'), list):
        playlist['urls'] = []
    return playlist
