"""
Input validation for URLs, display times, orientations, API keys and indices.

Each `check_*` function raises ValidationError with a specific reason and
returns the normalised value; the `validate_*` wrappers return a bool.
"""

import re
import secrets
import string

from errors import PlaylistIndexError, ValidationError

URL_PATTERN = re.compile(r'https?://[A-Za-z0-9.-]+(:[0-9]+)?(/.*)?')
UNSAFE_SCHEMES = ('javascript:', 'data:', 'file:', 'ftp:')
MAX_URL_LENGTH = 2048

MIN_DISPLAY_TIME = 5
MAX_DISPLAY_TIME = 86400

ORIENTATIONS = ('normal', 'left', 'right', 'inverted')

API_KEY_PATTERN = re.compile(r'[A-Za-z0-9_-]+')
API_KEY_MIN = 16
API_KEY_MAX = 128


def check_url(url):
    if not isinstance(url, str) or not url:
        raise ValidationError('URL cannot be empty')
    if not URL_PATTERN.fullmatch(url):
        raise ValidationError(f'Invalid URL format: {url}')
    lowered = url.lower()
    if any(scheme in lowered for scheme in UNSAFE_SCHEMES):
        raise ValidationError(f'Potentially unsafe URL scheme: {url}')
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError(f'URL too long (max {MAX_URL_LENGTH} characters): {len(url)}')
    return url


def validate_url(url):
    try:
        check_url(url)
    except ValidationError:
        return False
    return True


def check_display_time(value):
    """Return `value` as an int in [5, 86400] seconds."""
    if value is None or value == '':
        raise ValidationError('Display time cannot be empty')
    if isinstance(value, bool):
        raise ValidationError('Display time must be a positive integer (seconds)')
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise ValidationError('Display time must be a positive integer (seconds)')
        value = int(value.strip())
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError('Display time must be a positive integer (seconds)')
        value = int(value)
    elif not isinstance(value, int):
        raise ValidationError('Display time must be a positive integer (seconds)')

    if value < MIN_DISPLAY_TIME:
        raise ValidationError(f'Display time too short (minimum {MIN_DISPLAY_TIME} seconds)')
    if value > MAX_DISPLAY_TIME:
        raise ValidationError('Display time too long (maximum 24 hours)')
    return value


def validate_display_time(value):
    try:
        check_display_time(value)
    except ValidationError:
        return False
    return True


def check_orientation(value):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('Display orientation cannot be empty')
    orientation = value.strip().lower()
    if orientation not in ORIENTATIONS:
        raise ValidationError(f'Invalid orientation: {value} (valid: {" ".join(ORIENTATIONS)})')
    return orientation


def validate_orientation(value):
    try:
        check_orientation(value)
    except ValidationError:
        return False
    return True


def check_api_key(key):
    if not isinstance(key, str) or not key:
        raise ValidationError('API key cannot be empty')
    if len(key) < API_KEY_MIN:
        raise ValidationError(f'API key too short (minimum {API_KEY_MIN} characters)')
    if len(key) > API_KEY_MAX:
        raise ValidationError(f'API key too long (maximum {API_KEY_MAX} characters)')
    if not API_KEY_PATTERN.fullmatch(key):
        raise ValidationError('API key contains invalid characters (only alphanumeric, underscore, hyphen allowed)')
    return key


def validate_api_key(key):
    try:
        check_api_key(key)
    except ValidationError:
        return False
    return True


def check_index(value, length):
    """Return `value` as a playlist index inside [0, length)."""
    if isinstance(value, bool):
        raise ValidationError('Valid URL index required')
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise ValidationError('Valid URL index required')
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise ValidationError('Valid URL index required')
    if value >= length:
        if length == 0:
            raise PlaylistIndexError(f'Index {value} out of range (playlist is empty)')
        raise PlaylistIndexError(f'Index {value} out of range (0-{length - 1})')
    return value


def generate_api_key(length=32):
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))
