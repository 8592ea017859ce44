# tests/test_validation.py
import pytest

from errors import PlaylistIndexError, ValidationError
from validation import (
    check_display_time,
    check_index,
    check_orientation,
    generate_api_key,
    validate_api_key,
    validate_display_time,
    validate_url,
)


@pytest.mark.parametrize('url', [
    'http://example.com',
    'https://example.com:8443/dash?x=1',
    'http://10.0.0.5/status',
])
def test_accepts_http_urls(url):
    assert validate_url(url)


@pytest.mark.parametrize('url', [
    '',
    None,
    'not-a-url',
    'example.com',
    'ftp://example.com',
    'javascript:alert(1)',
    'http://example.com/?next=javascript:alert(1)',
    'http://example.com/file:secret',
    'http://exa mple.com',
])
def test_rejects_bad_urls(url):
    assert not validate_url(url)


def test_rejects_overlong_url():
    assert not validate_url('http://example.com/' + 'a' * 2048)


def test_display_time_bounds():
    assert check_display_time(5) == 5
    assert check_display_time('86400') == 86400
    assert check_display_time(60.0) == 60
    for bad in (4, 86401, 0, -10, '12a', '', None, True, 7.5):
        assert not validate_display_time(bad)


def test_display_time_reasons():
    with pytest.raises(ValidationError, match='too short'):
        check_display_time(4)
    with pytest.raises(ValidationError, match='too long'):
        check_display_time(90000)


def test_orientation_is_case_insensitive():
    assert check_orientation('LEFT') == 'left'
    assert check_orientation(' Inverted ') == 'inverted'
    with pytest.raises(ValidationError):
        check_orientation('upside-down')


def test_index_range():
    assert check_index('2', 3) == 2
    with pytest.raises(PlaylistIndexError, match=r'0-2'):
        check_index(5, 3)
    with pytest.raises(ValidationError):
        check_index(-1, 3)
    with pytest.raises(PlaylistIndexError, match='empty'):
        check_index(0, 0)


def test_generated_api_key_is_valid():
    key = generate_api_key()
    assert len(key) == 32
    assert key.isalnum()
    assert validate_api_key(key)
    assert not validate_api_key('short')
    assert not validate_api_key('has spaces in the key value')
