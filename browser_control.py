#!/usr/bin/env python3
"""
Client for the browser's remote-debugging interface (DevTools protocol).

HTTP endpoints on the debugging port list, open, close and activate tabs;
each page also exposes a WebSocket for structured commands such as
Page.navigate. Every call is bounded by a short timeout and failures are
raised as BrowserControlError so callers can move on to another approach.
"""

import json
from urllib.parse import quote

import requests
import websocket

from common import DEBUG_PORT
from errors import BrowserControlError

HTTP_TIMEOUT = 5
PROBE_TIMEOUT = 2
CLOSE_TIMEOUT = 2
SOCKET_TIMEOUT = 5


class PageSocket:
    """A page-level DevTools WebSocket connection."""

    def __init__(self, ws, timeout=SOCKET_TIMEOUT):
        self.ws = ws
        self.timeout = timeout
        self._next_id = 0

    def command(self, method, params=None):
        """Send a command and wait for the response with the matching id."""
        self._next_id += 1
        message_id = self._next_id
        payload = {'id': message_id, 'method': method}
        if params:
            payload['params'] = params
        try:
            self.ws.send(json.dumps(payload))
            while True:
                response = json.loads(self.ws.recv())
                # Page events (Page.frameNavigated etc.) arrive interleaved
                if response.get('id') != message_id:
                    continue
                if 'error' in response:
                    raise BrowserControlError(f'{method} failed: {response["error"]}')
                return response.get('result', {})
        except (websocket.WebSocketException, OSError, ValueError) as e:
            raise BrowserControlError(f'{method} failed: {e}') from e

    def close(self):
        try:
            self.ws.close()
        except (websocket.WebSocketException, OSError):
            pass


class DevToolsClient:
    """HTTP/WebSocket client for a browser started with --remote-debugging-port."""

    def __init__(self, port=DEBUG_PORT, host='127.0.0.1', timeout=HTTP_TIMEOUT):
        self.port = port
        self.host = host
        self.timeout = timeout
        self.session = requests.Session()

    @property
    def base_url(self):
        return f'http://{self.host}:{self.port}'

    def _request(self, method, path, timeout=None, **kwargs):
        try:
            r = self.session.request(method, f'{self.base_url}{path}', timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BrowserControlError(f'DevTools request {path} failed: {e}') from e
        return r

    def list_tabs(self):
        """Open page tabs, most recently focused first."""
        r = self._request('GET', '/json/list', timeout=PROBE_TIMEOUT)
        if not r.ok:
            raise BrowserControlError(f'DevTools tab list returned HTTP {r.status_code}')
        try:
            tabs = r.json()
        except ValueError as e:
            raise BrowserControlError(f'DevTools tab list is not JSON: {e}') from e
        if not isinstance(tabs, list):
            raise BrowserControlError('DevTools tab list has unexpected shape')
        return [t for t in tabs
                if isinstance(t, dict) and t.get('id') and t.get('type', 'page') == 'page']

    def is_responsive(self):
        try:
            self.list_tabs()
        except BrowserControlError:
            return False
        return True

    def open_tab(self, url='about:blank'):
        """Create a tab at `url` and return its descriptor."""
        path = f'/json/new?{quote(url, safe="")}'
        r = self._request('PUT', path)
        if r.status_code == 405:
            # Browsers before the PUT requirement only accept GET here
            r = self._request('GET', path)
        if not r.ok:
            raise BrowserControlError(f'DevTools new tab returned HTTP {r.status_code}')
        try:
            tab = r.json()
        except ValueError as e:
            raise BrowserControlError(f'DevTools new tab response is not JSON: {e}') from e
        if not isinstance(tab, dict) or not (tab.get('id') or tab.get('webSocketDebuggerUrl')):
            raise BrowserControlError(f'DevTools new tab response not recognised: {tab!r}')
        return tab

    def close_tab(self, tab_id):
        r = self._request('GET', f'/json/close/{tab_id}', timeout=CLOSE_TIMEOUT)
        if not r.ok:
            raise BrowserControlError(f'DevTools close tab returned HTTP {r.status_code}')

    def activate_tab(self, tab_id):
        r = self._request('GET', f'/json/activate/{tab_id}')
        if not r.ok:
            raise BrowserControlError(f'DevTools activate tab returned HTTP {r.status_code}')

    def evaluate_script(self, expression):
        """Run `expression` through the HTTP scripting endpoint."""
        r = self._request('POST', '/json/runtime/evaluate', json={'expression': expression})
        body = r.text or ''
        if not r.ok or 'error' in body.lower():
            raise BrowserControlError(f'Script evaluation failed (HTTP {r.status_code}): {body[:200]}')
        return body

    def open_socket(self, tab):
        ws_url = tab.get('webSocketDebuggerUrl') or f'ws://{self.host}:{self.port}/devtools/page/{tab.get("id")}'
        try:
            ws = websocket.create_connection(ws_url, timeout=SOCKET_TIMEOUT)
        except (websocket.WebSocketException, OSError) as e:
            raise BrowserControlError(f'DevTools socket {ws_url} failed: {e}') from e
        return PageSocket(ws)
