"""
Navigate the running browser to a URL without restarting it.

Approaches are tried in order until one reports success:

1. open a new tab at the URL, then close the previous tab
2. activate the current tab and set window.location via the scripting endpoint
3. open a blank tab and drive it over its page socket (Page.navigate),
   posting a location-change script when the socket cannot be used
4. relaunch the browser with the URL as its start page

If the tab list cannot be read, or is empty, only the relaunch is attempted.
A tab is closed only after its replacement has been confirmed.
"""

import json
import time
from collections import namedtuple

from common import log
from errors import BrowserControlError, ValidationError
from validation import check_url

Outcome = namedtuple('Outcome', ['success', 'method', 'detail'])


def location_script(url):
    return f'window.location.href = {json.dumps(url)};'


class NewTabStrategy:
    name = 'new-tab'
    requires_tabs = True

    def __init__(self, client):
        self.client = client

    def attempt(self, url, tabs):
        previous = tabs[0]
        new_tab = self.client.open_tab(url)
        log(f'Opened tab {new_tab.get("id")} at {url}', 'debug')
        _close_quietly(self.client, previous, new_tab)
        return Outcome(True, self.name, new_tab.get('id'))


class ScriptStrategy:
    name = 'script'
    requires_tabs = True

    def __init__(self, client, settle=0.2, sleep=time.sleep):
        self.client = client
        self.settle = settle
        self.sleep = sleep

    def attempt(self, url, tabs):
        tab = tabs[0]
        self.client.activate_tab(tab['id'])
        self.sleep(self.settle)
        self.client.evaluate_script(location_script(url))
        return Outcome(True, self.name, tab['id'])


class SocketStrategy:
    name = 'socket'
    requires_tabs = True

    def __init__(self, client, settle=0.5, sleep=time.sleep):
        self.client = client
        self.settle = settle
        self.sleep = sleep

    def attempt(self, url, tabs):
        previous = tabs[0]
        blank = self.client.open_tab('about:blank')
        _close_quietly(self.client, previous, blank)
        try:
            page = self.client.open_socket(blank)
        except BrowserControlError as e:
            log(f'Page socket unavailable ({e}), trying HTTP script fallback', 'debug')
            self.sleep(self.settle)
            self.client.evaluate_script(location_script(url))
            return Outcome(True, f'{self.name}-http', blank.get('id'))
        try:
            page.command('Page.enable')
            page.command('Page.navigate', {'url': url})
        except BrowserControlError as e:
            log(f'Page socket navigation failed ({e}), trying HTTP script fallback', 'debug')
            self.sleep(self.settle)
            self.client.evaluate_script(location_script(url))
            return Outcome(True, f'{self.name}-http', blank.get('id'))
        finally:
            page.close()
        return Outcome(True, self.name, blank.get('id'))


class RelaunchStrategy:
    name = 'relaunch'
    requires_tabs = False

    def __init__(self, supervisor):
        self.supervisor = supervisor

    def attempt(self, url, tabs):
        log('Could not navigate via DevTools, restarting browser', 'warn')
        if self.supervisor.launch(url):
            return Outcome(True, self.name, None)
        return Outcome(False, self.name, 'browser relaunch failed')


def _close_quietly(client, previous, replacement):
    """Close `previous` once `replacement` is known to exist."""
    if not previous or previous.get('id') == replacement.get('id'):
        return
    try:
        client.close_tab(previous['id'])
        log(f'Closed old tab {previous["id"]}', 'debug')
    except BrowserControlError as e:
        log(f'Could not close old tab {previous.get("id")}: {e}', 'debug')


class Navigator:
    def __init__(self, client, strategies):
        self.client = client
        self.strategies = list(strategies)

    @classmethod
    def default(cls, client, supervisor):
        return cls(client, [
            NewTabStrategy(client),
            ScriptStrategy(client),
            SocketStrategy(client),
            RelaunchStrategy(supervisor),
        ])

    def navigate(self, url):
        try:
            check_url(url)
        except ValidationError as e:
            log(f'Invalid URL for navigation: {e}', 'error')
            return Outcome(False, None, str(e))

        try:
            tabs = self.client.list_tabs()
        except BrowserControlError as e:
            log(f'DevTools not accessible: {e}', 'warn')
            tabs = []
        if not tabs:
            log('Could not get tab information from DevTools', 'warn')

        for strategy in self.strategies:
            if strategy.requires_tabs and not tabs:
                continue
            try:
                outcome = strategy.attempt(url, tabs)
            except BrowserControlError as e:
                log(f'Navigation via {strategy.name} failed: {e}', 'debug')
                continue
            if outcome.success:
                log(f'Successfully navigated browser to: {url} ({outcome.method})')
                return outcome
            log(f'Navigation via {strategy.name} failed: {outcome.detail}', 'debug')

        log(f'All navigation methods failed for: {url}', 'warn')
        return Outcome(False, None, 'all navigation methods failed')

    def __call__(self, url):
        return self.navigate(url).success
