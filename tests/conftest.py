import json
from urllib.parse import urlsplit

import pytest
import requests
from eth_utils import to_checksum_address

from ups_x402.core.events import EventBus
from ups_x402.core.signer import LocalAccountProvider, WalletModule

PRIVATE_KEY = "0x" + "1" * 64
OTHER_KEY = "0x" + "2" * 64
ASSET = to_checksum_address("0x036CbD53842c5426634e7929541eC2318f3dCF7e")
PAY_TO = to_checksum_address("0x209693Bc6afc0C5328bA36FaF03C514EF312287C")


def make_response(status=200, payload=None, *, headers=None, text=None):
    response = requests.Response()
    response.status_code = status
    if text is not None:
        response._content = text.encode("utf-8")
    elif payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = b""
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class StubSession:
    """
    Stand-in for ``requests.Session``.

    ``handler`` is either a list of responses (or exceptions) consumed in
    order, or a callable ``handler(method, path, call)``.
    """

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        call = dict(kwargs, method=method, url=url, path=urlsplit(url).path)
        self.calls.append(call)
        if callable(self.handler):
            result = self.handler(method, call["path"], call)
        else:
            result = self.handler.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        self.closed = True

    def paths(self):
        return [call["path"] for call in self.calls]


class FakeTimer:
    def __init__(self, delay, function):
        self.delay = delay
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


class TimerRecorder:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, function):
        timer = FakeTimer(delay, function)
        self.timers.append(timer)
        return timer

    @property
    def live(self):
        return [timer for timer in self.timers if not timer.cancelled]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sleep(sleeps):
    return sleeps.append


@pytest.fixture
def timers():
    return TimerRecorder()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def provider():
    return LocalAccountProvider(PRIVATE_KEY, chain_id=8453)


@pytest.fixture
def wallet(events, provider):
    module = WalletModule(events)
    module.connect(provider)
    return module
