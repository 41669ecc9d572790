import os

import pytest

from chatd.config import HubRuntimeConfig
from chatd.constants import B_HELLO_TOKEN, K_BODY, K_T, T_HELLO
from chatd.envelope import decode, encode, make_envelope
from chatd.service import HubService
from chatd.store import SqliteChatStore


class FakeLink:
    """Stands in for an RNS.Link: records what the hub sends and closes."""

    MDU = 500

    def __init__(self) -> None:
        self.link_id = os.urandom(16)
        self.received: list[dict] = []
        self.torn_down = False

    def teardown(self) -> None:
        self.torn_down = True

    def set_packet_callback(self, cb) -> None:
        pass

    def set_link_closed_callback(self, cb) -> None:
        pass

    def set_resource_strategy(self, strategy) -> None:
        pass

    def set_resource_callback(self, cb) -> None:
        pass

    def set_resource_concluded_callback(self, cb) -> None:
        pass

    def events(self, msg_type: int) -> list:
        return [env.get(K_BODY) for env in self.received if env[K_T] == msg_type]

    def clear(self) -> None:
        self.received.clear()


class FakeTimer:
    def __init__(self, interval, fn, args) -> None:
        self.interval = interval
        self.fn = fn
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fn(*self.args)


class FakeTimers:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, fn, args) -> FakeTimer:
        t = FakeTimer(interval, fn, args)
        self.timers.append(t)
        return t

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]


@pytest.fixture
def store(tmp_path):
    s = SqliteChatStore(str(tmp_path / "chat.sqlite3"))
    yield s
    s.close()


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def hub_config():
    return HubRuntimeConfig(
        jwt_secret="test-secret-0123456789abcdef0123456789", hub_name="testhub"
    )


@pytest.fixture
def hub(hub_config, store, timers, monkeypatch):
    h = HubService(hub_config, store=store, timer_factory=timers)
    monkeypatch.setattr(
        h, "_transmit", lambda link, payload: link.received.append(decode(payload))
    )
    return h


def send_event(hub, link, msg_type, body=None, *, room=None) -> None:
    env = make_envelope(msg_type, src=b"client", room=room, body=body)
    hub._on_packet(link, encode(env))


@pytest.fixture
def send():
    return send_event


@pytest.fixture
def connect(hub):
    def _connect(user) -> FakeLink:
        link = FakeLink()
        hub._on_link(link)
        token = hub.identity_gate.issue_token(user.id)
        send_event(hub, link, T_HELLO, {B_HELLO_TOKEN: token})
        return link

    return _connect


@pytest.fixture
def new_link(hub):
    def _new_link() -> FakeLink:
        link = FakeLink()
        hub._on_link(link)
        return link

    return _new_link
