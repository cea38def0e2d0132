"""Shared test fixtures for the tubecast test suite.

The coordinator runs for real (threads and all) against a scripted backend
and resolver, so tests can play the part of mpv and yt-dlp.
"""

import queue
import threading
import time

import pytest

from tubecast.config import Config, ServerConfig
from tubecast.player import Player, State
from tubecast.server.app import create_app
from tubecast.server.backend import Backend
from tubecast.server.events import EventBus

TIMEOUT = 2.0


def wait_for(condition, timeout: float = TIMEOUT) -> bool:
    """Poll condition until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class FakeBackend(Backend):
    """Records commands; tests push backend events with emit()."""

    def __init__(self, initial_volume: int = 80):
        self.events: queue.Queue = queue.Queue()
        self.initial_volume = initial_volume
        self.calls: list[tuple] = []
        self.position = 0.0

    def initialize(self):
        return self.events, self.initial_volume

    def emit(self, state: State):
        self.events.put(state)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def plays(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "play"]

    def play(self, url, position, volume=None):
        self.position = position
        self.calls.append(("play", url, position, volume))

    def pause(self):
        self.calls.append(("pause",))

    def resume(self):
        self.calls.append(("resume",))

    def stop(self):
        self.calls.append(("stop",))

    def set_position(self, position):
        self.position = position
        self.calls.append(("set_position", position))

    def set_volume(self, volume):
        self.calls.append(("set_volume", volume))

    def get_position(self):
        return self.position

    def quit(self):
        self.calls.append(("quit",))
        self.events.put(None)


class FakeResolver:
    """Resolves every id to a fake URL unless told otherwise.

    hold(video_id) makes resolution of that id block until the returned
    event is set.
    """

    def __init__(self):
        self.urls: dict[str, str] = {}
        self.calls: list[str] = []
        self._gates: dict[str, threading.Event] = {}
        self.closed = False

    def hold(self, video_id: str) -> threading.Event:
        gate = threading.Event()
        self._gates[video_id] = gate
        return gate

    def resolve(self, video_id: str) -> str:
        self.calls.append(video_id)
        gate = self._gates.get(video_id)
        if gate is not None:
            gate.wait(5)
        return self.urls.get(video_id, f"https://stream.test/{video_id}")

    def quit(self):
        self.closed = True


class Harness:
    """Drives a running Player and watches what it publishes."""

    def __init__(self, player: Player, backend: FakeBackend, resolver: FakeResolver, bus: EventBus):
        self.player = player
        self.backend = backend
        self.resolver = resolver
        self.bus = bus
        self.events = bus.subscribe()

    def next_event(self, timeout: float = TIMEOUT):
        return self.events.get(timeout=timeout)

    def next_state(self, timeout: float = TIMEOUT) -> dict:
        """Return the next state event, skipping other event types."""
        while True:
            event = self.next_event(timeout)
            assert event is not None, "event bus closed"
            if event["type"] == "state":
                return event

    def expect(self, state: State, position: float | None = None) -> dict:
        event = self.next_state()
        assert event["state"] == state.value, event
        if position is not None:
            assert event["position"] == pytest.approx(position), event
        return event

    def no_events(self) -> bool:
        return self.events.empty()

    def snapshot(self):
        slot = queue.Queue(maxsize=1)
        self.player.query_playlist(slot)
        return slot.get(timeout=TIMEOUT)

    def volume(self) -> int:
        slot = queue.Queue(maxsize=1)
        self.player.query_volume(slot)
        return slot.get(timeout=TIMEOUT)

    def settle(self):
        """Let pending backend events reach the loop and be handled."""
        wait_for(self.backend.events.empty)
        time.sleep(0.05)
        self.snapshot()

    def wait_plays(self, count: int) -> tuple:
        assert wait_for(lambda: len(self.backend.plays()) >= count), self.backend.calls
        return self.backend.plays()[count - 1]

    def start(self, playlist: list[str], index: int = 0, position: float = 0.0):
        """Set a playlist and drive it to PLAYING."""
        plays = len(self.backend.plays())
        self.player.set_playlist(playlist, index, position)
        self.expect(State.BUFFERING, position)
        self.wait_plays(plays + 1)
        self.backend.emit(State.PLAYING)
        self.expect(State.PLAYING, position)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def player(backend, resolver, bus):
    """A started Player with no prefetch delay."""
    p = Player(backend, resolver, bus, prefetch_delay=0)
    p.start()
    yield p
    p.quit()
    p.join(TIMEOUT)


@pytest.fixture
def harness(player, backend, resolver, bus):
    return Harness(player, backend, resolver, bus)


@pytest.fixture
def app(player):
    """Flask app wired to the fake-backed player."""
    config = Config(server=ServerConfig(query_timeout=1.0, sse_heartbeat=0.05))
    app = create_app(config, player=player)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
