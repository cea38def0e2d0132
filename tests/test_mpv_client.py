"""Tests for MPVClient.

Disconnected behaviour needs no mpv at all. The rest runs against a small
fake mpv that speaks the JSON IPC protocol on a Unix socket.
"""

import json
import os
import queue
import shutil
import socket
import tempfile
import threading

import pytest

from conftest import TIMEOUT, wait_for
from tubecast.server.mpv_client import MPVClient


class FakeMPV:
    """Accepts one client and answers commands like mpv would."""

    def __init__(self, path: str):
        self.path = path
        self.received: list[dict] = []
        self.properties = {"volume": 65.0, "pause": False}
        self.silent = False
        self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._server.bind(path)
        self._server.listen(1)
        self._conn: socket.socket | None = None
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _ = self._server.accept()
        except OSError:
            return
        self._conn = conn
        buffer = b""
        while True:
            try:
                chunk = conn.recv(4096)
            except OSError:
                return
            if not chunk:
                return
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                self._answer(json.loads(line))

    def _answer(self, msg: dict):
        self.received.append(msg)
        if self.silent:
            return
        cmd = msg["command"]
        reply = {"request_id": msg["request_id"], "error": "success"}
        if cmd[0] == "get_property":
            if cmd[1] in self.properties:
                reply["data"] = self.properties[cmd[1]]
            else:
                reply["error"] = "property unavailable"
        elif cmd[0] == "set_property":
            self.properties[cmd[1]] = cmd[2]
        self.send(reply)

    def send(self, msg: dict):
        self._conn.sendall((json.dumps(msg) + "\n").encode())

    def hang_up(self):
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def close(self):
        self.hang_up()
        self._server.close()


@pytest.fixture
def socket_path():
    # Unix socket paths are length-limited, so keep this short
    directory = tempfile.mkdtemp(prefix="tc-", dir="/tmp")
    yield os.path.join(directory, "mpv")
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def mpv(socket_path):
    server = FakeMPV(socket_path)
    yield server
    server.close()


@pytest.fixture
def events():
    return queue.Queue()


@pytest.fixture
def mpv_client(mpv, events):
    disconnected = threading.Event()
    client = MPVClient(mpv.path, on_event=events.put, on_disconnect=disconnected.set)
    client.disconnected = disconnected
    assert client.connect(timeout=1)
    assert wait_for(lambda: mpv._conn is not None)
    yield client
    client.disconnect()


class TestDisconnected:
    def test_not_connected_by_default(self):
        client = MPVClient("/tmp/nonexistent-test-socket")
        assert client.connected is False

    def test_connect_fails_gracefully(self):
        client = MPVClient("/tmp/nonexistent-test-socket")
        assert client.connect(timeout=0.1) is False
        assert client.connected is False

    def test_get_property_returns_default(self):
        client = MPVClient("/tmp/nonexistent-test-socket")
        assert client.get_property("volume", 100) == 100
        assert client.get_property("pause", False) is False

    def test_disconnect_when_not_connected(self):
        MPVClient("/tmp/nonexistent-test-socket").disconnect()

    def test_commands_return_false(self):
        client = MPVClient("/tmp/nonexistent-test-socket")
        assert client.pause() is False
        assert client.resume() is False
        assert client.stop() is False
        assert client.play("https://stream.test/x") is False
        assert client.command("quit") is None


class TestConnected:
    def test_get_property(self, mpv_client):
        assert mpv_client.get_property("volume") == 65.0
        assert mpv_client.get_property("time-pos", -1) == -1

    def test_set_property(self, mpv_client, mpv):
        assert mpv_client.set_property("pause", True) is True
        assert mpv.properties["pause"] is True

    def test_request_ids_increase(self, mpv_client, mpv):
        mpv_client.pause()
        mpv_client.resume()
        ids = [m["request_id"] for m in mpv.received]
        assert ids == sorted(ids)
        assert len(set(ids)) == 2

    def test_play_builds_loadfile(self, mpv_client, mpv):
        assert mpv_client.play("https://stream.test/a", start=12.5, volume=40) is True
        assert mpv.received[-1]["command"] == [
            "loadfile", "https://stream.test/a", "replace", -1, "start=12.500,volume=40",
        ]

    def test_play_without_volume(self, mpv_client, mpv):
        mpv_client.play("https://stream.test/a")
        assert mpv.received[-1]["command"][-1] == "start=0.000"

    def test_seek_and_volume(self, mpv_client, mpv):
        mpv_client.seek(42)
        assert mpv.received[-1]["command"] == ["seek", 42, "absolute"]
        mpv_client.set_volume(250)
        assert mpv.received[-1]["command"] == ["set_property", "volume", 100]

    def test_observe_property(self, mpv_client, mpv):
        assert mpv_client.observe_property("pause") is True
        assert mpv.received[-1]["command"] == ["observe_property", 1, "pause"]

    def test_events_go_to_callback(self, mpv_client, mpv, events):
        mpv.send({"event": "playback-restart"})
        mpv.send({"event": "property-change", "id": 1, "name": "pause", "data": True})
        assert events.get(timeout=TIMEOUT) == {"event": "playback-restart"}
        assert events.get(timeout=TIMEOUT)["data"] is True

    def test_events_between_replies(self, mpv_client, mpv, events):
        # An event arriving before a reply must not be taken for the reply
        mpv.silent = True
        result = {}
        t = threading.Thread(target=lambda: result.update(v=mpv_client.get_property("volume")))
        t.start()
        assert wait_for(lambda: mpv.received)
        request_id = mpv.received[-1]["request_id"]
        mpv.send({"event": "end-file", "reason": "eof"})
        mpv.send({"request_id": request_id, "error": "success", "data": 12.0})
        t.join(TIMEOUT)
        assert result["v"] == 12.0
        assert events.get(timeout=TIMEOUT)["event"] == "end-file"

    def test_unanswered_request_times_out(self, mpv_client, mpv):
        mpv.silent = True
        assert mpv_client._send({"command": ["get_property", "volume"]}, timeout=0.1) is None
        assert mpv_client._pending == {}

    def test_malformed_lines_are_ignored(self, mpv_client, mpv):
        mpv._conn.sendall(b"not json\n")
        assert mpv_client.get_property("volume") == 65.0


class TestDisconnect:
    def test_hang_up_notifies(self, mpv_client, mpv):
        mpv.hang_up()
        assert mpv_client.disconnected.wait(TIMEOUT)
        assert wait_for(lambda: not mpv_client.connected)

    def test_hang_up_releases_waiting_request(self, mpv_client, mpv):
        mpv.silent = True
        result = {}

        def ask():
            result["v"] = mpv_client.get_property("volume", "default")

        t = threading.Thread(target=ask)
        t.start()
        assert wait_for(lambda: mpv.received)
        mpv.hang_up()
        t.join(TIMEOUT)
        assert result["v"] == "default"

    def test_quit_disconnects(self, mpv_client, mpv):
        assert mpv_client.quit() is True
        assert mpv.received[-1]["command"] == ["quit"]
        assert mpv_client.connected is False
