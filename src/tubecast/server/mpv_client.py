"""mpv JSON IPC client.

Communicates with mpv via its Unix domain socket using the JSON IPC protocol.
A reader thread owns the receiving side of the socket: replies are routed to
the request waiting for them (matched by request_id) and asynchronous event
messages are handed to the on_event callback.
Ref: https://mpv.io/manual/master/#json-ipc
"""

import json
import logging
import queue
import socket
import threading
from typing import Callable

from tubecast.player.errors import BackendError

logger = logging.getLogger(__name__)


class MPVError(BackendError):
    """Error communicating with mpv."""


class MPVClient:
    """Client for mpv's JSON IPC protocol over Unix socket.

    Usage:
        client = MPVClient("/tmp/tubecast-mpv", on_event=print)
        client.connect()
        client.observe_property("pause")
        client.set_property("pause", True)
        pos = client.get_property("time-pos")
        client.command("quit")
    """

    def __init__(
        self,
        socket_path: str = "/tmp/tubecast-mpv",
        on_event: Callable[[dict], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ):
        self.socket_path = socket_path
        self.on_event = on_event
        self.on_disconnect = on_disconnect
        self._sock: socket.socket | None = None
        self._reader: threading.Thread | None = None
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._request_id = 0
        self._pending: dict[int, queue.Queue] = {}

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, timeout: float = 5.0) -> bool:
        """Connect to the mpv IPC socket and start the reader thread.

        Returns True if connected, False if socket doesn't exist yet.
        """
        with self._lock:
            if self._sock is not None:
                return True
            try:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(timeout)
                sock.connect(self.socket_path)
                sock.settimeout(None)
            except (FileNotFoundError, ConnectionRefusedError):
                logger.debug("mpv socket not available at %s", self.socket_path)
                return False
            except OSError as e:
                logger.warning("Failed to connect to mpv: %s", e)
                return False
            self._sock = sock
            self._reader = threading.Thread(
                target=self._read_loop, args=(sock,), daemon=True, name="mpv-reader",
            )
            self._reader.start()
            logger.info("Connected to mpv at %s", self.socket_path)
            return True

    def disconnect(self):
        """Close the connection."""
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError:
            pass

    def _read_loop(self, sock: socket.socket):
        """Read newline-delimited JSON messages until the socket closes."""
        buffer = b""
        try:
            while True:
                try:
                    chunk = sock.recv(4096)
                except OSError:
                    break
                if not chunk:
                    break
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if line.strip():
                        self._dispatch(line)
        finally:
            with self._lock:
                if self._sock is sock:
                    self._sock = None
            self._fail_pending()
            logger.info("mpv IPC connection closed")
            if self.on_disconnect:
                self.on_disconnect()

    def _dispatch(self, line: bytes):
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed mpv message: %r", line[:200])
            return

        if "event" in msg:
            if self.on_event:
                try:
                    self.on_event(msg)
                except Exception:
                    logger.exception("mpv event handler failed for %s", msg.get("event"))
            return

        waiter = self._pending.pop(msg.get("request_id"), None)
        if waiter is not None:
            waiter.put(msg)

    def _fail_pending(self):
        pending, self._pending = self._pending, {}
        for waiter in pending.values():
            waiter.put(None)

    def _send(self, data: dict, timeout: float = 5.0) -> dict | None:
        """Send a JSON command and wait for the response."""
        if not self._sock and not self.connect():
            return None

        waiter: queue.Queue = queue.Queue(maxsize=1)
        with self._send_lock:
            self._request_id += 1
            request_id = self._request_id
            data["request_id"] = request_id
            self._pending[request_id] = waiter
            msg = json.dumps(data) + "\n"
            sock = self._sock
            try:
                if sock is None:
                    raise OSError("not connected")
                sock.sendall(msg.encode("utf-8"))
            except OSError:
                self._pending.pop(request_id, None)
                self.disconnect()
                return None

        try:
            return waiter.get(timeout=timeout)
        except queue.Empty:
            self._pending.pop(request_id, None)
            logger.warning("mpv did not answer %s within %.1fs", data.get("command"), timeout)
            return None

    def command(self, *args) -> dict | None:
        """Send a command to mpv.

        Examples:
            client.command("quit")
            client.command("seek", 10, "absolute")
            client.command("loadfile", "https://...", "replace")
        """
        return self._send({"command": list(args)})

    def get_property(self, name: str, default=None):
        """Get an mpv property value.

        Common properties:
            time-pos     - Current position in seconds
            volume       - Volume (0-100)
            pause        - Whether paused (bool)
            idle-active  - Whether mpv is idle (not playing)
        """
        resp = self._send({"command": ["get_property", name]})
        if resp and resp.get("error") == "success":
            return resp.get("data")
        return default

    def set_property(self, name: str, value) -> bool:
        """Set an mpv property value."""
        resp = self._send({"command": ["set_property", name, value]})
        return resp is not None and resp.get("error") == "success"

    def observe_property(self, name: str, observer_id: int = 1) -> bool:
        """Ask mpv to send property-change events for a property."""
        resp = self.command("observe_property", observer_id, name)
        return resp is not None and resp.get("error") == "success"

    def play(self, url: str, start: float = 0, volume: int | None = None) -> bool:
        """Load and play a URL, replacing whatever is loaded.

        The index argument (-1) is required by mpv v0.38+ before options.
        """
        options = [f"start={start:.3f}"]
        if volume is not None:
            options.append(f"volume={volume}")
        resp = self.command("loadfile", url, "replace", -1, ",".join(options))
        return resp is not None and resp.get("error") == "success"

    def pause(self) -> bool:
        return self.set_property("pause", True)

    def resume(self) -> bool:
        return self.set_property("pause", False)

    def stop(self) -> bool:
        resp = self.command("stop")
        return resp is not None and resp.get("error") == "success"

    def seek(self, seconds: float, mode: str = "absolute") -> bool:
        """Seek to position.

        mode: "absolute" (default), "relative", "absolute-percent"
        """
        resp = self.command("seek", seconds, mode)
        return resp is not None and resp.get("error") == "success"

    def set_volume(self, level: int) -> bool:
        """Set volume (0-100)."""
        level = max(0, min(100, level))
        return self.set_property("volume", level)

    def quit(self) -> bool:
        """Tell mpv to exit."""
        resp = self.command("quit")
        self.disconnect()
        return resp is not None
