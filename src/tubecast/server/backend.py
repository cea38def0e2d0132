"""Playback backends.

A backend decodes and renders one stream at a time and reports what it is
doing through an event queue. The coordinator is its only caller; it issues
commands from its control loop and reads the event queue from a forwarding
thread.

MPVBackend runs mpv in idle mode and drives it over JSON IPC. Includes the
Wayland auto-detection and HDMI audio routing needed on a Raspberry Pi.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from typing import TYPE_CHECKING

from tubecast.player.state import State
from tubecast.server.mpv_client import MPVClient, MPVError

if TYPE_CHECKING:
    from tubecast.config import PlayerConfig

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 80
CONNECT_ATTEMPTS = 20  # x 0.5s


class Backend:
    """Contract every playback backend implements.

    initialize() starts the backend and returns (events, initial_volume).
    events yields State.PLAYING, State.PAUSED and State.STOPPED as the
    backend changes state, then None once the backend has terminated.
    A completed seek is reported as State.PLAYING, even while paused.
    """

    def initialize(self) -> tuple[queue.Queue, int]:
        raise NotImplementedError

    def play(self, url: str, position: float, volume: int | None = None):
        """Start playing url at position. volume None leaves it unchanged."""
        raise NotImplementedError

    def pause(self):
        raise NotImplementedError

    def resume(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def set_position(self, position: float):
        raise NotImplementedError

    def set_volume(self, volume: int):
        raise NotImplementedError

    def get_position(self) -> float:
        """Return the playback position in seconds.

        Only meaningful while playing or paused. Raises BackendError when
        the backend cannot tell.
        """
        raise NotImplementedError

    def quit(self):
        raise NotImplementedError


def detect_wayland() -> str | None:
    """Auto-detect Wayland display socket.

    Checks XDG_RUNTIME_DIR for wayland-* sockets. Returns the socket name
    (e.g. 'wayland-0') or None if not found.
    """
    if os.environ.get("WAYLAND_DISPLAY"):
        return os.environ["WAYLAND_DISPLAY"]

    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    try:
        for entry in sorted(os.listdir(runtime_dir)):
            if entry.startswith("wayland-") and not entry.endswith(".lock"):
                logger.info("Auto-detected Wayland: %s", entry)
                return entry
    except (FileNotFoundError, PermissionError):
        pass

    logger.debug("No Wayland display found")
    return None


def detect_hdmi_audio() -> str | None:
    """Detect HDMI audio device for ALSA direct output.

    Returns an ALSA device string like 'alsa/hdmi:CARD=vc4hdmi,DEV=0' if
    found, otherwise None (mpv will use its default audio output).
    """
    try:
        result = subprocess.run(
            ["aplay", "-l"],
            capture_output=True, text=True, timeout=5,
        )
        if "vc4hdmi" in result.stdout:
            logger.info("Detected HDMI audio: vc4hdmi")
            return "alsa/hdmi:CARD=vc4hdmi,DEV=0"
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        pass
    return None


class MPVBackend(Backend):
    """Backend driving a long-lived idle mpv process.

    mpv events are translated as follows:
        playback-restart          -> PLAYING (stream started or seek done)
        pause property change     -> PAUSED / PLAYING, only with a file loaded
        end-file                  -> STOPPED, only with a file loaded
        IPC closed / mpv exited   -> None
    """

    def __init__(self, config: "PlayerConfig | None" = None):
        self._config = config
        socket_path = config.mpv_socket if config else "/tmp/tubecast-mpv"
        self.mpv = MPVClient(
            socket_path, on_event=self._on_mpv_event, on_disconnect=self._on_disconnect,
        )
        self._events: queue.Queue = queue.Queue()
        self._process: subprocess.Popen | None = None
        self._loaded = False
        self._paused = False
        self._terminated = threading.Event()

    @property
    def connected(self) -> bool:
        return self.mpv.connected

    def _build_command(self) -> list[str]:
        hwdec = self._config.mpv_hwdec if self._config else "auto"
        cmd = [
            "mpv",
            f"--input-ipc-server={self.mpv.socket_path}",
            f"--hwdec={hwdec}",
            "--idle=yes",
            "--force-window=immediate",
            "--keep-open=no",
            "--cache=yes",
            "--demuxer-max-bytes=50MiB",
            "--osc=no",
            "--no-terminal",
            # Stream URLs come pre-resolved; do not let mpv call yt-dlp again.
            "--ytdl=no",
        ]
        if self._config is None or self._config.mpv_fullscreen:
            cmd.append("--fullscreen")
        audio_device = detect_hdmi_audio()
        if audio_device:
            cmd.append(f"--audio-device={audio_device}")
        return cmd

    def _cleanup_stale_mpv(self):
        """Kill an orphaned mpv holding our socket and remove the socket.

        When the server restarts while mpv is playing, the old mpv becomes an
        orphan that holds the display and the IPC socket.
        """
        socket_path = self.mpv.socket_path
        try:
            result = subprocess.run(
                ["pgrep", "-f", f"input-ipc-server={socket_path}"],
                capture_output=True, text=True, timeout=5,
            )
            if result.returncode == 0:
                for pid in result.stdout.split():
                    try:
                        os.kill(int(pid), signal.SIGTERM)
                        logger.info("Killed orphaned mpv process: %s", pid)
                    except (ProcessLookupError, ValueError):
                        pass
                time.sleep(1)
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
            pass

        if os.path.exists(socket_path):
            try:
                os.remove(socket_path)
                logger.info("Removed stale mpv socket: %s", socket_path)
            except OSError:
                pass

    def initialize(self) -> tuple[queue.Queue, int]:
        self._cleanup_stale_mpv()

        env = os.environ.copy()
        wayland = detect_wayland()
        if wayland:
            env["WAYLAND_DISPLAY"] = wayland
            env.setdefault("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")

        try:
            self._process = subprocess.Popen(
                self._build_command(),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=env,
            )
        except FileNotFoundError:
            raise MPVError("mpv not found. Install it: sudo apt install mpv") from None
        except OSError as e:
            raise MPVError(f"Failed to start mpv: {e}") from e

        # Wait for mpv IPC socket (a Pi needs 2-4s to create it)
        for _ in range(CONNECT_ATTEMPTS):
            if self.mpv.connect():
                break
            if self._process.poll() is not None:
                raise MPVError(f"mpv exited early with code {self._process.returncode}")
            time.sleep(0.5)
        else:
            self._process.kill()
            raise MPVError("Failed to connect to mpv IPC after 10s")

        self.mpv.observe_property("pause")
        fallback = self._config.initial_volume if self._config else DEFAULT_VOLUME
        volume = self.mpv.get_property("volume", fallback)
        threading.Thread(target=self._watch_process, daemon=True, name="mpv-watch").start()
        logger.info("mpv backend ready (volume %s)", volume)
        return self._events, int(round(volume))

    def _watch_process(self):
        code = self._process.wait()
        logger.info("mpv exited with code %s", code)
        self._terminate()

    def _terminate(self):
        if not self._terminated.is_set():
            self._terminated.set()
            self._events.put(None)

    def _on_disconnect(self):
        self._terminate()

    def _on_mpv_event(self, msg: dict):
        event = msg.get("event")
        if event == "playback-restart":
            self._loaded = True
            self._events.put(State.PLAYING)
        elif event == "property-change" and msg.get("name") == "pause":
            paused = bool(msg.get("data"))
            changed = paused != self._paused
            self._paused = paused
            if self._loaded and changed:
                self._events.put(State.PAUSED if paused else State.PLAYING)
        elif event == "end-file":
            if self._loaded:
                self._loaded = False
                self._events.put(State.STOPPED)
            if msg.get("reason") == "error":
                logger.warning("mpv failed to play stream: %s", msg.get("file_error", "unknown"))

    def _check(self, ok: bool, what: str):
        if not ok:
            logger.warning("mpv rejected %s", what)

    def play(self, url: str, position: float, volume: int | None = None):
        # The outgoing stream's unpause and end-file are not ours to report.
        self._loaded = False
        self._check(self.mpv.set_property("pause", False), "unpause")
        self._check(self.mpv.play(url, position, volume), "loadfile")

    def pause(self):
        self._check(self.mpv.pause(), "pause")

    def resume(self):
        self._check(self.mpv.resume(), "resume")

    def stop(self):
        self._check(self.mpv.stop(), "stop")

    def set_position(self, position: float):
        self._check(self.mpv.seek(position, "absolute"), f"seek to {position}")

    def set_volume(self, volume: int):
        self._check(self.mpv.set_volume(volume), f"volume {volume}")

    def get_position(self) -> float:
        position = self.mpv.get_property("time-pos")
        if position is None:
            position = self.mpv.get_property("playback-time")
        if position is None:
            raise MPVError("mpv did not report a position")
        return max(0.0, float(position))

    def quit(self):
        if self._process is None:
            self._terminate()
            return
        self.mpv.quit()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
        self._terminate()
