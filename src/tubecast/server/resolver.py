"""Stream resolution via yt-dlp.

Maps a YouTube video id to a direct, playable stream URL. Resolution is slow
(several seconds, much longer on a Pi), so results are cached until shortly
before YouTube expires them, and concurrent requests for the same id share
one yt-dlp run. That is what makes prefetching the next track worthwhile.
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

if TYPE_CHECKING:
    from tubecast.config import PlayerConfig

logger = logging.getLogger(__name__)

_YT_VIDEO_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{11}$")


def extract_video_id(url: str) -> str | None:
    """Extract YouTube video ID from URL via string parsing (no API calls).

    Handles youtube.com/watch?v=, music.youtube.com/watch?v=, youtu.be/,
    youtube.com/shorts/, /embed/, /live/.
    Returns None for non-YouTube URLs.
    """
    try:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
    except ValueError:
        return None

    if "youtu.be" in host:
        vid = parsed.path.lstrip("/").split("/")[0]
        return vid if vid else None

    if "youtube.com" in host or "youtube-nocookie.com" in host:
        if parsed.path == "/watch":
            ids = parse_qs(parsed.query).get("v", [])
            return ids[0] if ids else None
        for prefix in ("/shorts/", "/embed/", "/live/"):
            if parsed.path.startswith(prefix):
                vid = parsed.path[len(prefix):].split("/")[0]
                return vid if vid else None

    return None


def normalize_video_id(raw: str) -> str | None:
    """Accept a bare video id or any YouTube URL form, return the id."""
    raw = (raw or "").strip()
    if _YT_VIDEO_ID_RE.match(raw):
        return raw
    vid = extract_video_id(raw)
    if vid and _YT_VIDEO_ID_RE.match(vid):
        return vid
    return None


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


@dataclass
class _Lookup:
    """One in-flight yt-dlp run that several callers may wait on."""

    done: threading.Event
    url: str = ""


class StreamResolver:
    """Resolve video ids to stream URLs with yt-dlp.

    Usage:
        resolver = StreamResolver(config)
        url = resolver.resolve("dQw4w9WgXcQ")   # "" on failure
        resolver.quit()
    """

    def __init__(self, config: "PlayerConfig | None" = None):
        self._config = config
        self.ytdl_format = config.ytdl_format if config else "best"
        self.timeout = config.ytdl_timeout if config else 120.0
        self.cache_ttl = config.stream_cache_ttl if config else 3600.0
        self._cache: dict[str, tuple[str, float]] = {}
        self._inflight: dict[str, _Lookup] = {}
        self._processes: set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._closed = False

    def _auth_args(self) -> list[str]:
        """Get yt-dlp auth arguments from config."""
        if self._config:
            from tubecast.config import ytdl_auth_args
            return ytdl_auth_args(self._config)
        return []

    def resolve(self, video_id: str) -> str:
        """Return a stream URL for video_id, or "" if it cannot be played."""
        with self._lock:
            if self._closed:
                return ""
            cached = self._cache.get(video_id)
            if cached and cached[1] > time.monotonic():
                logger.debug("Stream cache hit: %s", video_id)
                return cached[0]
            lookup = self._inflight.get(video_id)
            owner = lookup is None
            if owner:
                lookup = _Lookup(done=threading.Event())
                self._inflight[video_id] = lookup

        if not owner:
            lookup.done.wait()
            return lookup.url

        try:
            lookup.url = self._run_ytdl(video_id)
        finally:
            with self._lock:
                self._inflight.pop(video_id, None)
                if lookup.url:
                    self._cache[video_id] = (lookup.url, time.monotonic() + self.cache_ttl)
            lookup.done.set()
        return lookup.url

    def _run_ytdl(self, video_id: str) -> str:
        cmd = [
            "yt-dlp", "-g", "-f", self.ytdl_format, "--no-warnings",
            *self._auth_args(), watch_url(video_id),
        ]
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            )
        except (FileNotFoundError, OSError) as e:
            logger.warning("Failed to run yt-dlp: %s", e)
            return ""

        with self._lock:
            self._processes.add(proc)
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            logger.warning("yt-dlp timed out after %.0fs for %s", self.timeout, video_id)
            return ""
        finally:
            with self._lock:
                self._processes.discard(proc)

        if proc.returncode != 0:
            if not self._closed:
                logger.warning("yt-dlp failed for %s: %s", video_id, stderr.strip()[-200:])
            return ""

        urls = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not urls:
            logger.warning("yt-dlp returned no URL for %s", video_id)
            return ""
        if len(urls) > 1:
            logger.warning(
                "Format %r gives separate audio/video streams for %s; playing video only",
                self.ytdl_format, video_id,
            )
        logger.info("Resolved %s in %.1fs", video_id, time.monotonic() - started)
        return urls[0]

    def quit(self):
        """Stop resolving: kill running yt-dlp processes, refuse new work."""
        with self._lock:
            self._closed = True
            processes = list(self._processes)
            self._cache.clear()
        for proc in processes:
            if proc.poll() is None:
                proc.terminate()
        logger.info("Stream resolver stopped")
