"""Configuration loader for tubecast."""

from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python 3.10 fallback


@dataclass
class ServerConfig:
    """Configuration for the REST remote-control server."""

    host: str = "0.0.0.0"
    port: int = 5050
    query_timeout: float = 5.0           # Seconds to wait for a status answer
    sse_heartbeat: float = 30.0          # Seconds between keep-alive comments on /api/events


@dataclass
class PlayerConfig:
    """Configuration for the playback coordinator and its collaborators."""

    mpv_socket: str = "/tmp/tubecast-mpv"
    mpv_hwdec: str = "auto"
    mpv_fullscreen: bool = True
    initial_volume: int = 80             # Used if mpv does not report one
    prefetch_delay: float = 10.0         # Seconds a track plays before the next is prefetched
    ytdl_format: str = "best[height<=720][vcodec^=avc]/best[height<=720]/best"
    ytdl_timeout: float = 120.0
    stream_cache_ttl: float = 3600.0     # Resolved stream URLs expire upstream
    ytdl_cookies_from_browser: str = ""  # e.g. "chromium"
    ytdl_po_token: str = ""              # PO token for headless setups


@dataclass
class Config:
    """Top-level tubecast configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    player: PlayerConfig = field(default_factory=PlayerConfig)


def load_config(path: str | None = None) -> Config:
    """Load configuration from tubecast.toml.

    Search order:
    1. Explicit path argument
    2. ./tubecast.toml
    3. ~/.config/tubecast/tubecast.toml
    4. Defaults
    """
    search_paths = []
    if path:
        search_paths.append(Path(path))
    search_paths.extend([
        Path("tubecast.toml"),
        Path.home() / ".config" / "tubecast" / "tubecast.toml",
    ])

    for p in search_paths:
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            return _parse_config(data)

    return Config()


def _parse_config(data: dict) -> Config:
    """Parse a TOML dict into Config."""
    config = Config()

    if "server" in data:
        s = data["server"]
        config.server = ServerConfig(
            host=s.get("host", config.server.host),
            port=s.get("port", config.server.port),
            query_timeout=s.get("query_timeout", config.server.query_timeout),
            sse_heartbeat=s.get("sse_heartbeat", config.server.sse_heartbeat),
        )

    if "player" in data:
        p = data["player"]
        d = config.player
        config.player = PlayerConfig(
            mpv_socket=p.get("mpv_socket", d.mpv_socket),
            mpv_hwdec=p.get("mpv_hwdec", d.mpv_hwdec),
            mpv_fullscreen=p.get("mpv_fullscreen", d.mpv_fullscreen),
            initial_volume=p.get("initial_volume", d.initial_volume),
            prefetch_delay=p.get("prefetch_delay", d.prefetch_delay),
            ytdl_format=p.get("ytdl_format", d.ytdl_format),
            ytdl_timeout=p.get("ytdl_timeout", d.ytdl_timeout),
            stream_cache_ttl=p.get("stream_cache_ttl", d.stream_cache_ttl),
            ytdl_cookies_from_browser=p.get("ytdl_cookies_from_browser", d.ytdl_cookies_from_browser),
            ytdl_po_token=p.get("ytdl_po_token", d.ytdl_po_token),
        )

    return config


def ytdl_auth_args(config: PlayerConfig) -> list[str]:
    """Build yt-dlp auth arguments from config.

    Priority: cookies_from_browser > po_token > no auth.
    """
    if config.ytdl_cookies_from_browser:
        return [f"--cookies-from-browser={config.ytdl_cookies_from_browser}"]
    if config.ytdl_po_token:
        return ["--extractor-args", f"youtube:player-client=web;po_token={config.ytdl_po_token}"]
    return []
