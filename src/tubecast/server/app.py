"""Flask REST API for tubecast.

Remote-control surface for the playback coordinator: playlist and transport
commands, volume, status snapshots and a Server-Sent Events stream of state
changes. Every handler goes through the Player's public methods; none of
them touch playback state directly.
"""

import json
import logging
import queue

from flask import Flask, Response, jsonify, request

from tubecast.__about__ import __version__
from tubecast.config import Config
from tubecast.player import Player
from tubecast.server.backend import MPVBackend
from tubecast.server.events import EventBus
from tubecast.server.resolver import StreamResolver, normalize_video_id

logger = logging.getLogger(__name__)


def _ask(query, timeout: float):
    """Run an asynchronous Player query and wait for its answer."""
    slot: queue.Queue = queue.Queue(maxsize=1)
    query(slot)
    try:
        return slot.get(timeout=timeout)
    except queue.Empty:
        return None


def _parse_playlist(raw) -> list[str] | None:
    """Normalize a JSON list of ids/URLs; None if anything is invalid."""
    if not isinstance(raw, list):
        return None
    playlist = [normalize_video_id(item) if isinstance(item, str) else None for item in raw]
    if any(vid is None for vid in playlist):
        return None
    return playlist


def _parse_number(value, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


def create_app(config: Config | None = None, player: Player | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Configuration. Uses defaults if None.
        player: A started Player. If None, one is built on mpv + yt-dlp
            and started.
    """
    if config is None:
        config = Config()

    if player is None:
        player = Player(
            MPVBackend(config.player),
            StreamResolver(config.player),
            EventBus(),
            prefetch_delay=config.player.prefetch_delay,
        )
        player.start()

    app = Flask(__name__)
    app.config["TUBECAST"] = config
    app.player = player
    app.event_bus = player.events
    timeout = config.server.query_timeout
    heartbeat = config.server.sse_heartbeat

    # Global JSON error handler - prevents bare HTML 500s
    @app.errorhandler(Exception)
    def handle_exception(e):
        from werkzeug.exceptions import HTTPException
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error: %s", e)
        return jsonify({"error": str(e)}), 500

    # Allow cross-origin requests (browser remotes)
    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    def not_running():
        return jsonify({"error": "player is not running"}), 503

    # --- Status ---

    @app.route("/api/health")
    def health():
        resp = {
            "status": "ok" if player.is_running else "stopped",
            "version": __version__,
            "player_running": player.is_running,
        }
        if player.fatal_error is not None:
            resp["error"] = str(player.fatal_error)
        return jsonify(resp)

    @app.route("/api/status")
    def status():
        """Playlist snapshot plus volume."""
        snapshot = _ask(player.query_playlist, timeout)
        volume = _ask(player.query_volume, timeout)
        if snapshot is None or volume is None:
            return not_running()
        data = snapshot.to_dict()
        data["volume"] = volume
        return jsonify(data)

    # --- Playlist ---

    @app.route("/api/playlist", methods=["GET"])
    def get_playlist():
        snapshot = _ask(player.query_playlist, timeout)
        if snapshot is None:
            return not_running()
        return jsonify(snapshot.to_dict())

    @app.route("/api/playlist", methods=["POST"])
    def set_playlist():
        """Replace the playlist and start playing."""
        data = request.get_json(silent=True) or {}
        playlist = _parse_playlist(data.get("playlist"))
        if playlist is None:
            return jsonify({"error": "playlist must be a list of YouTube video ids or URLs"}), 400
        index = _parse_number(data.get("index", 0), int)
        position = _parse_number(data.get("position", 0))
        if index is None or position is None or position < 0:
            return jsonify({"error": "index and position must be numbers"}), 400
        if playlist and not 0 <= index < len(playlist):
            return jsonify({"error": f"index {index} out of range"}), 400
        player.set_playlist(playlist, index, position)
        return jsonify({"ok": True, "playlist": playlist, "index": index})

    @app.route("/api/playlist", methods=["PUT"])
    def update_playlist():
        """Replace the playlist without interrupting the current video."""
        data = request.get_json(silent=True) or {}
        playlist = _parse_playlist(data.get("playlist"))
        if playlist is None:
            return jsonify({"error": "playlist must be a list of YouTube video ids or URLs"}), 400
        if not player.is_running:
            return not_running()
        if not player.try_update_playlist(playlist):
            return jsonify({"error": "current video missing from playlist"}), 409
        return jsonify({"ok": True, "playlist": playlist})

    @app.route("/api/track", methods=["POST"])
    def set_track():
        """Jump to a video that is already in the playlist."""
        data = request.get_json(silent=True) or {}
        video_id = normalize_video_id(data.get("video_id", ""))
        position = _parse_number(data.get("position", 0))
        if video_id is None or position is None or position < 0:
            return jsonify({"error": "video_id and position required"}), 400
        snapshot = _ask(player.query_playlist, timeout)
        if snapshot is None:
            return not_running()
        if video_id not in snapshot.playlist:
            return jsonify({"error": f"{video_id} is not in the playlist"}), 409
        player.set_current_track(video_id, position)
        return jsonify({"ok": True, "video_id": video_id})

    # --- Transport ---

    @app.route("/api/play", methods=["POST"])
    def play():
        player.play()
        return jsonify({"ok": True})

    @app.route("/api/pause", methods=["POST"])
    def pause():
        player.pause()
        return jsonify({"ok": True})

    @app.route("/api/stop", methods=["POST"])
    def stop():
        player.stop()
        return jsonify({"ok": True})

    @app.route("/api/seek", methods=["POST"])
    def seek():
        data = request.get_json(silent=True) or {}
        position = _parse_number(data.get("position"))
        if position is None or position < 0:
            return jsonify({"error": "position required"}), 400
        player.seek(position)
        return jsonify({"ok": True})

    # --- Volume ---

    @app.route("/api/volume", methods=["GET"])
    def get_volume():
        volume = _ask(player.query_volume, timeout)
        if volume is None:
            return not_running()
        return jsonify({"volume": volume})

    @app.route("/api/volume", methods=["POST"])
    def volume():
        """Set {"level": 0-100} or change by {"delta": n}."""
        data = request.get_json(silent=True) or {}
        reply: queue.Queue = queue.Queue(maxsize=1)
        if data.get("level") is not None:
            level = _parse_number(data["level"], int)
            if level is None:
                return jsonify({"error": "level must be an integer"}), 400
            player.set_volume(level, reply)
        elif data.get("delta") is not None:
            delta = _parse_number(data["delta"], int)
            if delta is None:
                return jsonify({"error": "delta must be an integer"}), 400
            player.change_volume(delta, reply)
        else:
            return jsonify({"error": "level or delta required"}), 400
        try:
            return jsonify({"volume": reply.get_nowait()})
        except queue.Empty:
            return not_running()

    # --- Events ---

    @app.route("/api/events")
    def events_stream():
        """SSE stream of state changes. Ends when the player shuts down."""
        # Subscribe now so nothing emitted before the first read is missed.
        q = player.events.subscribe()

        def generate():
            try:
                while True:
                    try:
                        event = q.get(timeout=heartbeat)
                    except queue.Empty:
                        yield ": heartbeat\n\n"
                        continue
                    if event is None:
                        yield "event: closed\ndata: {}\n\n"
                        return
                    yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
            finally:
                player.events.unsubscribe(q)

        return Response(generate(), mimetype="text/event-stream")

    @app.route("/api/events/recent")
    def events_recent():
        limit = _parse_number(request.args.get("limit", 20), int) or 20
        return jsonify(player.events.recent(limit))

    return app
