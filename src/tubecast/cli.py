"""CLI entry points for tubecast.

tubecast-server: Runs the playback coordinator and its REST API
tubecast: Remote control for a running server
"""

import argparse
import logging
import sys


def run_server():
    """Entry point for tubecast-server command."""
    parser = argparse.ArgumentParser(
        description="tubecast server - YouTube playlist player with a REST remote control"
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: 5050)"
    )
    parser.add_argument(
        "--config", default=None, help="Path to tubecast.toml config file"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable Flask debug mode"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    parser.add_argument(
        "--quiet", action="store_true",
        help="Suppress per-request werkzeug logs"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger("tubecast")

    from tubecast.config import load_config
    from tubecast.player import BackendError
    from tubecast.server.app import create_app

    config = load_config(args.config)

    # CLI args override config file
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    try:
        app = create_app(config)
    except BackendError as e:
        log.error("Could not start playback backend: %s", e)
        sys.exit(1)

    if args.quiet:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    log.info("tubecast server starting on %s:%d", config.server.host, config.server.port)
    try:
        app.run(
            host=config.server.host,
            port=config.server.port,
            debug=args.debug,
            threaded=True,  # SSE streams hold a request thread each
            use_reloader=False,  # Don't reload - we have background threads
        )
    finally:
        app.player.quit()
        app.player.join(timeout=10)


def _format_status(status: dict) -> str:
    playlist = status.get("playlist", [])
    lines = [
        f"State:    {status.get('state', '?')}",
        f"Position: {status.get('position', 0):.1f}s",
        f"Volume:   {status.get('volume', '?')}",
    ]
    if playlist:
        lines.append(f"Playlist ({len(playlist)}):")
        for i, vid in enumerate(playlist):
            marker = ">" if i == status.get("index") else " "
            lines.append(f"  {marker} {i:3d}  {vid}")
    else:
        lines.append("Playlist: empty")
    return "\n".join(lines)


def run_client(argv: list[str] | None = None):
    """Entry point for tubecast command. Controls a server via HTTP."""
    parser = argparse.ArgumentParser(description="tubecast remote control")
    parser.add_argument("--host", default="localhost", help="Server host (default: localhost)")
    parser.add_argument("--port", type=int, default=5050, help="Server port (default: 5050)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show playlist, state and volume")

    p_play = sub.add_parser("play", help="Play a new playlist, or resume")
    p_play.add_argument("videos", nargs="*", help="Video ids or URLs (omit to resume)")
    p_play.add_argument("--index", type=int, default=0, help="Index to start at")
    p_play.add_argument("--position", type=float, default=0, help="Start position (seconds)")

    p_update = sub.add_parser("update", help="Replace the playlist without interrupting")
    p_update.add_argument("videos", nargs="+", help="Video ids or URLs")

    p_jump = sub.add_parser("jump", help="Jump to a video in the playlist")
    p_jump.add_argument("video", help="Video id or URL")
    p_jump.add_argument("--position", type=float, default=0, help="Start position (seconds)")

    sub.add_parser("pause", help="Pause playback")
    sub.add_parser("stop", help="Stop playback and clear the playlist")

    p_seek = sub.add_parser("seek", help="Seek to a position")
    p_seek.add_argument("position", type=float, help="Position in seconds")

    p_volume = sub.add_parser("volume", help="Show or change the volume")
    p_volume.add_argument("level", nargs="?", help="0-100, or +N / -N to change")

    sub.add_parser("events", help="Follow state changes")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    from tubecast.client import TubecastAPIError, TubecastClient

    client = TubecastClient(args.host, args.port)
    try:
        if args.command == "status":
            print(_format_status(client.get_status()))

        elif args.command == "play":
            if args.videos:
                result = client.set_playlist(args.videos, args.index, args.position)
                print(f"Playing {len(result['playlist'])} videos from #{result['index']}")
            else:
                client.play()

        elif args.command == "update":
            result = client.update_playlist(args.videos)
            print(f"Playlist updated ({len(result['playlist'])} videos)")

        elif args.command == "jump":
            result = client.set_track(args.video, args.position)
            print(f"Jumped to {result['video_id']}")

        elif args.command == "pause":
            client.pause()

        elif args.command == "stop":
            client.stop()

        elif args.command == "seek":
            client.seek(args.position)

        elif args.command == "volume":
            if args.level is None:
                volume = client.get_volume()
            else:
                try:
                    level = int(args.level)
                except ValueError:
                    print("Error: volume must be a number, +N or -N")
                    sys.exit(2)
                if args.level.startswith(("+", "-")):
                    volume = client.change_volume(level)
                else:
                    volume = client.set_volume(level)
            print(f"Volume: {volume}")

        elif args.command == "events":
            for event in client.events():
                if event.get("type") == "state":
                    print(f"{event['state']:<10s} {event['position']:8.1f}s")
                else:
                    print(f"{event.get('type')}: {event.get('video_id', '')} {event.get('detail', '')}")

    except TubecastAPIError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        client.close()


if __name__ == "__main__":
    run_server()
