"""HTTP client for communicating with a tubecast server.

Used by the `tubecast` remote-control command.
"""

import json
import logging
from typing import Any, Iterator

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class TubecastAPIError(Exception):
    """Error communicating with the tubecast server."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TubecastClient:
    """HTTP client for the tubecast REST API.

    Usage:
        client = TubecastClient("raspberrypi.local", 5050)
        client.set_playlist(["dQw4w9WgXcQ"])
        client.pause()
        print(client.get_status())
    """

    def __init__(self, host: str = "localhost", port: int = 5050):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self._client = httpx.Client(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, data: dict | None = None) -> Any:
        try:
            resp = self._client.request(method, path, json=data)
            resp.raise_for_status()
            return resp.json()
        except httpx.ConnectError:
            raise TubecastAPIError(f"Cannot connect to {self.base_url}")
        except httpx.TimeoutException:
            raise TubecastAPIError("Request timed out")
        except httpx.HTTPStatusError as e:
            try:
                message = e.response.json().get("error", str(e))
            except ValueError:
                message = str(e)
            raise TubecastAPIError(message, e.response.status_code)

    # --- Status ---

    def health(self) -> dict:
        return self._request("GET", "/api/health")

    def get_status(self) -> dict:
        return self._request("GET", "/api/status")

    # --- Playlist ---

    def set_playlist(self, playlist: list[str], index: int = 0, position: float = 0) -> dict:
        return self._request("POST", "/api/playlist", {
            "playlist": playlist, "index": index, "position": position,
        })

    def update_playlist(self, playlist: list[str]) -> dict:
        return self._request("PUT", "/api/playlist", {"playlist": playlist})

    def set_track(self, video_id: str, position: float = 0) -> dict:
        return self._request("POST", "/api/track", {"video_id": video_id, "position": position})

    # --- Transport ---

    def play(self) -> dict:
        return self._request("POST", "/api/play")

    def pause(self) -> dict:
        return self._request("POST", "/api/pause")

    def stop(self) -> dict:
        return self._request("POST", "/api/stop")

    def seek(self, position: float) -> dict:
        return self._request("POST", "/api/seek", {"position": position})

    # --- Volume ---

    def get_volume(self) -> int:
        return self._request("GET", "/api/volume")["volume"]

    def set_volume(self, level: int) -> int:
        return self._request("POST", "/api/volume", {"level": level})["volume"]

    def change_volume(self, delta: int) -> int:
        return self._request("POST", "/api/volume", {"delta": delta})["volume"]

    # --- Events ---

    def events(self) -> Iterator[dict]:
        """Yield events from the server's SSE stream until it closes."""
        try:
            with self._client.stream("GET", "/api/events", timeout=None) as resp:
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if line.startswith("data: "):
                        event = json.loads(line[len("data: "):])
                        if event:
                            yield event
        except httpx.ConnectError:
            raise TubecastAPIError(f"Cannot connect to {self.base_url}")
        except httpx.HTTPStatusError as e:
            raise TubecastAPIError(str(e), e.response.status_code)
