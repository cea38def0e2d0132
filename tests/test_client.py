"""Tests for the HTTP client and the `tubecast` remote-control command."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from tubecast import cli
from tubecast.client import TubecastAPIError, TubecastClient


def _response(data) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = data
    resp.raise_for_status = MagicMock()
    return resp


def _error_response(status: int, data: dict) -> httpx.Response:
    request = httpx.Request("POST", "http://localhost:5050/api/track")
    return httpx.Response(status, json=data, request=request)


@pytest.fixture
def api():
    client = TubecastClient("localhost", 5050)
    yield client
    client.close()


class TestTubecastClient:
    def test_base_url(self, api):
        assert api.base_url == "http://localhost:5050"

    def test_get_status(self, api):
        status = {"playlist": [], "index": 0, "position": 0, "state": "stopped", "volume": 80}
        with patch.object(api._client, "request", return_value=_response(status)) as req:
            assert api.get_status() == status
        req.assert_called_once_with("GET", "/api/status", json=None)

    def test_set_playlist(self, api):
        with patch.object(api._client, "request", return_value=_response({"ok": True})) as req:
            api.set_playlist(["dQw4w9WgXcQ"], 0, 12)
        req.assert_called_once_with("POST", "/api/playlist", json={
            "playlist": ["dQw4w9WgXcQ"], "index": 0, "position": 12,
        })

    def test_update_playlist_uses_put(self, api):
        with patch.object(api._client, "request", return_value=_response({"ok": True})) as req:
            api.update_playlist(["dQw4w9WgXcQ"])
        assert req.call_args[0][:2] == ("PUT", "/api/playlist")

    def test_volume_returns_level(self, api):
        with patch.object(api._client, "request", return_value=_response({"volume": 70})) as req:
            assert api.change_volume(-10) == 70
        req.assert_called_once_with("POST", "/api/volume", json={"delta": -10})

    def test_connect_error(self, api):
        with patch.object(api._client, "request", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(TubecastAPIError, match="Cannot connect"):
                api.health()

    def test_timeout(self, api):
        with patch.object(api._client, "request", side_effect=httpx.ReadTimeout("timeout")):
            with pytest.raises(TubecastAPIError, match="timed out"):
                api.pause()

    def test_http_error_uses_server_message(self, api):
        resp = _error_response(409, {"error": "bbbbbbbbbbb is not in the playlist"})
        with patch.object(api._client, "request", return_value=resp):
            with pytest.raises(TubecastAPIError) as exc:
                api.set_track("bbbbbbbbbbb")
        assert exc.value.status_code == 409
        assert "not in the playlist" in str(exc.value)


class TestRunClient:
    @pytest.fixture
    def fake(self, monkeypatch):
        fake = MagicMock(spec=TubecastClient)
        monkeypatch.setattr("tubecast.client.TubecastClient", lambda host, port: fake)
        return fake

    def test_status(self, fake, capsys):
        fake.get_status.return_value = {
            "playlist": ["aaaaaaaaaaa", "bbbbbbbbbbb"], "index": 1,
            "position": 12.25, "state": "playing", "volume": 60,
        }
        cli.run_client(["status"])
        out = capsys.readouterr().out
        assert "State:    playing" in out
        assert "Position: 12.2s" in out or "Position: 12.3s" in out
        assert ">   1  bbbbbbbbbbb" in out
        fake.close.assert_called_once()

    def test_play_with_videos(self, fake, capsys):
        fake.set_playlist.return_value = {"ok": True, "playlist": ["aaaaaaaaaaa"], "index": 0}
        cli.run_client(["play", "aaaaaaaaaaa", "--position", "30"])
        fake.set_playlist.assert_called_once_with(["aaaaaaaaaaa"], 0, 30.0)
        assert "Playing 1 videos" in capsys.readouterr().out

    def test_play_without_videos_resumes(self, fake):
        cli.run_client(["play"])
        fake.play.assert_called_once_with()

    def test_volume_relative_and_absolute(self, fake, capsys):
        fake.change_volume.return_value = 75
        fake.set_volume.return_value = 20
        cli.run_client(["volume", "+5"])
        fake.change_volume.assert_called_once_with(5)
        cli.run_client(["volume", "20"])
        fake.set_volume.assert_called_once_with(20)
        assert "Volume: 20" in capsys.readouterr().out

    def test_volume_not_a_number(self, fake):
        with pytest.raises(SystemExit) as exc:
            cli.run_client(["volume", "loud"])
        assert exc.value.code == 2

    def test_api_error_exits_1(self, fake, capsys):
        fake.pause.side_effect = TubecastAPIError("Cannot connect to http://localhost:5050")
        with pytest.raises(SystemExit) as exc:
            cli.run_client(["pause"])
        assert exc.value.code == 1
        assert "Cannot connect" in capsys.readouterr().out

    def test_events(self, fake, capsys):
        fake.events.return_value = iter([
            {"type": "state", "state": "buffering", "position": 0},
            {"type": "error", "video_id": "aaaaaaaaaaa", "detail": "stream could not be resolved"},
        ])
        cli.run_client(["events"])
        out = capsys.readouterr().out
        assert "buffering" in out
        assert "error: aaaaaaaaaaa" in out

    def test_no_command_prints_help(self, fake, capsys):
        cli.run_client([])
        assert "usage" in capsys.readouterr().out
