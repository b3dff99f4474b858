"""Tests for fetch.py — streamed reads with a deadline and bounded downloads."""

import itertools
from unittest.mock import patch

import pytest
import requests

from conftest import make_response, make_session
from media_transcript.fetch import (
    STREAM_READ_TIMEOUT,
    DeadlineExceeded,
    download_remote_media,
    fetch_json,
    fetch_text,
    iter_with_deadline,
    post_json,
    probe_content_length,
)


def _clock(*ticks):
    values = iter(ticks)
    return lambda: next(values)


# ---------------------------------------------------------------------------
# iter_with_deadline
# ---------------------------------------------------------------------------

class TestIterWithDeadline:
    def test_yields_within_budget(self):
        chunks = list(iter_with_deadline(["a", "b"], 5, clock=_clock(0, 1, 2)))
        assert chunks == ["a", "b"]

    def test_one_budget_for_the_whole_stream(self):
        cancelled = []
        stream = iter_with_deadline(["a", "b", "c"], 5, cancel=lambda: cancelled.append(True),
                                    clock=_clock(0, 1, 10))
        assert next(stream) == "a"
        with pytest.raises(DeadlineExceeded):
            next(stream)
        assert cancelled == [True]

    def test_cancel_errors_do_not_mask_timeout(self):
        def _cancel():
            raise OSError("socket already closed")

        with pytest.raises(DeadlineExceeded):
            list(iter_with_deadline(["a"], 1, cancel=_cancel, clock=_clock(0, 5)))


# ---------------------------------------------------------------------------
# fetch helpers
# ---------------------------------------------------------------------------

class TestFetchText:
    def test_returns_body(self):
        session = make_session({"example.com": make_response(text="<html>ok</html>")})
        assert fetch_text(session, "https://example.com/page") == "<html>ok</html>"
        assert session.get.call_args.kwargs["stream"] is True

    def test_read_timeout_never_exceeds_budget(self):
        session = make_session({"example.com": make_response(text="ok")})
        fetch_text(session, "https://example.com/page", timeout=2.0)
        assert session.get.call_args.kwargs["timeout"] == (2.0, 2.0)
        fetch_text(session, "https://example.com/page", timeout=300.0)
        assert session.get.call_args.kwargs["timeout"] == (30.0, STREAM_READ_TIMEOUT)

    def test_http_error_returns_none(self):
        session = make_session()
        assert fetch_text(session, "https://example.com/missing") is None

    def test_network_error_returns_none(self, capsys):
        session = make_session()
        session.get.side_effect = requests.ConnectionError("refused")
        assert fetch_text(session, "https://example.com/page") is None
        assert "Fetch failed" in capsys.readouterr().out


class TestJsonHelpers:
    def test_fetch_json(self):
        session = make_session({"api": make_response(json_data={"a": 1})})
        assert fetch_json(session, "https://api.example.com") == {"a": 1}

    def test_fetch_json_invalid(self):
        session = make_session({"api": make_response(text="not json")})
        assert fetch_json(session, "https://api.example.com") is None

    def test_post_json_sets_content_type(self):
        session = make_session({"api": make_response(json_data={"ok": True})})
        assert post_json(session, "https://api.example.com", {"q": 1}, headers={"X": "y"}) == {"ok": True}
        headers = session.post.call_args.kwargs["headers"]
        assert headers["Content-Type"] == "application/json"
        assert headers["X"] == "y"


# ---------------------------------------------------------------------------
# download_remote_media
# ---------------------------------------------------------------------------

class TestDownloadRemoteMedia:
    def test_writes_file_and_reports_type(self, tmp_path):
        resp = make_response(content=b"ID3audio", headers={"Content-Type": "audio/mpeg; charset=binary"})
        session = make_session({"cdn.example.com": resp})
        path, media_type = download_remote_media(session, "https://cdn.example.com/ep.mp3",
                                                 tmp_path / "ep.mp3", max_bytes=1024)
        assert path.read_bytes() == b"ID3audio"
        assert media_type == "audio/mpeg"

    def test_rejects_large_content_length(self, tmp_path):
        head = make_response(headers={"Content-Length": str(10 * 1024 * 1024)})
        session = make_session({"cdn.example.com": head})
        with pytest.raises(RuntimeError, match="too large"):
            download_remote_media(session, "https://cdn.example.com/ep.mp3",
                                  tmp_path / "ep.mp3", max_bytes=1024)
        session.get.assert_not_called()

    def test_stops_when_stream_exceeds_cap(self, tmp_path):
        resp = make_response(content=b"x" * 2048)
        session = make_session({"cdn.example.com": resp})
        with pytest.raises(RuntimeError, match="exceeded"):
            download_remote_media(session, "https://cdn.example.com/ep.mp3",
                                  tmp_path / "ep.mp3", max_bytes=1024)
        resp.close.assert_called()

    def test_http_error(self, tmp_path):
        session = make_session({"cdn.example.com": make_response(status=403)})
        with pytest.raises(RuntimeError, match="403"):
            download_remote_media(session, "https://cdn.example.com/ep.mp3",
                                  tmp_path / "ep.mp3", max_bytes=1024)

    def test_probe_content_length(self):
        session = make_session({"cdn": make_response(headers={"Content-Length": "42"})})
        assert probe_content_length(session, "https://cdn/ep.mp3") == 42
        assert probe_content_length(make_session(), "https://cdn/ep.mp3") is None

    @patch("media_transcript.fetch.time")
    def test_slow_download_times_out(self, mock_time, tmp_path):
        mock_time.monotonic.side_effect = itertools.count(0, 1000)
        resp = make_response(content=b"ID3audio")
        session = make_session({"cdn.example.com": resp})
        with pytest.raises(RuntimeError, match="Download timed out after 600s"):
            download_remote_media(session, "https://cdn.example.com/ep.mp3",
                                  tmp_path / "ep.mp3", max_bytes=1024, timeout=600)
        resp.close.assert_called()

    def test_socket_reads_bounded_below_budget(self, tmp_path):
        session = make_session({"cdn.example.com": make_response(content=b"ID3")})
        download_remote_media(session, "https://cdn.example.com/ep.mp3",
                              tmp_path / "ep.mp3", max_bytes=1024, timeout=600)
        connect, read = session.get.call_args.kwargs["timeout"]
        assert connect <= 600
        assert read == STREAM_READ_TIMEOUT
