"""Tests for transcriber.py — source dispatch, transcript cache, and the CLI."""

import itertools
import json
from unittest.mock import patch

import pytest

from conftest import make_response, make_session
from media_transcript.shared import (
    ConfigurationError, TranscriptConfig, TranscriptionOutcome, TranscriptRequest, TranscriptResult,
)
from media_transcript.transcriber import JsonFileCache, main, resolve_transcript


def _request(url, **kwargs):
    kwargs.setdefault("session", make_session())
    kwargs.setdefault("config", TranscriptConfig(openai_api_key="o"))
    return TranscriptRequest(url=url, **kwargs)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestResolveTranscript:
    @patch("media_transcript.transcriber.resolve_youtube_transcript")
    def test_youtube_fetches_page(self, mock_youtube):
        mock_youtube.return_value = TranscriptResult(text="hi", source="captionTracks")
        session = make_session({"youtube.com": make_response(text="<html>watch</html>")})
        resolve_transcript(_request("https://www.youtube.com/watch?v=dQw4w9WgXcQ", session=session))
        forwarded = mock_youtube.call_args.args[0]
        assert forwarded.html == "<html>watch</html>"
        assert forwarded.session is session

    @patch("media_transcript.transcriber.resolve_youtube_transcript")
    def test_apify_mode_skips_page_fetch(self, mock_youtube):
        mock_youtube.return_value = TranscriptResult()
        session = make_session()
        resolve_transcript(_request("https://youtu.be/dQw4w9WgXcQ", mode="apify", session=session))
        session.get.assert_not_called()

    @patch("media_transcript.transcriber.resolve_podcast_transcript")
    def test_spotify_does_not_fetch_page(self, mock_podcast):
        mock_podcast.return_value = TranscriptResult()
        session = make_session()
        resolve_transcript(_request("https://open.spotify.com/episode/abc123", session=session))
        assert mock_podcast.call_args.args[0].html is None
        session.get.assert_not_called()

    @patch("media_transcript.transcriber.resolve_podcast_transcript")
    def test_unknown_page_goes_to_podcast_resolver(self, mock_podcast):
        mock_podcast.return_value = TranscriptResult()
        session = make_session({"example.com": make_response(text="<html></html>")})
        resolve_transcript(_request("https://example.com/blog/post", session=session))
        assert mock_podcast.call_args.args[0].html == "<html></html>"

    @patch("media_transcript.transcriber.transcribe_media_file")
    def test_local_file(self, mock_transcribe, tmp_path):
        mock_transcribe.return_value = TranscriptionOutcome(text=" local words ", provider="openai")
        media = tmp_path / "talk.mp3"
        media.write_bytes(b"ID3")
        result = resolve_transcript(_request(str(media)))
        assert result.text == "local words"
        assert result.source == "whisper"
        assert result.metadata["transcriptionProvider"] == "openai"

    def test_local_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            resolve_transcript(_request(str(tmp_path / "missing.mp3")))

    def test_local_file_without_provider(self, tmp_path):
        media = tmp_path / "talk.mp3"
        media.write_bytes(b"ID3")
        result = resolve_transcript(_request(str(media), config=TranscriptConfig()))
        assert result.metadata["reason"] == "missing_transcription_keys"

    @patch("media_transcript.transcriber.transcribe_media_file")
    @patch("media_transcript.fetch.time")
    def test_remote_media_download_timeout(self, mock_time, mock_transcribe):
        mock_time.monotonic.side_effect = itertools.count(0, 1000)
        session = make_session({"cdn.example.com": make_response(content=b"ID3audio")})
        result = resolve_transcript(_request("https://cdn.example.com/ep.mp3", session=session))
        assert result.text is None
        assert result.metadata["reason"] == "download_failed"
        assert "Download timed out after 600s" in result.notes
        mock_transcribe.assert_not_called()


class TestCache:
    @patch("media_transcript.transcriber.resolve_podcast_transcript")
    def test_hit_skips_resolution(self, mock_podcast, tmp_path):
        mock_podcast.return_value = TranscriptResult(text="cached text", source="podcastTranscript",
                                                     attempted=["podcastTranscript"])
        cache = JsonFileCache(tmp_path / "cache")
        request = _request("https://open.spotify.com/episode/abc123", resource_key="ep-1")
        first = resolve_transcript(request, cache)
        second = resolve_transcript(request, cache)
        assert mock_podcast.call_count == 1
        assert second.text == first.text == "cached text"
        assert second.attempted == ["podcastTranscript"]

    @patch("media_transcript.transcriber.resolve_podcast_transcript")
    def test_failures_are_not_cached(self, mock_podcast, tmp_path):
        mock_podcast.return_value = TranscriptResult(metadata={"reason": "no_enclosure_and_no_yt_dlp"})
        cache = JsonFileCache(tmp_path / "cache")
        resolve_transcript(_request("https://open.spotify.com/episode/abc123"), cache)
        assert cache.get("https://open.spotify.com/episode/abc123") is None

    def test_corrupt_entry_is_a_miss(self, tmp_path):
        cache = JsonFileCache(tmp_path)
        cache.set("key", {"text": "x"})
        cache._path("key").write_text("{not json")
        assert cache.get("key") is None


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestMain:
    @patch("media_transcript.transcriber.resolve_transcript")
    def test_json_output(self, mock_resolve, capsys):
        mock_resolve.return_value = TranscriptResult(
            text="hello", source="captionTracks", attempted=["captionTracks"],
            metadata={"provider": "captionTracks"})
        main(["https://www.youtube.com/watch?v=dQw4w9WgXcQ", "--json", "--youtube", "web"])
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{\n"):])
        assert payload["text"] == "hello"
        assert payload["attempted"] == ["captionTracks"]
        assert mock_resolve.call_args.args[0].mode == "web"

    @patch("media_transcript.transcriber.resolve_transcript")
    def test_writes_output_file(self, mock_resolve, tmp_path):
        mock_resolve.return_value = TranscriptResult(text="saved text", source="whisper")
        out_file = tmp_path / "out.txt"
        main(["./talk.mp3", "-o", str(out_file)])
        assert out_file.read_text() == "saved text\n"

    @patch("media_transcript.transcriber.resolve_transcript")
    def test_no_transcript_exits_nonzero(self, mock_resolve, capsys):
        mock_resolve.return_value = TranscriptResult(source="unavailable", attempted=["unavailable"])
        with pytest.raises(SystemExit) as exc:
            main(["https://example.com/podcast/ep"])
        assert exc.value.code == 1
        assert "No transcript available." in capsys.readouterr().out

    @patch("media_transcript.transcriber.resolve_transcript")
    def test_resolution_error_exits_cleanly(self, mock_resolve, capsys):
        mock_resolve.side_effect = RuntimeError("yt-dlp failed to download audio: ERROR: Video unavailable")
        with pytest.raises(SystemExit) as exc:
            main(["https://youtu.be/dQw4w9WgXcQ", "--youtube", "yt-dlp"])
        assert exc.value.code == 1
        assert "Error: yt-dlp failed to download audio" in capsys.readouterr().out

    @patch("media_transcript.transcriber.resolve_transcript")
    def test_configuration_error_exits_cleanly(self, mock_resolve, capsys):
        mock_resolve.side_effect = ConfigurationError("Missing APIFY_API_TOKEN for --youtube apify")
        with pytest.raises(SystemExit) as exc:
            main(["https://youtu.be/dQw4w9WgXcQ", "--youtube", "apify"])
        assert exc.value.code == 1
        assert "Missing APIFY_API_TOKEN" in capsys.readouterr().out

    def test_rejects_unknown_youtube_mode(self):
        with pytest.raises(SystemExit):
            main(["https://youtu.be/dQw4w9WgXcQ", "--youtube", "fast"])

    def test_rejects_non_positive_segment_length(self):
        with pytest.raises(SystemExit):
            main(["./talk.mp3", "--segment-seconds", "0"])
