"""Tests for shared.py — config, chain driver, accessors, text cleanup, run_command."""

import json
import subprocess
from unittest.mock import patch

import pytest

from media_transcript.shared import (
    Step,
    TimedSegment,
    TranscriptConfig,
    TranscriptResult,
    get_path,
    join_notes,
    normalize_transcript_text,
    push_once,
    run_command,
    truncate_detail,
    try_in_order,
)


# ---------------------------------------------------------------------------
# TranscriptConfig
# ---------------------------------------------------------------------------

class TestTranscriptConfig:
    def test_from_env_reads_credentials(self):
        env = {
            "GROQ_API_KEY": "gsk",
            "OPENAI_API_KEY": " sk ",
            "FAL_KEY": "",
            "APIFY_API_TOKEN": "apify",
            "YT_DLP_PATH": "/usr/bin/yt-dlp",
            "WHISPER_CPP_BINARY": "/opt/whisper-cli",
        }
        config = TranscriptConfig.from_env(env)
        assert config.groq_api_key == "gsk"
        assert config.openai_api_key == "sk"
        assert config.fal_api_key is None
        assert config.apify_api_token == "apify"
        assert config.yt_dlp_path == "/usr/bin/yt-dlp"
        assert config.whisper_cpp_binary == "/opt/whisper-cli"

    def test_overrides_win(self):
        config = TranscriptConfig.from_env({"OPENAI_API_KEY": "sk"}, openai_api_key=None, verbose=True)
        assert config.openai_api_key is None
        assert config.verbose is True

    def test_local_whisper_needs_model_file(self, tmp_path):
        config = TranscriptConfig(whisper_cpp_binary="whisper-cli",
                                  whisper_cpp_model_path=str(tmp_path / "missing.bin"))
        assert not config.has_local_whisper()
        model = tmp_path / "ggml-base.bin"
        model.write_bytes(b"x")
        config.whisper_cpp_model_path = str(model)
        assert config.has_local_whisper()
        assert config.has_transcription_provider()

    def test_no_provider(self):
        assert not TranscriptConfig().has_transcription_provider()
        assert TranscriptConfig(fal_api_key="k").has_transcription_provider()


# ---------------------------------------------------------------------------
# try_in_order
# ---------------------------------------------------------------------------

class TestTryInOrder:
    def test_stops_at_first_success(self):
        calls = []
        steps = [
            Step("a", lambda: calls.append("a")),
            Step("b", lambda: calls.append("b") or "text"),
            Step("c", lambda: calls.append("c") or "other"),
        ]
        attempted = []
        name, result = try_in_order(steps, attempted)
        assert (name, result) == ("b", "text")
        assert attempted == ["a", "b"]
        assert calls == ["a", "b"]

    def test_skipped_steps_are_not_recorded(self):
        attempted = []
        steps = [
            Step("a", lambda: None, when=lambda: False),
            Step("b", lambda: None),
        ]
        assert try_in_order(steps, attempted) == (None, None)
        assert attempted == ["b"]

    def test_predicates_evaluated_lazily(self):
        state = {"ready": False}

        def _first():
            state["ready"] = True
            return None

        steps = [Step("first", _first), Step("second", lambda: "ok", when=lambda: state["ready"])]
        assert try_in_order(steps) == ("second", "ok")

    def test_custom_success_predicate(self):
        steps = [Step("empty", lambda: ""), Step("full", lambda: "x")]
        assert try_in_order(steps, succeeded=bool) == ("full", "x")


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

class TestGetPath:
    def test_nested_dicts_and_lists(self):
        data = {"a": [{"b": {"c": 3}}]}
        assert get_path(data, "a", 0, "b", "c") == 3

    def test_missing_returns_none(self):
        data = {"a": [{"b": 1}]}
        assert get_path(data, "a", 5, "b") is None
        assert get_path(data, "x", "y") is None
        assert get_path(data, "a", "b") is None
        assert get_path(None, "a") is None


class TestNormalizeTranscriptText:
    def test_collapses_whitespace(self):
        raw = "  Hello  \t world \n\n\n\n  next  line \n"
        assert normalize_transcript_text(raw) == "Hello world\n\nnext line"

    def test_trims_around_newlines(self):
        assert normalize_transcript_text("a   \n   b") == "a\nb"


class TestNotes:
    def test_join_notes(self):
        assert join_notes([]) is None
        assert join_notes(["a", "b"]) == "a; b"

    def test_push_once(self):
        items = ["whisper"]
        push_once(items, "whisper")
        push_once(items, "podcastTranscript")
        assert items == ["whisper", "podcastTranscript"]

    def test_truncate_detail(self):
        assert truncate_detail("short") == "short"
        long = "x" * 500
        out = truncate_detail(long)
        assert len(out) == 201
        assert out.endswith("…")


class TestTranscriptResult:
    def test_to_dict_is_json_serializable(self):
        result = TranscriptResult(
            text="hi", source="captionTracks", attempted=["captionTracks"],
            metadata={"provider": "captionTracks"},
            segments=[TimedSegment(start_ms=0, end_ms=None, text="hi")],
        )
        data = json.loads(json.dumps(result.to_dict()))
        assert data["segments"][0] == {"start_ms": 0, "end_ms": None, "text": "hi"}
        restored = TranscriptResult.from_dict(data)
        assert restored.segments[0].text == "hi"
        assert restored.attempted == ["captionTracks"]


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------

class TestRunCommand:
    @patch("media_transcript.shared.subprocess.run")
    def test_passes_timeout_and_input(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["x"], 0, stdout="ok", stderr="")
        result = run_command(["x"], "doing x", timeout=5, input="data")
        assert result.stdout == "ok"
        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 5
        assert kwargs["input"] == "data"
        assert kwargs["check"] is True

    @patch("media_transcript.shared.subprocess.run")
    def test_prints_and_reraises(self, mock_run, capsys):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["x"], stderr="boom")
        with pytest.raises(subprocess.CalledProcessError):
            run_command(["x"], "doing x")
        out = capsys.readouterr().out
        assert "Error: doing x" in out
        assert "boom" in out

    @patch("media_transcript.shared.subprocess.run")
    def test_verbose_echoes_command(self, mock_run, capsys):
        mock_run.return_value = subprocess.CompletedProcess(["ffmpeg"], 0, stdout="", stderr="")
        run_command(["ffmpeg", "-i", "a.mp3"], "transcoding", verbose=True)
        assert "Running: ffmpeg -i a.mp3" in capsys.readouterr().out
