"""
Shared types and utilities for the transcript acquisition engine.

Contains TranscriptConfig, the request/result dataclasses, and utility
functions used by transcriber.py and all provider modules.
"""

import os
import re
import shutil
import subprocess
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import builtins


def tprint(*args, **kwargs):
    """Print with [HH:MM:SS] timestamp prefix.

    Skips the timestamp for carriage-return progress lines (end != newline)
    so that in-place progress updates remain clean.
    """
    if kwargs.get("end", "\n") != "\n":
        builtins.print(*args, flush=True, **kwargs)
        return
    stamp = time.strftime("[%H:%M:%S]")
    builtins.print(stamp, *args, flush=True, **kwargs)


print = tprint

YOUTUBE_MODES = ("auto", "web", "apify", "yt-dlp", "no-auto")

MISSING_PROVIDER_HINT = "install whisper-cpp or set GROQ_API_KEY, OPENAI_API_KEY, or FAL_KEY"


class ConfigurationError(RuntimeError):
    """A requested mode needs a credential or binary that is not configured."""


class TranscriptionError(RuntimeError):
    """A transcription backend failed; status_code is set for HTTP failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TranscriptConfig:
    """Credentials and tunables for transcript resolution."""
    groq_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    fal_api_key: Optional[str] = None
    apify_api_token: Optional[str] = None
    yt_dlp_path: Optional[str] = None
    whisper_cpp_binary: Optional[str] = None  # Local whisper.cpp CLI (whisper-cli)
    whisper_cpp_model_path: Optional[str] = None  # ggml model file; local backend needs both
    openai_base_url: Optional[str] = None  # Override for OpenAI-compatible proxies
    groq_base_url: str = "https://api.groq.com/openai/v1"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    request_timeout: float = 30.0  # seconds per HTTP request
    transcription_timeout: float = 600.0  # seconds per transcription upload
    max_upload_bytes: int = 25 * 1024 * 1024  # hosted Whisper upload ceiling
    max_remote_media_bytes: int = 512 * 1024 * 1024
    segment_seconds: int = 600  # part length when chunking oversized media
    verbose: bool = False

    @classmethod
    def from_env(cls, env: Optional[dict] = None, **overrides) -> "TranscriptConfig":
        """Build a config from environment variables, then apply overrides."""
        env = os.environ if env is None else env

        def _get(name):
            value = (env.get(name) or "").strip()
            return value or None

        values = {
            "groq_api_key": _get("GROQ_API_KEY"),
            "openai_api_key": _get("OPENAI_API_KEY"),
            "fal_api_key": _get("FAL_KEY"),
            "apify_api_token": _get("APIFY_API_TOKEN"),
            "yt_dlp_path": _get("YT_DLP_PATH") or shutil.which("yt-dlp"),
            "whisper_cpp_binary": _get("WHISPER_CPP_BINARY") or shutil.which("whisper-cli"),
            "whisper_cpp_model_path": _get("WHISPER_CPP_MODEL_PATH"),
            "openai_base_url": _get("OPENAI_BASE_URL"),
        }
        if _get("GROQ_BASE_URL"):
            values["groq_base_url"] = _get("GROQ_BASE_URL")
        values.update(overrides)
        return cls(**values)

    def has_local_whisper(self) -> bool:
        if not self.whisper_cpp_binary or not self.whisper_cpp_model_path:
            return False
        return Path(self.whisper_cpp_model_path).is_file()

    def has_transcription_provider(self) -> bool:
        return bool(self.has_local_whisper() or self.groq_api_key
                    or self.openai_api_key or self.fal_api_key)


@dataclass
class TimedSegment:
    """One timed transcript line; end_ms is None when the format has no duration."""
    start_ms: int
    end_ms: Optional[int]
    text: str


@dataclass
class CaptionTrack:
    language_code: str
    base_url: str
    kind: Optional[str] = None  # "asr" for auto-generated
    is_auto: bool = False  # came from the automatic captions list


@dataclass
class TranscriptResult:
    """Outcome of a transcript resolution attempt."""
    text: Optional[str] = None
    source: Optional[str] = None
    attempted: list = field(default_factory=list)  # ordered provider ids actually tried
    metadata: dict = field(default_factory=dict)
    notes: Optional[str] = None
    segments: Optional[list] = None  # list[TimedSegment] when timestamps requested

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptResult":
        segments = data.get("segments")
        if segments is not None:
            segments = [TimedSegment(**s) for s in segments]
        return cls(
            text=data.get("text"),
            source=data.get("source"),
            attempted=list(data.get("attempted") or []),
            metadata=dict(data.get("metadata") or {}),
            notes=data.get("notes"),
            segments=segments,
        )


@dataclass
class TranscriptionOutcome:
    """Result of the Whisper fallback chain. notes is append-only."""
    text: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[Exception] = None
    notes: list = field(default_factory=list)


@dataclass
class ProgressEvent:
    part_index: Optional[int]
    parts: Optional[int]
    processed_duration_seconds: Optional[float]
    total_duration_seconds: Optional[float]


@dataclass
class TranscriptRequest:
    """Everything one resolution needs. Treat as immutable."""
    url: str
    html: Optional[str] = None  # pre-fetched page snapshot
    resource_key: Optional[str] = None  # cache correlation key / video id
    mode: str = "auto"
    session: Any = None  # requests.Session-like fetch client
    config: Optional[TranscriptConfig] = None
    transcript_timestamps: bool = False
    scrape_fallback: Optional[Callable[[str], Optional[str]]] = None
    runner: Optional[Callable] = None  # subprocess capability, defaults to run_command
    on_progress: Optional[Callable[[ProgressEvent], None]] = None


# ---------------------------------------------------------------------------
# Provider chain helpers
# ---------------------------------------------------------------------------

@dataclass
class Step:
    """One entry in an ordered provider chain."""
    name: str
    attempt: Callable[[], Any]
    when: Callable[[], bool] = lambda: True


def try_in_order(steps: list, attempted: Optional[list] = None,
                 succeeded: Callable[[Any], bool] = lambda result: result is not None):
    """Run steps in order and stop at the first successful result.

    A step whose ``when`` predicate is false is skipped without being
    recorded. Predicates are evaluated lazily, right before the step would
    run. Returns ``(name, result)`` or ``(None, None)``.
    """
    for step in steps:
        if not step.when():
            continue
        if attempted is not None:
            attempted.append(step.name)
        result = step.attempt()
        if succeeded(result):
            return step.name, result
    return None, None


def push_once(items: list, value) -> None:
    if value not in items:
        items.append(value)


def join_notes(notes: list) -> Optional[str]:
    return "; ".join(notes) if notes else None


def get_path(obj, *keys):
    """Walk nested dicts/lists by keys and indices, returning None on any miss."""
    current = obj
    for key in keys:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def normalize_transcript_text(text: str) -> str:
    """Light whitespace cleanup applied to every transcript we return."""
    text = text.replace("\u00a0", " ")
    text = re.sub(r"[\t ]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate_detail(detail: str, limit: int = 200) -> str:
    detail = " ".join(str(detail).split())
    if len(detail) <= limit:
        return detail
    return detail[:limit] + "…"


# ---------------------------------------------------------------------------
# Subprocess utilities
# ---------------------------------------------------------------------------

def run_command(cmd: list, description: str, verbose: bool = False,
                timeout: Optional[float] = None,
                input: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run a command with error handling."""
    if verbose:
        print(f"  Running: {' '.join(str(c) for c in cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True,
                                timeout=timeout, input=input)
        return result
    except subprocess.CalledProcessError as e:
        print(f"  Error: {description}")
        print(f"  {(e.stderr or '').strip()}")
        raise


def check_dependencies(config: Optional[TranscriptConfig] = None) -> dict:
    """Check for optional external tools."""
    config = config or TranscriptConfig()
    deps = {
        "yt-dlp": bool(config.yt_dlp_path) or shutil.which("yt-dlp") is not None,
        "ffmpeg": shutil.which(config.ffmpeg_path) is not None,
        "ffprobe": shutil.which(config.ffprobe_path) is not None,
        "whisper-cli": config.has_local_whisper(),
    }
    return deps
