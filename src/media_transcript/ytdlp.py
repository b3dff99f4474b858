"""
yt-dlp extractor: download a page's audio track and transcribe it, or ask
yt-dlp for the media duration without downloading.
"""

import json
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from media_transcript.media import probe_duration_seconds
from media_transcript.shared import (
    tprint as print,
    MISSING_PROVIDER_HINT,
    TranscriptConfig, TranscriptionOutcome,
    run_command, truncate_detail,
)
from media_transcript.whisper import transcribe_media_file

AUDIO_FORMAT_SELECTOR = (
    "bestaudio[vcodec=none]/best[height<=360]/best[height<=480]/best[height<=720]/best"
)
DOWNLOAD_TIMEOUT = 300
DUMP_JSON_TIMEOUT = 30


def can_transcribe_with_ytdlp(config: TranscriptConfig) -> bool:
    return bool(config.yt_dlp_path) and config.has_transcription_provider()


def download_audio(url: str, output_path: Path, config: TranscriptConfig, runner=None) -> Path:
    """Download the best audio-only stream as MP3. Raises RuntimeError on failure."""
    runner = runner or run_command
    if not config.yt_dlp_path:
        raise RuntimeError("yt-dlp is not configured (set YT_DLP_PATH or install yt-dlp)")
    cmd = [
        config.yt_dlp_path,
        "-f", AUDIO_FORMAT_SELECTOR,
        "-x", "--audio-format", "mp3",
        "--concurrent-fragments", "4",
        "--no-playlist",
        "--retries", "3",
        "--no-warnings",
    ]
    if url.startswith("file://"):
        cmd.append("--enable-file-urls")
    cmd += ["-o", str(output_path), url]
    try:
        runner(cmd, "downloading audio with yt-dlp", config.verbose, timeout=DOWNLOAD_TIMEOUT)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        detail = getattr(e, "stderr", None) or str(e)
        raise RuntimeError(f"yt-dlp failed to download audio: {truncate_detail(detail)}") from e
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise RuntimeError("yt-dlp failed to download audio: no output file produced")
    return output_path


def fetch_transcript_with_ytdlp(url: str, config: TranscriptConfig, session=None, runner=None,
                                on_progress=None) -> TranscriptionOutcome:
    """Download audio with yt-dlp and run it through the Whisper engine."""
    notes = []
    if not config.yt_dlp_path:
        return TranscriptionOutcome(
            error=RuntimeError("yt-dlp is not configured (set YT_DLP_PATH or install yt-dlp)"),
            notes=notes)
    if not config.has_transcription_provider():
        return TranscriptionOutcome(
            error=RuntimeError(f"No transcription providers available ({MISSING_PROVIDER_HINT})"),
            notes=notes)

    print("  Downloading audio with yt-dlp...")
    with tempfile.TemporaryDirectory(prefix="media-transcript-ytdlp-") as tmp:
        audio_path = Path(tmp) / "audio.mp3"
        try:
            download_audio(url, audio_path, config, runner)
        except RuntimeError as e:
            return TranscriptionOutcome(error=e, notes=notes)

        duration = probe_duration_seconds(audio_path, config, runner)
        if duration:
            notes.append(f"yt-dlp audio duration {duration:.0f}s")
        outcome = transcribe_media_file(audio_path, "audio/mpeg", config, session, runner,
                                        on_progress)
    outcome.notes[:0] = notes
    return outcome


def fetch_duration_with_ytdlp(url: str, config: TranscriptConfig, runner=None) -> Optional[float]:
    """Media duration from ``yt-dlp --dump-json``, or None."""
    runner = runner or run_command
    if not config.yt_dlp_path:
        return None
    try:
        result = runner(
            [config.yt_dlp_path, "--skip-download", "--dump-json", "--no-playlist",
             "--no-warnings", url],
            "fetching media info with yt-dlp", config.verbose, timeout=DUMP_JSON_TIMEOUT)
        info = json.loads(result.stdout)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError):
        return None
    duration = info.get("duration") if isinstance(info, dict) else None
    if isinstance(duration, (int, float)) and duration > 0:
        return float(duration)
    return None
