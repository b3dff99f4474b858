"""
Media helpers: media-type mapping, ffmpeg transcoding, ffprobe duration and
segmentation of oversized audio into fixed-length parts.
"""

import mimetypes
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from media_transcript.shared import (
    tprint as print,
    TranscriptConfig, run_command,
)

MEDIA_TYPE_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/webm": "webm",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}

# Formats the whisper.cpp CLI reads directly
WHISPER_CPP_EXTENSIONS = {"mp3", "ogg", "flac", "wav"}

SEGMENT_PATTERN = "part-%03d.mp3"


def extension_for_media_type(media_type: Optional[str]) -> str:
    if not media_type:
        return "mp3"
    return MEDIA_TYPE_EXTENSIONS.get(media_type.split(";")[0].strip().lower(), "mp3")


def guess_media_type(path, fallback: str = "audio/mpeg") -> str:
    media_type, _ = mimetypes.guess_type(str(path))
    if media_type and media_type.startswith(("audio/", "video/")):
        return media_type
    return fallback


def is_audio_media_type(media_type: Optional[str]) -> bool:
    return bool(media_type) and media_type.lower().startswith("audio/")


def ffmpeg_available(config: TranscriptConfig) -> bool:
    return shutil.which(config.ffmpeg_path) is not None


def transcode_to_mp3(input_path: Path, output_path: Path, config: TranscriptConfig,
                     runner=None, lenient: bool = False) -> Path:
    """Transcode any media to mono 16 kHz MP3. Raises CalledProcessError on failure."""
    runner = runner or run_command
    cmd = [config.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y"]
    if lenient:
        cmd += ["-err_detect", "ignore_err", "-fflags", "+genpts"]
    cmd += ["-i", str(input_path)]
    if lenient:
        cmd += ["-map", "0:a:0?"]
    cmd += ["-vn", "-ac", "1", "-ar", "16000", "-b:a", "64k", str(output_path)]
    runner(cmd, "transcoding media with ffmpeg", config.verbose,
           timeout=config.transcription_timeout)
    return output_path


def transcode_with_fallback(input_path: Path, output_path: Path, config: TranscriptConfig,
                            runner=None) -> tuple:
    """Strict transcode, then the lenient variant. Returns (path, notes)."""
    notes = []
    try:
        transcode_to_mp3(input_path, output_path, config, runner)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        transcode_to_mp3(input_path, output_path, config, runner, lenient=True)
        notes.append(f"strict ffmpeg transcode failed ({_stderr_excerpt(e)}); used lenient transcode")
    return output_path, notes


def _stderr_excerpt(error) -> str:
    stderr = getattr(error, "stderr", None) or str(error)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", "replace")
    return " ".join(stderr.split())[:120]


def probe_duration_seconds(path: Path, config: TranscriptConfig, runner=None) -> Optional[float]:
    """Media duration via ffprobe, or None when unknown."""
    runner = runner or run_command
    if shutil.which(config.ffprobe_path) is None:
        return None
    try:
        result = runner(
            [config.ffprobe_path, "-v", "error", "-show_entries", "format=duration",
             "-of", "default=noprint_wrappers=1:nokey=1", str(path)],
            "probing media duration", config.verbose, timeout=30)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return None
    try:
        duration = float(result.stdout.strip())
    except ValueError:
        return None
    return duration if duration > 0 else None


def segment_media(path: Path, output_dir: Path, segment_seconds: int,
                  config: TranscriptConfig, runner=None) -> list:
    """Split media into numbered fixed-length MP3 parts, returned in index order.

    Raises RuntimeError when ffmpeg produces nothing.
    """
    runner = runner or run_command
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    runner(
        [config.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y",
         "-i", str(path),
         "-f", "segment", "-segment_time", str(segment_seconds), "-reset_timestamps", "1",
         "-vn", "-ac", "1", "-ar", "16000", "-b:a", "32k",
         str(output_dir / SEGMENT_PATTERN)],
        "segmenting media with ffmpeg", config.verbose,
        timeout=config.transcription_timeout)
    parts = sorted(p for p in output_dir.glob("part-*.mp3") if p.is_file())
    if not parts:
        raise RuntimeError("ffmpeg produced no audio segments")
    if config.verbose:
        print(f"  Segmented media into {len(parts)} parts")
    return parts
