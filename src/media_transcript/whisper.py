"""
Whisper transcription engine: the speech-to-text fallback.

Backends, in priority order when available:
1. whisper.cpp local binary (binary configured and model file present)
2. Groq (OpenAI-compatible API, whisper-large-v3-turbo)
3. OpenAI (whisper-1)
4. FAL (fal-ai/wizper, audio media types only)

Decode failures are retried once on the same backend after an ffmpeg
transcode. Media over the upload ceiling is split into parts with ffmpeg and
the part transcripts are joined in order. Entry points never raise: every
failure comes back as a TranscriptionOutcome with error set and notes
explaining each fallback.
"""

import base64
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

import requests
from openai import APIError, APIStatusError, APITimeoutError, OpenAI

from media_transcript.media import (
    WHISPER_CPP_EXTENSIONS,
    extension_for_media_type, ffmpeg_available, guess_media_type,
    is_audio_media_type, probe_duration_seconds, segment_media,
    transcode_with_fallback,
)
from media_transcript.shared import (
    tprint as print,
    MISSING_PROVIDER_HINT,
    ProgressEvent, Step, TranscriptConfig, TranscriptionError, TranscriptionOutcome,
    run_command, truncate_detail, try_in_order,
)

GROQ_MODEL = "whisper-large-v3-turbo"
OPENAI_MODEL = "whisper-1"
FAL_ENDPOINT = "https://fal.run/fal-ai/wizper"

BACKEND_LABELS = {
    "whisper.cpp": "whisper.cpp",
    "groq": "Groq",
    "openai": "OpenAI",
    "fal": "FAL",
}

FORMAT_ERROR_PATTERNS = (
    "unrecognized file format",
    "could not be decoded",
    "format is not supported",
    "invalid file format",
)

PROVIDER_ERRORS = (APIError, requests.RequestException, TranscriptionError, ValueError, OSError)
SUBPROCESS_ERRORS = (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError)


def no_provider_error() -> TranscriptionError:
    return TranscriptionError(f"No transcription providers available ({MISSING_PROVIDER_HINT})")


# ---------------------------------------------------------------------------
# Hosted backends
# ---------------------------------------------------------------------------

def _transcribe_openai_compatible(data: bytes, filename: str, media_type: str,
                                  api_key: str, model: str, base_url: Optional[str],
                                  timeout: float) -> Optional[str]:
    client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
    response = client.audio.transcriptions.create(
        model=model,
        file=(filename, data, media_type),
    )
    text = (getattr(response, "text", None) or "").strip()
    return text or None


def transcribe_with_groq(data: bytes, filename: str, media_type: str,
                         config: TranscriptConfig) -> Optional[str]:
    return _transcribe_openai_compatible(
        data, filename, media_type, config.groq_api_key, GROQ_MODEL,
        config.groq_base_url, config.transcription_timeout)


def transcribe_with_openai(data: bytes, filename: str, media_type: str,
                           config: TranscriptConfig) -> Optional[str]:
    return _transcribe_openai_compatible(
        data, filename, media_type, config.openai_api_key, OPENAI_MODEL,
        config.openai_base_url, config.transcription_timeout)


def transcribe_with_fal(data: bytes, filename: str, media_type: str,
                        config: TranscriptConfig, session=None) -> Optional[str]:
    """Send audio inline as a data URI to FAL's synchronous wizper endpoint."""
    session = session or requests
    encoded = base64.b64encode(data).decode("ascii")
    resp = session.post(
        FAL_ENDPOINT,
        json={"audio_url": f"data:{media_type};base64,{encoded}", "task": "transcribe",
              "language": "en"},
        headers={"Authorization": f"Key {config.fal_api_key}"},
        timeout=config.transcription_timeout,
    )
    if not resp.ok:
        raise TranscriptionError(resp.text or f"HTTP {resp.status_code}", status_code=resp.status_code)
    return extract_fal_text(resp.json())


def extract_fal_text(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return None
    text = data.get("text")
    if isinstance(text, str):
        return text.strip() or None
    chunks = data.get("chunks")
    if isinstance(chunks, list):
        lines = [c["text"].strip() for c in chunks
                 if isinstance(c, dict) and isinstance(c.get("text"), str) and c["text"].strip()]
        return " ".join(lines) or None
    return None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def _error_detail(error: Exception) -> str:
    if isinstance(error, APIStatusError):
        return error.message or str(error)
    if isinstance(error, subprocess.CalledProcessError):
        return (error.stderr or "").strip() or str(error)
    return str(error)


def is_timeout(error: Exception) -> bool:
    return isinstance(error, (APITimeoutError, requests.Timeout, subprocess.TimeoutExpired, TimeoutError))


def is_format_error(error: Exception) -> bool:
    detail = _error_detail(error).lower()
    body = getattr(error, "body", None)
    if body is not None:
        detail += " " + str(body).lower()
    return any(pattern in detail for pattern in FORMAT_ERROR_PATTERNS)


def failure_note(label: str, error: Exception, next_label: Optional[str] = None) -> str:
    """One-line audit note for a failed backend, with a truncated error excerpt."""
    if is_timeout(error):
        note = f"{label} transcription timed out"
    else:
        status = getattr(error, "status_code", None)
        status_part = f" ({status})" if status else ""
        note = f"{label} transcription failed{status_part}: {truncate_detail(_error_detail(error))}"
    if next_label:
        note += f"; falling back to {next_label}"
    return note


# ---------------------------------------------------------------------------
# Hosted fallback chain
# ---------------------------------------------------------------------------

def _hosted_backends(config: TranscriptConfig, session) -> list:
    """(name, call, precondition) for each hosted backend, in priority order."""
    return [
        ("groq", lambda d, fn, mt: transcribe_with_groq(d, fn, mt, config),
         lambda mt: bool(config.groq_api_key)),
        ("openai", lambda d, fn, mt: transcribe_with_openai(d, fn, mt, config),
         lambda mt: bool(config.openai_api_key)),
        ("fal", lambda d, fn, mt: transcribe_with_fal(d, fn, mt, config, session),
         lambda mt: bool(config.fal_api_key)),
    ]


def has_hosted_backend(config: TranscriptConfig) -> bool:
    return bool(config.groq_api_key or config.openai_api_key or config.fal_api_key)


def _transcode_bytes(data: bytes, filename: str, config: TranscriptConfig, runner,
                     notes: list) -> bytes:
    with tempfile.TemporaryDirectory(prefix="media-transcript-transcode-") as tmp:
        source = Path(tmp) / f"input{Path(filename).suffix}"
        source.write_bytes(data)
        target = Path(tmp) / "transcoded.mp3"
        _, transcode_notes = transcode_with_fallback(source, target, config, runner)
        notes.extend(transcode_notes)
        return target.read_bytes()


def transcribe_hosted(data: bytes, media_type: str, filename: str, config: TranscriptConfig,
                      session=None, runner=None, notes: Optional[list] = None) -> TranscriptionOutcome:
    """Run Groq -> OpenAI -> FAL over in-memory media, stopping at the first text."""
    notes = [] if notes is None else notes
    backends = _hosted_backends(config, session)
    state = {
        "data": data, "media_type": media_type, "filename": filename,
        "transcoded": False, "error": None, "provider": None,
    }

    if not any(available(media_type) for _, _, available in backends):
        return TranscriptionOutcome(error=no_provider_error(), notes=notes)

    def _accepts(name):
        return name != "fal" or is_audio_media_type(state["media_type"])

    def _next_label(index):
        for name, _, available in backends[index + 1:]:
            if available(state["media_type"]) and _accepts(name):
                return BACKEND_LABELS[name]
        return None

    def _attempt(index):
        name, call, _ = backends[index]
        label = BACKEND_LABELS[name]
        if not _accepts(name):
            note = f"Skipping FAL transcription: unsupported media type {state['media_type']}"
            notes.append(note)
            if state["error"] is None:
                state["error"] = TranscriptionError(note)
            return None
        state["provider"] = name
        try:
            text = call(state["data"], state["filename"], state["media_type"])
        except PROVIDER_ERRORS as e:
            error = e
            text = None
            if is_format_error(e) and not state["transcoded"]:
                text, error = _retry_after_transcode(label, call, e)
            if text:
                return text
            if error is not None:
                state["error"] = error
                notes.append(failure_note(label, error, _next_label(index)))
                return None
        if not text:
            message = f"{label} transcription returned empty text"
            state["error"] = TranscriptionError(message)
            notes.append(message)
            return None
        return text

    def _retry_after_transcode(label, call, error):
        if not ffmpeg_available(config):
            notes.append(f"{label} could not decode the media; install ffmpeg to transcode and retry")
            return None, error
        notes.append(f"{label} could not decode the media; transcoding via ffmpeg and retrying")
        try:
            converted = _transcode_bytes(state["data"], state["filename"], config, runner, notes)
        except SUBPROCESS_ERRORS as te:
            notes.append(f"ffmpeg transcode failed: {truncate_detail(_error_detail(te))}")
            return None, error
        state.update(data=converted, media_type="audio/mpeg",
                     filename=f"{Path(state['filename']).stem or 'media'}.mp3", transcoded=True)
        try:
            return call(state["data"], state["filename"], state["media_type"]), None
        except PROVIDER_ERRORS as retry_error:
            return None, retry_error

    steps = [
        Step(name, (lambda i=i: _attempt(i)), (lambda available=available: available(media_type)))
        for i, (name, _, available) in enumerate(backends)
    ]
    name, text = try_in_order(steps, succeeded=bool)
    if text:
        return TranscriptionOutcome(text=text, provider=name, notes=notes)
    return TranscriptionOutcome(provider=state["provider"], error=state["error"], notes=notes)


# ---------------------------------------------------------------------------
# Local whisper.cpp backend
# ---------------------------------------------------------------------------

def whisper_cpp_model_label(model_path: str) -> str:
    name = Path(model_path).name
    label = name
    if label.startswith("ggml-"):
        label = label[len("ggml-"):]
    for suffix in (".bin", ".en"):
        if label.lower().endswith(suffix):
            label = label[:-len(suffix)]
    return label.strip() or name


def transcribe_with_whisper_cpp(path: Path, media_type: str, config: TranscriptConfig,
                                runner=None, notes: Optional[list] = None) -> str:
    """Run the whisper.cpp CLI on a file. Raises on failure or empty output."""
    runner = runner or run_command
    notes = [] if notes is None else notes
    path = Path(path)
    ext = path.suffix.lstrip(".").lower() or extension_for_media_type(media_type)

    with tempfile.TemporaryDirectory(prefix="media-transcript-whisper-cpp-") as tmp:
        input_path = path
        if ext not in WHISPER_CPP_EXTENSIONS:
            if not ffmpeg_available(config):
                raise TranscriptionError(
                    f"whisper.cpp supports only flac/mp3/ogg/wav (media type {media_type}); "
                    "install ffmpeg to transcode")
            input_path, transcode_notes = transcode_with_fallback(
                path, Path(tmp) / "input.mp3", config, runner)
            notes.append("whisper.cpp: transcoded media to MP3 via ffmpeg")
            notes.extend(f"whisper.cpp: {n}" for n in transcode_notes)

        output_base = Path(tmp) / "transcript"
        runner(
            [config.whisper_cpp_binary,
             "--model", config.whisper_cpp_model_path,
             "--language", "auto",
             "--no-timestamps",
             "--no-prints",
             "--output-txt",
             "--output-file", str(output_base),
             str(input_path)],
            "transcribing with whisper.cpp", config.verbose,
            timeout=config.transcription_timeout)
        output_txt = output_base.with_suffix(".txt")
        text = output_txt.read_text(encoding="utf-8").strip() if output_txt.exists() else ""

    if not text:
        raise TranscriptionError("whisper.cpp returned empty text")
    notes.append(f"whisper.cpp: model={whisper_cpp_model_label(config.whisper_cpp_model_path)}")
    return text


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _partial_upload_notes(size: int, config: TranscriptConfig) -> list:
    return [
        f"Media too large for Whisper upload ({size / (1024 * 1024):.1f}MB); "
        f"transcribed first {config.max_upload_bytes // (1024 * 1024)}MB only (partial transcript)",
        "install ffmpeg to enable chunked transcription",
    ]


def _emit(on_progress, part_index, parts, processed, total):
    if on_progress is not None:
        on_progress(ProgressEvent(part_index=part_index, parts=parts,
                                  processed_duration_seconds=processed,
                                  total_duration_seconds=total))


def transcribe_chunks(path: Path, config: TranscriptConfig, session=None, runner=None,
                      on_progress: Optional[Callable] = None, notes: Optional[list] = None,
                      total_duration: Optional[float] = None) -> TranscriptionOutcome:
    """Segment oversized media, transcribe parts in order, and join them.

    A failed part aborts the whole transcription; a partial join would hide
    the gap from downstream consumers.
    """
    notes = [] if notes is None else notes
    with tempfile.TemporaryDirectory(prefix="media-transcript-parts-") as tmp:
        try:
            parts = segment_media(path, Path(tmp), config.segment_seconds, config, runner)
        except RuntimeError as e:
            notes.append(str(e))
            return TranscriptionOutcome(error=e, notes=notes)
        except SUBPROCESS_ERRORS as e:
            notes.append(f"ffmpeg segmentation failed: {truncate_detail(_error_detail(e))}")
            notes.extend(_partial_upload_notes(Path(path).stat().st_size, config))
            with open(path, "rb") as f:
                data = f.read(config.max_upload_bytes)
            return transcribe_hosted(data, guess_media_type(path), Path(path).name,
                                     config, session, runner, notes)

        count = len(parts)
        notes.append(f"ffmpeg chunked media into {count} parts")
        print(f"  Transcribing {count} parts...")
        _emit(on_progress, None, count, 0.0 if total_duration else None, total_duration)

        texts = []
        provider = None
        for index, part in enumerate(parts, start=1):
            part_notes = []
            outcome = transcribe_hosted(part.read_bytes(), "audio/mpeg", part.name,
                                        config, session, runner, part_notes)
            for note in part_notes:
                if note not in notes:
                    notes.append(note)
            if not outcome.text:
                notes.append(f"Part {index}/{count} failed; aborting chunked transcription")
                error = outcome.error or TranscriptionError(f"Part {index}/{count} returned no text")
                return TranscriptionOutcome(provider=outcome.provider, error=error, notes=notes)
            texts.append(outcome.text)
            provider = outcome.provider
            processed = index * config.segment_seconds
            if total_duration:
                processed = min(float(processed), total_duration)
            _emit(on_progress, index, count, processed, total_duration)

    text = "\n\n".join(t.strip() for t in texts if t.strip())
    return TranscriptionOutcome(text=text, provider=provider, notes=notes)


def transcribe_media_file(path, media_type: Optional[str], config: TranscriptConfig,
                          session=None, runner=None,
                          on_progress: Optional[Callable] = None) -> TranscriptionOutcome:
    """Transcribe a media file on disk through the full backend chain."""
    notes = []
    path = Path(path)
    if not path.is_file():
        return TranscriptionOutcome(error=FileNotFoundError(f"Media file not found: {path}"),
                                    notes=notes)
    media_type = media_type or guess_media_type(path)
    if not config.has_transcription_provider():
        return TranscriptionOutcome(error=no_provider_error(), notes=notes)

    total_duration = None
    if on_progress is not None:
        total_duration = probe_duration_seconds(path, config, runner)

    if config.has_local_whisper():
        try:
            text = transcribe_with_whisper_cpp(path, media_type, config, runner, notes)
            return TranscriptionOutcome(text=text, provider="whisper.cpp", notes=notes)
        except (TranscriptionError,) + SUBPROCESS_ERRORS as e:
            if not has_hosted_backend(config):
                return TranscriptionOutcome(provider="whisper.cpp", error=e, notes=notes)
            first_hosted = next(BACKEND_LABELS[name] for name, _, available
                                in _hosted_backends(config, session) if available(media_type))
            notes.append(failure_note("whisper.cpp", e, first_hosted))

    size = path.stat().st_size
    if size > config.max_upload_bytes:
        if ffmpeg_available(config):
            return transcribe_chunks(path, config, session, runner, on_progress, notes,
                                     total_duration)
        notes.extend(_partial_upload_notes(size, config))
        with open(path, "rb") as f:
            data = f.read(config.max_upload_bytes)
    else:
        data = path.read_bytes()
    return transcribe_hosted(data, media_type, path.name, config, session, runner, notes)


def transcribe_media_bytes(data: bytes, media_type: Optional[str], config: TranscriptConfig,
                           filename: Optional[str] = None, session=None, runner=None,
                           on_progress: Optional[Callable] = None) -> TranscriptionOutcome:
    """Transcribe in-memory media. Spills to a temp file when a file-based path is needed."""
    media_type = media_type or "audio/mpeg"
    filename = filename or f"media.{extension_for_media_type(media_type)}"
    if not config.has_transcription_provider():
        return TranscriptionOutcome(error=no_provider_error())

    oversized = len(data) > config.max_upload_bytes
    if config.has_local_whisper() or (oversized and ffmpeg_available(config)):
        with tempfile.TemporaryDirectory(prefix="media-transcript-bytes-") as tmp:
            path = Path(tmp) / Path(filename).name
            path.write_bytes(data)
            return transcribe_media_file(path, media_type, config, session, runner, on_progress)

    notes = []
    if oversized:
        notes.extend(_partial_upload_notes(len(data), config))
        data = data[:config.max_upload_bytes]
    return transcribe_hosted(data, media_type, filename, config, session, runner, notes)
