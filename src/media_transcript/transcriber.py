#!/usr/bin/env python3
"""
Media Transcript
================
Resolves a media reference into plain transcript text.

Resolution order:
1. Classify the input (YouTube, podcast page/feed, or plain media)
2. Try native transcripts (YouTube captions, RSS <podcast:transcript>)
3. Fall back to speech-to-text (whisper.cpp, Groq, OpenAI, FAL)
4. Split oversized media with ffmpeg and join the part transcripts

Usage:
    media-transcript <url-or-file> [options]

Examples:
    # YouTube captions, falling back to yt-dlp + Whisper
    media-transcript "https://youtube.com/watch?v=..."

    # Only creator-authored captions
    media-transcript "https://youtube.com/watch?v=..." --youtube no-auto

    # Podcast episode, JSON output with provider notes
    media-transcript "https://podcasts.apple.com/us/podcast/...?i=..." --json

    # Local audio file
    media-transcript ./interview.m4a -o interview.txt
"""

import argparse
import dataclasses
import hashlib
import json
import sys
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from media_transcript import __version__
from media_transcript.apple import is_apple_podcasts_url
from media_transcript.classify import (
    PODCAST, YOUTUBE, classify_source, is_direct_media_url,
)
from media_transcript.fetch import download_remote_media, fetch_text, new_session
from media_transcript.media import guess_media_type
from media_transcript.podcast import resolve_podcast_transcript
from media_transcript.shared import (
    tprint as print,
    MISSING_PROVIDER_HINT, YOUTUBE_MODES,
    TranscriptConfig, TranscriptRequest, TranscriptResult,
    check_dependencies, join_notes, normalize_transcript_text,
)
from media_transcript.spotify import extract_spotify_episode_id
from media_transcript.whisper import transcribe_media_file
from media_transcript.youtube import resolve_youtube_transcript

SECTION_SEPARATOR = "=" * 50


class JsonFileCache:
    """Transcript cache keyed by resource key, one JSON file per entry."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{digest}.json"

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError):
            return None

    def set(self, key: str, value: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self._path(key), "w") as f:
            json.dump(value, f, indent=2)


def transcribe_media_source(request: TranscriptRequest) -> TranscriptResult:
    """Transcribe a local file or a direct remote media URL with Whisper."""
    config = request.config
    attempted = ["whisper"]
    metadata = {"provider": "media"}
    if not config.has_transcription_provider():
        return TranscriptResult(
            attempted=[],
            metadata={"provider": "media", "reason": "missing_transcription_keys"},
            notes=f"Missing transcription provider ({MISSING_PROVIDER_HINT})",
        )

    with tempfile.TemporaryDirectory(prefix="media-transcript-") as tmp:
        if request.url.startswith(("http://", "https://")):
            suffix = Path(urlparse(request.url).path).suffix or ".mp3"
            print(f"  Downloading media: {request.url}")
            try:
                path, media_type = download_remote_media(
                    request.session, request.url, Path(tmp) / f"media{suffix}",
                    config.max_remote_media_bytes, config.transcription_timeout)
            except RuntimeError as e:
                return TranscriptResult(attempted=attempted,
                                        metadata=dict(metadata, reason="download_failed"),
                                        notes=str(e))
            if not media_type or not media_type.startswith(("audio/", "video/")):
                media_type = guess_media_type(path)
        else:
            path = Path(request.url).expanduser()
            if not path.is_file():
                raise FileNotFoundError(f"Media file not found: {path}")
            media_type = guess_media_type(path)
            metadata["path"] = str(path)

        print(f"  Transcribing {path.name} ({media_type})...")
        outcome = transcribe_media_file(path, media_type, config, request.session,
                                        request.runner, request.on_progress)

    notes = list(outcome.notes)
    if outcome.text:
        metadata["transcriptionProvider"] = outcome.provider
        return TranscriptResult(text=normalize_transcript_text(outcome.text), source="whisper",
                                attempted=attempted, metadata=metadata,
                                notes=join_notes(notes))
    if outcome.error is not None:
        notes.append(str(outcome.error))
    metadata["reason"] = "transcription_failed"
    return TranscriptResult(attempted=attempted, metadata=metadata, notes=join_notes(notes))


def resolve_transcript(request: TranscriptRequest, cache=None) -> TranscriptResult:
    """Classify the input and run the matching resolver.

    The cache is any object with get(key) / set(key, value); it is read
    before resolving and written after a successful resolution.
    """
    key = request.resource_key or request.url
    if cache is not None:
        cached = cache.get(key)
        if cached and cached.get("text"):
            print("  Reusing cached transcript")
            return TranscriptResult.from_dict(cached)

    config = request.config or TranscriptConfig.from_env()
    session = request.session or new_session()
    request = dataclasses.replace(request, config=config, session=session)
    kind = classify_source(request.url)
    print(f"  Source type: {kind}")

    if kind == YOUTUBE:
        if request.html is None and request.mode != "apify":
            request = dataclasses.replace(
                request, html=fetch_text(session, request.url, timeout=config.request_timeout))
        result = resolve_youtube_transcript(request)
    elif kind == PODCAST:
        needs_page = not (extract_spotify_episode_id(request.url) or is_apple_podcasts_url(request.url))
        if request.html is None and needs_page:
            request = dataclasses.replace(
                request, html=fetch_text(session, request.url, timeout=config.request_timeout))
        result = resolve_podcast_transcript(request)
    elif request.url.startswith(("http://", "https://")) and not is_direct_media_url(request.url):
        # Unknown web page: let the podcast resolver look for feeds, og:audio or yt-dlp
        if request.html is None:
            request = dataclasses.replace(
                request, html=fetch_text(session, request.url, timeout=config.request_timeout))
        result = resolve_podcast_transcript(request)
    else:
        result = transcribe_media_source(request)

    if cache is not None and result.text:
        cache.set(key, result.to_dict())
    return result


def _print_result_summary(result: TranscriptResult) -> None:
    print(SECTION_SEPARATOR)
    print(f"  Source: {result.source or 'none'}")
    if result.attempted:
        print(f"  Attempted: {', '.join(result.attempted)}")
    for key in ("transcriptionProvider", "durationSeconds", "reason"):
        if result.metadata.get(key) is not None:
            print(f"  {key}: {result.metadata[key]}")
    if result.notes:
        print(f"  Notes: {result.notes}")
    print(SECTION_SEPARATOR)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="media-transcript",
        description="Fetch or transcribe the transcript of a video, podcast episode or media file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s "https://youtube.com/watch?v=..."
  %(prog)s "https://youtube.com/watch?v=..." --youtube web --timestamps --json
  %(prog)s "https://open.spotify.com/episode/..."
  %(prog)s ./talk.mp3 -o talk.txt
        """
    )
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")

    # Input
    input_group = parser.add_argument_group("input")
    input_group.add_argument("url", help="URL of a video, podcast episode or feed, or a local media file")
    input_group.add_argument("--youtube", choices=YOUTUBE_MODES, default="auto",
                             help="YouTube transcript strategy (default: auto)")

    # Output
    output_group = parser.add_argument_group("output")
    output_group.add_argument("-o", "--output",
                              help="Write the transcript (or JSON) to this file instead of stdout")
    output_group.add_argument("--json", action="store_true",
                              help="Emit the full result (text, source, attempted providers, notes) as JSON")
    output_group.add_argument("--timestamps", action="store_true",
                              help="Include timed segments when the source provides them")

    # Pipeline
    pipeline_group = parser.add_argument_group("pipeline")
    pipeline_group.add_argument("--cache-dir",
                                help="Directory for cached transcripts (reused on re-runs)")
    pipeline_group.add_argument("--segment-seconds", type=int, default=600,
                                help="Part length when splitting oversized media (default: 600)")
    pipeline_group.add_argument("-v", "--verbose", action="store_true",
                                help="Show commands and extra progress")

    args = parser.parse_args(argv)

    if args.segment_seconds <= 0:
        parser.error("--segment-seconds must be positive")

    config = TranscriptConfig.from_env(verbose=args.verbose, segment_seconds=args.segment_seconds)

    if args.verbose:
        print("Checking dependencies...")
        for tool, ok in check_dependencies(config).items():
            print(f"  {tool}: {'OK' if ok else 'missing'}")

    request = TranscriptRequest(
        url=args.url,
        mode=args.youtube,
        config=config,
        transcript_timestamps=args.timestamps,
        on_progress=_print_progress if args.verbose else None,
    )
    cache = JsonFileCache(Path(args.cache_dir)) if args.cache_dir else None

    print(f"Resolving transcript: {args.url}")
    try:
        result = resolve_transcript(request, cache)
    except (RuntimeError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    _print_result_summary(result)

    if args.json:
        output = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    else:
        output = result.text or ""

    if not result.text:
        print("No transcript available.")
        if args.json:
            sys.stdout.write(output + "\n")
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
        print(f"Transcript saved: {args.output}")
    else:
        sys.stdout.write(output + "\n")


def _print_progress(event) -> None:
    if event.part_index is None:
        print(f"  Progress: {event.parts or '?'} parts queued")
    else:
        print(f"  Progress: part {event.part_index}/{event.parts}")


if __name__ == "__main__":
    main()
