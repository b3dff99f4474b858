"""
Podcast transcript resolver.

Given an episode page, feed or platform URL, tries in order:
1. RSS <podcast:transcript> on the matching feed item (skips Whisper)
2. Spotify embed audio, then the show's RSS feed found via iTunes Search
3. Apple Podcasts lookup / page metadata -> feed transcript or enclosure
4. og:audio meta tag (possibly a preview clip)
5. yt-dlp audio extraction

Audio found along the way goes through the Whisper engine. The resolver
never raises; failures come back as results with a metadata reason code.
"""

import json
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from media_transcript.apple import (
    extract_apple_ids, extract_apple_title, is_apple_podcasts_url,
    lookup_podcast, search_podcast_episode, search_podcast_feed_url,
)
from media_transcript.fetch import download_remote_media, fetch_text, new_session
from media_transcript.media import guess_media_type
from media_transcript.parsers import (
    FeedEpisode, decode_xml_entities, extract_json_string_field, extract_meta_content,
    find_episode, looks_like_feed, parse_feed, select_transcript_candidate,
    transcript_json_to_text, vtt_to_text,
)
from media_transcript.shared import (
    tprint as print,
    MISSING_PROVIDER_HINT,
    TranscriptConfig, TranscriptionOutcome, TranscriptRequest, TranscriptResult,
    join_notes, normalize_transcript_text, push_once, truncate_detail,
)
from media_transcript.spotify import (
    extract_spotify_episode_id, fetch_spotify_embed, looks_like_preview,
)
from media_transcript.whisper import transcribe_media_file
from media_transcript.ytdlp import fetch_transcript_with_ytdlp


def fetch_feed_transcript_text(session, candidate: dict, timeout: float) -> Optional[str]:
    """Download a <podcast:transcript> target and flatten it to text."""
    body = fetch_text(session, decode_xml_entities(candidate["url"]), timeout=timeout)
    if body is None:
        raise RuntimeError(f"could not download {candidate['url']}")
    stripped = body.strip()
    kind = candidate.get("type") or ""
    if "json" in kind or stripped.startswith(("{", "[")):
        try:
            return transcript_json_to_text(json.loads(stripped))
        except ValueError:
            pass
    if "vtt" in kind or stripped.startswith("WEBVTT") or "-->" in stripped:
        return vtt_to_text(stripped) or None
    return stripped or None


class PodcastFlow:
    """Per-request state shared by the podcast resolution steps."""

    def __init__(self, request: TranscriptRequest):
        self.request = request
        self.config = request.config or TranscriptConfig()
        self.session = request.session or new_session()
        self.runner = request.runner
        self.timeout = self.config.request_timeout
        self.attempted = []
        self.notes = []

    # -- results ----------------------------------------------------------

    def _metadata(self, kind: str, extra: Optional[dict] = None) -> dict:
        metadata = {"provider": "podcast", "kind": kind}
        for key, value in (extra or {}).items():
            if value is not None:
                metadata[key] = value
        return metadata

    def failure(self, reason: str, extra: Optional[dict] = None) -> TranscriptResult:
        metadata = {"provider": "podcast", "reason": reason}
        metadata.update(extra or {})
        return TranscriptResult(attempted=self.attempted, metadata=metadata,
                                notes=join_notes(self.notes))

    def ensure_transcription_provider(self) -> Optional[TranscriptResult]:
        """A terminal result when no backend could transcribe audio, else None."""
        if self.config.has_transcription_provider():
            return None
        self.notes.append(f"Missing transcription provider ({MISSING_PROVIDER_HINT})")
        return TranscriptResult(
            attempted=[],
            metadata={"provider": "podcast", "reason": "missing_transcription_keys"},
            notes=join_notes(self.notes),
        )

    def transcript_result(self, text: str, kind: str, extra: Optional[dict] = None) -> TranscriptResult:
        return TranscriptResult(
            text=normalize_transcript_text(text),
            source="podcastTranscript",
            attempted=self.attempted,
            metadata=self._metadata(kind, extra),
            notes=join_notes(self.notes),
        )

    def whisper_result(self, outcome: TranscriptionOutcome, kind: str,
                       extra: Optional[dict] = None) -> TranscriptResult:
        self.notes.extend(outcome.notes)
        metadata = self._metadata(kind, extra)
        if outcome.text:
            metadata["transcriptionProvider"] = outcome.provider
            return TranscriptResult(
                text=normalize_transcript_text(outcome.text),
                source="whisper",
                attempted=self.attempted,
                metadata=metadata,
                notes=join_notes(self.notes),
            )
        if outcome.error is not None:
            self.notes.append(str(outcome.error))
        metadata["reason"] = "transcription_failed"
        if outcome.provider:
            metadata["transcriptionProvider"] = outcome.provider
        return TranscriptResult(attempted=self.attempted, metadata=metadata,
                                notes=join_notes(self.notes))

    # -- building blocks ------------------------------------------------------

    def transcribe_remote(self, url: str) -> TranscriptionOutcome:
        """Download remote audio and run it through the Whisper engine."""
        push_once(self.attempted, "whisper")
        url = decode_xml_entities(url)
        print(f"  Downloading audio: {url}")
        suffix = Path(urlparse(url).path).suffix or ".mp3"
        with tempfile.TemporaryDirectory(prefix="media-transcript-podcast-") as tmp:
            try:
                path, media_type = download_remote_media(
                    self.session, url, Path(tmp) / f"episode{suffix}",
                    self.config.max_remote_media_bytes, self.config.transcription_timeout)
            except RuntimeError as e:
                return TranscriptionOutcome(error=e)
            if not media_type or not media_type.startswith(("audio/", "video/")):
                media_type = guess_media_type(path)
            return transcribe_media_file(path, media_type, self.config, self.session,
                                         self.runner, self.request.on_progress)

    def transcribe_to_result(self, url: str, kind: str,
                             extra: Optional[dict] = None) -> TranscriptResult:
        guard = self.ensure_transcription_provider()
        if guard is not None:
            return guard
        extra = dict(extra or {})
        extra.setdefault("mediaUrl", decode_xml_entities(url))
        return self.whisper_result(self.transcribe_remote(url), kind, extra)

    def feed_transcript(self, episode: Optional[FeedEpisode]) -> Optional[str]:
        """Text from the episode's <podcast:transcript>, or None."""
        candidate = select_transcript_candidate(episode.transcripts) if episode else None
        if candidate is None:
            return None
        push_once(self.attempted, "podcastTranscript")
        try:
            text = fetch_feed_transcript_text(self.session, candidate, self.timeout)
        except RuntimeError as e:
            self.notes.append(f"RSS <podcast:transcript> fetch failed: {truncate_detail(str(e))}")
            return None
        if not text:
            self.notes.append("RSS <podcast:transcript> was empty")
            return None
        self.notes.append("Used RSS <podcast:transcript> (skipped Whisper)")
        return text

    def fetch_feed(self, feed_url: str) -> list:
        """Episodes of the feed at feed_url; empty when unreachable or not a feed."""
        return parse_feed(fetch_text(self.session, decode_xml_entities(feed_url), timeout=self.timeout))

    # -- flows ----------------------------------------------------------

    def from_feed(self, episodes: list) -> TranscriptResult:
        episode = find_episode(episodes, None)
        text = self.feed_transcript(episode)
        if text:
            return self.transcript_result(text, "rss_podcast_transcript")
        if episode is None or not episode.enclosure_url:
            self.notes.append("Feed has no enclosure")
            return self.failure("no_enclosure_and_no_yt_dlp")
        return self.transcribe_to_result(episode.enclosure_url, "rss_enclosure", {
            "enclosureUrl": episode.enclosure_url,
            "episodeTitle": episode.title,
            "durationSeconds": episode.duration_seconds,
        })

    def from_feed_by_title(self, episodes: list, title: Optional[str], transcript_kind: str,
                           enclosure_kind: str, extra: dict) -> Optional[TranscriptResult]:
        episode = find_episode(episodes, title)
        if episode is None:
            return None
        if title:
            text = self.feed_transcript(episode)
            if text:
                return self.transcript_result(text, transcript_kind, extra)
        if not episode.enclosure_url:
            return None
        extra = dict(extra)
        extra.setdefault("durationSeconds", episode.duration_seconds)
        return self.transcribe_to_result(episode.enclosure_url, enclosure_kind, extra)

    def from_spotify(self, episode_id: str) -> Optional[TranscriptResult]:
        embed, embed_notes = fetch_spotify_embed(self.session, episode_id,
                                                 self.request.scrape_fallback, self.timeout)
        self.notes.extend(embed_notes)
        if embed is None:
            return None
        guard = self.ensure_transcription_provider()
        if guard is not None:
            return guard

        duration = embed["duration_seconds"]
        extra = {
            "episodeTitle": embed["episode_title"],
            "showTitle": embed["show_title"],
            "durationSeconds": duration,
            "drmFormat": embed["drm_format"],
        }

        if embed["audio_url"]:
            outcome = self.transcribe_remote(embed["audio_url"])
            text = (outcome.text or "").strip()
            if text and not looks_like_preview(len(text), duration):
                return self.whisper_result(outcome, "spotify_embed_audio", extra)
            self.notes.extend(outcome.notes)
            if text:
                self.notes.append(
                    f"Spotify embed audio looked like a short clip ({len(text)} chars); "
                    "falling back to iTunes RSS")
            elif outcome.error is not None:
                self.notes.append(f"Spotify embed audio failed: {truncate_detail(str(outcome.error))}")

        if embed["show_title"]:
            feed_url = search_podcast_feed_url(self.session, embed["show_title"], self.timeout)
            episodes = self.fetch_feed(feed_url) if feed_url else []
            if episodes:
                result = self.from_feed_by_title(
                    episodes, embed["episode_title"], "spotify_itunes_rss_transcript",
                    "spotify_itunes_rss_enclosure", dict(extra, feedUrl=feed_url))
                if result is not None:
                    return result

        if embed["episode_title"]:
            episode = search_podcast_episode(self.session, embed["show_title"],
                                             embed["episode_title"], self.timeout)
            if episode:
                return self.transcribe_to_result(
                    episode["url"], "spotify_itunes_search_episode",
                    dict(extra, durationSeconds=duration or episode["duration_seconds"]))

        self.notes.append("Spotify episode fetch failed: no usable audio or feed")
        return self.failure("no_enclosure_and_no_yt_dlp",
                            self._metadata("spotify_itunes_rss_enclosure", extra))

    def from_apple_lookup(self, show_id: str, episode_id: Optional[str]) -> Optional[TranscriptResult]:
        lookup = lookup_podcast(self.session, show_id, episode_id, self.timeout)
        if lookup is None:
            self.notes.append("iTunes lookup returned no results")
            return None
        episode = lookup["episode"] or {}
        extra = {
            "showTitle": lookup["show_title"],
            "episodeTitle": episode.get("title"),
            "durationSeconds": episode.get("duration_seconds"),
            "fileExtension": episode.get("file_extension"),
            "feedUrl": lookup["feed_url"],
        }
        if lookup["feed_url"] and episode.get("title"):
            episodes = self.fetch_feed(lookup["feed_url"])
            text = self.feed_transcript(find_episode(episodes, episode["title"]))
            if text:
                return self.transcript_result(text, "apple_itunes_rss_transcript", extra)
        if episode.get("url"):
            return self.transcribe_to_result(episode["url"], "apple_itunes_episode", extra)
        return None

    def from_apple_page(self, html: str) -> Optional[TranscriptResult]:
        title = extract_apple_title(html)
        feed_url = extract_json_string_field(html, "feedUrl")
        if feed_url:
            episodes = self.fetch_feed(feed_url)
            if episodes:
                result = self.from_feed_by_title(
                    episodes, title, "apple_feed_transcript", "apple_feed_url",
                    {"episodeTitle": title, "feedUrl": feed_url})
                if result is not None:
                    return result
            else:
                self.notes.append(f"Apple feed fetch failed: {feed_url}")
        stream_url = extract_json_string_field(html, "streamUrl")
        if stream_url:
            return self.transcribe_to_result(stream_url, "apple_stream_url", {"episodeTitle": title})
        return None

    def from_ytdlp(self) -> TranscriptResult:
        guard = self.ensure_transcription_provider()
        if guard is not None:
            return guard
        push_once(self.attempted, "yt-dlp")
        outcome = fetch_transcript_with_ytdlp(self.request.url, self.config, self.session,
                                              self.runner, self.request.on_progress)
        return self.whisper_result(outcome, "yt_dlp")

    def resolve(self) -> TranscriptResult:
        url = self.request.url
        html = self.request.html

        if looks_like_feed(html):
            return self.from_feed(parse_feed(html))

        episode_id = extract_spotify_episode_id(url)
        if episode_id:
            result = self.from_spotify(episode_id)
            if result is not None:
                return result

        apple_ids = extract_apple_ids(url)
        if apple_ids and html is None:
            result = self.from_apple_lookup(*apple_ids)
            if result is not None:
                return result

        if html:
            if is_apple_podcasts_url(url) or '"feedUrl"' in html or '"streamUrl"' in html:
                result = self.from_apple_page(html)
                if result is not None:
                    return result
            og_audio = extract_meta_content(html, "og:audio", "og:audio:url", "og:audio:secure_url")
            if og_audio:
                self.notes.append("og:audio URL may be a preview clip")
                return self.transcribe_to_result(og_audio, "og_audio")

        if self.config.yt_dlp_path:
            return self.from_ytdlp()
        return self.failure("no_enclosure_and_no_yt_dlp")


def resolve_podcast_transcript(request: TranscriptRequest) -> TranscriptResult:
    """Resolve a podcast transcript. Never raises."""
    flow = PodcastFlow(request)
    try:
        return flow.resolve()
    except Exception as e:
        flow.notes.append(f"Podcast transcript failed: {truncate_detail(str(e))}")
        return flow.failure("unexpected_error")
