"""
YouTube transcript resolver.

Sources, tried according to the --youtube mode:
- youtubei: the internal get_transcript endpoint, authenticated with the
  bootstrap config embedded in the watch page (ytcfg.set)
- captionTracks: direct caption track download, JSON3 first, XML fallback
- yt-dlp: audio download + Whisper transcription
- apify: third-party transcript scraping actor
"""

import json
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from media_transcript.classify import extract_youtube_video_id
from media_transcript.fetch import BROWSER_USER_AGENT, fetch_text, new_session, post_json
from media_transcript.parsers import (
    extract_assigned_json, extract_balanced_json, lookup_int,
    parse_json3_captions, parse_xml_captions, segments_to_text,
)
from media_transcript.shared import (
    tprint as print,
    MISSING_PROVIDER_HINT, YOUTUBE_MODES,
    CaptionTrack, ConfigurationError, Step, TimedSegment, TranscriptConfig,
    TranscriptRequest, TranscriptResult,
    get_path, join_notes, normalize_transcript_text, try_in_order,
)
from media_transcript.ytdlp import (
    can_transcribe_with_ytdlp, fetch_duration_with_ytdlp, fetch_transcript_with_ytdlp,
)

YOUTUBEI_BASE = "https://www.youtube.com/youtubei/v1"
APIFY_ACTOR_URL = "https://api.apify.com/v2/acts/faVsWy9VTSNVIhWpR/run-sync-get-dataset-items"
APIFY_TIMEOUT = 45

ANDROID_CLIENT_VERSION = "20.10.38"
DEFAULT_WEB_CLIENT_VERSION = "2.20240101.00.00"

TRANSCRIPT_PARAMS_RE = re.compile(r'"getTranscriptEndpoint":\{"params":"([^"]+)"\}')
PAGE_BOOTSTRAP_RE = re.compile(r"ytcfg\.set|ytInitialPlayerResponse")


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


# ---------------------------------------------------------------------------
# youtubei bootstrap + get_transcript
# ---------------------------------------------------------------------------

def extract_youtubei_bootstrap(html: Optional[str]) -> Optional[dict]:
    """Collect the innertube API key, context and client headers from ytcfg.set calls."""
    if not html:
        return None
    cfg = {}
    for match in re.finditer(r"ytcfg\.set\(\s*\{", html):
        raw = extract_balanced_json(html, match.end() - 1)
        if not raw:
            continue
        try:
            value = json.loads(raw)
        except ValueError:
            continue
        if isinstance(value, dict):
            cfg.update(value)

    api_key = cfg.get("INNERTUBE_API_KEY")
    context = cfg.get("INNERTUBE_CONTEXT")
    if not isinstance(api_key, str) or not isinstance(context, dict):
        return None
    return {
        "api_key": api_key,
        "context": context,
        "visitor_data": cfg.get("VISITOR_DATA") or get_path(context, "client", "visitorData"),
        "client_name": cfg.get("INNERTUBE_CONTEXT_CLIENT_NAME"),
        "client_version": cfg.get("INNERTUBE_CONTEXT_CLIENT_VERSION")
        or get_path(context, "client", "clientVersion"),
        "page_cl": cfg.get("PAGE_CL"),
        "page_label": cfg.get("PAGE_BUILD_LABEL"),
        "xsrf_token": cfg.get("XSRF_TOKEN"),
    }


def _youtubei_headers(bootstrap: dict, video_url: str) -> dict:
    headers = {
        "Origin": "https://www.youtube.com",
        "Referer": video_url,
        "X-Goog-AuthUser": "0",
        "X-Youtube-Bootstrap-Logged-In": "false",
    }
    optional = {
        "X-Youtube-Client-Name": bootstrap.get("client_name"),
        "X-Youtube-Client-Version": bootstrap.get("client_version"),
        "X-Goog-Visitor-Id": bootstrap.get("visitor_data"),
        "X-Youtube-Page-CL": bootstrap.get("page_cl"),
        "X-Youtube-Page-Label": bootstrap.get("page_label"),
    }
    for name, value in optional.items():
        if value is not None and value != "":
            headers[name] = str(value)
    return headers


def _context_with_url(bootstrap: dict, video_url: str) -> dict:
    context = dict(bootstrap["context"])
    client = dict(context.get("client") or {})
    client["originalUrl"] = video_url
    context["client"] = client
    return context


def extract_transcript_params(html: Optional[str]) -> Optional[str]:
    if not html:
        return None
    match = TRANSCRIPT_PARAMS_RE.search(html)
    return match.group(1) if match else None


def _ms(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_youtubei_transcript(data) -> list:
    """Pull timed lines out of a get_transcript response."""
    initial = get_path(
        data, "actions", 0, "updateEngagementPanelAction", "content", "transcriptRenderer",
        "content", "transcriptSearchPanelRenderer", "body", "transcriptSegmentListRenderer",
        "initialSegments")
    if not isinstance(initial, list):
        return []
    segments = []
    for item in initial:
        renderer = get_path(item, "transcriptSegmentRenderer")
        runs = get_path(renderer, "snippet", "runs")
        if not isinstance(runs, list):
            continue
        text = "".join(r.get("text", "") for r in runs if isinstance(r, dict)).strip()
        if not text:
            continue
        segments.append(TimedSegment(
            start_ms=_ms(renderer.get("startMs")) or 0,
            end_ms=_ms(renderer.get("endMs")),
            text=text,
        ))
    return segments


def fetch_transcript_from_youtubei(session, bootstrap: dict, params: str, video_url: str,
                                   timeout: float = 30.0) -> list:
    payload = {"context": _context_with_url(bootstrap, video_url), "params": params}
    data = post_json(
        session,
        f"{YOUTUBEI_BASE}/get_transcript?key={bootstrap['api_key']}",
        payload,
        headers=_youtubei_headers(bootstrap, video_url),
        timeout=timeout,
    )
    return parse_youtubei_transcript(data)


# ---------------------------------------------------------------------------
# Caption tracks
# ---------------------------------------------------------------------------

def _is_english(language_code: str) -> bool:
    code = language_code.lower()
    return code == "en" or code.startswith("en-")


def _is_auto_track(track: CaptionTrack) -> bool:
    return track.is_auto or track.kind == "asr"


def select_caption_tracks(tracks: list) -> list:
    """Order tracks manual-first then English-first (stable), one per language."""
    ordered = sorted(tracks, key=lambda t: (_is_auto_track(t), not _is_english(t.language_code)))
    seen = set()
    selected = []
    for track in ordered:
        key = track.language_code.lower()
        if key in seen:
            continue
        seen.add(key)
        selected.append(track)
    return selected


def _to_track(raw, is_auto: bool) -> Optional[CaptionTrack]:
    if not isinstance(raw, dict):
        return None
    base_url = raw.get("baseUrl") or raw.get("url")
    language_code = raw.get("languageCode")
    if not isinstance(base_url, str) or not isinstance(language_code, str):
        return None
    return CaptionTrack(language_code=language_code, base_url=base_url,
                        kind=raw.get("kind"), is_auto=is_auto)


def extract_caption_tracks(player_response, skip_auto_generated: bool = False) -> list:
    """Candidate caption tracks from a player response, in download priority order.

    With skip_auto_generated the automatic captions list is ignored entirely
    and any track tagged kind == "asr" is dropped as well.
    """
    renderer = (get_path(player_response, "captions", "playerCaptionsTracklistRenderer")
                or get_path(player_response, "playerCaptionsTracklistRenderer"))
    if not isinstance(renderer, dict):
        return []
    manual = renderer.get("captionTracks") if isinstance(renderer.get("captionTracks"), list) else []
    candidates = [_to_track(t, is_auto=False) for t in manual]
    if not skip_auto_generated:
        auto = renderer.get("automaticCaptions")
        if isinstance(auto, list):
            candidates += [_to_track(t, is_auto=True) for t in auto]
    candidates = [c for c in candidates if c is not None]
    if skip_auto_generated:
        candidates = [c for c in candidates if c.kind != "asr"]
    return select_caption_tracks(candidates)


def _with_query(url: str, **params) -> str:
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in params]
    query += list(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


def _parse_caption_body(body: Optional[str]) -> list:
    if not body or not body.strip():
        return []
    stripped = body.lstrip()
    if stripped.startswith("{"):
        try:
            return parse_json3_captions(json.loads(stripped))
        except ValueError:
            return []
    return parse_xml_captions(body)


def fetch_caption_track(session, track: CaptionTrack, timeout: float = 30.0) -> list:
    """Download one track: JSON3 first, then the plain XML form."""
    segments = _parse_caption_body(
        fetch_text(session, _with_query(track.base_url, fmt="json3", alt="json"), timeout=timeout))
    if segments:
        return segments
    xml_url = re.sub(r"&fmt=[^&]*", "", track.base_url)
    return _parse_caption_body(fetch_text(session, xml_url, timeout=timeout))


def fetch_player_response(session, video_id: str, bootstrap: dict, timeout: float = 30.0):
    video_url = watch_url(video_id)
    return post_json(
        session,
        f"{YOUTUBEI_BASE}/player?key={bootstrap['api_key']}",
        {"context": _context_with_url(bootstrap, video_url), "videoId": video_id},
        headers=_youtubei_headers(bootstrap, video_url),
        timeout=timeout,
    )


def fetch_player_response_android(session, video_id: str, timeout: float = 30.0):
    payload = {
        "context": {"client": {
            "clientName": "ANDROID",
            "clientVersion": ANDROID_CLIENT_VERSION,
            "androidSdkVersion": 34,
            "hl": "en",
        }},
        "videoId": video_id,
    }
    headers = {
        "User-Agent": f"com.google.android.youtube/{ANDROID_CLIENT_VERSION} (Linux; U; Android 14) gzip",
        "X-Youtube-Client-Name": "3",
        "X-Youtube-Client-Version": ANDROID_CLIENT_VERSION,
    }
    return post_json(session, f"{YOUTUBEI_BASE}/player", payload, headers=headers, timeout=timeout)


def fetch_transcript_from_caption_tracks(session, html: Optional[str], video_id: str,
                                         bootstrap: Optional[dict] = None,
                                         skip_auto_generated: bool = False,
                                         timeout: float = 30.0) -> Optional[list]:
    """Find caption tracks (page, then player APIs) and return the first non-empty one."""
    player = extract_assigned_json(html, "ytInitialPlayerResponse") if html else None
    tracks = extract_caption_tracks(player, skip_auto_generated) if player else []
    if not tracks and bootstrap:
        tracks = extract_caption_tracks(
            fetch_player_response(session, video_id, bootstrap, timeout), skip_auto_generated)
    if not tracks:
        tracks = extract_caption_tracks(
            fetch_player_response_android(session, video_id, timeout), skip_auto_generated)
    for track in tracks:
        segments = fetch_caption_track(session, track, timeout)
        if segments:
            return segments
    return None


# ---------------------------------------------------------------------------
# Apify actor
# ---------------------------------------------------------------------------

def fetch_transcript_with_apify(session, url: str, token: str) -> Optional[str]:
    """Run the transcript scraper actor synchronously. Any failure returns None."""
    try:
        resp = session.post(
            APIFY_ACTOR_URL,
            params={"token": token},
            json={"videoUrl": url},
            headers={"Content-Type": "application/json"},
            timeout=APIFY_TIMEOUT,
        )
        if not resp.ok:
            return None
        payload = resp.json()
    except (requests.RequestException, ValueError):
        return None
    if not isinstance(payload, list):
        return None
    for item in payload:
        data = item.get("data") if isinstance(item, dict) else None
        if not isinstance(data, list):
            continue
        lines = [d["text"].strip() for d in data
                 if isinstance(d, dict) and isinstance(d.get("text"), str) and d["text"].strip()]
        if lines:
            return "\n".join(lines)
    return None


# ---------------------------------------------------------------------------
# Duration
# ---------------------------------------------------------------------------

def _duration_from_player(player) -> Optional[int]:
    return (lookup_int(player, "videoDetails", "lengthSeconds")
            or lookup_int(player, "microformat", "playerMicroformatRenderer", "lengthSeconds"))


def extract_duration_from_html(html: Optional[str]) -> Optional[int]:
    if not html:
        return None
    duration = _duration_from_player(extract_assigned_json(html, "ytInitialPlayerResponse"))
    if duration:
        return duration
    match = re.search(r'"lengthSeconds"\s*:\s*"(\d+)"', html)
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    match = re.search(r'"approxDurationMs"\s*:\s*"(\d+)"', html)
    if match and int(match.group(1)) > 0:
        return int(match.group(1)) // 1000
    return None


def fetch_duration_from_player_api(session, html: Optional[str], video_id: str,
                                   timeout: float = 30.0) -> Optional[int]:
    if not html:
        return None
    key_match = re.search(r'"INNERTUBE_API_KEY"\s*:\s*"([^"]+)"', html)
    if not key_match:
        return None
    version_match = re.search(r'"INNERTUBE_CONTEXT_CLIENT_VERSION"\s*:\s*"([^"]+)"', html)
    payload = {
        "context": {"client": {
            "clientName": "WEB",
            "clientVersion": version_match.group(1) if version_match else DEFAULT_WEB_CLIENT_VERSION,
        }},
        "videoId": video_id,
    }
    data = post_json(session, f"{YOUTUBEI_BASE}/player?key={key_match.group(1)}", payload,
                     timeout=timeout)
    return _duration_from_player(data)


def resolve_duration(session, html: Optional[str], video_id: str, url: str,
                     config: TranscriptConfig, runner=None) -> Optional[float]:
    """Page metadata, then the player API, then yt-dlp; first hit wins."""
    duration = extract_duration_from_html(html)
    if duration is None:
        duration = fetch_duration_from_player_api(session, html, video_id, config.request_timeout)
    if duration is None:
        duration = fetch_duration_with_ytdlp(url, config, runner)
    return duration


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

def _unavailable(attempted: list, notes: list) -> TranscriptResult:
    return TranscriptResult(
        text=None,
        source="unavailable",
        attempted=attempted + ["unavailable"],
        metadata={"provider": "youtube", "reason": "no_transcript_available"},
        notes=join_notes(notes),
    )


def _refetch_watch_page(session, video_id: str, timeout: float) -> Optional[str]:
    return fetch_text(session, watch_url(video_id),
                      headers={"User-Agent": BROWSER_USER_AGENT,
                               "Accept-Language": "en-US,en;q=0.9"},
                      timeout=timeout)


def resolve_youtube_transcript(request: TranscriptRequest) -> TranscriptResult:
    """Resolve a YouTube transcript according to request.mode.

    Raises ConfigurationError only when an explicitly requested mode cannot
    run with the configured credentials.
    """
    config = request.config or TranscriptConfig()
    session = request.session or new_session()
    runner = request.runner
    mode = request.mode
    if mode not in YOUTUBE_MODES:
        raise ConfigurationError(f"Unknown --youtube mode: {mode} (expected {', '.join(YOUTUBE_MODES)})")

    html = request.html
    if html is None and mode != "apify":
        return TranscriptResult()
    video_id = request.resource_key or extract_youtube_video_id(request.url)
    if not video_id:
        return TranscriptResult()

    timeout = config.request_timeout
    video_url = request.url

    def _success(source, text, segments=None, extra=None):
        metadata = {"provider": source}
        metadata.update(extra or {})
        duration = resolve_duration(session, html, video_id, video_url, config, runner)
        if duration:
            metadata["durationSeconds"] = duration
        return TranscriptResult(
            text=normalize_transcript_text(text),
            source=source,
            attempted=attempted,
            metadata=metadata,
            notes=join_notes(notes),
            segments=segments if request.transcript_timestamps else None,
        )

    attempted = []
    notes = []

    if mode == "apify":
        if not config.apify_api_token:
            raise ConfigurationError("Missing APIFY_API_TOKEN for --youtube apify")
        attempted.append("apify")
        print("  Fetching transcript via Apify...")
        text = fetch_transcript_with_apify(session, video_url, config.apify_api_token)
        if text:
            return _success("apify", text)
        return _unavailable(attempted, notes)

    if mode == "yt-dlp":
        if not config.yt_dlp_path:
            raise ConfigurationError(
                "Missing yt-dlp binary for --youtube yt-dlp (set YT_DLP_PATH or install yt-dlp)")
        if not config.has_transcription_provider():
            raise ConfigurationError(
                f"Missing transcription provider for --youtube yt-dlp ({MISSING_PROVIDER_HINT})")

    if html is not None and not PAGE_BOOTSTRAP_RE.search(html):
        refetched = _refetch_watch_page(session, video_id, timeout)
        if refetched and PAGE_BOOTSTRAP_RE.search(refetched):
            html = refetched
    bootstrap = extract_youtubei_bootstrap(html)
    found = {}

    def _youtubei():
        params = extract_transcript_params(html)
        if not params:
            return None
        print("  Trying youtubei transcript endpoint...")
        segments = fetch_transcript_from_youtubei(session, bootstrap, params, video_url, timeout)
        return segments or None

    def _caption_tracks():
        print("  Trying caption tracks...")
        return fetch_transcript_from_caption_tracks(
            session, html, video_id, bootstrap,
            skip_auto_generated=(mode == "no-auto"), timeout=timeout)

    def _ytdlp():
        if mode == "no-auto":
            if not config.yt_dlp_path:
                raise ConfigurationError(
                    "--youtube no-auto requires yt-dlp (set YT_DLP_PATH or install yt-dlp)")
            if not config.has_transcription_provider():
                raise ConfigurationError(
                    f"Missing transcription provider for --youtube no-auto ({MISSING_PROVIDER_HINT})")
            notes.append("No creator captions found, using yt-dlp transcription")
        outcome = fetch_transcript_with_ytdlp(video_url, config, session, runner, request.on_progress)
        notes.extend(outcome.notes)
        if outcome.text:
            found["transcription_provider"] = outcome.provider
            return outcome.text
        if outcome.error is not None:
            if mode == "yt-dlp":
                raise outcome.error
            notes.append(f"yt-dlp transcription failed: {outcome.error}")
        return None

    def _apify():
        print("  Falling back to Apify...")
        return fetch_transcript_with_apify(session, video_url, config.apify_api_token)

    steps = []
    if mode in ("auto", "web"):
        steps.append(Step("youtubei", _youtubei, when=lambda: bootstrap is not None))
    if mode in ("auto", "web", "no-auto"):
        steps.append(Step("captionTracks", _caption_tracks))
    if mode == "auto":
        steps.append(Step("yt-dlp", _ytdlp, when=lambda: can_transcribe_with_ytdlp(config)))
        steps.append(Step("apify", _apify, when=lambda: bool(config.apify_api_token)))
    elif mode in ("no-auto", "yt-dlp"):
        steps.append(Step("yt-dlp", _ytdlp))

    name, result = try_in_order(steps, attempted)
    if name is None:
        return _unavailable(attempted, notes)
    if name in ("youtubei", "captionTracks"):
        extra = {"manualOnly": True} if mode == "no-auto" else None
        return _success(name, segments_to_text(result), segments=result, extra=extra)
    if name == "yt-dlp":
        return _success(name, result,
                        extra={"transcriptionProvider": found.get("transcription_provider")})
    return _success(name, result)
