"""
Spotify episode helpers: embed page metadata and the preview-clip check.
"""

import re
from typing import Optional

from media_transcript.fetch import fetch_text
from media_transcript.parsers import extract_script_json
from media_transcript.shared import tprint as print, get_path

SPOTIFY_EPISODE_RE = re.compile(r"open\.spotify\.com/(?:embed/)?episode/([A-Za-z0-9]+)")

BLOCKED_HTML_RE = re.compile(
    r"access denied|attention required|captcha|recaptcha|cloudflare|forbidden|verify you are human",
    re.IGNORECASE,
)

# Embed audio that transcribes to less text than this is a short promo clip
SPOTIFY_PREVIEW_MIN_CHARS = 200
# Below this many chars, long (or unknown-length) episodes are also treated as clips
SPOTIFY_PREVIEW_SHORT_CHARS = 800
SPOTIFY_PREVIEW_LONG_SECONDS = 600


def extract_spotify_episode_id(url: str) -> Optional[str]:
    match = SPOTIFY_EPISODE_RE.search(url)
    return match.group(1) if match else None


def spotify_embed_url(episode_id: str) -> str:
    return f"https://open.spotify.com/embed/episode/{episode_id}"


def is_blocked_html(text: str) -> bool:
    return bool(BLOCKED_HTML_RE.search(text)) and "__next_data__" not in text.lower()


def parse_spotify_embed(html: str) -> Optional[dict]:
    """Episode metadata from the embed page's __NEXT_DATA__ JSON."""
    data = extract_script_json(html, "__NEXT_DATA__")
    state = get_path(data, "props", "pageProps", "state", "data")
    entity = get_path(state, "entity")
    if not isinstance(entity, dict):
        return None

    duration_ms = entity.get("duration")
    if isinstance(duration_ms, dict):
        duration_ms = duration_ms.get("totalMilliseconds")
    duration_seconds = None
    if isinstance(duration_ms, (int, float)) and duration_ms > 0:
        duration_seconds = round(duration_ms / 1000)

    audio = get_path(state, "defaultAudioFileObject") or get_path(entity, "defaultAudioFileObject")
    urls = get_path(audio, "url")
    if isinstance(urls, str):
        urls = [urls]
    urls = [u for u in (urls or []) if isinstance(u, str) and u.startswith("http")]
    preferred = [u for u in urls if "scdn.co" in u]
    audio_url = (preferred or urls or [None])[0]

    return {
        "show_title": entity.get("subtitle") if isinstance(entity.get("subtitle"), str) else None,
        "episode_title": entity.get("title") or entity.get("name"),
        "duration_seconds": duration_seconds,
        "audio_url": audio_url,
        "drm_format": get_path(audio, "format"),
    }


def fetch_spotify_embed(session, episode_id: str, scrape_fallback=None,
                        timeout: float = 30.0) -> tuple:
    """Fetch and parse the embed page; retry through scrape_fallback when blocked.

    Returns (embed_metadata_or_None, notes).
    """
    notes = []
    url = spotify_embed_url(episode_id)
    html = fetch_text(session, url, headers={"Referer": "https://open.spotify.com/"}, timeout=timeout)
    if html is not None and is_blocked_html(html):
        notes.append("Spotify embed page looked blocked")
        html = None
        if scrape_fallback is not None:
            print("  Spotify embed blocked, retrying via scrape fallback...")
            html = scrape_fallback(url)
            if html and is_blocked_html(html):
                notes.append("Spotify embed still blocked via scrape fallback")
                html = None
            elif html:
                notes.append("Fetched Spotify embed via scrape fallback")
    if not html:
        notes.append("Spotify embed metadata unavailable")
        return None, notes
    embed = parse_spotify_embed(html)
    if embed is None:
        notes.append("Spotify embed page had no episode data")
    return embed, notes


def looks_like_preview(text_length: int, duration_seconds: Optional[float]) -> bool:
    """True when transcribed embed audio is implausibly short for the episode."""
    if text_length <= 0:
        return False
    if text_length < SPOTIFY_PREVIEW_MIN_CHARS:
        return True
    if text_length < SPOTIFY_PREVIEW_SHORT_CHARS:
        return duration_seconds is None or duration_seconds >= SPOTIFY_PREVIEW_LONG_SECONDS
    return False
