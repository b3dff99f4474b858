"""
Source classification: decide which resolver handles a URL or path.
"""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

YOUTUBE = "youtube"
PODCAST = "podcast"
MEDIA = "media"

YOUTUBE_HOST_RE = re.compile(r"(^|\.)(youtube\.com|youtube-nocookie\.com|youtu\.be)$", re.IGNORECASE)

PODCAST_HOST_SUFFIXES = (
    "spotify.com", "podcasts.apple.com", "podchaser.com", "podbean.com",
    "buzzsprout.com", "spreaker.com", "simplecast.com", "rss.com",
    "libsyn.com", "omny.fm", "acast.com", "transistor.fm", "captivate.fm",
    "soundcloud.com", "ivoox.com", "iheart.com", "megaphone.fm", "pca.st",
    "player.fm", "castbox.fm", "overcast.fm", "pod.link",
)

FEED_HINT_RE = re.compile(r"rss|feed|podcast|\.xml($|[?#])", re.IGNORECASE)

MEDIA_EXTENSIONS = {
    ".mp3", ".m4a", ".aac", ".wav", ".flac", ".ogg", ".oga", ".opus",
    ".mp4", ".m4v", ".mov", ".webm", ".mkv",
}

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")


def is_youtube_url(url: str) -> bool:
    host = urlparse(url).hostname or ""
    return bool(YOUTUBE_HOST_RE.search(host))


def is_podcast_host(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if re.match(r"^music\.amazon\.[a-z.]+$", host) and "/podcasts/" in parsed.path:
        return True
    return any(host == suffix or host.endswith("." + suffix) for suffix in PODCAST_HOST_SUFFIXES)


def is_direct_media_url(url: str) -> bool:
    return Path(urlparse(url).path).suffix.lower() in MEDIA_EXTENSIONS


def extract_youtube_video_id(url: str) -> Optional[str]:
    """Pull the 11-character video id from watch, short, embed and youtu.be URLs."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.endswith("youtu.be"):
        candidate = parsed.path.strip("/").split("/")[0]
        return candidate if _VIDEO_ID_RE.match(candidate) else None
    if not is_youtube_url(url):
        return None
    query_id = parse_qs(parsed.query).get("v", [None])[0]
    if query_id and _VIDEO_ID_RE.match(query_id):
        return query_id
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) >= 2 and parts[0] in ("shorts", "embed", "live", "v"):
        return parts[1] if _VIDEO_ID_RE.match(parts[1]) else None
    return None


def classify_source(url: str) -> str:
    """Return YOUTUBE, PODCAST or MEDIA for a URL or local path."""
    if not url.startswith(("http://", "https://")):
        return MEDIA
    if is_youtube_url(url):
        return YOUTUBE
    if is_podcast_host(url):
        return PODCAST
    if is_direct_media_url(url):
        return MEDIA
    if FEED_HINT_RE.search(url):
        return PODCAST
    return MEDIA
