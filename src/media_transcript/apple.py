"""
Apple Podcasts and iTunes Search helpers.
"""

import re
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

from media_transcript.fetch import fetch_json
from media_transcript.parsers import extract_meta_content, normalize_title

ITUNES_SEARCH_URL = "https://itunes.apple.com/search"
ITUNES_LOOKUP_URL = "https://itunes.apple.com/lookup"


def is_apple_podcasts_url(url: str) -> bool:
    return (urlparse(url).hostname or "").lower().endswith("podcasts.apple.com")


def extract_apple_ids(url: str) -> Optional[tuple]:
    """(show_id, episode_id_or_None) from a podcasts.apple.com URL."""
    if not is_apple_podcasts_url(url):
        return None
    parsed = urlparse(url)
    match = re.search(r"/id(\d+)", parsed.path)
    if not match:
        return None
    episode_id = parse_qs(parsed.query).get("i", [None])[0]
    if episode_id and not episode_id.isdigit():
        episode_id = None
    return match.group(1), episode_id


def extract_apple_title(html: str) -> Optional[str]:
    return extract_meta_content(html, "apple:title", "og:title")


def _itunes(session, base: str, params: dict, timeout: float):
    data = fetch_json(session, f"{base}?{urlencode(params)}", timeout=timeout)
    results = data.get("results") if isinstance(data, dict) else None
    return results if isinstance(results, list) else []


def lookup_podcast(session, show_id: str, episode_id: Optional[str] = None,
                   timeout: float = 30.0) -> Optional[dict]:
    """Show feed URL and the requested (or newest) episode via the iTunes lookup API."""
    results = _itunes(session, ITUNES_LOOKUP_URL,
                      {"id": show_id, "entity": "podcastEpisode", "limit": 200}, timeout)
    if not results:
        return None
    show = next((r for r in results if isinstance(r, dict)
                 and r.get("wrapperType") == "track" and r.get("kind") == "podcast"), None)
    episodes = [r for r in results if isinstance(r, dict)
                and (r.get("wrapperType") == "podcastEpisode" or r.get("kind") == "podcast-episode")]

    episode = None
    if episode_id:
        episode = next((e for e in episodes if str(e.get("trackId")) == episode_id), None)
    if episode is None and episodes:
        episode = max(episodes, key=lambda e: e.get("releaseDate") or "")

    return {
        "feed_url": show.get("feedUrl") if show else None,
        "show_title": show.get("collectionName") if show else None,
        "episode": _episode_summary(episode) if episode else None,
    }


def _episode_summary(episode: dict) -> dict:
    millis = episode.get("trackTimeMillis")
    return {
        "title": episode.get("trackName"),
        "url": episode.get("episodeUrl") or episode.get("previewUrl"),
        "duration_seconds": round(millis / 1000) if isinstance(millis, (int, float)) and millis > 0 else None,
        "file_extension": episode.get("episodeFileExtension"),
    }


def search_podcast_feed_url(session, show_title: str, timeout: float = 30.0) -> Optional[str]:
    """Feed URL for a show, preferring an exact (normalized) collection name match."""
    results = _itunes(session, ITUNES_SEARCH_URL,
                      {"term": show_title, "media": "podcast", "entity": "podcast", "limit": 10},
                      timeout)
    results = [r for r in results if isinstance(r, dict) and r.get("feedUrl")]
    if not results:
        return None
    wanted = normalize_title(show_title)
    for result in results:
        if normalize_title(result.get("collectionName") or "") == wanted:
            return result["feedUrl"]
    return results[0]["feedUrl"]


def search_podcast_episode(session, show_title: Optional[str], episode_title: str,
                           timeout: float = 30.0) -> Optional[dict]:
    """Find an episode by title through iTunes episode search."""
    term = f"{show_title} {episode_title}" if show_title else episode_title
    results = _itunes(session, ITUNES_SEARCH_URL,
                      {"term": term, "media": "podcast", "entity": "podcastEpisode", "limit": 25},
                      timeout)
    wanted = normalize_title(episode_title)
    wanted_show = normalize_title(show_title) if show_title else None
    for result in results:
        if not isinstance(result, dict):
            continue
        if normalize_title(result.get("trackName") or "") != wanted:
            continue
        if wanted_show and result.get("collectionName") \
                and normalize_title(result["collectionName"]) != wanted_show:
            continue
        summary = _episode_summary(result)
        if summary["url"]:
            return summary
    return None
