"""
Format parsers for caption payloads, podcast feeds and page metadata.

Everything here is pure: text in, plain lines / TimedSegments / dicts out.
Malformed input yields empty results or None rather than exceptions.
"""

import html as html_lib
import json
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional

import feedparser
from bs4 import BeautifulSoup

from media_transcript.shared import TimedSegment, get_path


# ---------------------------------------------------------------------------
# Embedded JSON
# ---------------------------------------------------------------------------

def extract_balanced_json(text: str, start: int) -> Optional[str]:
    """Return the {...} object starting at text[start], honoring strings and escapes."""
    if start < 0 or start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_assigned_json(html: str, marker: str) -> Optional[dict]:
    """Find ``marker = {...}`` (or ``marker({...})``) in page source and decode it."""
    index = html.find(marker)
    while index != -1:
        brace = html.find("{", index + len(marker))
        if brace != -1 and not html[index + len(marker):brace].strip(" =(\t\n"):
            raw = extract_balanced_json(html, brace)
            if raw:
                try:
                    value = json.loads(raw)
                except ValueError:
                    value = None
                if isinstance(value, dict):
                    return value
        index = html.find(marker, index + len(marker))
    return None


def extract_json_string_field(html: str, field: str) -> Optional[str]:
    """Extract ``"field":"..."`` from embedded JSON, decoding the JSON string escapes."""
    match = re.search(r'"' + re.escape(field) + r'"\s*:\s*"((?:\\.|[^"\\])*)"', html)
    if not match:
        return None
    try:
        value = json.loads(f'"{match.group(1)}"')
    except ValueError:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Caption payloads
# ---------------------------------------------------------------------------

def parse_json3_captions(payload) -> list:
    """Parse a JSON event-list caption payload into TimedSegments."""
    segments = []
    events = payload.get("events") if isinstance(payload, dict) else None
    if not isinstance(events, list):
        return segments
    for event in events:
        segs = event.get("segs") if isinstance(event, dict) else None
        if not isinstance(segs, list):
            continue
        text = "".join(s.get("utf8", "") for s in segs if isinstance(s, dict))
        text = " ".join(text.split())
        if not text:
            continue
        start = event.get("tStartMs")
        start_ms = int(start) if isinstance(start, (int, float)) else 0
        duration = event.get("dDurationMs")
        end_ms = start_ms + int(duration) if isinstance(duration, (int, float)) else None
        segments.append(TimedSegment(start_ms=start_ms, end_ms=end_ms, text=text))
    return segments


_XML_TEXT_RE = re.compile(r"<text([^>]*)>(.*?)</text>", re.DOTALL)
_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')


def parse_xml_captions(xml: str) -> list:
    """Parse ``<text start=".." dur="..">`` caption XML into TimedSegments (seconds -> ms)."""
    segments = []
    for match in _XML_TEXT_RE.finditer(xml):
        attrs = dict(_ATTR_RE.findall(match.group(1)))
        # Caption XML is double-escaped (&amp;#39; etc.)
        text = html_lib.unescape(html_lib.unescape(match.group(2)))
        text = re.sub(r"<[^>]+>", "", text)
        text = " ".join(text.split())
        if not text:
            continue
        start_ms = _seconds_to_ms(attrs.get("start")) or 0
        dur_ms = _seconds_to_ms(attrs.get("dur"))
        end_ms = start_ms + dur_ms if dur_ms is not None else None
        segments.append(TimedSegment(start_ms=start_ms, end_ms=end_ms, text=text))
    return segments


def _seconds_to_ms(value) -> Optional[int]:
    try:
        return int(round(float(value) * 1000))
    except (TypeError, ValueError):
        return None


def segments_to_text(segments: list) -> str:
    return "\n".join(s.text for s in segments if s.text)


def vtt_to_text(vtt: str) -> str:
    """Convert WebVTT to plain text.

    Drops the header, NOTE/STYLE/REGION blocks, cue identifiers and timing
    lines, and strips inline tags.
    """
    lines = []
    skipping_block = False
    for raw in vtt.splitlines():
        line = raw.strip()
        if not line:
            skipping_block = False
            continue
        if skipping_block:
            continue
        if line.startswith("WEBVTT") or line.startswith(("Kind:", "Language:")):
            continue
        if line.startswith(("NOTE", "STYLE", "REGION")):
            skipping_block = True
            continue
        if "-->" in line or line.isdigit():
            continue
        line = re.sub(r"<[^>]+>", "", line)
        line = html_lib.unescape(line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def transcript_json_to_text(data) -> Optional[str]:
    """Flatten the common JSON transcript shapes into plain text."""
    if isinstance(data, list):
        parts = [item.get("text", "").strip() for item in data
                 if isinstance(item, dict) and isinstance(item.get("text"), str)]
        text = "\n".join(p for p in parts if p)
        return text or None
    if not isinstance(data, dict):
        return None
    for key in ("transcript", "text"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    segments = data.get("segments")
    if isinstance(segments, list):
        return transcript_json_to_text(segments)
    return None


# ---------------------------------------------------------------------------
# Podcast feeds
# ---------------------------------------------------------------------------

def looks_like_feed(text: Optional[str]) -> bool:
    if not text:
        return False
    head = text[:4096].lower()
    return "<rss" in head or "<feed" in head


def decode_xml_entities(value: str) -> str:
    """Decode entities such as &amp; and &#38; in URLs pulled out of feed XML."""
    return html_lib.unescape(value)


def strip_cdata(value: str) -> str:
    match = re.fullmatch(r"\s*<!\[CDATA\[(.*?)\]\]>\s*", value, re.DOTALL)
    return match.group(1) if match else value


def parse_duration(value: Optional[str]) -> Optional[int]:
    """Parse SS, MM:SS or HH:MM:SS into seconds; invalid or non-positive -> None."""
    if value is None:
        return None
    value = strip_cdata(str(value)).strip()
    if not value:
        return None
    parts = value.split(":")
    if len(parts) > 3:
        return None
    total = 0.0
    for part in parts:
        try:
            number = float(part)
        except ValueError:
            return None
        if number < 0:
            return None
        total = total * 60 + number
    seconds = int(round(total))
    return seconds if seconds > 0 else None


def normalize_title(value: str) -> str:
    """Lowercase, drop diacritics, collapse punctuation to single spaces."""
    value = unicodedata.normalize("NFKD", value.lower())
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", value).strip()


@dataclass
class FeedEpisode:
    """One <item> (RSS) or <entry> (Atom) of a podcast feed."""
    title: Optional[str] = None
    enclosure_url: Optional[str] = None
    enclosure_type: Optional[str] = None
    duration_seconds: Optional[int] = None
    transcripts: list = field(default_factory=list)  # [{"url", "type"}] from <podcast:transcript>


def parse_feed(xml: Optional[str]) -> list:
    """Parse an RSS or Atom document into FeedEpisodes, in feed order.

    feedparser handles items, titles, enclosures and itunes:duration.
    It does not expose <podcast:transcript> attributes, so those tags are
    read separately with BeautifulSoup and matched back to their items.
    """
    if not looks_like_feed(xml):
        return []
    entries = feedparser.parse(xml).entries
    transcripts = _transcript_tags(xml)
    by_title = {title: candidates for title, candidates in transcripts if title}

    episodes = []
    for index, entry in enumerate(entries):
        title = (entry.get("title") or "").strip() or None
        if len(transcripts) == len(entries):
            candidates = transcripts[index][1]
        else:
            candidates = by_title.get(normalize_title(title or ""), [])
        url, media_type = _entry_enclosure(entry)
        episodes.append(FeedEpisode(
            title=title,
            enclosure_url=url,
            enclosure_type=media_type,
            duration_seconds=parse_duration(entry.get("itunes_duration")),
            transcripts=candidates,
        ))
    return episodes


def _entry_enclosure(entry) -> tuple:
    # feedparser folds RSS <enclosure> and Atom <link rel="enclosure"> into one list
    for enclosure in entry.get("enclosures") or []:
        url = (enclosure.get("href") or enclosure.get("url") or "").strip()
        if url:
            return url, enclosure.get("type") or None
    return None, None


def _transcript_tags(xml: str) -> list:
    """[(normalized title, [{"url", "type"}])] per feed item, in document order."""
    soup = BeautifulSoup(xml, "html.parser")
    blocks = soup.find_all("item") or soup.find_all("entry")
    items = []
    for block in blocks:
        title_tag = block.find("title")
        title = strip_cdata(title_tag.get_text()) if title_tag else ""
        candidates = [
            {"url": tag["url"].strip(), "type": (tag.get("type") or "").lower()}
            for tag in block.find_all("podcast:transcript")
            if (tag.get("url") or "").strip()
        ]
        items.append((normalize_title(title), candidates))
    return items


def select_transcript_candidate(candidates: list) -> Optional[dict]:
    """Prefer JSON transcripts, then VTT, then whatever is listed first."""
    if not candidates:
        return None

    def _is(candidate, kind, ext):
        path = candidate["url"].split("?")[0].lower()
        return kind in candidate.get("type", "") or path.endswith(ext)

    for candidate in candidates:
        if _is(candidate, "json", ".json"):
            return candidate
    for candidate in candidates:
        if _is(candidate, "vtt", ".vtt"):
            return candidate
    return candidates[0]


def find_episode(episodes: list, title: Optional[str]) -> Optional[FeedEpisode]:
    """Return the episode whose title matches; the first episode when title is None."""
    if not episodes:
        return None
    if title is None:
        return episodes[0]
    wanted = normalize_title(title)
    for episode in episodes:
        if episode.title and normalize_title(episode.title) == wanted:
            return episode
    return None


# ---------------------------------------------------------------------------
# HTML page metadata
# ---------------------------------------------------------------------------

def extract_meta_content(html: str, *names: str) -> Optional[str]:
    """Return the first non-empty <meta property|name=...> content for names."""
    soup = BeautifulSoup(html, "html.parser")
    for name in names:
        tag = soup.find("meta", property=name) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content", "").strip():
            return tag["content"].strip()
    return None


def extract_script_json(html: str, script_id: str):
    """Decode the JSON body of <script id=script_id>, or None."""
    soup = BeautifulSoup(html, "html.parser")
    tag = soup.find("script", id=script_id)
    if not tag or not tag.string:
        return None
    try:
        return json.loads(tag.string)
    except ValueError:
        return None


def lookup_int(obj, *keys) -> Optional[int]:
    """get_path that coerces numeric strings, returning None for non-positive values."""
    value = get_path(obj, *keys)
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
