"""
HTTP helpers shared by the transcript providers.

All network access goes through a requests.Session-like client passed in by
the caller, so every helper takes the session as its first argument.
"""

import time
from pathlib import Path
from typing import Callable, Iterable, Optional

import requests

from media_transcript.shared import tprint as print

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_TIMEOUT = 30.0

# Longest single socket read while streaming. A stalled read can overrun the
# overall deadline by at most this much.
STREAM_READ_TIMEOUT = 10.0


class DeadlineExceeded(TimeoutError):
    """A streamed read did not finish within its overall time budget."""


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": BROWSER_USER_AGENT})
    return session


def fetch_text(session, url: str, headers: Optional[dict] = None,
               timeout: float = DEFAULT_TIMEOUT) -> Optional[str]:
    """GET a URL and return its body, or None on any HTTP or network failure.

    The body is streamed and the whole read shares one time budget.
    """
    try:
        resp = session.get(url, headers=headers or {}, timeout=stream_timeout(timeout),
                           stream=True)
        if not resp.ok:
            return None
        return read_text_with_deadline(resp, timeout)
    except (requests.RequestException, DeadlineExceeded) as e:
        print(f"  Fetch failed: {url} ({e})")
        return None


def fetch_json(session, url: str, headers: Optional[dict] = None,
               timeout: float = DEFAULT_TIMEOUT):
    """GET a URL and decode JSON, or None on failure or invalid JSON."""
    try:
        resp = session.get(url, headers=headers or {}, timeout=timeout)
        if not resp.ok:
            return None
        return resp.json()
    except (requests.RequestException, ValueError):
        return None


def post_json(session, url: str, payload: dict, headers: Optional[dict] = None,
              timeout: float = DEFAULT_TIMEOUT):
    """POST a JSON body and decode the JSON reply, or None on failure."""
    merged = {"Content-Type": "application/json"}
    merged.update(headers or {})
    try:
        resp = session.post(url, json=payload, headers=merged, timeout=timeout)
        if not resp.ok:
            return None
        return resp.json()
    except (requests.RequestException, ValueError):
        return None


def stream_timeout(timeout: float) -> tuple:
    """(connect, read) timeouts for a streamed request under an overall budget."""
    return (min(timeout, DEFAULT_TIMEOUT), min(timeout, STREAM_READ_TIMEOUT))


def iter_with_deadline(chunks: Iterable, timeout: float,
                       cancel: Optional[Callable[[], None]] = None,
                       clock: Optional[Callable[[], float]] = None):
    """Yield chunks from an iterator within one overall time budget.

    The budget is measured from the first read, not per chunk, so a source
    trickling small chunks cannot keep resetting the clock. On expiry the
    stream's ``cancel`` is invoked (its own errors are ignored) and
    DeadlineExceeded is raised.

    The budget is checked between chunks. A read that blocks is bounded by
    the socket read timeout instead, so callers open the stream with
    stream_timeout() and the worst case is the deadline plus
    STREAM_READ_TIMEOUT.
    """
    clock = clock or time.monotonic
    deadline = clock() + timeout
    for chunk in chunks:
        if clock() > deadline:
            _cancel_quietly(cancel)
            raise DeadlineExceeded(f"stream read exceeded {timeout:g}s")
        yield chunk


def read_text_with_deadline(resp, timeout: float) -> str:
    """Read a streamed text response body within one overall time budget."""
    parts = iter_with_deadline(resp.iter_content(chunk_size=65536, decode_unicode=True),
                               timeout, cancel=resp.close)
    return "".join(p if isinstance(p, str) else p.decode(resp.encoding or "utf-8", "replace")
                   for p in parts)


def _cancel_quietly(cancel: Optional[Callable[[], None]]) -> None:
    if cancel is None:
        return
    try:
        cancel()
    except Exception:
        # Cleanup failures must not mask the timeout.
        pass


def probe_content_length(session, url: str, timeout: float = DEFAULT_TIMEOUT) -> Optional[int]:
    try:
        resp = session.head(url, allow_redirects=True, timeout=timeout)
    except requests.RequestException:
        return None
    if not resp.ok:
        return None
    value = resp.headers.get("Content-Length") or resp.headers.get("content-length")
    try:
        size = int(value)
    except (TypeError, ValueError):
        return None
    return size if size >= 0 else None


def download_remote_media(session, url: str, dest: Path, max_bytes: int,
                          timeout: float = 600.0) -> tuple:
    """Download remote media to dest, refusing anything above max_bytes.

    Returns (path, media_type). Raises RuntimeError when the media is too
    large, the request fails or the download outlives its time budget.
    """
    size = probe_content_length(session, url)
    if size is not None and size > max_bytes:
        raise RuntimeError(
            f"Remote media too large ({size / (1024 * 1024):.1f}MB > "
            f"{max_bytes / (1024 * 1024):.0f}MB)")

    try:
        resp = session.get(url, stream=True, timeout=stream_timeout(timeout))
    except requests.RequestException as e:
        raise RuntimeError(f"Download failed: {e}") from e
    if not resp.ok:
        raise RuntimeError(f"Download failed ({resp.status_code})")

    media_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip() or None
    received = 0

    def _bounded_chunks():
        nonlocal received
        for chunk in resp.iter_content(chunk_size=1024 * 1024):
            if not chunk:
                continue
            received += len(chunk)
            if received > max_bytes:
                resp.close()
                raise RuntimeError(
                    f"Remote media exceeded {max_bytes / (1024 * 1024):.0f}MB while downloading")
            yield chunk

    dest = Path(dest)
    try:
        with open(dest, "wb") as f:
            for chunk in iter_with_deadline(_bounded_chunks(), timeout, cancel=resp.close):
                f.write(chunk)
    except requests.RequestException as e:
        raise RuntimeError(f"Download failed: {e}") from e
    except DeadlineExceeded as e:
        raise RuntimeError(f"Download timed out after {timeout:g}s") from e
    return dest, media_type
