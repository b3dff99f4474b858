"""Shared test fixtures and utilities."""

import json
import subprocess
from unittest.mock import MagicMock


def make_response(status=200, text="", json_data=None, content=None, headers=None):
    """Build a mock requests.Response."""
    if json_data is not None and not text:
        text = json.dumps(json_data)
    if content is None:
        content = text.encode("utf-8")
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.text = text
    resp.content = content
    resp.encoding = "utf-8"
    resp.headers = headers or {}
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("not json")

    def _iter_content(chunk_size=None, decode_unicode=False):
        return iter([text] if decode_unicode else [content])

    resp.iter_content.side_effect = _iter_content
    return resp


def make_completed(cmd=None, stdout="", stderr="", returncode=0):
    """Build a CompletedProcess as returned by run_command."""
    return subprocess.CompletedProcess(cmd or [], returncode, stdout=stdout, stderr=stderr)


def make_transcription(text="hello"):
    """Build a mock OpenAI audio transcription response."""
    resp = MagicMock()
    resp.text = text
    return resp


def make_session(routes=None, default=None):
    """Build a mock session whose get/post/head answer by URL substring.

    routes maps a URL substring to a response (or a list of responses
    consumed in order). Unmatched URLs get `default` (a 404 by default).
    """
    routes = routes or {}
    default = default or make_response(status=404)
    session = MagicMock()

    def _answer(url, *args, **kwargs):
        for fragment, response in routes.items():
            if fragment in url:
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return default

    session.get.side_effect = _answer
    session.post.side_effect = _answer
    session.head.side_effect = _answer
    return session
