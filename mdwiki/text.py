"""Flattening Markdown into plain text suitable for link labels."""

from __future__ import annotations

import re

_IMAGE_RE = re.compile(r"!\[([^\]\n]*)\]\([^)]+\)")
_LINK_RE = re.compile(r"\[([^\]\n]+)\]\([^)]+\)")
_TAG_RE = re.compile(r"<[^>\n]+>")
_WS_RE = re.compile(r"\s+")


def _replace_until_stable(pattern: re.Pattern, text: str) -> str:
    while True:
        updated = pattern.sub(r"\1", text)
        if updated == text:
            return text
        text = updated


def link_label(raw: str) -> str:
    """Flatten images, links and HTML tags in ``raw`` and escape brackets."""
    text = _replace_until_stable(_IMAGE_RE, raw)
    text = _replace_until_stable(_LINK_RE, text)
    text = _TAG_RE.sub("", text)
    text = text.replace("[[", "[").replace("]]", "]")
    text = text.replace("[", "\\[").replace("]", "\\]")
    return _WS_RE.sub(" ", text.strip())