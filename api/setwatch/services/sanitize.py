from __future__ import annotations

import re

from bs4 import BeautifulSoup

_HIDDEN_TAGS = ["script", "style", "noscript", "img", "svg", "iframe", "head"]
_BLOCK_TAGS = [
    "p",
    "div",
    "section",
    "article",
    "header",
    "footer",
    "ul",
    "ol",
    "li",
    "table",
    "tr",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "blockquote",
    "pre",
]
_EXCESS_NEWLINES_RE = re.compile(r"(?:\r?\n){3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+(?=\r?\n)")


def sanitize_text(html: str | None) -> str | None:
    """Reduce listing markup to plain text.

    Returns None when nothing visible is left, so an empty description is stored as null.
    """
    if not html or not html.strip():
        return None

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_HIDDEN_TAGS):
        # Nested hidden tags go with their parent.
        if not tag.decomposed:
            tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")

    text = _TRAILING_SPACE_RE.sub("", soup.get_text())
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text).strip()
    return text or None


def sanitize_listing(title: str | None, description: str | None) -> tuple[str | None, str | None]:
    return sanitize_text(title), sanitize_text(description)
