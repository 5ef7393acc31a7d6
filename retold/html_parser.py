from __future__ import annotations

from html import escape
from typing import Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from .utils import compact_whitespace


PARAGRAPH_TAGS = ["p"]


def extract_paragraph_blocks(html_text: str, block_tags: Optional[List[str]] = None) -> List[Dict[str, str]]:
    """
    Extract paragraphs as ``{"html": outer markup, "text": plain text}``.

    Inner tags are dropped from ``text`` (their text is kept), entities are
    decoded by the parser and whitespace is compacted. Blocks that end up
    empty are skipped.
    """
    if not html_text:
        return []
    block_tags = block_tags or PARAGRAPH_TAGS
    soup = BeautifulSoup(html_text, "html.parser")

    blocks: List[Dict[str, str]] = []
    for tag in soup.find_all(block_tags):
        # No separator: "<em>Hello</em>." must stay "Hello."
        plain = compact_whitespace(tag.get_text())
        if plain:
            blocks.append({"html": str(tag), "text": plain})
    return blocks


def extract_paragraphs(html_text: str, block_tags: Optional[List[str]] = None) -> List[str]:
    """Plain-text paragraphs of chapter markup, in document order."""
    return [block["text"] for block in extract_paragraph_blocks(html_text, block_tags)]


def paragraphs_to_html(paragraphs: Iterable[str]) -> str:
    """Render plain-text paragraphs as a sequence of <p> blocks."""
    return "\n".join(f"<p>{escape(p.strip(), quote=False)}</p>" for p in paragraphs if p and p.strip())
