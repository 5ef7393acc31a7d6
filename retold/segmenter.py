"""
Deterministic paragraph/sentence segmentation with stable ids and offsets.

Sentence ids are ``{paragraph_id}_s{n}`` and paragraph ids ``{chapter_id}_p{n}``,
both 1-based in textual order. Offsets index into the normalized paragraph text,
so ``normalized[start:end] == sentence["text"]`` always holds.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from .errors import SegmentationInputError
from .html_parser import extract_paragraphs
from .utils import normalize_text


ABBREVIATIONS: List[str] = [
    "Mr", "Mrs", "Ms", "Dr", "Prof", "Sr", "Jr", "St", "Rev",
    "Hon", "Lt", "Col", "Gen", "Capt", "Sgt", "Corp",
    "etc", "vs", "vol", "no", "chap", "ch", "fig", "p", "pp",
    "viz", "i.e", "e.g", "cf", "et al",
    "Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]

# A run of terminators, plus any closing quotes glued to it. Without quotes the
# run must be followed by whitespace or the end of the text.
_BOUNDARY_RE = re.compile(r"[.!?]+(?:[\"']+|(?=\s)|$)")

_ABBREV_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(a) for a in sorted(ABBREVIATIONS, key=len, reverse=True)) + r")$",
    re.IGNORECASE,
)


def _ends_with_abbreviation(text: str, terminator_pos: int) -> bool:
    return _ABBREV_RE.search(text, 0, terminator_pos) is not None


def _make_sentence(paragraph_id: str, index: int, text: str, start: int, end: int) -> Dict[str, Any]:
    return {"sid": f"{paragraph_id}_s{index + 1}", "text": text, "start": start, "end": end}


def segment_paragraph(paragraph_text: str, paragraph_id: str) -> List[Dict[str, Any]]:
    """
    Split a paragraph into sentences.

    A boundary is a terminator run (``.``, ``!``, ``?``, ellipses included)
    followed by whitespace, a quote or the end of the text. A lone period after
    a known abbreviation (``Dr.``, ``etc.``, ``e.g.``) is not a boundary.
    Trailing text without a terminator still becomes the last sentence.
    """
    normalized = normalize_text(paragraph_text)
    sentences: List[Dict[str, Any]] = []
    seg_start = 0

    for match in _BOUNDARY_RE.finditer(normalized):
        if match.group(0) == "." and _ends_with_abbreviation(normalized, match.start()):
            continue

        piece = normalized[seg_start : match.end()]
        start = seg_start + (len(piece) - len(piece.lstrip()))
        text = normalized[start : match.end()]
        seg_start = match.end()
        if not text:
            continue
        sentences.append(_make_sentence(paragraph_id, len(sentences), text, start, match.end()))

    remainder = normalized[seg_start:]
    if remainder.strip():
        start = seg_start + (len(remainder) - len(remainder.lstrip()))
        text = remainder.strip()
        sentences.append(_make_sentence(paragraph_id, len(sentences), text, start, start + len(text)))

    return sentences


def process_chapter(chapter: Dict[str, Any]) -> Dict[str, Any]:
    """Extract paragraphs from ``chapter["original"]`` and segment each one."""
    chapter_id = chapter.get("id")
    if not chapter_id:
        raise SegmentationInputError(f"Chapter without an id: {chapter.get('title', '')!r}")
    original = chapter.get("original") or ""
    if not isinstance(original, str):
        raise SegmentationInputError(f"Chapter {chapter_id}: 'original' must be an HTML string")

    paragraphs: List[Dict[str, Any]] = []
    for index, raw in enumerate(extract_paragraphs(original)):
        pid = f"{chapter_id}_p{index + 1}"
        paragraphs.append(
            {
                "pid": pid,
                "text": normalize_text(raw),
                "sentences": segment_paragraph(raw, pid),
            }
        )
    return {
        "chapter_id": chapter_id,
        "title": chapter.get("title", ""),
        "paragraphs": paragraphs,
    }


def create_context_window(
    sentences: List[Dict[str, Any]],
    sentence_index: int,
    paragraph_text: str,
) -> Dict[str, Optional[str]]:
    prev_sentence = sentences[sentence_index - 1]["text"] if sentence_index > 0 else None
    next_sentence = sentences[sentence_index + 1]["text"] if sentence_index < len(sentences) - 1 else None
    return {
        "paragraph": paragraph_text,
        "prev_sentence": prev_sentence,
        "next_sentence": next_sentence,
    }


def build_translation_units(chapters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One translation unit per sentence, in document order."""
    units: List[Dict[str, Any]] = []
    for chapter in chapters:
        for paragraph in chapter.get("paragraphs", []):
            sentences = paragraph.get("sentences", [])
            for index, sentence in enumerate(sentences):
                units.append(
                    {
                        "sid": sentence["sid"],
                        "sentence": sentence["text"],
                        "context": create_context_window(sentences, index, paragraph["text"]),
                        "chapter_id": chapter["chapter_id"],
                        "paragraph_id": paragraph["pid"],
                    }
                )
    return units
