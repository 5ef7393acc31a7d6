from __future__ import annotations

import copy
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .batching import (
    ProgressCallback,
    RetryPolicy,
    is_failure_sentinel,
    translate_units_batched,
    translate_units_sequential,
)
from .cache import (
    DEFAULT_CACHE_DIR,
    filter_uncached,
    find_stale_entries,
    load_cache_sources,
    load_translation_cache,
    save_translation_cache,
    source_hashes,
)
from .errors import CacheIOError
from .html_parser import extract_paragraph_blocks, paragraphs_to_html
from .segmenter import build_translation_units, process_chapter
from .translator import AuditTrail, BaseTranslator, RateLimiter


MODERN_PREFIX = "m_"
PASSAGES_PER_CHAPTER = 5
PASSAGE_MIN_CHARS = 50
PASSAGE_PENDING = "[Translating...]"


@dataclass
class CostRates:
    chars_per_token: int = 4
    output_tokens_per_sentence: int = 100
    input_price_per_million: float = 0.10
    output_price_per_million: float = 0.30


@dataclass
class PipelineOptions:
    book_id: str
    chapters: Optional[str] = None
    translate: bool = False
    estimate_only: bool = False
    skip_cache: bool = False
    persist_cache: bool = True
    sequential: bool = False
    batch_size: int = 10
    max_parallel: int = 3
    request_delay: float = 0.1
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    cache_dir: str = DEFAULT_CACHE_DIR
    cost: CostRates = field(default_factory=CostRates)


@dataclass
class PipelineResult:
    document: Dict[str, Any]
    translations: Dict[str, str] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    estimate: Optional[Dict[str, Any]] = None


def parse_chapter_range(range_str: Optional[str], total_chapters: int) -> List[int]:
    """
    Turn a 1-based selection ("1-3", "1,3,5", "2-4,7") into 0-based indices.
    ``None`` or an empty string selects every chapter.
    """
    if not range_str or not range_str.strip():
        return list(range(total_chapters))

    indices: List[int] = []
    for part in range_str.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                start_s, end_s = part.split("-", 1)
                start, end = int(start_s), int(end_s)
                if end < start:
                    raise ValueError
                indices.extend(range(start - 1, end))
            else:
                indices.append(int(part) - 1)
        except ValueError:
            raise ValueError(f"Invalid chapter range: {range_str!r}") from None
    return indices


def process_book_structure(
    book: Dict[str, Any],
    chapter_indices: List[int],
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Segment the selected chapters. Returns ``{metadata, chapters}``."""
    metadata = {k: v for k, v in book.items() if k != "chapters"}
    chapters = book.get("chapters") or []
    processed: List[Dict[str, Any]] = []

    for index in chapter_indices:
        if index < 0 or index >= len(chapters):
            if logger:
                logger.warning("Chapter index %s not found, skipping", index + 1)
            continue
        chapter = chapters[index]
        if logger:
            logger.info("   Segmenting chapter %s: %s", index + 1, chapter.get("title", ""))
        processed.append(process_chapter(chapter))

    return {"metadata": metadata, "chapters": processed}


def count_structure(processed_book: Dict[str, Any]) -> Dict[str, int]:
    paragraphs = 0
    sentences = 0
    for chapter in processed_book.get("chapters", []):
        paragraphs += len(chapter.get("paragraphs", []))
        sentences += sum(len(p.get("sentences", [])) for p in chapter.get("paragraphs", []))
    return {"chapters": len(processed_book.get("chapters", [])), "paragraphs": paragraphs, "sentences": sentences}


def estimate_cost(
    sentence_count: int,
    avg_context_length: float = 500,
    rates: Optional[CostRates] = None,
) -> Dict[str, Any]:
    """Rough, advisory token/cost estimate. Never used to gate a run."""
    rates = rates or CostRates()
    avg_input_tokens = math.ceil(avg_context_length / rates.chars_per_token)
    input_tokens = sentence_count * avg_input_tokens
    output_tokens = sentence_count * rates.output_tokens_per_sentence

    input_cost = input_tokens * rates.input_price_per_million / 1_000_000
    output_cost = output_tokens * rates.output_price_per_million / 1_000_000

    return {
        "sentence_count": sentence_count,
        "estimated_input_tokens": input_tokens,
        "estimated_output_tokens": output_tokens,
        "estimated_input_cost": round(input_cost, 4),
        "estimated_output_cost": round(output_cost, 4),
        "estimated_total_cost": round(input_cost + output_cost, 4),
        "note": "These are estimates. Actual costs vary with current API pricing.",
    }


def estimate_for_units(units: List[Dict[str, Any]], rates: Optional[CostRates] = None) -> Dict[str, Any]:
    avg = sum(len(u["context"]["paragraph"]) for u in units) / len(units) if units else 0.0
    return estimate_cost(len(units), avg, rates)


def apply_translations(processed_book: Dict[str, Any], translations: Dict[str, str]) -> Dict[str, Any]:
    """
    Add ``modern_paragraphs`` and ``alignment`` to every chapter.

    Modern ids are the original ids with an ``m_`` prefix. A sentence with no
    entry in ``translations`` keeps its original text.
    """
    result = copy.deepcopy(processed_book)

    for chapter in result["chapters"]:
        modern_paragraphs: List[Dict[str, Any]] = []
        original_to_modern: Dict[str, str] = {}

        for paragraph in chapter["paragraphs"]:
            modern_sentences: List[Dict[str, Any]] = []
            modern_text = ""
            for sentence in paragraph["sentences"]:
                text = translations.get(sentence["sid"]) or sentence["text"]
                if modern_text:
                    modern_text += " "
                start = len(modern_text)
                modern_text += text
                modern_sid = f"{MODERN_PREFIX}{sentence['sid']}"
                modern_sentences.append({"sid": modern_sid, "text": text, "start": start, "end": start + len(text)})
                original_to_modern[sentence["sid"]] = modern_sid

            modern_paragraphs.append(
                {"pid": f"{MODERN_PREFIX}{paragraph['pid']}", "text": modern_text, "sentences": modern_sentences}
            )

        chapter["modern_paragraphs"] = modern_paragraphs
        chapter["alignment"] = {"original_to_modern": original_to_modern}

    return result


def attach_modern_html(book: Dict[str, Any], processed_book: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``book`` whose chapters' ``modern`` HTML is rebuilt from the modern paragraphs."""
    updated = copy.deepcopy(book)
    by_id = {c.get("id"): c for c in updated.get("chapters", [])}
    for chapter in processed_book.get("chapters", []):
        target = by_id.get(chapter["chapter_id"])
        if target is None or "modern_paragraphs" not in chapter:
            continue
        target["modern"] = paragraphs_to_html(p["text"] for p in chapter["modern_paragraphs"])
    return updated


def _cacheable(translations: Dict[str, str]) -> Dict[str, str]:
    return {sid: text for sid, text in translations.items() if not is_failure_sentinel(text)}


def _translate_with_cache(
    units: List[Dict[str, Any]],
    options: PipelineOptions,
    translator: BaseTranslator,
    book_name: str,
    logger: Optional[logging.Logger],
    audit: Optional[AuditTrail],
    on_progress: Optional[ProgressCallback],
    sleep: Callable[[float], None],
) -> Tuple[Dict[str, str], Dict[str, int]]:
    """Cache lookup, translation of the rest, cache write-back. Returns ``(translations, stats)``."""
    stored = load_translation_cache(options.book_id, options.cache_dir, logger=logger)
    stored_sources = load_cache_sources(options.book_id, options.cache_dir, logger=logger)
    lookup: Dict[str, str] = {} if options.skip_cache else stored

    stale = find_stale_entries(units, lookup, stored_sources)
    if stale and logger:
        logger.warning(
            "   %s cached translation(s) were made from different source text and are reused as-is "
            "(delete the cache or use --skip-cache to refresh): %s",
            len(stale),
            ", ".join(stale[:5]) + (" …" if len(stale) > 5 else ""),
        )

    pending = filter_uncached(units, lookup)
    cached_count = len(units) - len(pending)
    if logger:
        logger.info("   %s item(s) cached, %s to translate", cached_count, len(pending))
    if audit:
        audit.record("cache", {"cached": cached_count, "pending": len(pending), "stale": len(stale)})

    fresh: Dict[str, str] = {}
    if pending:
        if options.sequential:
            fresh = translate_units_sequential(
                pending,
                translator,
                book_name,
                retry_policy=options.retry_policy,
                rate_limiter=RateLimiter(options.request_delay, sleep=sleep),
                on_progress=on_progress,
                logger=logger,
                audit=audit,
                sleep=sleep,
            )
        else:
            fresh = translate_units_batched(
                pending,
                translator,
                book_name,
                batch_size=options.batch_size,
                max_parallel=options.max_parallel,
                retry_policy=options.retry_policy,
                on_progress=on_progress,
                logger=logger,
                audit=audit,
                sleep=sleep,
            )

    translations = {u["sid"]: lookup[u["sid"]] for u in units if u["sid"] in lookup}
    translations.update(fresh)

    succeeded = _cacheable(fresh)
    if succeeded and options.persist_cache:
        updated_cache = {**stored, **succeeded}
        pending_by_sid = {u["sid"]: u for u in pending}
        updated_sources = {
            **stored_sources,
            **source_hashes([pending_by_sid[sid] for sid in succeeded]),
        }
        try:
            path = save_translation_cache(options.book_id, updated_cache, options.cache_dir, sources=updated_sources)
            if logger:
                logger.info("   Cache saved: %s (%s entries)", path, len(updated_cache))
        except CacheIOError as exc:
            if logger:
                logger.error("   %s; continuing without persisting the cache.", exc)
            if audit:
                audit.record("cache_write_failed", {"error": str(exc)})

    stats = {
        "cached": cached_count,
        "translated": len(succeeded),
        "failed": len(fresh) - len(succeeded),
    }
    return translations, stats


def run_pipeline(
    book: Dict[str, Any],
    options: PipelineOptions,
    translator: Optional[BaseTranslator] = None,
    logger: Optional[logging.Logger] = None,
    audit: Optional[AuditTrail] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """
    Segment a book bundle and, when asked, translate it through the cache and
    the batch orchestrator. Estimate-only runs never touch the translator.
    """
    book_name = book.get("title") or options.book_id

    chapter_indices = parse_chapter_range(options.chapters, len(book.get("chapters") or []))
    processed = process_book_structure(book, chapter_indices, logger)
    stats = count_structure(processed)
    if logger:
        logger.info("   Extracted %s paragraphs, %s sentences", stats["paragraphs"], stats["sentences"])
    if audit:
        audit.record("segmentation", dict(stats))

    units = build_translation_units(processed["chapters"])

    estimate: Optional[Dict[str, Any]] = None
    if options.estimate_only or options.translate:
        estimate = estimate_for_units(units, options.cost)
        if logger:
            logger.info(
                "   Estimate: %s sentences, ~%s input / ~%s output tokens, ~$%s",
                estimate["sentence_count"],
                estimate["estimated_input_tokens"],
                estimate["estimated_output_tokens"],
                estimate["estimated_total_cost"],
            )
    if options.estimate_only or not options.translate:
        return PipelineResult(document=processed, stats=stats, estimate=estimate)

    if translator is None:
        raise ValueError("A translator is required when translate=True")

    translations, translate_stats = _translate_with_cache(
        units, options, translator, book_name, logger, audit, on_progress, sleep
    )
    stats.update(translate_stats)
    document = apply_translations(processed, translations)
    return PipelineResult(document=document, translations=translations, stats=stats, estimate=estimate)


def passage_id(chapter_id: str, index: int) -> str:
    return f"{chapter_id}-passage-{index + 1}"


def build_passage_units(book: Dict[str, Any], chapter_indices: Optional[List[int]] = None) -> List[Dict[str, Any]]:
    """
    Preview passages: the first ``PASSAGES_PER_CHAPTER`` paragraphs longer than
    ``PASSAGE_MIN_CHARS`` characters of each selected chapter, as translation
    units. Neighbours in the context are the adjacent long paragraphs.
    Each unit also carries the paragraph's ``html``.
    """
    chapters = book.get("chapters") or []
    if chapter_indices is None:
        chapter_indices = list(range(len(chapters)))

    units: List[Dict[str, Any]] = []
    for index in chapter_indices:
        if index < 0 or index >= len(chapters):
            continue
        chapter = chapters[index]
        blocks = extract_paragraph_blocks(chapter.get("original") or "")
        long_blocks = [b for b in blocks if len(b["text"]) > PASSAGE_MIN_CHARS]
        for i, block in enumerate(long_blocks[:PASSAGES_PER_CHAPTER]):
            sid = passage_id(chapter["id"], i)
            units.append(
                {
                    "sid": sid,
                    "sentence": block["text"],
                    "context": {
                        "paragraph": block["text"],
                        "prev_sentence": long_blocks[i - 1]["text"] if i > 0 else None,
                        "next_sentence": long_blocks[i + 1]["text"] if i + 1 < len(long_blocks) else None,
                    },
                    "chapter_id": chapter["id"],
                    "paragraph_id": sid,
                    "html": block["html"],
                }
            )
    return units


def apply_passages(
    book: Dict[str, Any],
    passage_units: List[Dict[str, Any]],
    translations: Dict[str, str],
) -> Dict[str, Any]:
    """
    Copy of ``book`` whose chapters' ``passages`` are rebuilt from
    ``passage_units``. Chapters without units keep their passages.
    """
    updated = copy.deepcopy(book)
    by_chapter: Dict[str, List[Dict[str, Any]]] = {}
    for unit in passage_units:
        by_chapter.setdefault(unit["chapter_id"], []).append(
            {
                "id": unit["sid"],
                "originalText": unit["sentence"],
                "modernText": translations.get(unit["sid"], PASSAGE_PENDING),
                "context": unit["html"],
            }
        )
    for chapter in updated.get("chapters", []):
        if chapter.get("id") in by_chapter:
            chapter["passages"] = by_chapter[chapter["id"]]
    return updated


def run_passages(
    book: Dict[str, Any],
    options: PipelineOptions,
    translator: BaseTranslator,
    logger: Optional[logging.Logger] = None,
    audit: Optional[AuditTrail] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Fill ``chapter.passages`` of the bundle, translating through the same per-book cache."""
    book_name = book.get("title") or options.book_id
    chapter_indices = parse_chapter_range(options.chapters, len(book.get("chapters") or []))
    units = build_passage_units(book, chapter_indices)
    if logger:
        logger.info("   %s passage(s) selected", len(units))

    translations, stats = _translate_with_cache(units, options, translator, book_name, logger, audit, on_progress, sleep)
    stats["passages"] = len(units)
    return PipelineResult(document=apply_passages(book, units, translations), translations=translations, stats=stats)
