"""
Per-book translation cache: ``sid -> translated text``.

The store is one JSON object per book. Entries are only ever added, or the whole
file is removed by the operator; nothing here invalidates an entry when the
source text changes. A sidecar ``{book_id}.sources.json`` keeps the sha1 of the
sentence each translation came from so that drift can be reported.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import storage
from .errors import CacheIOError
from .utils import sha1_text


DEFAULT_CACHE_DIR = ".translation-cache"


def cache_path(book_id: str, cache_dir: str | Path = DEFAULT_CACHE_DIR) -> Path:
    return Path(cache_dir) / f"{book_id}.json"


def sources_path(book_id: str, cache_dir: str | Path = DEFAULT_CACHE_DIR) -> Path:
    return Path(cache_dir) / f"{book_id}.sources.json"


def _read_string_map(path: Path, logger: Optional[logging.Logger]) -> Dict[str, str]:
    if not path.exists():
        return {}
    try:
        data = storage.read_json(path)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        if logger:
            logger.warning("Could not read cache file %s, ignoring it: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        if logger:
            logger.warning("Cache file %s does not hold a JSON object, ignoring it.", path)
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


def load_translation_cache(
    book_id: str,
    cache_dir: str | Path = DEFAULT_CACHE_DIR,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    """Load the cache for a book; a missing or unreadable store is an empty cache."""
    return _read_string_map(cache_path(book_id, cache_dir), logger)


def load_cache_sources(
    book_id: str,
    cache_dir: str | Path = DEFAULT_CACHE_DIR,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    return _read_string_map(sources_path(book_id, cache_dir), logger)


def save_translation_cache(
    book_id: str,
    cache: Dict[str, str],
    cache_dir: str | Path = DEFAULT_CACHE_DIR,
    sources: Optional[Dict[str, str]] = None,
) -> Path:
    """Overwrite the whole store for a book. Raises CacheIOError on failure."""
    path = cache_path(book_id, cache_dir)
    try:
        storage.write_json_atomic(path, dict(sorted(cache.items())))
        if sources is not None:
            storage.write_json_atomic(sources_path(book_id, cache_dir), dict(sorted(sources.items())))
    except (OSError, TypeError, ValueError) as exc:
        raise CacheIOError(f"Could not write translation cache {path}: {exc}") from exc
    return path


def filter_uncached(units: List[Dict[str, Any]], cache: Dict[str, str]) -> List[Dict[str, Any]]:
    return [unit for unit in units if unit["sid"] not in cache]


def source_hashes(units: List[Dict[str, Any]]) -> Dict[str, str]:
    return {unit["sid"]: sha1_text(unit["sentence"]) for unit in units}


def find_stale_entries(
    units: List[Dict[str, Any]],
    cache: Dict[str, str],
    sources: Dict[str, str],
) -> List[str]:
    """
    Sids whose cached translation was produced from different source text.

    Only entries with a recorded hash can be checked. The caller decides what to
    do; cached text is still used as-is.
    """
    stale: List[str] = []
    for unit in units:
        sid = unit["sid"]
        recorded = sources.get(sid)
        if sid in cache and recorded and recorded != sha1_text(unit["sentence"]):
            stale.append(sid)
    return stale
