from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence


_SMART_SINGLE_QUOTES = re.compile(r"[‘’]")
_SMART_DOUBLE_QUOTES = re.compile(r"[“”]")
_DASHES = re.compile(r"[–—]")
_WHITESPACE = re.compile(r"\s+")


def setup_logger(log_dir: str | Path, name: str = "retold") -> logging.Logger:
    """Create a simple file+console logger."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Avoid adding multiple handlers when called twice in one process
    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    fh = logging.FileHandler(log_dir / "preprocess.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def sha1_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def normalize_text(text: str) -> str:
    """
    Canonical form used before segmentation:
    - smart quotes -> straight quotes
    - en/em dashes -> hyphen
    - any whitespace run -> one space, trimmed
    """
    text = _SMART_SINGLE_QUOTES.sub("'", text)
    text = _SMART_DOUBLE_QUOTES.sub('"', text)
    text = _DASHES.sub("-", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def compact_whitespace(s: str) -> str:
    return _WHITESPACE.sub(" ", s).strip()


def truncate(text: str, limit: int) -> str:
    return text[:limit] if text else ""


def chunk_units(units: Sequence[Dict[str, Any]], batch_size: int = 10) -> Iterator[List[Dict[str, Any]]]:
    """
    Group translation units into consecutive batches of at most ``batch_size``.

    Order inside a batch and the order of batches both follow the input order.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    buf: List[Dict[str, Any]] = []
    for unit in units:
        buf.append(unit)
        if len(buf) >= batch_size:
            yield buf
            buf = []
    if buf:
        yield buf


def waves(batches: Sequence[List[Dict[str, Any]]], max_parallel: int = 3) -> Iterator[List[List[Dict[str, Any]]]]:
    """Group batches into waves of ``max_parallel`` for concurrent dispatch."""
    if max_parallel <= 0:
        raise ValueError(f"max_parallel must be positive, got {max_parallel}")
    for start in range(0, len(batches), max_parallel):
        yield list(batches[start : start + max_parallel])
