from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .translator import AuditTrail, BaseTranslator, RateLimiter
from .utils import chunk_units, truncate, waves


T = TypeVar("T")

FAILURE_PREFIX = "[Translation failed"
PROGRESS_PREVIEW_CHARS = 80


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed 0-based ``attempt``."""
        return self.base_delay * (self.backoff_multiplier**attempt)


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    sid: str
    sentence: str
    translation: str

    @property
    def percent(self) -> float:
        return (self.current / self.total * 100.0) if self.total else 100.0


ProgressCallback = Callable[[ProgressEvent], None]


def failure_sentinel(exc: BaseException | str) -> str:
    return f"[Translation failed: {exc}]"


def is_failure_sentinel(text: str) -> bool:
    return text.startswith(FAILURE_PREFIX)


def retry_with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
    label: str = "call",
) -> T:
    """Run ``fn`` up to ``policy.max_attempts`` times; re-raise the last error."""
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as exc:  # noqa: PERF203 - retries intentionally broad
            if logger:
                logger.warning("%s attempt %s/%s failed: %s", label, attempt + 1, attempts, exc)
            if attempt < attempts - 1:
                sleep(policy.delay_for(attempt))
            else:
                raise
    raise AssertionError("unreachable")


class _ProgressCounter:
    def __init__(self, total: int, on_progress: Optional[ProgressCallback]):
        self.total = total
        self.current = 0
        self.on_progress = on_progress

    def report(self, unit: Dict[str, Any], translation: str) -> None:
        self.current += 1
        if self.on_progress is None:
            return
        self.on_progress(
            ProgressEvent(
                current=self.current,
                total=self.total,
                sid=unit["sid"],
                sentence=truncate(unit["sentence"], PROGRESS_PREVIEW_CHARS),
                translation=truncate(translation, PROGRESS_PREVIEW_CHARS),
            )
        )


def translate_units_batched(
    units: List[Dict[str, Any]],
    translator: BaseTranslator,
    book_name: str,
    batch_size: int = 10,
    max_parallel: int = 3,
    retry_policy: Optional[RetryPolicy] = None,
    on_progress: Optional[ProgressCallback] = None,
    logger: Optional[logging.Logger] = None,
    audit: Optional[AuditTrail] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    """
    Translate units in batches, ``max_parallel`` batches at a time.

    Batches are dispatched in waves; a wave fully settles before the next one
    starts. Results and progress are merged here, on the calling thread, in input
    order. Every input sid ends up in the result: a translation, or a failure
    sentinel when its batch ran out of attempts.
    """
    policy = retry_policy or RetryPolicy()
    results: Dict[str, str] = {}
    if not units:
        return results

    batches = list(chunk_units(units, batch_size))
    wave_list = list(waves(batches, max_parallel))
    progress = _ProgressCounter(len(units), on_progress)

    def _run(batch: List[Dict[str, Any]]) -> Dict[str, str]:
        return retry_with_backoff(
            lambda: translator.translate_batch(batch, book_name),
            policy,
            sleep=sleep,
            logger=logger,
            label=f"Batch {batch[0]['sid']}..{batch[-1]['sid']}",
        )

    with ThreadPoolExecutor(max_workers=max_parallel) as executor:
        for wave_no, wave in enumerate(wave_list, start=1):
            if logger:
                logger.info(
                    "   Wave %s/%s: %s batch(es), %s sentence(s)",
                    wave_no,
                    len(wave_list),
                    len(wave),
                    sum(len(b) for b in wave),
                )
            futures = [executor.submit(_run, batch) for batch in wave]
            wait(futures)

            for batch, future in zip(wave, futures):
                exc = future.exception()
                if exc is not None and not isinstance(exc, Exception):
                    raise exc
                if exc is None:
                    translated = future.result()
                    for unit in batch:
                        text = translated.get(unit["sid"]) or failure_sentinel("missing from batch reply")
                        results[unit["sid"]] = text
                        progress.report(unit, text)
                    continue

                if logger:
                    logger.error(
                        "Batch %s..%s failed after %s attempt(s): %s",
                        batch[0]["sid"],
                        batch[-1]["sid"],
                        policy.max_attempts,
                        exc,
                    )
                if audit:
                    audit.record("batch_failed", {"sids": [u["sid"] for u in batch], "error": str(exc)})
                sentinel = failure_sentinel(exc)
                for unit in batch:
                    results[unit["sid"]] = sentinel
                    progress.report(unit, sentinel)

    return results


def translate_units_sequential(
    units: List[Dict[str, Any]],
    translator: BaseTranslator,
    book_name: str,
    retry_policy: Optional[RetryPolicy] = None,
    rate_limiter: Optional[RateLimiter] = None,
    on_progress: Optional[ProgressCallback] = None,
    logger: Optional[logging.Logger] = None,
    audit: Optional[AuditTrail] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    """Legacy one-sentence-per-call mode, spaced out by ``rate_limiter``."""
    policy = retry_policy or RetryPolicy()
    results: Dict[str, str] = {}
    progress = _ProgressCounter(len(units), on_progress)

    for unit in units:
        if rate_limiter:
            rate_limiter.wait()
        try:
            translation = retry_with_backoff(
                lambda: translator.translate_one(unit["sentence"], unit["context"], book_name),
                policy,
                sleep=sleep,
                logger=logger,
                label=f"Sentence {unit['sid']}",
            )
        except Exception as exc:
            if logger:
                logger.error("Failed to translate sentence %s after %s attempt(s): %s", unit["sid"], policy.max_attempts, exc)
            if audit:
                audit.record("sentence_failed", {"sid": unit["sid"], "error": str(exc)})
            translation = failure_sentinel(exc)
        results[unit["sid"]] = translation
        progress.report(unit, translation)

    return results
