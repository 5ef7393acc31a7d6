from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from .errors import ResponseParseError, TranslationError
from .utils import sha1_text, truncate


SYSTEM_PROMPT_MODERNIZE = (
    "You are an expert translator specializing in modernizing classic literature "
    "while preserving literary quality and meaning."
)

SENTENCE_PROMPT_TEMPLATE = """\
You are translating classic literature to modern English. You are currently working on "{book_name}".

Your task is to translate the following sentence from classic/archaic English into clear, modern English while preserving:
- The original meaning and nuance
- Literary quality and tone
- Cultural and historical context
- Character voice and style

CONTEXT - Full Paragraph:
"{paragraph}"
{prev_block}
SENTENCE TO TRANSLATE:
"{sentence}"
{next_block}
Guidelines:
1. Modernize archaic vocabulary and phrasing
2. Simplify complex sentence structures if needed for clarity
3. Keep the same emotional tone and literary style
4. Use the paragraph context to ensure accurate interpretation
5. Preserve any proper nouns, character names, and place names
6. Maintain the approximate sentence length

Provide ONLY the modern English translation, without any explanation or commentary."""

BATCH_PROMPT_TEMPLATE = """\
You are translating classic literature to modern English. You are currently working on "{book_name}".

Translate each numbered sentence below from classic/archaic English into clear, modern English.
Modernize vocabulary and syntax while keeping the tone, literary quality and character voice.
Preserve proper nouns, character names and place names, and keep the approximate length of each sentence.

CONTEXT (opening paragraphs of this batch):
{context_block}

SENTENCES TO TRANSLATE:
{numbered_sentences}

Return ONLY a single JSON object mapping each sentence number (as a string) to its modern English translation, for example {{"1": "...", "2": "..."}}.
Do not add explanations, comments or markdown."""

BATCH_CONTEXT_ITEMS = 3
BATCH_CONTEXT_CHARS = 200


class AuditTrail:
    """Lightweight audit collector for prompt hashes and pipeline decisions."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, kind: str, payload: Dict[str, Any]) -> None:
        entry = {"kind": kind, **payload}
        with self._lock:
            self.records.append(entry)

    def as_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self.records)


class MissingApiKeyError(RuntimeError):
    """Raised when a required provider API key is missing."""


@dataclass
class TranslatorConfig:
    model: str = "gpt-5-mini"
    # None leaves the provider default; some reasoning models reject other values.
    temperature: Optional[float] = None
    max_output_tokens: int = 1000
    batch_max_output_tokens: int = 6000
    timeout: float = 60.0


class CompletionBackend(Protocol):
    def complete(self, system_instruction: str, user_prompt: str, max_output_tokens: Optional[int] = None) -> str:
        ...


class BaseTranslator(Protocol):
    def translate_one(self, sentence: str, context: Dict[str, Any], book_name: str) -> str:
        ...

    def translate_batch(self, units: List[Dict[str, Any]], book_name: str) -> Dict[str, str]:
        ...


class OpenAIBackend:
    """
    Chat-completions backend.

    Requires:
      - `openai` python package
      - OPENAI_API_KEY in env or provided.
    """

    def __init__(self, api_key: Optional[str] = None, cfg: Optional[TranslatorConfig] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        if not self.api_key:
            raise MissingApiKeyError(
                "OPENAI_API_KEY is missing: export it or add it to your .env file."
            )
        self.cfg = cfg or TranslatorConfig()

        from openai import OpenAI  # type: ignore

        # Retries are handled by the batch orchestrator.
        self._client = OpenAI(api_key=self.api_key, timeout=self.cfg.timeout, max_retries=0)

    def complete(self, system_instruction: str, user_prompt: str, max_output_tokens: Optional[int] = None) -> str:
        kwargs: Dict[str, Any] = {}
        if self.cfg.temperature is not None:
            kwargs["temperature"] = self.cfg.temperature
        resp = self._client.chat.completions.create(
            model=self.cfg.model,
            messages=[
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": user_prompt},
            ],
            max_completion_tokens=max_output_tokens or self.cfg.max_output_tokens,
            **kwargs,
        )
        return resp.choices[0].message.content or ""


def _strip_code_fences(s: str) -> str:
    fence = re.compile(r"^\s*```(?:json|text)?\s*([\s\S]*?)\s*```\s*$", re.IGNORECASE)
    m = fence.match(s.strip())
    return m.group(1) if m else s


def _strip_wrapping_quotes(s: str) -> str:
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in "\"'":
        return s[1:-1].strip()
    return s


def build_translation_prompt(sentence: str, context: Dict[str, Any], book_name: str) -> str:
    prev_sentence = context.get("prev_sentence")
    next_sentence = context.get("next_sentence")
    prev_block = f'\nCONTEXT - Previous Sentence:\n"{prev_sentence}"\n' if prev_sentence else ""
    next_block = f'\nCONTEXT - Next Sentence:\n"{next_sentence}"\n' if next_sentence else ""
    return SENTENCE_PROMPT_TEMPLATE.format(
        book_name=book_name,
        paragraph=context.get("paragraph", ""),
        prev_block=prev_block,
        sentence=sentence,
        next_block=next_block,
    )


def build_batch_prompt(units: List[Dict[str, Any]], book_name: str) -> str:
    """
    Numbered sentences plus a small context sample: the paragraphs of the first
    three units, each cut to 200 characters.
    """
    context_lines = [
        f'- "{truncate(unit.get("context", {}).get("paragraph") or "", BATCH_CONTEXT_CHARS)}..."'
        for unit in units[:BATCH_CONTEXT_ITEMS]
    ]
    numbered = [f'{i}. "{unit["sentence"]}"' for i, unit in enumerate(units, start=1)]
    return BATCH_PROMPT_TEMPLATE.format(
        book_name=book_name,
        context_block="\n".join(context_lines),
        numbered_sentences="\n".join(numbered),
    )


@dataclass(frozen=True)
class ParseResult:
    ok: bool
    data: Optional[Dict[str, Any]] = None
    error: str = ""


def _find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _as_object(raw: str) -> ParseResult:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return ParseResult(ok=False, error=f"invalid JSON: {exc}")
    if not isinstance(data, dict):
        return ParseResult(ok=False, error=f"expected a JSON object, got {type(data).__name__}")
    return ParseResult(ok=True, data=data)


def parse_batch_response(text: str) -> ParseResult:
    """Strict parse first, then the first balanced-brace substring."""
    strict = _as_object(text.strip())
    if strict.ok:
        return strict
    candidate = _find_balanced_object(text)
    if candidate is None:
        return ParseResult(ok=False, error=f"no JSON object found ({strict.error})")
    return _as_object(candidate)


def failed_index_sentinel(index: int) -> str:
    return f"[Translation failed for index {index}]"


class Translator:
    """Builds prompts, calls a completion backend and shapes the replies."""

    def __init__(
        self,
        backend: CompletionBackend,
        cfg: Optional[TranslatorConfig] = None,
        audit: Optional[AuditTrail] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend
        self.cfg = cfg or getattr(backend, "cfg", None) or TranslatorConfig()
        self.audit = audit
        self.logger = logger

    def _complete(self, prompt: str, max_output_tokens: int) -> str:
        try:
            return self.backend.complete(SYSTEM_PROMPT_MODERNIZE, prompt, max_output_tokens=max_output_tokens)
        except Exception as exc:
            raise TranslationError(str(exc) or type(exc).__name__) from exc

    def translate_one(self, sentence: str, context: Dict[str, Any], book_name: str) -> str:
        prompt = build_translation_prompt(sentence, context, book_name)
        content = self._complete(prompt, self.cfg.max_output_tokens)
        translation = _strip_wrapping_quotes(_strip_code_fences(content))
        if not translation:
            raise TranslationError(f"empty completion for {sentence[:50]!r}")
        return translation

    def translate_batch(self, units: List[Dict[str, Any]], book_name: str) -> Dict[str, str]:
        prompt = build_batch_prompt(units, book_name)
        if self.audit:
            self.audit.record(
                "batch_prompt",
                {
                    "sids": [u["sid"] for u in units],
                    "prompt_hash": sha1_text(prompt),
                    "chars": len(prompt),
                },
            )

        content = self._complete(prompt, self.cfg.batch_max_output_tokens)
        parsed = parse_batch_response(content)
        if not parsed.ok:
            raise ResponseParseError(f"Unparseable batch response: {parsed.error}")

        data = parsed.data or {}
        out: Dict[str, str] = {}
        missing: List[int] = []
        for index, unit in enumerate(units, start=1):
            value = data.get(str(index))
            text = value.strip() if isinstance(value, str) else ""
            if not text:
                missing.append(index)
                text = failed_index_sentinel(index)
            out[unit["sid"]] = text
        if missing and self.logger:
            self.logger.warning(
                "Batch %s..%s: model skipped indexes %s",
                units[0]["sid"],
                units[-1]["sid"],
                missing,
            )
        return out


class DummyTranslator:
    """Offline translator for dry runs and tests. Returns the source sentence unchanged."""

    def translate_one(self, sentence: str, context: Dict[str, Any], book_name: str) -> str:
        return sentence

    def translate_batch(self, units: List[Dict[str, Any]], book_name: str) -> Dict[str, str]:
        return {unit["sid"]: unit["sentence"] for unit in units}


class RateLimiter:
    """Thread-safe limiter that keeps a minimum interval between calls."""

    def __init__(
        self,
        min_interval: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = max(0.0, min_interval)
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ts: Optional[float] = None

    def wait(self) -> None:
        if self.interval <= 0:
            return
        with self._lock:
            now = self._clock()
            if self._last_ts is not None:
                delta = now - self._last_ts
                if delta < self.interval:
                    self._sleep(self.interval - delta)
            self._last_ts = self._clock()
