from __future__ import annotations


class RetoldError(Exception):
    """Base class for pipeline errors."""


class SegmentationInputError(RetoldError):
    """A chapter record has no id or its ``original`` field is not HTML text."""


class TranslationError(RetoldError):
    """A single-sentence or batch call to the completion service failed."""


class ResponseParseError(TranslationError):
    """A batch reply could not be parsed into a JSON object."""


class CacheIOError(RetoldError):
    """Reading or writing the per-book translation cache failed."""
