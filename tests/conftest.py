from __future__ import annotations

import copy
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


TINY_BOOK = {
    "id": "tiny",
    "title": "Tiny Tales",
    "author": "Anon",
    "chapters": [
        {
            "id": "ch1",
            "title": "Letter 1",
            "original": "<p>Hello there. Dr. Smith left.</p><p>He returned!</p>",
            "modern": "<p>Modern retelling coming soon.</p>",
            "passages": [],
        },
        {
            "id": "ch2",
            "title": "Letter 2",
            "original": "<p>The end.</p>",
            "modern": "<p>Modern retelling coming soon.</p>",
            "passages": [],
        },
    ],
}


@pytest.fixture
def tiny_book():
    return copy.deepcopy(TINY_BOOK)
