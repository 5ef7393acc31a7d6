from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd


def _ensure_exists(path: Path) -> Path:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path


def read_json(path: str | Path) -> Any:
    p = _ensure_exists(Path(path))
    with open(p, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: str | Path, obj: Any, indent: int = 2) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=indent)


def write_json_atomic(path: str | Path, obj: Any, indent: int = 2) -> None:
    """Write JSON to a temp file in the same directory, then swap it in."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=indent)
        os.replace(tmp_name, p)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def sentence_rows(processed_book: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a processed book into one row per original sentence."""
    rows: List[Dict[str, Any]] = []
    for chapter in processed_book.get("chapters", []):
        modern_by_sid: Dict[str, str] = {}
        for para in chapter.get("modern_paragraphs", []) or []:
            for sent in para.get("sentences", []):
                modern_by_sid[sent["sid"]] = sent["text"]
        for para in chapter.get("paragraphs", []):
            for sent in para.get("sentences", []):
                rows.append(
                    {
                        "chapter_id": chapter.get("chapter_id"),
                        "pid": para["pid"],
                        "sid": sent["sid"],
                        "start": sent["start"],
                        "end": sent["end"],
                        "text": sent["text"],
                        "modern": modern_by_sid.get(f"m_{sent['sid']}", ""),
                    }
                )
    return rows


def write_sentences_csv(path: str | Path, rows: List[Dict[str, Any]]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(rows, columns=["chapter_id", "pid", "sid", "start", "end", "text", "modern"])
    df.to_csv(p, index=False, encoding="utf-8")


def read_sentences_csv(path: str | Path) -> List[Dict[str, Any]]:
    df = pd.read_csv(path, keep_default_na=False)
    return df.to_dict(orient="records")
