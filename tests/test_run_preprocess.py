import json

import run_preprocess
from retold.translator import DummyTranslator


LONG = "This paragraph is comfortably longer than fifty characters in total."


def _write_book(tmp_path, tiny_book):
    tiny_book["chapters"][0]["original"] += f"<p>{LONG}</p>"
    path = tmp_path / "tiny.json"
    path.write_text(json.dumps(tiny_book), encoding="utf-8")
    return path


def _argv(tmp_path, book_path, *extra):
    return [
        "tiny",
        "--input",
        str(book_path),
        "--output",
        str(tmp_path / "out" / "tiny-processed.json"),
        "--config",
        str(tmp_path / "missing-config.json"),
        *extra,
    ]


class UpperTranslator(DummyTranslator):
    def translate_one(self, sentence, context, book_name):
        return sentence.upper()

    def translate_batch(self, units, book_name):
        return {u["sid"]: u["sentence"].upper() for u in units}


def test_dry_run_never_rewrites_the_input_bundle(tmp_path, tiny_book, monkeypatch):
    monkeypatch.chdir(tmp_path)
    book_path = _write_book(tmp_path, tiny_book)
    before = book_path.read_text(encoding="utf-8")

    run_preprocess.main(_argv(tmp_path, book_path, "--dry-run", "--update-book", "--passages"))

    assert book_path.read_text(encoding="utf-8") == before
    processed = json.loads((tmp_path / "out" / "tiny-processed.json").read_text(encoding="utf-8"))
    assert processed["chapters"][0]["modern_paragraphs"][0]["text"] == "Hello there. Dr. Smith left."
    assert not (tmp_path / ".translation-cache").exists()


def test_update_book_and_passages_write_back(tmp_path, tiny_book, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(run_preprocess, "build_translator", lambda *args, **kwargs: UpperTranslator())
    book_path = _write_book(tmp_path, tiny_book)

    run_preprocess.main(
        _argv(tmp_path, book_path, "--translate", "--update-book", "--passages", "--batch-size", "2")
    )

    book = json.loads(book_path.read_text(encoding="utf-8"))
    ch1 = book["chapters"][0]
    assert "<p>HELLO THERE. DR. SMITH LEFT.</p>" in ch1["modern"]
    assert ch1["passages"] == [
        {
            "id": "ch1-passage-1",
            "originalText": LONG,
            "modernText": LONG.upper(),
            "context": f"<p>{LONG}</p>",
        }
    ]
    cache = json.loads((tmp_path / ".translation-cache" / "tiny.json").read_text(encoding="utf-8"))
    assert cache["ch1-passage-1"] == LONG.upper()
