from __future__ import annotations

import argparse

from retold import storage
from retold.pipeline import count_structure, parse_chapter_range, process_book_structure


def main() -> None:
    parser = argparse.ArgumentParser(description="Segment a book bundle into paragraphs and sentences.")
    parser.add_argument("--book", required=True, help="Path to the book JSON bundle")
    parser.add_argument("--out", required=True, help="Output structure JSON")
    parser.add_argument("--chapters", default=None, help='Chapter selection, e.g. "1-3" or "1,3,5"')
    parser.add_argument("--csv-out", default="", help="Optional sentence table CSV")
    args = parser.parse_args()

    book = storage.read_json(args.book)
    indices = parse_chapter_range(args.chapters, len(book.get("chapters") or []))
    processed = process_book_structure(book, indices)

    storage.write_json(args.out, processed)
    if args.csv_out:
        storage.write_sentences_csv(args.csv_out, storage.sentence_rows(processed))

    stats = count_structure(processed)
    print(f"Wrote {stats['sentences']} sentences in {stats['paragraphs']} paragraphs to {args.out}")


if __name__ == "__main__":
    main()
