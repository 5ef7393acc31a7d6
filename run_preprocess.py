from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from retold import storage
from retold.batching import ProgressEvent, RetryPolicy
from retold.pipeline import CostRates, PipelineOptions, attach_modern_html, run_passages, run_pipeline
from retold.translator import (
    AuditTrail,
    DummyTranslator,
    MissingApiKeyError,
    OpenAIBackend,
    Translator,
    TranslatorConfig,
)
from retold.utils import setup_logger


DEFAULT_BOOKS_DIR = "public/data/books"


def load_config(path: str) -> Dict[str, Any]:
    if path and Path(path).exists():
        return storage.read_json(path)
    return {}


def build_translator(cfg: Dict[str, Any], model: Optional[str], dry_run: bool, audit: AuditTrail, logger) -> Any:
    if dry_run:
        return DummyTranslator()
    ocfg = cfg.get("translation", {}).get("openai", {})
    temperature = ocfg.get("temperature")
    tcfg = TranslatorConfig(
        model=model or ocfg.get("model", "gpt-5-mini"),
        temperature=float(temperature) if temperature is not None else None,
        max_output_tokens=int(ocfg.get("max_output_tokens", 1000)),
        batch_max_output_tokens=int(ocfg.get("batch_max_output_tokens", 6000)),
        timeout=float(ocfg.get("timeout_seconds", 60.0)),
    )
    return Translator(OpenAIBackend(cfg=tcfg), cfg=tcfg, audit=audit, logger=logger)


def build_options(args: argparse.Namespace, cfg: Dict[str, Any]) -> PipelineOptions:
    tcfg = cfg.get("translation", {})
    batching = tcfg.get("batching", {})
    sched = tcfg.get("scheduling", {})
    cost = cfg.get("cost", {})
    return PipelineOptions(
        book_id=args.book_id,
        chapters=args.chapters,
        translate=bool(args.translate or args.dry_run),
        estimate_only=bool(args.estimate),
        skip_cache=bool(args.skip_cache),
        persist_cache=not args.dry_run,
        sequential=bool(args.sequential or batching.get("sequential", False)),
        batch_size=int(args.batch_size or batching.get("batch_size", 10)),
        max_parallel=int(args.max_parallel or batching.get("max_parallel", 3)),
        request_delay=float(sched.get("request_delay_seconds", 0.1)),
        retry_policy=RetryPolicy(
            max_attempts=int(sched.get("max_attempts", 2)),
            base_delay=float(sched.get("retry_base_delay_seconds", 1.0)),
            backoff_multiplier=float(sched.get("backoff_multiplier", 2.0)),
        ),
        cache_dir=cfg.get("cache", {}).get("dir", ".translation-cache"),
        cost=CostRates(
            chars_per_token=int(cost.get("chars_per_token", 4)),
            output_tokens_per_sentence=int(cost.get("output_tokens_per_sentence", 100)),
            input_price_per_million=float(cost.get("input_price_per_million", 0.10)),
            output_price_per_million=float(cost.get("output_price_per_million", 0.30)),
        ),
    )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Segment a book bundle and translate it to modern English.")
    parser.add_argument("book_id", help="Book identifier, e.g. frankenstein")
    parser.add_argument("--config", type=str, default="config.json", help="Path to config.json")
    parser.add_argument("--input", default="", help="Input book JSON (default: <books_dir>/<book_id>.json)")
    parser.add_argument("--output", default="", help="Output JSON (default: <books_dir>/<book_id>-processed.json)")
    parser.add_argument("--chapters", default=None, help='Chapter selection, e.g. "1-3" or "1,3,5"')
    parser.add_argument("--translate", action="store_true", help="Translate sentences (requires OPENAI_API_KEY)")
    parser.add_argument("--model", default=None, help="Model name (default from config, else gpt-5-mini)")
    parser.add_argument("--skip-cache", action="store_true", help="Ignore cached translations for this run")
    parser.add_argument("--estimate", action="store_true", help="Show a cost estimate and exit, no API calls")
    parser.add_argument("--dry-run", action="store_true", help="Run the translation flow offline (source echoed)")
    parser.add_argument("--sequential", action="store_true", help="One request per sentence instead of batches")
    parser.add_argument("--batch-size", type=int, default=None, help="Sentences per batch request")
    parser.add_argument("--max-parallel", type=int, default=None, help="Concurrent batch requests per wave")
    parser.add_argument("--update-book", action="store_true", help="Write modern HTML back into the input bundle")
    parser.add_argument("--passages", action="store_true", help="Fill chapter preview passages in the input bundle")
    parser.add_argument("--export-csv", default="", help="Also write a sentence table CSV to this path")
    args = parser.parse_args(argv)

    load_dotenv()

    cfg = load_config(args.config)
    paths = cfg.get("paths", {})
    logger = setup_logger(paths.get("logs_dir", "logs"))
    if not cfg:
        logger.info("   No config at %s, using built-in defaults.", args.config)
    audit = AuditTrail()

    books_dir = Path(paths.get("books_dir", DEFAULT_BOOKS_DIR))
    input_path = Path(args.input) if args.input else books_dir / f"{args.book_id}.json"
    output_path = Path(args.output) if args.output else books_dir / f"{args.book_id}-processed.json"

    logger.info("=" * 60)
    logger.info("Book: %s | input: %s | output: %s", args.book_id, input_path, output_path)
    logger.info("=" * 60)

    try:
        logger.info("1) Loading book…")
        book = storage.read_json(input_path)
        logger.info("   Loaded %s by %s (%s chapters)", book.get("title") or args.book_id, book.get("author") or "Unknown", len(book.get("chapters") or []))
    except Exception:
        logger.exception("Could not load book.")
        raise SystemExit(1)

    try:
        options = build_options(args, cfg)
    except ValueError:
        logger.exception("Invalid configuration.")
        raise SystemExit(1)

    translator = None
    if (options.translate or args.passages) and not options.estimate_only:
        try:
            translator = build_translator(cfg, args.model, args.dry_run, audit, logger)
        except MissingApiKeyError as exc:
            logger.error(str(exc))
            raise SystemExit(1)

    def _on_progress(event: ProgressEvent) -> None:
        logger.info(
            '   [%s/%s] (%.1f%%) %s: "%s..." -> "%s..."',
            event.current,
            event.total,
            event.percent,
            event.sid,
            event.sentence,
            event.translation,
        )

    try:
        logger.info("2) Segmentation%s…", " + translation" if options.translate else "")
        result = run_pipeline(book, options, translator=translator, logger=logger, audit=audit, on_progress=_on_progress)
    except Exception:
        logger.exception("Pipeline failed.")
        raise SystemExit(1)

    if options.estimate_only:
        logger.info("Estimate complete (no translation performed).")
        return

    # Dry runs echo the source text, which must never land in the bundle.
    write_bundle = not args.dry_run
    updated_book = None

    try:
        logger.info("3) Writing output…")
        storage.write_json(output_path, result.document)
        logger.info("   Wrote %s", output_path)
        if args.export_csv:
            storage.write_sentences_csv(args.export_csv, storage.sentence_rows(result.document))
            logger.info("   Sentence table: %s", args.export_csv)
        if args.update_book and options.translate:
            if write_bundle:
                updated_book = attach_modern_html(book, result.document)
            else:
                logger.info("   Dry run: leaving modern HTML in %s untouched", input_path)
    except Exception:
        logger.exception("Export failed.")
        raise SystemExit(1)

    passage_stats: Dict[str, int] = {}
    if args.passages:
        try:
            logger.info("4) Passages…")
            passages = run_passages(
                updated_book or book,
                options,
                translator,
                logger=logger,
                audit=audit,
                on_progress=_on_progress,
            )
            passage_stats = passages.stats
            if write_bundle:
                updated_book = passages.document
            else:
                logger.info("   Dry run: leaving passages in %s untouched", input_path)
        except Exception:
            logger.exception("Passage generation failed.")
            raise SystemExit(1)

    if updated_book is not None:
        try:
            storage.write_json(input_path, updated_book)
            logger.info("   Updated %s", input_path)
        except Exception:
            logger.exception("Could not update %s.", input_path)
            raise SystemExit(1)

    audit_path = paths.get("audit_report", "logs/audit.json")
    storage.write_json(audit_path, audit.as_list())
    logger.info("   Audit trail saved to: %s", audit_path)

    stats = result.stats
    logger.info(
        "Done: %s chapter(s), %s sentence(s); cached=%s translated=%s failed=%s",
        stats.get("chapters", 0),
        stats.get("sentences", 0),
        stats.get("cached", 0),
        stats.get("translated", 0),
        stats.get("failed", 0),
    )
    if passage_stats:
        logger.info(
            "Passages: %s; cached=%s translated=%s failed=%s",
            passage_stats.get("passages", 0),
            passage_stats.get("cached", 0),
            passage_stats.get("translated", 0),
            passage_stats.get("failed", 0),
        )


if __name__ == "__main__":
    main()
