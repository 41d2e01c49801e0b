"""Command-line entry point for the past-paper ingestion pipeline."""

import argparse
import json
import logging
import signal
import sys

import pydantic

from pastpapers.core.config import load_pipeline_config
from pastpapers.core.errors import PipelineError
from pastpapers.pipeline import build_context, run_backfill, run_pipeline

logger = logging.getLogger("pipeline")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pastpapers",
        description="Discover, download and index exam past papers",
    )
    parser.add_argument(
        "url",
        nargs="?",
        help="Subject root (papacambridge) or ?dir= listing (pastpapers.co)",
    )
    parser.add_argument("--config", default=None, help="Path to pipeline config YAML")
    parser.add_argument("--start-year", type=int, default=None, help="Latest year to scrape")
    parser.add_argument("--end-year", type=int, default=None, help="Earliest year to scrape")
    parser.add_argument("--concurrency", type=int, default=None, help="Downloads per batch")
    parser.add_argument("--max-papers", type=int, default=None, help="Cap papers per run")
    parser.add_argument(
        "--no-embeddings",
        action="store_true",
        help="Skip vector generation for new papers",
    )
    parser.add_argument("--data-root", default=None, help="Directory for database, blobs, cache")
    parser.add_argument("--db", default=None, help="Database filename under the data root")
    parser.add_argument("--no-resume", action="store_true", help="Ignore saved progress")
    parser.add_argument(
        "--backfill-vectors",
        action="store_true",
        help="Vectorize stored papers that have no vector, then exit",
    )
    parser.add_argument("--stats", action="store_true", help="Print record-store stats and exit")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )

    if not (args.url or args.backfill_vectors or args.stats):
        parser.error("a URL is required unless --backfill-vectors or --stats is given")

    try:
        config = load_pipeline_config(args.config).with_overrides(
            start_year=args.start_year,
            end_year=args.end_year,
            concurrency=args.concurrency,
            max_papers=args.max_papers,
            data_root=args.data_root,
            database_name=args.db,
            generate_embeddings=False if args.no_embeddings else None,
            resume=False if args.no_resume else None,
        )
    except (OSError, pydantic.ValidationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    ctx = None
    previous = signal.getsignal(signal.SIGINT)
    try:
        ctx = build_context(config)
        # first Ctrl-C lets the current batch finish
        signal.signal(signal.SIGINT, lambda *_: _cancel(ctx))

        if args.stats:
            print(json.dumps(ctx.db.get_stats(), indent=2))
            return 0

        if args.backfill_vectors:
            results = run_backfill(ctx)
            failed = sum(1 for r in results if not r.success)
            logger.info("Backfill: %d updated, %d failed", len(results) - failed, failed)
            return 0

        summary = run_pipeline(args.url, ctx)
        print(json.dumps(summary.model_dump(exclude={"stages"}), indent=2))
        return 0
    except (PipelineError, ValueError, OSError) as exc:
        logger.error("Pipeline failed: %s", exc)
        return 1
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)
        if ctx is not None:
            ctx.close()


def _cancel(ctx) -> None:
    if ctx.cancel_event.is_set():
        raise KeyboardInterrupt
    logger.warning("Cancelling: finishing the current batch (Ctrl-C again to abort)")
    ctx.cancel_event.set()


if __name__ == "__main__":
    sys.exit(main())
