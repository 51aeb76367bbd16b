"""One-shot pipeline run: fetch every adapter, ingest, score, write the summary.

Run: edm-popularity-update [--only apple_music_rss]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from .core.adapters import ADAPTERS, select_adapters
from .db import close_db
from .ingestors import run_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edm-popularity-update", description=__doc__.splitlines()[0])
    parser.add_argument(
        "--only",
        action="append",
        choices=sorted(ADAPTERS),
        help="Run only this adapter (repeatable). Defaults to EDM_ADAPTERS or every adapter.",
    )
    parser.add_argument("--no-summary", action="store_true", help="Do not write last_update.json.")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


async def _run(only: Optional[Sequence[str]], write_summary: bool) -> int:
    try:
        summary = await run_pipeline(select_adapters(only), write_summary=write_summary)
    finally:
        await close_db()
    print(summary.model_dump_json(indent=2, exclude_none=True))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        return asyncio.run(_run(args.only, not args.no_summary))
    except Exception as exc:
        logger.error("Pipeline run failed: %s", exc, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
