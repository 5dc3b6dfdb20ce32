"""Quick Zhihu feed smoke test.

Usage:
  python scripts/fetch_feed.py -q 800718032 -n 5 --max-pages 2

Reads configuration like the API process does (environment, .env, the JSON
config and headers files). Prints the fetched count and the first answers.
"""

from __future__ import annotations

import argparse
import asyncio
from typing import List

from scraper.connectors.base import PermanentError, TransientError
from scraper.connectors.zhihu import ZhihuFeedConnector
from scraper.services.normalizer import normalize
from scraper.settings import get_settings, resolve_config
from scraper.utils.logging import configure_logging


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Zhihu feed smoke test")
    parser.add_argument("-q", "--question", default=None, help="Question id (default: from config)")
    parser.add_argument("-n", "--top", type=int, default=5, help="Print top N answers (default: 5)")
    parser.add_argument("--max-pages", type=int, default=1, help="Page cap for this run (default: 1)")
    parser.add_argument("--delay-ms", type=int, default=None, help="Override the inter-page delay")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.structlog_level, json_enabled=settings.log_json)
    overrides = {"max_pages": max(1, args.max_pages)}
    if args.question:
        overrides["question_id"] = args.question
    if args.delay_ms is not None:
        overrides["page_delay_ms"] = max(0, args.delay_ms)
    config = resolve_config(settings).model_copy(update=overrides)
    print(
        "Config:",
        {
            "question": config.question_id,
            "endpoint": config.endpoint,
            "page_size": config.page_size,
            "max_pages": config.max_pages,
            "headers": sorted(config.request_headers()),
        },
    )

    connector = ZhihuFeedConnector(config)
    try:
        page = asyncio.run(connector.fetch_all())
    except PermanentError as exc:
        print(f"Permanent error: {exc}")
        return 2
    except TransientError as exc:
        print(f"Transient error: {exc}")
        return 3

    payload = normalize(page, config)
    print(f"Fetched {len(page.data)} items, {payload.total} answers for: {payload.question.title}")
    for idx, comment in enumerate(payload.comments[: args.top], start=1):
        print(f"{idx}. [{comment.author.name}] {comment.excerpt[:120]}\n   {comment.answer_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
