"""Command-line entry point for SiteScout.

Usage:
    python -m sitescout.cli scrape example.com
    python -m sitescout.cli scrape example.com --max-pages 5 --formats text markdown
    python -m sitescout.cli scrape https://a.com/x https://a.com/y --strategy dynamic
    python -m sitescout.cli scrape example.com --progress   # NDJSON events on stderr
    python -m sitescout.cli detect https://example.com
    python -m sitescout.cli discover example.com --max-pages 50
"""

import argparse
import asyncio
import json
import sys

import sentry_sdk

from sitescout.config import settings
from sitescout.core.exceptions import ScrapeFatalError
from sitescout.core.logging_config import configure_logging
from sitescout.core.metrics import get_metrics


def _setup(verbose: bool = False) -> None:
    configure_logging(
        log_format=settings.LOG_FORMAT,
        log_level="DEBUG" if verbose else settings.LOG_LEVEL,
        stream=sys.stderr,
    )
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            environment=settings.SENTRY_ENVIRONMENT,
            release=f"sitescout@{settings.APP_VERSION}",
        )


def _build_request(args):
    from sitescout.schemas.scrape import RetryConfig, ScrapeRequest, StealthConfig

    targets = args.targets
    single_domain = len(targets) == 1 and not args.only
    return ScrapeRequest(
        domain=targets[0] if single_domain else None,
        urls=None if single_domain else targets,
        max_pages=args.max_pages,
        formats=args.formats,
        timeout=args.timeout * 1000,
        strategy=args.strategy,
        enable_fallback=not args.no_fallback,
        concurrency=args.concurrency,
        request_delay=args.delay,
        block_resources=args.block or [],
        stealth=StealthConfig(
            enabled=not args.no_stealth,
            simulate_human=args.human,
            randomize_fingerprint=args.randomize_fingerprint,
        ),
        retry=RetryConfig(max_retries=args.retries),
    )


async def _cmd_scrape(args) -> int:
    from sitescout.services.engine import scrape
    from sitescout.services.streaming import ndjson_sink

    request = _build_request(args)
    sink = ndjson_sink(sys.stderr) if args.progress else None

    try:
        response = await scrape(request, sink)
    except ScrapeFatalError as e:
        print(json.dumps({"success": False, "error": str(e), "error_code": e.code}), file=sys.stdout)
        return 1

    if args.output == "summary":
        for r in response.results:
            status = "ok" if r.success else f"FAILED ({r.error_code})"
            title = (r.content or {}).get("title", "")
            print(f"[{r.strategy}] {r.url} {status} {title}")
        m = response.metrics
        print(
            f"\n{m.pages_scraped} scraped, {m.pages_failed} failed, "
            f"{m.duration / 1000:.1f}s, success rate {m.success_rate:.0%}",
            file=sys.stderr,
        )
    else:
        print(json.dumps(response.model_dump(), indent=2, ensure_ascii=False, default=str))

    if args.metrics_file and settings.METRICS_ENABLED:
        with open(args.metrics_file, "wb") as fh:
            fh.write(get_metrics())
    return 0 if response.success else 2


async def _cmd_detect(args) -> int:
    from sitescout.schemas.scrape import _normalize_url
    from sitescout.services.engine import analyze_site

    analysis = await analyze_site(_normalize_url(args.url), timeout=args.timeout)
    print(json.dumps(analysis.model_dump(), indent=2, ensure_ascii=False))
    return 0


async def _cmd_discover(args) -> int:
    from sitescout.schemas.scrape import _normalize_url
    from sitescout.services.discovery import UrlDiscovery

    discovery = UrlDiscovery()
    try:
        urls = await discovery.discover(_normalize_url(args.domain), args.max_pages)
    finally:
        await discovery.aclose()
    for url in urls:
        print(url)
    print(f"\nFound {len(urls)} URLs", file=sys.stderr)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="sitescout",
        description="SiteScout: adaptive website scraping",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- scrape ---
    scrape_parser = subparsers.add_parser("scrape", help="Scrape a domain or a list of URLs")
    scrape_parser.add_argument("targets", nargs="+", help="A domain, or several URLs")
    scrape_parser.add_argument(
        "--only", action="store_true",
        help="Treat a single target as a URL to scrape, not a domain to discover",
    )
    scrape_parser.add_argument("--max-pages", type=int, default=settings.MAX_PAGES)
    scrape_parser.add_argument(
        "--formats", nargs="+", default=["text", "links", "images"],
        help="text, markdown, html, links, images, screenshot, pdf",
    )
    scrape_parser.add_argument(
        "--strategy", default="auto", choices=["auto", "static", "dynamic", "spa"],
    )
    scrape_parser.add_argument("--timeout", type=int, default=30, help="Per-page timeout in seconds")
    scrape_parser.add_argument("--concurrency", type=int, default=1)
    scrape_parser.add_argument(
        "--delay", type=int, default=settings.REQUEST_DELAY, help="Politeness delay in ms",
    )
    scrape_parser.add_argument("--retries", type=int, default=3)
    scrape_parser.add_argument("--no-fallback", action="store_true")
    scrape_parser.add_argument("--no-stealth", action="store_true")
    scrape_parser.add_argument("--human", action="store_true", help="Simulate mouse/wheel activity")
    scrape_parser.add_argument("--randomize-fingerprint", action="store_true")
    scrape_parser.add_argument(
        "--block", nargs="+", default=None,
        help="Resource types to block: image, stylesheet, font, script, media",
    )
    scrape_parser.add_argument("--progress", action="store_true", help="NDJSON progress on stderr")
    scrape_parser.add_argument(
        "-o", "--output", default="json", choices=["json", "summary"],
    )
    scrape_parser.add_argument("--metrics-file", default=None, help="Write Prometheus metrics here")

    # --- detect ---
    detect_parser = subparsers.add_parser("detect", help="Detect a site's framework")
    detect_parser.add_argument("url")
    detect_parser.add_argument("--timeout", type=float, default=15.0)

    # --- discover ---
    discover_parser = subparsers.add_parser("discover", help="List URLs found for a domain")
    discover_parser.add_argument("domain")
    discover_parser.add_argument("--max-pages", type=int, default=50)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _setup(args.verbose)

    commands = {
        "scrape": _cmd_scrape,
        "detect": _cmd_detect,
        "discover": _cmd_discover,
    }
    try:
        return asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
