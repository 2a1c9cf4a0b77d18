# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page Context CLI: snapshot and check-url commands.

Usage:
    pagecontext snapshot URL [--config FILE] [--max-tokens N] [--wait SECONDS] [--format json|text]
    pagecontext check-url URL [--config FILE]
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys

from . import logging_config
from .config import MonitoringConfig, load_config
from .errors import ConfigurationError, PageContextError
from .privacy import PrivacyController

logger = logging.getLogger(__name__)


def _load(path: str | None) -> MonitoringConfig:
    return load_config(path) if path else MonitoringConfig()


def _dump(data: object) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _snapshot(url: str, config: MonitoringConfig, *, max_tokens: int, wait: float, headed: bool) -> dict:
    from playwright.async_api import async_playwright

    from .monitor import PageContextMonitor
    from .playwright_host import PlaywrightPageHost

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=not headed)
        try:
            page = await browser.new_page()
            host = PlaywrightPageHost(page)
            await host.install()
            monitor = PageContextMonitor(host, host, config=config)
            # Consent is implied by running the command explicitly
            monitor.privacy.set_consent(True)
            monitor.start()
            try:
                await page.goto(url, wait_until="load")
                if wait > 0:
                    await asyncio.sleep(wait)
                await host.refresh()
                context = await monitor.get_context()
                formatted = await monitor.provider.get_ai_formatted_context(max_tokens=max_tokens)
                suggestions = await monitor.provider.generate_suggestions()
                insights = await monitor.provider.generate_proactive_insights()
            finally:
                monitor.destroy()
        finally:
            await browser.close()

    return {
        "url": monitor.privacy.redact(url),
        "excluded": context.metadata.excluded,
        "page_type": context.summary.page_type,
        "relevance_score": context.summary.relevance_score,
        "data_quality": dataclasses.asdict(context.metadata.data_quality),
        "degraded_sources": list(context.metadata.degraded_sources),
        "aggregation_ms": context.metadata.aggregation_time,
        "token_count": formatted.token_count,
        "context": formatted.text if formatted.has_context else None,
        "suggestions": [{"title": s.title, "confidence": s.confidence, "prompt": s.prompt} for s in suggestions],
        "insights": [{"title": i.title, "severity": i.severity} for i in insights],
    }


def cmd_snapshot(args: argparse.Namespace, config: MonitoringConfig) -> None:
    """Open URL in Chromium, observe it and print the aggregated context."""
    result = asyncio.run(
        _snapshot(args.url, config, max_tokens=args.max_tokens, wait=args.wait, headed=args.headed)
    )
    if args.format == "text":
        print(result["context"] or f"(no context: {result['url']} is excluded)")
    else:
        _dump(result)


def cmd_check_url(args: argparse.Namespace, config: MonitoringConfig) -> None:
    """Report whether URL would be monitored under the configured privacy policy."""
    privacy = PrivacyController(config.privacy)
    if not config.privacy.require_consent or args.consent:
        privacy.set_consent(True)
    _dump(
        {
            "url": privacy.redact(args.url),
            "monitored": privacy.should_monitor_url(args.url),
            "contains_sensitive_data": privacy.contains_sensitive_data(args.url),
            "consent_required": config.privacy.require_consent,
        }
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Page Context CLI", prog="pagecontext")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_snapshot = subparsers.add_parser("snapshot", help="Aggregate the context of a live page")
    p_snapshot.add_argument("url", metavar="URL")
    p_snapshot.add_argument("--config", type=str, metavar="FILE", help="YAML monitoring config")
    p_snapshot.add_argument("--max-tokens", type=int, default=1000, help="Token budget (default: 1000)")
    p_snapshot.add_argument("--wait", type=float, default=1.0, help="Seconds to observe after load (default: 1)")
    p_snapshot.add_argument("--format", choices=("json", "text"), default="json")
    p_snapshot.add_argument("--headed", action="store_true", help=argparse.SUPPRESS)

    p_check = subparsers.add_parser("check-url", help="Check a URL against the privacy policy")
    p_check.add_argument("url", metavar="URL")
    p_check.add_argument("--config", type=str, metavar="FILE", help="YAML monitoring config")
    p_check.add_argument("--consent", action="store_true", help="Assume the user has given consent")

    commands = {"snapshot": cmd_snapshot, "check-url": cmd_check_url}
    args = parser.parse_args()
    level = "DEBUG" if args.verbose else "WARNING"
    logging_config.configure(json_output=args.json_logs, level=level)

    try:
        config = _load(args.config)
        # Reconfigure so log lines obey the loaded privacy policy
        redactor = PrivacyController(config.privacy).redact
        logging_config.configure(json_output=args.json_logs, level=level, redactor=redactor)
        commands[args.command](args, config)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    except PageContextError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.debug("Unhandled CLI error", exc_info=True)
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
