from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace

from dex_bot.config import load_settings
from dex_bot.engine import TradingEngine, build_context
from dex_bot.logging_setup import configure_logging

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Multi-strategy DEX trading decision engine",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single trading cycle and exit",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after N cycles",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    )
    return parser.parse_args(argv)


async def _run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings()

    if args.once:
        settings = replace(settings, engine=replace(settings.engine, run_once=True))
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)

    configure_logging(settings.log_level)

    context = build_context(settings)
    engine = TradingEngine(context)

    LOGGER.info(
        "bot mode=%s rotation=%s strategies=%s quote_api=%s",
        "dry-run" if settings.strategy.dry_run else "live",
        settings.scheduler.rotation_mode.value,
        ",".join(context.scheduler.strategy_names),
        settings.provider.quote_api_url,
    )
    await engine.run_forever(max_cycles=args.max_cycles)
    LOGGER.info("stopped after %d cycles", engine.cycles)


def main(argv: list[str] | None = None) -> None:
    asyncio.run(_run(argv))


if __name__ == "__main__":
    main()
