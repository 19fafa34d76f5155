"""Run a one-off catalog sync from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from catalog_sync.jobs.sync import (
    configured_channels,
    run_brand_sync,
    run_category_sync,
    run_safety_stock_sync,
    run_sync,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("channels", nargs="*", help="channel names from channels.yml (default: SYNC_CHANNELS)")
    parser.add_argument("--categories", action="store_true", help="refresh the category tree first")
    parser.add_argument("--brands", action="store_true", help="refresh the brand list first")
    parser.add_argument("--safety-stock", action="store_true", help="only refresh safety stock")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    channels = args.channels or configured_channels()
    if args.categories:
        print(json.dumps(await run_category_sync(), indent=2))
    if args.brands:
        print(json.dumps(await run_brand_sync(), indent=2))
    exit_code = 0
    for channel in channels:
        if args.safety_stock:
            print(json.dumps(await run_safety_stock_sync(channel), indent=2))
            continue
        report = await run_sync(channel)
        print(json.dumps(report.to_dict(), indent=2, default=str))
        if report.status == "error":
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
