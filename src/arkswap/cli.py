"""Command line inspection of swaps and counterparty terms.

Usage:
    arkswap fees
    arkswap limits --from ARK --to BTC
    arkswap status <swap id>
    arkswap history
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

from arkswap.config import Settings, get_settings
from arkswap.errors import ArkSwapError
from arkswap.providers.boltz import BoltzSwapProvider
from arkswap.storage import SqlSwapRepository, close_db, init_db

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_provider(settings: Settings) -> BoltzSwapProvider:
    return BoltzSwapProvider(
        api_url=settings.resolved_swap_api_url,
        network=settings.network,
        timeout=settings.http_timeout,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


async def show_fees(provider: BoltzSwapProvider, from_: Optional[str], to: Optional[str]) -> None:
    if from_ and to:
        fees = await provider.get_chain_fees(from_, to)
    else:
        fees = await provider.get_fees()
    _print_json(fees.model_dump(by_alias=True))


async def show_limits(provider: BoltzSwapProvider, from_: Optional[str], to: Optional[str]) -> None:
    if from_ and to:
        limits = await provider.get_chain_limits(from_, to)
    else:
        limits = await provider.get_limits()
    print(f"Minimum: {limits.min} sats")
    print(f"Maximum: {limits.max} sats")


async def show_status(provider: BoltzSwapProvider, swap_id: str) -> None:
    status = await provider.get_swap_status(swap_id)
    _print_json(status.model_dump(by_alias=True, exclude_none=True))


async def show_history(repository: SqlSwapRepository) -> None:
    await init_db()
    try:
        swaps = await repository.get_all_swaps()
    finally:
        await close_db()

    if not swaps:
        print("No swaps found.")
        return
    swaps.sort(key=lambda s: s.created_at, reverse=True)
    print(f"Swaps ({len(swaps)} total):")
    print("-" * 72)
    for swap in swaps:
        created = datetime.fromtimestamp(swap.created_at).strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {created}  {swap.type:<10} {swap.status.value:<28} {swap.id}")


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    settings = get_settings()
    setup_logging(settings)

    parser = argparse.ArgumentParser(prog="arkswap", description="Ark swap utility")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("fees", "Show swap fees"), ("limits", "Show swap limits")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--from", dest="from_", help="Source asset of a chain swap (ARK or BTC)")
        sub.add_argument("--to", help="Destination asset of a chain swap (ARK or BTC)")

    status_parser = subparsers.add_parser("status", help="Show the counterparty status of a swap")
    status_parser.add_argument("swap_id", help="Swap id")

    subparsers.add_parser("history", help="List stored swaps, newest first")

    args = parser.parse_args(argv)
    provider = build_provider(settings)

    if args.command == "fees":
        coro = show_fees(provider, args.from_, args.to)
    elif args.command == "limits":
        coro = show_limits(provider, args.from_, args.to)
    elif args.command == "status":
        coro = show_status(provider, args.swap_id)
    else:
        coro = show_history(SqlSwapRepository())

    try:
        asyncio.run(coro)
    except ArkSwapError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
