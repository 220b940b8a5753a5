#!/usr/bin/env python3
"""
mpl-royalty — CLI for batch royalty updates of Metaplex NFTs on Solana.

Usage:
    mpl-royalty update <file> [royalty] [creator] [--rpc <url>] [--keypair <path>] [--dry-run [--authority <address>]]
    mpl-royalty inspect <file> [--rpc <url>]

The mint file is a JSON array of mint addresses:
    ["mint1", "mint2", "mint3"]

Examples:
    # Set a 5% royalty on every mint in the list (devnet)
    mpl-royalty update mints.json 500

    # Keep royalties, give a new creator 10% of the creator split
    mpl-royalty update mints.json "" "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin;10"

    # Check which mints are mutable before updating
    mpl-royalty inspect mints.json --rpc https://api.mainnet-beta.solana.com
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from solders.pubkey import Pubkey

from mpl_royalty import __version__
from mpl_royalty.batch import (
    BatchRetryExhausted,
    InputError,
    UpdateReport,
    VerificationError,
    batch_update,
    inspect_metadata,
    load_mints,
    parse_creator_spec,
    parse_royalty,
)
from mpl_royalty.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_WALLET_PATH,
    MAX_BATCH_SIZE,
    UpdaterConfig,
)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
    )
    # Keep RPC transport chatter out of the progress output
    logging.getLogger("httpx").setLevel(logging.WARNING)


def print_skipped(report: UpdateReport) -> None:
    if report.immutable:
        print("\nSkipped mints:")
        for mint in report.immutable:
            print(mint)
    if report.missing:
        print("\nMints without metadata:")
        for mint in report.missing:
            print(mint)
    if report.undecodable:
        print("\nMints with unreadable metadata:")
        for mint, reason in report.undecodable:
            print(f"{mint}  ({reason})")


def cmd_update(args: argparse.Namespace) -> int:
    """Execute batch metadata update."""
    config = UpdaterConfig.from_args(args)
    try:
        return _update(args, config)
    finally:
        print(f"\nSolana network {config.endpoint}")


def _update(args: argparse.Namespace, config: UpdaterConfig) -> int:
    try:
        mints = load_mints(args.file)
        royalty = parse_royalty(args.royalty) if args.royalty else None
        new_creator = parse_creator_spec(args.creator) if args.creator else None
        authority = Pubkey.from_string(args.authority) if args.authority else None
    except (OSError, ValueError, InputError) as e:
        print(f"Error parsing input: {e}")
        return 1

    print(f"Loaded {len(mints)} mints from {args.file}")
    print(f"Network: {config.endpoint}")
    if args.dry_run and authority is not None:
        print(f"Update authority: {authority}")
    else:
        print(f"Keypair: {config.wallet_path}")
    print(f"Royalty: {'unchanged' if royalty is None else f'{royalty} bps'}")
    if new_creator:
        print(f"New creator: {new_creator.address} ({new_creator.share}%)")
    print(f"Batch size: {config.max_batch_size}")
    retries = "unlimited" if config.retry.max_attempts is None else config.retry.max_attempts
    print(f"Max attempts per batch: {retries}")
    print()

    if not args.dry_run and not args.yes:
        response = input(f"Proceed with updating {len(mints)} mints? [y/N]: ")
        if response.lower() not in ("y", "yes"):
            print("Aborted.")
            return 0

    try:
        report = asyncio.run(batch_update(
            config,
            mints,
            royalty=royalty,
            new_creator=new_creator,
            dry_run=args.dry_run,
            authority=authority,
        ))
    except InputError as e:
        print(f"\n{e}")
        return 1
    except BatchRetryExhausted as e:
        print(f"\nError {e}")
        return 1
    except VerificationError as e:
        print(f"\nVerification failed:")
        for mismatch in e.mismatches:
            print(f"  ✗ {mismatch}")
        return 1
    except Exception as e:
        print(f"\nError {e}")
        return 1

    print()
    for result in report.batches:
        print(result.summary())
    print()
    print(report.summary())
    print_skipped(report)
    return 0 if report.success else 1


def cmd_inspect(args: argparse.Namespace) -> int:
    """Inspect metadata without updating."""
    config = UpdaterConfig.from_args(args)

    try:
        mints = load_mints(args.file)
    except (OSError, ValueError, InputError) as e:
        print(f"Error parsing input: {e}")
        return 1

    print(f"Loaded {len(mints)} mints from {args.file}")

    try:
        report, results = asyncio.run(inspect_metadata(config, mints))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    print()
    for result in results[:5]:
        if result.found:
            record = result.record
            flag = "" if record.is_mutable else " [immutable]"
            print(
                f"  {str(result.mint)[:8]}...{str(result.mint)[-4:]} "
                f"{record.name!r} → {record.seller_fee_basis_points} bps{flag}"
            )
    if len(results) > 5:
        print(f"  ... and {len(results) - 5} more")

    print()
    print(report.summary())
    print_skipped(report)
    return 0


def add_network_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--rpc", default=DEFAULT_ENDPOINT,
        help=f"Solana RPC URL. Default: {DEFAULT_ENDPOINT}"
    )
    parser.add_argument(
        "--batch-size", type=int, default=MAX_BATCH_SIZE,
        help=f"Update instructions per transaction. Default: {MAX_BATCH_SIZE}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Debug logging"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mpl-royalty",
        description="mpl-royalty — Batch royalty updates for Metaplex NFTs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"mpl-royalty {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Update command
    update_parser = subparsers.add_parser(
        "update", help="Update royalty and creators of mutable NFTs"
    )
    update_parser.add_argument("file", help="Path to JSON list of mint addresses")
    update_parser.add_argument(
        "royalty", nargs="?", default=None,
        help="New royalty in basis points (500 = 5%%). Omit or pass '' to keep"
    )
    update_parser.add_argument(
        "creator", nargs="?", default=None,
        help="New creator as '<address>;<share>', carved out of the 100%% creator"
    )
    update_parser.add_argument(
        "--keypair", "-k", default=DEFAULT_WALLET_PATH,
        help=f"Update authority keypair file. Default: {DEFAULT_WALLET_PATH}"
    )
    add_network_arguments(update_parser)
    update_parser.add_argument(
        "--retry-delay-ms", type=int, default=DEFAULT_RETRY_DELAY_MS,
        help=f"Delay before retrying a failed batch. Default: {DEFAULT_RETRY_DELAY_MS}"
    )
    update_parser.add_argument(
        "--max-retries", type=int, default=None,
        help="Attempts per batch before giving up. Default: retry until it lands"
    )
    update_parser.add_argument(
        "--backoff", type=float, default=1.0,
        help="Multiply the retry delay by this after each failure. Default: 1.0"
    )
    update_parser.add_argument(
        "--max-retry-delay-ms", type=int, default=None,
        help=f"Longest wait between retries. Default: {DEFAULT_MAX_RETRY_DELAY_MS} when --backoff > 1"
    )
    update_parser.add_argument(
        "--dry-run", action="store_true",
        help="Build all instructions without sending any transaction"
    )
    update_parser.add_argument(
        "--authority", default=None,
        help="Update authority address for --dry-run, instead of reading --keypair"
    )
    update_parser.add_argument(
        "--yes", "-y", action="store_true",
        help="Skip confirmation prompt"
    )

    # Inspect command
    inspect_parser = subparsers.add_parser(
        "inspect", help="Show which mints would be updated"
    )
    inspect_parser.add_argument("file", help="Path to JSON list of mint addresses")
    add_network_arguments(inspect_parser)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(args.verbose)

    commands = {
        "update": cmd_update,
        "inspect": cmd_inspect,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
