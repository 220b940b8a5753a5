"""
Core batch update logic for mpl-royalty.

Rewrites the royalty (seller fee basis points) and optionally the creator
split of many Metaplex NFTs. Each batch of UpdateMetadataAccountV2
instructions is sent as a single transaction, so a batch either lands
completely or not at all.

Supports:
- JSON mint list parsing and "<address>;<share>" creator specs
- Bulk metadata fetch with explicit missing/undecodable results
- Skipping of immutable records
- Configurable batch sizes and retry policy
- Post-update royalty verification
- Dry-run and read-only inspection
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from mpl_royalty.config import UpdaterConfig, load_keypair
from mpl_royalty.metadata import (
    FULL_SHARE,
    MAX_SELLER_FEE_BASIS_POINTS,
    Creator,
    MetadataDecodeError,
    MetadataRecord,
    UpdateRequest,
    build_update_instruction,
    decode_metadata,
    find_metadata_address,
    split_creators,
)


logger = logging.getLogger(__name__)

# getMultipleAccounts accepts at most 100 keys per request
MAX_ACCOUNTS_PER_REQUEST = 100


class UpdaterError(Exception):
    """Base exception for mpl-royalty failures."""


class InputError(UpdaterError):
    """Raised for an unusable mint file, royalty value or creator spec."""


class BatchRetryExhausted(UpdaterError):
    """Raised when a batch still fails after the retry policy's last attempt."""

    def __init__(self, batch_index: int, attempts: int, last_error: str):
        self.batch_index = batch_index
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Batch {batch_index} failed after {attempts} attempts: {last_error}"
        )


class VerificationError(UpdaterError):
    """Raised when updated records do not carry the requested royalty."""

    def __init__(self, mismatches: list[str]):
        self.mismatches = mismatches
        super().__init__(
            f"Found problem with {len(mismatches)} records: " + "; ".join(mismatches)
        )


class FetchStatus(Enum):
    """Outcome of looking up one metadata account."""

    FOUND = "found"
    MISSING = "missing"  # account does not exist
    UNDECODABLE = "undecodable"  # account exists but is not a metadata record


@dataclass
class FetchResult:
    """Result of fetching a single mint's metadata account."""

    mint: Pubkey
    address: Pubkey
    status: FetchStatus
    record: Optional[MetadataRecord] = None
    error: str = ""

    @property
    def found(self) -> bool:
        return self.status is FetchStatus.FOUND


@dataclass
class BatchResult:
    """Result of submitting one batch transaction."""

    success: bool
    message: str
    signature: Optional[str] = None
    item_count: int = 0
    attempts: int = 0
    duration_seconds: float = 0.0
    mints: list[str] = field(default_factory=list)

    def summary(self) -> str:
        """One-line summary of the batch result."""
        status = "OK" if self.success else "FAILED"
        line = (
            f"[{status}] {self.message} ({self.item_count} items, "
            f"{self.attempts} attempt{'s' if self.attempts != 1 else ''}, "
            f"{self.duration_seconds:.1f}s)"
        )
        if self.signature:
            line += f" tx {self.signature}"
        return line


@dataclass
class UpdateReport:
    """Outcome of a whole update (or inspect) run."""

    endpoint: str
    requested: int = 0
    royalty: Optional[int] = None
    dry_run: bool = False
    batch_size: int = 0
    planned_batches: int = 0
    updated: list[str] = field(default_factory=list)
    immutable: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    undecodable: list[tuple[str, str]] = field(default_factory=list)
    creator_skips: list[str] = field(default_factory=list)
    batches: list[BatchResult] = field(default_factory=list)
    verified: bool = False

    @property
    def skipped(self) -> list[str]:
        return self.immutable + self.missing + [mint for mint, _ in self.undecodable]

    @property
    def success(self) -> bool:
        return all(b.success for b in self.batches)

    def summary(self) -> str:
        """Human-readable summary of the run."""
        if self.dry_run:
            title = "DRY RUN"
        else:
            title = "SUCCESS" if self.success else "FAILED"
        lines = [
            f"=== mpl-royalty Metadata Update — {title} ===",
            f"Mints requested: {self.requested}",
            f"Eligible (mutable): {len(self.updated)}",
            f"Batch transactions: {self.planned_batches} (max {self.batch_size} per batch)",
        ]
        if self.royalty is not None:
            lines.append(f"Royalty: {self.royalty} bps ({self.royalty / 100:.2f}%)")
        if self.batches:
            retries = sum(max(b.attempts - 1, 0) for b in self.batches)
            lines.append(f"Batches submitted: {len(self.batches)} ({retries} retries)")
        if self.verified:
            lines.append("Verification: passed")
        if self.creator_skips:
            lines.append(f"Creator split unchanged: {len(self.creator_skips)}")
        if self.immutable:
            lines.append(f"Immutable (skipped): {len(self.immutable)}")
        if self.missing:
            lines.append(f"No metadata account: {len(self.missing)}")
        if self.undecodable:
            lines.append(f"Unreadable metadata: {len(self.undecodable)}")
        lines.append(f"Network: {self.endpoint}")
        return "\n".join(lines)


# ── Input ───────────────────────────────────────────────────────


def load_mints(filepath: str | Path) -> list[Pubkey]:
    """
    Parse a JSON file of mint addresses.

    Expected format:
        ["mint1", "mint2", "mint3"]
    """
    filepath = Path(filepath)
    with open(filepath, "r") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise InputError("JSON must contain a list of mint addresses")

    mints = []
    for i, entry in enumerate(data):
        if not isinstance(entry, str):
            raise InputError(f"Entry {i}: must be a string, got {type(entry).__name__}")
        try:
            mints.append(Pubkey.from_string(entry.strip()))
        except ValueError as e:
            raise InputError(f"Entry {i}: invalid mint address '{entry}': {e}")

    return mints


def parse_royalty(value: str | int) -> int:
    """Parse a royalty in basis points (0-10000)."""
    try:
        royalty = int(value)
    except (TypeError, ValueError):
        raise InputError(f"Invalid royalty '{value}': must be an integer in basis points")
    if not 0 <= royalty <= MAX_SELLER_FEE_BASIS_POINTS:
        raise InputError(
            f"Royalty {royalty} out of range (0-{MAX_SELLER_FEE_BASIS_POINTS} basis points)"
        )
    return royalty


def parse_creator_spec(spec: str) -> Creator:
    """
    Parse a new creator given as "<address>;<share>".

    The new creator is always unverified; only the creator can verify
    itself on-chain.
    """
    parts = spec.split(";")
    if len(parts) != 2:
        raise InputError(f"Invalid creator '{spec}': expected '<address>;<share>'")

    address_str, share_str = (p.strip() for p in parts)
    try:
        address = Pubkey.from_string(address_str)
    except ValueError as e:
        raise InputError(f"Invalid creator address '{address_str}': {e}")

    try:
        share = int(share_str)
    except ValueError:
        raise InputError(f"Invalid creator share '{share_str}': must be an integer")
    if not 0 < share <= FULL_SHARE:
        raise InputError(f"Creator share {share} out of range (1-{FULL_SHARE})")

    return Creator(address=address, verified=False, share=share)


def chunk_items(items: Sequence, max_size: int) -> list[list]:
    """Split items into chunks for batch processing."""
    return [
        list(items[i: i + max_size])
        for i in range(0, len(items), max_size)
    ]


# ── Fetch ───────────────────────────────────────────────────────


async def _derive_metadata_address(mint: Pubkey, program_id: Pubkey) -> Pubkey:
    return find_metadata_address(mint, program_id)


async def resolve_metadata_addresses(
    mints: Sequence[Pubkey], program_id: Pubkey
) -> list[Pubkey]:
    """Derive the metadata account address of every mint."""
    return list(await asyncio.gather(
        *(_derive_metadata_address(mint, program_id) for mint in mints)
    ))


def _to_fetch_result(mint: Pubkey, address: Pubkey, account) -> FetchResult:
    if account is None:
        return FetchResult(mint=mint, address=address, status=FetchStatus.MISSING)
    try:
        record = decode_metadata(account.data)
    except MetadataDecodeError as e:
        return FetchResult(
            mint=mint, address=address, status=FetchStatus.UNDECODABLE, error=str(e)
        )
    return FetchResult(mint=mint, address=address, status=FetchStatus.FOUND, record=record)


async def fetch_metadata(
    client: AsyncClient,
    mints: Sequence[Pubkey],
    program_id: Pubkey,
    commitment: Optional[Commitment] = None,
) -> list[FetchResult]:
    """
    Fetch and decode the metadata account of every mint.

    Returns one FetchResult per mint, in input order.
    """
    addresses = await resolve_metadata_addresses(mints, program_id)

    accounts = []
    for chunk in chunk_items(addresses, MAX_ACCOUNTS_PER_REQUEST):
        resp = await client.get_multiple_accounts(chunk, commitment=commitment)
        accounts.extend(resp.value)

    return [
        _to_fetch_result(mint, address, account)
        for mint, address, account in zip(mints, addresses, accounts)
    ]


def partition_mutable(
    results: Sequence[FetchResult],
) -> tuple[list[FetchResult], list[FetchResult]]:
    """
    Split found records into (mutable, immutable).

    Missing and undecodable results belong to neither list.
    """
    mutable, immutable = [], []
    for result in results:
        if not result.found:
            continue
        if result.record.is_mutable:
            mutable.append(result)
        else:
            immutable.append(result)
    return mutable, immutable


def _record_fetch_problems(results: Sequence[FetchResult], report: UpdateReport) -> None:
    for result in results:
        if result.status is FetchStatus.MISSING:
            logger.warning("No metadata account for %s (%s)", result.mint, result.address)
            report.missing.append(str(result.mint))
        elif result.status is FetchStatus.UNDECODABLE:
            logger.warning("Could not decode metadata for %s: %s", result.mint, result.error)
            report.undecodable.append((str(result.mint), result.error))


# ── Update ──────────────────────────────────────────────────────


def build_update_request(
    result: FetchResult,
    royalty: Optional[int] = None,
    new_creator: Optional[Creator] = None,
) -> UpdateRequest:
    """
    Work out the new royalty and creator list for one record.

    Without a royalty override the existing value is kept. A new creator
    takes its share from the sole 100%-share creator; if there is none,
    the creator list is left unchanged and only the royalty is updated.
    """
    record = result.record
    request = UpdateRequest(
        record=record,
        metadata_address=result.address,
        royalty=record.seller_fee_basis_points if royalty is None else royalty,
        creators=record.creators,
    )
    if new_creator is None:
        return request

    if record.creators and any(c.address == new_creator.address for c in record.creators):
        request.note = f"{new_creator.address} is already a creator"
        return request

    creators = split_creators(record.creators, new_creator)
    if creators is None:
        request.note = "no creator with a 100% share"
        return request

    request.creators = creators
    request.creators_changed = True
    return request


async def submit_batch(
    client: AsyncClient,
    payer: Keypair,
    instructions: list[Instruction],
    commitment: Optional[Commitment] = None,
    confirm_commitment: Optional[Commitment] = None,
) -> Signature:
    """Sign, send and confirm a single transaction carrying all instructions."""
    blockhash_resp = await client.get_latest_blockhash(commitment)
    blockhash = blockhash_resp.value.blockhash

    message = Message.new_with_blockhash(instructions, payer.pubkey(), blockhash)
    tx = Transaction([payer], message, blockhash)

    resp = await client.send_transaction(
        tx, opts=TxOpts(skip_confirmation=True, preflight_commitment=commitment)
    )
    signature = resp.value

    confirmation = await client.confirm_transaction(
        signature,
        commitment=confirm_commitment,
        last_valid_block_height=blockhash_resp.value.last_valid_block_height,
    )
    status = confirmation.value[0] if confirmation.value else None
    if status is not None and status.err is not None:
        raise UpdaterError(f"Transaction {signature} failed: {status.err}")

    return signature


async def process_batch(
    client: AsyncClient,
    payer: Keypair,
    requests: list[UpdateRequest],
    config: UpdaterConfig,
    batch_index: int,
    batch_count: int,
) -> BatchResult:
    """
    Submit one batch, retrying under config.retry until it lands.

    Instructions are rebuilt on every attempt so each retry goes out
    with a fresh blockhash.
    """
    start_time = time.time()
    attempt = 0
    while True:
        attempt += 1
        try:
            instructions = []
            for request in requests:
                logger.info("Creating instruction for %s", request.name)
                instructions.append(
                    build_update_instruction(request, payer.pubkey(), config.program_id)
                )

            signature = await submit_batch(
                client,
                payer,
                instructions,
                commitment=config.commitment,
                confirm_commitment=config.confirm_commitment,
            )
            logger.info("txId %s", signature)
            logger.info("Success")
            return BatchResult(
                success=True,
                message=f"Batch {batch_index}/{batch_count} completed",
                signature=str(signature),
                item_count=len(requests),
                attempts=attempt,
                duration_seconds=time.time() - start_time,
                mints=[str(r.mint) for r in requests],
            )

        except Exception as e:
            logger.warning("Batch %d/%d attempt %d failed: %s", batch_index, batch_count, attempt, e)
            if not config.retry.should_retry(attempt):
                raise BatchRetryExhausted(batch_index, attempt, str(e)) from e
            logger.info("Retrying")
            await asyncio.sleep(config.retry.delay_for(attempt))


async def run_batches(
    client: AsyncClient,
    payer: Keypair,
    requests: list[UpdateRequest],
    config: UpdaterConfig,
) -> list[BatchResult]:
    """Submit all update requests batch by batch, strictly in sequence."""
    chunks = chunk_items(requests, config.max_batch_size)
    logger.info("Found %d chunks to process", len(chunks))

    results = []
    for chunk_idx, chunk in enumerate(chunks):
        logger.info(
            "Processing chunk %d of %d with %d items", chunk_idx + 1, len(chunks), len(chunk)
        )
        results.append(await process_batch(
            client, payer, chunk, config, chunk_idx + 1, len(chunks)
        ))
        await asyncio.sleep(config.inter_batch_delay_ms / 1000.0)

    return results


async def verify_updates(
    client: AsyncClient,
    mints: Sequence[Pubkey],
    royalty: Optional[int],
    config: UpdaterConfig,
) -> list[FetchResult]:
    """
    Re-fetch updated records and check the royalty landed.

    Raises VerificationError listing every mint whose royalty differs
    from the override, or whose record can no longer be read. Creator
    lists are not checked.
    """
    results = await fetch_metadata(client, mints, config.program_id, config.commitment)
    if royalty is None:
        return results

    mismatches = []
    for result in results:
        if not result.found:
            mismatches.append(f"{result.mint}: metadata {result.status.value}")
        elif result.record.seller_fee_basis_points != royalty:
            mismatches.append(
                f"{result.record.name} ({result.mint}): royalty "
                f"{result.record.seller_fee_basis_points}, expected {royalty}"
            )

    if mismatches:
        raise VerificationError(mismatches)

    logger.info("Verified royalty %d on %d records", royalty, len(results))
    return results


def _open_client(config: UpdaterConfig) -> AsyncClient:
    return AsyncClient(config.endpoint, commitment=config.commitment, timeout=config.timeout_s)


async def inspect_metadata(
    config: UpdaterConfig,
    mints: list[Pubkey],
    client: Optional[AsyncClient] = None,
) -> tuple[UpdateReport, list[FetchResult]]:
    """
    Fetch and classify metadata without signing or sending anything.

    Returns the report together with the per-mint fetch results.
    """
    report = UpdateReport(
        endpoint=config.endpoint,
        requested=len(mints),
        batch_size=config.max_batch_size,
        dry_run=True,
    )

    if client is None:
        async with _open_client(config) as owned:
            results = await fetch_metadata(owned, mints, config.program_id, config.commitment)
    else:
        results = await fetch_metadata(client, mints, config.program_id, config.commitment)

    _record_fetch_problems(results, report)
    mutable, immutable = partition_mutable(results)
    report.updated = [str(r.mint) for r in mutable]
    report.immutable = [str(r.mint) for r in immutable]
    report.planned_batches = len(chunk_items(mutable, config.max_batch_size))
    return report, results


async def batch_update(
    config: UpdaterConfig,
    mints: list[Pubkey],
    royalty: Optional[int] = None,
    new_creator: Optional[Creator] = None,
    dry_run: bool = False,
    client: Optional[AsyncClient] = None,
    payer: Optional[Keypair] = None,
    authority: Optional[Pubkey] = None,
) -> UpdateReport:
    """
    Update royalty and creators for every mutable mint.

    Parameters:
        config: Endpoint, wallet, batch size and retry policy.
        mints: Mint addresses to update.
        royalty: New seller fee in basis points, or None to keep each record's value.
        new_creator: Creator to carve out of the sole 100%-share creator, or None.
        dry_run: Build every instruction but submit nothing.
        client: Open AsyncClient to use instead of connecting to config.endpoint.
        payer: Update authority keypair instead of the one at config.wallet_path.
        authority: Update authority public key for a dry run. When given,
            no keypair file is read.

    Returns:
        UpdateReport for the run. Raises BatchRetryExhausted if a finite
        retry policy runs out and VerificationError if the royalty did
        not land.
    """
    errors = config.validate()
    if errors:
        raise InputError("Invalid configuration:\n" + "\n".join(errors))

    if not (dry_run and authority is not None):
        if payer is None:
            payer = load_keypair(config.wallet_path)
        authority = payer.pubkey()

    if client is None:
        async with _open_client(config) as owned:
            return await _run_update(
                owned, payer, authority, config, mints, royalty, new_creator, dry_run
            )
    return await _run_update(
        client, payer, authority, config, mints, royalty, new_creator, dry_run
    )


async def _run_update(
    client: AsyncClient,
    payer: Optional[Keypair],
    authority: Pubkey,
    config: UpdaterConfig,
    mints: list[Pubkey],
    royalty: Optional[int],
    new_creator: Optional[Creator],
    dry_run: bool,
) -> UpdateReport:
    report, results = await inspect_metadata(config, mints, client=client)
    report.royalty = royalty
    report.dry_run = dry_run

    mutable, _ = partition_mutable(results)
    if report.immutable:
        logger.info("Found %d immutable NFTs, will skip these", len(report.immutable))

    requests = []
    for result in mutable:
        request = build_update_request(result, royalty, new_creator)
        if new_creator is not None and not request.creators_changed:
            logger.warning("Could not update creators for %s: %s", request.name, request.note)
            report.creator_skips.append(str(request.mint))
        requests.append(request)

    if dry_run:
        for request in requests:
            logger.info("Creating instruction for %s", request.name)
            build_update_instruction(request, authority, config.program_id)
        return report

    report.batches = await run_batches(client, payer, requests, config)

    await verify_updates(client, [r.mint for r in requests], royalty, config)
    report.verified = royalty is not None
    return report
