"""
Pytest configuration and fixtures for mpl-royalty tests.

FakeLedger stands in for solana.rpc.async_api.AsyncClient: it serves
metadata accounts from memory and applies UpdateMetadataAccountV2
instructions from submitted transactions.
"""

import json
import struct
from types import SimpleNamespace

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from mpl_royalty.config import RetryPolicy, UpdaterConfig
from mpl_royalty.metadata import (
    METADATA_V1_KEY,
    UPDATE_METADATA_ACCOUNT_V2,
    Creator,
    MetadataRecord,
    _read_creator,
    _Reader,
    find_metadata_address,
)


def _string(value, width=None):
    raw = value.encode("utf-8")
    if width is not None:
        raw = raw.ljust(width, b"\x00")
    return struct.pack("<I", len(raw)) + raw


def encode_metadata_account(record: MetadataRecord, padding: int = 0) -> bytes:
    """Serialize a record the way the token metadata program stores it."""
    out = bytes([record.key]) + bytes(record.update_authority) + bytes(record.mint)
    out += _string(record.name, 32) + _string(record.symbol, 10) + _string(record.uri, 200)
    out += struct.pack("<H", record.seller_fee_basis_points)
    if record.creators is None:
        out += b"\x00"
    else:
        out += b"\x01" + struct.pack("<I", len(record.creators))
        for c in record.creators:
            out += bytes(c.address) + struct.pack("<?B", c.verified, c.share)
    out += struct.pack("<??", record.primary_sale_happened, record.is_mutable)
    out += b"\x00" if record.edition_nonce is None else b"\x01" + bytes([record.edition_nonce])
    out += b"\x00" if record.token_standard is None else b"\x01" + bytes([record.token_standard])
    if record.collection is None:
        out += b"\x00"
    else:
        out += b"\x01" + struct.pack("<?", record.collection.verified) + bytes(record.collection.key)
    if record.uses is None:
        out += b"\x00"
    else:
        out += b"\x01" + struct.pack(
            "<BQQ", record.uses.use_method, record.uses.remaining, record.uses.total
        )
    return out + b"\x00" * padding


def parse_update_data(data: bytes):
    """Return (royalty, creators) from UpdateMetadataAccountV2 instruction data."""
    reader = _Reader(data)
    assert reader.u8() == UPDATE_METADATA_ACCOUNT_V2
    assert reader.option_tag()
    reader.string()
    reader.string()
    reader.string()
    royalty = reader.u16()
    creators = None
    if reader.option_tag():
        creators = [_read_creator(reader) for _ in range(reader.u32())]
    return royalty, creators


def make_record(
    name="Test NFT #1",
    royalty=250,
    creators=None,
    is_mutable=True,
    mint=None,
    authority=None,
):
    if creators is None:
        creators = [Creator(address=Pubkey.new_unique(), verified=True, share=100)]
    return MetadataRecord(
        key=METADATA_V1_KEY,
        update_authority=authority or Pubkey.new_unique(),
        mint=mint or Pubkey.new_unique(),
        name=name,
        symbol="TEST",
        uri="https://example.com/nft.json",
        seller_fee_basis_points=royalty,
        creators=creators,
        primary_sale_happened=True,
        is_mutable=is_mutable,
    )


class FakeLedger:
    """In-memory AsyncClient replacement."""

    def __init__(self):
        self.accounts = {}  # metadata address -> raw bytes
        self.records = {}  # metadata address -> MetadataRecord
        self.sent = []  # list of submitted transactions
        self.fail_sends = 0
        self.fail_confirms = 0
        self.fetch_calls = 0

    def add(self, record: MetadataRecord) -> Pubkey:
        address = find_metadata_address(record.mint)
        self.records[address] = record
        self.accounts[address] = encode_metadata_account(record, padding=16)
        return record.mint

    def add_raw(self, mint: Pubkey, data: bytes) -> Pubkey:
        self.accounts[find_metadata_address(mint)] = data
        return mint

    async def get_multiple_accounts(self, pubkeys, commitment=None):
        self.fetch_calls += 1
        assert len(pubkeys) <= 100
        value = [
            SimpleNamespace(data=self.accounts[k]) if k in self.accounts else None
            for k in pubkeys
        ]
        return SimpleNamespace(value=value)

    async def get_latest_blockhash(self, commitment=None):
        return SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.new_unique(), last_valid_block_height=1000)
        )

    async def send_transaction(self, tx, opts=None):
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise RuntimeError("blockhash not found")

        message = tx.message
        for ix in message.instructions:
            address = message.account_keys[ix.accounts[0]]
            royalty, creators = parse_update_data(bytes(ix.data))
            record = self.records[address]
            record.seller_fee_basis_points = royalty
            record.creators = creators
            self.accounts[address] = encode_metadata_account(record)
        self.sent.append(tx)
        return SimpleNamespace(value=Signature.new_unique())

    async def confirm_transaction(self, signature, commitment=None, last_valid_block_height=None):
        if self.fail_confirms > 0:
            self.fail_confirms -= 1
            return SimpleNamespace(value=[SimpleNamespace(err="InstructionError(0, InvalidAccountData)")])
        return SimpleNamespace(value=[SimpleNamespace(err=None)])


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def config():
    return UpdaterConfig(
        retry=RetryPolicy(delay_ms=0),
        inter_batch_delay_ms=0,
    )


@pytest.fixture
def mint_file(tmp_path):
    def _write(mints):
        path = tmp_path / "mints.json"
        path.write_text(json.dumps([str(m) for m in mints]))
        return path
    return _write
