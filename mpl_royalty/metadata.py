"""
Metaplex token metadata records for mpl-royalty.

Decodes metadata accounts fetched from the ledger and builds the
UpdateMetadataAccountV2 instruction used to rewrite royalties and
creator splits. Account layout and instruction encoding follow the
Metaplex token metadata program's Borsh schema.

Supports:
- Metadata PDA derivation for a mint
- Decoding of MetadataV1 accounts (including collection and uses)
- Encoding of UpdateMetadataAccountV2 instruction data
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from io import BytesIO
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey


# Metaplex token metadata program (same address on mainnet and devnet)
TOKEN_METADATA_PROGRAM_ID = Pubkey.from_string(
    "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
)

METADATA_SEED = b"metadata"

# Account discriminator for a MetadataV1 account
METADATA_V1_KEY = 4

# UpdateMetadataAccountV2 instruction index
UPDATE_METADATA_ACCOUNT_V2 = 15

MAX_SELLER_FEE_BASIS_POINTS = 10_000
FULL_SHARE = 100


class MetadataDecodeError(ValueError):
    """Raised when account bytes are not a readable metadata record."""


@dataclass
class Creator:
    """A royalty recipient on a metadata record."""

    address: Pubkey
    verified: bool
    share: int  # percent, 0-100


@dataclass
class Collection:
    verified: bool
    key: Pubkey


@dataclass
class Uses:
    use_method: int
    remaining: int
    total: int


@dataclass
class MetadataRecord:
    """In-memory snapshot of a mint's metadata account."""

    key: int
    update_authority: Pubkey
    mint: Pubkey
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    creators: Optional[list[Creator]] = None
    primary_sale_happened: bool = False
    is_mutable: bool = True
    edition_nonce: Optional[int] = None
    token_standard: Optional[int] = None
    collection: Optional[Collection] = None
    uses: Optional[Uses] = None


@dataclass
class UpdateRequest:
    """The new metadata values for a single mint."""

    record: MetadataRecord
    metadata_address: Pubkey
    royalty: int
    creators: Optional[list[Creator]] = None
    creators_changed: bool = False
    note: str = ""

    @property
    def mint(self) -> Pubkey:
        return self.record.mint

    @property
    def name(self) -> str:
        return self.record.name


def find_metadata_address(
    mint: Pubkey, program_id: Pubkey = TOKEN_METADATA_PROGRAM_ID
) -> Pubkey:
    """
    Derive the metadata account address for a mint.

    Seeds: ["metadata", program_id, mint], owned by program_id.
    """
    address, _bump = Pubkey.find_program_address(
        [METADATA_SEED, bytes(program_id), bytes(mint)],
        program_id,
    )
    return address


# ── Decoding ────────────────────────────────────────────────────


class _Reader:
    """Little-endian Borsh reader over a byte buffer."""

    def __init__(self, data: bytes):
        self.stream = BytesIO(data)
        self.size = len(data)

    def remaining(self) -> int:
        return self.size - self.stream.tell()

    def read(self, n: int) -> bytes:
        chunk = self.stream.read(n)
        if len(chunk) != n:
            raise MetadataDecodeError(
                f"Unexpected end of data at offset {self.stream.tell()} "
                f"(wanted {n} bytes, got {len(chunk)})"
            )
        return chunk

    def u8(self) -> int:
        return self.read(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.read(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]

    def boolean(self) -> bool:
        return self.u8() != 0

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.read(32))

    def string(self) -> str:
        length = self.u32()
        raw = self.read(length)
        try:
            # Metaplex pads name/symbol/uri with NULs to a fixed width
            return raw.decode("utf-8").rstrip("\x00")
        except UnicodeDecodeError as e:
            raise MetadataDecodeError(f"Invalid UTF-8 in string field: {e}") from e

    def option_tag(self) -> bool:
        # Older accounts end before the optional trailing fields
        if self.remaining() == 0:
            return False
        tag = self.u8()
        if tag not in (0, 1):
            raise MetadataDecodeError(f"Invalid option tag {tag}")
        return tag == 1


def _read_creator(reader: _Reader) -> Creator:
    address = reader.pubkey()
    verified = reader.boolean()
    share = reader.u8()
    return Creator(address=address, verified=verified, share=share)


def decode_metadata(data: bytes) -> MetadataRecord:
    """
    Decode a MetadataV1 account.

    Raises MetadataDecodeError if the buffer is not a metadata record.
    """
    reader = _Reader(bytes(data))
    key = reader.u8()
    if key != METADATA_V1_KEY:
        raise MetadataDecodeError(
            f"Account key {key} is not a metadata record (expected {METADATA_V1_KEY})"
        )

    update_authority = reader.pubkey()
    mint = reader.pubkey()
    name = reader.string()
    symbol = reader.string()
    uri = reader.string()
    seller_fee_basis_points = reader.u16()

    creators = None
    if reader.option_tag():
        creators = [_read_creator(reader) for _ in range(reader.u32())]

    primary_sale_happened = reader.boolean()
    is_mutable = reader.boolean()

    edition_nonce = reader.u8() if reader.option_tag() else None
    token_standard = reader.u8() if reader.option_tag() else None

    collection = None
    if reader.option_tag():
        verified = reader.boolean()
        collection = Collection(verified=verified, key=reader.pubkey())

    uses = None
    if reader.option_tag():
        uses = Uses(
            use_method=reader.u8(),
            remaining=reader.u64(),
            total=reader.u64(),
        )

    return MetadataRecord(
        key=key,
        update_authority=update_authority,
        mint=mint,
        name=name,
        symbol=symbol,
        uri=uri,
        seller_fee_basis_points=seller_fee_basis_points,
        creators=creators,
        primary_sale_happened=primary_sale_happened,
        is_mutable=is_mutable,
        edition_nonce=edition_nonce,
        token_standard=token_standard,
        collection=collection,
        uses=uses,
    )


# ── Encoding ────────────────────────────────────────────────────


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _creator(creator: Creator) -> bytes:
    return bytes(creator.address) + struct.pack("<?B", creator.verified, creator.share)


def _creators(creators: Optional[list[Creator]]) -> bytes:
    if creators is None:
        return b"\x00"
    return b"\x01" + struct.pack("<I", len(creators)) + b"".join(
        _creator(c) for c in creators
    )


def _collection(collection: Optional[Collection]) -> bytes:
    if collection is None:
        return b"\x00"
    return b"\x01" + struct.pack("<?", collection.verified) + bytes(collection.key)


def _uses(uses: Optional[Uses]) -> bytes:
    if uses is None:
        return b"\x00"
    return b"\x01" + struct.pack("<BQQ", uses.use_method, uses.remaining, uses.total)


def encode_update_data(request: UpdateRequest) -> bytes:
    """
    Encode UpdateMetadataAccountV2 instruction data.

    Only the DataV2 block is set; update authority, primary sale and
    mutability are passed as None so the program leaves them untouched.
    """
    record = request.record
    data_v2 = (
        _string(record.name)
        + _string(record.symbol)
        + _string(record.uri)
        + struct.pack("<H", request.royalty)
        + _creators(request.creators)
        + _collection(record.collection)
        + _uses(record.uses)
    )
    return (
        struct.pack("<B", UPDATE_METADATA_ACCOUNT_V2)
        + b"\x01" + data_v2
        + b"\x00"  # update_authority
        + b"\x00"  # primary_sale_happened
        + b"\x00"  # is_mutable
    )


def build_update_instruction(
    request: UpdateRequest,
    update_authority: Pubkey,
    program_id: Pubkey = TOKEN_METADATA_PROGRAM_ID,
) -> Instruction:
    """Build the UpdateMetadataAccountV2 instruction for one mint."""
    accounts = [
        AccountMeta(pubkey=request.metadata_address, is_signer=False, is_writable=True),
        AccountMeta(pubkey=update_authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id, encode_update_data(request), accounts)


# ── Creator split ───────────────────────────────────────────────


def split_creators(
    creators: Optional[list[Creator]], new_creator: Creator
) -> Optional[list[Creator]]:
    """
    Carve new_creator's share out of the sole 100%-share creator.

    Returns the two-entry list [original (100 - S), new_creator (S)], or
    None when no creator holds the full share. Creator lists with several
    partial shares are not rebalanced.
    """
    if not creators:
        return None
    full = next((c for c in creators if c.share == FULL_SHARE), None)
    if full is None:
        return None
    return [replace(full, share=full.share - new_creator.share), new_creator]
