"""
mpl-royalty — Batch royalty and creator updates for Metaplex NFTs on Solana.

Reads a list of mints, fetches their metadata accounts and rewrites the
seller fee basis points (and optionally the creator split) of every
mutable record, a few UpdateMetadataAccountV2 instructions per
transaction.
"""

__version__ = "0.1.0"
