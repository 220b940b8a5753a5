"""
Run configuration for mpl-royalty.

Everything the update workflow needs to know about where and how to
talk to the ledger is carried in an UpdaterConfig instance instead of
module-level globals.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from solana.rpc.commitment import Commitment, Confirmed, Processed
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mpl_royalty.metadata import TOKEN_METADATA_PROGRAM_ID


DEFAULT_ENDPOINT = "https://api.devnet.solana.com"
DEFAULT_WALLET_PATH = "~/.config/solana/id.json"

# Update instructions per transaction
MAX_BATCH_SIZE = 10

DEFAULT_RETRY_DELAY_MS = 100

# Ceiling on a single retry wait once backoff is in play
DEFAULT_MAX_RETRY_DELAY_MS = 30_000
DEFAULT_INTER_BATCH_DELAY_MS = 1

# Time allowed for the server to initially process a transaction
DEFAULT_TIMEOUT_S = 120


@dataclass
class RetryPolicy:
    """
    How a failed batch is retried.

    max_attempts=None retries until the batch lands. The delay before
    attempt n+1 is delay_ms * backoff**(n-1), capped at max_delay_ms.
    With backoff > 1 and no explicit cap, DEFAULT_MAX_RETRY_DELAY_MS
    applies.
    """

    max_attempts: Optional[int] = None
    delay_ms: int = DEFAULT_RETRY_DELAY_MS
    backoff: float = 1.0
    max_delay_ms: Optional[int] = None

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt` failures."""
        return self.max_attempts is None or attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        cap = self.max_delay_ms
        if cap is None and self.backoff > 1.0:
            cap = DEFAULT_MAX_RETRY_DELAY_MS

        delay = float(self.delay_ms)
        for _ in range(max(attempt - 1, 0)):
            if cap is not None and delay >= cap:
                break
            delay *= self.backoff
        if cap is not None:
            delay = min(delay, cap)
        return delay / 1000.0

    def validate(self) -> list[str]:
        errors = []
        if self.max_attempts is not None and self.max_attempts < 1:
            errors.append(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.delay_ms < 0:
            errors.append(f"Retry delay must not be negative, got {self.delay_ms}")
        if self.backoff < 1.0:
            errors.append(f"Backoff factor must be >= 1.0, got {self.backoff}")
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            errors.append(f"Max retry delay must not be negative, got {self.max_delay_ms}")
        return errors


@dataclass
class UpdaterConfig:
    """Connection, signing and batching settings for one run."""

    endpoint: str = DEFAULT_ENDPOINT
    wallet_path: str = DEFAULT_WALLET_PATH
    max_batch_size: int = MAX_BATCH_SIZE
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    inter_batch_delay_ms: int = DEFAULT_INTER_BATCH_DELAY_MS
    commitment: Commitment = Processed
    confirm_commitment: Commitment = Confirmed
    timeout_s: float = DEFAULT_TIMEOUT_S
    program_id: Pubkey = TOKEN_METADATA_PROGRAM_ID

    @property
    def retry_delay_ms(self) -> int:
        return self.retry.delay_ms

    @classmethod
    def from_args(cls, args) -> "UpdaterConfig":
        """Build a config from parsed CLI arguments, keeping defaults for absent ones."""
        retry = RetryPolicy(
            max_attempts=getattr(args, "max_retries", None),
            delay_ms=getattr(args, "retry_delay_ms", DEFAULT_RETRY_DELAY_MS),
            backoff=getattr(args, "backoff", 1.0),
            max_delay_ms=getattr(args, "max_retry_delay_ms", None),
        )
        return cls(
            endpoint=getattr(args, "rpc", DEFAULT_ENDPOINT),
            wallet_path=getattr(args, "keypair", DEFAULT_WALLET_PATH),
            max_batch_size=getattr(args, "batch_size", MAX_BATCH_SIZE),
            retry=retry,
        )

    def validate(self) -> list[str]:
        """Validate this config. Returns list of error strings."""
        errors = []
        if not self.endpoint:
            errors.append("RPC endpoint is empty")
        if self.max_batch_size < 1:
            errors.append(f"Batch size must be at least 1, got {self.max_batch_size}")
        if self.inter_batch_delay_ms < 0:
            errors.append(
                f"Inter-batch delay must not be negative, got {self.inter_batch_delay_ms}"
            )
        errors.extend(self.retry.validate())
        return errors


def load_keypair(path: str | Path) -> Keypair:
    """
    Load a signing keypair from a Solana CLI keypair file.

    The file holds a JSON array of the 64 secret key bytes.
    """
    path = Path(path).expanduser()
    with open(path, "r") as f:
        secret = json.load(f)

    if not isinstance(secret, list) or len(secret) != 64:
        raise ValueError(f"{path} is not a Solana keypair file (expected 64 bytes)")

    return Keypair.from_bytes(bytes(secret))
