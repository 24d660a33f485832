"""
Run-scoped keys and run identifiers.

Every state store access goes through run_key() so concurrent runs, of the
same chain or of different chains, never collide:

    job-chain.<chain>.<run_id>[.<component>[.<suffix>]]

Examples:
    job-chain.orders.01HV...              (run root)
    job-chain.orders.01HV....done         (completion latch)
    job-chain.orders.01HV....jobOne       (jobOne response)
    job-chain.orders.01HV....jobOne.dispatched
"""

import random
import time
from typing import Optional

from jobchain.errors import InvalidKeyError

KEY_PREFIX = "job-chain"
KEY_SEPARATOR = "."

# Crockford's Base32 alphabet (excludes I, L, O, U)
_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def run_key(chain_name: str, run_id: str, component: str = "", suffix: str = "") -> str:
    """
    Build a run-scoped state key.

    Args:
        chain_name: Name of the chain
        run_id: The run identifier
        component: Component key (job id, "done", "context", ...)
        suffix: Optional suffix under the component ("dispatched", "error")

    Returns:
        The joined key with empty parts omitted

    Raises:
        InvalidKeyError: If suffix is given without component
    """
    if suffix and not component:
        raise InvalidKeyError("Cannot set suffix without key")

    return KEY_SEPARATOR.join(
        part for part in (KEY_PREFIX, chain_name, run_id, component, suffix) if part
    )


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    26 characters: 48 bits of millisecond timestamp followed by 80 bits of
    randomness, Crockford Base32 encoded. Run ids sort by start time.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(_ULID_ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    rng = random.SystemRandom()
    random_part = "".join(rng.choice(_ULID_ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def generate_run_id(seed: Optional[str] = None) -> str:
    """
    New run id, optionally prefixed with the chain's correlation seed.

    >>> generate_run_id("orders")[:7]
    'orders-'
    """
    ulid = generate_ulid()
    if seed:
        return f"{seed}-{ulid}"
    return ulid
