"""Identifiers for jobs, groups and runs, formatted ``<prefix>-<ULID>``.

A ULID is a 48-bit millisecond timestamp followed by 80 random bits, written as
26 Crockford base32 digits, so ids created later sort later.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26

JOB_ID_PREFIX: Final[str] = "job"
GROUP_ID_PREFIX: Final[str] = "grp"
RUN_ID_PREFIX: Final[str] = "run"

_ENTROPY_BYTES: Final[int] = 10
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{_MAX_TIMESTAMP_MS}")
    entropy = bytes((randbytes or secrets.token_bytes)(_ENTROPY_BYTES))
    if len(entropy) != _ENTROPY_BYTES:
        raise ValueError(f"randbytes must return exactly {_ENTROPY_BYTES} bytes")
    return _crockford(millis.to_bytes(6, "big") + entropy)


def prefixed_id(prefix: str) -> str:
    if not prefix or "-" in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")
    return f"{prefix}-{generate_ulid()}"


def generate_job_id() -> str:
    return prefixed_id(JOB_ID_PREFIX)


def generate_group_id() -> str:
    return prefixed_id(GROUP_ID_PREFIX)


def generate_run_id() -> str:
    return prefixed_id(RUN_ID_PREFIX)


def _crockford(raw: bytes) -> str:
    # 128 bits fill 26 digits of 5 bits; the leading digit only carries 3.
    number = int.from_bytes(raw, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        number, digit = divmod(number, 32)
        digits.append(CROCKFORD_ALPHABET[digit])
    return "".join(reversed(digits))


__all__ = [
    "CROCKFORD_ALPHABET",
    "GROUP_ID_PREFIX",
    "JOB_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_group_id",
    "generate_job_id",
    "generate_run_id",
    "generate_ulid",
    "prefixed_id",
]
