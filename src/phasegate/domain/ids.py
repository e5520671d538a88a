"""Run and checkpoint identifiers: ``<prefix>-<ULID>`` in Crockford Base32.

Identifiers produced by one process sort lexicographically in creation order,
even when several are minted within the same millisecond.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ULID_RANDOM_MAX: Final[int] = (1 << 80) - 1
_ULID_MAX_VALUE: Final[int] = (1 << 128) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

RUN_ID_PREFIX: Final[str] = "run"
CHECKPOINT_ID_PREFIX: Final[str] = "ckpt"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]
_Clock = Callable[[], int]


class MonotonicUlidFactory:
    """Mint ULIDs whose order matches call order within this process.

    When the clock has not advanced since the previous call, the random
    component of the previous ULID is incremented instead of redrawn.
    """

    def __init__(
        self,
        *,
        clock_ms: _Clock | None = None,
        randbytes: _RandBytes | None = None,
    ) -> None:
        self._clock_ms = clock_ms
        self._randbytes = randbytes or secrets.token_bytes
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def __call__(self) -> str:
        with self._lock:
            now_ms = _check_timestamp((self._clock_ms or _wall_clock_ms)())
            if now_ms <= self._last_ms:
                if self._last_random >= _ULID_RANDOM_MAX:
                    raise OverflowError("ULID random component exhausted within one millisecond")
                now_ms = self._last_ms
                random_part = self._last_random + 1
            else:
                random_part = int.from_bytes(_draw_random(self._randbytes), "big")
            self._last_ms = now_ms
            self._last_random = random_part
        return _encode_crockford_base32((now_ms << 80) | random_part, ULID_LENGTH)


_default_factory = MonotonicUlidFactory()


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Return a ULID; explicit arguments bypass the process-wide monotonic factory."""
    if timestamp_ms is None and randbytes is None:
        return _default_factory()
    ts_ms = _check_timestamp(_wall_clock_ms() if timestamp_ms is None else timestamp_ms)
    random_part = int.from_bytes(_draw_random(randbytes or secrets.token_bytes), "big")
    return _encode_crockford_base32((ts_ms << 80) | random_part, ULID_LENGTH)


def validate_ulid(value: str) -> None:
    _decode_ulid(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _decode_ulid(value) >> 80


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    _check_prefix(prefix)
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Raise ``ValueError`` unless ``id_str`` is ``<expected_prefix>-<ULID>``."""
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    head, separator, tail = id_str.partition(_PREFIX_SEPARATOR)
    if not separator or head != expected_prefix:
        raise ValueError(f"expected prefix '{expected_prefix}{_PREFIX_SEPARATOR}'")
    try:
        validate_ulid(tail)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Last 8 characters, for compact console output."""
    if not isinstance(id_str, str) or len(id_str) < 8:
        raise ValueError("id must be a string of at least 8 characters")
    return id_str[-8:]


def generate_run_id() -> str:
    return generate_prefixed_id(RUN_ID_PREFIX)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, RUN_ID_PREFIX)


def generate_checkpoint_id() -> str:
    return generate_prefixed_id(CHECKPOINT_ID_PREFIX)


def validate_checkpoint_id(id_str: str) -> None:
    validate_prefixed_id(id_str, CHECKPOINT_ID_PREFIX)


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


def _check_timestamp(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(value).__name__}")
    if not 0 <= value <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {value}")
    return value


def _draw_random(provider: _RandBytes) -> bytes:
    raw = provider(ULID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)) or len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return bytes(raw)


def _decode_ulid(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")

    decoded = 0
    for index, char in enumerate(value.upper()):
        digit = _DECODE_TABLE.get(char)
        if digit is None:
            raise ValueError(f"invalid ULID character {value[index]!r} at index {index}")
        decoded = (decoded << 5) | digit
    if decoded > _ULID_MAX_VALUE:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")
    return decoded


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    if value:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(reversed(chars))


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")


__all__ = [
    "CHECKPOINT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "MonotonicUlidFactory",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_checkpoint_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_checkpoint_id",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_ulid",
]
