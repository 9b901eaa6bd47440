"""Clock and identifier sources.

Timestamps are persisted as fixed-width RFC3339 strings with nanosecond
precision in UTC (``2026-01-03T10:00:00.123456000Z``). The fixed width
keeps lexical ordering identical to chronological ordering, so the store
can compare expiry columns with plain ``<=``.
"""

import re
import secrets
from datetime import UTC, datetime

from ulid import ULID

_RFC3339_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d{1,9}))?"
    r"(?P<tz>[Zz]|[+-]\d{2}:\d{2})$"
)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as fixed-width RFC3339-nano UTC text.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond:06d}000Z"


def parse_timestamp(raw: str) -> datetime:
    """Parse RFC3339 text (any fraction length up to nanoseconds).

    Raises:
        ValueError: If raw is not RFC3339
    """
    match = _RFC3339_RE.match(raw.strip())
    if match is None:
        raise ValueError(f"invalid RFC3339 timestamp: {raw!r}")
    frac = (match.group("frac") or "").ljust(6, "0")[:6]
    tz = match.group("tz")
    tz = "+00:00" if tz in ("Z", "z") else tz
    parsed = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}.{frac}{tz}")
    return parsed.astimezone(UTC)


class Clock:
    """Wall clock handle. Tests substitute FixedClock."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock(Clock):
    """Clock frozen at a given instant, advanced explicitly."""

    def __init__(self, at: datetime) -> None:
        self._at = at

    def now(self) -> datetime:
        return self._at

    def advance(self, delta) -> None:
        self._at = self._at + delta


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


class IdSource:
    """Opaque identifier source for jobs, workspaces, sessions and nonces."""

    def new_id(self, prefix: str = "") -> str:
        """Return a ULID, optionally prefixed (``job_01J...``)."""
        ulid = generate_ulid().lower()
        return f"{prefix}_{ulid}" if prefix else ulid

    def nonce(self, nbytes: int = 16) -> str:
        """Return ``nbytes`` random bytes hex-encoded."""
        return secrets.token_hex(nbytes)

    def token(self, nbytes: int = 16) -> str:
        """Return a plaintext credential (hex, ``2 * nbytes`` chars)."""
        return secrets.token_hex(nbytes)
