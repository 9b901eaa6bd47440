"""Tests for timestamp encoding and identifier sources."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from agentlab.core.clock import FixedClock, IdSource, format_timestamp, parse_timestamp


class TestFormatTimestamp:
    def test_fixed_width_nanoseconds(self) -> None:
        ts = datetime(2026, 1, 3, 10, 0, 0, 123456, tzinfo=UTC)
        assert format_timestamp(ts) == "2026-01-03T10:00:00.123456000Z"

    def test_converts_to_utc(self) -> None:
        ts = datetime(2026, 1, 3, 19, 0, 0, tzinfo=timezone(timedelta(hours=9)))
        assert format_timestamp(ts) == "2026-01-03T10:00:00.000000000Z"

    def test_naive_is_utc(self) -> None:
        assert format_timestamp(datetime(2026, 1, 3)) == "2026-01-03T00:00:00.000000000Z"

    def test_lexical_order_matches_time_order(self) -> None:
        a = datetime(2026, 1, 3, 10, 0, 0, 999999, tzinfo=UTC)
        b = datetime(2026, 1, 3, 10, 0, 1, tzinfo=UTC)
        assert format_timestamp(a) < format_timestamp(b)


class TestParseTimestamp:
    def test_roundtrip(self) -> None:
        ts = datetime(2026, 1, 3, 10, 0, 0, 5, tzinfo=UTC)
        assert parse_timestamp(format_timestamp(ts)) == ts

    def test_accepts_offset_and_short_fraction(self) -> None:
        parsed = parse_timestamp("2026-01-03T12:00:00.5+02:00")
        assert parsed == datetime(2026, 1, 3, 10, 0, 0, 500000, tzinfo=UTC)

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestFixedClock:
    def test_advance(self) -> None:
        clock = FixedClock(datetime(2026, 1, 3, tzinfo=UTC))
        clock.advance(timedelta(minutes=5))
        assert clock.now() == datetime(2026, 1, 3, 0, 5, tzinfo=UTC)


class TestIdSource:
    def test_prefixed_ids_are_unique(self) -> None:
        ids = IdSource()
        a, b = ids.new_id("job"), ids.new_id("job")
        assert a.startswith("job_")
        assert a != b

    def test_nonce_length(self) -> None:
        assert len(IdSource().nonce()) == 32
