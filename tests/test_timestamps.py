from datetime import datetime, timedelta, timezone

from fragment_store.timestamps import format_timestamp, parse_timestamp, to_naive_utc


def test_parse_strict_iso_formats() -> None:
    assert parse_timestamp("2026-02-14T10:30:00Z") == datetime(2026, 2, 14, 10, 30)
    assert parse_timestamp("2026-02-14T10:30:00.250000+00:00") == datetime(
        2026, 2, 14, 10, 30, 0, 250000
    )
    assert parse_timestamp("2026-02-14T12:30:00+02:00") == datetime(2026, 2, 14, 10, 30)
    assert parse_timestamp("2026-02-14 10:30:00") == datetime(2026, 2, 14, 10, 30)


def test_parse_legacy_textual_format() -> None:
    parsed = parse_timestamp("2026-02-14 10:30:00.123456789 +0000 UTC m=+0.000123")
    assert parsed == datetime(2026, 2, 14, 10, 30, 0, 123456)

    with_zone = parse_timestamp("2026-02-14 12:30:00 +0200 CEST")
    assert with_zone == datetime(2026, 2, 14, 10, 30)

    negative = parse_timestamp("2026-02-14 05:30:00.5 -0500 EST")
    assert negative == datetime(2026, 2, 14, 10, 30, 0, 500000)


def test_unparsable_values_return_none() -> None:
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday-ish") is None
    assert parse_timestamp("2026-13-45 99:99:99 +0000 UTC") is None


def test_format_timestamp_is_strict_utc_text() -> None:
    aware = datetime(2026, 2, 14, 12, 30, tzinfo=timezone(timedelta(hours=2)))

    text_value = format_timestamp(aware)

    assert text_value == "2026-02-14T10:30:00.000000Z"
    assert parse_timestamp(text_value) == datetime(2026, 2, 14, 10, 30)


def test_to_naive_utc_keeps_naive_values() -> None:
    naive = datetime(2026, 2, 14, 10, 30)
    assert to_naive_utc(naive) is naive
    assert to_naive_utc(None) is None
    assert parse_timestamp(naive) == naive
