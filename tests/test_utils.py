from datetime import datetime, timezone

import pytest

from busytag_link.core.utils import coerce_bool, coerce_int, parse_timestamp, parse_version


@pytest.mark.parametrize(
    "value, expected",
    [
        (True, True),
        (0, False),
        (1, True),
        ("true", True),
        ("FALSE", False),
        ("1", True),
        ("0", False),
        ("", None),
        (None, None),
        ([], None),
    ],
)
def test_coerce_bool(value, expected):
    assert coerce_bool(value) is expected


def test_coerce_bool_default():
    assert coerce_bool(None, default=False) is False


def test_coerce_int():
    assert coerce_int("42") == 42
    assert coerce_int(7.9) == 7
    assert coerce_int("n/a", default=0) == 0
    assert coerce_int(True) is None


@pytest.mark.parametrize(
    "label, expected",
    [("2.1", 2.1), ("1.9.3", 1.9), ("3", 3.0), ("", 0.0), ("beta", 0.0)],
)
def test_parse_version(label, expected):
    assert parse_version(label) == pytest.approx(expected)


def test_parse_timestamp_handles_zulu_and_naive_values():
    expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    assert parse_timestamp("2024-05-01T10:00:00Z") == expected
    assert parse_timestamp("2024-05-01T10:00:00") == expected
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
