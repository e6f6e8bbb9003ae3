"""Tests for storelistings/models/version.py."""

from __future__ import annotations

import pytest

from storelistings.models.version import Version


def test_parse_full():
    assert Version.parse("1.2.3.4") == Version(1, 2, 3, 4)


def test_parse_pads_missing_parts():
    assert Version.parse("6.6.11") == Version(6, 6, 11, 0)
    assert Version.parse("7") == Version(7, 0, 0, 0)


@pytest.mark.parametrize("text", ["", "1.2.3.4.5", "1.x", "1..2", "70000.0", "-1.0"])
def test_parse_rejects_garbage(text):
    with pytest.raises(ValueError):
        Version.parse(text)


def test_try_parse_returns_none():
    assert Version.try_parse("6.6.11 (23272)") is None
    assert Version.try_parse("2.0") == Version(2, 0, 0, 0)


def test_ordering_is_total():
    a = Version.parse("1.2.3.4")
    b = Version.parse("1.2.3.5")
    assert a < b
    assert b > a
    assert max([b, a, Version(1, 2, 3, 4)]) == b
    assert Version(2, 0, 0, 0) > Version(1, 65535, 65535, 65535)


def test_windows_representation_round_trips():
    v = Version(1, 22, 10582, 0)
    assert v.to_windows() == 281570159493120
    assert Version.from_windows(v.to_windows()) == v


def test_from_windows_known_os_value():
    assert Version.from_windows(2814750931222528) == Version(10, 0, 17763, 0)


def test_from_windows_out_of_range():
    with pytest.raises(ValueError):
        Version.from_windows(1 << 64)


def test_str():
    assert str(Version(10, 0, 26100, 0)) == "10.0.26100.0"
