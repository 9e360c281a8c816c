"""
Zones and Time Bins Tests (Unit)
================================

WHAT: Unit tests for geohash zones, zone restriction and time binning.
WHY: Anonymized groups are keyed on these values; a drift here silently
changes which trips share a group and therefore what gets released.

NOTE:
These tests live outside `backend/tripsync/tests/` to avoid loading the
integration-test `conftest.py`, which configures a database.

REFERENCES:
- backend/tripsync/services/zones.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from tripsync.models import AnonymizationLevelEnum
from tripsync.services.zones import (
    LEVEL_RULES,
    coarsen,
    geohash_encode,
    normalize_zones,
    rules_for,
    time_bin,
    zone_for,
)


def test_geohash_matches_reference_value() -> None:
    assert geohash_encode(57.64911, 10.40744, 11) == "u4pruydqqvj"


def test_shorter_geohash_is_prefix_of_longer() -> None:
    full = geohash_encode(52.3676, 4.9041, 12)
    for precision in range(1, 12):
        assert full.startswith(geohash_encode(52.3676, 4.9041, precision))


def test_geohash_rejects_out_of_range_coordinates() -> None:
    with pytest.raises(ValueError):
        geohash_encode(91.0, 0.0, 5)


def test_zone_for_without_restriction_truncates_to_level() -> None:
    assert zone_for(57.64911, 10.40744, 6) == "u4pruy"


def test_zone_for_picks_longest_enclosing_allowed_zone_capped_at_precision() -> None:
    allowed = ["u4", "u4pr", "u4pruydqq"]

    # The longest match is finer than the level allows: cap it.
    assert zone_for(57.64911, 10.40744, 6, allowed) == "u4pruy"
    assert zone_for(57.64911, 10.40744, 3, ["u4", "u4pr"]) == "u4p"
    assert zone_for(57.64911, 10.40744, 6, ["u4"]) == "u4"


def test_zone_for_outside_every_allowed_zone_is_none() -> None:
    assert zone_for(57.64911, 10.40744, 6, ["r3", "9q"]) is None


def test_normalize_zones_lowercases_and_deduplicates() -> None:
    assert normalize_zones(["U4PR", "u4pr", " u4 "]) == ["u4pr", "u4"]


@pytest.mark.parametrize("zone", ["", "   ", "u4a", "hello!"])
def test_normalize_zones_rejects_invalid_ids(zone) -> None:
    with pytest.raises(ValueError):
        normalize_zones([zone])


def test_time_bin_widths_dividing_a_day_start_at_midnight() -> None:
    value = datetime(2025, 3, 3, 8, 44, 59)

    assert time_bin(value, 15) == "2025-03-03T08:30Z"
    assert time_bin(value, 60) == "2025-03-03T08:00Z"
    assert time_bin(value, 1440) == "2025-03-03T00:00Z"
    # 7-minute bins do not divide a day; they count from the epoch.
    assert time_bin(datetime(2025, 3, 3, 1, 0), 7) == "2025-03-03T00:57Z"


def test_time_bin_wider_than_a_day_spans_several_days() -> None:
    four_days = 4 * 1440

    # Day 20148 since the epoch (2025-03-01) is a multiple of four.
    assert time_bin(datetime(2025, 3, 3, 8, 0), four_days) == "2025-03-01T00:00Z"
    assert time_bin(datetime(2025, 3, 4, 8, 0), four_days) == "2025-03-01T00:00Z"
    assert time_bin(datetime(2025, 3, 5, 0, 0), four_days) == "2025-03-05T00:00Z"


def test_time_bin_accepts_aware_timestamps() -> None:
    aware = datetime(2025, 3, 3, 9, 30, tzinfo=timezone(timedelta(hours=1)))

    assert time_bin(aware, 60) == "2025-03-03T08:00Z"


def test_time_bin_rejects_zero_width() -> None:
    with pytest.raises(ValueError):
        time_bin(datetime(2025, 3, 3), 0)


def test_coarsen_rounds_down_to_step() -> None:
    assert coarsen(1234, 100) == 1200
    assert coarsen(1234, 1) == 1234


def test_levels_get_strictly_coarser() -> None:
    basic, enhanced, maximum = (LEVEL_RULES[level] for level in AnonymizationLevelEnum)

    assert basic.zone_precision > enhanced.zone_precision > maximum.zone_precision
    assert basic.k < enhanced.k < maximum.k
    assert basic.bin_multiplier <= enhanced.bin_multiplier <= maximum.bin_multiplier
    assert rules_for("maximum") is maximum
