"""Spatial zones, time bins and per-level generalisation rules.

Zones are geohash cells. A longer geohash is a smaller cell and every cell
is enclosed by each of its prefixes, so "truncate to precision p" is the
same as "the enclosing zone at level p". When a job names explicit
aggregation zones (geohash prefixes), a point maps to the longest listed
zone enclosing it, never finer than the level allows; a point outside every
listed zone has no zone and its trip is suppressed.

Time bins floor a timestamp to a multiple of the bin width counted from
the Unix epoch (UTC), rendered as `YYYY-MM-DDTHH:MMZ`. Widths that divide a
day therefore start at midnight; wider bins span several days.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from tripsync.models import AnonymizationLevelEnum

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_SET = set(_BASE32)
_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class LevelRules:
    """Generalisation applied at one anonymization level."""

    zone_precision: int          # geohash characters kept
    bin_multiplier: int          # time_bin_size is multiplied by this
    k: int                       # minimum distinct users per released group
    duration_step_seconds: int   # released duration rounded down to this
    distance_step_meters: float  # released distance rounded down to this


LEVEL_RULES = {
    # geohash 6 ~ 1.2km x 0.6km, 5 ~ 4.9km x 4.9km, 4 ~ 39km x 20km
    AnonymizationLevelEnum.basic: LevelRules(6, 1, 5, 1, 1.0),
    AnonymizationLevelEnum.enhanced: LevelRules(5, 2, 10, 60, 100.0),
    AnonymizationLevelEnum.maximum: LevelRules(4, 4, 20, 300, 1000.0),
}


def rules_for(level) -> LevelRules:
    return LEVEL_RULES[AnonymizationLevelEnum(level)]


def geohash_encode(lat: float, lon: float, precision: int = 12) -> str:
    """Standard geohash of (lat, lon) with `precision` characters."""
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValueError(f"Coordinate out of range: ({lat}, {lon})")
    if precision < 1:
        raise ValueError("precision must be >= 1")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars = []
    bit = 0
    ch = 0
    even = True  # even bits encode longitude

    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if lon >= mid:
                ch = (ch << 1) | 1
                lon_lo = mid
            else:
                ch <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if lat >= mid:
                ch = (ch << 1) | 1
                lat_lo = mid
            else:
                ch <<= 1
                lat_hi = mid
        even = not even
        bit += 1
        if bit == 5:
            chars.append(_BASE32[ch])
            bit = 0
            ch = 0

    return "".join(chars)


def normalize_zones(zones: Iterable[str]) -> list:
    """Lower-case, de-duplicate and validate listed zone ids."""
    out = []
    for zone in zones:
        z = (zone or "").strip().lower()
        if not z or any(c not in _BASE32_SET for c in z):
            raise ValueError(f"Invalid aggregation zone id: {zone!r}")
        if z not in out:
            out.append(z)
    return out


def zone_for(lat: float, lon: float, precision: int, allowed: Optional[Sequence[str]] = None) -> Optional[str]:
    """Zone id for a point at `precision`, or None when outside every allowed zone."""
    cell = geohash_encode(lat, lon, precision)
    if not allowed:
        return cell

    full = geohash_encode(lat, lon, 12)
    best = None
    for zone in allowed:
        if full.startswith(zone) and (best is None or len(zone) > len(best)):
            best = zone
    if best is None:
        return None
    return best[:precision] if len(best) > precision else best


def time_bin(value: datetime, bin_minutes: int) -> str:
    """Floor `value` (UTC) to a `bin_minutes` boundary counted from the Unix epoch."""
    if bin_minutes < 1:
        raise ValueError("bin_minutes must be >= 1")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    minutes = (value - _EPOCH) // timedelta(minutes=1)
    floored = _EPOCH + timedelta(minutes=(minutes // bin_minutes) * bin_minutes)
    return floored.strftime("%Y-%m-%dT%H:%MZ")


def coarsen(value: float, step: float) -> float:
    if step <= 1:
        return value
    return (value // step) * step
