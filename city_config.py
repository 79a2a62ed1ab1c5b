"""City configuration and the injected local-time provider for SunSeat."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


UTC = timezone.utc
DEFAULT_TIMEZONE = "Europe/Stockholm"
# EU rule: clocks change at 01:00 UTC on the last Sunday of March and October.
DST_TRANSITION_HOUR_UTC = 1


@dataclass(frozen=True)
class CityConfig:
    city_id: str
    display_name: str
    timezone: str
    bbox: tuple[float, float, float, float]
    provider_order: tuple[str, ...]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def center(self) -> tuple[float, float]:
        min_lon, min_lat, max_lon, max_lat = self.bbox
        return ((min_lat + max_lat) / 2.0, (min_lon + max_lon) / 2.0)

    def time_provider(self) -> "LocalTimeProvider":
        return LocalTimeProvider(self.timezone)


CITY_CONFIGS: dict[str, CityConfig] = {
    "gothenburg": CityConfig(
        city_id="gothenburg",
        display_name="Göteborg",
        timezone=DEFAULT_TIMEZONE,
        bbox=(11.9246, 57.6839, 12.0246, 57.7339),
        provider_order=("met_no",),
    ),
}


def get_city_config(city_id: str) -> CityConfig:
    return CITY_CONFIGS.get(city_id, CITY_CONFIGS["gothenburg"])


class LocalTimeProvider:
    """
    UTC <-> local conversion for one IANA zone.

    DST is decided by comparing the instant's UTC offset with the zone's
    standard offset, never by a flag, so the transition hour resolves to
    exactly one offset.
    """

    def __init__(self, timezone_name: str = DEFAULT_TIMEZONE) -> None:
        self.timezone_name = timezone_name
        self._tz = ZoneInfo(timezone_name)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def to_local(self, dt: datetime) -> datetime:
        return _ensure_utc(dt).astimezone(self._tz)

    def to_utc(self, local_dt: datetime) -> datetime:
        """Convert a local wall-clock time (naive or zone-aware) to UTC."""
        if local_dt.tzinfo is None:
            local_dt = local_dt.replace(tzinfo=self._tz)
        return local_dt.astimezone(UTC)

    def utc_offset(self, dt: datetime) -> timedelta:
        offset = self.to_local(dt).utcoffset()
        return offset if offset is not None else timedelta(0)

    def standard_offset(self, year: int) -> timedelta:
        winter = self.utc_offset(datetime(year, 1, 15, 12, tzinfo=UTC))
        summer = self.utc_offset(datetime(year, 7, 15, 12, tzinfo=UTC))
        return min(winter, summer)

    def is_dst(self, dt: datetime) -> bool:
        dt_utc = _ensure_utc(dt)
        return self.utc_offset(dt_utc) > self.standard_offset(dt_utc.year)

    def dst_transitions(self, year: int) -> tuple[datetime, datetime]:
        """Return (dst_start_utc, dst_end_utc) for the given year."""
        start = _last_sunday(year, 3)
        end = _last_sunday(year, 10)
        return (
            datetime(start.year, start.month, start.day, DST_TRANSITION_HOUR_UTC, tzinfo=UTC),
            datetime(end.year, end.month, end.day, DST_TRANSITION_HOUR_UTC, tzinfo=UTC),
        )

    def adjust_for_dst_gap(self, local_dt: datetime) -> datetime:
        """
        Move a naive local time that falls in the spring-forward gap to the
        first valid wall-clock time after it. Valid times are returned as-is.
        """
        naive = local_dt.replace(tzinfo=None)
        round_trip = naive.replace(tzinfo=self._tz).astimezone(UTC).astimezone(self._tz)
        round_trip = round_trip.replace(tzinfo=None)
        if round_trip != naive:
            return round_trip
        return naive

    def abbreviation(self, dt: datetime) -> str:
        return self.to_local(dt).tzname() or self.timezone_name

    def format_local(self, dt: datetime) -> str:
        local = self.to_local(dt)
        return f"{local:%Y-%m-%d %H:%M:%S} {self.abbreviation(dt)}"


def _last_sunday(year: int, month: int) -> date:
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() + 1) % 7)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
