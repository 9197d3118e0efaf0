import os
from dataclasses import dataclass, replace
from datetime import timezone, tzinfo
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from composite_schedule import DEFAULT_CONNECTOR_MAX_AMP, LimitScan
from exceptions import ConfigurationError


@dataclass
class StationProfile:
    name: str
    connector_count: int = 1

    # Ceilings in amps
    connector_max_amp: float = DEFAULT_CONNECTOR_MAX_AMP
    station_max_amp: Optional[float] = None  # defaults to connector_count * connector_max_amp

    timezone: str = "UTC"
    limit_scan: LimitScan = LimitScan.LATEST_STARTED

    heartbeat_interval: int = 60

    @property
    def station_ceiling(self) -> float:
        if self.station_max_amp is not None:
            return self.station_max_amp
        return max(self.connector_count, 1) * self.connector_max_amp

    def ceiling_for(self, connector_id: int) -> float:
        """Station ceiling for connector 0, per-connector ceiling otherwise."""
        return self.station_ceiling if connector_id == 0 else self.connector_max_amp

    def tzinfo(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError("timezone", f"Unknown timezone: {self.timezone}") from e

    def validate(self) -> "StationProfile":
        if self.connector_count < 1:
            raise ConfigurationError(
                "connector_count", f"connector_count must be at least 1, got {self.connector_count}"
            )
        if self.connector_max_amp <= 0:
            raise ConfigurationError(
                "connector_max_amp", f"connector_max_amp must be positive, got {self.connector_max_amp}"
            )
        if self.station_ceiling <= 0:
            raise ConfigurationError(
                "station_max_amp", f"station_max_amp must be positive, got {self.station_ceiling}"
            )
        self.tzinfo()
        return self


DEFAULT_PROFILES: Dict[str, StationProfile] = {
    "default": StationProfile(
        name="default",
        connector_count=1,
    ),

    "dual": StationProfile(
        name="dual",
        connector_count=2,
        station_max_amp=60.0,
    ),

    # Shared 32A supply feeding two 30A sockets
    "shared-supply": StationProfile(
        name="shared-supply",
        connector_count=2,
        station_max_amp=32.0,
    ),

    "legacy-scan": StationProfile(
        name="legacy-scan",
        limit_scan=LimitScan.FIRST_MATCH,
    ),
}


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(name, f"{name} must be a number, got {value!r}") from e


def load_station_profile(name: Optional[str] = None) -> StationProfile:
    """
    Resolve the station profile, applying environment overrides.

    SMART_CHARGING_PROFILE selects the base profile; the ceilings and the
    timezone can be overridden with SMART_CHARGING_CONNECTOR_MAX_AMP,
    SMART_CHARGING_STATION_MAX_AMP and SMART_CHARGING_TIMEZONE.
    """
    name = name or os.getenv("SMART_CHARGING_PROFILE", "default")
    base = DEFAULT_PROFILES.get(name)
    if base is None:
        raise ConfigurationError("profile", f"Unknown station profile: {name}")

    overrides = {}
    connector_max = _env_float("SMART_CHARGING_CONNECTOR_MAX_AMP")
    if connector_max is not None:
        overrides["connector_max_amp"] = connector_max
    station_max = _env_float("SMART_CHARGING_STATION_MAX_AMP")
    if station_max is not None:
        overrides["station_max_amp"] = station_max
    tz_name = os.getenv("SMART_CHARGING_TIMEZONE")
    if tz_name:
        overrides["timezone"] = tz_name

    return replace(base, **overrides).validate()
