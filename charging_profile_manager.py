"""
OCPP 1.6 Smart Charging Profile Manager

Per-charge-point entry point to smart charging. Wraps the profile registry
and the composite schedule engine:
- validates profiles before they reach the registry
- serializes registry read-modify-write operations with a lock
- reads the clock once per query and threads it through the engine
- logs profile changes and publishes Prometheus metrics

Example:
    >>> manager = ChargingProfileManager("CP-001", DEFAULT_PROFILES["default"])
    >>> ok, msg = manager.add_profile(parse_charging_profile(profile_dict))
    >>> manager.get_current_limit(1)
    16.0
"""

import logging
import threading
from typing import List, Optional, Tuple

from charging_profiles import (
    ChargingProfile,
    InMemoryProfileRegistry,
    ProfileRegistry,
    ProfileSet,
    UNLIMITED_WIRE_VALUE,
    add_profile,
    profiles_by_purpose,
    remove_profile,
    validate_charging_profile,
)
from clock import Clock, ClockReading, SystemClock
from composite_schedule import (
    CompositeSchedule,
    CompositeSchedulePeriod,
    compute_composite_schedule,
    current_limit,
)
from metrics import (
    record_composite_schedule,
    record_profile_request,
    set_current_limit,
    set_profiles_installed,
)
from station_profiles import DEFAULT_PROFILES, StationProfile

logger = logging.getLogger("charging_profile_manager")


class ChargingProfileManager:
    """
    Manages charging profiles for one charge point.

    Attributes:
        station_id: Identifier of the charge point (metrics label)
        station_profile: Ceilings, timezone and limit scan mode
        registry: Where accepted profiles are stored
        clock: Source of "now"
    """

    def __init__(
        self,
        station_id: str = "CP",
        station_profile: Optional[StationProfile] = None,
        registry: Optional[ProfileRegistry] = None,
        clock: Optional[Clock] = None,
    ):
        self.station_id = station_id
        self.station_profile = (station_profile or DEFAULT_PROFILES["default"]).validate()
        self.registry = registry or InMemoryProfileRegistry()
        self.clock = clock or SystemClock(self.station_profile.tzinfo())
        self._lock = threading.Lock()
        logger.info(
            f"ChargingProfileManager initialized for {station_id} "
            f"(profile={self.station_profile.name}, "
            f"station ceiling={self.station_profile.station_ceiling}A)"
        )

    def _trace(self, stage: str, periods: list) -> None:
        logger.debug(f"{self.station_id}: {stage}: {periods}")

    def _publish_counts(self, profile_set: ProfileSet) -> None:
        set_profiles_installed(self.station_id, profiles_by_purpose(profile_set))

    def add_profile(self, profile: ChargingProfile) -> Tuple[bool, str]:
        """
        Validate and install a charging profile.

        A profile with the same connector, stackLevel and purpose as an
        installed one replaces it.

        Returns:
            Tuple of (success: bool, message: str)
        """
        is_valid, error_msg = validate_charging_profile(profile)
        if not is_valid:
            logger.warning(
                f"Profile {profile.charging_profile_id} validation failed: {error_msg}"
            )
            record_profile_request("set", "rejected")
            return False, f"Validation failed: {error_msg}"

        with self._lock:
            replaced = add_profile(profile, self.registry)
            self._publish_counts(self.registry.get())

        if replaced is not None:
            logger.info(
                f"Profile {profile.charging_profile_id} replaced profile "
                f"{replaced.charging_profile_id} on connector {profile.connector_id} "
                f"(purpose={profile.charging_profile_purpose.value}, "
                f"stackLevel={profile.stack_level})"
            )
        else:
            logger.info(
                f"Profile {profile.charging_profile_id} added to connector {profile.connector_id} "
                f"(purpose={profile.charging_profile_purpose.value}, "
                f"stackLevel={profile.stack_level})"
            )
        record_profile_request("set", "accepted")
        return True, "Profile accepted"

    def clear_profile(self, connector_id: int, profile_id: int) -> bool:
        """
        Remove the profile with this id on this connector.

        Returns:
            True if a profile was removed, False if none matched
        """
        with self._lock:
            removed = remove_profile(connector_id, profile_id, self.registry)
            self._publish_counts(self.registry.get())

        if removed is None:
            logger.debug(f"No profile {profile_id} on connector {connector_id} to clear")
            record_profile_request("clear", "unknown")
            return False

        logger.info(
            f"Cleared profile {profile_id} from connector {connector_id} "
            f"(purpose={removed.charging_profile_purpose.value})"
        )
        record_profile_request("clear", "accepted")
        return True

    def get_profiles(self) -> ProfileSet:
        with self._lock:
            return self.registry.get()

    def get_profiles_for_connector(self, connector_id: int) -> List[ChargingProfile]:
        return [p for p in self.get_profiles().all() if p.connector_id == connector_id]

    def get_composite_schedule(
        self,
        connector_id: int,
        reading: Optional[ClockReading] = None,
    ) -> CompositeSchedule:
        """
        Today's composite schedule for a connector (0 = whole station).

        Args:
            connector_id: Connector to compute for
            reading: Clock reading to use; read from the clock if omitted
        """
        if reading is None:
            reading = self.clock.now()
        profile_set = self.get_profiles()

        schedule = compute_composite_schedule(
            connector_id,
            profile_set,
            self.station_profile.ceiling_for(connector_id),
            reading,
            connector_ceiling=self.station_profile.connector_max_amp,
            trace=self._trace if logger.isEnabledFor(logging.DEBUG) else None,
        )
        record_composite_schedule(connector_id)
        logger.info(
            f"Composite schedule for connector {connector_id}: "
            f"{len(schedule)} periods ({len(profile_set)} profiles installed)"
        )
        return schedule

    def get_current_entry(self, connector_id: int) -> Optional[CompositeSchedulePeriod]:
        """Schedule entry in effect now, or None if no limit is known."""
        reading = self.clock.now()
        schedule = self.get_composite_schedule(connector_id, reading)
        return current_limit(schedule, reading.seconds_from_midnight, self.station_profile.limit_scan)

    def get_current_limit(self, connector_id: int) -> Optional[float]:
        """
        The limit in effect now, in amps.

        Returns:
            The limit, -1 if the connector is currently unconstrained, or
            None if no limit is known at all
        """
        entry = self.get_current_entry(connector_id)
        if entry is None:
            limit = None
        elif entry.limit is None:
            limit = UNLIMITED_WIRE_VALUE
        else:
            limit = entry.limit
        set_current_limit(self.station_id, connector_id, limit)
        logger.debug(f"Current limit for connector {connector_id}: {limit}")
        return limit
