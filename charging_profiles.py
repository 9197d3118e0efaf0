"""
OCPP 1.6 Smart Charging Profiles

Data structures for the charging profiles a charge point accepts through
SetChargingProfile, plus the profile registry they are stored in.

It provides:
- Dataclasses for ChargingProfile, ChargingSchedule and ChargingSchedulePeriod
- Enums for ChargingProfilePurpose and ChargingProfileKind
- Parsing, validation and serialization of OCPP profile dictionaries
- ProfileSet, the per-purpose view of all installed profiles
- The registry port (ProfileRegistry) with an in-memory implementation
- add_profile / remove_profile, the registry CRUD operations

Internally an unconstrained limit is None. The OCPP wire value -1 is only
produced and consumed by parse_charging_profile() and to_dict().
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from exceptions import ProfileValidationError

logger = logging.getLogger("charging_profiles")

UNLIMITED_WIRE_VALUE = -1


# ============================================================================
# ENUMS
# ============================================================================

class ChargingProfilePurpose(Enum):
    """
    Purpose of the charging profile as defined in OCPP 1.6.

    - CHARGE_POINT_MAX_PROFILE: Ceiling for the whole charge point
    - TX_DEFAULT_PROFILE: Default limit for transactions on a connector
    - TX_PROFILE: Limit for the running transaction (overrides TxDefault)
    """
    CHARGE_POINT_MAX_PROFILE = "ChargePointMaxProfile"
    TX_DEFAULT_PROFILE = "TxDefaultProfile"
    TX_PROFILE = "TxProfile"


class ChargingProfileKind(Enum):
    """
    Kind of charging profile determining how the schedule is anchored.

    - ABSOLUTE: anchored at startSchedule's time of day
    - RECURRING: anchored at startSchedule's time of day, every day
    - RELATIVE: anchored at the moment the schedule is evaluated
    """
    ABSOLUTE = "Absolute"
    RECURRING = "Recurring"
    RELATIVE = "Relative"


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class ChargingSchedulePeriod:
    """
    A single period within a charging schedule.

    Attributes:
        start_period: Start of period in seconds from schedule start
        limit: Current limit in amps, or None for "no constraint"
        number_phases: Optional number of phases to use (1, 2, or 3)
    """
    start_period: int
    limit: Optional[float]
    number_phases: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {
            "startPeriod": self.start_period,
            "limit": UNLIMITED_WIRE_VALUE if self.limit is None else self.limit,
        }
        if self.number_phases is not None:
            result["numberPhases"] = self.number_phases
        return result


@dataclass
class ChargingSchedule:
    """
    Time-based charging schedule.

    Attributes:
        charging_schedule_period: Periods defining limits over time
        duration: Total duration in seconds (0 = until validTo / end of day)
        start_schedule: Wall clock anchor for Absolute and Recurring profiles
    """
    charging_schedule_period: List[ChargingSchedulePeriod]
    duration: int = 0
    start_schedule: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {"duration": self.duration}
        if self.start_schedule is not None:
            result["startSchedule"] = _format_datetime(self.start_schedule)
        result["chargingSchedulePeriod"] = [p.to_dict() for p in self.charging_schedule_period]
        return result


@dataclass
class ChargingProfile:
    """
    Charging profile as installed on a charge point.

    Attributes:
        charging_profile_id: Identifier assigned by the central system
        stack_level: Precedence within a purpose (0 = highest)
        charging_profile_purpose: Purpose of this profile
        charging_profile_kind: How the schedule is anchored in time
        charging_schedule: The schedule defining limits
        connector_id: Connector the profile applies to (0 = whole station)
        valid_from: Start of validity (None = always valid so far)
        valid_to: End of validity (None = never expires)
    """
    charging_profile_id: int
    stack_level: int
    charging_profile_purpose: ChargingProfilePurpose
    charging_profile_kind: ChargingProfileKind
    charging_schedule: ChargingSchedule
    connector_id: int = 0
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @property
    def key(self) -> Tuple[int, int, ChargingProfilePurpose]:
        """The (connector, stack level, purpose) triple that must be unique."""
        return (self.connector_id, self.stack_level, self.charging_profile_purpose)

    def is_valid_at(self, instant: datetime) -> bool:
        if self.valid_from is not None and instant < self.valid_from:
            return False
        if self.valid_to is not None and instant > self.valid_to:
            return False
        return True

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {
            "connectorId": self.connector_id,
            "chargingProfileId": self.charging_profile_id,
            "stackLevel": self.stack_level,
            "chargingProfilePurpose": self.charging_profile_purpose.value,
            "chargingProfileKind": self.charging_profile_kind.value,
        }
        if self.valid_from is not None:
            result["validFrom"] = _format_datetime(self.valid_from)
        if self.valid_to is not None:
            result["validTo"] = _format_datetime(self.valid_to)
        result["chargingSchedule"] = self.charging_schedule.to_dict()
        return result


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _lookup(data: dict, name: str, default=None):
    """
    Read an OCPP field by its camelCase name.

    The ocpp library hands handler payloads over with snake_case keys, so
    the snake_case spelling is accepted as well.
    """
    if name in data:
        return data[name]
    return data.get(_snake(name), default)


def _has(data: dict, name: str) -> bool:
    return name in data or _snake(name) in data


def _parse_datetime(value) -> Optional[datetime]:
    """
    Parse ISO8601 datetime string to Python datetime object.

    Args:
        value: ISO8601 datetime string, datetime, or None

    Returns:
        datetime object with timezone info, or None if input is None

    Raises:
        ProfileValidationError: If datetime string is invalid
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            text = str(value)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ProfileValidationError(f"Invalid datetime format: {value}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _format_datetime(value: datetime) -> str:
    timespec = "seconds" if value.microsecond == 0 else "milliseconds"
    text = value.isoformat(timespec=timespec)
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def _parse_limit(value) -> Optional[float]:
    if isinstance(value, bool):
        raise ProfileValidationError(f"Invalid limit: {value!r}", field="limit")
    try:
        limit = float(value)
    except (TypeError, ValueError) as e:
        raise ProfileValidationError(f"Invalid limit: {value!r}", field="limit") from e
    if limit == UNLIMITED_WIRE_VALUE:
        return None
    return limit


def _parse_int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ProfileValidationError(f"Invalid {name}: {value!r}", field=name) from e


def parse_charging_profile(profile_dict: dict, connector_id: Optional[int] = None) -> ChargingProfile:
    """
    Convert an OCPP charging profile dictionary to a ChargingProfile.

    Args:
        profile_dict: csChargingProfiles payload (camelCase or snake_case keys)
        connector_id: Connector from the enclosing SetChargingProfile request;
            overrides any connectorId inside the profile dict

    Returns:
        ChargingProfile dataclass instance

    Raises:
        ProfileValidationError: If required fields are missing or invalid

    Example:
        >>> profile = parse_charging_profile({
        ...     "connectorId": 1,
        ...     "chargingProfileId": 7,
        ...     "stackLevel": 0,
        ...     "chargingProfilePurpose": "TxDefaultProfile",
        ...     "chargingProfileKind": "Absolute",
        ...     "chargingSchedule": {
        ...         "duration": 0,
        ...         "startSchedule": "2026-01-08T00:00:00Z",
        ...         "chargingSchedulePeriod": [{"startPeriod": 0, "limit": 16}],
        ...     },
        ... })
        >>> profile.charging_schedule.charging_schedule_period[0].limit
        16.0
    """
    required_fields = [
        "chargingProfileId", "stackLevel", "chargingProfilePurpose",
        "chargingProfileKind", "chargingSchedule"
    ]
    for field_name in required_fields:
        if not _has(profile_dict, field_name):
            raise ProfileValidationError(f"Missing required field: {field_name}", field=field_name)

    if connector_id is None:
        if not _has(profile_dict, "connectorId"):
            raise ProfileValidationError("Missing required field: connectorId", field="connectorId")
        connector_id = _parse_int(_lookup(profile_dict, "connectorId"), "connectorId")

    schedule_dict = _lookup(profile_dict, "chargingSchedule")
    if not isinstance(schedule_dict, dict):
        raise ProfileValidationError("chargingSchedule must be an object", field="chargingSchedule")
    if not _has(schedule_dict, "chargingSchedulePeriod"):
        raise ProfileValidationError(
            "Missing required field in chargingSchedule: chargingSchedulePeriod",
            field="chargingSchedulePeriod",
        )

    period_dicts = _lookup(schedule_dict, "chargingSchedulePeriod") or []
    if not isinstance(period_dicts, list):
        raise ProfileValidationError("chargingSchedulePeriod must be a list", field="chargingSchedulePeriod")

    periods = []
    for period_dict in period_dicts:
        if not isinstance(period_dict, dict):
            raise ProfileValidationError(
                "chargingSchedulePeriod entries must be objects", field="chargingSchedulePeriod"
            )
        if not _has(period_dict, "startPeriod"):
            raise ProfileValidationError("Missing required field in period: startPeriod", field="startPeriod")
        if not _has(period_dict, "limit"):
            raise ProfileValidationError("Missing required field in period: limit", field="limit")

        number_phases = _lookup(period_dict, "numberPhases")
        periods.append(ChargingSchedulePeriod(
            start_period=_parse_int(_lookup(period_dict, "startPeriod"), "startPeriod"),
            limit=_parse_limit(_lookup(period_dict, "limit")),
            number_phases=None if number_phases is None else _parse_int(number_phases, "numberPhases"),
        ))

    duration = _lookup(schedule_dict, "duration")
    schedule = ChargingSchedule(
        charging_schedule_period=periods,
        duration=0 if duration is None else _parse_int(duration, "duration"),
        start_schedule=_parse_datetime(_lookup(schedule_dict, "startSchedule")),
    )

    try:
        purpose = ChargingProfilePurpose(_lookup(profile_dict, "chargingProfilePurpose"))
    except ValueError:
        raise ProfileValidationError(
            f"Invalid chargingProfilePurpose: {_lookup(profile_dict, 'chargingProfilePurpose')}",
            field="chargingProfilePurpose",
        )

    try:
        kind = ChargingProfileKind(_lookup(profile_dict, "chargingProfileKind"))
    except ValueError:
        raise ProfileValidationError(
            f"Invalid chargingProfileKind: {_lookup(profile_dict, 'chargingProfileKind')}",
            field="chargingProfileKind",
        )

    return ChargingProfile(
        charging_profile_id=_parse_int(_lookup(profile_dict, "chargingProfileId"), "chargingProfileId"),
        stack_level=_parse_int(_lookup(profile_dict, "stackLevel"), "stackLevel"),
        charging_profile_purpose=purpose,
        charging_profile_kind=kind,
        charging_schedule=schedule,
        connector_id=connector_id,
        valid_from=_parse_datetime(_lookup(profile_dict, "validFrom")),
        valid_to=_parse_datetime(_lookup(profile_dict, "validTo")),
    )


def validate_charging_profile(profile: ChargingProfile) -> Tuple[bool, str]:
    """
    Validate a ChargingProfile before it is handed to the registry.

    Checks:
    - connectorId and stackLevel are non-negative
    - chargingSchedulePeriod array is not empty
    - startPeriod offsets are non-negative and ascending
    - limits are non-negative (or unlimited)
    - duration is non-negative
    - startSchedule present for Absolute and Recurring kinds
    - validFrom is not after validTo

    Returns:
        Tuple of (is_valid: bool, error_message: str)
        error_message is empty string if valid
    """
    if profile.connector_id < 0:
        return False, f"connectorId must be non-negative, got {profile.connector_id}"

    if profile.stack_level < 0:
        return False, f"stackLevel must be non-negative, got {profile.stack_level}"

    schedule = profile.charging_schedule
    periods = schedule.charging_schedule_period
    if not periods:
        return False, "chargingSchedulePeriod array cannot be empty"

    for i, period in enumerate(periods):
        if period.start_period < 0:
            return False, f"Period {i} has negative startPeriod: {period.start_period}"
        if i > 0 and period.start_period < periods[i - 1].start_period:
            return False, (
                f"chargingSchedulePeriod must be sorted by startPeriod ascending. "
                f"Period {i} has startPeriod {period.start_period} < "
                f"previous period startPeriod {periods[i - 1].start_period}"
            )
        if period.limit is not None and period.limit < 0:
            return False, f"Period {i} has negative limit: {period.limit}"

    if schedule.duration < 0:
        return False, f"duration must be non-negative, got {schedule.duration}"

    if profile.charging_profile_kind in (ChargingProfileKind.ABSOLUTE, ChargingProfileKind.RECURRING):
        if schedule.start_schedule is None:
            return False, (
                f"startSchedule is required for {profile.charging_profile_kind.value} profile kind"
            )

    if (profile.valid_from is not None and profile.valid_to is not None
            and profile.valid_from > profile.valid_to):
        return False, "validFrom must not be after validTo"

    return True, ""


# ============================================================================
# PROFILE SET AND REGISTRY
# ============================================================================

@dataclass
class ProfileSet:
    """All installed profiles, bucketed by purpose."""
    charge_point_max: List[ChargingProfile] = field(default_factory=list)
    tx_default: List[ChargingProfile] = field(default_factory=list)
    tx_profile: List[ChargingProfile] = field(default_factory=list)

    _FIELDS = {
        ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE: "charge_point_max",
        ChargingProfilePurpose.TX_DEFAULT_PROFILE: "tx_default",
        ChargingProfilePurpose.TX_PROFILE: "tx_profile",
    }

    @classmethod
    def of(cls, profiles) -> "ProfileSet":
        """Bucket an iterable of profiles by purpose, preserving order."""
        result = cls()
        for profile in profiles:
            result.for_purpose(profile.charging_profile_purpose).append(profile)
        return result

    def for_purpose(self, purpose: ChargingProfilePurpose) -> List[ChargingProfile]:
        return getattr(self, self._FIELDS[purpose])

    def with_purpose(self, purpose: ChargingProfilePurpose, profiles: List[ChargingProfile]) -> "ProfileSet":
        return replace(self, **{self._FIELDS[purpose]: list(profiles)})

    def copy(self) -> "ProfileSet":
        return ProfileSet(
            charge_point_max=list(self.charge_point_max),
            tx_default=list(self.tx_default),
            tx_profile=list(self.tx_profile),
        )

    def all(self) -> List[ChargingProfile]:
        return self.charge_point_max + self.tx_default + self.tx_profile

    def __len__(self) -> int:
        return len(self.charge_point_max) + len(self.tx_default) + len(self.tx_profile)


class ProfileRegistry:
    """
    Storage port for accepted profiles.

    Implementations hold one ProfileSet per charge point. get() returns a
    snapshot; set() replaces the whole bucket of one purpose.
    """

    def get(self) -> ProfileSet:
        raise NotImplementedError

    def set(self, purpose: ChargingProfilePurpose, profiles: List[ChargingProfile]) -> None:
        raise NotImplementedError


class InMemoryProfileRegistry(ProfileRegistry):
    def __init__(self, profile_set: Optional[ProfileSet] = None):
        self._profiles = profile_set.copy() if profile_set else ProfileSet()

    def get(self) -> ProfileSet:
        return self._profiles.copy()

    def set(self, purpose: ChargingProfilePurpose, profiles: List[ChargingProfile]) -> None:
        self._profiles = self._profiles.with_purpose(purpose, profiles)


def add_profile(profile: ChargingProfile, registry: ProfileRegistry) -> Optional[ChargingProfile]:
    """
    Insert a profile, replacing the one with the same (connector, stack level).

    At most one profile may exist per (connectorId, stackLevel, purpose).
    The purpose is implied by the bucket, so a profile in the same bucket
    sharing connector and stack level is replaced in place; otherwise the
    new profile is appended. No validation happens here.

    Returns:
        The profile that was replaced, or None if the profile was appended
    """
    purpose = profile.charging_profile_purpose
    current = registry.get().for_purpose(purpose)

    for idx, existing in enumerate(current):
        if (existing.connector_id == profile.connector_id and
                existing.stack_level == profile.stack_level):
            updated = list(current)
            updated[idx] = profile
            registry.set(purpose, updated)
            return existing

    registry.set(purpose, current + [profile])
    return None


def remove_profile(connector_id: int, profile_id: int, registry: ProfileRegistry) -> Optional[ChargingProfile]:
    """
    Remove the profile whose connector and id both match.

    Other profiles, including ones sharing the id on another connector,
    are left untouched. Unknown (connector, id) pairs are a no-op.

    Returns:
        The removed profile, or None if nothing matched
    """
    profile_set = registry.get()
    for purpose in ChargingProfilePurpose:
        bucket = profile_set.for_purpose(purpose)
        for idx, existing in enumerate(bucket):
            if (existing.connector_id == connector_id and
                    existing.charging_profile_id == profile_id):
                registry.set(purpose, bucket[:idx] + bucket[idx + 1:])
                return existing
    return None


def profiles_by_purpose(profile_set: ProfileSet) -> Dict[str, int]:
    """Count of installed profiles per purpose, keyed by OCPP purpose name."""
    return {purpose.value: len(profile_set.for_purpose(purpose)) for purpose in ChargingProfilePurpose}
