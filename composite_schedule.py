"""
Composite Schedule Engine

Combines the charging profiles installed on a charge point into a single
piecewise-constant limit curve for the current day, measured in seconds
from midnight (0-86399).

Pipeline:
1. Validity filter  - drop profiles outside their validFrom/validTo window
2. Period extractor - turn each profile into timestamped limit changes
3. Stacker          - resolve stackLevel precedence within one purpose
4. Tx merger        - TxProfile wins over TxDefaultProfile while active
5. Connector merge  - (station view only) sum per-connector deltas
6. Purpose combiner - pointwise minimum with ChargePointMaxProfile
7. Limit query      - the limit that applies at a given second

Everything here is pure: the current time is passed in as a ClockReading
and nothing is logged. Intermediate results can be observed through the
optional ``trace`` callback.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from itertools import groupby
from typing import Callable, Iterable, List, Optional, Tuple

from charging_profiles import (
    ChargingProfile,
    ChargingProfileKind,
    ChargingProfilePurpose,
    ProfileSet,
    UNLIMITED_WIRE_VALUE,
)
from clock import DAY_END, SECONDS_PER_DAY, ClockReading
from exceptions import ConfigurationError

# Per-connector ceiling used when converting connector limits to deltas
DEFAULT_CONNECTOR_MAX_AMP = 30.0

Trace = Callable[[str, list], None]


class PeriodPurpose(Enum):
    STATION_MAX = "ChargePointMaxProfile"
    TX_DEFAULT = "TxDefaultProfile"
    TX_OVERRIDE = "TxProfile"
    TX = "Tx"  # TxDefault and TxProfile after merging

    @classmethod
    def of(cls, purpose: ChargingProfilePurpose) -> "PeriodPurpose":
        return cls(purpose.value)


class LimitScan(Enum):
    """
    How current_limit() picks the applicable schedule entry.

    - FIRST_MATCH: walk the schedule from the earliest entry and take the
      first one that has started. On a multi-segment schedule this keeps
      returning the first segment.
    - LATEST_STARTED: take the most recently started entry.
    """
    FIRST_MATCH = "first_match"
    LATEST_STARTED = "latest_started"


@dataclass(frozen=True)
class Period:
    """
    One limit change derived from a profile.

    Attributes:
        ts: Seconds from midnight at which the limit takes effect
        stack_level: Stack level of the source profile
        purpose: Which pipeline lane this period belongs to
        number_phases: Phases of the source schedule period, if given
        limit: Limit in amps, or None once the source profile has ended
    """
    ts: int
    stack_level: int
    purpose: PeriodPurpose
    number_phases: Optional[int]
    limit: Optional[float]


@dataclass(frozen=True)
class CompositeSchedulePeriod:
    ts: int
    limit: Optional[float]

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    def to_dict(self) -> dict:
        return {
            "startPeriod": self.ts,
            "limit": UNLIMITED_WIRE_VALUE if self.limit is None else self.limit,
        }


@dataclass
class CompositeSchedule:
    """
    The result of a composite schedule computation.

    Entries are strictly ascending by ts and no two neighbours share a
    limit. Each limit holds from its ts until the next entry (the last one
    runs to the end of the day).
    """
    connector_id: int
    ceiling: float
    periods: List[CompositeSchedulePeriod] = field(default_factory=list)

    def __iter__(self):
        return iter(self.periods)

    def __len__(self) -> int:
        return len(self.periods)

    def __bool__(self) -> bool:
        return bool(self.periods)

    def as_tuples(self) -> List[Tuple[int, Optional[float]]]:
        return [(p.ts, p.limit) for p in self.periods]

    def to_dict(self) -> dict:
        return {
            "connectorId": self.connector_id,
            "duration": SECONDS_PER_DAY,
            "chargingSchedulePeriod": [p.to_dict() for p in self.periods],
        }


def _emit(trace: Optional[Trace], stage: str, periods: list) -> None:
    if trace is not None:
        trace(stage, list(periods))


def _clamp(value: float, ceiling: float) -> float:
    return min(max(value, 0), ceiling)


# ============================================================================
# VALIDITY FILTER
# ============================================================================

def filter_valid_profiles(profiles: Iterable[ChargingProfile], reading: ClockReading) -> List[ChargingProfile]:
    """Keep profiles whose validFrom <= now <= validTo."""
    return [p for p in profiles if p.is_valid_at(reading.instant)]


def filter_profile_set(profile_set: ProfileSet, reading: ClockReading) -> ProfileSet:
    result = profile_set
    for purpose in ChargingProfilePurpose:
        result = result.with_purpose(
            purpose, filter_valid_profiles(profile_set.for_purpose(purpose), reading)
        )
    return result


# ============================================================================
# PERIOD EXTRACTOR
# ============================================================================

def _time_of_day(instant, reading: ClockReading) -> int:
    """Hour and minute of an instant in the reading's timezone, as seconds."""
    local = instant.astimezone(reading.tz)
    return local.hour * 3600 + local.minute * 60


def schedule_anchor(profile: ChargingProfile, reading: ClockReading) -> int:
    """
    Seconds from midnight at which the profile's schedule starts today.

    Absolute and Recurring schedules start at startSchedule's hour:minute;
    Relative schedules start now.
    """
    if profile.charging_profile_kind == ChargingProfileKind.RELATIVE:
        return reading.seconds_from_midnight
    return _time_of_day(profile.charging_schedule.start_schedule, reading)


def schedule_end(profile: ChargingProfile, anchor: int, reading: ClockReading) -> int:
    """Seconds from midnight at which the profile stops constraining."""
    duration = profile.charging_schedule.duration
    if duration:
        return min(anchor + duration, DAY_END)

    valid_to = profile.valid_to
    if valid_to is None or valid_to >= reading.end_of_day():
        return DAY_END
    return _time_of_day(valid_to, reading)


def extract_profile_periods(profile: ChargingProfile, reading: ClockReading) -> List[Period]:
    """
    Periods of one profile, plus one terminating period with limit None.

    Schedule periods that would start after the end of today are dropped.
    """
    purpose = PeriodPurpose.of(profile.charging_profile_purpose)
    schedule_periods = sorted(
        profile.charging_schedule.charging_schedule_period, key=lambda p: p.start_period
    )
    anchor = schedule_anchor(profile, reading)

    periods = [
        Period(
            ts=anchor + sp.start_period,
            stack_level=profile.stack_level,
            purpose=purpose,
            number_phases=sp.number_phases,
            limit=sp.limit,
        )
        for sp in schedule_periods
        if anchor + sp.start_period <= DAY_END
    ]
    periods.append(Period(
        ts=schedule_end(profile, anchor, reading),
        stack_level=profile.stack_level,
        purpose=purpose,
        number_phases=schedule_periods[0].number_phases if schedule_periods else None,
        limit=None,
    ))
    return periods


def extract_periods(profiles: Iterable[ChargingProfile], reading: ClockReading) -> List[Period]:
    """Pool the periods of all given profiles, ascending by ts (stable)."""
    periods: List[Period] = []
    for profile in profiles:
        periods.extend(extract_profile_periods(profile, reading))
    return sorted(periods, key=lambda p: p.ts)


# ============================================================================
# STACKER
# ============================================================================

def stack_periods(periods: Iterable[Period]) -> List[Period]:
    """
    Resolve stackLevel precedence among ascending periods of one purpose.

    A lower stack level pre-empts the active one. Later periods of the
    active level are kept and its terminating period releases precedence.
    Periods of lower precedence seen while another level is active are
    dropped.
    """
    stacked: List[Period] = []
    active_level: Optional[int] = None

    for p in periods:
        if active_level is None:
            active_level = p.stack_level
            stacked.append(p)
        elif p.stack_level < active_level:
            active_level = p.stack_level
            stacked.append(p)
        elif p.stack_level == active_level and p.limit is None:
            active_level = None
            stacked.append(p)
        elif p.stack_level == active_level:
            stacked.append(p)

    return stacked


def stacking(profiles: Iterable[ChargingProfile], reading: ClockReading) -> List[Period]:
    """Extract and stack the periods of profiles sharing one purpose."""
    return stack_periods(extract_periods(profiles, reading))


# ============================================================================
# TX MERGER
# ============================================================================

def merge_tx(stacked_default: List[Period], stacked_override: List[Period]) -> List[Period]:
    """
    Merge stacked TxDefaultProfile and TxProfile periods.

    While a TxProfile limit is active it wins; once it ends the default
    limit applies again.
    """
    pooled = sorted(list(stacked_default) + list(stacked_override), key=lambda p: p.ts)
    limit_default: Optional[float] = None
    limit_override: Optional[float] = None
    merged: List[Period] = []

    for p in pooled:
        if p.purpose == PeriodPurpose.TX_DEFAULT:
            limit_default = p.limit
        elif p.purpose == PeriodPurpose.TX_OVERRIDE:
            limit_override = p.limit

        limit = limit_override if limit_override is not None else limit_default
        merged.append(replace(p, purpose=PeriodPurpose.TX, limit=limit))

    return merged


def merge_tx_for_connector(
    connector_id: int,
    profile_set: ProfileSet,
    reading: ClockReading,
) -> List[Period]:
    """
    Tx lane of one connector.

    TxDefaultProfiles installed on connector 0 apply to every connector;
    TxProfiles only to their own connector.
    """
    default_profiles = [p for p in profile_set.tx_default if p.connector_id in (connector_id, 0)]
    tx_profiles = [p for p in profile_set.tx_profile if p.connector_id == connector_id]
    return merge_tx(stacking(default_profiles, reading), stacking(tx_profiles, reading))


# ============================================================================
# MULTI-CONNECTOR COMBINER
# ============================================================================

def active_connector_ids(profile_set: ProfileSet) -> List[int]:
    """Physical connectors (id > 0) with Tx profiles, in first-seen order."""
    seen: List[int] = []
    for p in profile_set.tx_default + profile_set.tx_profile:
        if p.connector_id > 0 and p.connector_id not in seen:
            seen.append(p.connector_id)
    return seen


def to_deltas(merged: List[Period], connector_ceiling: float) -> List[Period]:
    """
    Convert absolute limits to changes relative to the previous limit.

    The baseline before the first period is the connector ceiling, and an
    unlimited period counts as the connector ceiling.
    """
    previous = connector_ceiling
    deltas = []
    for p in merged:
        effective = connector_ceiling if p.limit is None else p.limit
        deltas.append(replace(p, limit=effective - previous))
        previous = effective
    return deltas


def combine_connectors(
    profile_set: ProfileSet,
    reading: ClockReading,
    ceiling: float,
    connector_ceiling: float = DEFAULT_CONNECTOR_MAX_AMP,
    trace: Optional[Trace] = None,
) -> List[Period]:
    """
    Aggregate the Tx lanes of all connectors into one station-level lane.

    Deltas of all connectors are summed per timestamp and accumulated from
    the station ceiling, clamped to [0, ceiling]. Totals at the ceiling
    are reported as unlimited.
    """
    deltas: List[Period] = []
    for connector_id in active_connector_ids(profile_set):
        merged = merge_tx_for_connector(connector_id, profile_set, reading)
        _emit(trace, f"merged connector {connector_id}", merged)
        deltas.extend(to_deltas(merged, connector_ceiling))

    deltas.sort(key=lambda p: p.ts)
    _emit(trace, "deltas", deltas)

    grouped = []
    for ts, group in groupby(deltas, key=lambda p: p.ts):
        group = list(group)
        grouped.append(replace(group[0], limit=sum(p.limit for p in group)))
    _emit(trace, "grouped", grouped)

    total = ceiling
    station: List[Period] = []
    for p in grouped:
        total = _clamp(total + p.limit, ceiling)
        station.append(replace(
            p,
            purpose=PeriodPurpose.TX,
            limit=None if total >= ceiling else total,
        ))
    _emit(trace, "station", station)
    return station


# ============================================================================
# PURPOSE COMBINER
# ============================================================================

def combine_purposes(stacked_max: List[Period], tx: List[Period], ceiling: float) -> List[CompositeSchedulePeriod]:
    """
    Pointwise minimum of the ChargePointMaxProfile lane and the Tx lane.

    The very first entry carries the incoming period's own limit (clamped
    to the ceiling, unlimited stays unlimited) instead of the minimum of
    both lanes. Consecutive entries with equal limits are collapsed.
    """
    pooled = sorted(list(stacked_max) + list(tx), key=lambda p: p.ts)
    limit_max = ceiling
    limit_tx = ceiling
    combined: List[CompositeSchedulePeriod] = []

    for p in pooled:
        value = ceiling if p.limit is None else p.limit
        if p.purpose == PeriodPurpose.STATION_MAX:
            limit_max = value
        elif p.purpose == PeriodPurpose.TX:
            limit_tx = value

        if not combined:
            limit = None if p.limit is None else _clamp(p.limit, ceiling)
        else:
            limit = _clamp(min(limit_max, limit_tx), ceiling)
        combined.append(CompositeSchedulePeriod(ts=p.ts, limit=limit))

    return dedupe(combined)


def dedupe(periods: List[CompositeSchedulePeriod]) -> List[CompositeSchedulePeriod]:
    """
    Keep the first entry of each run of equal limits.

    Entries sharing a timestamp collapse to the last one, since only that
    one is ever in effect.
    """
    result: List[CompositeSchedulePeriod] = []
    for p in periods:
        if result and result[-1].ts == p.ts:
            result.pop()
        if not result or result[-1].limit != p.limit:
            result.append(p)
    return result


def fold_day_end(periods: List[CompositeSchedulePeriod]) -> List[CompositeSchedulePeriod]:
    """Drop a trailing one-second entry at 23:59:59; the day wraps after it."""
    if len(periods) > 1 and periods[-1].ts == DAY_END:
        return periods[:-1]
    return periods


# ============================================================================
# ENGINE
# ============================================================================

def compute_composite_schedule(
    connector_id: int,
    profile_set: ProfileSet,
    ceiling: float,
    reading: ClockReading,
    connector_ceiling: float = DEFAULT_CONNECTOR_MAX_AMP,
    trace: Optional[Trace] = None,
) -> CompositeSchedule:
    """
    Compute today's composite schedule for a connector or the whole station.

    Args:
        connector_id: Connector to compute for (0 = whole station)
        profile_set: Installed profiles (snapshot)
        ceiling: Hard upper bound of the connector (or station for 0)
        reading: The single clock reading used for this query
        connector_ceiling: Per-connector ceiling used by the station view
        trace: Optional callback receiving (stage, periods) of each step

    Raises:
        ConfigurationError: If a ceiling is not positive
    """
    if ceiling is None or ceiling <= 0:
        raise ConfigurationError("ceiling", f"ceiling must be positive, got {ceiling}")
    if connector_ceiling is None or connector_ceiling <= 0:
        raise ConfigurationError(
            "connector_ceiling", f"connector ceiling must be positive, got {connector_ceiling}"
        )

    valid = filter_profile_set(profile_set, reading)

    stacked_max = stacking(valid.charge_point_max, reading)
    _emit(trace, "stacked max", stacked_max)

    if connector_id == 0:
        tx = combine_connectors(valid, reading, ceiling, connector_ceiling, trace)
    else:
        tx = merge_tx_for_connector(connector_id, valid, reading)
        _emit(trace, f"merged connector {connector_id}", tx)

    periods = fold_day_end(combine_purposes(stacked_max, tx, ceiling))
    _emit(trace, "composite", periods)

    return CompositeSchedule(connector_id=connector_id, ceiling=ceiling, periods=periods)


# ============================================================================
# LIMIT QUERY
# ============================================================================

def current_limit(
    schedule: CompositeSchedule,
    seconds: int,
    scan: LimitScan = LimitScan.LATEST_STARTED,
) -> Optional[CompositeSchedulePeriod]:
    """
    The schedule entry that applies at ``seconds`` from midnight.

    Returns None when the schedule is empty or no entry has started yet.
    An entry whose limit is None means "unlimited", which is different
    from no entry at all.
    """
    if scan == LimitScan.FIRST_MATCH:
        candidates = schedule.periods
    else:
        candidates = reversed(schedule.periods)

    for entry in candidates:
        if seconds >= entry.ts:
            return entry
    return None


def limit_now(
    connector_id: int,
    profile_set: ProfileSet,
    ceiling: float,
    reading: ClockReading,
    scan: LimitScan = LimitScan.LATEST_STARTED,
    connector_ceiling: float = DEFAULT_CONNECTOR_MAX_AMP,
) -> Optional[CompositeSchedulePeriod]:
    """Compute the composite schedule and return the entry in effect now."""
    schedule = compute_composite_schedule(
        connector_id, profile_set, ceiling, reading, connector_ceiling=connector_ceiling
    )
    return current_limit(schedule, reading.seconds_from_midnight, scan)
