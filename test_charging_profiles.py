"""
Unit tests for charging profile models and the profile registry

Tests OCPP 1.6 profile parsing and serialization, validation, and the
add/replace/remove rules of the registry.
"""

import pytest
from datetime import datetime, timezone

from charging_profiles import (
    ChargingProfile,
    ChargingProfileKind,
    ChargingProfilePurpose,
    ChargingSchedule,
    ChargingSchedulePeriod,
    InMemoryProfileRegistry,
    ProfileSet,
    add_profile,
    parse_charging_profile,
    profiles_by_purpose,
    remove_profile,
    validate_charging_profile,
)
from exceptions import ProfileValidationError, SmartChargingError

TX_DEFAULT = ChargingProfilePurpose.TX_DEFAULT_PROFILE


def profile_dict(**overrides):
    data = {
        "connectorId": 1,
        "chargingProfileId": 7,
        "stackLevel": 0,
        "chargingProfilePurpose": "TxDefaultProfile",
        "chargingProfileKind": "Absolute",
        "validFrom": "2026-03-10T00:00:00Z",
        "validTo": "2026-03-10T23:59:59.999Z",
        "chargingSchedule": {
            "duration": 0,
            "startSchedule": "2026-03-10T00:00:00Z",
            "chargingSchedulePeriod": [
                {"startPeriod": 0, "limit": 16, "numberPhases": 3},
                {"startPeriod": 3600, "limit": -1},
            ],
        },
    }
    data.update(overrides)
    return data


def make_profile(profile_id=1, connector_id=1, stack_level=0, purpose=TX_DEFAULT, limit=16.0):
    return ChargingProfile(
        charging_profile_id=profile_id,
        stack_level=stack_level,
        charging_profile_purpose=purpose,
        charging_profile_kind=ChargingProfileKind.ABSOLUTE,
        charging_schedule=ChargingSchedule(
            charging_schedule_period=[ChargingSchedulePeriod(0, limit)],
            start_schedule=datetime(2026, 3, 10, tzinfo=timezone.utc),
        ),
        connector_id=connector_id,
    )


class TestProfileParsing:
    """Test parsing of OCPP profile dictionaries."""

    def test_parse_full_profile(self):
        profile = parse_charging_profile(profile_dict())

        assert profile.connector_id == 1
        assert profile.charging_profile_id == 7
        assert profile.stack_level == 0
        assert profile.charging_profile_purpose == ChargingProfilePurpose.TX_DEFAULT_PROFILE
        assert profile.charging_profile_kind == ChargingProfileKind.ABSOLUTE
        assert profile.valid_from == datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert profile.valid_to == datetime(2026, 3, 10, 23, 59, 59, 999000, tzinfo=timezone.utc)
        periods = profile.charging_schedule.charging_schedule_period
        assert periods[0].limit == 16
        assert periods[0].number_phases == 3

    def test_wire_unlimited_becomes_none(self):
        profile = parse_charging_profile(profile_dict())
        assert profile.charging_schedule.charging_schedule_period[1].limit is None

    def test_snake_case_payload(self):
        """The ocpp library delivers handler payloads with snake_case keys."""
        payload = {
            "charging_profile_id": 3,
            "stack_level": 1,
            "charging_profile_purpose": "TxProfile",
            "charging_profile_kind": "Relative",
            "charging_schedule": {
                "duration": 600,
                "charging_rate_unit": "A",
                "charging_schedule_period": [{"start_period": 0, "limit": 10.0}],
            },
        }

        profile = parse_charging_profile(payload, connector_id=2)

        assert profile.connector_id == 2
        assert profile.charging_profile_purpose == ChargingProfilePurpose.TX_PROFILE
        assert profile.charging_schedule.duration == 600
        assert profile.charging_schedule.start_schedule is None

    def test_request_connector_overrides_payload(self):
        profile = parse_charging_profile(profile_dict(connectorId=1), connector_id=3)
        assert profile.connector_id == 3

    def test_missing_connector_id(self):
        data = profile_dict()
        del data["connectorId"]

        with pytest.raises(ProfileValidationError) as exc:
            parse_charging_profile(data)

        assert exc.value.field == "connectorId"

    @pytest.mark.parametrize("field", [
        "chargingProfileId", "stackLevel", "chargingProfilePurpose",
        "chargingProfileKind", "chargingSchedule",
    ])
    def test_missing_required_field(self, field):
        data = profile_dict()
        del data[field]

        with pytest.raises(ProfileValidationError, match=field):
            parse_charging_profile(data)

    def test_missing_schedule_periods(self):
        data = profile_dict(chargingSchedule={"duration": 0})
        with pytest.raises(ProfileValidationError, match="chargingSchedulePeriod"):
            parse_charging_profile(data)

    @pytest.mark.parametrize("periods", [5, "0:16", {"startPeriod": 0, "limit": 16}, [5], [[0, 16]]])
    def test_malformed_schedule_periods(self, periods):
        data = profile_dict(chargingSchedule={
            "startSchedule": "2026-03-10T00:00:00Z",
            "chargingSchedulePeriod": periods,
        })
        with pytest.raises(ProfileValidationError, match="chargingSchedulePeriod"):
            parse_charging_profile(data)

    @pytest.mark.parametrize("limit", ["sixteen", None, True])
    def test_non_numeric_limit(self, limit):
        data = profile_dict(chargingSchedule={
            "startSchedule": "2026-03-10T00:00:00Z",
            "chargingSchedulePeriod": [{"startPeriod": 0, "limit": limit}],
        })
        with pytest.raises(ProfileValidationError):
            parse_charging_profile(data)

    def test_invalid_purpose(self):
        with pytest.raises(ProfileValidationError, match="chargingProfilePurpose"):
            parse_charging_profile(profile_dict(chargingProfilePurpose="StationMax"))

    def test_invalid_kind(self):
        with pytest.raises(ProfileValidationError, match="chargingProfileKind"):
            parse_charging_profile(profile_dict(chargingProfileKind="Weekly"))

    def test_invalid_datetime(self):
        with pytest.raises(ProfileValidationError, match="datetime"):
            parse_charging_profile(profile_dict(validFrom="yesterday"))

    def test_naive_datetime_read_as_utc(self):
        profile = parse_charging_profile(profile_dict(validFrom="2026-03-10T06:00:00"))
        assert profile.valid_from == datetime(2026, 3, 10, 6, tzinfo=timezone.utc)

    def test_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            parse_charging_profile({})
        assert issubclass(ProfileValidationError, SmartChargingError)


class TestProfileSerialization:
    """Profiles serialize back to the OCPP wire shape."""

    def test_round_trip_dict(self):
        data = profile_dict()
        assert parse_charging_profile(data).to_dict() == data

    def test_round_trip_profile(self):
        profile = parse_charging_profile(profile_dict())
        assert parse_charging_profile(profile.to_dict()) == profile

    def test_unlimited_serialized_as_minus_one(self):
        profile = make_profile(limit=None)
        assert profile.to_dict()["chargingSchedule"]["chargingSchedulePeriod"][0]["limit"] == -1

    def test_optional_fields_omitted(self):
        data = make_profile().to_dict()
        assert "validFrom" not in data
        assert "validTo" not in data
        assert "numberPhases" not in data["chargingSchedule"]["chargingSchedulePeriod"][0]


class TestProfileValidation:
    """validate_charging_profile() returns (ok, message)."""

    def test_valid_profile(self):
        assert validate_charging_profile(parse_charging_profile(profile_dict())) == (True, "")

    def test_empty_periods(self):
        profile = make_profile()
        profile.charging_schedule.charging_schedule_period = []

        ok, message = validate_charging_profile(profile)

        assert not ok
        assert "cannot be empty" in message

    def test_unsorted_periods(self):
        profile = make_profile()
        profile.charging_schedule.charging_schedule_period = [
            ChargingSchedulePeriod(3600, 10), ChargingSchedulePeriod(0, 16),
        ]

        ok, message = validate_charging_profile(profile)

        assert not ok
        assert "sorted by startPeriod ascending" in message

    def test_negative_start_period(self):
        profile = make_profile()
        profile.charging_schedule.charging_schedule_period = [ChargingSchedulePeriod(-10, 16)]
        assert validate_charging_profile(profile) == (False, "Period 0 has negative startPeriod: -10")

    def test_negative_limit(self):
        ok, message = validate_charging_profile(make_profile(limit=-5))
        assert not ok
        assert "negative limit" in message

    def test_unlimited_limit_allowed(self):
        assert validate_charging_profile(make_profile(limit=None))[0]

    def test_negative_stack_level(self):
        ok, message = validate_charging_profile(make_profile(stack_level=-1))
        assert not ok
        assert "stackLevel" in message

    def test_negative_connector(self):
        ok, message = validate_charging_profile(make_profile(connector_id=-1))
        assert not ok
        assert "connectorId" in message

    def test_absolute_requires_start_schedule(self):
        profile = make_profile()
        profile.charging_schedule.start_schedule = None

        ok, message = validate_charging_profile(profile)

        assert not ok
        assert message == "startSchedule is required for Absolute profile kind"

    def test_relative_without_start_schedule(self):
        profile = make_profile()
        profile.charging_profile_kind = ChargingProfileKind.RELATIVE
        profile.charging_schedule.start_schedule = None
        assert validate_charging_profile(profile)[0]

    def test_valid_from_after_valid_to(self):
        profile = parse_charging_profile(profile_dict(
            validFrom="2026-03-11T00:00:00Z", validTo="2026-03-10T00:00:00Z"
        ))
        assert validate_charging_profile(profile) == (False, "validFrom must not be after validTo")


class TestProfileRegistry:
    """add_profile / remove_profile over the registry port."""

    def test_add_appends(self):
        registry = InMemoryProfileRegistry()

        assert add_profile(make_profile(1, connector_id=1), registry) is None
        assert add_profile(make_profile(2, connector_id=2), registry) is None

        assert [p.charging_profile_id for p in registry.get().tx_default] == [1, 2]

    def test_same_connector_and_stack_level_replaces(self):
        registry = InMemoryProfileRegistry()
        first = make_profile(1, limit=16)
        second = make_profile(2, limit=10)

        add_profile(first, registry)
        replaced = add_profile(second, registry)

        assert replaced == first
        assert registry.get().tx_default == [second]

    def test_replace_keeps_position(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(1, stack_level=0), registry)
        add_profile(make_profile(2, stack_level=1), registry)

        add_profile(make_profile(3, stack_level=0), registry)

        assert [p.charging_profile_id for p in registry.get().tx_default] == [3, 2]

    def test_different_stack_level_appends(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(1, stack_level=0), registry)
        add_profile(make_profile(2, stack_level=1), registry)
        assert len(registry.get()) == 2

    def test_different_purpose_does_not_collide(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(1, purpose=ChargingProfilePurpose.TX_DEFAULT_PROFILE), registry)
        add_profile(make_profile(2, purpose=ChargingProfilePurpose.TX_PROFILE), registry)

        profiles = registry.get()

        assert len(profiles.tx_default) == 1
        assert len(profiles.tx_profile) == 1

    def test_uniqueness_after_many_adds(self):
        registry = InMemoryProfileRegistry()
        for profile_id in range(20):
            add_profile(make_profile(
                profile_id,
                connector_id=profile_id % 3,
                stack_level=profile_id % 2,
                purpose=list(ChargingProfilePurpose)[profile_id % 3],
            ), registry)

        keys = [p.key for p in registry.get().all()]
        assert len(keys) == len(set(keys))

    def test_replace_then_remove(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(1), registry)
        add_profile(make_profile(2), registry)

        assert len(registry.get().tx_default) == 1

        removed = remove_profile(1, 2, registry)

        assert removed.charging_profile_id == 2
        assert [p for p in registry.get().tx_default if p.connector_id == 1] == []

    def test_remove_requires_both_connector_and_id(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(5, connector_id=1), registry)
        add_profile(make_profile(5, connector_id=2), registry)

        remove_profile(2, 5, registry)

        assert [p.connector_id for p in registry.get().tx_default] == [1]

    def test_remove_unknown_is_noop(self):
        registry = InMemoryProfileRegistry()
        add_profile(make_profile(1), registry)

        assert remove_profile(1, 99, registry) is None
        assert remove_profile(4, 1, registry) is None
        assert len(registry.get()) == 1

    def test_get_returns_snapshot(self):
        registry = InMemoryProfileRegistry()
        snapshot = registry.get()

        add_profile(make_profile(1), registry)

        assert len(snapshot) == 0
        assert len(registry.get()) == 1

    def test_profile_set_of_buckets_by_purpose(self):
        profiles = [
            make_profile(1, purpose=ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE),
            make_profile(2, purpose=ChargingProfilePurpose.TX_PROFILE),
            make_profile(3),
        ]

        profile_set = ProfileSet.of(profiles)

        assert profiles_by_purpose(profile_set) == {
            "ChargePointMaxProfile": 1,
            "TxDefaultProfile": 1,
            "TxProfile": 1,
        }
