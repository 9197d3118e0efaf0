import asyncio
import logging
from collections import deque
from datetime import datetime, timezone

import websockets
from ocpp.routing import on
from ocpp.v16 import ChargePoint as CP
from ocpp.v16 import call, call_result
from ocpp.v16.enums import (
    ChargePointErrorCode,
    ChargePointStatus,
    ChargingProfileStatus,
    ClearChargingProfileStatus,
    GetCompositeScheduleStatus,
    RegistrationStatus,
)

from charging_profile_manager import ChargingProfileManager
from charging_profiles import parse_charging_profile
from clock import SECONDS_PER_DAY
from station_profiles import StationProfile, load_station_profile

logger = logging.getLogger("station")

SUPPORTED_RATE_UNIT = "A"


class SimulatedChargePoint(CP):
    def __init__(self, id, connection, station_profile: StationProfile = None, profile_manager=None):
        super().__init__(id, connection)
        self.id = id
        self.profile_manager = profile_manager or ChargingProfileManager(id, station_profile)
        self.log_buffer = deque(maxlen=50)
        self.log("Station initialized")

    def log(self, message: str) -> None:
        """Add a timestamped entry to the station's log buffer."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.log_buffer.append(f"[{timestamp}] {message}")

    def get_logs(self) -> list:
        return list(self.log_buffer)

    # -------------------- SMART CHARGING HANDLERS --------------------

    @on("SetChargingProfile")
    async def on_set_charging_profile(self, connector_id, cs_charging_profiles, **kwargs):
        try:
            profile = parse_charging_profile(cs_charging_profiles, connector_id=connector_id)
        except ValueError as e:
            logger.warning(f"{self.id}: SetChargingProfile rejected: {e}")
            self.log(f"Charging profile rejected ({e})")
            return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)

        accepted, message = self.profile_manager.add_profile(profile)
        if not accepted:
            logger.warning(f"{self.id}: SetChargingProfile rejected: {message}")
            self.log(f"Charging profile {profile.charging_profile_id} rejected")
            return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)

        self.log(
            f"Charging profile {profile.charging_profile_id} installed on connector {connector_id}"
        )
        return call_result.SetChargingProfile(status=ChargingProfileStatus.accepted)

    @on("ClearChargingProfile")
    async def on_clear_charging_profile(self, id=None, connector_id=None, **kwargs):
        # Only clearing a single profile by (connectorId, id) is supported
        if id is None or connector_id is None:
            logger.info(
                f"{self.id}: ClearChargingProfile needs both id and connectorId "
                f"(id={id}, connector_id={connector_id})"
            )
            return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.unknown)

        if self.profile_manager.clear_profile(connector_id, id):
            self.log(f"Charging profile {id} cleared from connector {connector_id}")
            return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.accepted)
        return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.unknown)

    @on("GetCompositeSchedule")
    async def on_get_composite_schedule(self, connector_id, duration, charging_rate_unit=None, **kwargs):
        if charging_rate_unit not in (None, SUPPORTED_RATE_UNIT):
            logger.info(f"{self.id}: GetCompositeSchedule in {charging_rate_unit} not supported")
            return call_result.GetCompositeSchedule(status=GetCompositeScheduleStatus.rejected)

        reading = self.profile_manager.clock.now()
        schedule = self.profile_manager.get_composite_schedule(connector_id, reading)
        periods = [
            {"start_period": p["startPeriod"], "limit": p["limit"]}
            for p in schedule.to_dict()["chargingSchedulePeriod"]
        ]
        return call_result.GetCompositeSchedule(
            status=GetCompositeScheduleStatus.accepted,
            connector_id=connector_id,
            schedule_start=reading.midnight().isoformat(),
            charging_schedule={
                "duration": SECONDS_PER_DAY,
                "start_schedule": reading.midnight().isoformat(),
                "charging_rate_unit": SUPPORTED_RATE_UNIT,
                "charging_schedule_period": periods,
            },
        )


# =========================================================
# STATION RUNNER
# =========================================================

async def simulate_station(station_id: str, csms_url: str, station_profile: StationProfile):
    """
    Connect a charge point to the CSMS and serve smart charging requests
    until cancelled.
    """
    ws = await websockets.connect(
        f"{csms_url}/{station_id}",
        subprotocols=["ocpp1.6"],
    )
    cp = SimulatedChargePoint(station_id, ws, station_profile)

    async def send_heartbeat_loop():
        while True:
            await asyncio.sleep(station_profile.heartbeat_interval)
            response = await cp.call(call.Heartbeat())
            logger.info(f"{station_id}: Heartbeat -> {response}")

    try:
        recv_task = asyncio.create_task(cp.start())

        response = await cp.call(call.BootNotification(
            charge_point_model="SmartCharging-Model",
            charge_point_vendor="SmartCharging-Vendor",
        ))
        status = getattr(response, "status", None)
        if status not in (RegistrationStatus.accepted, "Accepted"):
            logger.warning(f"{station_id}: Not accepted by CSMS: {status}")

        for connector_id in range(1, station_profile.connector_count + 1):
            await cp.call(call.StatusNotification(
                connector_id=connector_id,
                error_code=ChargePointErrorCode.no_error,
                status=ChargePointStatus.available,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ))

        hb_task = asyncio.create_task(send_heartbeat_loop())
        await asyncio.gather(recv_task, hb_task)

    except asyncio.CancelledError:
        logger.info(f"{station_id}: cancellation requested, shutting down.")
        await ws.close()
        raise


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(
        simulate_station(
            "PYTHON-SIM-001",
            "ws://localhost:9000/ocpp",
            load_station_profile(),
        )
    )
