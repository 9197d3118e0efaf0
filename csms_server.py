import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import websockets
from ocpp.routing import on
from ocpp.v16 import ChargePoint as CP
from ocpp.v16 import call, call_result
from ocpp.v16.enums import RegistrationStatus

logger = logging.getLogger("csms")


# ============================================================================
# HELPER FUNCTIONS - OCPP Smart Charging Profile Generators
# ============================================================================

def _midnight(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def _iso(value: datetime) -> str:
    timespec = "seconds" if value.microsecond == 0 else "milliseconds"
    return value.isoformat(timespec=timespec).replace("+00:00", "Z")


def create_charge_point_max_profile(
    profile_id: int,
    max_amp: float,
    stack_level: int = 0,
    now: Optional[datetime] = None,
) -> dict:
    """
    Create a ChargePointMaxProfile capping the whole station for today.

    Example:
        >>> profile = create_charge_point_max_profile(1, 20)
        >>> # Caps the station at 20A from midnight to the end of the day
    """
    start = _midnight(now)
    return {
        "connectorId": 0,
        "chargingProfileId": profile_id,
        "stackLevel": stack_level,
        "chargingProfilePurpose": "ChargePointMaxProfile",
        "chargingProfileKind": "Absolute",
        "validFrom": _iso(start),
        "validTo": _iso(_end_of_day(start)),
        "chargingSchedule": {
            "duration": 0,
            "startSchedule": _iso(start),
            "chargingSchedulePeriod": [
                {"startPeriod": 0, "limit": max_amp}
            ],
        },
    }


def create_time_of_use_profile(
    profile_id: int,
    connector_id: int,
    off_peak_amp: float,
    peak_amp: float,
    peak_start_hour: int,
    peak_end_hour: int,
    stack_level: int = 0,
    now: Optional[datetime] = None,
) -> dict:
    """
    Create a daily recurring TxDefaultProfile with off-peak and peak limits.

    Example:
        >>> profile = create_time_of_use_profile(2, 1, 32, 16, 17, 21)
        >>> # 32A off-peak, 16A between 17:00 and 21:00
    """
    start = _midnight(now)
    return {
        "connectorId": connector_id,
        "chargingProfileId": profile_id,
        "stackLevel": stack_level,
        "chargingProfilePurpose": "TxDefaultProfile",
        "chargingProfileKind": "Recurring",
        "validFrom": _iso(start),
        "validTo": _iso(start + timedelta(days=365)),
        "chargingSchedule": {
            "duration": 0,
            "startSchedule": _iso(start),
            "chargingSchedulePeriod": [
                {"startPeriod": 0, "limit": off_peak_amp},
                {"startPeriod": peak_start_hour * 3600, "limit": peak_amp},
                {"startPeriod": peak_end_hour * 3600, "limit": off_peak_amp},
            ],
        },
    }


def create_tx_profile(
    profile_id: int,
    connector_id: int,
    limit_amp: float,
    duration_seconds: int,
    stack_level: int = 0,
    now: Optional[datetime] = None,
) -> dict:
    """
    Create a Relative TxProfile limiting the running transaction from now on.

    Example:
        >>> profile = create_tx_profile(3, 1, 10, 3600)
        >>> # 10A on connector 1 for the next hour
    """
    now = now or datetime.now(timezone.utc)
    return {
        "connectorId": connector_id,
        "chargingProfileId": profile_id,
        "stackLevel": stack_level,
        "chargingProfilePurpose": "TxProfile",
        "chargingProfileKind": "Relative",
        "validFrom": _iso(_midnight(now)),
        "validTo": _iso(_end_of_day(now)),
        "chargingSchedule": {
            "duration": duration_seconds,
            "chargingSchedulePeriod": [
                {"startPeriod": 0, "limit": limit_amp}
            ],
        },
    }


class CentralSystemChargePoint(CP):
    @on("BootNotification")
    async def on_boot_notification(self, charge_point_model, charge_point_vendor, **kwargs):
        logger.info(f"{self.id}: BootNotification model={charge_point_model}, vendor={charge_point_vendor}")
        return call_result.BootNotification(
            current_time=datetime.now(timezone.utc).isoformat(),
            interval=60,
            status=RegistrationStatus.accepted,
        )

    @on("Heartbeat")
    async def on_heartbeat(self, **kwargs):
        logger.info(f"{self.id}: Heartbeat")
        return call_result.Heartbeat(
            current_time=datetime.now(timezone.utc).isoformat()
        )

    @on("StatusNotification")
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        logger.info(
            f"{self.id}: StatusNotification connector={connector_id}, "
            f"status={status}, error_code={error_code}"
        )
        return call_result.StatusNotification()

    # ========================================================================
    # CSMS-Initiated SmartCharging Operations
    # ========================================================================

    async def send_charging_profile_to_station(self, profile_dict: dict) -> dict:
        """
        Send a charging profile via SetChargingProfile.req.

        The profile's own connectorId selects the target connector.

        Returns:
            Response dict with 'status' or error information
        """
        connector_id = profile_dict.get("connectorId", 0)
        profile_id = profile_dict.get("chargingProfileId")
        try:
            logger.info(
                f"{self.id}: Sending SetChargingProfile to connector {connector_id}, "
                f"profile_id={profile_id}"
            )
            cs_profile = {k: v for k, v in profile_dict.items() if k != "connectorId"}
            response = await self.call(call.SetChargingProfile(
                connector_id=connector_id,
                cs_charging_profiles=cs_profile,
            ))
            logger.info(f"{self.id}: SetChargingProfile response: {response.status}")
            return {
                "status": response.status,
                "connector_id": connector_id,
                "profile_id": profile_id,
            }
        except Exception as e:
            logger.exception(f"{self.id}: SetChargingProfile failed: {e}")
            return {
                "status": "Error",
                "error": str(e),
                "connector_id": connector_id,
            }

    async def request_composite_schedule_from_station(self, connector_id: int, duration: int = 86400) -> dict:
        """Request the station's composite schedule (in amps) for a connector."""
        try:
            logger.info(
                f"{self.id}: Requesting GetCompositeSchedule from connector {connector_id}"
            )
            response = await self.call(call.GetCompositeSchedule(
                connector_id=connector_id,
                duration=duration,
                charging_rate_unit="A",
            ))
            result = {
                "status": response.status,
                "connector_id": getattr(response, "connector_id", connector_id),
            }
            if response.status == "Accepted" and getattr(response, "charging_schedule", None):
                result["schedule_start"] = getattr(response, "schedule_start", None)
                result["chargingSchedule"] = response.charging_schedule
            return result
        except Exception as e:
            logger.exception(f"{self.id}: GetCompositeSchedule failed: {e}")
            return {
                "status": "Error",
                "error": str(e),
                "connector_id": connector_id,
            }

    async def clear_charging_profile_from_station(self, connector_id: int, profile_id: int) -> dict:
        """Clear one profile, identified by connector and profile id."""
        try:
            logger.info(
                f"{self.id}: Sending ClearChargingProfile id={profile_id}, connector_id={connector_id}"
            )
            response = await self.call(call.ClearChargingProfile(
                id=profile_id,
                connector_id=connector_id,
            ))
            logger.info(f"{self.id}: ClearChargingProfile response: {response.status}")
            return {
                "status": response.status,
                "connector_id": connector_id,
                "profile_id": profile_id,
            }
        except Exception as e:
            logger.exception(f"{self.id}: ClearChargingProfile failed: {e}")
            return {
                "status": "Error",
                "error": str(e),
            }


async def on_connect(connection):
    path = "/"
    if hasattr(connection, "request") and hasattr(connection.request, "path"):
        path = connection.request.path
    elif hasattr(connection, "path"):
        path = connection.path

    parts = path.rstrip("/").split("/")
    station_id = parts[-1] if parts and parts[-1] else "UNKNOWN"
    logger.info(f"New connection from station: {station_id}, path={path}")

    cp = CentralSystemChargePoint(station_id, connection)
    try:
        await cp.start()
    except websockets.exceptions.ConnectionClosed:
        logger.info(f"{station_id}: connection closed")


async def main():
    server = await websockets.serve(
        on_connect,
        "0.0.0.0",
        9000,
        subprotocols=["ocpp1.6"],
    )
    logger.info("CSMS listening on ws://0.0.0.0:9000/ocpp/<station_id>")
    await server.wait_closed()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
