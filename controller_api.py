import logging
import threading
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from charging_profile_manager import ChargingProfileManager
from charging_profiles import UNLIMITED_WIRE_VALUE, parse_charging_profile
from exceptions import ProfileValidationError
from metrics import get_metrics_text
from station_profiles import StationProfile, load_station_profile

logger = logging.getLogger("controller_api")

# ================== SMARTCHARGING MODELS ==================

class ChargingProfileRequest(BaseModel):
    """Request to install a charging profile on a station."""
    connector_id: int = Field(..., ge=0, description="Connector ID (1-N, or 0 for station-wide)")
    profile: dict = Field(..., description="OCPP charging profile dict")


class ChargingProfileResponse(BaseModel):
    """Outcome of installing a charging profile."""
    status: str
    station_id: str
    connector_id: int
    profile_id: Optional[int] = None
    message: str
    error: Optional[str] = None


class ClearProfileResponse(BaseModel):
    status: str
    station_id: str
    connector_id: int
    profile_id: int
    message: str


class SchedulePeriodModel(BaseModel):
    startPeriod: int
    limit: float


class CompositeScheduleResponse(BaseModel):
    """Today's composite schedule of a connector, in amps."""
    station_id: str
    connector_id: int
    duration: int
    charging_rate_unit: str = "A"
    chargingSchedulePeriod: List[SchedulePeriodModel]


class CurrentLimitResponse(BaseModel):
    station_id: str
    connector_id: int
    limit: Optional[float] = Field(None, description="Amps; -1 = unlimited, null = no limit known")
    unlimited: bool


# ================== MANAGER ==================

class StationManager:
    """Keeps one ChargingProfileManager per station, created on first use."""

    def __init__(self, station_profile: Optional[StationProfile] = None):
        self.station_profile = station_profile
        self.managers: Dict[str, ChargingProfileManager] = {}
        self._lock = threading.Lock()

    def get(self, station_id: str) -> ChargingProfileManager:
        with self._lock:
            profile_manager = self.managers.get(station_id)
            if profile_manager is None:
                profile = self.station_profile or load_station_profile()
                profile_manager = ChargingProfileManager(station_id, profile)
                self.managers[station_id] = profile_manager
            return profile_manager

    def reset(self) -> None:
        with self._lock:
            self.managers.clear()


app = FastAPI(title="Smart Charging Controller")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

manager = StationManager()


def _check_connector(profile_manager: ChargingProfileManager, connector_id: int) -> None:
    connector_count = profile_manager.station_profile.connector_count
    if connector_id < 0 or connector_id > connector_count:
        raise HTTPException(
            status_code=404,
            detail=f"Connector {connector_id} not found (station has {connector_count})",
        )


@app.get("/metrics")
async def get_metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(get_metrics_text())


# ================== SMARTCHARGING APIs ==================

@app.post("/stations/{station_id}/charging_profile", response_model=ChargingProfileResponse)
async def set_charging_profile(station_id: str, req: ChargingProfileRequest):
    """
    Install a charging profile on a station.

    Args:
        station_id: Station identifier
        req: Profile request containing connector_id and profile dict

    Returns:
        Status of the operation
    """
    logger.info(f"API: Setting charging profile on {station_id}, connector {req.connector_id}")
    profile_manager = manager.get(station_id)
    _check_connector(profile_manager, req.connector_id)

    try:
        profile = parse_charging_profile(req.profile, connector_id=req.connector_id)
    except ProfileValidationError as e:
        logger.warning(f"Malformed profile for {station_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    accepted, message = profile_manager.add_profile(profile)
    if accepted:
        return ChargingProfileResponse(
            status="success",
            station_id=station_id,
            connector_id=req.connector_id,
            profile_id=profile.charging_profile_id,
            message=f"Charging profile {profile.charging_profile_id} installed",
        )
    return ChargingProfileResponse(
        status="rejected",
        station_id=station_id,
        connector_id=req.connector_id,
        profile_id=profile.charging_profile_id,
        message="Charging profile rejected",
        error=message,
    )


@app.delete("/stations/{station_id}/charging_profile", response_model=ClearProfileResponse)
async def clear_charging_profile(
    station_id: str,
    connector_id: int = Query(..., description="Connector ID"),
    profile_id: int = Query(..., description="Profile ID to clear"),
):
    """Remove one charging profile, identified by connector and profile id."""
    logger.info(f"API: Clearing profile {profile_id} from {station_id}, connector {connector_id}")
    profile_manager = manager.get(station_id)

    if not profile_manager.clear_profile(connector_id, profile_id):
        raise HTTPException(
            status_code=404,
            detail=f"No profile {profile_id} on connector {connector_id}",
        )
    return ClearProfileResponse(
        status="success",
        station_id=station_id,
        connector_id=connector_id,
        profile_id=profile_id,
        message=f"Charging profile {profile_id} cleared",
    )


@app.get("/stations/{station_id}/composite_schedule", response_model=CompositeScheduleResponse)
async def get_composite_schedule(
    station_id: str,
    connector_id: int = Query(..., description="Connector ID (0 = whole station)"),
):
    """
    Today's composite schedule for a connector.

    Unlimited periods are reported with limit -1.
    """
    profile_manager = manager.get(station_id)
    _check_connector(profile_manager, connector_id)

    schedule = profile_manager.get_composite_schedule(connector_id).to_dict()
    return CompositeScheduleResponse(
        station_id=station_id,
        connector_id=connector_id,
        duration=schedule["duration"],
        chargingSchedulePeriod=schedule["chargingSchedulePeriod"],
    )


@app.get("/stations/{station_id}/current_limit", response_model=CurrentLimitResponse)
async def get_current_limit(
    station_id: str,
    connector_id: int = Query(..., description="Connector ID (0 = whole station)"),
):
    """The limit in effect right now."""
    profile_manager = manager.get(station_id)
    _check_connector(profile_manager, connector_id)

    limit = profile_manager.get_current_limit(connector_id)
    return CurrentLimitResponse(
        station_id=station_id,
        connector_id=connector_id,
        limit=limit,
        unlimited=limit == UNLIMITED_WIRE_VALUE,
    )


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
