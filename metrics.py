"""
Prometheus metrics for the smart charging engine.

Tracks:
- charging_profiles_installed: Installed profiles per purpose (Gauge)
- charging_profile_requests_total: Set/clear requests by outcome (Counter)
- composite_schedules_total: Composite schedule computations (Counter)
- connector_current_limit_amps: Last computed limit per connector (Gauge)
"""

from typing import Dict, Optional

from prometheus_client import Counter, Gauge, generate_latest, REGISTRY

charging_profiles_installed = Gauge(
    "charging_profiles_installed",
    "Charging profiles currently installed, by purpose",
    ["station_id", "purpose"],
)

charging_profile_requests_total = Counter(
    "charging_profile_requests_total",
    "SetChargingProfile / ClearChargingProfile requests by outcome",
    ["operation", "status"],
)

composite_schedules_total = Counter(
    "composite_schedules_total",
    "Composite schedule computations",
    ["scope"],
)

connector_current_limit_amps = Gauge(
    "connector_current_limit_amps",
    "Limit in effect at the last query (-1 = unlimited)",
    ["station_id", "connector_id"],
)


def get_metrics_text():
    """Return metrics in Prometheus text format."""
    return generate_latest(REGISTRY).decode("utf-8")


def record_profile_request(operation: str, status: str):
    """Record the outcome of a set/clear request."""
    charging_profile_requests_total.labels(operation=operation, status=status).inc()


def record_composite_schedule(connector_id: int):
    """Record one composite schedule computation."""
    scope = "station" if connector_id == 0 else "connector"
    composite_schedules_total.labels(scope=scope).inc()


def set_profiles_installed(station_id: str, counts: Dict[str, int]):
    """Publish the per-purpose profile counts of a station."""
    for purpose, count in counts.items():
        charging_profiles_installed.labels(station_id=station_id, purpose=purpose).set(count)


def set_current_limit(station_id: str, connector_id: int, limit: Optional[float]):
    """Publish the limit in effect; the series is removed when no limit is known."""
    labels = (station_id, str(connector_id))
    if limit is None:
        try:
            connector_current_limit_amps.remove(*labels)
        except KeyError:
            # never published for this connector
            pass
        return
    connector_current_limit_amps.labels(*labels).set(limit)
