"""
Analysis and visualization of composite charging schedules.

Generates matplotlib charts showing:
- The composite schedule of one connector over the day
- All connectors of a station side by side with the station total

Profiles are read from a JSON file holding a list of OCPP charging profile
dicts (each with its connectorId), evaluated at a chosen instant.
"""

import argparse
import json
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from charging_profile_manager import ChargingProfileManager
from charging_profiles import ChargingProfile, parse_charging_profile
from clock import SECONDS_PER_DAY, FixedClock
from composite_schedule import CompositeSchedule
from station_profiles import StationProfile, load_station_profile

logger = logging.getLogger("analysis")

REPORTS_DIR = "reports"

COLORS = ["#22c55e", "#3b82f6", "#f59e0b", "#ef4444", "#a855f7"]


def load_profiles(path: str) -> List[ChargingProfile]:
    """Read a JSON list of charging profile dicts."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = [data]
    return [parse_charging_profile(item) for item in data]


def build_manager(
    profiles: List[ChargingProfile],
    station_profile: StationProfile,
    at: datetime,
    station_id: str = "ANALYSIS",
) -> ChargingProfileManager:
    """A profile manager frozen at ``at`` with the given profiles installed."""
    manager = ChargingProfileManager(station_id, station_profile, clock=FixedClock(at))
    for profile in profiles:
        accepted, message = manager.add_profile(profile)
        if not accepted:
            logger.warning(f"Skipping profile {profile.charging_profile_id}: {message}")
    return manager


def schedule_steps(schedule: CompositeSchedule) -> Tuple[np.ndarray, np.ndarray]:
    """
    Step-plot coordinates of a schedule: hours of the day and amps.

    Unlimited entries are drawn at the schedule's ceiling. The last value
    is repeated at 24h so the final step is drawn to the end of the day.
    """
    if not schedule:
        return np.array([0.0, 24.0]), np.array([np.nan, np.nan])

    ts = np.array([p.ts for p in schedule] + [SECONDS_PER_DAY], dtype=float)
    limits = np.array(
        [schedule.ceiling if p.limit is None else p.limit for p in schedule], dtype=float
    )
    return ts / 3600.0, np.append(limits, limits[-1])


def _draw(ax, schedule: CompositeSchedule, label: str, color: str) -> None:
    hours, amps = schedule_steps(schedule)
    ax.step(hours, amps, where="post", label=label, color=color, linewidth=2)


def _style(ax, title: str, ceiling: float, now_hours: Optional[float]) -> None:
    ax.axhline(ceiling, color="#94a3b8", linestyle="--", linewidth=1, label=f"Ceiling ({ceiling:.0f}A)")
    if now_hours is not None:
        ax.axvline(now_hours, color="#ef4444", linestyle=":", linewidth=1, label="Now")
    ax.set_xlim(0, 24)
    ax.set_ylim(0, ceiling * 1.15)
    ax.set_xticks(np.arange(0, 25, 3))
    ax.set_xlabel("Hour of day", fontweight="bold")
    ax.set_ylabel("Limit (A)", fontweight="bold")
    ax.set_title(title, fontweight="bold")
    ax.grid(alpha=0.3)
    ax.legend(loc="lower right", fontsize=9)


# ================== VISUALIZATION 1: CONNECTOR SCHEDULE ==================

def plot_connector_schedule(manager: ChargingProfileManager, connector_id: int, out_dir: str = REPORTS_DIR) -> str:
    """Plot today's composite schedule of one connector."""
    reading = manager.clock.now()
    schedule = manager.get_composite_schedule(connector_id, reading)

    fig, ax = plt.subplots(figsize=(12, 5))
    _draw(ax, schedule, f"Connector {connector_id}", COLORS[1])
    _style(
        ax,
        f"Composite Schedule - {manager.station_id} connector {connector_id}",
        schedule.ceiling,
        reading.seconds_from_midnight / 3600.0,
    )

    plt.tight_layout()
    filepath = os.path.join(out_dir, f"composite_connector_{connector_id}.png")
    plt.savefig(filepath, dpi=150, bbox_inches="tight")
    logger.info(f"Saved: {filepath}")
    plt.close(fig)
    return filepath


# ================== VISUALIZATION 2: STATION OVERVIEW ==================

def plot_station_overview(manager: ChargingProfileManager, out_dir: str = REPORTS_DIR) -> str:
    """Plot every connector's schedule above the station-wide schedule."""
    reading = manager.clock.now()
    connector_count = manager.station_profile.connector_count
    now_hours = reading.seconds_from_midnight / 3600.0

    fig, (top, bottom) = plt.subplots(2, 1, figsize=(12, 9), sharex=True)
    fig.suptitle(f"Smart Charging Overview - {manager.station_id}", fontsize=16, fontweight="bold")

    for connector_id in range(1, connector_count + 1):
        schedule = manager.get_composite_schedule(connector_id, reading)
        _draw(top, schedule, f"Connector {connector_id}", COLORS[(connector_id - 1) % len(COLORS)])
    _style(top, "Per-connector limits", manager.station_profile.connector_max_amp, now_hours)

    station = manager.get_composite_schedule(0, reading)
    _draw(bottom, station, "Station", COLORS[4])
    _style(bottom, "Station limit (connector 0)", station.ceiling, now_hours)

    plt.tight_layout()
    filepath = os.path.join(out_dir, "composite_station.png")
    plt.savefig(filepath, dpi=150, bbox_inches="tight")
    logger.info(f"Saved: {filepath}")
    plt.close(fig)
    return filepath


# ================== MAIN ==================

def main(argv=None):
    parser = argparse.ArgumentParser(description="Plot composite charging schedules.")
    parser.add_argument("profiles", help="JSON file with a list of charging profiles")
    parser.add_argument("--station-profile", help="Station profile name (default: SMART_CHARGING_PROFILE)")
    parser.add_argument("--at", help="ISO-8601 instant to evaluate at (default: now)")
    parser.add_argument("--out", default=REPORTS_DIR, help="Output directory")
    args = parser.parse_args(argv)

    station_profile = load_station_profile(args.station_profile)
    if args.at:
        at = datetime.fromisoformat(args.at.replace("Z", "+00:00"))
    else:
        at = datetime.now(station_profile.tzinfo())

    os.makedirs(args.out, exist_ok=True)
    manager = build_manager(load_profiles(args.profiles), station_profile, at)

    logger.info(f"Evaluating {len(manager.get_profiles())} profiles at {at.isoformat()}")
    plot_station_overview(manager, args.out)
    for connector_id in range(1, station_profile.connector_count + 1):
        plot_connector_schedule(manager, connector_id, args.out)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
