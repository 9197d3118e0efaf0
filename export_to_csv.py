import argparse
import csv
import logging
from datetime import datetime
from typing import Any, Dict, List

from analysis import build_manager, load_profiles
from charging_profile_manager import ChargingProfileManager
from charging_profiles import UNLIMITED_WIRE_VALUE
from station_profiles import load_station_profile

logger = logging.getLogger("export_to_csv")

SCHEDULE_FIELDS = ["connector_id", "start_period", "start_time", "limit_amp", "unlimited"]


def write_csv(path: str, rows: List[Dict[str, Any]], fieldnames: List[str]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _clock_time(seconds: int) -> str:
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def schedule_rows(manager: ChargingProfileManager, connector_ids: List[int]) -> List[Dict[str, Any]]:
    """One row per composite schedule entry, connectors in the given order."""
    reading = manager.clock.now()
    rows = []
    for connector_id in connector_ids:
        for entry in manager.get_composite_schedule(connector_id, reading):
            rows.append({
                "connector_id": connector_id,
                "start_period": entry.ts,
                "start_time": _clock_time(entry.ts),
                "limit_amp": UNLIMITED_WIRE_VALUE if entry.unlimited else entry.limit,
                "unlimited": entry.unlimited,
            })
    return rows


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Export composite charging schedules to CSV.")
    parser.add_argument("profiles", help="JSON file with a list of charging profiles")
    parser.add_argument("--station-profile", help="Station profile name (default: SMART_CHARGING_PROFILE)")
    parser.add_argument("--at", help="ISO-8601 instant to evaluate at (default: now)")
    parser.add_argument(
        "--connector-id",
        type=int,
        action="append",
        help="Connector to export (repeatable; default: station and every connector)",
    )
    parser.add_argument("--out", default="composite_schedule.csv", help="CSV path")
    args = parser.parse_args(argv)

    station_profile = load_station_profile(args.station_profile)
    if args.at:
        at = datetime.fromisoformat(args.at.replace("Z", "+00:00"))
    else:
        at = datetime.now(station_profile.tzinfo())

    manager = build_manager(load_profiles(args.profiles), station_profile, at)
    connector_ids = args.connector_id or list(range(0, station_profile.connector_count + 1))

    rows = schedule_rows(manager, connector_ids)
    write_csv(args.out, rows, SCHEDULE_FIELDS)
    logger.info(f"Wrote {len(rows)} schedule entries to {args.out}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
