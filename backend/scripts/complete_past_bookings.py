#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from eve_booking.config import BOOKING_DB_PATH  # noqa: E402
from eve_booking.errors import BookingError  # noqa: E402
from eve_booking.services.availability import parse_timestamp  # noqa: E402
from eve_booking.services.reservation_store import ReservationStore  # noqa: E402


def build_report(completed: List[str], as_of: datetime, db_path: str) -> Dict[str, Any]:
    return {
        "as_of": as_of.isoformat(timespec="seconds"),
        "db_path": db_path,
        "completed_count": len(completed),
        "completed_reservation_ids": completed,
    }


def run(db_path: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
    as_of = as_of or datetime.now()
    store = ReservationStore(db_path=db_path)
    completed = store.complete_past_reservations(now=as_of)
    return build_report(completed, as_of, db_path)


def main() -> int:
    parser = argparse.ArgumentParser(description="Mark confirmed bookings whose appointment has ended as completed.")
    parser.add_argument("--db-path", default=BOOKING_DB_PATH, help="Booking sqlite database.")
    parser.add_argument("--as-of", default="", help="ISO timestamp to treat as now (default: current local time).")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        as_of = parse_timestamp(args.as_of, field="--as-of") if args.as_of else None
        report = run(args.db_path, as_of)
    except BookingError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    print(f"Completed bookings: {report['completed_count']} (as of {report['as_of']})")
    for reservation_id in report["completed_reservation_ids"]:
        print(f"  - {reservation_id}")

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
