"""
CLI helper to push the roster to Google Sheets or pull it back.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bus_manager.config import get_settings
from bus_manager.dependencies import get_roster_store, get_sheets_client
from bus_manager.sheets import SheetsError, SheetsSync

logger = logging.getLogger("sheets_sync")


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync the bus roster with Google Sheets")
    parser.add_argument(
        "direction",
        choices=["to", "from"],
        help="'to' pushes buses, students and users; 'from' imports buses and students",
    )
    parser.add_argument(
        "--spreadsheet-id",
        type=str,
        default=None,
        help="Override the configured spreadsheet id",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    client = get_sheets_client()
    if args.spreadsheet_id:
        client.spreadsheet_id = args.spreadsheet_id
    if not client.is_ready():
        logger.error("Google Sheets is not configured (spreadsheet id and token required)")
        return 2

    sync = SheetsSync(get_roster_store(), client)
    try:
        counts = sync.sync_to_sheets() if args.direction == "to" else sync.sync_from_sheets()
    except SheetsError as exc:
        logger.error("Sync failed: %s", exc)
        return 1
    logger.info("Done: %s", counts)
    return 0


if __name__ == "__main__":
    sys.exit(main())
