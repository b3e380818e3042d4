"""Run one urgent-fee escalation tick for a cadence (cron-safe).

Each invocation scans the open tasks of one cadence once and exits. The
tick is idempotent inside an interval window, so an overlapping or
repeated cron run does not double-increase a task.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional

from dotenv import load_dotenv

from contractor_engine.logging_config import setup_logging
from contractor_engine.services import build_services
from contractor_engine.settings import get_engine_settings


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one urgent-fee escalation tick")
    parser.add_argument(
        "--cadence", choices=["short", "long"], required=True, help="Cadence to scan"
    )
    parser.add_argument("--db-path", help="Optional override for SQLite db path")

    args = parser.parse_args(argv)

    # Cron relies on the entrypoint exporting env; .env covers local runs
    load_dotenv()

    setup_logging()

    settings = get_engine_settings()
    if args.db_path:
        settings = settings.model_copy(update={"store_backend": "sqlite", "sqlite_path": args.db_path})

    services = build_services(settings, listen=False)
    try:
        scheduler = services.schedulers.get(args.cadence)
        if scheduler is None:
            print(
                json.dumps(
                    {
                        "level": "info",
                        "event": "escalation_tick_skipped",
                        "cadence": args.cadence,
                        "reason": "cadence disabled",
                    }
                )
            )
            return 0

        report = scheduler.tick()
    finally:
        services.close()

    # Structured, cron-friendly log line
    print(
        json.dumps(
            {
                "level": "info",
                "event": "escalation_tick_completed",
                **report.to_dict(),
            }
        )
    )

    return 0


if __name__ == "__main__":  # pragma: no cover - thin CLI wrapper
    sys.exit(main())
