"""
One-shot sync runner for external timers (cron, platform schedulers).

Each invocation opens its own session, runs one operation and exits,
so nothing is carried between runs.

    python run_sync.py scheduled
    python run_sync.py sync --type bookings --hotel <id> --force
    python run_sync.py bootstrap <hotel_id> --property <property_id>
    python run_sync.py recover
    python run_sync.py repair
    python run_sync.py reset --hotel <id>
"""
import argparse
import json
import sys
from dataclasses import asdict

from channelsync.config import settings
from channelsync.database import SessionLocal
from channelsync.services.bootstrap import BootstrapService
from channelsync.services.commands import SyncServices
from channelsync.utils.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one channel sync operation")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("scheduled", help="Run one scheduler tick")

    sync = sub.add_parser("sync", help="Delta sync, optionally forced")
    sync.add_argument("--type", choices=["bookings", "calendar", "all"], default="all")
    sync.add_argument("--hotel", default=None)
    sync.add_argument("--force", action="store_true")

    bootstrap = sub.add_parser("bootstrap", help="Initial import for one hotel")
    bootstrap.add_argument("hotel_id")
    bootstrap.add_argument("--property", dest="property_id", default=None)
    bootstrap.add_argument("--force", action="store_true")

    recover = sub.add_parser("recover", help="Automatic recovery from recent errors")
    recover.add_argument("--hotel", default=None)

    repair = sub.add_parser("repair", help="Data integrity repair")
    repair.add_argument("--hotel", default=None)

    reset = sub.add_parser("reset", help="Reset sync state (requires a new bootstrap)")
    reset.add_argument("--hotel", default=None)

    return parser


def run(args, services: SyncServices):
    if args.command == "scheduled":
        return asdict(services.scheduler().run_scheduled())
    if args.command == "sync":
        return asdict(services.delta_engine().run(args.type, hotel_id=args.hotel, force_sync=args.force))
    if args.command == "bootstrap":
        service = BootstrapService(services.db, client_factory=services.client_factory)
        return asdict(service.bootstrap(args.hotel_id, property_id=args.property_id, force=args.force))
    if args.command == "recover":
        return services.recovery().auto_recovery(hotel_id=args.hotel).to_dict()
    if args.command == "repair":
        return services.recovery().repair_data_integrity(hotel_id=args.hotel).to_dict()
    return services.recovery().reset_sync_state(hotel_id=args.hotel).to_dict()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)

    db = SessionLocal()
    services = SyncServices(db)
    try:
        print("=" * 50)
        print(f"Running {args.command}...")
        print("=" * 50)

        result = run(args, services)
        print(json.dumps(result, indent=2, default=str))
        return 0 if result.get("success", True) else 1
    finally:
        services.close()
        db.close()


if __name__ == "__main__":
    sys.exit(main())
