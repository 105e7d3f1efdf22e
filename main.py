"""CLI entry point: python main.py maintenance --force"""

import argparse
import json
import sys

from src.logging_config import LoggingConfig, configure_logging
from src.maintenance.config import MaintenanceJobType
from src.notifications.errors import MaintenanceAlreadyRunningError
from src.notifications.service import PushNotificationService
from src.settings import get_settings


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_maintenance(service: PushNotificationService, args) -> int:
    try:
        job = service.run_maintenance_job(
            args.job_type, force=args.force, max_age_in_days=args.max_age_days
        )
    except MaintenanceAlreadyRunningError as e:
        _print_json({"error": e.message, "retryable": True})
        return 2

    if job is None:
        _print_json({"skipped": True, "message": "Maintenance not due"})
        return 0
    _print_json({"skipped": False, "job": job.to_dict()})
    return 0 if job.success else 1


def cmd_status(service: PushNotificationService, args) -> int:
    status = service.get_maintenance_status().to_dict()
    status["statistics"] = service.scheduler.get_statistics()
    status["tokens"] = service.get_token_statistics()
    _print_json(status)
    return 0


def cmd_serve(service: PushNotificationService, args) -> int:
    import uvicorn

    from src.app import create_app

    uvicorn.run(create_app(service), host=args.host, port=args.port)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Xsite - Push notification service"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    maintenance = subparsers.add_parser("maintenance", help="Run token maintenance")
    maintenance.add_argument(
        "--force", action="store_true",
        help="Run even if maintenance is not due"
    )
    maintenance.add_argument(
        "--job-type", default=MaintenanceJobType.FULL.value,
        choices=[t.value for t in MaintenanceJobType],
        help="Operations to run (default: full)"
    )
    maintenance.add_argument(
        "--max-age-days", type=int, default=None,
        help="Deactivate tokens unused for this many days"
    )

    subparsers.add_parser("status", help="Print maintenance status and token statistics")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(LoggingConfig.from_settings(settings))
    service = PushNotificationService.from_settings(settings)

    commands = {
        "maintenance": cmd_maintenance,
        "status": cmd_status,
        "serve": cmd_serve,
    }
    return commands[args.command](service, args)


if __name__ == "__main__":
    sys.exit(main())
