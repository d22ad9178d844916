"""Command line interface: run the API, manage the database, drive the scheduler."""

import argparse
import json
import sys
import time

from .config import (
    AppConfig,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.exceptions import ConfigurationError
from .core.logging import get_logger, setup_logging_from_config

logger = get_logger(__name__)

PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# argparse destination -> AppConfig field
OVERRIDES = {
    "host": "host",
    "port": "port",
    "reload": "reload",
    "database_url": "database_url",
    "log_level": "log_level",
    "log_file": "log_file",
    "debug": "debug",
    "max_steps": "max_steps_per_run",
}


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automation-engine",
        description="Automation Engine - workflow graphs with durable waits"
    )
    parser.add_argument("--env", choices=sorted(PRESETS), help="Configuration preset")
    parser.add_argument("--config", help="Path to a .env file (ignored when --env is given)")
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", default=None, help="Enable auto-reload")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Path to a rotating log file")
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug mode")
    parser.add_argument("--max-steps", type=int, help="Nodes one run may execute before it fails")

    commands = parser.add_subparsers(dest="command")

    run_parser = commands.add_parser("run", help="Run the API server (default)")
    run_parser.add_argument("--workers", type=int, default=1, help="Worker processes")

    db_parser = commands.add_parser("db", help="Database management")
    db_commands = db_parser.add_subparsers(dest="subcommand")
    db_commands.add_parser("init", help="Create missing tables")
    db_commands.add_parser("migrate", help="Create missing indexes")
    db_commands.add_parser("reset", help="Drop and recreate every table")

    scheduler_parser = commands.add_parser("scheduler", help="Queue scheduler")
    scheduler_commands = scheduler_parser.add_subparsers(dest="subcommand")
    scheduler_commands.add_parser("tick", help="Run one pass and print its report as JSON")
    loop_parser = scheduler_commands.add_parser("run", help="Run passes until interrupted")
    loop_parser.add_argument("--interval", type=float, help="Seconds between passes")

    config_parser = commands.add_parser("config", help="Inspect configuration")
    config_commands = config_parser.add_subparsers(dest="subcommand")
    config_commands.add_parser("show", help="Print settings with secrets masked")
    config_commands.add_parser("validate", help="Check settings and create their directories")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Preset or environment configuration with command line overrides applied."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)
    overrides = {
        field: getattr(args, dest)
        for dest, field in OVERRIDES.items()
        if getattr(args, dest, None) is not None
    }
    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def run_server(config: AppConfig, workers: int = 1):
    import uvicorn
    from .factory import create_app

    logger.info(f"Starting server with {workers} worker(s)")
    if workers > 1:
        uvicorn.run("automation_engine.factory:create_app", factory=True, workers=workers,
                    **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    from .storage.database import create_tables, drop_tables, get_database_engine
    from .storage.migrations import run_migrations

    engine = get_database_engine(config.database_url, echo=config.database_echo)
    if command == "reset":
        logger.warning(f"Dropping all tables at {config.database_url}")
        drop_tables(engine)
    if command in ("init", "reset"):
        create_tables(engine)
    if command in ("migrate", "reset"):
        run_migrations(engine)
    logger.info(f"Database {command} finished")


def run_scheduler_command(command: str, config: AppConfig, interval: float = None):
    from .factory import build_components
    from .storage.database import create_tables, get_database_engine

    create_tables(get_database_engine(config.database_url, echo=config.database_echo))
    scheduler = build_components(config).scheduler

    if command == "tick":
        report = scheduler.run_once()
        print(json.dumps(report.model_dump(), indent=2))
        if report.errors:
            sys.exit(1)
        return

    interval = interval or config.scheduler_interval_seconds
    logger.info(f"Scheduler loop started (interval {interval}s)")
    try:
        while True:
            report = scheduler.run_once()
            if report.errors:
                logger.warning(f"Scheduler pass reported errors: {report.errors}")
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Scheduler loop stopped")


def show_configuration(config: AppConfig):
    print("Current Configuration:")
    for key, value in config.redacted().items():
        print(f"  {key}: {value}")


def validate_configuration_command(config: AppConfig):
    try:
        validate_config(config)
    except ConfigurationError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)
    print("Configuration validation: PASSED")


def _require_subcommand(args: argparse.Namespace):
    if getattr(args, "subcommand", None) is None:
        print(f"'{args.command}' needs a subcommand. Use --help for options.")
        sys.exit(1)


def main(argv=None):
    """Entry point of the ``automation-engine`` command."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)

        if args.command == "config":
            _require_subcommand(args)
            if args.subcommand == "show":
                show_configuration(config)
            else:
                validate_configuration_command(config)
            return

        validate_config(config)
        setup_logging_from_config(config)

        if args.command in (None, "run"):
            run_server(config, getattr(args, "workers", 1))
        elif args.command == "db":
            _require_subcommand(args)
            run_database_command(args.subcommand, config)
        elif args.command == "scheduler":
            _require_subcommand(args)
            run_scheduler_command(args.subcommand, config, getattr(args, "interval", None))

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
