import argparse
import functools
import json
import logging
import sys

from helpers import config
from cloning.models import ConnectionProfile, Role
from cloning.session import run_clone
from scheduling.scheduler import JobScheduler
from scheduling.stores import JobStore, LogStore
from webapp.app import create_app

logger = logging.getLogger(__name__)


def configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def sample_config():
    return {
        "source": {
            "host": "source-db.example.com",
            "port": 3306,
            "user": "readonly_user",
            "password": "password",
            "database": "source_db",
        },
        "target": {
            "host": "target-db.example.com",
            "port": 3306,
            "user": "username",
            "password": "password",
            "database": "target_db",
        },
    }


def serve():
    log_store = LogStore(config.LOGS_FILE, max_entries=config.MAX_LOG_ENTRIES)
    log_store.load()
    clone_runner = functools.partial(run_clone, max_failed_row_ratio=config.MAX_FAILED_ROW_RATIO)
    scheduler = JobScheduler(JobStore(config.JOBS_FILE), log_store, clone_runner,
                             history_limit=config.JOB_HISTORY_LIMIT, run_log_limit=config.RUN_LOG_LIMIT)
    scheduler.load()

    app = create_app(scheduler, log_store, clone_runner)
    logger.info("Server running on port %s", config.PORT)
    try:
        app.run(host=config.HOST, port=config.PORT, threaded=True)
    finally:
        scheduler.shutdown()
    return 0


def clone_once(config_path):
    try:
        with open(config_path, "r") as f:
            settings = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not read config file %s: %s", config_path, e)
        return 1

    try:
        source = ConnectionProfile.from_dict(settings.get("source"), Role.SOURCE)
        target = ConnectionProfile.from_dict(settings.get("target"), Role.TARGET)
    except ValueError as e:
        logger.error("Invalid config: %s", e)
        return 1

    def print_event(event):
        print(json.dumps(event.to_wire(), ensure_ascii=False), flush=True)

    try:
        result = run_clone(source, target, print_event, max_failed_row_ratio=config.MAX_FAILED_ROW_RATIO)
    except ValueError as e:
        logger.error("Invalid config: %s", e)
        return 1
    return 0 if result.success else 1


def main(argv=None):
    parser = argparse.ArgumentParser(description="MySQL database clone server and scheduler")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the HTTP API and the job scheduler (default)")
    clone_parser = subparsers.add_parser("clone", help="Clone once and print progress as JSON lines")
    clone_parser.add_argument("--config", help="Path to JSON file with source and target credentials")
    clone_parser.add_argument("--sample-config", action="store_true", help="Print a sample config file")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command == "clone":
        if args.sample_config:
            print(json.dumps(sample_config(), indent=2))
            return 0
        if not args.config:
            clone_parser.print_help()
            return 1
        return clone_once(args.config)
    return serve()


if __name__ == "__main__":
    sys.exit(main())
