#
# Copyright 2025 The TadoLocal and AmpScm contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Command-line interface for ELDES Monitor."""

import asyncio
import argparse
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from .cloud import DEFAULT_BASE_URL
from .demo import add_demo_data
from .database import ensure_schema_and_migrate
from .routes import create_app, register_routes
from .scheduler import DEFAULT_INTERVAL, SyncScheduler
from .sync import EldesCloudSync

# Logger will be configured in main() based on daemon/console mode
logger = logging.getLogger(__name__)

CONSOLE_FORMAT = '%(asctime)s %(levelname)s %(message)s'
DAEMON_FORMAT = '%(levelname)s %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

server: Optional[uvicorn.Server] = None


def uvicorn_log_config(args) -> dict:
    """uvicorn logging matching the mode configured on the root logger."""
    if args.syslog:
        # Hand everything to the root logger's syslog handler
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                "uvicorn": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.error": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.access": {"handlers": [], "level": "WARNING", "propagate": True},
            },
        }

    formatter = {"format": DAEMON_FORMAT} if args.daemon else {"format": CONSOLE_FORMAT, "datefmt": DATE_FORMAT}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["default"], "level": "INFO", "propagate": False},
        },
    }


def syslog_address(value: str):
    """'/dev/log' stays a socket path, 'host:port' becomes a tuple."""
    if ':' in value and not value.startswith('/'):
        host, port = value.rsplit(':', 1)
        return (host, int(port))
    return value


def configure_logging(args):
    """Configure the root logger for console, daemon or syslog mode."""
    if args.syslog:
        try:
            handler = logging.handlers.SysLogHandler(
                address=syslog_address(args.syslog),
                facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
            handler.setFormatter(logging.Formatter(
                'eldes-monitor[%(process)d]: %(levelname)s %(message)s'
            ))
            root_logger = logging.getLogger()
            root_logger.setLevel(logging.INFO)
            root_logger.handlers = [handler]
            logger.info("Logging to syslog: %s", args.syslog)
        except OSError as e:
            logging.basicConfig(level=logging.INFO, format=CONSOLE_FORMAT, datefmt=DATE_FORMAT,
                                stream=sys.stdout, force=True)
            logger.error(f"Failed to connect to syslog ({args.syslog}): {e}")
            logger.info("Falling back to console logging")
    elif args.daemon:
        # No timestamp, the service manager adds one
        logging.basicConfig(level=logging.INFO, format=DAEMON_FORMAT, stream=sys.stdout, force=True)
    else:
        logging.basicConfig(level=logging.INFO, format=CONSOLE_FORMAT, datefmt=DATE_FORMAT,
                            stream=sys.stdout, force=True)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")


def prepare_database(state: str) -> str:
    db_path = str(Path(os.path.expanduser(state)))
    try:
        ensure_schema_and_migrate(db_path)
    except Exception as e:
        logger.error(f"Database migration check failed: {e}")
        raise
    return db_path


async def run_sync_once(args) -> int:
    """Run a single sync pass over all credentials. Returns the exit code."""
    sync = EldesCloudSync(prepare_database(args.state), base_url=args.base_url)
    results = await sync.sync_all()
    failed = [r for r in results if r.error]
    for r in results:
        logger.info(f"Credential {r.credential_id}: {r.to_dict()}")
    return 1 if failed else 0


def seed_demo_data(args) -> int:
    """Add the demo credential, device and temperature history. Returns the exit code."""
    credential_id, readings = add_demo_data(prepare_database(args.state), days=args.demo_days)
    logger.info(f"Demo data ready: credential {credential_id}, {readings} new temperature reading(s)")
    return 0


async def run_server(args):
    """Run the ELDES Monitor server."""
    global server

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        if server:
            server.should_exit = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    scheduler = None
    try:
        sync = EldesCloudSync(prepare_database(args.state), base_url=args.base_url)
        scheduler = SyncScheduler(sync, interval=args.interval)

        app = create_app()
        register_routes(app, lambda: sync, lambda: scheduler)

        if args.no_scheduler:
            logger.info("Scheduler disabled, use POST /sync/start to start it")
        else:
            scheduler.start()

        logger.info("*** ELDES Monitor ready! ***")
        logger.info(f"Upstream: {args.base_url}")
        logger.info(f"API Server: http://0.0.0.0:{args.port}")
        logger.info(f"Documentation: http://0.0.0.0:{args.port}/docs")
        logger.info(f"Status: http://0.0.0.0:{args.port}/status")

        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=args.port,
            log_config=uvicorn_log_config(args),
            access_log=True
        )
        server = uvicorn.Server(config)
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down gracefully...")
    except Exception as e:
        logger.error(f"ERROR: Failed to start ELDES Monitor: {e}")
        raise
    finally:
        if scheduler:
            await scheduler.stop()

        if args.pid_file:
            pid_path = Path(args.pid_file)
            try:
                if pid_path.exists():
                    pid_path.unlink()
                    logger.info(f"PID file removed: {pid_path}")
            except OSError as e:
                logger.warning(f"Failed to remove PID file: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ELDES Monitor - local history and control for ELDES Cloud alarm systems",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start API server with hourly sync (console mode)
  python -m eldes_monitor
  eldes-monitor --port 8080 --state ./eldes.db

  # One sync pass over all stored credentials, then exit (for cron)
  eldes-monitor --sync-once

  # Seed a demo device with 30 days of temperature history, then exit
  eldes-monitor --add-demo-data

  # Run as system daemon
  eldes-monitor --daemon --pid-file /var/run/eldes-monitor.pid

  # Send logs to local or remote syslog
  eldes-monitor --syslog /dev/log
  eldes-monitor --syslog logserver.local:514

Environment:
  ELDES_DB          Database path (overridden by --state)
  ELDES_BASE_URL    Upstream API root (overridden by --base-url)
  ELDES_API_KEYS    Space separated bearer keys for the local API
  ELDES_SECRET_KEY  Fernet key used to encrypt stored passwords

API Endpoints:
  GET  /status                      - Service status
  GET  /credentials                 - Stored credentials (no secrets)
  POST /credentials                 - Add credentials
  GET  /devices?credential_id=N     - Devices with latest status
  GET  /devices/{id}?period=24h     - Device detail and temperature history
  POST /devices/{id}/control        - Arm or disarm a partition
  POST /sync                        - Sync all credentials now
  POST /sync/start                  - Start the background scheduler
        """
    )
    parser.add_argument("--state", default=os.environ.get('ELDES_DB', "~/.eldes-monitor.db"),
                        help="Path to state database (default: $ELDES_DB or ~/.eldes-monitor.db)")
    parser.add_argument("--port", type=int, default=4408,
                        help="Port for REST API server (default: 4408)")
    parser.add_argument("--base-url", default=os.environ.get('ELDES_BASE_URL', DEFAULT_BASE_URL),
                        help=f"ELDES Cloud API root (default: {DEFAULT_BASE_URL})")
    parser.add_argument("--interval", type=int, default=DEFAULT_INTERVAL,
                        help="Sync interval in seconds, aligned to the clock (default: 3600)")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="Do not start the background sync scheduler")
    parser.add_argument("--sync-once", action="store_true",
                        help="Run one sync pass over all credentials and exit")
    parser.add_argument("--add-demo-data", action="store_true",
                        help="Add a demo device with hourly temperature history and exit")
    parser.add_argument("--demo-days", type=int, default=30,
                        help="Days of history generated by --add-demo-data (default: 30)")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--daemon", action="store_true",
                        help="Run in daemon mode (no timestamps, auto-enables --pid-file)")
    parser.add_argument("--syslog",
                        help="Send logs to syslog instead of stdout (e.g., /dev/log or remote.server:514)")
    parser.add_argument("--pid-file",
                        help="Write process ID to specified file")
    return parser


def main(argv=None):
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)

    if args.daemon and not args.pid_file:
        args.pid_file = "/var/run/eldes-monitor.pid" if sys.platform != "win32" else "eldes-monitor.pid"

    configure_logging(args)

    if args.add_demo_data:
        sys.exit(seed_demo_data(args))

    if args.sync_once:
        sys.exit(asyncio.run(run_sync_once(args)))

    if args.pid_file:
        pid_path = Path(args.pid_file)
        try:
            pid_path.write_text(str(os.getpid()))
            logger.info(f"PID file written: {pid_path}")
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_server(args))
    except KeyboardInterrupt:
        logger.info("*** Shutdown complete ***")
    except Exception as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
