"""Run the coordinator's HTTP control surface.

Command-line options override the matching LLAMA_* settings for this run.
"""

import argparse
import logging
import os
import sys

import uvicorn

from coordinator import Coordinator
from coordinator.config import CoordinatorSettings
from coordinator.wakelock import WakeLock

from .app import create_app

logger = logging.getLogger("api")

# Third-party loggers kept at WARNING even with --debug
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn", "uvicorn.access", "asyncio", "sse_starlette")


def setup_logging(debug: bool = False):
    """Log to stdout; DEBUG for the api and coordinator packages when ``debug``.

    With DEBUG on, every line the child processes print shows up under
    ``coordinator.process``.
    """
    if debug:
        fmt = "%(asctime)s.%(msecs)03d %(levelname)-5s [%(name)s:%(lineno)d] %(message)s"
    else:
        fmt = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))

    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    for name in ("api", "coordinator"):
        logging.getLogger(name).setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llama-mesh",
        description="Run llama.cpp as a distributed master or RPC worker, controlled over HTTP",
    )
    parser.add_argument("--host", dest="api_host", help="Bind address for the control API")
    parser.add_argument("--port", dest="api_port", type=int, help="Port for the control API")
    parser.add_argument("--server-binary", help="llama-server executable (path or name in PATH)")
    parser.add_argument("--rpc-binary", help="rpc-server executable (path or name in PATH)")
    parser.add_argument("--master-ram", dest="master_ram_mb", type=int, metavar="MB",
                        help="RAM this device contributes as master")
    parser.add_argument("--worker-ram", dest="worker_ram_mb", type=int, metavar="MB",
                        help="RAM this device offers as a worker")
    parser.add_argument("--rpc-port", type=int, help="Default rpc-server port in worker mode")
    parser.add_argument("--data-dir", help="Working and HOME directory for child processes")
    parser.add_argument("--no-inhibit-sleep", dest="inhibit_sleep", action="store_false", default=None,
                        help="Let the host sleep while processes run")
    parser.add_argument("--debug", "-d", action="store_true",
                        help="Debug logging, including every line of child process output")
    return parser


def settings_from_args(args: argparse.Namespace) -> CoordinatorSettings:
    """LLAMA_* settings with every option given on the command line applied."""
    overrides = {
        key: value for key, value in vars(args).items()
        if key != "debug" and value is not None
    }
    return CoordinatorSettings(**overrides)


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)
    debug = args.debug or os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    setup_logging(debug=debug)

    settings = settings_from_args(args)
    if debug:
        logger.info("Debug logging enabled")
    logger.info(
        f"Starting llama-mesh on http://{settings.api_host}:{settings.api_port} "
        f"(llama-server: {settings.server_binary}, rpc-server: {settings.rpc_binary})"
    )

    coordinator = Coordinator(settings=settings, wake_lock=WakeLock(enabled=settings.inhibit_sleep))
    app = create_app(coordinator)
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="warning",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
