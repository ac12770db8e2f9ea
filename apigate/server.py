"""Process entry point: validate configuration, serve, drain on signals.

Usage:
    python -m apigate.server [--host HOST] [--port PORT]

Configuration is read from the environment (and ``.env``). Any missing or
invalid required value stops the process with exit code 1 before anything
else is constructed.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
from typing import Iterator, List, Optional

import uvicorn

from apigate.app import __version__, create_app
from apigate.config import ConfigError, Settings, load_settings
from apigate.logging import configure_logging, get_logger
from apigate.service.lifecycle import LifecycleController
from apigate.service.runtime import Runtime

logger = get_logger(__name__)


class ManagedServer(uvicorn.Server):
    """uvicorn server whose signals are owned by the lifecycle controller."""

    def __init__(self, config: uvicorn.Config, controller: LifecycleController) -> None:
        super().__init__(config)
        self.controller = controller

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None

    def handle_exit(self, sig: int, frame) -> None:
        self.controller.handle_signal(sig)

    def stop_listening(self) -> None:
        self.should_exit = True


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the API server")
    parser.add_argument("--host", help="Bind address (default: HOST)")
    parser.add_argument("--port", type=int, help="Bind port (default: PORT)")
    return parser.parse_args(argv)


async def serve(settings: Settings, *, host: str, port: int) -> int:
    runtime = Runtime(settings, version=__version__)
    controller = runtime.lifecycle
    app = create_app(runtime)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        lifespan="on",
        log_config=None,
        access_log=False,
        timeout_graceful_shutdown=int(settings.shutdown_timeout_seconds),
    )
    server = ManagedServer(config, controller)
    controller.set_listener_stopper(server.stop_listening)

    loop = asyncio.get_running_loop()
    controller.install_signal_handlers(loop)
    controller.install_fault_handlers(loop)

    await server.serve()
    if controller.exit_code is None:
        # Startup failed or the server exited without a drain
        return 1
    return controller.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging()
        logger.critical("config_invalid", problems=exc.problems)
        print(str(exc), file=sys.stderr)
        return 1

    configure_logging(
        log_level=settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.is_development,
    )
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("server_starting", host=host, port=port, env=settings.app_env.value)
    return asyncio.run(serve(settings, host=host, port=port))


if __name__ == "__main__":
    sys.exit(main())
