import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from drone_relay.core import BridgeConfig, DroneBridge
from drone_relay.core.api import APIController, APIServer, StreamServer
from drone_relay.core.asyncio_utils import create_logged_task
from drone_relay.core.logging_config import configure_logging
from drone_relay.core.logging_utils import get_module_logger
from drone_relay.core.paths import CONFIG_PATH, MediaPaths


logger = get_module_logger(__name__)

LOG_FILE_NAME = "drone_relay.log"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; unset flags fall back to the config file."""
    parser = argparse.ArgumentParser(
        description="Drone Relay - Tello command, telemetry and video bridge"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help=f"Path to the key=value config file (default: {CONFIG_PATH})"
    )

    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Root directory for photos, recordings and logs"
    )

    parser.add_argument(
        "--http-port",
        type=int,
        default=None,
        help="Port for the HTTP API (default: 3000)"
    )

    parser.add_argument(
        "--stream-port",
        type=int,
        default=None,
        help="Port for the WebSocket video stream (default: 3001)"
    )

    parser.add_argument(
        "--drone-host",
        type=str,
        default=None,
        help="Drone IP address (default: 192.168.10.1)"
    )

    parser.add_argument(
        "--log-level",
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        default=None,
        help="Logging level (default: info)"
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Log file path (default: <data-dir>/logs/drone_relay.log)"
    )

    parser.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        default=True,
        help="Log to file only"
    )

    return parser.parse_args(argv)


async def load_config(args: argparse.Namespace) -> BridgeConfig:
    config = await BridgeConfig.load_async(args.config)
    return config.with_overrides(
        data_dir=args.data_dir,
        http_port=args.http_port,
        stream_port=args.stream_port,
        drone_host=args.drone_host,
        log_level=args.log_level,
    )


def install_signal_handlers(bridge: DroneBridge) -> None:
    """Route SIGINT, SIGTERM and SIGQUIT into the same one-shot shutdown."""
    loop = asyncio.get_running_loop()
    shutdown_task: Optional[asyncio.Task] = None

    def signal_handler(sig: signal.Signals) -> None:
        nonlocal shutdown_task
        if shutdown_task is None:
            logger.info("Received %s", sig.name)
            shutdown_task = create_logged_task(
                bridge.request_shutdown(f"signal {sig.name}"),
                logger=logger,
                context="signal-shutdown",
            )

    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGQUIT"):
        signals.append(signal.SIGQUIT)

    for sig in signals:
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler


async def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the drone relay.

    Shutdown Sequence:
    1. A signal, POST /drone/shutdown, or a startup failure requests shutdown
    2. The bridge's ShutdownCoordinator runs its steps exactly once
    3. The HTTP API server is stopped last so the shutdown reply is delivered
    """
    args = parse_args(argv)
    config = await load_config(args)

    log_file = args.log_file or (MediaPaths(config.data_dir).logs_dir / LOG_FILE_NAME)
    configure_logging(
        config.log_level,
        force=True,
        console=args.console_output,
        log_file=log_file,
    )

    logger.info("=" * 60)
    logger.info("Drone Relay Starting")
    logger.info("=" * 60)
    logger.info("Drone: %s:%d (video on UDP %d)", config.drone_host, config.drone_port, config.video_port)
    logger.info("Data directory: %s", config.data_dir)
    logger.info("Log file: %s", log_file)
    logger.info("=" * 60)

    bridge = DroneBridge(config)
    api_server = APIServer(
        APIController(bridge),
        host=config.http_host,
        port=config.http_port,
        cors_origins=config.cors_origins,
        shutdown_timeout=config.http_shutdown_timeout,
        sse_heartbeat=config.sse_heartbeat,
    )
    stream_server = StreamServer(
        bridge.registry,
        host=config.http_host,
        port=config.stream_port,
        shutdown_timeout=config.http_shutdown_timeout,
    )
    bridge.attach_subscriber_transport(stream_server.stop)

    install_signal_handlers(bridge)

    try:
        await bridge.start()
        await stream_server.start()
        await api_server.start()
        await bridge.wait_for_shutdown()
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        await bridge.request_shutdown("exception")
    finally:
        if not bridge.coordinator.is_complete:
            await bridge.request_shutdown("finally block")
        await api_server.stop()

    logger.info("=" * 60)
    logger.info("Drone Relay Stopped")
    logger.info("=" * 60)


def run(argv: Optional[list[str]] = None) -> int:
    try:
        asyncio.run(main(argv))
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as exc:  # pragma: no cover - fatal guard
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
