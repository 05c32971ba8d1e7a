"""
btguard Daemon.

Main entry point wiring the Bluetooth collaborator to the trust engine:
- Bluetooth adapter (pairing notifications, bonded devices, cancel)
- Pairing inbox and processor
- Trust decision engine (policy store, registry, prompts)
- REST API and event stream (optional)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any

from btguard import __version__
from btguard.bluetooth.adapter import BluetoothAdapter
from btguard.bluetooth.simulated import SimulatedAdapter
from btguard.config import BTGuardConfig, load_config, validate_config
from btguard.core.engine import TrustEngine
from btguard.core.handler import AttemptOutcome
from btguard.core.inbox import InboxProcessor, PairingInbox

logger = logging.getLogger("btguard")


def setup_logging(level_name: str, log_file: str | None = None) -> None:
    """Configure root logging."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def create_adapter(config: BTGuardConfig) -> BluetoothAdapter:
    """
    Create the Bluetooth collaborator named in the configuration.

    Raises:
        ValueError: If the adapter type is unknown
        FileNotFoundError: If the simulation script does not exist
    """
    if config.bluetooth.adapter == "simulated":
        if config.bluetooth.script:
            return SimulatedAdapter.from_file(config.bluetooth.script)
        return SimulatedAdapter()
    raise ValueError(f"Unsupported bluetooth adapter: {config.bluetooth.adapter}")


class BTGuardDaemon:
    """
    Main btguard daemon.

    Feeds pairing notifications from the adapter through the inbox into
    the trust engine until shut down.
    """

    def __init__(
        self,
        config: BTGuardConfig,
        adapter: BluetoothAdapter | None = None,
        exit_when_idle: bool = False,
    ) -> None:
        """
        Initialize daemon with configuration.

        Args:
            config: Validated configuration object
            adapter: Bluetooth collaborator (created from config if None)
            exit_when_idle: Stop once the notification stream ends and
                every notification has been handled or is awaiting a prompt
        """
        self.config = config
        self.exit_when_idle = exit_when_idle

        self._adapter = adapter
        self._engine: TrustEngine | None = None
        self._api_server: Any = None
        self._api_task: asyncio.Task | None = None

        self.inbox = PairingInbox(maxsize=config.bluetooth.inbox_size)
        self.processor: InboxProcessor | None = None
        self._processor_task: asyncio.Task | None = None

        # State
        self.running = False
        self.outcomes: list[AttemptOutcome] = []
        self.unanswered: list[dict[str, Any]] = []
        self._shutdown_event = asyncio.Event()
        self._start_time: datetime | None = None

    @property
    def adapter(self) -> BluetoothAdapter:
        """Get or create the Bluetooth collaborator."""
        if self._adapter is None:
            self._adapter = create_adapter(self.config)
        return self._adapter

    @property
    def engine(self) -> TrustEngine:
        """Get or create the trust engine."""
        if self._engine is None:
            self._engine = TrustEngine.from_config(self.config, adapter=self.adapter)
        return self._engine

    async def start(self) -> None:
        """Start the engine, the inbox processor and the API."""
        logger.info("Starting btguard daemon v%s", __version__)
        self.running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        logger.info("Loading policy from: %s", self.config.storage.path)
        result = await self.engine.start()
        if not result.ok:
            logger.warning("Policy storage unavailable, running degraded: %s", result.message)

        self.inbox.bind(asyncio.get_running_loop())
        self.processor = InboxProcessor(
            self.inbox,
            self.engine.handle,
            on_result=self._record_outcome,
        )
        self._processor_task = asyncio.create_task(self.processor.run())

        if self.config.api.enabled:
            await self._start_api_server()

        logger.info("Waiting for pairing requests...")

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        logger.info("Stopping btguard daemon...")
        self.running = False
        self._shutdown_event.set()

        if self._adapter is not None:
            self._adapter.stop()

        if self._engine is not None:
            await self._engine.stop()

        if self.processor is not None:
            await self.processor.stop()
        if self._processor_task is not None:
            await asyncio.gather(self._processor_task, return_exceptions=True)

        if self._api_server is not None:
            self._api_server.should_exit = True
            from btguard.api.websocket import shutdown_websocket
            await shutdown_websocket()
            if self._api_task is not None:
                await asyncio.gather(self._api_task, return_exceptions=True)

        if self._engine is not None:
            self._engine.close()

        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Main daemon loop - pump pairing notifications into the inbox."""
        await self.start()

        try:
            async for notification in self.adapter.notifications():
                if not self.running or self._shutdown_event.is_set():
                    break
                await self.inbox.put(notification)

            if self.exit_when_idle:
                await self._wait_idle()
                self.unanswered = [p.to_dict() for p in self.engine.pending_prompts()]
            else:
                await self._shutdown_event.wait()

        except asyncio.CancelledError:
            logger.info("Daemon loop cancelled")
        except Exception as e:
            logger.error("Daemon error: %s", e, exc_info=True)
        finally:
            await self.stop()

    async def _wait_idle(self, interval: float = 0.01) -> None:
        """Wait until every queued notification is resolved or awaiting a prompt."""
        while not self._shutdown_event.is_set():
            await asyncio.sleep(interval)
            waiting = sum(len(p.attempts) for p in self.engine.pending_prompts())
            if (
                self.inbox.qsize == 0
                and self.processor is not None
                and self.processor.in_flight <= waiting
                and not self.engine.busy
            ):
                return

    def _record_outcome(self, outcome: AttemptOutcome | None) -> None:
        if outcome is not None:
            self.outcomes.append(outcome)

    async def _start_api_server(self) -> None:
        """Start the FastAPI server (requires api dependencies)."""
        import uvicorn

        from btguard.api import configure_services, create_app
        from btguard.api.websocket import init_websocket, publish_engine_event

        logger.info("Starting API server on %s:%s", self.config.api.host, self.config.api.port)

        app = create_app(
            debug=self.config.daemon.log_level == "debug",
            cors_origins=self.config.api.cors_origins if self.config.api.cors_enabled else [],
        )

        configure_services(
            app=app,
            engine=self.engine,
            audit=self.engine.audit,
            api_key=self.config.api.api_key,
            auth_mode=self.config.api.auth_mode,
        )

        await init_websocket()
        self.engine.add_listener(publish_engine_event)

        config = uvicorn.Config(
            app=app,
            host=self.config.api.host,
            port=self.config.api.port,
            log_level=self.config.daemon.log_level,
            access_log=False,
        )

        self._api_server = uvicorn.Server(config)
        self._api_task = asyncio.create_task(self._api_server.serve())

        logger.info("API server started")

    def handle_signal(self, signum: int) -> None:
        """Handle termination signals."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal %s, initiating shutdown", sig_name)
        self.running = False
        self._shutdown_event.set()

    def get_statistics(self) -> dict[str, Any]:
        """Get daemon statistics."""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            "uptime_seconds": uptime,
            "running": self.running,
            "engine": self._engine.get_statistics() if self._engine else None,
            "inbox": self.processor.get_statistics() if self.processor else None,
        }


async def run_daemon(
    config: BTGuardConfig,
    adapter: BluetoothAdapter | None = None,
) -> int:
    """Run the daemon with the given configuration."""
    daemon = BTGuardDaemon(config, adapter=adapter)

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))

    try:
        await daemon.run()
    except Exception as e:
        logger.exception("Daemon crashed: %s", e)
        return 1

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the daemon."""
    parser = argparse.ArgumentParser(
        prog="btguard-daemon",
        description="btguard Bluetooth pairing firewall daemon",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-s", "--script",
        metavar="FILE",
        help="Simulation script for the simulated adapter",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.script:
        config.bluetooth.script = args.script
    if args.verbose:
        config.daemon.log_level = "debug"

    errors = validate_config(config)
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.log_file)

    try:
        adapter = create_adapter(config)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return asyncio.run(run_daemon(config, adapter=adapter))


if __name__ == "__main__":
    sys.exit(main())
