import argparse
import asyncio
import logging
import signal

import uvicorn

from .config import settings
from .reporter import reporter
from .store import store
from .tracker import tracker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class LivetrackServer:
    def __init__(self):
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the Livetrack server."""
        logger.info("Starting Livetrack...")

        await store.connect()
        logger.info(f"Connected to store: {settings.database_path}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self.shutdown()))

        web_task = asyncio.create_task(self._run_web_server())
        sweep_task = asyncio.create_task(self._run_sweeper())

        logger.info(f"API available at http://localhost:{settings.dashboard_port}")

        await self._shutdown_event.wait()

        web_task.cancel()
        sweep_task.cancel()

        try:
            await web_task
        except asyncio.CancelledError:
            pass
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

        await store.close()
        logger.info("Livetrack stopped")

    async def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutting down...")
        self._shutdown_event.set()

    async def _run_web_server(self) -> None:
        """Run the FastAPI web server."""
        from dashboard.app import app

        config = uvicorn.Config(
            app,
            host=settings.dashboard_host,
            port=settings.dashboard_port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        except asyncio.CancelledError:
            pass

    async def _run_sweeper(self) -> None:
        """Periodically drop expired keys, settling timed-out watches if enabled."""
        while True:
            await asyncio.sleep(settings.sweep_interval_seconds)
            try:
                await tracker.sweep()
            except Exception as e:
                logger.error(f"Sweep error: {e}")


async def run_report(refresh: bool) -> str:
    await store.connect()
    try:
        report = await reporter.build_report(force_refresh=refresh)
        return report.model_dump_json(by_alias=True, indent=2)
    finally:
        await store.close()


async def run_purge() -> int:
    await store.connect()
    try:
        return await tracker.sweep()
    finally:
        await store.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Livetrack - live channel watch time tracker")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("serve", help="Run the heartbeat API (default)")

    report_parser = subparsers.add_parser("report", help="Print the live stats report as JSON")
    report_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Recompute instead of using the cached report",
    )

    subparsers.add_parser("purge", help="Run one expiry sweep and exit")

    args = parser.parse_args()

    if args.command == "report":
        print(asyncio.run(run_report(refresh=args.refresh)))
    elif args.command == "purge":
        settled = asyncio.run(run_purge())
        logger.info(f"Sweep finished, {settled} session(s) settled")
    else:
        server = LivetrackServer()
        asyncio.run(server.start())


if __name__ == "__main__":
    main()
