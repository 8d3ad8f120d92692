"""
Stream Archiver - main application.

Coordinates all modules:
1. Discover archived recordings from the Twitch catalog
2. Fetch them (priority order, bounded concurrency, circuit breaker)
3. Optionally republish to Telegram
4. Watch live status, capture chat under a placeholder recording
5. Reconcile the placeholder with the archived recording after the stream
6. Export the reconciled chat as a replay file
"""

import asyncio
import signal
import sys
from typing import Dict, List, Optional

import aiohttp

from .catalog import TwitchCatalog
from .chat_export import ChatExporter
from .chat_recorder import TwitchChatRecorder
from .concurrency import ConcurrencyLimiter
from .config import Config, load_config
from .errors import ArchiverError
from .live_poller import LivePoller
from .logger import get_channel_logger, get_logger, setup_logging
from .orchestrator import ProcessingOrchestrator
from .reconciler import ReconcileOutcome, ReconcileRequest, ReconcileStatus, Reconciler
from .store import Database, RecordingStore, StateStore
from .twitch_api import TwitchAPI
from .downloader import YtDlpFetcher
from .uploader import TelegramPublisher


class ArchiverApp:
    """
    Main application wiring storage, collaborators and per-channel loops.

    Handles:
    - One processing orchestrator and one live poller per channel
    - A shared download slot pool across channels
    - Periodic catalog discovery
    - Graceful shutdown on SIGINT/SIGTERM
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.db = Database(config.database.url, echo=config.database.echo)
        self.store = RecordingStore(self.db)
        self.state_store = StateStore(self.db)

        self.twitch_api = TwitchAPI(
            client_id=config.twitch.client_id,
            client_secret=config.twitch.client_secret
        )
        self.catalog = TwitchCatalog(self.twitch_api)
        self.fetcher = YtDlpFetcher(data_dir=config.processing.data_dir)

        self.publisher: Optional[TelegramPublisher] = None
        if config.publish.enabled:
            self.publisher = TelegramPublisher(
                api_id=config.publish.api_id,
                api_hash=config.publish.api_hash,
                channel_id=config.publish.channel_id,
                session_name=config.publish.session_name
            )

        self.limiter = ConcurrencyLimiter(config.processing.max_concurrent_downloads)
        self.reconciler = Reconciler(
            self.db,
            self.catalog,
            initial_delay=config.reconcile.initial_delay,
            window=config.reconcile.window,
            poll_interval=config.reconcile.poll_interval,
            match_tolerance=config.reconcile.match_tolerance,
        )
        self.chat_exporter: Optional[ChatExporter] = None
        if config.chat.export_dir:
            self.chat_exporter = ChatExporter(self.store, config.chat.export_dir)

        self.orchestrators: Dict[str, ProcessingOrchestrator] = {}
        self.pollers: Dict[str, LivePoller] = {}
        for channel in config.twitch.channels:
            self.orchestrators[channel] = ProcessingOrchestrator.from_config(
                channel,
                config,
                self.store,
                self.state_store,
                self.fetcher,
                self.publisher,
                limiter=self.limiter,
            )
            chat_recorder = None
            if config.chat.enabled:
                chat_recorder = TwitchChatRecorder(
                    self.store,
                    channel,
                    bot_username=config.twitch.bot_username,
                    oauth_token=config.twitch.oauth_token,
                )
            self.pollers[channel] = LivePoller(
                channel,
                self.twitch_api,
                self.store,
                self._reconcile,
                chat_recorder=chat_recorder,
                poll_interval=config.twitch.live_poll_interval,
            )

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start the application and run until a shutdown signal."""
        self._logger.info("Starting Stream Archiver...")

        self.config.ensure_directories()
        await self.db.create_all()

        if not await self.twitch_api.connect():
            raise RuntimeError("Failed to connect to Twitch API")

        if self.publisher and not await self.publisher.connect():
            raise RuntimeError("Failed to connect to Telegram")

        channels = list(self.orchestrators)
        self._logger.info(
            f"Archiving {len(channels)} channel(s): {', '.join(channels)} "
            f"({self.limiter.capacity} download slot(s), "
            f"publishing {'on' if self.publisher else 'off'})"
        )

        self._tasks.append(asyncio.create_task(self._discovery_loop(), name="discovery"))
        for channel in channels:
            self._tasks.append(asyncio.create_task(
                self.orchestrators[channel].run(self._stop_event),
                name=f"orchestrator:{channel}",
            ))
            self._tasks.append(asyncio.create_task(
                self.pollers[channel].run(self._stop_event),
                name=f"poller:{channel}",
            ))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._stop_event.set)

        try:
            await self._stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self._cleanup()

    def stop(self) -> None:
        self._stop_event.set()

    async def _reconcile(self, request: ReconcileRequest) -> ReconcileOutcome:
        """Reconcile an ended stream, then export its chat under the real id."""
        outcome = await self.reconciler.reconcile(request)
        if outcome.status == ReconcileStatus.MERGED and self.chat_exporter:
            try:
                await self.chat_exporter.export(request.channel, outcome.merge.real_id)
            except ArchiverError as e:
                get_channel_logger(request.channel, 'chat_export').critical(f"💾 {e}")
        return outcome

    async def _discovery_loop(self) -> None:
        """Insert newly published recordings every discovery interval."""
        interval = self.config.processing.discovery_interval

        while not self._stop_event.is_set():
            for channel in self.orchestrators:
                try:
                    await self.catalog.discover(self.store, channel)
                except (ArchiverError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                    get_channel_logger(channel, 'catalog').warning(f"Discovery failed: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _cleanup(self) -> None:
        """Stop loops, cancel in-flight work, release resources."""
        self._logger.info("Cleaning up...")
        self._stop_event.set()

        # Loops exit on the stop event; give them a moment before cancelling
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=10)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

        for orchestrator in self.orchestrators.values():
            await orchestrator.shutdown()
        for poller in self.pollers.values():
            await poller.shutdown()

        try:
            await asyncio.wait_for(self.twitch_api.disconnect(), timeout=5.0)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            self._logger.warning(f"Error disconnecting Twitch: {e}")

        if self.publisher:
            try:
                await asyncio.wait_for(self.publisher.disconnect(), timeout=5.0)
            except (asyncio.TimeoutError, OSError) as e:
                self._logger.warning(f"Error disconnecting Telegram: {e}")

        await self.db.dispose()
        self._logger.info("Cleanup complete")


async def main(config_path: str = "config.yaml") -> None:
    """Main entry point."""
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("Please create config.yaml from config.example.yaml")
        return
    except ValueError as e:
        print(f"Configuration error: {e}")
        return

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    if not config.twitch.channels:
        print("Error: No Twitch channels configured")
        return

    app = ArchiverApp(config)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise


def run() -> None:
    """Console script entry point: `stream-archiver [config.yaml]`."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    asyncio.run(main(config_path))


if __name__ == '__main__':
    run()
