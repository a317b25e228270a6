import asyncio
import signal
import sys
from typing import Optional

from .config import ConfigError, Settings
from .services.database import EntitlementStore, close_db, init_db
from .services.dispatcher import GrantDispatcher
from .services.fulfillment import FulfillmentService
from .services.idempotency import IdempotencyGuard
from .services.notifier import DiscordNotifier
from .services.rcon import RconClient
from .services.sku import SkuNormalizer
from .services.sweep import EntitlementSweep
from .services.web_bridge import WebBridgeServer
from .utils.constants import Emojis
from .utils.logger import logger

VERSION = "2026.10.0"


class PayBridge:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = EntitlementStore()
        self.rcon = RconClient.from_settings(settings)
        self.notifier = DiscordNotifier(settings.discord_webhook_url, timeout=settings.notify_timeout)
        self.guard = IdempotencyGuard(inflight_ttl=settings.inflight_ttl, processed_ttl=settings.processed_ttl)
        self.normalizer = SkuNormalizer(test_amount=settings.test_amount, test_target=settings.test_target)
        self.dispatcher = GrantDispatcher(
            self.rcon,
            self.store,
            command_delay=settings.command_delay,
            first_timeout=settings.rcon_first_timeout,
            timeout=settings.rcon_timeout,
        )
        self.fulfillment = FulfillmentService(
            settings.api_secret,
            self.normalizer,
            self.guard,
            self.dispatcher,
            self.rcon,
            self.notifier,
        )
        self.sweep = EntitlementSweep(
            self.rcon,
            self.store,
            interval=settings.sweep_interval,
            revoke_timeout=settings.rcon_timeout,
            backoff_base=settings.sweep_backoff_base,
            backoff_max=settings.sweep_backoff_max,
        )
        self.web_bridge: Optional[WebBridgeServer] = None

    async def setup(self) -> None:
        logger.info(f"{Emojis.STORE}  Booting PayBridge v{VERSION}...")

        # 1. Ledger first; exactly-once delivery depends on it.
        try:
            await init_db(self.settings.database_url, self.settings.db_ssl_verify)
            logger.info(f"{Emojis.SUCCESS} Database connection established.")
        except Exception as e:
            logger.critical(f"{Emojis.ERROR} Database failed to initialize: {e}")
            sys.exit(1)

        # 2. HTTP front door
        self.web_bridge = WebBridgeServer(
            self.fulfillment,
            self.rcon,
            self.notifier,
            store=self.store,
            host=self.settings.host,
            port=self.settings.port,
        )
        await self.web_bridge.start()

        # 3. Expiry sweep
        self.sweep.start()
        logger.info(f"{Emojis.ROCKET}  PayBridge is online.")

    async def close(self) -> None:
        await self.sweep.stop()
        if self.web_bridge is not None:
            await self.web_bridge.stop()
            self.web_bridge = None
        await self.notifier.aclose()
        await close_db()
        logger.info("PayBridge shut down.")

    async def run_forever(self) -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass

        await self.setup()
        try:
            await stop_event.wait()
        finally:
            await self.close()


def main() -> None:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.critical(f"{Emojis.ERROR} {e}")
        sys.exit(1)

    try:
        asyncio.run(PayBridge(settings).run_forever())
    except KeyboardInterrupt:
        pass
