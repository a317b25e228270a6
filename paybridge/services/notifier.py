import asyncio
from typing import Iterable, Optional, Set, Tuple

import aiohttp
import discord

from ..utils.constants import Colors
from ..utils.logger import logger

Field = Tuple[str, str]


class DiscordNotifier:
    """Best-effort Discord webhook messages.

    ``notify`` never awaits the network: each message is delivered by its own
    task with its own timeout, and delivery errors are logged and dropped.
    """

    def __init__(self, webhook_url: str = "", timeout: float = 5.0, username: str = "PayBridge"):
        self.webhook_url = (webhook_url or "").strip()
        self.timeout = timeout
        self.username = username
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(
        self,
        title: str,
        description: str = "",
        color: int = Colors.INFO,
        fields: Iterable[Field] = (),
    ) -> Optional[asyncio.Task]:
        if not self.enabled:
            return None

        embed = discord.Embed(title=title[:256], description=description[:4096] or None, color=color)
        for name, value in fields:
            embed.add_field(name=name[:256], value=(value or "(empty)")[:1024], inline=False)

        task = asyncio.create_task(self._deliver_safely(embed))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver_safely(self, embed: discord.Embed) -> bool:
        try:
            await asyncio.wait_for(self._deliver(embed), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Discord webhook timed out after {self.timeout:.1f}s")
        except Exception as exc:
            logger.warning(f"Discord webhook failed: {exc}")
        return False

    async def _deliver(self, embed: discord.Embed) -> None:
        async with aiohttp.ClientSession() as session:
            webhook = discord.Webhook.from_url(self.webhook_url, session=session)
            await webhook.send(embed=embed, username=self.username, wait=False)

    async def aclose(self) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=self.timeout)
        for task in still_pending:
            task.cancel()
