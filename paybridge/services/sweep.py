import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .database import Entitlement, EntitlementStore, utcnow
from .rcon import RconClient, RconError
from ..utils.logger import logger


@dataclass
class SweepReport:
    due: int = 0
    revoked: int = 0
    failed: int = 0
    skipped: int = 0
    superseded: int = 0


class EntitlementSweep:
    """Revokes expired entitlements on a fixed interval.

    A failed revoke leaves the row pending and it is picked up again on a later
    tick. With ``backoff_base`` at 0 every tick retries every due row; a positive
    base spaces retries out exponentially per entitlement, capped at
    ``backoff_max``.
    """

    def __init__(
        self,
        rcon: RconClient,
        store: Optional[EntitlementStore] = None,
        interval: float = 60.0,
        revoke_timeout: float = 8.0,
        backoff_base: float = 0.0,
        backoff_max: float = 3600.0,
    ):
        self.rcon = rcon
        self.store = store or EntitlementStore()
        self.interval = interval
        self.revoke_timeout = revoke_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="entitlement-sweep")
        logger.info(f"Entitlement sweep started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Entitlement sweep stopped.")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception(f"Entitlement sweep tick failed: {exc}")
            await asyncio.sleep(self.interval)

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        due = await self.store.due(now)
        report = SweepReport(due=len(due))
        if not due:
            return report

        if not self.rcon.is_available:
            report.skipped = len(due)
            logger.warning(f"RCON unavailable; skipping {len(due)} due revoke(s) until next tick.")
            return report

        for entry in due:
            if await self.store.is_superseded(entry):
                await self.store.mark_revoked(entry, now=now)
                report.superseded += 1
                logger.info(
                    f"Entitlement #{entry.id} for {entry.owner_id} superseded by a later grant; "
                    f"closed without `{entry.revoke_command}`"
                )
                continue
            if await self._revoke(entry, now):
                report.revoked += 1
            else:
                report.failed += 1

        logger.info(f"Entitlement sweep: {report.revoked} revoked, {report.failed} pending retry.")
        return report

    async def _revoke(self, entry: Entitlement, now: datetime) -> bool:
        try:
            await self.rcon.send(entry.revoke_command, timeout=self.revoke_timeout)
        except RconError as exc:
            retry_after = self._retry_after(entry.attempts + 1)
            await self.store.mark_failed(entry, str(exc), now=now, retry_after=retry_after)
            logger.warning(
                f"Revoke failed for entitlement #{entry.id} ({entry.owner_id}, attempt {entry.attempts}): {exc}"
            )
            return False

        await self.store.mark_revoked(entry, now=now)
        logger.info(f"Revoked entitlement #{entry.id} for {entry.owner_id} ({entry.sku})")
        return True

    def _retry_after(self, attempts: int) -> Optional[timedelta]:
        if self.backoff_base <= 0:
            return None
        delay = min(self.backoff_base * (2 ** min(attempts - 1, 32)), self.backoff_max)
        return timedelta(seconds=delay)
