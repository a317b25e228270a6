from __future__ import annotations

import asyncio
from typing import Iterable

from paybridge.services.rcon import RconError, RconResult

STEAMID = "76561199026505924"
SECRET = "test-secret"


class FakeRcon:
    """In-memory stand-in for RconClient that records every command."""

    def __init__(self, fail_on: Iterable[str] = (), configured: bool = True, dry_run: bool = False, latency: float = 0):
        self.fail_on = list(fail_on)
        self.is_configured = configured
        self.dry_run = dry_run
        self.latency = latency
        self.sent: list[tuple[str, float | None]] = []

    @property
    def is_available(self) -> bool:
        return self.dry_run or self.is_configured

    @property
    def commands(self) -> list[str]:
        return [command for command, _ in self.sent]

    async def send(self, command: str, timeout: float | None = None) -> RconResult:
        self.sent.append((command, timeout))
        if self.latency:
            await asyncio.sleep(self.latency)
        if any(marker in command for marker in self.fail_on):
            raise RconError(f"simulated failure: {command}")
        return RconResult(command=command, response="ok")
