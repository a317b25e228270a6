import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Optional

import aiohttp

from ..utils.logger import logger


class RconError(Exception):
    pass


class RconTimeout(RconError):
    pass


class RconNotConfigured(RconError):
    pass


@dataclass(frozen=True)
class RconResult:
    command: str
    response: str = ""
    dry_run: bool = False
    ok: bool = True


class RconClient:
    """Rust WebRCON driver: one WebSocket connection per command.

    Nothing is pooled. A stuck or half-open session only ever costs the call
    that opened it.
    """

    def __init__(
        self,
        host: str = "",
        port: Optional[int] = None,
        password: str = "",
        sender: str = "PayBridge",
        dry_run: bool = False,
        default_timeout: float = 8.0,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.sender = sender
        self.dry_run = dry_run
        self.default_timeout = default_timeout
        self._identifiers = itertools.count(1)

    @classmethod
    def from_settings(cls, settings) -> "RconClient":
        return cls(
            host=settings.rcon_host,
            port=settings.rcon_port,
            password=settings.rcon_password,
            sender=settings.rcon_sender,
            dry_run=settings.dry_run,
            default_timeout=settings.rcon_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.port and self.password)

    @property
    def is_available(self) -> bool:
        return self.dry_run or self.is_configured

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}/{self.password}"

    async def send(self, command: str, timeout: Optional[float] = None) -> RconResult:
        if self.dry_run:
            logger.info(f"[DRY_RUN] RCON command: {command}")
            return RconResult(command=command, dry_run=True)

        if not self.is_configured:
            raise RconNotConfigured("RCON_HOST/RCON_PORT/RCON_PASSWORD are not configured")

        timeout = self.default_timeout if timeout is None else timeout
        identifier = next(self._identifiers)
        try:
            response = await asyncio.wait_for(self._exchange(identifier, command), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RconTimeout(f"RCON timeout after {timeout:.1f}s") from exc
        except aiohttp.ClientError as exc:
            raise RconError(f"RCON connection failed: {exc}") from exc
        except OSError as exc:
            raise RconError(f"RCON connection failed: {exc}") from exc

        logger.info(f"RCON #{identifier} ok: {command}")
        return RconResult(command=command, response=response)

    async def _exchange(self, identifier: int, command: str) -> str:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url, autoping=True) as ws:
                await ws.send_str(json.dumps({"Identifier": identifier, "Message": command, "Name": self.sender}))
                message = await ws.receive()
                if message.type == aiohttp.WSMsgType.TEXT:
                    return self._parse_reply(message.data)
                if message.type == aiohttp.WSMsgType.BINARY:
                    return self._parse_reply(message.data.decode("utf-8", errors="replace"))
                raise RconError(f"RCON connection closed before reply ({message.type.name})")

    @staticmethod
    def _parse_reply(raw: str) -> str:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            return raw
        if isinstance(payload, dict) and "Message" in payload:
            return str(payload.get("Message") or "")
        return raw
