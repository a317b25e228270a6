import json
from typing import Any, Optional
from urllib.parse import parse_qsl

from aiohttp import web

from .fulfillment import FulfillmentOutcome, FulfillmentService
from .database import EntitlementStore
from .rcon import RconClient
from .notifier import DiscordNotifier
from ..utils.fields import extract_notify_fields
from ..utils.logger import logger


class WebBridgeServer:
    def __init__(
        self,
        fulfillment: FulfillmentService,
        rcon: RconClient,
        notifier: DiscordNotifier,
        store: Optional[EntitlementStore] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.fulfillment = fulfillment
        self.rcon = rcon
        self.notifier = notifier
        self.store = store
        self.host = host
        self.port = port

        self.app = web.Application(middlewares=[self._error_middleware])
        self.app.router.add_get("/", self.index)
        self.app.router.add_get("/health", self.health)
        self.app.router.add_post("/tranzila/notify", self.tranzila_notify)
        self.app.router.add_post("/tranzila/result", self.tranzila_result)

        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as exc:
            logger.exception(f"Web bridge error on {request.path}: {exc}")
            return web.json_response({"ok": False, "error": "server_error"}, status=500)

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Web bridge listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("Web bridge stopped.")

    async def index(self, request: web.Request):
        return web.Response(text="OK")

    async def health(self, request: web.Request):
        payload: dict[str, Any] = {
            "ok": True,
            "rcon_configured": self.rcon.is_configured,
            "dry_run": self.rcon.dry_run,
            "notifications": self.notifier.enabled,
        }
        if self.store is not None:
            payload["pending_revokes"] = await self.store.pending_count()
        return web.json_response(payload)

    async def tranzila_notify(self, request: web.Request):
        logger.info("=== TRANZILA NOTIFY HIT ===")
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"ok": False, "error": "malformed_body"}, status=400)

        logger.info(
            f"Content-Type: {request.content_type or '(none)'} "
            f"query keys: {sorted(request.query.keys())} body keys: {sorted(body.keys())}"
        )
        fields = extract_notify_fields([body, request.query], headers=request.headers)
        outcome = await self.fulfillment.handle_notification(fields)
        return self._respond(outcome)

    async def tranzila_result(self, request: web.Request):
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"ok": False, "error": "malformed_body"}, status=400)

        # Secret is only accepted from the body on this route.
        fields = extract_notify_fields([body])
        outcome = await self.fulfillment.handle_direct_grant(fields)
        return self._respond(outcome)

    @staticmethod
    def _respond(outcome: FulfillmentOutcome) -> web.Response:
        return web.json_response(outcome.body, status=outcome.status)

    async def _read_body(self, request: web.Request) -> Optional[dict[str, Any]]:
        if not request.body_exists:
            return {}

        content_type = request.content_type
        if content_type == "application/json":
            try:
                payload = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                return None
            return payload if isinstance(payload, dict) else None

        if content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
            form = await request.post()
            return {key: value for key, value in form.items() if isinstance(value, str)}

        # Some processors post urlencoded pairs without a content type.
        raw = await request.text()
        raw = raw.strip()
        if not raw:
            return {}
        if raw.startswith("{"):
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                return None
            return payload if isinstance(payload, dict) else None
        return dict(parse_qsl(raw, keep_blank_values=True))
