import hmac
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .dispatcher import DispatchOutcome, GrantDispatcher, GrantDispatchError
from .idempotency import IdempotencyGuard
from .notifier import DiscordNotifier
from .rcon import RconClient
from .sku import KIND_RAINBOW, KIND_VIP, GrantDescriptor, SkuNormalizer
from ..utils.constants import APPROVED_STATUSES, STEAMID64_PATTERN, Colors, Emojis
from ..utils.fields import NotifyFields
from ..utils.logger import logger

_STEAMID64_RE = re.compile(STEAMID64_PATTERN)
_ZERO_CODE_RE = re.compile(r"^0+$")


@dataclass
class FulfillmentOutcome:
    status: int
    body: Dict[str, Any] = field(default_factory=dict)
    dispatch: Optional[DispatchOutcome] = None

    @classmethod
    def error(cls, status: int, error: str, **extra: Any) -> "FulfillmentOutcome":
        return cls(status, {"ok": False, "error": error, **extra})


def is_approved(status: str, response_code: str) -> bool:
    if (status or "").strip().lower() in APPROVED_STATUSES:
        return True
    return bool(_ZERO_CODE_RE.match((response_code or "").strip()))


def secrets_match(received: str, expected: str) -> bool:
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def describe_grant(descriptor: GrantDescriptor) -> str:
    duration = "permanent" if descriptor.is_permanent else descriptor.duration
    if descriptor.kind == KIND_VIP:
        return f"VIP ({duration})"
    if descriptor.kind == KIND_RAINBOW:
        return f"Rainbow Name ({duration})"
    return descriptor.effective_sku


class FulfillmentService:
    def __init__(
        self,
        api_secret: str,
        normalizer: SkuNormalizer,
        guard: IdempotencyGuard,
        dispatcher: GrantDispatcher,
        rcon: RconClient,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.api_secret = api_secret
        self.normalizer = normalizer
        self.guard = guard
        self.dispatcher = dispatcher
        self.rcon = rcon
        self.notifier = notifier or DiscordNotifier()

    def authenticate(self, fields: NotifyFields) -> bool:
        return secrets_match(fields.secret, self.api_secret)

    async def handle_notification(self, fields: NotifyFields) -> FulfillmentOutcome:
        logger.info(f"Notify normalized: {fields.summary()}")

        if not self.authenticate(fields):
            logger.warning("Notify rejected: bad or missing secret")
            return FulfillmentOutcome.error(400, "unauthorized")

        player_id = fields.steamid64
        if not player_id:
            return FulfillmentOutcome.error(400, "missing_steamid64")
        if not _STEAMID64_RE.match(player_id):
            return FulfillmentOutcome.error(400, "invalid_steamid64")

        if not is_approved(fields.status, fields.response_code):
            self.notifier.notify(
                f"{Emojis.ERROR} Payment not successful",
                color=Colors.ERROR,
                fields=self._notify_fields(fields),
            )
            return FulfillmentOutcome(200, {"ok": True, "ignored": True})

        txn_id = fields.txn_id
        if not txn_id:
            return FulfillmentOutcome.error(400, "missing_txn_id")

        resolution = self.normalizer.resolve(*fields.sku_candidates, amount=fields.amount)
        if not resolution.ok:
            logger.warning(f"Unknown product for txn {txn_id}: {fields.product!r} ({resolution.reason})")
            self.notifier.notify(
                f"{Emojis.WARNING} Payment received but product is unknown",
                description=f"Reason: `{resolution.reason}`\nAction: NOT GRANTED",
                color=Colors.WARNING,
                fields=self._notify_fields(fields),
            )
            return FulfillmentOutcome(200, {"ok": True, "unknown_product": True, "reason": resolution.reason})

        descriptor = resolution.descriptor
        # Check and mark happen with no await in between.
        if not self.guard.try_acquire(txn_id):
            return FulfillmentOutcome(200, {"ok": True, "duplicate": True, "txn_id": txn_id})

        try:
            return await self._fulfill(fields, descriptor)
        except Exception:
            self.guard.release(txn_id)
            raise

    async def _fulfill(self, fields: NotifyFields, descriptor: GrantDescriptor) -> FulfillmentOutcome:
        txn_id = fields.txn_id
        player_id = fields.steamid64
        product_label = describe_grant(descriptor)

        if not self.rcon.is_available:
            self.guard.release(txn_id)
            self.notifier.notify(
                f"{Emojis.WARNING} Payment received but RCON is not configured",
                description=f"Product: {product_label}\nAction: NOT GRANTED",
                color=Colors.WARNING,
                fields=self._notify_fields(fields),
            )
            return FulfillmentOutcome.error(502, "rcon_not_configured", granted=False)

        try:
            dispatch = await self.dispatcher.dispatch(descriptor, player_id, txn_id=txn_id)
        except GrantDispatchError as exc:
            self.guard.release(txn_id)
            self.notifier.notify(
                f"{Emojis.ERROR} RCON failed",
                description=f"Product: {product_label}\nError: {exc}",
                color=Colors.ERROR,
                fields=self._notify_fields(fields),
            )
            return FulfillmentOutcome.error(502, "rcon_failed")

        self.guard.mark_processed(txn_id)
        failed = [outcome.command for outcome in dispatch.failed]
        if failed:
            logger.warning(f"Txn {txn_id} granted with {len(failed)} failed sub-command(s): {failed}")

        unrecorded = dispatch.ledger_errors
        self.notifier.notify(
            f"{Emojis.SUCCESS} New Purchase",
            description="\n".join(f"`{command}`" for command in dispatch.issued),
            color=Colors.SUCCESS if not (failed or unrecorded) else Colors.WARNING,
            fields=[
                ("Player (SteamID64)", player_id),
                ("Product", product_label),
                ("Txn", txn_id),
                *([("Failed sub-commands", "\n".join(failed))] if failed else []),
                *([("Expiry not recorded, revoke manually", "\n".join(unrecorded))] if unrecorded else []),
            ],
        )
        logger.info(f"{Emojis.SUCCESS} Granted {descriptor.effective_sku} to {player_id} (txn {txn_id})")
        return FulfillmentOutcome(
            200,
            {
                "ok": True,
                "granted": True,
                "txn_id": txn_id,
                "product": descriptor.effective_sku,
                "failed_commands": failed,
            },
            dispatch=dispatch,
        )

    async def handle_direct_grant(self, fields: NotifyFields) -> FulfillmentOutcome:
        if not self.authenticate(fields):
            return FulfillmentOutcome.error(400, "unauthorized")

        player_id = fields.steamid64
        if not _STEAMID64_RE.match(player_id):
            return FulfillmentOutcome.error(400, "invalid_steamid64")

        resolution = self.normalizer.resolve(fields.product)
        descriptor = resolution.descriptor
        if descriptor is None or descriptor.kind != KIND_VIP or descriptor.is_permanent:
            return FulfillmentOutcome.error(400, "invalid_product")

        if not self.rcon.is_available:
            return FulfillmentOutcome.error(502, "rcon_not_configured", granted=False)

        try:
            dispatch = await self.dispatcher.dispatch(descriptor, player_id)
        except GrantDispatchError as exc:
            logger.error(f"Direct grant failed for {player_id}: {exc}")
            return FulfillmentOutcome.error(502, "rcon_failed")

        return FulfillmentOutcome(
            200,
            {
                "ok": True,
                "granted": True,
                "product": descriptor.effective_sku,
                "steamid64": player_id,
                "duration": descriptor.duration,
                "failed_commands": [outcome.command for outcome in dispatch.failed],
            },
            dispatch=dispatch,
        )

    @staticmethod
    def _notify_fields(fields: NotifyFields) -> list[tuple[str, str]]:
        return [
            ("SteamID", fields.steamid64),
            ("Status", fields.status or fields.response_code),
            ("Product", fields.product or "(unknown)"),
            ("Txn", fields.txn_id or "(none)"),
        ]
