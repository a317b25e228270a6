import ssl
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import parse_qsl, unquote_plus, urlparse

from tortoise import Tortoise, connections, fields
from tortoise.expressions import Q
from tortoise.models import Model

from ..utils.logger import logger

MODELS_MODULE = "paybridge.services.database"


class Entitlement(Model):
    """A time-bounded grant and the command that takes it back."""

    id = fields.IntField(pk=True)
    owner_id = fields.CharField(max_length=32, index=True)
    sku = fields.CharField(max_length=64)
    txn_id = fields.CharField(max_length=128, null=True, index=True)
    grant_command = fields.TextField()
    revoke_command = fields.TextField()
    granted_at = fields.DatetimeField()
    expires_at = fields.DatetimeField(null=True, index=True)
    revoked_at = fields.DatetimeField(null=True)
    attempts = fields.IntField(default=0)
    last_error = fields.TextField(null=True)
    next_attempt_at = fields.DatetimeField(null=True)

    class Meta:
        table = "entitlements"

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStore:
    async def record(
        self,
        owner_id: str,
        sku: str,
        txn_id: Optional[str],
        grant_command: str,
        revoke_command: str,
        granted_at: datetime,
        expires_at: Optional[datetime],
    ) -> Entitlement:
        entry = await Entitlement.create(
            owner_id=owner_id,
            sku=sku,
            txn_id=txn_id,
            grant_command=grant_command,
            revoke_command=revoke_command,
            granted_at=granted_at,
            expires_at=expires_at,
        )
        expiry_label = f"{expires_at:%Y-%m-%d %H:%M} UTC" if expires_at else "never"
        logger.info(f"Entitlement #{entry.id} recorded for {owner_id} ({sku}), expires {expiry_label}")
        return entry

    async def due(self, now: Optional[datetime] = None) -> List[Entitlement]:
        now = now or utcnow()
        return (
            await Entitlement.filter(
                expires_at__isnull=False,
                revoked_at__isnull=True,
                expires_at__lte=now,
            )
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .order_by("expires_at", "id")
        )

    async def is_superseded(self, entry: Entitlement) -> bool:
        """True when a later, still pending grant shares this row's revoke command.

        Renewals overwrite the expiry on the game server, so revoking the older
        row would take away the newer purchase as well.
        """
        return await (
            Entitlement.filter(
                owner_id=entry.owner_id,
                revoke_command=entry.revoke_command,
                revoked_at__isnull=True,
            )
            .exclude(id=entry.id)
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=entry.expires_at))
            .exists()
        )

    async def pending_count(self) -> int:
        return await Entitlement.filter(expires_at__isnull=False, revoked_at__isnull=True).count()

    async def mark_revoked(self, entry: Entitlement, now: Optional[datetime] = None) -> None:
        entry.revoked_at = now or utcnow()
        entry.attempts += 1
        entry.last_error = None
        entry.next_attempt_at = None
        await entry.save(update_fields=["revoked_at", "attempts", "last_error", "next_attempt_at"])

    async def mark_failed(
        self,
        entry: Entitlement,
        error: str,
        now: Optional[datetime] = None,
        retry_after: Optional[timedelta] = None,
    ) -> None:
        now = now or utcnow()
        entry.attempts += 1
        entry.last_error = error[:1000]
        entry.next_attempt_at = now + retry_after if retry_after else None
        await entry.save(update_fields=["attempts", "last_error", "next_attempt_at"])


def build_tortoise_config(db_url: str, ssl_verify: Optional[bool] = None) -> dict[str, Any]:
    # Postgres providers commonly hand out postgresql:// URLs; normalize for parsing.
    if db_url.startswith("postgresql://"):
        db_url = "postgres://" + db_url[len("postgresql://") :]

    if not db_url.startswith("postgres://"):
        if db_url.startswith("sqlite://") and db_url != "sqlite://:memory:":
            Path(db_url[len("sqlite://") :]).parent.mkdir(parents=True, exist_ok=True)
        return {
            "connections": {"default": db_url},
            "apps": {"models": {"models": [MODELS_MODULE], "default_connection": "default"}},
            "use_tz": True,
            "timezone": "UTC",
        }

    parsed = urlparse(db_url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = str(query.pop("sslmode", "")).strip().lower()
    explicit_ssl = str(query.pop("ssl", "")).strip().lower()
    wants_ssl = sslmode in {"require", "verify-ca", "verify-full"} or explicit_ssl in {
        "1",
        "true",
        "yes",
        "require",
        "verify-ca",
        "verify-full",
    }

    credentials: dict[str, Any] = {
        "host": parsed.hostname or None,
        "port": parsed.port or 5432,
        "user": unquote_plus(parsed.username or "") or None,
        "password": unquote_plus(parsed.password or "") if parsed.password is not None else None,
        "database": parsed.path[1:] if parsed.path and parsed.path != "/" else None,
    }
    if wants_ssl:
        ctx = ssl.create_default_context()
        if ssl_verify is False:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        credentials["ssl"] = ctx

    return {
        "connections": {
            "default": {
                "engine": "tortoise.backends.asyncpg",
                "credentials": credentials,
            }
        },
        "apps": {"models": {"models": [MODELS_MODULE], "default_connection": "default"}},
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_db(db_url: str, ssl_verify: Optional[bool] = None) -> None:
    config = build_tortoise_config(db_url, ssl_verify)
    engine = "postgres" if db_url.startswith(("postgres://", "postgresql://")) else db_url.split(":", 1)[0]
    logger.info(f"DB init using {engine}")
    await Tortoise.init(config=config)
    await Tortoise.generate_schemas(safe=True)


async def close_db() -> None:
    await connections.close_all()
