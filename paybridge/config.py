import os
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .services.rcon import RconClient
from .utils.logger import logger


class ConfigError(RuntimeError):
    pass


class Settings:
    def __init__(
        self,
        api_secret: str,
        host: str = "0.0.0.0",
        port: int = 8080,
        rcon_host: str = "",
        rcon_port: Optional[int] = None,
        rcon_password: str = "",
        rcon_sender: str = "PayBridge",
        rcon_first_timeout: float = 5.0,
        rcon_timeout: float = 8.0,
        command_delay: float = 0.3,
        dry_run: bool = False,
        discord_webhook_url: str = "",
        notify_timeout: float = 5.0,
        database_url: str = "sqlite://data/paybridge.sqlite3",
        db_ssl_verify: Optional[bool] = None,
        sweep_interval: float = 60.0,
        sweep_backoff_base: float = 0.0,
        sweep_backoff_max: float = 3600.0,
        test_amount: Optional[Decimal] = Decimal("1"),
        test_target: str = "",
        inflight_ttl: float = 300.0,
        processed_ttl: float = 86400.0,
    ):
        if not api_secret:
            raise ConfigError("Missing required setting: API_SECRET")
        self.api_secret = api_secret
        self.host = host
        self.port = port
        self.rcon_host = rcon_host
        self.rcon_port = rcon_port
        self.rcon_password = rcon_password
        self.rcon_sender = rcon_sender
        self.rcon_first_timeout = rcon_first_timeout
        self.rcon_timeout = rcon_timeout
        self.command_delay = command_delay
        self.dry_run = dry_run
        self.discord_webhook_url = discord_webhook_url
        self.notify_timeout = notify_timeout
        self.database_url = database_url
        self.db_ssl_verify = db_ssl_verify
        self.sweep_interval = sweep_interval
        self.sweep_backoff_base = sweep_backoff_base
        self.sweep_backoff_max = sweep_backoff_max
        self.test_amount = test_amount
        self.test_target = test_target
        self.inflight_ttl = inflight_ttl
        self.processed_ttl = processed_ttl

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            load_dotenv()
            environ = os.environ

        def get(key: str, default: str = "") -> str:
            return (environ.get(key) or default).strip()

        port_value = get("PORT") or get("BOT_API_PORT") or "8080"
        settings = cls(
            api_secret=get("API_SECRET"),
            host=get("HOST", "0.0.0.0"),
            port=cls._to_int(port_value, default=8080),
            rcon_host=get("RCON_HOST"),
            rcon_port=cls._to_int(get("RCON_PORT"), default=None),
            rcon_password=get("RCON_PASSWORD"),
            rcon_sender=get("RCON_SENDER", "PayBridge"),
            rcon_first_timeout=cls._to_float(get("RCON_FIRST_TIMEOUT_SECONDS"), default=5.0),
            rcon_timeout=cls._to_float(get("RCON_TIMEOUT_SECONDS"), default=8.0),
            command_delay=cls._to_float(get("RCON_COMMAND_DELAY_SECONDS"), default=0.3),
            dry_run=cls._to_bool(get("DRY_RUN"), default=False),
            discord_webhook_url=get("DISCORD_WEBHOOK_URL"),
            notify_timeout=cls._to_float(get("NOTIFY_TIMEOUT_SECONDS"), default=5.0),
            database_url=get("DATABASE_URL") or get("SUPABASE_DATABASE_URL") or "sqlite://data/paybridge.sqlite3",
            db_ssl_verify=cls._to_bool(get("DB_SSL_VERIFY"), default=None),
            sweep_interval=cls._to_float(get("SWEEP_INTERVAL_SECONDS"), default=60.0),
            sweep_backoff_base=cls._to_float(get("SWEEP_BACKOFF_BASE_SECONDS"), default=0.0),
            sweep_backoff_max=cls._to_float(get("SWEEP_BACKOFF_MAX_SECONDS"), default=3600.0),
            test_amount=cls._to_decimal(get("TEST_AMOUNT", "1"), default=None),
            test_target=get("TEST_TARGET"),
            inflight_ttl=cls._to_float(get("INFLIGHT_TTL_SECONDS"), default=300.0),
            processed_ttl=cls._to_float(get("PROCESSED_TTL_SECONDS"), default=86400.0),
        )
        settings.log_warnings()
        return settings

    def log_warnings(self) -> None:
        if self.dry_run:
            logger.warning("DRY_RUN is enabled. RCON commands will be logged, not sent.")
        elif not RconClient.from_settings(self).is_configured:
            logger.warning(
                "RCON is not fully configured (RCON_HOST/RCON_PORT/RCON_PASSWORD missing). "
                "Grants will fail until fixed."
            )
        if not self.discord_webhook_url:
            logger.warning("Discord webhook is not configured (DISCORD_WEBHOOK_URL missing). Notifications will be skipped.")

    @staticmethod
    def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _to_bool(value: str, default: Optional[bool]) -> Optional[bool]:
        normalized = str(value or "").strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    @staticmethod
    def _to_decimal(value: Any, default: Optional[Decimal]) -> Optional[Decimal]:
        if value is None or str(value).strip() == "":
            return default
        try:
            return Decimal(str(value).strip())
        except InvalidOperation:
            return default
