import os
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_message_gateway.core import GatewayCore
from async_message_gateway.api import create_app
from async_message_gateway.transport import DEFAULT_RECIPIENT_SUFFIX, load_provider


def configure_logging(level: str | None = None) -> None:
    log_level = (level or os.getenv("AMG_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with AMG_):
      AMG_CONFIG - Path to config.ini file (default: config.ini)
      AMG_LOG_LEVEL - Logging level (default: INFO)
      AMG_HOST - Server host (default: 0.0.0.0)
      AMG_PORT - Server port (default: 8000)
      AMG_API_TOKEN - API authentication token
      AMG_BULK_SECRET - Shared secret required by bulk sends
      AMG_SESSIONS_FILE - Tenant registry file (default: sessions.txt)
      AMG_CREDENTIALS_DIR - Directory holding the credential folders (default: .)
      AMG_CREDENTIALS_PREFIX - Credential folder prefix (default: auth_info)
      AMG_DB_PATH - Delivery log database path (default: /data/message_gateway.db)
      AMG_REDIS_URL - Redis connection URL (default: redis://127.0.0.1:6379)
      AMG_REDIS_KEY_PREFIX - Prefix prepended to every Redis key
      AMG_TRANSPORT_PROVIDER - Transport provider reference, ``module:attribute``
      AMG_RECIPIENT_SUFFIX - Transport address suffix (default: @s.whatsapp.net)
      AMG_CONNECT_TIMEOUT - Connect timeout in seconds (default: 30)
      AMG_RECONNECT_DELAY - First reconnect delay in seconds (default: 2)
      AMG_ATTENDANCE_INTERVAL - Attendance tick interval in seconds (default: 60)
      AMG_TIMEZONE - Timezone of attendance windows (default: UTC)
      AMG_RULES_PATH - Auto-reply rules file (default: rules.json)
      AMG_PORTAL_URL - Base URL of the school portal
      AMG_PORTAL_TOKEN - Bearer token for the school portal
      AMG_TEST_MODE - Run attendance only on explicit wake-ups (default: False)

    Config file sections/keys:
      [server] host, port, api_token, bulk_secret
      [storage] sessions_file, credentials_dir, credentials_prefix, db_path
      [redis] url, key_prefix
      [transport] provider, recipient_suffix, connect_timeout, reconnect_delay
      [attendance] interval_seconds, timezone, test_mode
      [rules] path
      [portal] base_url, token
      [logging] level
    """
    config_path = Path(os.getenv("AMG_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "http_host": get("server", "host", os.getenv("AMG_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("AMG_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("AMG_API_TOKEN")),
        "bulk_secret": get("server", "bulk_secret", os.getenv("AMG_BULK_SECRET")),
        "sessions_file": get("storage", "sessions_file", os.getenv("AMG_SESSIONS_FILE", "sessions.txt")),
        "credentials_dir": get("storage", "credentials_dir", os.getenv("AMG_CREDENTIALS_DIR", ".")),
        "credentials_prefix": get("storage", "credentials_prefix", os.getenv("AMG_CREDENTIALS_PREFIX", "auth_info")),
        "db_path": get("storage", "db_path", os.getenv("AMG_DB_PATH", "/data/message_gateway.db")),
        "redis_url": get("redis", "url", os.getenv("AMG_REDIS_URL", "redis://127.0.0.1:6379")),
        "redis_key_prefix": get("redis", "key_prefix", os.getenv("AMG_REDIS_KEY_PREFIX", "")),
        "transport_provider": get("transport", "provider", os.getenv("AMG_TRANSPORT_PROVIDER")),
        "recipient_suffix": get(
            "transport", "recipient_suffix", os.getenv("AMG_RECIPIENT_SUFFIX", DEFAULT_RECIPIENT_SUFFIX)
        ),
        "connect_timeout": get_float("transport", "connect_timeout", os.getenv("AMG_CONNECT_TIMEOUT"), 30.0),
        "reconnect_delay": get_float("transport", "reconnect_delay", os.getenv("AMG_RECONNECT_DELAY"), 2.0),
        "attendance_interval": get_float(
            "attendance", "interval_seconds", os.getenv("AMG_ATTENDANCE_INTERVAL"), 60.0
        ),
        "timezone": get("attendance", "timezone", os.getenv("AMG_TIMEZONE", "UTC")),
        "test_mode": get_bool("attendance", "test_mode", os.getenv("AMG_TEST_MODE"), False),
        "rules_path": get("rules", "path", os.getenv("AMG_RULES_PATH", "rules.json")),
        "portal_url": get("portal", "base_url", os.getenv("AMG_PORTAL_URL")),
        "portal_token": get("portal", "token", os.getenv("AMG_PORTAL_TOKEN")),
        "log_level": get("logging", "level", os.getenv("AMG_LOG_LEVEL", "INFO")),
    }

    for key in ("db_path", "sessions_file", "credentials_dir", "rules_path"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    for key in ("api_token", "bulk_secret", "portal_token"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings


def build_service(settings: dict[str, object]) -> GatewayCore:
    reference = settings.get("transport_provider")
    if not reference:
        raise SystemExit("No transport provider configured: set [transport] provider or AMG_TRANSPORT_PROVIDER")
    provider = load_provider(str(reference))
    return GatewayCore(
        provider=provider,
        redis_url=str(settings["redis_url"]),
        redis_key_prefix=str(settings.get("redis_key_prefix") or ""),
        credentials_dir=str(settings["credentials_dir"]),
        credentials_prefix=str(settings["credentials_prefix"]),
        sessions_file=str(settings["sessions_file"]),
        db_path=settings["db_path"],
        rules_path=settings.get("rules_path"),
        portal_url=settings.get("portal_url"),
        portal_token=settings.get("portal_token"),
        bulk_secret=settings.get("bulk_secret"),
        timezone=str(settings["timezone"]),
        attendance_interval=float(settings["attendance_interval"]),
        connect_timeout=float(settings["connect_timeout"]),
        reconnect_delay=float(settings["reconnect_delay"]),
        recipient_suffix=str(settings["recipient_suffix"]),
        test_mode=bool(settings.get("test_mode")),
    )


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings.get("log_level") or "INFO"))
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
