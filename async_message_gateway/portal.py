"""HTTP client for the tenant portal (subscriptions, cache refresh, alerts)."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional
from urllib.parse import quote

import aiohttp

from .logger import get_logger


class PortalClient:
    """Call the portal endpoints used by rule handlers and periodic jobs.

    Every call returns ``True`` on a 2xx answer and ``False`` otherwise;
    network and HTTP failures are logged, not raised.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, *, timeout: float = 15.0, logger=None):
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self.logger = logger or get_logger("Portal")

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _endpoint(self, suffix: str) -> Optional[str]:
        """Build the full URL for the given suffix."""
        if not self.base_url:
            return None
        base = self.base_url.rstrip("/")
        return f"{base}/{suffix.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, suffix: str) -> bool:
        endpoint = self._endpoint(suffix)
        if not endpoint:
            self.logger.debug("Portal URL not configured, skipping %s", suffix)
            return False
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(endpoint, headers=self._headers()) as resp:
                    if resp.status >= 400:
                        self.logger.error("Portal call %s failed: HTTP %s %s", endpoint, resp.status, resp.reason)
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.error("Portal call %s failed: %s", endpoint, exc)
            return False
        return True

    async def update_subscription(self, sender: str, text: str) -> bool:
        """Tell the portal whether ``sender`` subscribed ("1") or unsubscribed ("0")."""
        return await self._get(f"update-is-on-whatsapp/{quote(str(sender), safe='')}/{quote(str(text), safe='')}")

    async def refresh_cache(self) -> bool:
        """Ask the portal to rebuild the configuration records in the store."""
        ok = await self._get("update-redis-cache")
        if ok:
            self.logger.info("Portal cache refreshed")
        return ok

    async def send_admin_alerts(self) -> bool:
        ok = await self._get("admin-alerts/send-alerts")
        if ok:
            self.logger.info("Admin alerts sent")
        return ok
