"""Redis backed attendance queue and configuration records.

Key layout (``key_prefix`` is prepended when configured)::

    attendances:{tenant_id}   list, one JSON AttendanceEvent per entry
    student:{badge_id}        JSON StudentRecord
    school:{tenant_key}       JSON TenantConfig
    templates:{tenant_key}    JSON list of MessageTemplate
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from .logger import get_logger
from .models import MessageTemplate, StudentRecord, TenantConfig


class RedisStore:
    """Read side of the external queue and key-value store."""

    def __init__(
        self,
        url: str = "redis://127.0.0.1:6379",
        *,
        key_prefix: str = "",
        client: Optional[redis.Redis] = None,
        logger=None,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self._client = client
        self.logger = logger or get_logger("RedisStore")

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
            await self._client.ping()
            self.logger.info("Redis connected: %s", self.url)

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def key(self, *parts: str) -> str:
        key = ":".join(str(part) for part in parts)
        return f"{self.key_prefix}{key}" if self.key_prefix else key

    # ------------------------------------------------------------------ queue
    async def pop_event(self, tenant_id: str) -> Optional[str]:
        """Pop the oldest queued attendance entry, ``None`` when empty."""
        return await self.client.lpop(self.key("attendances", tenant_id))

    async def push_event(self, tenant_id: str, event: str | Dict[str, Any]) -> int:
        raw = event if isinstance(event, str) else json.dumps(event)
        return await self.client.rpush(self.key("attendances", tenant_id), raw)

    async def queue_length(self, tenant_id: str) -> int:
        return await self.client.llen(self.key("attendances", tenant_id))

    # ---------------------------------------------------------------- records
    async def _get_json(self, key: str) -> Any:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            self.logger.warning("Invalid JSON stored under %s: %s", key, exc)
            return None

    async def get_student(self, badge_id: str) -> Optional[StudentRecord]:
        key = self.key("student", badge_id)
        data = await self._get_json(key)
        if not isinstance(data, dict):
            return None
        data.setdefault("badgeId", badge_id)
        try:
            return StudentRecord.model_validate(data)
        except PydanticValidationError as exc:
            self.logger.warning("Invalid student record %s: %s", key, exc)
            return None

    async def get_tenant_config(self, tenant_key: str) -> Optional[TenantConfig]:
        key = self.key("school", tenant_key)
        data = await self._get_json(key)
        if not isinstance(data, dict):
            return None
        try:
            return TenantConfig.model_validate(data)
        except PydanticValidationError as exc:
            self.logger.warning("Invalid tenant config %s: %s", key, exc)
            return None

    async def get_templates(self, tenant_key: str) -> List[MessageTemplate]:
        key = self.key("templates", tenant_key)
        data = await self._get_json(key)
        if not isinstance(data, list):
            return []
        templates: List[MessageTemplate] = []
        for item in data:
            try:
                templates.append(MessageTemplate.model_validate(item))
            except PydanticValidationError as exc:
                self.logger.warning("Skipping invalid template in %s: %s", key, exc)
        return templates
