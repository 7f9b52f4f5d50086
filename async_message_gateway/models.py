"""Pydantic models for the records read from the queue and the config store.

Models:
    - AttendanceEvent: one entry of a tenant attendance queue
    - StudentRecord: badge holder and guardian contact
    - TenantConfig: check-in/check-out windows of a tenant (school)
    - MessageTemplate: custom arrival/departure text
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# 9999-12-31T23:59:59Z, the last instant datetime can represent
MAX_EPOCH_SECONDS = 253402300799


class AttendanceEvent(BaseModel):
    """Queue wire format: ``{badgeId, tenantKey, occurredAtEpochSeconds}``."""

    model_config = ConfigDict(populate_by_name=True)

    badge_id: str = Field(alias="badgeId", min_length=1)
    tenant_key: str = Field(alias="tenantKey", min_length=1)
    occurred_at: float = Field(alias="occurredAtEpochSeconds", ge=0, le=MAX_EPOCH_SECONDS, allow_inf_nan=False)

    @field_validator("badge_id", "tenant_key", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        """Badge readers may emit numeric ids."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v


class StudentRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    badge_id: Optional[str] = Field(default=None, alias="badgeId")
    name: str
    guardian_name: str = Field(default="", alias="guardianName")
    guardian_contact: str = Field(alias="guardianContact", min_length=1)
    standard_name: str = Field(
        default="",
        validation_alias=AliasChoices("standardName", "standard_name", "className"),
    )

    @field_validator("guardian_contact", mode="before")
    @classmethod
    def coerce_contact(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class TenantConfig(BaseModel):
    """Time windows use ``HH:MM:SS`` strings in the reference time zone."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    checkin_start: str = Field(alias="checkinStart")
    checkin_end: str = Field(alias="checkinEnd")
    checkout_start: str = Field(alias="checkoutStart")
    checkout_end: str = Field(alias="checkoutEnd")
    buffer_minutes: float = Field(default=0, alias="bufferMinutes")

    @field_validator("buffer_minutes", mode="before")
    @classmethod
    def default_buffer(cls, v):
        if v is None or v == "":
            return 0
        return v


class MessageTemplate(BaseModel):
    kind: Literal["arrival", "departure"]
    body: str
