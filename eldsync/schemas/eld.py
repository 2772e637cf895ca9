"""Request bodies for the ELD JSON API (camelCase on the wire)."""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from ..models.enums import DataType, EntityType

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}

_DATE = r"^\d{4}-\d{2}-\d{2}$"
_MONTH = r"^\d{4}-(0[1-9]|1[0-2])$"

ConnectionActionName = Literal[
    "verify", "auto-match", "initiate-oauth", "list-providers", "map-entity", "unmap-entity"
]


class ConnectionAction(BaseModel):
    action: ConnectionActionName
    connection_id: uuid.UUID | None = None
    provider: str | None = None
    reconnect: bool = False
    redirect_uri: str | None = None
    # map-entity / unmap-entity
    mapping_id: uuid.UUID | None = None
    internal_id: uuid.UUID | None = None
    entity_type: EntityType | None = None

    model_config = _CAMEL


class ConnectionDelete(BaseModel):
    connection_id: uuid.UUID
    permanent: bool = False
    reason: str | None = None

    model_config = _CAMEL


class SyncOptions(BaseModel):
    start_date: str | None = Field(default=None, pattern=_DATE)
    end_date: str | None = Field(default=None, pattern=_DATE)
    start_month: str | None = Field(default=None, pattern=_MONTH)
    end_month: str | None = Field(default=None, pattern=_MONTH)

    model_config = _CAMEL

    @model_validator(mode="after")
    def check_ranges(self) -> "SyncOptions":
        # Zero-padded ISO strings order the same as the dates they name.
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        if self.start_month and self.end_month and self.start_month > self.end_month:
            raise ValueError("startMonth must not be after endMonth")
        return self


class SyncRequest(BaseModel):
    connection_id: uuid.UUID | None = None
    sync_type: DataType = DataType.ALL
    options: SyncOptions = Field(default_factory=SyncOptions)

    model_config = _CAMEL
