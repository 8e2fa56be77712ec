"""
Pydantic models for checklist state, storage records and sync status.

The snapshot itself stays an opaque mapping: the engine never looks
inside it beyond "is it empty".
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Snapshot = dict[str, Any]

EXPORT_VERSION = "1.0"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Where the last sync attempt left things."""

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    OFFLINE = "offline"
    ERROR = "error"


class UserIdentity(BaseModel):
    """A signed-in user.

    Only ``id`` is used for storage namespacing and remote authorization.
    The display fields are passed through untouched.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user id must not be empty")
        return value


class Credentials(BaseModel):
    """The opaque triple the engine consumes from the auth layer."""

    user_id: Optional[str] = None
    access_token: Optional[str] = None
    is_authenticated: bool = False


class StorageRecord(BaseModel):
    """A snapshot as persisted, with the time it was written."""

    data: Snapshot = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class StorageConfig(BaseModel):
    """Cloud endpoint and auto-sync preference.

    An empty endpoint means "local storage only".
    """

    endpoint: str = ""
    auto_sync: bool = True

    @field_validator("endpoint")
    @classmethod
    def _strip_endpoint(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def has_endpoint(self) -> bool:
        return bool(self.endpoint)


class StatusSnapshot(BaseModel):
    """Immutable view of the status machine handed to observers."""

    model_config = ConfigDict(frozen=True)

    status: SyncStatus = SyncStatus.IDLE
    last_synced_at: Optional[datetime] = None
    error: Optional[str] = None
    auth_expired: bool = False


class ExportedBy(BaseModel):
    """Identity metadata stamped into an export file."""

    name: Optional[str] = None
    email: Optional[str] = None
    id: str


class ExportEnvelope(BaseModel):
    """Portable snapshot file: ``{data, exportedAt, exportedBy, version}``."""

    model_config = ConfigDict(populate_by_name=True)

    data: Snapshot
    exported_at: datetime = Field(default_factory=utcnow, alias="exportedAt")
    exported_by: Optional[ExportedBy] = Field(default=None, alias="exportedBy")
    version: str = EXPORT_VERSION


class SaveResponse(BaseModel):
    """Body of a successful ``POST /save``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = True
    message: Optional[str] = None
    timestamp: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")


class LoadResponse(BaseModel):
    """Body of a successful ``GET /load``. ``data`` is null for new users."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = True
    data: Optional[Snapshot] = None
    timestamp: Optional[str] = None
    message: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
