from typing import Literal

from pydantic import BaseModel, Field

Frequency = Literal["hourly", "daily", "weekly", "monthly", "custom"]
Scope = Literal["users", "groups", "both"]
ConflictPolicy = Literal["ldap_wins", "local_wins", "selective"]


class SyncConfigCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    frequency: Frequency = "daily"
    cron_expression: str | None = None
    scope: Scope = "both"
    conflict_policy: ConflictPolicy = "ldap_wins"
    field_exceptions: list[str] | None = None
    is_active: bool = True
    batch_size: int = Field(default=100, ge=1, le=5000)
    directory_configuration_id: str


class SyncConfigUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    frequency: Frequency | None = None
    cron_expression: str | None = None
    scope: Scope | None = None
    conflict_policy: ConflictPolicy | None = None
    field_exceptions: list[str] | None = None
    is_active: bool | None = None
    batch_size: int | None = Field(default=None, ge=1, le=5000)


class SyncConfigResponse(BaseModel):
    id: str
    name: str
    description: str | None
    frequency: str
    cron_expression: str | None
    scope: str
    conflict_policy: str
    field_exceptions: list[str] | None
    is_active: bool
    batch_size: int
    last_sync_at: str | None
    next_sync_at: str | None
    sync_count: int
    last_sync_stats: dict | None
    directory_configuration_id: str


class SyncResult(BaseModel):
    success: bool
    start_time: str
    end_time: str | None
    users_processed: int = 0
    users_created: int = 0
    users_updated: int = 0
    users_skipped: int = 0
    errors: list[str] = []
