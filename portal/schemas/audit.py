from pydantic import BaseModel


class AuditLogEntry(BaseModel):
    id: int
    timestamp: str | None
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    user_id: str | None = None
    method: str | None = None
    path: str | None = None
    status_code: int | None = None
    latency_ms: float | None = None
    old_values: dict | None = None
    new_values: dict | None = None
    details: str | None = None


class AuditLogResponse(BaseModel):
    items: list[AuditLogEntry]
    total: int
    limit: int
    offset: int
