from fastapi import APIRouter, Depends, Query

from portal.dependencies import require_admin
from portal.schemas.audit import AuditLogEntry, AuditLogResponse
from portal.services.audit import AuditService

router = APIRouter(dependencies=[Depends(require_admin)])


def _format_dt(dt) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def _entry(r) -> AuditLogEntry:
    return AuditLogEntry(
        id=r.id,
        timestamp=_format_dt(r.timestamp),
        action=r.action,
        entity_type=r.entity_type,
        entity_id=r.entity_id,
        user_id=r.user_id,
        method=r.method,
        path=r.path,
        status_code=r.status_code,
        latency_ms=r.latency_ms,
        old_values=r.old_values,
        new_values=r.new_values,
        details=r.details,
    )


@router.get("/audit")
async def query_audit_log(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    action: str | None = None,
    entity_type: str | None = None,
    user_id: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
) -> AuditLogResponse:
    service = AuditService()
    items, total = await service.query_audit_log(
        limit=limit,
        offset=offset,
        action=action,
        entity_type=entity_type,
        user_id=user_id,
        start_time=start_time,
        end_time=end_time,
    )
    return AuditLogResponse(items=[_entry(r) for r in items], total=total, limit=limit, offset=offset)


@router.get("/audit/{entity_type}/{entity_id}")
async def entity_history(entity_type: str, entity_id: str) -> list[AuditLogEntry]:
    service = AuditService()
    return [_entry(r) for r in await service.get_entity_logs(entity_type, entity_id)]
