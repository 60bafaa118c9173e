from datetime import datetime, timezone

from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

import portal.core.database as db_module
from portal.core.database import AuditLog, utcnow
from portal.core.exceptions import ValidationFailedError
from portal.services.attribute_mapper import _json_safe


_REDACTED_COLUMNS = {"bind_credentials"}


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid timestamp: {value}") from exc
    # Stored timestamps are naive UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def snapshot(row) -> dict:
    """Loaded column values of an ORM row as a JSON-safe dict.

    Reads only what is already in the instance state so it never triggers a
    lazy load.
    """
    loaded = inspect(row).dict
    return {
        column.key: _json_safe(loaded[column.key])
        for column in row.__table__.columns
        if column.key in loaded and column.key not in _REDACTED_COLUMNS
    }


class AuditService:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or db_module.async_session

    @staticmethod
    def record(
        session: AsyncSession,
        action: str,
        entity_type: str,
        entity_id: str | None = None,
        user_id: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        details: str | None = None,
    ) -> AuditLog:
        """Stage an audit row in the caller's session; it commits or rolls back with the change."""
        entry = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            details=details,
            timestamp=utcnow(),
        )
        session.add(entry)
        return entry

    @classmethod
    def log_creation(cls, session: AsyncSession, entity_type: str, entity_id: str, entity_data: dict, **kwargs) -> AuditLog:
        return cls.record(session, "create", entity_type, entity_id, new_values=entity_data, **kwargs)

    @classmethod
    def log_update(
        cls, session: AsyncSession, entity_type: str, entity_id: str, old_values: dict, new_values: dict, **kwargs
    ) -> AuditLog:
        return cls.record(session, "update", entity_type, entity_id, old_values=old_values, new_values=new_values, **kwargs)

    @classmethod
    def log_deletion(cls, session: AsyncSession, entity_type: str, entity_id: str, entity_data: dict, **kwargs) -> AuditLog:
        return cls.record(session, "delete", entity_type, entity_id, old_values=entity_data, **kwargs)

    async def get_entity_logs(self, entity_type: str, entity_id: str) -> list[AuditLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
                .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            )
            return list(result.scalars().all())

    async def query_audit_log(
        self,
        limit=50,
        offset=0,
        action=None,
        entity_type=None,
        user_id=None,
        start_time=None,
        end_time=None,
    ) -> tuple[list[AuditLog], int]:
        """Query audit log with filters. Returns (items, total_count)."""
        async with self._session_factory() as session:
            base = select(AuditLog)

            if action is not None:
                base = base.where(AuditLog.action == action)
            if entity_type is not None:
                base = base.where(AuditLog.entity_type == entity_type)
            if user_id is not None:
                base = base.where(AuditLog.user_id == user_id)
            if start_time is not None:
                base = base.where(AuditLog.timestamp >= _parse_time(start_time))
            if end_time is not None:
                base = base.where(AuditLog.timestamp <= _parse_time(end_time))

            count_stmt = select(func.count()).select_from(base.subquery())
            total = (await session.execute(count_stmt)).scalar() or 0

            stmt = base.order_by(AuditLog.timestamp.desc()).offset(offset).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()

            return list(rows), total
