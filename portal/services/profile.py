import structlog
from sqlalchemy import select

import portal.core.database as db_module
from portal.core.database import UserPreferences
from portal.services.audit import AuditService, snapshot

logger = structlog.get_logger()

PREFERENCE_FIELDS = {"theme", "language", "dashboard_layout", "notifications", "module_preferences"}


class ProfileService:
    """Per-user UI preferences, created with defaults on first access."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or db_module.async_session

    async def _load_or_create(self, session, user_id: str) -> UserPreferences:
        result = await session.execute(select(UserPreferences).where(UserPreferences.user_id == user_id))
        preferences = result.scalar_one_or_none()
        if preferences is not None:
            return preferences

        preferences = UserPreferences(
            user_id=user_id,
            theme="light",
            language="en",
            dashboard_layout={},
            notifications={},
            module_preferences={},
        )
        session.add(preferences)
        await session.flush()
        AuditService.log_creation(session, "user_preferences", preferences.id, snapshot(preferences), user_id=user_id)
        logger.info("preferences_created", user_id=user_id)
        return preferences

    async def get_preferences(self, user_id: str) -> UserPreferences:
        async with self._session_factory() as session:
            preferences = await self._load_or_create(session, user_id)
            await session.commit()
        return preferences

    async def update_preferences(self, user_id: str, data: dict) -> UserPreferences:
        async with self._session_factory() as session:
            preferences = await self._load_or_create(session, user_id)
            before = snapshot(preferences)
            for field_name, value in data.items():
                if field_name in PREFERENCE_FIELDS and value is not None:
                    setattr(preferences, field_name, value)
            await session.flush()
            AuditService.log_update(
                session, "user_preferences", preferences.id, before, snapshot(preferences), user_id=user_id
            )
            await session.commit()

        logger.info("preferences_updated", user_id=user_id, fields=sorted(set(data) & PREFERENCE_FIELDS))
        return preferences
