import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

import portal.core.database as db_module
from portal.core.cache import PermissionCache, user_pattern
from portal.core.database import User, UserDirectoryDetail, UserPreferences, UserRole
from portal.core.exceptions import ConflictError, NotFoundError
from portal.services.audit import AuditService, snapshot

logger = structlog.get_logger()

USER_FIELDS = {"display_name", "email", "is_active"}


class UserService:
    """Direct admin edits of local users. Directory logins go through the reconciler instead."""

    def __init__(self, session_factory=None, cache: PermissionCache | None = None):
        self._session_factory = session_factory or db_module.async_session
        self._cache = cache

    async def list_users(self, include_inactive: bool = True) -> list[User]:
        async with self._session_factory() as session:
            stmt = select(User).order_by(User.username)
            if not include_inactive:
                stmt = stmt.where(User.is_active == True)  # noqa: E712
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_user(self, user_id: str) -> User:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError.for_entity("User", user_id)
        return user

    async def get_user_by_username(self, username: str) -> User | None:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def create_user(
        self,
        username: str,
        display_name: str,
        email: str | None = None,
        is_active: bool = True,
        actor_id: str | None = None,
    ) -> User:
        async with self._session_factory() as session:
            user = User(username=username, display_name=display_name, email=email, is_active=is_active)
            session.add(user)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"User '{username}' or email '{email}' already exists") from exc
            AuditService.log_creation(session, "user", user.id, snapshot(user), user_id=actor_id)
            await session.commit()

        logger.info("user_created", user_id=user.id, username=username)
        return user

    async def update_user(self, user_id: str, data: dict, actor_id: str | None = None) -> User:
        """Update display name, email or active flag. Unknown fields are ignored."""
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError.for_entity("User", user_id)
            before = snapshot(user)
            for field_name, value in data.items():
                # Only email may be cleared.
                if field_name in USER_FIELDS and (value is not None or field_name == "email"):
                    setattr(user, field_name, value)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Email '{data.get('email')}' is already in use") from exc
            AuditService.log_update(session, "user", user.id, before, snapshot(user), user_id=actor_id)
            await session.commit()

        logger.info("user_updated", user_id=user_id, fields=sorted(set(data) & USER_FIELDS))
        return user

    async def delete_user(self, user_id: str, actor_id: str | None = None) -> None:
        """Remove the user with its role assignments, directory detail and preferences."""
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError.for_entity("User", user_id)

            await session.execute(delete(UserRole).where(UserRole.user_id == user_id))
            await session.execute(delete(UserDirectoryDetail).where(UserDirectoryDetail.user_id == user_id))
            await session.execute(delete(UserPreferences).where(UserPreferences.user_id == user_id))
            AuditService.log_deletion(session, "user", user.id, snapshot(user), user_id=actor_id)
            await session.delete(user)
            await session.commit()

        if self._cache is not None:
            await self._cache.clear_pattern(user_pattern(user_id))
        logger.info("user_deleted", user_id=user_id)
