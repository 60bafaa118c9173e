import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

import portal.core.database as db_module
from portal.core.cache import PermissionCache, user_pattern
from portal.core.database import (
    ROLE_SOURCE_DIRECTORY,
    ROLE_SOURCE_MANUAL,
    Role,
    User,
    UserDirectoryDetail,
    UserRole,
    utcnow,
)
from portal.services.attribute_mapper import CanonicalUser
from portal.services.audit import AuditService, snapshot
from portal.services.role_resolver import resolve_roles

logger = structlog.get_logger()

DEFAULT_ROLE_NAME = "user"


async def replace_directory_roles(session: AsyncSession, user_id: str, roles: list[Role]) -> None:
    """Swap every directory-mapping assignment of a user for `roles`. Manual rows are left alone."""
    await session.execute(
        delete(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.source == ROLE_SOURCE_DIRECTORY,
        )
    )
    for role in roles:
        session.add(UserRole(user_id=user_id, role_id=role.id, source=ROLE_SOURCE_DIRECTORY))
    await session.flush()


class UserReconciler:
    """Create-or-update a local user from a directory entry in one transaction."""

    def __init__(
        self,
        session_factory=None,
        cache: PermissionCache | None = None,
        role_resolver=resolve_roles,
    ):
        self._session_factory = session_factory or db_module.async_session
        self._cache = cache
        self._resolve_roles = role_resolver

    async def reconcile(self, canonical: CanonicalUser, directory_configuration_id: str) -> User:
        """Upsert user, directory detail and directory-sourced roles.

        Any failure rolls the whole transaction back and is re-raised unchanged.
        """
        now = utcnow()

        async with self._session_factory() as session, session.begin():
            result = await session.execute(select(User).where(User.username == canonical.username))
            user = result.scalar_one_or_none()
            is_new = user is None

            if is_new:
                before = None
                user = User(
                    username=canonical.username,
                    email=canonical.email,
                    display_name=canonical.display_name,
                    is_active=True,
                    last_login_at=now,
                    directory_configuration_id=directory_configuration_id,
                )
                session.add(user)
                await session.flush()
            else:
                before = snapshot(user)
                user.display_name = canonical.display_name
                user.email = canonical.email
                user.last_login_at = now
                user.directory_configuration_id = directory_configuration_id

            await self._upsert_detail(session, user.id, canonical, directory_configuration_id, now)

            roles = await self._resolve_roles(session, canonical.groups, directory_configuration_id)
            if roles:
                await replace_directory_roles(session, user.id, roles)
            elif is_new:
                await self._assign_default_role(session, user.id)

            await session.flush()
            after = snapshot(user)
            if is_new:
                AuditService.log_creation(session, "user", user.id, after, user_id=user.id)
            else:
                AuditService.log_update(session, "user", user.id, before, after, user_id=user.id)

        if self._cache is not None:
            await self._cache.clear_pattern(user_pattern(user.id))

        logger.info(
            "user_reconciled",
            user_id=user.id,
            username=user.username,
            created=is_new,
            directory_roles=[r.name for r in roles],
        )
        return user

    async def _upsert_detail(
        self,
        session: AsyncSession,
        user_id: str,
        canonical: CanonicalUser,
        directory_configuration_id: str,
        now,
    ) -> UserDirectoryDetail:
        result = await session.execute(
            select(UserDirectoryDetail).where(UserDirectoryDetail.user_id == user_id)
        )
        detail = result.scalar_one_or_none()
        if detail is None:
            detail = UserDirectoryDetail(user_id=user_id)
            session.add(detail)

        detail.directory_configuration_id = directory_configuration_id
        detail.distinguished_name = canonical.dn
        detail.object_guid = canonical.id
        detail.groups = list(canonical.groups)
        detail.raw_data = canonical.raw_data
        detail.last_sync_at = now
        await session.flush()
        return detail

    async def _assign_default_role(self, session: AsyncSession, user_id: str) -> None:
        result = await session.execute(select(Role).where(Role.name == DEFAULT_ROLE_NAME))
        role = result.scalar_one_or_none()
        if role is None:
            logger.warning("default_role_missing", role=DEFAULT_ROLE_NAME, user_id=user_id)
            return
        session.add(UserRole(user_id=user_id, role_id=role.id, source=ROLE_SOURCE_MANUAL))
        await session.flush()
