import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

import portal.core.database as db_module
from portal.core.cache import PermissionCache, permission_key, user_pattern
from portal.core.database import Permission, Role, RolePermission, UserRole
from portal.core.exceptions import ConflictError, NotFoundError, ValidationFailedError
from portal.services.audit import AuditService, snapshot

logger = structlog.get_logger()


def parse_permission_key(key: str) -> tuple[str, str] | None:
    """Split `resource:action`. Returns None when either part is missing."""
    resource, _, action = key.partition(":")
    if not resource or not action:
        return None
    return resource, action


class PermissionService:
    """Permissions, role grants and cached per-user permission checks."""

    def __init__(self, session_factory=None, cache: PermissionCache | None = None):
        self._session_factory = session_factory or db_module.async_session
        self._cache = cache

    async def _invalidate_role_holders(self, session, role_id: str) -> None:
        if self._cache is None:
            return
        result = await session.execute(select(UserRole.user_id).where(UserRole.role_id == role_id))
        for user_id in set(result.scalars().all()):
            await self._cache.clear_pattern(user_pattern(user_id))

    async def list_permissions(self) -> list[Permission]:
        async with self._session_factory() as session:
            result = await session.execute(select(Permission).order_by(Permission.resource, Permission.action))
            return list(result.scalars().all())

    async def create_permission(
        self,
        resource: str,
        action: str,
        scope: str | None = None,
        description: str | None = None,
        is_system: bool = False,
        actor_id: str | None = None,
    ) -> Permission:
        async with self._session_factory() as session:
            permission = Permission(
                resource=resource, action=action, scope=scope, description=description, is_system=is_system
            )
            session.add(permission)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Permission '{resource}:{action}' already exists") from exc
            AuditService.log_creation(session, "permission", permission.id, snapshot(permission), user_id=actor_id)
            await session.commit()

        logger.info("permission_created", permission=f"{resource}:{action}")
        return permission

    async def delete_permission(self, permission_id: str, actor_id: str | None = None) -> None:
        async with self._session_factory() as session:
            permission = await session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError.for_entity("Permission", permission_id)
            if permission.is_system:
                raise ValidationFailedError("System permissions cannot be deleted")

            await session.execute(delete(RolePermission).where(RolePermission.permission_id == permission_id))
            AuditService.log_deletion(session, "permission", permission.id, snapshot(permission), user_id=actor_id)
            await session.delete(permission)
            await session.commit()

        # Any user may have held it through any role.
        if self._cache is not None:
            await self._cache.clear()
        logger.info("permission_deleted", permission_id=permission_id)

    async def get_permissions_by_role_id(self, role_id: str) -> list[Permission]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id == role_id)
                .order_by(Permission.resource, Permission.action)
            )
            return list(result.scalars().all())

    async def assign_permission_to_role(
        self, role_id: str, permission_id: str, actor_id: str | None = None
    ) -> RolePermission:
        async with self._session_factory() as session:
            if await session.get(Role, role_id) is None:
                raise NotFoundError.for_entity("Role", role_id)
            if await session.get(Permission, permission_id) is None:
                raise NotFoundError.for_entity("Permission", permission_id)

            grant = RolePermission(role_id=role_id, permission_id=permission_id)
            session.add(grant)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError("Permission already assigned to role") from exc
            AuditService.log_creation(
                session, "role_permission", role_id, {"permission_id": permission_id}, user_id=actor_id
            )
            await session.commit()
            await self._invalidate_role_holders(session, role_id)

        logger.info("permission_assigned", role_id=role_id, permission_id=permission_id)
        return grant

    async def remove_permission_from_role(self, role_id: str, permission_id: str, actor_id: str | None = None) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RolePermission).where(
                    RolePermission.role_id == role_id,
                    RolePermission.permission_id == permission_id,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("Permission is not assigned to role")
            AuditService.log_deletion(
                session, "role_permission", role_id, {"permission_id": permission_id}, user_id=actor_id
            )
            await session.commit()
            await self._invalidate_role_holders(session, role_id)

        logger.info("permission_removed", role_id=role_id, permission_id=permission_id)

    async def get_user_permissions(self, user_id: str) -> list[str]:
        """Effective `resource:action` keys granted to a user through any role."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Permission.resource, Permission.action)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(UserRole, UserRole.role_id == RolePermission.role_id)
                .where(UserRole.user_id == user_id)
                .distinct()
            )
            return sorted(f"{resource}:{action}" for resource, action in result.all())

    async def user_has_permission(self, user_id: str, key: str) -> bool:
        """Check `resource:action` for a user, consulting the cache first."""
        cache_key = permission_key(user_id, key)
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                return cached

        parsed = parse_permission_key(key)
        if parsed is None:
            logger.warning("permission_key_invalid", key=key)
            return False
        resource, action = parsed

        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(RolePermission)
                .join(Permission, Permission.id == RolePermission.permission_id)
                .join(UserRole, UserRole.role_id == RolePermission.role_id)
                .where(
                    UserRole.user_id == user_id,
                    Permission.resource == resource,
                    Permission.action == action,
                )
            )
            allowed = (result.scalar() or 0) > 0

        if self._cache is not None:
            await self._cache.set(cache_key, allowed)
        return allowed
